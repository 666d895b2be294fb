import io
import os
import threading

import pytest
from PIL import Image

from core.fetch import FetchClient
from core.models import BookSpec
from core.pacing import NoDelayPacer

BASE = "https://comic.test"
CHAPTER_PATTERN = r'<a class="chapter" href="(/manga/chapter-(\d+))">'
IMAGE_PATTERN = r'<img class="page" src="([^"]+)"'


class FakeRaw:
    def __init__(self, body: bytes):
        self._body = body

    def read(self, decode_content=True):
        return self._body


class FakeResponse:
    def __init__(self, status_code=200, body=b"", headers=None):
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.status_code = status_code
        self.headers = headers or {}
        self.content = body
        self.raw = FakeRaw(body)
        self.closed = False

    def close(self):
        self.closed = True


class FakeSession:
    """
    Serves canned responses per URL. A route holds a list consumed front to
    back; its last entry repeats. Entries may be responses, exceptions or
    callables producing a response.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.headers = {}
        self._lock = threading.Lock()

    def add(self, url, *responses):
        self.routes[url] = list(responses)
        return self

    def get(self, url, headers=None, timeout=None, allow_redirects=True, stream=False):
        with self._lock:
            self.calls.append((url, dict(headers or {})))
            queue = self.routes.get(url)
            if not queue:
                return FakeResponse(404, b"not found")
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item()
        return item

    def urls(self):
        return [url for url, _ in self.calls]

    def count(self, url):
        return self.urls().count(url)


def image_bytes(fmt="PNG", color=(200, 30, 30), size=(40, 60)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, fmt)
    return buf.getvalue()


def landing_html(numbers):
    links = "\n".join(
        f'<li><a class="chapter" href="/manga/chapter-{n}">Chapter {n}</a></li>' for n in numbers
    )
    return f"<html><head><title>Manga</title></head><body><ul>{links}</ul></body></html>"


def chapter_html(image_urls):
    imgs = "\n".join(f'<img class="page" src="{u}"/>' for u in image_urls)
    return f"<html><body>{imgs}</body></html>"


def serve_chapter(session, number, pages=3, fmt="PNG"):
    """Registers a chapter page with `pages` images; returns the image URLs."""
    urls = [f"https://img.comic.test/{number}/{i}.png" for i in range(1, pages + 1)]
    session.add(f"{BASE}/manga/chapter-{number}", FakeResponse(200, chapter_html(urls)))
    for url in urls:
        session.add(url, FakeResponse(200, image_bytes(fmt)))
    return urls


def make_spec(tmp_path, **overrides):
    values = dict(
        starting_url=f"{BASE}/manga",
        chapter_pattern=CHAPTER_PATTERN,
        chapter_base_url=BASE,
        image_pattern=IMAGE_PATTERN,
        chapter_start=1,
        chapter_end=100,
        book_title_template="Manga ${start}-${end}",
        chapter_title_template="Chapter ${chapter}",
        manga_name="Manga",
        output_dir=str(tmp_path / "output"),
        temp_dir=str(tmp_path / "tmp"),
        log_dir=str(tmp_path / "logs"),
        thinking_time_ms=0,
    )
    values.update(overrides)
    return BookSpec(**values)


class RecordingBuilder:
    """Builder double that records calls and writes a marker file."""

    instances = []

    def __init__(self, name, title, author="", language="en"):
        self.format = name
        self.title = title
        self.chapter_titles = None
        self.chapters = []
        self.saved = None
        RecordingBuilder.instances.append(self)

    def add_title_page(self, chapter_titles):
        self.chapter_titles = list(chapter_titles)

    def add_chapter(self, content, chapter_title):
        self.chapters.append((chapter_title, content))

    def save_to(self, output_dir, filename):
        os.makedirs(output_dir, exist_ok=True)
        path = os.path.join(output_dir, f"{filename}.{self.format}")
        with open(path, "w") as fh:
            fh.write(self.title)
        self.saved = (output_dir, filename)
        return path

    @property
    def chapter_numbers(self):
        return [c.chapter_number for _, c in self.chapters]


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def pacer():
    return NoDelayPacer()


@pytest.fixture
def client(session, pacer):
    return FetchClient(session, pacer)


@pytest.fixture
def recording_builder():
    RecordingBuilder.instances = []
    return RecordingBuilder
