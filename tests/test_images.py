import os
import threading

import pytest

from conftest import FakeResponse, image_bytes
from core.errors import JobInterrupted
from core.images import (
    FilenameAllocator,
    ImageDownloader,
    filename_from_url,
    image_sort_key,
    is_webp,
)
from core.pacing import NoDelayPacer

IMG = "https://img.comic.test"


def make_downloader(client, pacer, **kwargs):
    return ImageDownloader(client, pacer, concurrency=kwargs.pop("concurrency", 3), **kwargs)


def test_filename_from_url():
    assert filename_from_url(f"{IMG}/ch/001.png?x=1", 0) == "001.png"
    assert filename_from_url(f"{IMG}/ch/page%201.jpg", 0) == "page 1.jpg"
    assert filename_from_url(f"{IMG}/ch/noext", 3) == "image_3.jpg"
    assert filename_from_url(f"{IMG}/ch/", 4) == "image_4.jpg"


def test_allocator_suffixes_collisions():
    alloc = FilenameAllocator()
    names = [
        alloc.allocate(f"{IMG}/a/1.jpg", 0),
        alloc.allocate(f"{IMG}/b/1.jpg", 1),
        alloc.allocate(f"{IMG}/c/1_1.jpg", 2),
        alloc.allocate(f"{IMG}/d/1.jpg", 3),
    ]
    assert names == ["1.jpg", "1_1.jpg", "1_1_1.jpg", "1_2.jpg"]
    assert len(set(names)) == 4


def test_allocator_rename_reserves_new_name():
    alloc = FilenameAllocator()
    alloc.allocate(f"{IMG}/1.jpg", 0)
    alloc.allocate(f"{IMG}/1.webp", 1)
    assert alloc.rename("1.webp", ".jpg") == "1_1.jpg"


def test_write_once_skips_existing(tmp_path):
    alloc = FilenameAllocator()
    path = str(tmp_path / "1.jpg")
    assert alloc.write_once(path, b"first")
    assert not alloc.write_once(path, b"second")
    assert open(path, "rb").read() == b"first"


def test_write_once_leaves_no_partial_file(tmp_path):
    alloc = FilenameAllocator()
    path = str(tmp_path / "1.jpg")
    assert alloc.write_once(path, b"data")
    assert os.listdir(str(tmp_path)) == ["1.jpg"]


def test_failed_write_leaves_nothing_behind(tmp_path, monkeypatch):
    alloc = FilenameAllocator()
    path = str(tmp_path / "1.jpg")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(OSError):
        alloc.write_once(path, b"data")
    assert os.listdir(str(tmp_path)) == []


def test_image_sort_key_is_numeric():
    names = ["10.jpg", "2.jpg", "1.jpg", "image_11.jpg", "image_2.jpg"]
    assert sorted(names, key=image_sort_key) == ["1.jpg", "2.jpg", "10.jpg", "image_2.jpg", "image_11.jpg"]


def test_is_webp():
    assert is_webp(image_bytes("WEBP"))
    assert not is_webp(image_bytes("PNG"))
    assert not is_webp(b"RIFF")


def test_downloads_all_images_in_url_order(tmp_path, session, client, pacer):
    urls = [f"{IMG}/5/{n}.png" for n in (3, 1, 2, 10)]
    for url in urls:
        session.add(url, FakeResponse(200, image_bytes()))

    result = make_downloader(client, pacer).download_chapter_images(urls, str(tmp_path), 5)

    assert [os.path.basename(p) for p in result.images] == ["3.png", "1.png", "2.png", "10.png"]
    assert result.failed_urls == []
    assert all(os.path.exists(p) for p in result.images)
    assert pacer.requested == []


def test_colliding_basenames_get_suffix(tmp_path, session, client, pacer):
    urls = [f"{IMG}/a/page.png", f"{IMG}/b/page.png"]
    for url in urls:
        session.add(url, FakeResponse(200, image_bytes()))

    result = make_downloader(client, pacer).download_chapter_images(urls, str(tmp_path), 1)

    assert [os.path.basename(p) for p in result.images] == ["page.png", "page_1.png"]


def test_existing_files_are_not_downloaded_again(tmp_path, session, client, pacer):
    urls = [f"{IMG}/1/1.png", f"{IMG}/1/2.png"]
    (tmp_path / "1.png").write_bytes(image_bytes())
    session.add(urls[1], FakeResponse(200, image_bytes()))

    result = make_downloader(client, pacer).download_chapter_images(urls, str(tmp_path), 1)

    assert session.urls() == [urls[1]]
    assert len(result.images) == 2


def test_webp_is_transcoded_to_jpeg(tmp_path, session, client, pacer):
    url = f"{IMG}/1/1.webp"
    session.add(url, FakeResponse(200, image_bytes("WEBP")))

    result = make_downloader(client, pacer).download_chapter_images([url], str(tmp_path), 1)

    assert [os.path.basename(p) for p in result.images] == ["1.jpg"]
    assert (tmp_path / "1.jpg").read_bytes()[:2] == b"\xff\xd8"
    assert not (tmp_path / "1.webp").exists()


def test_webp_and_jpg_sharing_a_stem_are_both_kept(tmp_path, session, client, pacer):
    jpg, webp = f"{IMG}/a/1.jpg", f"{IMG}/b/1.webp"
    session.add(jpg, FakeResponse(200, image_bytes("JPEG", color=(10, 10, 10))))
    session.add(webp, FakeResponse(200, image_bytes("WEBP", color=(250, 250, 250))))
    downloader = make_downloader(client, pacer, concurrency=1)

    result = downloader.download_chapter_images([jpg, webp], str(tmp_path), 1)

    assert session.urls() == [jpg, webp]
    assert [os.path.basename(p) for p in result.images] == ["1.jpg", "1_1.jpg"]
    assert result.failed_urls == []

    again = downloader.download_chapter_images([jpg, webp], str(tmp_path), 1)

    assert session.urls() == [jpg, webp]
    assert [os.path.basename(p) for p in again.images] == ["1.jpg", "1_1.jpg"]


def test_converted_webp_counts_as_cached(tmp_path, session, client, pacer):
    (tmp_path / "1.jpg").write_bytes(image_bytes("JPEG"))

    result = make_downloader(client, pacer).download_chapter_images([f"{IMG}/1/1.webp"], str(tmp_path), 1)

    assert session.calls == []
    assert [os.path.basename(p) for p in result.images] == ["1.jpg"]


def test_undecodable_webp_keeps_original_bytes_and_name(tmp_path, session, client, pacer):
    broken = b"RIFF\x10\x00\x00\x00WEBPVP8 garbage"
    url = f"{IMG}/1/1.webp"
    session.add(url, FakeResponse(200, broken))

    result = make_downloader(client, pacer).download_chapter_images([url], str(tmp_path), 1)

    assert [os.path.basename(p) for p in result.images] == ["1.webp"]
    assert (tmp_path / "1.webp").read_bytes() == broken


def test_failed_image_recovers_on_delayed_retry(tmp_path, session, client, pacer):
    url = f"{IMG}/1/1.png"
    # three failed attempts in the first pass, then the server recovers
    session.add(url, FakeResponse(500), FakeResponse(500), FakeResponse(500), FakeResponse(200, image_bytes()))

    result = make_downloader(client, pacer).download_chapter_images([url], str(tmp_path), 7)

    assert result.failed_urls == []
    assert [os.path.basename(p) for p in result.images] == ["1.png"]
    assert ("delayed image retry of chapter 7", 300) in pacer.requested
    assert session.count(url) == 4


def test_permanent_failure_is_reported_with_filename(tmp_path, session, client, pacer):
    urls = [f"{IMG}/1/{n}.png" for n in range(1, 6)]
    for url in urls:
        session.add(url, FakeResponse(200, image_bytes()))
    session.add(urls[2], FakeResponse(404))

    result = make_downloader(client, pacer).download_chapter_images(urls, str(tmp_path), 1)

    assert [os.path.basename(p) for p in result.images] == ["1.png", "2.png", "4.png", "5.png"]
    assert result.failed_urls == [urls[2]]
    assert result.failed_filename_by_url == {urls[2]: "3.png"}
    assert result.failed_filenames == ["3.png"]
    assert not (tmp_path / "3.png").exists()
    retries = [r for r in pacer.requested if r[0].startswith("delayed image retry")]
    assert retries == [("delayed image retry of chapter 1", 300)]
    # 3 attempts in the first pass, 3 more in the single retry
    assert session.count(urls[2]) == 6


def test_timed_out_image_is_retried(tmp_path, session, client, pacer):
    url = f"{IMG}/1/1.png"
    release = threading.Event()

    def stalled():
        release.wait(5)
        return FakeResponse(500)

    session.add(url, stalled, FakeResponse(200, image_bytes()))
    downloader = make_downloader(client, pacer, wait_timeout=0.2, shutdown_grace=0)
    try:
        result = downloader.download_chapter_images([url], str(tmp_path), 1)
    finally:
        release.set()

    assert result.failed_urls == []
    assert (tmp_path / "1.png").exists()
    assert ("delayed image retry of chapter 1", 300) in pacer.requested


def test_interrupt_during_retry_wait_keeps_written_files(tmp_path, session, client):
    class InterruptingPacer(NoDelayPacer):
        def sleep(self, seconds, reason="wait"):
            if reason.startswith("delayed image retry"):
                self.cancel()
            super().sleep(seconds, reason)

    pacer = InterruptingPacer()
    client.pacer = pacer
    urls = [f"{IMG}/1/1.png", f"{IMG}/1/2.png"]
    session.add(urls[0], FakeResponse(200, image_bytes()))
    session.add(urls[1], FakeResponse(503))

    with pytest.raises(JobInterrupted):
        make_downloader(client, pacer).download_chapter_images(urls, str(tmp_path), 1)
    assert (tmp_path / "1.png").exists()


def test_cancelled_before_start_raises(tmp_path, session, client, pacer):
    url = f"{IMG}/1/1.png"
    session.add(url, FakeResponse(200, image_bytes()))
    pacer.cancel()

    with pytest.raises(JobInterrupted):
        make_downloader(client, pacer).download_chapter_images([url], str(tmp_path), 1)
    assert session.calls == []
