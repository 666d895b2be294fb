"""Properties files, BookSpec resolution and title templating."""

from __future__ import annotations

import os
import re
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlparse

from .errors import ConfigValidationError
from .models import BookSpec

GLOBAL_CONFIG_FILE = "web2book.properties"

MANDATORY_KEYS = (
    "starting.url",
    "chapter.pattern",
    "chapter.base.url",
    "image.pattern",
    "chapter.start",
    "chapter.end",
    "book.title.template",
    "chapter.title.template",
)

DEFAULT_CONCURRENCY = 4
DEFAULT_THINKING_TIME_MS = 1500
OUTPUT_FORMATS = ("pdf", "epub")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "f": "\f"}


# -----------------------------------------------------------
# .properties parsing
# -----------------------------------------------------------
def _unescape(text: str) -> str:
    out = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch != "\\" or i + 1 >= len(text):
            out.append(ch)
            i += 1
            continue
        nxt = text[i + 1]
        if nxt == "u" and re.match(r"[0-9a-fA-F]{4}", text[i + 2 : i + 6]):
            out.append(chr(int(text[i + 2 : i + 6], 16)))
            i += 6
            continue
        out.append(_ESCAPES.get(nxt, nxt))
        i += 2
    return "".join(out)


def _logical_lines(text: str):
    pending = ""
    for raw in text.splitlines():
        line = raw.lstrip()
        if not pending and (not line or line[0] in "#!"):
            continue
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2 == 1:
            pending += line[:-1]
            continue
        yield pending + line
        pending = ""
    if pending:
        yield pending


def parse_properties(text: str) -> Dict[str, str]:
    """Parses java.util.Properties text into a dict."""
    props: Dict[str, str] = {}
    for line in _logical_lines(text):
        match = re.match(r"((?:\\.|[^=:\s\\])*)\s*[=:]?\s*(.*)$", line, re.S)
        if not match:
            continue
        key = _unescape(match.group(1))
        if key:
            props[key] = _unescape(match.group(2))
    return props


def load_properties(path: str) -> Dict[str, str]:
    with open(path, "r", encoding="utf-8") as fh:
        return parse_properties(fh.read())


def collect_book_config_paths(global_props: Mapping[str, str]) -> List[str]:
    """Reads book.config.1, book.config.2, ... until the first gap."""
    paths = []
    index = 1
    while True:
        value = (global_props.get(f"book.config.{index}") or "").strip()
        if not value:
            break
        paths.append(value)
        index += 1
    return paths


# -----------------------------------------------------------
# BookSpec resolution
# -----------------------------------------------------------
def _get(props: Mapping[str, str], key: str) -> Optional[str]:
    value = props.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() == "true"


def _as_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _resolve_concurrency(book_props, global_props) -> int:
    for props in (book_props, global_props):
        value = _as_int(_get(props, "max.concurrent.image.downloads"))
        if value is not None and value > 0:
            return value
    return DEFAULT_CONCURRENCY


def validate_book_properties(book_props: Mapping[str, str], source: str = "book config") -> None:
    for key in MANDATORY_KEYS:
        if _get(book_props, key) is None:
            raise ConfigValidationError(f"Missing mandatory property '{key}' in {source}")

    start = _as_int(book_props["chapter.start"])
    end = _as_int(book_props["chapter.end"])
    if start is None or end is None:
        raise ConfigValidationError(f"chapter.start/chapter.end must be integers in {source}")
    if start > end:
        raise ConfigValidationError(
            f"chapter.start ({start}) is greater than chapter.end ({end}) in {source}"
        )

    try:
        pattern = re.compile(book_props["chapter.pattern"])
    except re.error as e:
        raise ConfigValidationError(f"Invalid chapter.pattern in {source}: {e}") from e
    if pattern.groups < 2:
        raise ConfigValidationError(
            f"chapter.pattern needs two capture groups (url, number) in {source}"
        )

    max_chapters = _get(book_props, "max.chapters.per.book")
    if max_chapters is not None and _as_int(max_chapters) is None:
        raise ConfigValidationError(
            f"Invalid max.chapters.per.book value '{max_chapters}' in {source}"
        )


def build_book_spec(
    book_props: Mapping[str, str],
    global_props: Optional[Mapping[str, str]] = None,
    source: Optional[str] = None,
) -> BookSpec:
    """Validates a book's properties and resolves them against global defaults."""
    global_props = global_props or {}
    label = source or "book config"
    validate_book_properties(book_props, label)

    output_dir = _get(book_props, "output.dir") or _get(global_props, "default.output.dir") or "output"

    thinking = _as_int(_get(book_props, "thinking.time.ms"))
    if thinking is None:
        thinking = _as_int(_get(global_props, "default.thinking.time.ms"))
    if thinking is None:
        thinking = DEFAULT_THINKING_TIME_MS

    default_format = (_get(global_props, "default.output.format") or "pdf").lower()
    if default_format not in OUTPUT_FORMATS:
        default_format = "pdf"
    output_format = (_get(book_props, "output.format") or default_format).lower()
    if output_format not in OUTPUT_FORMATS:
        output_format = default_format

    regenerate = _get(book_props, "regenerate.existing.books")
    if regenerate is None:
        regenerate = _get(global_props, "default.regenerate.existing.books")

    return BookSpec(
        starting_url=_get(book_props, "starting.url"),
        chapter_pattern=book_props["chapter.pattern"].strip(),
        chapter_base_url=_get(book_props, "chapter.base.url"),
        image_pattern=book_props["image.pattern"].strip(),
        chapter_start=int(book_props["chapter.start"].strip()),
        chapter_end=int(book_props["chapter.end"].strip()),
        book_title_template=book_props["book.title.template"],
        chapter_title_template=book_props["chapter.title.template"],
        book_filename_template=_get(book_props, "book.filename.template"),
        manga_name=_get(book_props, "manga.name") or "",
        author=_get(book_props, "book.author") or "",
        language=_get(book_props, "book.language") or "en",
        max_chapters_per_book=max(0, _as_int(_get(book_props, "max.chapters.per.book")) or 0),
        output_format=output_format,
        max_concurrent_downloads=_resolve_concurrency(book_props, global_props),
        thinking_time_ms=max(0, thinking),
        regenerate_existing=_as_bool(regenerate),
        output_dir=output_dir,
        temp_dir=_get(book_props, "temp.dir") or _get(global_props, "default.temp.dir") or "tmp",
        log_dir=_get(book_props, "log.dir") or _get(global_props, "default.log.dir"),
        delete_images_after=_as_bool(_get(book_props, "delete.images.after.generation")),
        delete_fragments_after=_as_bool(_get(book_props, "delete.xhtml.after.generation")),
        source=source,
    )


def load_book_spec(path: str, global_props: Optional[Mapping[str, str]] = None) -> BookSpec:
    if not os.path.exists(path):
        raise ConfigValidationError(f"Book config file not found: {os.path.abspath(path)}")
    return build_book_spec(load_properties(path), global_props, source=path)


def referer_for(spec: BookSpec) -> str:
    """Chapter base URL, or scheme://host of the starting URL."""
    if spec.chapter_base_url:
        return spec.chapter_base_url
    parsed = urlparse(spec.starting_url)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    return spec.starting_url


# -----------------------------------------------------------
# Templates & filenames
# -----------------------------------------------------------
def _expand_line_breaks(template: str) -> str:
    return template.replace("\\r\\n", "\r\n").replace("\\n", "\n").replace("\\r", "\r")


def apply_book_template(template: str, spec: BookSpec) -> str:
    result = _expand_line_breaks(template or "")
    return (
        result.replace("${start}", str(spec.chapter_start))
        .replace("${end}", str(spec.chapter_end))
        .replace("${manga}", spec.manga_name)
    )


def book_title(spec: BookSpec) -> str:
    return apply_book_template(spec.book_title_template, spec)


def book_filename(spec: BookSpec) -> str:
    return apply_book_template(spec.book_filename_template or spec.book_title_template, spec)


def chapter_title(spec: BookSpec, chapter_number: int) -> str:
    return spec.chapter_title_template.replace("${chapter}", str(chapter_number))


def sanitize_filename(name: Optional[str]) -> str:
    if name is None:
        return "unknown"
    sanitized = re.sub(r'[\\/:*?"<>|]', "_", name)
    parts = re.split(r"\s+-\s+", sanitized)
    sanitized = " - ".join(re.sub(r"\s+", " ", part.strip()) for part in parts)
    sanitized = re.sub(r"^[.\s]+|[.\s]+$", "", sanitized)
    return sanitized or "unknown"
