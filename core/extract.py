"""Regex-driven chapter and image discovery."""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional

from bs4 import BeautifulSoup

from .errors import ConfigValidationError
from .log import log_debug, log_error
from .models import ChapterRef


def build_absolute_url(url: str, base_url: str) -> str:
    if url.startswith("http://") or url.startswith("https://"):
        return url
    base = base_url[:-1] if base_url.endswith("/") else base_url
    if not url.startswith("/"):
        url = "/" + url
    return base + url


def extract_chapters(html: str, pattern: str, base_url: str) -> List[ChapterRef]:
    """
    Finds every chapter link on the landing page, in document order.
    Group 1 of `pattern` is the link, group 2 the chapter number.
    Matches whose number does not parse are skipped.
    """
    try:
        regex = re.compile(pattern)
    except re.error as e:
        raise ConfigValidationError(f"Invalid chapter pattern: {e}") from e
    if regex.groups < 2:
        raise ConfigValidationError(
            "Chapter pattern must have two capture groups (url, chapter number)"
        )

    chapters = []
    for match in regex.finditer(html or ""):
        link, number = match.group(1), match.group(2)
        if not link or number is None:
            continue
        try:
            chapter_number = int(number)
        except ValueError:
            log_debug(f"  Skipping chapter link with unparsable number: {number!r}")
            continue
        relative = link if link.startswith(("http://", "https://", "/")) else "/" + link
        chapters.append(
            ChapterRef(
                chapter_number=chapter_number,
                relative_url=relative,
                absolute_url=build_absolute_url(link, base_url),
            )
        )
    return chapters


def extract_image_urls(html: str, pattern: str) -> List[str]:
    """Returns group 1 of every match, in document order. Empty on a bad pattern."""
    try:
        regex = re.compile(pattern)
    except re.error as e:
        log_error(f"Failed to compile image pattern {pattern!r}: {e}")
        return []
    if regex.groups < 1:
        log_error(f"Image pattern {pattern!r} has no capture group")
        return []
    return [m.group(1) for m in regex.finditer(html or "") if m.group(1)]


def select_chapters(chapters: Iterable[ChapterRef], start: int, end: int) -> List[ChapterRef]:
    """Keeps chapters in [start, end], first occurrence per number, sorted ascending."""
    unique: Dict[int, ChapterRef] = {}
    for ref in chapters:
        if start <= ref.chapter_number <= end and ref.chapter_number not in unique:
            unique[ref.chapter_number] = ref
    return [unique[n] for n in sorted(unique)]


def page_title(html: Optional[str]) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    if soup.title and soup.title.string:
        return soup.title.string.strip()
    return ""
