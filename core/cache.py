"""On-disk chapter state: fragments, image directories and finished books."""

from __future__ import annotations

import os
from typing import Iterable, List, Optional
from xml.sax.saxutils import escape, quoteattr

from bs4 import BeautifulSoup

from .config import book_filename, sanitize_filename
from .images import image_sort_key, is_image_file
from .log import log_debug, log_info, log_warning
from .models import BookSpec, ChapterContent, ChapterRef

FRAGMENT_DIR = "html"
IMAGES_DIR = "images"
MISSING_IMAGE_CLASS = "missing-image"


def fragment_path(fragment_dir: str, chapter_number: int) -> str:
    return os.path.join(fragment_dir, f"chapter-{chapter_number}.xhtml")


def chapter_images_dir(images_dir: str, chapter_number: int) -> str:
    return os.path.join(images_dir, str(chapter_number))


def list_chapter_images(chapter_dir: str) -> List[str]:
    """Image files of one chapter directory, in natural filename order."""
    if not os.path.isdir(chapter_dir):
        return []
    names = [
        n
        for n in os.listdir(chapter_dir)
        if is_image_file(n) and os.path.isfile(os.path.join(chapter_dir, n))
    ]
    return [os.path.join(chapter_dir, n) for n in sorted(names, key=image_sort_key)]


def read_fragment_placeholders(fragment_file: str) -> List[str]:
    """Filenames a chapter fragment renders as missing-image placeholders."""
    with open(fragment_file, "r", encoding="utf-8") as fh:
        soup = BeautifulSoup(fh.read(), "html.parser")
    return [
        p.get("data-filename", "")
        for p in soup.find_all("p", class_=MISSING_IMAGE_CLASS)
    ]


def load_existing_chapter(
    ref: ChapterRef, fragment_dir: str, images_dir: str
) -> Optional[ChapterContent]:
    """
    Returns the chapter as already processed by a previous run, or None when
    it has to be (re)processed: no fragment, no images on disk, or a fragment
    that still lists images which could not be downloaded.
    """
    n = ref.chapter_number
    fragment = fragment_path(fragment_dir, n)
    if not os.path.exists(fragment):
        return None

    chapter_dir = chapter_images_dir(images_dir, n)
    if not os.path.isdir(chapter_dir):
        log_warning(f"Chapter {n} xhtml exists but image directory is missing. Re-processing chapter.")
        return None

    images = list_chapter_images(chapter_dir)
    if not images:
        log_warning(f"Chapter {n} xhtml exists but no images found. Re-processing chapter.")
        return None

    try:
        missing = read_fragment_placeholders(fragment)
    except OSError as e:
        log_warning(f"Failed to check existing chapter {n}: {e}. Re-processing chapter.")
        return None
    if missing:
        log_info(
            f"Chapter {n} was previously incomplete ({len(missing)} missing images). Re-processing chapter."
        )
        return None

    log_info(f"Chapter {n} already processed, using existing files")
    return ChapterContent(ref=ref, images=images, fragment_file=fragment)


def write_chapter_fragment(
    chapter_title: str,
    chapter_number: int,
    images: Iterable[str],
    failed_filenames: Iterable[str],
    fragment_dir: str,
) -> str:
    """Writes chapter-<n>.xhtml listing images and placeholders in filename order."""
    by_name = {os.path.basename(p): p for p in images}
    failed = set(failed_filenames) - set(by_name)
    names = sorted(set(by_name) | failed, key=image_sort_key)

    title = escape(chapter_title)
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<!DOCTYPE html PUBLIC "-//W3C//DTD XHTML 1.1//EN" "http://www.w3.org/TR/xhtml11/DTD/xhtml11.dtd">',
        '<html xmlns="http://www.w3.org/1999/xhtml">',
        f"<head><title>{title}</title></head>",
        "<body>",
        f"<h1>{title}</h1>",
    ]
    for name in names:
        if name in by_name:
            src = escape(f"images/{chapter_number}/{name}")
            lines.append(f'<img src="{src}" alt="{escape(name)}"/>')
        else:
            lines.append(
                f'<p class="{MISSING_IMAGE_CLASS}" data-filename={quoteattr(name)}>'
                f"[Image could not be downloaded: {escape(name)}]</p>"
            )
    lines += ["</body>", "</html>", ""]

    os.makedirs(fragment_dir, exist_ok=True)
    path = fragment_path(fragment_dir, chapter_number)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write("\n".join(lines))
    log_debug(f"  Wrote chapter fragment {path}")
    return path


def output_filename(spec: BookSpec, start: int, end: int) -> str:
    return sanitize_filename(book_filename(spec.with_range(start, end))) + spec.extension


def book_file_exists(spec: BookSpec, start: int, end: int) -> bool:
    return os.path.exists(os.path.join(spec.output_dir, output_filename(spec, start, end)))
