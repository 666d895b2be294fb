from __future__ import annotations

import os
from typing import List, Optional, Tuple

from core.images import image_sort_key
from core.models import ChapterContent

MISSING_IMAGE_TEXT = "[Image could not be downloaded: {name}]"
UNREADABLE_IMAGE_TEXT = "[Image can not be read: {name}]"


class BaseBookBuilder:
    """Base class for book writers. One instance assembles one volume."""

    name: str = "base"
    extension: str = ""

    def __init__(self, title: str, author: str = "", language: str = "en") -> None:
        self.title = title
        self.author = author
        self.language = language
        self.chapter_titles: Optional[List[str]] = None
        self.chapters: List[Tuple[str, ChapterContent]] = []

    @property
    def title_lines(self) -> List[str]:
        lines = [line.strip() for line in self.title.splitlines()]
        return [line for line in lines if line] or [self.title]

    def add_title_page(self, chapter_titles: List[str]) -> None:
        """Requests a title page with a table of contents before the chapters."""
        self.chapter_titles = list(chapter_titles)

    def add_chapter(self, content: ChapterContent, chapter_title: str) -> None:
        self.chapters.append((chapter_title, content))

    def save_to(self, output_dir: str, filename: str) -> str:
        """Writes the book and returns the produced file path."""
        raise NotImplementedError

    def output_path(self, output_dir: str, filename: str) -> str:
        os.makedirs(output_dir, exist_ok=True)
        return os.path.join(output_dir, f"{filename}{self.extension}")

    @staticmethod
    def page_sequence(content: ChapterContent) -> List[Tuple[str, Optional[str]]]:
        """(filename, path) per page in filename order; path is None for a missing image."""
        by_name = {os.path.basename(p): p for p in content.images}
        names = set(by_name) | set(content.failed_image_names)
        return [(n, by_name.get(n)) for n in sorted(names, key=image_sort_key)]
