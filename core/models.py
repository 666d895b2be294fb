from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set


@dataclass(frozen=True)
class BookSpec:
    """Per-book job settings, resolved once from the book and global config."""

    starting_url: str
    chapter_pattern: str
    chapter_base_url: str
    image_pattern: str
    chapter_start: int
    chapter_end: int
    book_title_template: str
    chapter_title_template: str
    book_filename_template: Optional[str] = None
    manga_name: str = ""
    author: str = ""
    language: str = "en"
    max_chapters_per_book: int = 0
    output_format: str = "pdf"
    max_concurrent_downloads: int = 4
    thinking_time_ms: int = 1500
    regenerate_existing: bool = False
    output_dir: str = "output"
    temp_dir: str = "tmp"
    log_dir: Optional[str] = None
    delete_images_after: bool = False
    delete_fragments_after: bool = False
    source: Optional[str] = None

    def with_range(self, start: int, end: int) -> "BookSpec":
        """Copy with the chapter range replaced, used for per-volume naming."""
        return dataclasses.replace(self, chapter_start=start, chapter_end=end)

    @property
    def extension(self) -> str:
        return ".epub" if self.output_format == "epub" else ".pdf"


@dataclass(frozen=True)
class ChapterRef:
    chapter_number: int
    relative_url: str
    absolute_url: str


@dataclass
class ChapterContent:
    ref: ChapterRef
    images: List[str]
    fragment_file: str
    failed_image_names: Set[str] = field(default_factory=set)

    @property
    def chapter_number(self) -> int:
        return self.ref.chapter_number


@dataclass
class ImageOutcome:
    original_index: int
    url: str
    filename: str
    # name reserved for the JPEG transcode of a .webp target
    converted_filename: Optional[str] = None
    file_path: Optional[str] = None
    success: bool = False


@dataclass
class DownloadResult:
    images: List[str] = field(default_factory=list)
    failed_urls: List[str] = field(default_factory=list)
    failed_filename_by_url: Dict[str, str] = field(default_factory=dict)
    failed_filenames: List[str] = field(default_factory=list)


@dataclass
class IncompleteBookRecord:
    filename: str
    volume_index: int
    failed_urls: List[str]


@dataclass
class VolumeResult:
    volume_index: int
    start: int
    end: int
    chapters: List[int]
    path: Optional[str] = None
    filename: Optional[str] = None
    skipped_existing: bool = False
    truncated: bool = False
    failed_urls: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class JobReport:
    title: str
    volumes: List[VolumeResult] = field(default_factory=list)
    incomplete: List[IncompleteBookRecord] = field(default_factory=list)
    aborted: bool = False
    reason: Optional[str] = None

    @property
    def built(self) -> List[VolumeResult]:
        return [v for v in self.volumes if v.path]

    @property
    def failed(self) -> List[VolumeResult]:
        return [v for v in self.volumes if v.error]
