"""Volume planning and the per-book chapter pipeline."""

from __future__ import annotations

import logging
import os
import shutil
import time
from typing import Callable, List, Optional, Tuple

from builders import create_builder

from .cache import (
    FRAGMENT_DIR,
    IMAGES_DIR,
    book_file_exists,
    chapter_images_dir,
    load_existing_chapter,
    write_chapter_fragment,
)
from .config import (
    book_filename,
    book_title,
    chapter_title,
    referer_for,
    sanitize_filename,
)
from .errors import ChallengeDetected, FetchFailure, JobInterrupted, NoContentError
from .extract import extract_chapters, extract_image_urls, page_title, select_chapters
from .fetch import FetchClient, is_challenge_page
from .images import ImageDownloader, image_sort_key
from .log import (
    attach_book_log,
    detach_book_log,
    format_duration,
    log_debug,
    log_error,
    log_info,
    log_warning,
)
from .models import (
    BookSpec,
    ChapterContent,
    ChapterRef,
    IncompleteBookRecord,
    JobReport,
    VolumeResult,
)
from .pacing import Pacer

INCOMPLETE_SUFFIX = " - INCOMPLETE"


def plan_volumes(chapters: List[ChapterRef], max_per_book: int) -> List[List[ChapterRef]]:
    """Splits chapters into consecutive batches; max_per_book <= 0 means one volume."""
    if not chapters:
        return []
    if not max_per_book or max_per_book <= 0:
        return [list(chapters)]
    return [chapters[i : i + max_per_book] for i in range(0, len(chapters), max_per_book)]


def format_incomplete_report(records: List[IncompleteBookRecord]) -> List[str]:
    if not records:
        return ["All books were generated successfully with all images downloaded."]
    lines = ["=== INCOMPLETE BOOKS REPORT ===", f"Total incomplete books: {len(records)}"]
    for record in records:
        lines.append(f"Book {record.volume_index}: {record.filename}")
        lines.append(f"  Failed image URLs ({len(record.failed_urls)}):")
        lines.extend(f"    - {url}" for url in record.failed_urls)
    lines.append("=== END INCOMPLETE BOOKS REPORT ===")
    return lines


class BookJob:
    """Runs one book configuration from landing page to finished volumes."""

    def __init__(
        self,
        spec: BookSpec,
        client: Optional[FetchClient] = None,
        pacer: Optional[Pacer] = None,
        builder_factory: Optional[Callable] = None,
        downloader: Optional[ImageDownloader] = None,
        log_level: int = logging.INFO,
    ) -> None:
        self.spec = spec
        self.pacer = pacer or (client.pacer if client else Pacer())
        self.client = client or FetchClient(pacer=self.pacer)
        self.builder_factory = builder_factory or create_builder
        self.downloader = downloader or ImageDownloader(
            self.client, self.pacer, concurrency=spec.max_concurrent_downloads
        )
        self.log_level = log_level
        self.images_dir = os.path.join(spec.temp_dir, IMAGES_DIR)
        self.fragment_dir = os.path.join(spec.temp_dir, FRAGMENT_DIR)

    # -----------------------------------------------------------
    # entry point
    # -----------------------------------------------------------
    def run(self) -> JobReport:
        title = book_title(self.spec)
        report = JobReport(title=title)
        handler = None
        started = time.monotonic()
        try:
            handler = attach_book_log(
                self.spec.log_dir or self.spec.output_dir,
                sanitize_filename(title),
                self.log_level,
            )
            os.makedirs(self.spec.output_dir, exist_ok=True)
            os.makedirs(self.images_dir, exist_ok=True)
            os.makedirs(self.fragment_dir, exist_ok=True)
        except OSError as e:
            log_error(f"Failed to create output, temp or log directories: {e}")
            detach_book_log(handler)
            return self._abort(report, f"directory setup failed: {e}")

        try:
            log_info(f"Starting book: {' '.join(title.split())}")
            self._run(report)
        except JobInterrupted as e:
            log_error(f"{e}. Already downloaded files are kept.")
            self._abort(report, "interrupted")
        finally:
            log_info(f"Book processing finished in {format_duration((time.monotonic() - started) * 1000)}")
            detach_book_log(handler)
        return report

    def _abort(self, report: JobReport, reason: str) -> JobReport:
        report.aborted = True
        report.reason = reason
        return report

    def _run(self, report: JobReport) -> None:
        spec = self.spec
        self.client.set_referer(referer_for(spec))

        chapters = self.discover_chapters(report)
        if chapters is None:
            return

        volumes = plan_volumes(chapters, spec.max_chapters_per_book)
        if spec.max_chapters_per_book > 0:
            log_info(
                f"Processing {len(chapters)} chapters into {len(volumes)} books "
                f"(max {spec.max_chapters_per_book} chapters per book)"
            )

        done_before = 0
        for index, refs in enumerate(volumes, start=1):
            volume = self.process_volume(index, len(volumes), refs, len(chapters), done_before, report)
            report.volumes.append(volume)
            done_before += len(refs)

        log_info(f"Completed processing all {len(volumes)} books")
        self.cleanup()
        for line in format_incomplete_report(report.incomplete):
            if report.incomplete:
                log_warning(line)
            else:
                log_info(line)

    # -----------------------------------------------------------
    # discovery
    # -----------------------------------------------------------
    def discover_chapters(self, report: JobReport) -> Optional[List[ChapterRef]]:
        spec = self.spec
        try:
            html = self.client.fetch_text(spec.starting_url)
        except FetchFailure as e:
            log_error(f"Failed to fetch starting page. Aborting book processing. ({e})")
            self._abort(report, "starting page unavailable")
            return None

        if is_challenge_page(html):
            log_error("Cloudflare challenge detected on starting URL, aborting this book.")
            self.save_debug_html(html, "debug-cloudflare-starting-page.html", "challenge on starting page")
            self._abort(report, str(ChallengeDetected(spec.starting_url)))
            return None

        found = extract_chapters(html, spec.chapter_pattern, spec.chapter_base_url)
        if not found:
            log_error("No chapters found. Check chapter.pattern. Aborting book processing.")
            self.save_debug_html(html, "debug-starting-page.html", "starting page")
            self._abort(report, "no chapters found")
            return None
        log_info(f"Found {len(found)} total chapters")

        chapters = select_chapters(found, spec.chapter_start, spec.chapter_end)
        if not chapters:
            log_error(
                f"No chapters found in range {spec.chapter_start} to {spec.chapter_end}. "
                "Aborting book processing."
            )
            self._abort(report, "no chapters in range")
            return None
        log_info(
            f"Processing {len(chapters)} chapters in range {spec.chapter_start} to {spec.chapter_end}"
        )
        return chapters

    # -----------------------------------------------------------
    # volumes
    # -----------------------------------------------------------
    def process_volume(
        self,
        index: int,
        total: int,
        refs: List[ChapterRef],
        total_chapters: int,
        done_before: int,
        report: JobReport,
    ) -> VolumeResult:
        start, end = refs[0].chapter_number, refs[-1].chapter_number
        volume = VolumeResult(volume_index=index, start=start, end=end, chapters=[])
        log_info(f"=== Processing Book {index}/{total}: Chapters {start} to {end} ===")

        if not self.spec.regenerate_existing and book_file_exists(self.spec, start, end):
            log_info(
                f"Skipping book {index}/{total} - already exists (Chapters {start} to {end})"
            )
            volume.skipped_existing = True
            return volume

        started = time.monotonic()
        contents: List[ChapterContent] = []
        failed_urls: List[str] = []

        for pos, ref in enumerate(refs):
            n = ref.chapter_number
            percentage = round((done_before + pos + 1) * 100.0 / total_chapters)
            log_info(f"Processing chapter {n} ({percentage}% overall)")

            cached = load_existing_chapter(ref, self.fragment_dir, self.images_dir)
            if cached is not None:
                contents.append(cached)
                log_info(f"Skipped processing chapter {n} (already exists)")
                continue

            chapter_started = time.monotonic()
            try:
                content, chapter_failed = self.process_chapter(ref)
                contents.append(content)
                failed_urls.extend(chapter_failed)
                log_info(
                    f"Completed chapter {n} (duration: "
                    f"{format_duration((time.monotonic() - chapter_started) * 1000)})"
                )
            except ChallengeDetected as e:
                log_error(f"{e}, stopping further downloads for this book.")
                log_info(f"Will generate book for {len(contents)} successfully processed chapters only.")
                volume.truncated = True
                break
            except FetchFailure as e:
                log_warning(f"Failed to fetch chapter {n} from URL: {ref.absolute_url}. Skipping. ({e})")
            except NoContentError as e:
                log_warning(f"{e}. Skipping.")
            except OSError as e:
                log_error(f"Error processing chapter {n}: {e}", exc_info=True)

            if pos < len(refs) - 1:
                self.pacer.between_chapters(self.spec.thinking_time_ms)

        log_debug(f"Book {index}: {len(contents)} of {len(refs)} chapters processed")
        try:
            self.assemble_volume(volume, total, contents, failed_urls, report)
        except JobInterrupted:
            raise
        except Exception as e:
            log_error(f"Failed to generate book {index}: {e}", exc_info=True)
            volume.path = None
            volume.error = str(e) or type(e).__name__
            return volume
        log_info(
            f"Completed book {index}/{total} (duration: "
            f"{format_duration((time.monotonic() - started) * 1000)})"
        )
        return volume

    def process_chapter(self, ref: ChapterRef) -> Tuple[ChapterContent, List[str]]:
        """Fetches, downloads and writes the fragment of one chapter."""
        n = ref.chapter_number
        html = self.client.fetch_text(ref.absolute_url)
        if is_challenge_page(html):
            self.save_debug_html(html, f"debug-cloudflare-chapter-{n}.html", f"challenge on chapter {n}")
            raise ChallengeDetected(ref.absolute_url, n)

        urls = extract_image_urls(html, self.spec.image_pattern)
        if not urls:
            self.save_debug_html(html, f"debug-chapter-{n}.html", f"chapter {n}")
            raise NoContentError(n)
        log_info(f"Found {len(urls)} images in chapter {n}")

        result = self.downloader.download_chapter_images(
            urls, chapter_images_dir(self.images_dir, n), n
        )
        if not result.images:
            log_warning(f"Chapter {n} has no successfully downloaded images, keeping placeholders only.")

        fragment = write_chapter_fragment(
            chapter_title(self.spec, n), n, result.images, result.failed_filenames, self.fragment_dir
        )
        content = ChapterContent(
            ref=ref,
            images=sorted(result.images, key=image_sort_key),
            fragment_file=fragment,
            failed_image_names=set(result.failed_filenames),
        )
        return content, list(result.failed_urls)

    def assemble_volume(
        self,
        volume: VolumeResult,
        total: int,
        contents: List[ChapterContent],
        failed_urls: List[str],
        report: JobReport,
    ) -> None:
        index = volume.volume_index
        if not contents:
            log_warning(f"No chapters were successfully processed for book {index}, skipping book generation.")
            return

        numbers = [c.chapter_number for c in contents]
        effective = self.spec.with_range(min(numbers), max(numbers))
        title = book_title(effective)
        filename = book_filename(effective)
        if failed_urls:
            filename += INCOMPLETE_SUFFIX
            log_warning(
                f"Book {index} has {len(failed_urls)} failed image downloads, adding -INCOMPLETE suffix"
            )
        filename = sanitize_filename(filename)
        if failed_urls:
            record = IncompleteBookRecord(filename=filename, volume_index=index, failed_urls=list(failed_urls))
            report.incomplete.append(record)

        volume.chapters = numbers
        volume.failed_urls = list(failed_urls)
        volume.filename = filename
        log_info(f"Generating book {index}/{total}: Chapters {min(numbers)} to {max(numbers)}")

        builder = self.builder_factory(
            self.spec.output_format, title, author=self.spec.author, language=self.spec.language
        )
        chapter_titles = [chapter_title(self.spec, n) for n in numbers]
        builder.add_title_page(chapter_titles)
        for content, ch_title in zip(contents, chapter_titles):
            builder.add_chapter(content, ch_title)
        volume.path = builder.save_to(self.spec.output_dir, filename)
        log_info(f"Book created: {os.path.abspath(volume.path)}")
        log_info(
            f"Book {index} contains {len(numbers)} chapters (range: {min(numbers)} to {max(numbers)})"
        )

    # -----------------------------------------------------------
    # housekeeping
    # -----------------------------------------------------------
    def save_debug_html(self, html: str, filename: str, description: str) -> Optional[str]:
        if not html:
            log_warning(f"Cannot save debug HTML for {description}: page is empty")
            return None
        path = os.path.join(self.spec.output_dir, filename)
        try:
            os.makedirs(self.spec.output_dir, exist_ok=True)
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(html)
        except OSError as e:
            log_warning(f"Failed to save HTML debug file for {description}: {e}")
            return None
        title = page_title(html)
        suffix = f' (page title: "{title}")' if title else ""
        log_info(f"Saved HTML debug file for {description}: {os.path.abspath(path)}{suffix}")
        return path

    def cleanup(self) -> None:
        if self.spec.delete_fragments_after and os.path.isdir(self.fragment_dir):
            shutil.rmtree(self.fragment_dir, ignore_errors=True)
            log_info("Deleted temporary HTML directory")
        if self.spec.delete_images_after and os.path.isdir(self.images_dir):
            shutil.rmtree(self.images_dir, ignore_errors=True)
            log_info("Deleted temporary images directory")
