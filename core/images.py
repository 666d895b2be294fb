"""Concurrent per-chapter image downloading with a delayed single retry."""

from __future__ import annotations

import dataclasses
import io
import os
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from concurrent.futures import wait as wait_futures
from typing import Dict, List, Optional, Set
from urllib.parse import unquote, urlparse

from PIL import Image
from requests.utils import requote_uri

from .errors import FetchFailure, ImageDownloadError, PermanentImageFailure
from .fetch import FetchClient
from .log import log_debug, log_error, log_info, log_verbose, log_warning
from .models import DownloadResult, ImageOutcome
from .pacing import Pacer

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")

IMAGE_WAIT_TIMEOUT = 60  # seconds per image result
RETRY_DELAY = 5 * 60  # one fixed back-off before the single retry
SHUTDOWN_GRACE = 60
POLL_INTERVAL = 0.5
JPEG_QUALITY = 90


# -----------------------------------------------------------
# filename & format helpers
# -----------------------------------------------------------
def is_webp(data: bytes) -> bool:
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP"


def transcode_to_jpeg(data: bytes, quality: int = JPEG_QUALITY) -> Optional[bytes]:
    """Re-encodes an image as JPEG. Returns None if Pillow cannot decode it."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.mode in ("RGBA", "LA", "P"):
                img = img.convert("RGBA")
                background = Image.new("RGB", img.size, (255, 255, 255))
                background.paste(img, mask=img.split()[-1])
                img = background
            else:
                img = img.convert("RGB")
            out = io.BytesIO()
            img.save(out, "jpeg", quality=quality)
            return out.getvalue()
    except Exception as e:
        log_warning(f"  Warning: WebP to JPEG conversion failed, keeping original bytes: {e}")
        return None


def filename_from_url(url: str, index: int) -> str:
    try:
        name = os.path.basename(unquote(urlparse(url).path))
    except ValueError:
        name = ""
    if not name or "." not in name:
        name = f"image_{index}.jpg"
    return name


def _with_suffix(name: str, counter: int) -> str:
    stem, ext = os.path.splitext(name)
    if not stem:
        return f"{name}_{counter}"
    return f"{stem}_{counter}{ext}"


def image_sort_key(name: str):
    """Natural order on the filename stem: 1, 2, 10 rather than 1, 10, 2."""
    stem = os.path.splitext(os.path.basename(name))[0]
    parts = []
    for chunk in re.split(r"(\d+)", stem):
        if not chunk:
            continue
        parts.append((0, int(chunk), "") if chunk.isdigit() else (1, 0, chunk.lower()))
    return parts, os.path.basename(name)


def is_image_file(name: str) -> bool:
    return name.lower().endswith(IMAGE_EXTENSIONS)


class FilenameAllocator:
    """Collision-free names for one chapter, shared by all of its download tasks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._taken: Set[str] = set()

    def _reserve(self, base: str) -> str:
        counter = self._counters.get(base, 0)
        name = base if counter == 0 else _with_suffix(base, counter)
        while name in self._taken:
            counter += 1
            name = _with_suffix(base, counter)
        self._counters[base] = counter + 1
        self._taken.add(name)
        return name

    def allocate(self, url: str, index: int) -> str:
        with self._lock:
            return self._reserve(filename_from_url(url, index))

    def rename(self, name: str, new_ext: str) -> str:
        """Reserves `name` with its extension swapped, suffixing on collision."""
        target = os.path.splitext(name)[0] + new_ext
        with self._lock:
            if target == name:
                return name
            return self._reserve(target)

    def write_once(self, path: str, data: bytes) -> bool:
        """
        Writes unless the file already exists. False means it was skipped.
        The bytes land in a .part file first, so an interrupted write never
        leaves a truncated image under the final name.
        """
        with self._lock:
            if os.path.exists(path):
                return False
            partial = path + ".part"
            try:
                with open(partial, "wb") as fh:
                    fh.write(data)
                os.replace(partial, path)
            except OSError:
                if os.path.exists(partial):
                    os.remove(partial)
                raise
            return True


# -----------------------------------------------------------
# downloader
# -----------------------------------------------------------
class ImageDownloader:
    def __init__(
        self,
        client: FetchClient,
        pacer: Pacer,
        concurrency: int = 4,
        wait_timeout: float = IMAGE_WAIT_TIMEOUT,
        retry_delay: float = RETRY_DELAY,
        shutdown_grace: float = SHUTDOWN_GRACE,
    ) -> None:
        self.client = client
        self.pacer = pacer
        self.concurrency = max(1, int(concurrency))
        self.wait_timeout = wait_timeout
        self.retry_delay = retry_delay
        self.shutdown_grace = shutdown_grace

    @staticmethod
    def cached_path(
        dest_dir: str, filename: str, converted_filename: Optional[str] = None
    ) -> Optional[str]:
        for name in (filename, converted_filename):
            if not name:
                continue
            pth = os.path.join(dest_dir, name)
            if os.path.exists(pth):
                return pth
        return None

    def _store(
        self, outcome: ImageOutcome, data: bytes, dest_dir: str, allocator: FilenameAllocator
    ) -> ImageOutcome:
        filename = outcome.filename
        if is_webp(data):
            jpeg = transcode_to_jpeg(data)
            if jpeg is not None:
                data = jpeg
                if outcome.converted_filename:
                    filename = outcome.converted_filename
                elif not filename.lower().endswith((".jpg", ".jpeg")):
                    filename = allocator.rename(filename, ".jpg")
                log_debug(f"  Converted WebP image to JPEG: {filename}")
        pth = os.path.join(dest_dir, filename)
        if not allocator.write_once(pth, data):
            log_verbose(f"  Skipped writing image (already exists): {filename} from {outcome.url}")
        outcome.filename = filename
        outcome.file_path = pth
        outcome.success = True
        return outcome

    def _download_one(
        self,
        outcome: ImageOutcome,
        dest_dir: str,
        allocator: FilenameAllocator,
        total: int,
        chapter_number: int,
    ) -> ImageOutcome:
        self.pacer.check(f"image download of chapter {chapter_number}")
        log_info(f"  Downloading image {outcome.original_index + 1}/{total} of chapter {chapter_number}")

        cached = self.cached_path(dest_dir, outcome.filename, outcome.converted_filename)
        if cached:
            log_verbose(f"  Skipped existing image: {os.path.basename(cached)} from {outcome.url}")
            outcome.filename = os.path.basename(cached)
            outcome.file_path = cached
            outcome.success = True
            return outcome

        started = time.monotonic()
        try:
            data = self.client.fetch_binary(requote_uri(outcome.url))
        except FetchFailure as e:
            raise ImageDownloadError(outcome.url, outcome.filename, e.last_error) from e
        self._store(outcome, data, dest_dir, allocator)
        log_verbose(
            f"  Downloaded image {outcome.original_index + 1}/{total}: {outcome.filename} "
            f"from {outcome.url} ({int((time.monotonic() - started) * 1000)}ms)"
        )
        return outcome

    def _await(self, future: Future, what: str) -> ImageOutcome:
        deadline = time.monotonic() + self.wait_timeout
        while True:
            self.pacer.check(what)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise FutureTimeout()
            try:
                return future.result(timeout=min(POLL_INTERVAL, remaining))
            except FutureTimeout:
                continue

    def download_chapter_images(
        self, urls: List[str], dest_dir: str, chapter_number: int
    ) -> DownloadResult:
        """
        Downloads every URL into dest_dir on a pool of `concurrency` workers.
        Failures get one sequential retry after `retry_delay` seconds.
        Successful paths come back in URL order, failures with the filename
        they would have had.
        """
        result = DownloadResult()
        total = len(urls)
        if not urls:
            return result
        os.makedirs(dest_dir, exist_ok=True)

        allocator = FilenameAllocator()
        outcomes: List[ImageOutcome] = []
        for i, url in enumerate(urls):
            outcome = ImageOutcome(original_index=i, url=url, filename=allocator.allocate(url, i))
            if outcome.filename.lower().endswith(".webp"):
                outcome.converted_filename = allocator.rename(outcome.filename, ".jpg")
            outcomes.append(outcome)
        log_debug(
            f"  Downloading {total} images for chapter {chapter_number} "
            f"with {self.concurrency} concurrent downloads"
        )
        started = time.monotonic()

        failed: List[ImageOutcome] = []
        executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix=f"chapter-{chapter_number}"
        )
        futures: List[Future] = []
        try:
            for outcome in outcomes:
                futures.append(
                    executor.submit(
                        self._download_one,
                        dataclasses.replace(outcome),
                        dest_dir,
                        allocator,
                        total,
                        chapter_number,
                    )
                )
            for outcome, future in zip(outcomes, futures):
                what = f"wait for image {outcome.original_index + 1}/{total} of chapter {chapter_number}"
                try:
                    done = self._await(future, what)
                    outcome.filename = done.filename
                    outcome.file_path = done.file_path
                    outcome.success = done.success
                except FutureTimeout:
                    future.cancel()
                    log_error(
                        f"Image download {outcome.original_index + 1}/{total} of chapter "
                        f"{chapter_number} timed out after {self.wait_timeout}s: {outcome.url}"
                    )
                    failed.append(outcome)
                except ImageDownloadError as e:
                    log_warning(f"  {e}")
                    failed.append(outcome)
                except OSError as e:
                    log_error(f"Could not write image {outcome.filename} of chapter {chapter_number}: {e}")
                    failed.append(outcome)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            _, pending = wait_futures(futures, timeout=self.shutdown_grace)
            if pending:
                log_warning(
                    f"  {len(pending)} image tasks of chapter {chapter_number} "
                    f"still running after shutdown grace period"
                )

        if failed:
            failed = self._retry_failed(failed, dest_dir, allocator, total, chapter_number)

        failed_ids = {id(o) for o in failed}
        for outcome in sorted(outcomes, key=lambda o: o.original_index):
            if id(outcome) in failed_ids or not outcome.success:
                result.failed_urls.append(outcome.url)
                result.failed_filename_by_url[outcome.url] = outcome.filename
                result.failed_filenames.append(outcome.filename)
            else:
                result.images.append(outcome.file_path)

        elapsed = int((time.monotonic() - started) * 1000)
        log_info(
            f"Downloaded {len(result.images)}/{total} images for chapter {chapter_number} in {elapsed}ms"
        )
        if result.failed_urls:
            log_warning(f"Failed to download {len(result.failed_urls)} images for chapter {chapter_number}")
            for url in result.failed_urls:
                log_warning(f"  Failed URL: {url}")
        return result

    def _retry_failed(
        self,
        failed: List[ImageOutcome],
        dest_dir: str,
        allocator: FilenameAllocator,
        total: int,
        chapter_number: int,
    ) -> List[ImageOutcome]:
        log_warning(
            f"{len(failed)} image(s) of chapter {chapter_number} failed, "
            f"waiting {int(self.retry_delay)}s before retrying once"
        )
        self.pacer.sleep(self.retry_delay, f"delayed image retry of chapter {chapter_number}")

        still_failed = []
        for outcome in sorted(failed, key=lambda o: o.original_index):
            log_info(f"Retrying image download: {outcome.url}")
            try:
                self._download_one(outcome, dest_dir, allocator, total, chapter_number)
                log_info(f"Image downloaded on retry: {outcome.filename} from {outcome.url}")
            except (ImageDownloadError, OSError) as e:
                reason = e.reason if isinstance(e, ImageDownloadError) else e
                log_error(str(PermanentImageFailure(outcome.url, outcome.filename, reason)))
                outcome.success = False
                still_failed.append(outcome)
        return still_failed
