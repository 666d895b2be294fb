from __future__ import annotations

from typing import Optional


class Web2BookError(Exception):
    """Base class for pipeline errors."""


class ConfigValidationError(Web2BookError):
    """A book configuration is missing or has invalid mandatory settings."""


class TransientFetchError(Web2BookError):
    """A single HTTP attempt failed; the fetch client may retry it."""


class FetchFailure(Web2BookError):
    def __init__(self, url: str, last_error: Optional[BaseException] = None) -> None:
        self.url = url
        self.last_error = last_error
        reason = last_error if last_error is not None else "unknown error"
        super().__init__(f"Failed to fetch {url}: {reason}")


class ChallengeDetected(Web2BookError):
    def __init__(self, url: str, chapter_number: Optional[int] = None) -> None:
        self.url = url
        self.chapter_number = chapter_number
        where = f"chapter {chapter_number}" if chapter_number is not None else url
        super().__init__(f"Bot challenge detected on {where}")


class NoContentError(Web2BookError):
    def __init__(self, chapter_number: int) -> None:
        self.chapter_number = chapter_number
        super().__init__(f"Chapter {chapter_number} contains no images")


class ImageDownloadError(Web2BookError):
    def __init__(self, url: str, filename: str, reason: object = None) -> None:
        self.url = url
        self.filename = filename
        self.reason = reason
        super().__init__(f"Could not download {filename} from {url}: {reason}")


class PermanentImageFailure(ImageDownloadError):
    """An image failed both the initial pass and the delayed retry."""


class JobInterrupted(Web2BookError):
    """Cooperative cancellation reached a wait point."""


__all__ = [
    "ChallengeDetected",
    "ConfigValidationError",
    "FetchFailure",
    "ImageDownloadError",
    "JobInterrupted",
    "NoContentError",
    "PermanentImageFailure",
    "TransientFetchError",
    "Web2BookError",
]
