"""HTTP fetching with retries, explicit decompression and challenge detection."""

from __future__ import annotations

import gzip
import zlib
from typing import Dict, Optional

import requests

from .errors import FetchFailure, JobInterrupted, TransientFetchError
from .log import log_debug, log_verbose, log_warning
from .pacing import Pacer

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
}

MAX_ATTEMPTS = 3
RETRY_DELAY = 0.75  # seconds
REQUEST_TIMEOUT = 30  # seconds


def create_session() -> requests.Session:
    session = requests.Session()
    session.headers.update(DEFAULT_HEADERS)
    return session


def decode_body(raw: bytes, content_encoding: Optional[str]) -> str:
    """Decompresses per Content-Encoding, falling back to a plain UTF-8 decode."""
    encoding = (content_encoding or "").strip().lower()
    data = raw
    try:
        if "gzip" in encoding:
            data = gzip.decompress(raw)
        elif "deflate" in encoding:
            try:
                data = zlib.decompress(raw)
            except zlib.error:
                # raw deflate stream without zlib header
                data = zlib.decompress(raw, -zlib.MAX_WBITS)
    except (OSError, EOFError, zlib.error) as e:
        log_debug(f"  Decompression ({encoding}) failed, using raw body: {e}")
        data = raw
    return data.decode("utf-8", errors="replace")


def is_challenge_page(html: Optional[str]) -> bool:
    """True only for bot-challenge interstitials, judged on marker combinations."""
    if not html:
        return False
    text = html.lower()

    if "checking your browser before accessing" in text:
        return True

    has_platform = "challenge-platform" in text
    has_verification = "cf-browser-verification" in text
    has_cf_challenge = "cf-challenge" in text

    if "just a moment" in text and (has_verification or has_platform or has_cf_challenge):
        return True
    if has_platform and (has_verification or has_cf_challenge):
        return True

    if "ray id" in text and "cloudflare" in text and "checking" in text:
        if "error" in text or "blocked" in text or "access denied" in text:
            return True
    return False


class FetchClient:
    """GETs pages and images on a shared session, retrying transient failures."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        pacer: Optional[Pacer] = None,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay: float = RETRY_DELAY,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.session = session or create_session()
        self.pacer = pacer or Pacer()
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.referer: Optional[str] = None

    def set_referer(self, referer: Optional[str]) -> None:
        self.referer = referer
        log_verbose(f"Using referer: {referer}")

    def _headers(self, use_referer: bool) -> Dict[str, str]:
        headers = dict(DEFAULT_HEADERS)
        if use_referer and self.referer:
            headers["Referer"] = self.referer
        return headers

    def _get(self, url: str, use_referer: bool, stream: bool) -> requests.Response:
        r = self.session.get(
            url,
            headers=self._headers(use_referer),
            timeout=self.timeout,
            allow_redirects=True,
            stream=stream,
        )
        if 300 <= r.status_code < 400:
            r.close()
            raise TransientFetchError(f"Unexpected redirect ({r.status_code}) for {url}")
        if r.status_code != 200:
            r.close()
            raise TransientFetchError(f"HTTP {r.status_code} for {url}")
        return r

    def _with_retries(self, url: str, what: str, attempt_fn):
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            self.pacer.check(f"fetch of {url}")
            try:
                return attempt_fn()
            except JobInterrupted:
                raise
            except (requests.exceptions.RequestException, TransientFetchError, OSError) as e:
                last_error = e
                log_warning(
                    f"  Attempt {attempt}/{self.max_attempts} failed for {what} {url}: {e}"
                )
                if attempt < self.max_attempts:
                    self.pacer.sleep(self.retry_delay, f"retry of {url}")
        raise FetchFailure(url, last_error)

    def fetch_text(self, url: str, use_referer: bool = True) -> str:
        """Returns the decoded page body, or raises FetchFailure after all attempts."""

        def attempt():
            r = self._get(url, use_referer, stream=True)
            try:
                raw = r.raw.read(decode_content=False)
                return decode_body(raw, r.headers.get("Content-Encoding"))
            finally:
                r.close()

        text = self._with_retries(url, "page", attempt)
        log_debug(f"  Fetched {len(text)} characters from {url}")
        return text

    def fetch_binary(self, url: str) -> bytes:
        def attempt():
            r = self._get(url, True, stream=False)
            try:
                return r.content
            finally:
                r.close()

        return self._with_retries(url, "image", attempt)
