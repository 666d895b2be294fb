"""Delays and cooperative cancellation.

Every wait in the pipeline (fetch retry gaps, the delayed image retry, the
inter-chapter thinking time, per-image result waits) goes through a Pacer so
a shutdown signal can cut it short and tests can drop the delays entirely.
"""

from __future__ import annotations

import random
import threading
from typing import List, Optional, Tuple

from .errors import JobInterrupted
from .log import log_verbose

CHAPTER_JITTER_MS = (500, 1500)


class Pacer:
    def __init__(
        self,
        cancel_event: Optional[threading.Event] = None,
        rng: Optional[random.Random] = None,
        jitter_ms: Tuple[int, int] = CHAPTER_JITTER_MS,
    ) -> None:
        self._cancel = cancel_event or threading.Event()
        self._rng = rng or random.Random()
        self.jitter_ms = jitter_ms

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        self._cancel.set()

    def check(self, what: str = "operation") -> None:
        if self._cancel.is_set():
            raise JobInterrupted(f"Interrupted during {what}")

    def sleep(self, seconds: float, reason: str = "wait") -> None:
        """Blocks for `seconds`, raising JobInterrupted as soon as cancelled."""
        if seconds <= 0:
            self.check(reason)
            return
        if self._cancel.wait(seconds):
            raise JobInterrupted(f"Interrupted during {reason}")

    def chapter_delay_ms(self, thinking_time_ms: int) -> int:
        low, high = self.jitter_ms
        return max(0, int(thinking_time_ms)) + self._rng.randint(low, high)

    def between_chapters(self, thinking_time_ms: int) -> int:
        delay = self.chapter_delay_ms(thinking_time_ms)
        log_verbose(f"Waiting {delay} ms before next chapter")
        self.sleep(delay / 1000.0, "inter-chapter delay")
        return delay


class NoDelayPacer(Pacer):
    """Pacer that never blocks but remembers what it was asked to wait."""

    def __init__(self, cancel_event: Optional[threading.Event] = None) -> None:
        super().__init__(cancel_event=cancel_event, jitter_ms=(0, 0))
        self.requested: List[Tuple[str, float]] = []

    def sleep(self, seconds: float, reason: str = "wait") -> None:
        self.requested.append((reason, seconds))
        self.check(reason)

    def chapter_delay_ms(self, thinking_time_ms: int) -> int:
        return 0
