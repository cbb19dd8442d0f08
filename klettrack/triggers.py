"""Sync trigger plumbing: backoff delays, debouncing and trigger counters.

Nothing here performs network I/O. A ``SyncDebouncer`` calls whatever
callback it was given (normally ``SyncReconciler.sync``) on a timer
thread; the reconciler's own single-flight guard decides whether the
call does any work.
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from klettrack.types import utc_now

logger = logging.getLogger(__name__)

MAX_JITTER_SECONDS = 0.25
MAX_AUTOMATIC_RETRIES = 5
MAX_AUTOMATIC_RETRY_DELAY = 60.0
LOCAL_EDIT_DEBOUNCE = 2.0


def backoff_delay(
    attempt: int,
    max_delay: float,
    jitter: Optional[float] = None,
) -> float:
    """Exponential delay for the given 1-based attempt: 1, 2, 4, ... seconds.

    ``jitter`` is clamped to [0, 0.25]; a random value is drawn when omitted.
    The result never exceeds ``max_delay`` (which is at least 1 second).
    """
    attempt = max(1, attempt)
    max_delay = max(1.0, max_delay)
    if jitter is None:
        jitter = random.uniform(0, MAX_JITTER_SECONDS)
    jitter = min(max(0.0, jitter), MAX_JITTER_SECONDS)
    base = min(2.0 ** (attempt - 1), max_delay)
    return min(base + jitter, max_delay)


def normalize_reason(reason: Optional[str]) -> str:
    trimmed = (reason or "").strip()
    return trimmed or "unspecified"


@dataclass
class TriggerMetrics:
    """Counts of sync triggers by reason, plus failed cycles."""

    total: int = 0
    failures: int = 0
    last_trigger_at: Optional[str] = None
    by_reason: Dict[str, int] = field(default_factory=dict)

    def record_trigger(self, reason: Optional[str]) -> None:
        key = normalize_reason(reason)
        self.total += 1
        self.last_trigger_at = utc_now()
        self.by_reason[key] = self.by_reason.get(key, 0) + 1

    def record_failure(self) -> None:
        self.failures += 1


class SyncDebouncer:
    """Run a callback once after a quiet period.

    Each ``schedule`` call cancels the previous timer, so a burst of local
    edits produces a single sync.
    """

    def __init__(self, callback: Callable[[], object], delay: float = LOCAL_EDIT_DEBOUNCE):
        self._callback = callback
        self._delay = delay
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def schedule(self, delay: Optional[float] = None) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(
                self._delay if delay is None else delay, self._fire
            )
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
        try:
            self._callback()
        except Exception as e:
            # Timer threads have no caller to report to
            logger.error(f"Debounced sync callback failed: {e}", exc_info=True)
