"""Local logging for klettrack clients.

Two log streams live under ``$KLETTRACK_HOME/logs``:

- ``local-YYYY-MM-DD.log``: the ``klettrack`` logger tree, set up by
  :func:`setup_klettrack_logging`.
- ``sync-events-YYYY-MM-DD.log``: one line per sync cycle or conflict
  decision, appended by :func:`log_sync_event` and its helpers.
"""

import logging
from datetime import date, datetime
from typing import Optional

from klettrack.utils import get_klettrack_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir():
    log_dir = get_klettrack_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def setup_klettrack_logging(user_id: str = "default", level: str = "INFO") -> logging.Logger:
    """Attach a dated file handler to the ``klettrack`` logger.

    Safe to call repeatedly; handlers are only added once. DEBUG also
    echoes to the console.
    """
    logger = logging.getLogger("klettrack")
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    if any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        return logger

    log_file = _log_dir() / f"local-{date.today().isoformat()}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(file_handler)

    if resolved <= logging.DEBUG:
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console)

    logger.debug(f"Logging initialised for user={user_id}")
    return logger


def log_sync_event(event_type: str, details: str, user_id: str = "default") -> None:
    """Append one line to today's sync event log."""
    log_file = _log_dir() / f"sync-events-{date.today().isoformat()}.log"
    timestamp = datetime.now().isoformat(timespec="seconds")
    with open(log_file, "a", encoding="utf-8") as fh:
        fh.write(f"{timestamp} | {event_type} | user={user_id} | {details}\n")


def log_sync_cycle(
    user_id: str,
    reason: str,
    pushed: int,
    acknowledged: int,
    conflicts: int,
    failed: int,
    pulled: int,
    error: Optional[str] = None,
) -> None:
    details = (
        f"reason={reason}, pushed={pushed}, acknowledged={acknowledged}, "
        f"conflicts={conflicts}, failed={failed}, pulled={pulled}"
    )
    if error:
        details += f", error={error}"
    log_sync_event("sync", details, user_id=user_id)


def log_conflict_event(user_id: str, event_type: str, entity: str, entity_id: str) -> None:
    log_sync_event(
        "conflict",
        f"event={event_type}, entity={entity}, id={entity_id[:8]}...",
        user_id=user_id,
    )
