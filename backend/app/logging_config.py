"""Logging configuration for the sync backend.

All backend loggers live under ``klettrack.backend``. One line is logged
per mutation outcome so a push can be reconstructed from the logs.
"""

import logging
import sys

ROOT_LOGGER = "klettrack.backend"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a stdout handler to the backend logger tree (idempotent)."""
    logger = logging.getLogger(ROOT_LOGGER)
    resolved = getattr(logging, str(level).upper(), None)
    logger.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a backend logger, e.g. ``get_logger("sync")``."""
    if name.startswith(ROOT_LOGGER):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


_sync_logger = get_logger("sync.ops")


def log_sync_operation(
    owner: str,
    op_type: str,
    entity: str,
    entity_id: str,
    outcome: str,
    detail: str | None = None,
) -> None:
    """Log the outcome of one pushed mutation.

    ``outcome`` is ``ack``, ``replay``, ``conflict`` or ``failed``.
    """
    message = f"{owner} | {op_type} {entity}/{entity_id} | {outcome}"
    if detail:
        message += f" | {detail}"
    if outcome == "failed":
        _sync_logger.warning(message)
    else:
        _sync_logger.info(message)
