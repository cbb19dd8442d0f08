"""
Klettrack - multi-device sync for a climbing and training log.

Clients edit locally, queue mutations, and converge on one owner-scoped
dataset through the push/pull sync protocol.
"""

from .storage.sync_engine import SyncReconciler
from .types import Mutation, MutationType, SyncReport

try:
    from importlib.metadata import version

    __version__ = version("klettrack")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SyncReconciler", "Mutation", "MutationType", "SyncReport"]
