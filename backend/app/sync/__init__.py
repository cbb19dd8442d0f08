"""Server side of the sync protocol.

Handlers are plain functions over a ``RecordStore`` so they can be
exercised without HTTP.
"""

from .cursor import InvalidCursorError, decode_cursor, encode_cursor
from .errors import SyncRequestError
from .pull import clamp_limit, handle_pull
from .push import handle_push
from .references import validate_parent_references

__all__ = [
    "InvalidCursorError",
    "SyncRequestError",
    "clamp_limit",
    "decode_cursor",
    "encode_cursor",
    "handle_pull",
    "handle_push",
    "validate_parent_references",
]
