"""Pull cursors.

A cursor is the decimal ``change_seq`` of the last delivered change,
zero-padded to a fixed width so cursors also sort as strings. Clients
treat it as opaque.
"""

CURSOR_WIDTH = 20
ZERO_CURSOR = "0" * CURSOR_WIDTH


class InvalidCursorError(ValueError):
    """The cursor was not produced by this server."""


def encode_cursor(seq: int) -> str:
    if seq < 0:
        raise ValueError("change_seq cannot be negative")
    return str(seq).zfill(CURSOR_WIDTH)


def decode_cursor(cursor: str | None) -> int:
    """Return the ``change_seq`` a cursor points at; None means the beginning."""
    if cursor is None:
        return 0
    if not isinstance(cursor, str) or not cursor.isascii() or not cursor.isdigit():
        raise InvalidCursorError(f"Malformed cursor: {cursor!r}")
    if len(cursor) > CURSOR_WIDTH:
        raise InvalidCursorError("Cursor too long")
    return int(cursor)
