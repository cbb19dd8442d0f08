"""Pull handler: page through an owner's change feed."""

from klettrack import contract
from klettrack.types import Change, MutationType, PullPage

from ..logging_config import get_logger
from ..store import RecordStore, RecordStoreError
from .cursor import InvalidCursorError, decode_cursor, encode_cursor
from .errors import INVALID_CURSOR, PULL_FAILED, SyncRequestError

logger = get_logger("sync.pull")


def clamp_limit(
    limit: int | None,
    default: int = contract.DEFAULT_PULL_LIMIT,
    maximum: int = contract.MAX_PULL_LIMIT,
) -> int:
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


def handle_pull(
    store: RecordStore,
    owner_id: str,
    cursor: str | None,
    limit: int | None = None,
    *,
    default_limit: int = contract.DEFAULT_PULL_LIMIT,
    max_limit: int = contract.MAX_PULL_LIMIT,
) -> PullPage:
    """Return changes after ``cursor`` in write order.

    Reading has no side effects; the same cursor always yields the same
    page until new writes land.

    Raises:
        SyncRequestError: malformed cursor (400) or store failure (500).
    """
    try:
        after_seq = decode_cursor(cursor)
    except InvalidCursorError:
        raise SyncRequestError(INVALID_CURSOR)

    page_size = clamp_limit(limit, default_limit, max_limit)
    logger.info(f"PULL | {owner_id} | after={after_seq} limit={page_size}")

    try:
        # One extra row tells us whether another page exists
        rows = store.changes_since(owner_id, after_seq, page_size + 1)
    except RecordStoreError as e:
        logger.error(f"Pull for {owner_id} failed: {e}")
        raise SyncRequestError(PULL_FAILED, status_code=500)

    has_more = len(rows) > page_size
    rows = rows[:page_size]

    changes = []
    for change_row in rows:
        row = change_row.row
        if row.get("is_deleted"):
            changes.append(
                Change(
                    entity=change_row.entity,
                    type=MutationType.DELETE,
                    entity_id=row["id"],
                    version=row["version"],
                )
            )
        else:
            changes.append(
                Change(
                    entity=change_row.entity,
                    type=MutationType.UPSERT,
                    entity_id=row["id"],
                    version=row["version"],
                    doc=row,
                )
            )

    next_seq = rows[-1].seq if rows else after_seq
    logger.info(f"PULL COMPLETE | {owner_id} | {len(changes)} changes has_more={has_more}")
    return PullPage(changes=changes, next_cursor=encode_cursor(next_seq), has_more=has_more)
