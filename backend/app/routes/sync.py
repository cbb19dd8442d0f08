"""Sync routes: push client mutations, pull the change feed."""

from fastapi import APIRouter, Request

from ..auth import CurrentOwner
from ..config import get_settings
from ..database import Database
from ..logging_config import get_logger
from ..models import SyncPullRequest, SyncPullResponse, SyncPushRequest, SyncPushResponse
from ..rate_limit import limiter, sync_rate_limit
from ..sync import handle_pull, handle_push

logger = get_logger("sync")
# Mounted under settings.sync_base_path by the application
router = APIRouter(tags=["sync"])


@router.post("/push", response_model=SyncPushResponse)
@limiter.limit(sync_rate_limit)
def push_changes(
    request: Request,
    body: SyncPushRequest,
    auth: CurrentOwner,
    db: Database,
):
    """
    Apply queued client mutations.

    Each mutation is validated and applied on its own; the response lists
    which were acknowledged, which conflicted with newer server state and
    which failed outright. The owner always comes from the bearer token.
    """
    settings = get_settings()
    if body.device_id:
        logger.debug(f"PUSH | {auth.owner_id} | device={body.device_id} base={body.base_cursor}")
    result = handle_push(db, auth.owner_id, body.mutations, settings.max_push_mutations)
    return result.to_wire()


@router.post(
    "/pull",
    response_model=SyncPullResponse,
    response_model_exclude_unset=True,
)
@limiter.limit(sync_rate_limit)
def pull_changes(
    request: Request,
    body: SyncPullRequest,
    auth: CurrentOwner,
    db: Database,
):
    """
    Return the next page of changes after ``cursor``.

    A null cursor starts from the beginning. Delete changes carry no doc.
    """
    settings = get_settings()
    page = handle_pull(
        db,
        auth.owner_id,
        body.cursor,
        body.limit,
        default_limit=settings.default_pull_limit,
        max_limit=settings.max_pull_limit,
    )
    return page.to_wire()
