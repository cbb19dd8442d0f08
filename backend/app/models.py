"""Pydantic models for API requests and responses."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Sync Requests
# =============================================================================


class SyncPushRequest(BaseModel):
    """Request to push queued mutations.

    ``mutations`` is left untyped: each entry is validated individually so
    one bad mutation fails on its own instead of rejecting the batch.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    device_id: str | None = Field(default=None, alias="deviceId")
    base_cursor: str | None = Field(default=None, alias="baseCursor")
    mutations: Any = None


class SyncPullRequest(BaseModel):
    """Request for a page of the change feed."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cursor: str | None = None
    limit: int | None = None


# =============================================================================
# Sync Responses
# =============================================================================


class ConflictModel(BaseModel):
    """A mutation rejected because the server row moved on."""

    model_config = ConfigDict(populate_by_name=True)

    op_id: str = Field(alias="opId")
    entity: str
    entity_id: str = Field(alias="entityId")
    reason: str = "version_mismatch"
    server_version: int | None = Field(default=None, alias="serverVersion")
    server_doc: dict[str, Any] | None = Field(default=None, alias="serverDoc")


class FailedMutationModel(BaseModel):
    """A mutation refused outright."""

    model_config = ConfigDict(populate_by_name=True)

    op_id: str | None = Field(default=None, alias="opId")
    reason: str


class SyncPushResponse(BaseModel):
    """Per-mutation outcome of a push."""

    model_config = ConfigDict(populate_by_name=True)

    acknowledged_op_ids: list[str] = Field(default_factory=list, alias="acknowledgedOpIds")
    conflicts: list[ConflictModel] = Field(default_factory=list)
    failed: list[FailedMutationModel] = Field(default_factory=list)
    new_cursor: str | None = Field(default=None, alias="newCursor")


class ChangeModel(BaseModel):
    """One entry of the change feed. ``doc`` is omitted for deletes."""

    model_config = ConfigDict(populate_by_name=True)

    entity: str
    type: Literal["upsert", "delete"]
    entity_id: str = Field(alias="entityId")
    version: int
    doc: dict[str, Any] | None = None


class SyncPullResponse(BaseModel):
    """A page of changes."""

    model_config = ConfigDict(populate_by_name=True)

    changes: list[ChangeModel] = Field(default_factory=list)
    next_cursor: str | None = Field(default=None, alias="nextCursor")
    has_more: bool = Field(default=False, alias="hasMore")


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    database: str
    protocol_version: int
