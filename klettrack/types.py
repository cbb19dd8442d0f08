"""
Shared sync types for klettrack.

These dataclasses are the vocabulary of the sync protocol: what a client
sends (Mutation), what the server answers (PushResult, PullPage) and what
the client keeps between cycles (PendingMutation, ConflictEvent).

Wire payloads use camelCase keys; the dataclasses use snake_case. The
``to_wire``/``from_wire`` helpers are the only place the two meet.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string. Returns None for empty or malformed input."""
    if not s or not isinstance(s, str):
        return None
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# === Enums ===


class MutationType(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class MutationState(str, Enum):
    """Where a queued mutation is in its lifecycle.

    Acknowledged and failed mutations leave the queue, so only the
    states a mutation can be *in* while queued are listed.
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    CONFLICTED = "conflicted"


class ConflictEventType(str, Enum):
    DETECTED = "detected"
    KEEP_MINE = "keep_mine"
    KEEP_SERVER = "keep_server"


# === Protocol Dataclasses ===


@dataclass(frozen=True)
class Mutation:
    """A single client-authored change to one record."""

    op_id: str
    entity: str
    entity_id: str
    type: MutationType
    base_version: int
    updated_at_client: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None  # None for delete

    @property
    def is_delete(self) -> bool:
        return self.type == MutationType.DELETE

    def with_op(
        self, op_id: str, base_version: int, updated_at_client: Optional[str] = None
    ) -> "Mutation":
        """Copy with a fresh opId and base version (rebase)."""
        changes: Dict[str, Any] = {"op_id": op_id, "base_version": base_version}
        if updated_at_client is not None:
            changes["updated_at_client"] = updated_at_client
        return replace(self, **changes)

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "opId": self.op_id,
            "entity": self.entity,
            "entityId": self.entity_id,
            "type": self.type.value,
            "baseVersion": self.base_version,
        }
        if self.updated_at_client is not None:
            data["updatedAtClient"] = self.updated_at_client
        if self.type == MutationType.UPSERT:
            data["payload"] = dict(self.payload or {})
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Mutation":
        """Rebuild a mutation that was already validated (e.g. read back from disk).

        Untrusted input goes through ``klettrack.core.validate_mutation``.
        """
        payload = data.get("payload")
        return cls(
            op_id=data["opId"],
            entity=data["entity"],
            entity_id=data["entityId"],
            type=MutationType(data["type"]),
            base_version=int(data["baseVersion"]),
            updated_at_client=data.get("updatedAtClient"),
            payload=dict(payload) if isinstance(payload, dict) else None,
        )


@dataclass
class Conflict:
    """A mutation rejected because the server row moved on."""

    op_id: str
    entity: str
    entity_id: str
    reason: str = "version_mismatch"
    server_version: Optional[int] = None  # None when the server has no row
    server_doc: Optional[Dict[str, Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "opId": self.op_id,
            "entity": self.entity,
            "entityId": self.entity_id,
            "reason": self.reason,
            "serverVersion": self.server_version,
            "serverDoc": self.server_doc,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Conflict":
        server_version = data.get("serverVersion")
        return cls(
            op_id=str(data.get("opId") or ""),
            entity=str(data.get("entity") or ""),
            entity_id=str(data.get("entityId") or ""),
            reason=str(data.get("reason") or "version_mismatch"),
            server_version=(
                int(server_version)
                if isinstance(server_version, (int, float)) and not isinstance(server_version, bool)
                else None
            ),
            server_doc=data.get("serverDoc") if isinstance(data.get("serverDoc"), dict) else None,
        )


@dataclass
class PushFailure:
    """A mutation the server refused outright. Never retried as-is."""

    op_id: Optional[str]
    reason: str

    def to_wire(self) -> Dict[str, Any]:
        return {"opId": self.op_id, "reason": self.reason}

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "PushFailure":
        op_id = data.get("opId")
        return cls(
            op_id=str(op_id) if op_id is not None else None,
            reason=str(data.get("reason") or "unknown"),
        )


@dataclass
class PushResult:
    """Per-mutation outcome of a push batch."""

    acknowledged_op_ids: List[str] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    failed: List[PushFailure] = field(default_factory=list)
    new_cursor: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "acknowledgedOpIds": list(self.acknowledged_op_ids),
            "conflicts": [c.to_wire() for c in self.conflicts],
            "failed": [f.to_wire() for f in self.failed],
            "newCursor": self.new_cursor,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "PushResult":
        return cls(
            acknowledged_op_ids=[str(op) for op in data.get("acknowledgedOpIds") or []],
            conflicts=[
                Conflict.from_wire(c) for c in data.get("conflicts") or [] if isinstance(c, dict)
            ],
            failed=[
                PushFailure.from_wire(f) for f in data.get("failed") or [] if isinstance(f, dict)
            ],
            new_cursor=data.get("newCursor"),
        )


@dataclass
class Change:
    """One entry of the change feed."""

    entity: str
    type: MutationType
    entity_id: str
    version: int
    doc: Optional[Dict[str, Any]] = None  # None for delete

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "entity": self.entity,
            "type": self.type.value,
            "entityId": self.entity_id,
            "version": self.version,
        }
        if self.type == MutationType.UPSERT:
            data["doc"] = self.doc
        return data

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "Change":
        doc = data.get("doc")
        return cls(
            entity=str(data["entity"]),
            type=MutationType(data["type"]),
            entity_id=str(data["entityId"]),
            version=int(data.get("version") or 0),
            doc=doc if isinstance(doc, dict) else None,
        )


@dataclass
class PullPage:
    """A page of the change feed."""

    changes: List[Change] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False

    def to_wire(self) -> Dict[str, Any]:
        return {
            "changes": [c.to_wire() for c in self.changes],
            "nextCursor": self.next_cursor,
            "hasMore": self.has_more,
        }

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "PullPage":
        return cls(
            changes=[Change.from_wire(c) for c in data.get("changes") or []],
            next_cursor=data.get("nextCursor"),
            has_more=bool(data.get("hasMore")),
        )


# === Client State Dataclasses ===


@dataclass
class PendingMutation:
    """A queued local mutation and what the client knows about it."""

    mutation: Mutation
    state: MutationState = MutationState.PENDING
    enqueued_at: str = field(default_factory=utc_now)
    conflict: Optional[Conflict] = None  # Set while CONFLICTED
    # State to fall back to if an in-flight push never gets an answer
    prior_state: Optional[MutationState] = None

    @property
    def op_id(self) -> str:
        return self.mutation.op_id


@dataclass
class ConflictEvent:
    """One entry of the conflict audit trail."""

    id: str
    event_type: ConflictEventType
    timestamp: str
    entity: str
    entity_id: str
    reason: str


@dataclass
class SyncReport:
    """Outcome of one reconciliation cycle."""

    reason: str
    started_at: str = field(default_factory=utc_now)
    finished_at: Optional[str] = None
    skipped: bool = False  # Another cycle was already running
    pushed: int = 0
    acknowledged: int = 0
    conflicts: List[Conflict] = field(default_factory=list)
    failed: List[PushFailure] = field(default_factory=list)
    pulled: int = 0
    pages: int = 0
    cursor: Optional[str] = None
    recovered_stale_cursor: bool = False
    error: Optional[str] = None  # Category of a transport/auth failure
    error_message: Optional[str] = None  # User-facing text

    @property
    def success(self) -> bool:
        return not self.skipped and self.error is None

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)
