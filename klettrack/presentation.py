"""User-facing text and review aids for sync conflicts and errors.

Nothing in this module resolves anything. ``suggest_resolution`` computes
what last-writer-wins *would* pick so a UI can pre-select it, but the
user still has to call ``keep_mine``/``keep_server`` themselves.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from klettrack.contract import ENTITIES
from klettrack.storage.cloud import (
    ForbiddenError,
    InsecureEndpointError,
    InvalidResponseError,
    SyncAPIError,
    SyncHTTPError,
    SyncNetworkError,
    UnauthorizedError,
)
from klettrack.types import Conflict, Mutation, MutationType, PendingMutation, parse_datetime

ENTITY_LABELS: Dict[str, str] = {
    "plan_kinds": "Plan Kinds",
    "day_types": "Training Days",
    "plans": "Training Plans",
    "plan_days": "Plan Days",
    "activities": "Activities",
    "training_types": "Training Types",
    "exercises": "Exercises",
    "boulder_combinations": "Combinations",
    "boulder_combination_exercises": "Combination Exercises",
    "sessions": "Sessions",
    "session_items": "Session Entries",
    "timer_templates": "Timer Templates",
    "timer_intervals": "Timer Intervals",
    "timer_sessions": "Timer Sessions",
    "timer_laps": "Timer Laps",
    "climb_entries": "Climb Entries",
    "climb_media": "Climb Media",
    "climb_styles": "Climbing Styles",
    "climb_gyms": "Gyms",
}

REASON_LABELS: Dict[str, str] = {
    "version_mismatch": "This item changed on another device.",
    "invalid_payload": "The update payload is invalid.",
    "invalid_payload_field": "The update contains a field the server does not accept.",
    "missing_required_field": "The update is missing a required field.",
    "invalid_parent_reference": "The item it belongs to no longer exists.",
    "update_failed": "Server rejected the update.",
    "insert_failed": "Server rejected the new record.",
    "fetch_failed": "Unable to load current server data.",
}

SENSITIVE_KEY_FRAGMENTS = ("note", "description", "comment", "summary")
LONG_TEXT_LENGTH = 140


def entity_label(entity: Optional[str]) -> str:
    normalized = (entity or "").strip().lower()
    if normalized not in ENTITIES:
        return "Unknown Item"
    return ENTITY_LABELS.get(normalized, normalized.replace("_", " ").title())


def entity_id_label(entity_id: Optional[str]) -> str:
    normalized = (entity_id or "").strip().lower()
    return normalized if len(normalized) >= 8 else "invalid-id"


def reason_label(reason: Optional[str]) -> str:
    normalized = (reason or "").strip().lower()
    return REASON_LABELS.get(normalized, "A sync conflict needs your decision.")


def server_version_label(version: Optional[int]) -> str:
    return "unknown" if version is None else str(version)


def display_value(value: Any) -> str:
    """Render a JSON value compactly for a preview table."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, dict):
        return f"{{{len(value)} fields}}"
    if isinstance(value, list):
        return f"[{len(value)} items]"
    return str(value)


def server_preview_rows(server_doc: Optional[Dict[str, Any]]) -> List[Tuple[str, str]]:
    """(field, rendered value) pairs of the server document, sorted by field."""
    if not server_doc:
        return []
    return sorted((key, display_value(value)) for key, value in server_doc.items())


@dataclass
class FieldDiff:
    field: str
    local: str
    server: str


def field_diff(mutation: Mutation, server_doc: Optional[Dict[str, Any]]) -> List[FieldDiff]:
    """Payload fields whose local value differs from the server document."""
    if mutation.type == MutationType.DELETE or not mutation.payload:
        return []
    server_doc = server_doc or {}
    diffs = []
    for key in sorted(mutation.payload):
        local_value = mutation.payload[key]
        if key in server_doc and server_doc[key] == local_value:
            continue
        diffs.append(
            FieldDiff(
                field=key,
                local=display_value(local_value),
                server=display_value(server_doc.get(key)) if key in server_doc else "(missing)",
            )
        )
    return diffs


# === Resolution suggestion ===


class Resolution(str, Enum):
    KEEP_MINE = "keep_mine"
    KEEP_SERVER = "keep_server"


@dataclass
class Suggestion:
    resolution: Resolution
    rationale: str
    high_risk: bool


def _is_long_text(value: Any) -> bool:
    return isinstance(value, str) and len(value) >= LONG_TEXT_LENGTH


def is_high_risk(mutation: Mutation, server_doc: Optional[Dict[str, Any]]) -> bool:
    """Deletes, note-like fields and long text deserve a careful look."""
    if mutation.type == MutationType.DELETE:
        return True
    payload = mutation.payload or {}
    if any(frag in key.lower() for key in payload for frag in SENSITIVE_KEY_FRAGMENTS):
        return True
    if any(_is_long_text(v) for v in payload.values()):
        return True
    return any(_is_long_text(v) for v in (server_doc or {}).values())


def suggest_resolution(pending: PendingMutation, device_id: str) -> Suggestion:
    """What last-writer-wins would choose for a conflicted mutation."""
    conflict = pending.conflict
    mutation = pending.mutation
    server_doc = conflict.server_doc if conflict else None
    server_version = conflict.server_version if conflict else None
    high_risk = is_high_risk(mutation, server_doc)

    def suggest(resolution: Resolution, rationale: str) -> Suggestion:
        return Suggestion(resolution=resolution, rationale=rationale, high_risk=high_risk)

    if server_doc and server_doc.get("is_deleted"):
        return suggest(Resolution.KEEP_SERVER, "Deleted on the server; keeping it deleted.")

    if mutation.type == MutationType.DELETE:
        if server_version is None:
            return suggest(Resolution.KEEP_SERVER, "Already gone on the server.")
        return suggest(Resolution.KEEP_MINE, "Your delete still applies to the newer version.")

    if server_version is None:
        return suggest(Resolution.KEEP_MINE, "The server has no copy; yours creates it.")

    local_at = parse_datetime(mutation.updated_at_client)
    server_at = None
    if server_doc:
        server_at = parse_datetime(server_doc.get("updated_at_client")) or parse_datetime(
            server_doc.get("updated_at_server")
        )

    if local_at and server_at:
        if local_at > server_at:
            return suggest(Resolution.KEEP_MINE, "Your edit is newer.")
        if local_at < server_at:
            return suggest(Resolution.KEEP_SERVER, "The server edit is newer.")
    elif local_at:
        return suggest(Resolution.KEEP_MINE, "Only your edit carries a timestamp.")
    elif server_at:
        return suggest(Resolution.KEEP_SERVER, "Only the server edit carries a timestamp.")

    local_tiebreak = f"{device_id.lower()}|{mutation.op_id.lower()}"
    server_tiebreak = str((server_doc or {}).get("last_op_id") or "").lower()
    if local_tiebreak > server_tiebreak:
        return suggest(Resolution.KEEP_MINE, "Same timestamp; tie broken by device.")
    return suggest(Resolution.KEEP_SERVER, "Same timestamp; tie broken by device.")


@dataclass
class ConflictView:
    """Everything a conflict panel row needs."""

    op_id: str
    entity_label: str
    entity_id_label: str
    reason_label: str
    server_version_label: str
    server_preview: List[Tuple[str, str]]
    changes: List[FieldDiff]
    suggestion: Suggestion


def describe_conflict(pending: PendingMutation, device_id: str) -> ConflictView:
    conflict = pending.conflict or Conflict(
        op_id=pending.op_id,
        entity=pending.mutation.entity,
        entity_id=pending.mutation.entity_id,
    )
    return ConflictView(
        op_id=pending.op_id,
        entity_label=entity_label(conflict.entity),
        entity_id_label=entity_id_label(conflict.entity_id),
        reason_label=reason_label(conflict.reason),
        server_version_label=server_version_label(conflict.server_version),
        server_preview=server_preview_rows(conflict.server_doc),
        changes=field_diff(pending.mutation, conflict.server_doc),
        suggestion=suggest_resolution(pending, device_id),
    )


# === Errors ===

SESSION_EXPIRED = "Your session expired. Please sign in again."
CHANGED_ELSEWHERE = "This item changed elsewhere. Resolve the conflict and retry."
NETWORK_ISSUE = "Network issue during sync. Retry when connection is stable."
INVALID_DATA = "Server rejected this update due to invalid data."
ACCESS_DENIED = "This device is not allowed to sync with the server."
INSECURE_ENDPOINT = "Sync server address is not secure. Check your settings."
GENERIC_FAILURE = "Sync failed. Please try again."


def friendly_sync_error_message(error: Optional[BaseException]) -> str:
    """Map an exception from a sync cycle to a sentence a user can act on."""
    if isinstance(error, UnauthorizedError):
        return SESSION_EXPIRED
    if isinstance(error, ForbiddenError):
        return ACCESS_DENIED
    if isinstance(error, InsecureEndpointError):
        return INSECURE_ENDPOINT
    if isinstance(error, SyncNetworkError):
        return NETWORK_ISSUE
    if isinstance(error, InvalidResponseError):
        return GENERIC_FAILURE
    if isinstance(error, SyncHTTPError):
        code = error.code or ""
        if error.status_code in (408, 429) or (error.status_code or 0) >= 500:
            return NETWORK_ISSUE
        if code.startswith("invalid") or error.status_code in (400, 413):
            return INVALID_DATA
        return GENERIC_FAILURE
    if isinstance(error, SyncAPIError):
        return GENERIC_FAILURE
    if error is None:
        return GENERIC_FAILURE

    message = str(error).lower()
    if "auth" in message:
        return SESSION_EXPIRED
    if "version_mismatch" in message or "conflict" in message:
        return CHANGED_ELSEWHERE
    if "network" in message or "connection" in message:
        return NETWORK_ISSUE
    if "invalid" in message:
        return INVALID_DATA
    return GENERIC_FAILURE
