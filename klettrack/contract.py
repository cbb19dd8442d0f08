"""Sync protocol contract shared by the server and the clients.

The entity set, per-entity payload allow-lists, required upsert fields and
parent references are the published schema. Bump PROTOCOL_VERSION whenever
any of them change.
"""

from typing import Dict, FrozenSet, Tuple

PROTOCOL_VERSION = 1

# Server caps
MAX_MUTATIONS_PER_PUSH = 200
DEFAULT_PULL_LIMIT = 200
MAX_PULL_LIMIT = 500

# Client batching
PUSH_BATCH_SIZE = 100

CONFLICT_REASON_VERSION_MISMATCH = "version_mismatch"

# Per-mutation failure reasons
INVALID_MUTATION = "invalid_mutation"
INVALID_OP_ID = "invalid_op_id"
INVALID_ENTITY_ID = "invalid_entity_id"
INVALID_BASE_VERSION = "invalid_base_version"
INVALID_ENTITY = "invalid_entity"
INVALID_MUTATION_TYPE = "invalid_mutation_type"
INVALID_UPDATED_AT_CLIENT = "invalid_updated_at_client"
INVALID_PAYLOAD = "invalid_payload"
INVALID_PAYLOAD_FIELD = "invalid_payload_field"
MISSING_REQUIRED_FIELD = "missing_required_field"
INVALID_PARENT_REFERENCE = "invalid_parent_reference"
FETCH_FAILED = "fetch_failed"
INSERT_FAILED = "insert_failed"
UPDATE_FAILED = "update_failed"


ENTITY_FIELD_ALLOWLIST: Dict[str, Tuple[str, ...]] = {
    "plan_kinds": ("key", "name", "total_weeks", "is_repeating", "display_order"),
    "day_types": ("key", "name", "display_order", "color_key", "is_default", "is_hidden"),
    "plans": (
        "name",
        "kind_id",
        "start_date",
        "recurring_chosen_exercises_by_weekday",
        "recurring_exercise_order_by_weekday",
        "recurring_day_type_id_by_weekday",
    ),
    "plan_days": (
        "plan_id",
        "day_date",
        "day_type_id",
        "chosen_exercise_ids",
        "exercise_order_by_id",
        "daily_notes",
    ),
    "activities": ("name",),
    "training_types": ("activity_id", "name", "area", "type_description"),
    "exercises": (
        "training_type_id",
        "name",
        "area",
        "display_order",
        "exercise_description",
        "reps_text",
        "duration_text",
        "sets_text",
        "rest_text",
        "notes",
    ),
    "boulder_combinations": ("training_type_id", "name", "combo_description"),
    "boulder_combination_exercises": ("boulder_combination_id", "exercise_id", "display_order"),
    "sessions": ("session_date",),
    "session_items": (
        "session_id",
        "source_tag",
        "exercise_name",
        "sort_order",
        "plan_source_id",
        "plan_name",
        "reps",
        "sets",
        "weight_kg",
        "grade",
        "notes",
        "duration",
    ),
    "timer_templates": (
        "name",
        "template_description",
        "total_time_seconds",
        "is_repeating",
        "repeat_count",
        "rest_time_between_intervals",
        "created_date",
        "last_used_date",
        "use_count",
    ),
    "timer_intervals": (
        "timer_template_id",
        "name",
        "work_time_seconds",
        "rest_time_seconds",
        "repetitions",
        "display_order",
    ),
    "timer_sessions": (
        "start_date",
        "end_date",
        "timer_template_id",
        "template_name",
        "plan_day_id",
        "total_elapsed_seconds",
        "completed_intervals",
        "was_completed",
        "daily_notes",
    ),
    "timer_laps": ("timer_session_id", "lap_number", "timestamp", "elapsed_seconds", "notes"),
    "climb_entries": (
        "climb_type",
        "rope_climb_type",
        "grade",
        "feels_like_grade",
        "angle_degrees",
        "style",
        "attempts",
        "is_work_in_progress",
        "is_previously_climbed",
        "hold_color",
        "gym",
        "notes",
        "date_logged",
        "tb2_climb_uuid",
    ),
    "climb_media": ("climb_entry_id", "type", "created_at", "storage_bucket", "storage_path"),
    "climb_styles": ("name", "is_default", "is_hidden"),
    "climb_gyms": ("name", "is_default"),
}

ENTITIES: FrozenSet[str] = frozenset(ENTITY_FIELD_ALLOWLIST)

REQUIRED_UPSERT_FIELDS: Dict[str, Tuple[str, ...]] = {
    "plan_kinds": ("key", "name"),
    "day_types": ("key", "name", "color_key"),
    "plans": ("name", "start_date"),
    "plan_days": ("day_date",),
    "activities": ("name",),
    "training_types": ("name",),
    "exercises": ("name",),
    "boulder_combinations": ("name",),
    "boulder_combination_exercises": ("boulder_combination_id", "exercise_id"),
    "sessions": ("session_date",),
    "session_items": ("exercise_name",),
    "timer_templates": ("name", "created_date", "is_repeating", "use_count"),
    "timer_intervals": ("name", "work_time_seconds", "rest_time_seconds", "repetitions"),
    "timer_sessions": (
        "start_date",
        "total_elapsed_seconds",
        "completed_intervals",
        "was_completed",
    ),
    "timer_laps": ("lap_number", "timestamp", "elapsed_seconds"),
    "climb_entries": ("climb_type", "grade", "style", "gym", "date_logged", "is_work_in_progress"),
    "climb_media": ("climb_entry_id", "type", "storage_bucket", "storage_path"),
    "climb_styles": ("name", "is_default"),
    "climb_gyms": ("name", "is_default"),
}

# entity -> ((payload field, parent entity), ...)
PARENT_REFERENCES: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "plans": (("kind_id", "plan_kinds"),),
    "plan_days": (("plan_id", "plans"), ("day_type_id", "day_types")),
    "training_types": (("activity_id", "activities"),),
    "exercises": (("training_type_id", "training_types"),),
    "boulder_combinations": (("training_type_id", "training_types"),),
    "boulder_combination_exercises": (
        ("boulder_combination_id", "boulder_combinations"),
        ("exercise_id", "exercises"),
    ),
    "session_items": (("session_id", "sessions"),),
    "timer_intervals": (("timer_template_id", "timer_templates"),),
    "timer_sessions": (
        ("timer_template_id", "timer_templates"),
        ("plan_day_id", "plan_days"),
    ),
    "timer_laps": (("timer_session_id", "timer_sessions"),),
    "climb_media": (("climb_entry_id", "climb_entries"),),
}

# Owner-scoped uniqueness beyond the primary key. A second insert for an
# existing key is treated as already applied.
NATURAL_KEYS: Dict[str, Tuple[str, ...]] = {
    "boulder_combination_exercises": ("boulder_combination_id", "exercise_id"),
}

# Entities whose local presence means the device has been hydrated. Used by
# stale-cursor recovery on the client.
TRACKED_ENTITIES: Tuple[str, ...] = (
    "plans",
    "plan_days",
    "activities",
    "training_types",
    "exercises",
    "sessions",
    "session_items",
    "timer_templates",
    "timer_intervals",
    "climb_entries",
)


def is_entity(name: str) -> bool:
    return name in ENTITIES


def parent_references(entity: str) -> Tuple[Tuple[str, str], ...]:
    """Return the (field, parent entity) pairs checked for an entity."""
    return PARENT_REFERENCES.get(entity, ())
