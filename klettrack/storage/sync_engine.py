"""Client-side sync reconciler.

``SyncReconciler`` owns one user's sync loop on one device:

1. Local edits go through ``enqueue_local_mutation`` into the persistent
   ``MutationQueue``.
2. ``sync()`` pushes pending (and previously conflicted) mutations in
   batches, drains acknowledged and failed ones, and keeps conflicted
   ones with the server state attached.
3. It then pulls the change feed until the server reports no more pages,
   applying each page to the ``LocalStore`` and persisting the cursor
   after every page.

Conflicts are only ever settled by an explicit ``keep_mine`` or
``keep_server`` call. At most one cycle runs at a time per reconciler.
"""

import logging
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional

from klettrack.contract import DEFAULT_PULL_LIMIT, PUSH_BATCH_SIZE, TRACKED_ENTITIES
from klettrack.core.validation import validate_mutation
from klettrack.logging_config import log_sync_cycle
from klettrack.presentation import ConflictView, describe_conflict, friendly_sync_error_message
from klettrack.triggers import (
    MAX_AUTOMATIC_RETRIES,
    MAX_AUTOMATIC_RETRY_DELAY,
    SyncDebouncer,
    TriggerMetrics,
    backoff_delay,
)
from klettrack.types import (
    ConflictEventType,
    MutationState,
    MutationType,
    PendingMutation,
    PushResult,
    SyncReport,
    utc_now,
)

from .audit import ConflictAuditLog
from .base import LocalStore, SyncState
from .cloud import SyncAPIError
from .queue import MutationQueue

logger = logging.getLogger(__name__)


class SyncReconciler:
    """Push/pull reconciliation for one signed-in user.

    Args:
        user_id: Owner whose data this reconciler syncs.
        api: Object with ``push(device_id, base_cursor, mutations)`` and
            ``pull(cursor, limit)``; normally a ``SyncAPIClient``.
        local_store: Where pulled changes are applied.
        state: Persisted cursor, queue and audit trail. Often the same
            ``SQLiteStorage`` object as ``local_store``.
        auto_sync: Schedule debounced syncs after local edits and backoff
            retries after failed cycles.
    """

    def __init__(
        self,
        user_id: str,
        api: Any,
        local_store: LocalStore,
        state: SyncState,
        *,
        pull_limit: int = DEFAULT_PULL_LIMIT,
        batch_size: int = PUSH_BATCH_SIZE,
        op_id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        auto_sync: bool = False,
    ):
        if not user_id:
            raise ValueError("user_id is required")
        self.user_id = user_id
        self._api = api
        self._local = local_store
        self._state = state
        self._pull_limit = pull_limit
        self._batch_size = max(1, batch_size)
        self._new_op_id = op_id_factory

        self.queue = MutationQueue(state, user_id)
        self.audit = ConflictAuditLog(state, user_id)
        self.metrics = TriggerMetrics()
        self.device_id = state.get_device_id()
        self.consecutive_failures = 0
        self.last_report: Optional[SyncReport] = None

        self._lock = threading.Lock()
        self._auto_sync = auto_sync
        self._edit_debouncer = SyncDebouncer(lambda: self.sync("local_debounce"))
        self._retry_debouncer = SyncDebouncer(lambda: self.sync("auto_retry"))

    # === Local edits ===

    def enqueue_local_mutation(
        self,
        entity: str,
        entity_id: str,
        mutation_type: "MutationType | str",
        payload: Optional[Dict[str, Any]] = None,
        *,
        base_version: Optional[int] = None,
        updated_at_client: Optional[str] = None,
    ) -> PendingMutation:
        """Validate and queue a local change.

        ``base_version`` defaults to the version of the record as last
        pulled (0 for records the server has never seen).

        Raises:
            MutationValidationError: if the server would refuse the mutation.
        """
        if base_version is None:
            base_version = self._local.version_of(self.user_id, entity, str(entity_id).lower())
        raw: Dict[str, Any] = {
            "opId": self._new_op_id(),
            "entity": entity,
            "entityId": entity_id,
            "type": mutation_type.value if isinstance(mutation_type, MutationType) else mutation_type,
            "baseVersion": base_version,
            "updatedAtClient": updated_at_client or utc_now(),
        }
        if payload is not None:
            raw["payload"] = payload
        mutation = validate_mutation(raw)
        entry = self.queue.enqueue(mutation)
        logger.debug(
            f"Queued {mutation.type.value} {mutation.entity}/{mutation.entity_id} "
            f"base={mutation.base_version} op={entry.op_id}"
        )
        if self._auto_sync:
            self._edit_debouncer.schedule()
        return entry

    # === Sync cycle ===

    def sync(self, reason: str = "manual") -> SyncReport:
        """Run one push-then-pull cycle. Returns immediately if one is already running."""
        self.metrics.record_trigger(reason)
        report = SyncReport(reason=reason)

        if not self._lock.acquire(blocking=False):
            logger.debug(f"Sync already in flight; ignoring trigger '{reason}'")
            report.skipped = True
            report.finished_at = utc_now()
            return report

        try:
            logger.info(f"SYNC | {self.user_id} | reason={reason} | pending={len(self.queue)}")
            try:
                self._push_all(report)
                self._pull_all(report)
            except SyncAPIError as e:
                self.queue.abort_flight()
                report.error = e.category
                report.error_message = friendly_sync_error_message(e)
                self.metrics.record_failure()
                self.consecutive_failures += 1
                logger.warning(f"Sync cycle failed ({e.category}): {e}")
            except Exception:
                self.queue.abort_flight()
                self.metrics.record_failure()
                self.consecutive_failures += 1
                raise
            else:
                self.consecutive_failures = 0
                self._state.set_last_sync_time(self.user_id, utc_now())
        finally:
            report.finished_at = utc_now()
            self.last_report = report
            self._lock.release()

        self._log_cycle(report)
        if report.error and self._auto_sync:
            self.schedule_automatic_retry()
        return report

    def _log_cycle(self, report: SyncReport) -> None:
        logger.info(
            f"SYNC COMPLETE | {self.user_id} | pushed={report.pushed} "
            f"acked={report.acknowledged} conflicts={report.conflict_count} "
            f"failed={len(report.failed)} pulled={report.pulled} error={report.error}"
        )
        try:
            log_sync_cycle(
                self.user_id,
                report.reason,
                pushed=report.pushed,
                acknowledged=report.acknowledged,
                conflicts=report.conflict_count,
                failed=len(report.failed),
                pulled=report.pulled,
                error=report.error,
            )
        except OSError as e:
            logger.debug(f"Failed to write sync event log: {e}")

    def _push_all(self, report: SyncReport) -> None:
        # Each mutation is attempted at most once per cycle
        remaining = [
            entry.op_id
            for entry in self.queue
            if entry.state in (MutationState.PENDING, MutationState.CONFLICTED)
        ]
        base_cursor = self._state.get_cursor(self.user_id)

        while remaining:
            batch: List[PendingMutation] = []
            deferred: List[str] = []
            records_in_batch = set()
            for op_id in remaining:
                entry = self.queue.get(op_id)
                if entry is None or entry.state == MutationState.IN_FLIGHT:
                    continue
                key = (entry.mutation.entity, entry.mutation.entity_id)
                # Two writes to one record in a batch would race on the same base version
                if key in records_in_batch or len(batch) >= self._batch_size:
                    deferred.append(op_id)
                    continue
                records_in_batch.add(key)
                batch.append(entry)
            remaining = deferred
            if not batch:
                break

            self.queue.begin_flight([e.op_id for e in batch])
            report.pushed += len(batch)
            result = self._api.push(self.device_id, base_cursor, [e.mutation for e in batch])
            self._apply_push_result(result, report)

    def _apply_push_result(self, result: PushResult, report: SyncReport) -> None:
        for op_id in result.acknowledged_op_ids:
            if self.queue.acknowledge(op_id) is not None:
                report.acknowledged += 1

        for failure in result.failed:
            entry = self.queue.fail(failure.op_id) if failure.op_id else None
            report.failed.append(failure)
            if entry is not None:
                logger.warning(
                    f"Server refused {entry.mutation.entity}/{entry.mutation.entity_id} "
                    f"op={failure.op_id}: {failure.reason}"
                )
            else:
                logger.warning(f"Server refused unknown op {failure.op_id}: {failure.reason}")

        for conflict in result.conflicts:
            entry = self.queue.get(conflict.op_id)
            if entry is None:
                logger.warning(f"Conflict for unknown op {conflict.op_id}; ignoring")
                continue
            already_reported = entry.prior_state == MutationState.CONFLICTED
            self.queue.mark_conflicted(conflict.op_id, conflict)
            report.conflicts.append(conflict)
            if not already_reported:
                self.audit.record(ConflictEventType.DETECTED, conflict)

        # Anything the server did not mention goes back to where it was
        leftover = self.queue.abort_flight()
        if leftover:
            logger.warning(f"{leftover} mutations missing from push response; will resend")

    def _pull_all(self, report: SyncReport) -> None:
        start_cursor = self._state.get_cursor(self.user_id)
        received = self._pull_from(start_cursor, report)

        if (
            start_cursor is not None
            and received == 0
            and not self._local.has_tracked_data(self.user_id, TRACKED_ENTITIES)
        ):
            # A cursor with nothing behind it: local data was wiped but the
            # cursor survived. Re-hydrate from the beginning once.
            logger.warning(f"Stale cursor for {self.user_id}; re-pulling from the beginning")
            self._state.set_cursor(self.user_id, None)
            report.recovered_stale_cursor = True
            self._pull_from(None, report)

    def _pull_from(self, cursor: Optional[str], report: SyncReport) -> int:
        received = 0
        while True:
            page = self._api.pull(cursor, self._pull_limit)
            for change in page.changes:
                self._local.apply_change(self.user_id, change)
            received += len(page.changes)
            report.pages += 1
            cursor = page.next_cursor
            self._state.set_cursor(self.user_id, cursor)
            if not page.has_more:
                break
            if not page.changes:
                logger.warning("Server reported more changes but sent an empty page; stopping")
                break
        report.pulled += received
        report.cursor = cursor
        return received

    # === Conflict resolution ===

    def conflicts(self) -> List[PendingMutation]:
        return self.queue.entries(MutationState.CONFLICTED)

    def describe_conflicts(self) -> List[ConflictView]:
        return [describe_conflict(entry, self.device_id) for entry in self.conflicts()]

    def keep_mine(self, op_id: str) -> PendingMutation:
        """Re-issue the local change on top of the server's current version, then sync.

        The conflicted entry is replaced at the same queue position by a
        copy with a fresh opId, ``baseVersion`` equal to the server version
        (0 if the server has no row) and a fresh ``updatedAtClient``. The
        copy is pushed right away when a backend is configured; the cycle's
        outcome is in ``last_report``.
        """
        rebased = self._keep_mine(op_id)
        if self.has_backend:
            self.sync("resolve_keep_mine")
        return rebased

    def keep_server(self, op_id: str) -> PendingMutation:
        """Drop the local change and sync so the server state is pulled."""
        entry = self._keep_server(op_id)
        if self.has_backend:
            self.sync("resolve_keep_server")
        return entry

    def resolve_all_keep_mine(self) -> int:
        """Rebase every conflict, then run a single sync."""
        resolved = [self._keep_mine(entry.op_id) for entry in self.conflicts()]
        if resolved and self.has_backend:
            self.sync("resolve_keep_mine")
        return len(resolved)

    def resolve_all_keep_server(self) -> int:
        """Discard every conflict, then run a single sync."""
        resolved = [self._keep_server(entry.op_id) for entry in self.conflicts()]
        if resolved and self.has_backend:
            self.sync("resolve_keep_server")
        return len(resolved)

    def _keep_mine(self, op_id: str) -> PendingMutation:
        entry = self._require_conflict(op_id)
        conflict = entry.conflict
        base_version = conflict.server_version if conflict and conflict.server_version is not None else 0
        rebased = self.queue.rebase(op_id, self._new_op_id(), base_version, updated_at_client=utc_now())
        if conflict is not None:
            self.audit.record(ConflictEventType.KEEP_MINE, conflict)
        logger.info(f"Keep mine: {op_id} -> {rebased.op_id} at base {base_version}")
        return rebased

    def _keep_server(self, op_id: str) -> PendingMutation:
        entry = self._require_conflict(op_id)
        self.queue.discard(op_id)
        if entry.conflict is not None:
            self.audit.record(ConflictEventType.KEEP_SERVER, entry.conflict)
        logger.info(f"Keep server: discarded {op_id}")
        return entry

    def _require_conflict(self, op_id: str) -> PendingMutation:
        entry = self.queue.get(op_id)
        if entry is None:
            raise KeyError(f"No queued mutation with opId {op_id}")
        if entry.state != MutationState.CONFLICTED:
            raise ValueError(f"Mutation {op_id} is not in conflict")
        return entry

    # === Triggers & status ===

    def schedule_automatic_retry(self) -> Optional[float]:
        """Schedule a backoff retry after a failed cycle. Returns the delay, if any."""
        failures = self.consecutive_failures
        if failures == 0 or failures > MAX_AUTOMATIC_RETRIES:
            return None
        delay = backoff_delay(failures, MAX_AUTOMATIC_RETRY_DELAY)
        self._retry_debouncer.schedule(delay)
        return delay

    def cancel_scheduled(self) -> None:
        self._edit_debouncer.cancel()
        self._retry_debouncer.cancel()

    @property
    def has_backend(self) -> bool:
        """Whether a sync API client is configured."""
        return self._api is not None

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    def get_status(self) -> Dict[str, Any]:
        counts = self.queue.counts()
        return {
            "user_id": self.user_id,
            "device_id": self.device_id,
            "cursor": self._state.get_cursor(self.user_id),
            "last_sync_at": self._state.get_last_sync_time(self.user_id),
            "pending": counts[MutationState.PENDING.value],
            "in_flight": counts[MutationState.IN_FLIGHT.value],
            "conflicted": counts[MutationState.CONFLICTED.value],
            "consecutive_failures": self.consecutive_failures,
            "triggers": dict(self.metrics.by_reason),
        }
