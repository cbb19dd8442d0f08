"""Sync commands for klettrack CLI."""

import json
import sys
from typing import TYPE_CHECKING

from klettrack.core.validation import MutationValidationError
from klettrack.presentation import describe_conflict, entity_label, reason_label

if TYPE_CHECKING:
    from klettrack.storage.sync_engine import SyncReconciler


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _report_to_dict(report) -> dict:
    return {
        "reason": report.reason,
        "success": report.success,
        "skipped": report.skipped,
        "pushed": report.pushed,
        "acknowledged": report.acknowledged,
        "conflicts": [c.to_wire() for c in report.conflicts],
        "failed": [f.to_wire() for f in report.failed],
        "pulled": report.pulled,
        "pages": report.pages,
        "cursor": report.cursor,
        "recovered_stale_cursor": report.recovered_stale_cursor,
        "error": report.error,
        "error_message": report.error_message,
    }


def _print_resolution_sync(reconciler: "SyncReconciler", resolved: bool) -> None:
    if not resolved:
        return
    if not reconciler.has_backend:
        print("  Backend not configured; changes will go out on the next sync")
        return
    report = reconciler.last_report
    if report is None or report.skipped:
        print("  A sync is already running; changes will go out with it")
    elif report.error:
        print(f"  ✗ {report.error_message}")
    else:
        print(f"  Synced: {report.acknowledged}/{report.pushed} pushed, {report.pulled} pulled")


def cmd_sync(args, reconciler: "SyncReconciler"):
    """Handle sync subcommands."""
    action = args.sync_action

    if action == "run":
        if not reconciler.has_backend:
            print("✗ Backend not configured")
            print("  Set KLETTRACK_BACKEND_URL and KLETTRACK_AUTH_TOKEN")
            sys.exit(1)
        report = reconciler.sync(reason=args.reason)
        if args.json:
            _print_json(_report_to_dict(report))
        elif report.skipped:
            print("⏳ A sync is already running")
        elif report.error:
            print(f"✗ {report.error_message}")
        else:
            print(f"✓ Sync complete: {report.acknowledged}/{report.pushed} pushed, {report.pulled} pulled")
            if report.recovered_stale_cursor:
                print("  Cursor was stale; re-downloaded everything")
            for failure in report.failed:
                print(f"  ✗ {failure.op_id}: {reason_label(failure.reason)} ({failure.reason})")
            if report.conflicts:
                print(f"⚠ {len(report.conflicts)} conflict(s) need review: klettrack sync conflicts")
        if not report.success and not report.skipped:
            sys.exit(1)

    elif action == "status":
        status = reconciler.get_status()
        if args.json:
            _print_json(status)
        else:
            print("Sync Status")
            print("=" * 50)
            print(f"User: {status['user_id']}")
            print(f"Device: {status['device_id']}")
            print(f"Pending: {status['pending']}")
            print(f"Conflicts: {status['conflicted']}")
            print(f"Cursor: {status['cursor'] or '(none)'}")
            print(f"Last sync: {status['last_sync_at'] or 'Never'}")

    elif action == "conflicts":
        views = [describe_conflict(e, reconciler.device_id) for e in reconciler.conflicts()]
        if args.json:
            _print_json(
                [
                    {
                        "opId": v.op_id,
                        "entity": v.entity_label,
                        "entityId": v.entity_id_label,
                        "reason": v.reason_label,
                        "serverVersion": v.server_version_label,
                        "changes": [
                            {"field": d.field, "local": d.local, "server": d.server}
                            for d in v.changes
                        ],
                        "suggestion": v.suggestion.resolution.value,
                        "highRisk": v.suggestion.high_risk,
                    }
                    for v in views
                ]
            )
            return
        if not views:
            print("No conflicts.")
            return
        for view in views:
            print(f"{view.entity_label} · {view.entity_id_label}")
            print(f"  op: {view.op_id}")
            print(f"  {view.reason_label} · server v{view.server_version_label}")
            for diff in view.changes:
                print(f"    {diff.field}: mine={diff.local} server={diff.server}")
            risk = " (review carefully)" if view.suggestion.high_risk else ""
            print(f"  Suggested: {view.suggestion.resolution.value}{risk} - {view.suggestion.rationale}")
            print()

    elif action == "resolve":
        keep_mine = args.keep == "mine"
        if args.all:
            count = (
                reconciler.resolve_all_keep_mine()
                if keep_mine
                else reconciler.resolve_all_keep_server()
            )
            print(f"✓ Resolved {count} conflict(s) keeping {args.keep}")
            _print_resolution_sync(reconciler, count > 0)
            return
        if not args.op_id:
            print("✗ Give an opId or --all")
            sys.exit(1)
        try:
            if keep_mine:
                entry = reconciler.keep_mine(args.op_id)
                print(f"✓ Kept mine; re-issued as {entry.op_id}")
            else:
                reconciler.keep_server(args.op_id)
                print("✓ Kept server version")
        except (KeyError, ValueError) as e:
            print(f"✗ {e}")
            sys.exit(1)
        _print_resolution_sync(reconciler, True)

    elif action == "audit":
        if args.clear:
            removed = reconciler.audit.clear()
            print(f"✓ Cleared {removed} audit event(s)")
            return
        events = reconciler.audit.events(limit=args.limit)
        if args.json:
            _print_json(
                [
                    {
                        "id": e.id,
                        "eventType": e.event_type.value,
                        "timestamp": e.timestamp,
                        "entity": e.entity,
                        "entityId": e.entity_id,
                        "reason": e.reason,
                    }
                    for e in events
                ]
            )
            return
        if not events:
            print("No conflict events recorded.")
            return
        for e in events:
            print(f"{e.timestamp[:19]}  {e.event_type.value:<12} {entity_label(e.entity)} {e.entity_id}")

    elif action == "enqueue":
        payload = None
        if args.payload:
            try:
                payload = json.loads(args.payload)
            except json.JSONDecodeError as e:
                print(f"✗ Payload is not valid JSON: {e}")
                sys.exit(1)
        try:
            entry = reconciler.enqueue_local_mutation(
                args.entity,
                args.entity_id,
                args.type,
                payload,
                base_version=args.base_version,
            )
        except MutationValidationError as e:
            print(f"✗ Rejected: {reason_label(e.reason)} ({e.reason})")
            sys.exit(1)
        print(f"✓ Queued {args.type} {args.entity}/{entry.mutation.entity_id} as {entry.op_id}")
