"""
Klettrack CLI - sync a climbing/training log across devices.

Usage:
    klettrack sync run [--reason R] [--json]
    klettrack sync status [--json]
    klettrack sync conflicts [--json]
    klettrack sync resolve (OP_ID | --all) --keep mine|server
    klettrack sync audit [--limit N] [--clear] [--json]
    klettrack sync enqueue ENTITY ENTITY_ID --type upsert|delete [--payload JSON]
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from jose import JWTError, jwt

from klettrack.cli.commands import cmd_sync
from klettrack.logging_config import setup_klettrack_logging
from klettrack.storage import SQLiteStorage, SyncAPIClient, SyncAPIError, load_credentials
from klettrack.storage.sync_engine import SyncReconciler

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def user_id_from_token(token: str):
    """Read ``sub`` from a JWT without verifying it; the server verifies."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    sub = claims.get("sub")
    return str(sub) if sub else None


def build_reconciler(args) -> SyncReconciler:
    creds = load_credentials()
    user_id = args.user or (creds or {}).get("user_id")
    if not user_id and creds:
        user_id = user_id_from_token(creds["auth_token"])
    if not user_id:
        raise ValueError("No user id: pass --user or set KLETTRACK_USER_ID")
    setup_klettrack_logging(user_id, os.environ.get("KLETTRACK_LOG_LEVEL", "INFO"))

    storage = SQLiteStorage(Path(args.db) if args.db else None)
    api = None
    if creds:
        token = creds["auth_token"]
        api = SyncAPIClient(creds["backend_url"], lambda: token)
    return SyncReconciler(user_id, api, storage, storage)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="klettrack",
        description="Multi-device sync for a climbing and training log",
    )
    parser.add_argument("--user", "-u", help="User id (defaults to the token subject)")
    parser.add_argument("--db", help="Client database path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_sync = subparsers.add_parser("sync", help="Sync with the server")
    sync_sub = p_sync.add_subparsers(dest="sync_action", required=True)

    s_run = sync_sub.add_parser("run", help="Push pending changes and pull updates")
    s_run.add_argument("--reason", default="manual", help="Trigger reason for metrics")
    s_run.add_argument("--json", "-j", action="store_true")

    s_status = sync_sub.add_parser("status", help="Show queue and cursor state")
    s_status.add_argument("--json", "-j", action="store_true")

    s_conflicts = sync_sub.add_parser("conflicts", help="List unresolved conflicts")
    s_conflicts.add_argument("--json", "-j", action="store_true")

    s_resolve = sync_sub.add_parser("resolve", help="Resolve a conflict")
    s_resolve.add_argument("op_id", nargs="?", help="opId of the conflicted mutation")
    s_resolve.add_argument("--all", action="store_true", help="Resolve every conflict")
    s_resolve.add_argument("--keep", choices=["mine", "server"], required=True)

    s_audit = sync_sub.add_parser("audit", help="Show the conflict audit trail")
    s_audit.add_argument("--limit", "-l", type=int, default=50)
    s_audit.add_argument("--clear", action="store_true", help="Delete the audit trail")
    s_audit.add_argument("--json", "-j", action="store_true")

    s_enqueue = sync_sub.add_parser("enqueue", help="Queue a local change")
    s_enqueue.add_argument("entity", help="Entity name, e.g. climb_entries")
    s_enqueue.add_argument("entity_id", help="Record UUID")
    s_enqueue.add_argument("--type", choices=["upsert", "delete"], default="upsert")
    s_enqueue.add_argument("--payload", "-p", help="JSON object of fields")
    s_enqueue.add_argument("--base-version", type=int, default=None)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    try:
        reconciler = build_reconciler(args)
    except (ValueError, SyncAPIError) as e:
        logger.error(f"Failed to initialize sync: {e}")
        sys.exit(1)

    try:
        if args.command == "sync":
            cmd_sync(args, reconciler)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
