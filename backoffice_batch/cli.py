"""
Command-line entry point for the back-office scheduling engine.

Usage:
  backoffice [--config settings.yaml] [--verbose] serve
  backoffice run-recurring
  backoffice backup create [--name NAME] [--no-database] [--no-storage] [--include-config]
  backoffice backup restore BACKUP_ID
  backoffice backup list [--limit 50]
  backoffice backup cleanup [--retention-days 30]
  backoffice backup rescan

Exit status is 0 on success, 1 when the engine reports an error, 2 on
usage errors.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from uuid import UUID

from backoffice_config.loader import load_settings
from backoffice_kernel.exceptions import BackOfficeError
from backoffice_kernel.logging_config import configure_logging

from backoffice_batch.domain.types import BackupOptions
from backoffice_batch.orchestrator import SchedulingEngine


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="backoffice",
        description="Back-office scheduling and batch engine",
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("serve", help="Run all timers until interrupted")
    commands.add_parser("run-recurring", help="Generate due recurring expenses now")

    backup = commands.add_parser("backup", help="Backup operations")
    backup_commands = backup.add_subparsers(dest="backup_command", required=True)

    create = backup_commands.add_parser("create", help="Run a manual backup")
    create.add_argument("--name", default=None)
    create.add_argument("--no-database", action="store_true")
    create.add_argument("--no-storage", action="store_true")
    create.add_argument("--include-config", action="store_true")
    create.add_argument("--initiator", default="cli")

    restore = backup_commands.add_parser("restore", help="Restore a completed backup")
    restore.add_argument("backup_id", type=UUID)
    restore.add_argument("--initiator", default="cli")

    listing = backup_commands.add_parser("list", help="List backups, newest first")
    listing.add_argument("--limit", type=int, default=50)
    listing.add_argument("--offset", type=int, default=0)

    cleanup = backup_commands.add_parser("cleanup", help="Delete backups past retention")
    cleanup.add_argument("--retention-days", type=int, default=None)

    backup_commands.add_parser("rescan", help="Register orphan artifact directories")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        settings = load_settings(args.config)
        engine = SchedulingEngine.from_settings(settings)
    except BackOfficeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    try:
        if args.command == "serve":
            return _serve(engine)
        if args.command == "run-recurring":
            outcome = engine.trigger_recurring_expenses()
            print(outcome.message)
            return 0
        return _backup(engine, args)
    except BackOfficeError as exc:
        print(f"error [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    finally:
        if args.command != "serve":
            engine.stop()


def _backup(engine: SchedulingEngine, args: argparse.Namespace) -> int:
    command = args.backup_command

    if command == "create":
        record = engine.backups.create_backup(
            args.initiator,
            BackupOptions(
                include_database=not args.no_database,
                include_storage=not args.no_storage,
                include_config=args.include_config,
                name=args.name,
            ),
        )
        print(f"{record.backup_id}  {record.name}  {record.size_bytes} bytes")
        return 0

    if command == "restore":
        engine.backups.restore_backup(args.backup_id, args.initiator)
        print(f"restored {args.backup_id}")
        return 0

    if command == "list":
        for record in engine.backups.list_backups(limit=args.limit, offset=args.offset):
            size = "-" if record.size_bytes is None else str(record.size_bytes)
            print(
                f"{record.backup_id}  {record.name:<40}  {record.kind.value:<9}  "
                f"{record.status.value:<11}  {size:>12}  {record.started_at}"
            )
        return 0

    if command == "cleanup":
        days = args.retention_days
        if days is None:
            days = engine.settings.backup.default_retention_days
        deleted = engine.sweeper.cleanup_old_backups(days)
        print(f"deleted {deleted} backups")
        return 0

    if command == "rescan":
        added = engine.backups.rescan_artifacts()
        print(f"registered {added} backups")
        return 0

    return 2


def _serve(engine: SchedulingEngine) -> int:
    stop = threading.Event()

    def _handle(signum, frame):
        stop.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)

    engine.start()
    try:
        stop.wait()
    finally:
        engine.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
