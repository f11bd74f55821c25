# Main Entry Point
#
# Thin command line wrapper over the public operations:
#   filkollen run                         foreground agent until Ctrl+C
#   filkollen scan PATH [PATH ...]        one-off scan, prints findings
#   filkollen quarantine list|restore|delete|cleanup

import argparse
import logging
import signal
import sys
import threading

from . import __version__
from .core import AuditLogger, ConfigError, load_config, set_audit_logger
from .protection import ProtectionOrchestrator, ThreatDetected


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="filkollen",
        description="FilKollen - host threat detection and quarantine agent",
    )
    parser.add_argument("--config", help="JSON config file (default: $FILKOLLEN_CONFIG)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"FilKollen v{__version__}")

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run real-time protection in the foreground")
    run.add_argument("--auto-clean", action="store_true",
                     help="Quarantine HIGH and CRITICAL threats automatically")

    scan = commands.add_parser("scan", help="Scan paths once and print findings")
    scan.add_argument("paths", nargs="+")
    scan.add_argument("-r", "--recursive", action="store_true")

    quarantine = commands.add_parser("quarantine", help="Manage quarantined files")
    actions = quarantine.add_subparsers(dest="action", required=True)
    actions.add_parser("list", help="List quarantined files")
    restore = actions.add_parser("restore", help="Restore a file to its original path")
    restore.add_argument("id")
    delete = actions.add_parser("delete", help="Erase a quarantined file")
    delete.add_argument("id")
    cleanup = actions.add_parser("cleanup", help="Erase items past the retention period")
    cleanup.add_argument("--days", type=int, default=None)

    return parser


def _print_threat(notification: ThreatDetected) -> None:
    result = notification.scan_result
    handled = "quarantined" if notification.was_auto_handled else "detected"
    print(f"[{result.threat_level.label:8}] {handled}: {result.path} - {result.reason}")


def _run(orchestrator: ProtectionOrchestrator) -> int:
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, lambda *_: stop.set())

    orchestrator.subscribe(ThreatDetected.kind, _print_threat)
    orchestrator.start_protection()
    print(f"Protection active on {len(orchestrator.get_monitored_paths())} path(s). Press Ctrl+C to stop.")
    stop.wait()
    orchestrator.stop_protection()

    stats = orchestrator.get_protection_stats()
    print(f"Threats found: {stats.total_threats_found}, handled: {stats.total_threats_handled} "
          f"({stats.threat_handling_rate:.0f}%)")
    return 0


def _scan(orchestrator: ProtectionOrchestrator, paths, recursive: bool) -> int:
    orchestrator.config.recursive = recursive
    results = orchestrator.scan_now(paths)
    for result in results:
        print(f"[{result.threat_level.label:8}] {result.path} ({result.formatted_size}) - {result.reason}")
    print(f"{len(results)} finding(s)")
    return 1 if results else 0


def _quarantine(orchestrator: ProtectionOrchestrator, args) -> int:
    store = orchestrator.store
    if args.action == "list":
        items = store.list_items()
        for item in items:
            print(f"{item.id}  {item.quarantined_at:%Y-%m-%d %H:%M}  "
                  f"{item.threat_level.label:8}  {item.original_path}  ({item.reason})")
        stats = store.stats()
        print(f"{stats.total_files} item(s), {stats.total_size_bytes} bytes")
        return 0
    if args.action == "cleanup":
        removed = orchestrator.cleanup_expired(args.days)
        print(f"Removed {removed} expired item(s)")
        return 0

    operation = orchestrator.restore if args.action == "restore" else orchestrator.delete_quarantined
    result = operation(args.id)
    print(result.message)
    return 0 if result else 1


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    if getattr(args, "auto_clean", False):
        config.auto_clean_mode = True
    set_audit_logger(AuditLogger(config.audit_log_dir))

    orchestrator = ProtectionOrchestrator(config)
    if args.command == "run":
        return _run(orchestrator)
    if args.command == "scan":
        return _scan(orchestrator, args.paths, args.recursive)
    return _quarantine(orchestrator, args)


if __name__ == "__main__":
    sys.exit(main())
