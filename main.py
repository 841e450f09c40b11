#!/usr/bin/env python3
"""
TodoMaster auth service -- operator commands.

The API itself runs under uvicorn (uvicorn asgi:app). This script covers the
maintenance jobs that run outside the server process.

Usage:
  python main.py report
  python main.py report --hours 1
  python main.py report --log-dir /var/log/todomaster --json
  python main.py clear-locks

Environment variables:
  SECURITY_LOG_DIR  Directory holding security-events.log / security-alerts.log
                    (default: logs). Overridden by --log-dir.
  DATABASE_URL      Database used by clear-locks.
"""

import argparse
import json
import sys
from pathlib import Path

from auth.store import UserStore
from core.config import get_settings
from security.monitor import SecurityMonitor


def _print_report(report: dict) -> None:
    summary = report["summary"]
    print(f"\nTodoMaster Security Report -- last {report['window_hours']:g}h")
    print("─" * 40)
    print(f"  Generated:        {report['generated']}")
    print(f"  Events:           {summary['total_events']}")
    print(f"  Alerts:           {summary['total_alerts']}")
    print(f"    HIGH:           {summary['high_priority_alerts']}")
    print(f"    MEDIUM:         {summary['medium_priority_alerts']}")

    if report["top_events"]:
        print("\n  Top event types:")
        for event_type, count in report["top_events"]:
            print(f"    {event_type:<20} {count}")

    if report["recent_alerts"]:
        print("\n  Recent alerts:")
        for alert in report["recent_alerts"]:
            print(f"    {alert['timestamp']}  [{alert['level']}] {alert['type']}: {alert['message']}")
    print()


def cmd_report(args: argparse.Namespace) -> int:
    log_dir = Path(args.log_dir or get_settings().security_log_dir)
    if not log_dir.is_dir():
        print(f"  [!] '{log_dir}' is not a directory.", file=sys.stderr)
        return 1

    report = SecurityMonitor.from_logs(log_dir).report(window_hours=args.hours)
    if args.json:
        print(json.dumps(report, indent=2))
    else:
        _print_report(report)
    return 0


def cmd_clear_locks(args: argparse.Namespace) -> int:
    store = UserStore(get_settings().database_url)
    try:
        cleared = store.clear_expired_locks()
    finally:
        store.close()
    print(f"  Cleared {cleared} expired account lock(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="todomaster",
        description="Maintenance commands for the TodoMaster auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py report
  python main.py report --hours 1 --json
  python main.py clear-locks
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    report = sub.add_parser("report", help="Summarize security events and alerts from the durable logs")
    report.add_argument(
        "--hours",
        type=float,
        default=24,
        metavar="N",
        help="Trailing window in hours (default: 24)",
    )
    report.add_argument(
        "--log-dir",
        metavar="DIR",
        help="Directory holding the security logs (default: SECURITY_LOG_DIR or ./logs)",
    )
    report.add_argument(
        "--json",
        action="store_true",
        help="Output the report as JSON",
    )
    report.set_defaults(func=cmd_report)

    clear = sub.add_parser("clear-locks", help="Reset counters on accounts whose lock has lapsed")
    clear.set_defaults(func=cmd_clear_locks)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
