"""
Vigil CLI - Thin entrypoint for operator commands over a sessions directory.

Commands:
- sessions list:            List sessions, newest first
- sessions summary:         Counts by status, entries and storage
- sessions cleanup:         Apply retention limits
- sessions export <id>:     Dump one session's metadata, entries and snapshots as JSON
- serve:                    Read-only monitoring API over the sessions directory

Exit Codes:
===========
- 0: Success
- 1: Session not found
- 4: System error (unreadable directory, permissions, etc.)
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

from .config import HarnessSettings
from .persistence.errors import SessionNotFoundError
from .persistence.sessions import SessionManager


def _format_size(bytes_size: int) -> str:
    if bytes_size < 1024:
        return f"{bytes_size} B"
    elif bytes_size < 1024 * 1024:
        return f"{bytes_size / 1024:.1f} KB"
    elif bytes_size < 1024 * 1024 * 1024:
        return f"{bytes_size / (1024 * 1024):.1f} MB"
    return f"{bytes_size / (1024 * 1024 * 1024):.2f} GB"


def _session_manager(args: argparse.Namespace) -> SessionManager:
    """
    Build the session manager for --base-dir or VIGIL_* settings.

    Raises:
        SystemExit(4): Directory cannot be created or read
    """
    settings = HarnessSettings.from_env()
    base_dir = Path(args.base_dir) if args.base_dir else Path(settings.base_dir)
    try:
        return SessionManager(base_dir=base_dir, retention=settings.retention)
    except OSError as e:
        print(f"ERROR: Cannot use sessions directory {base_dir}: {e}", file=sys.stderr)
        sys.exit(4)


def cmd_sessions_list(args: argparse.Namespace) -> NoReturn:
    manager = _session_manager(args)
    sessions = manager.list_sessions()
    if not sessions:
        print(f"No sessions in {manager.base_dir}")
        sys.exit(0)

    for session in sessions:
        duration = session.duration_seconds
        duration_text = f"{duration:.1f}s" if duration is not None else "-"
        print(
            f"{session.session_id:<40} {session.status.value:<10} "
            f"{session.start_time.strftime('%Y-%m-%d %H:%M:%S')} "
            f"{duration_text:>10} {session.entry_count:>8} entries"
        )
    sys.exit(0)


def cmd_sessions_summary(args: argparse.Namespace) -> NoReturn:
    manager = _session_manager(args)
    summary = manager.session_summary()
    print(f"Sessions directory: {manager.base_dir}")
    print(f"  Total:      {summary.total_sessions}")
    print(f"  Active:     {summary.active_sessions}")
    print(f"  Completed:  {summary.completed_sessions}")
    print(f"  Failed:     {summary.failed_sessions}")
    print(f"  Entries:    {summary.total_entries}")
    print(f"  Storage:    {_format_size(summary.total_bytes)}")
    if summary.oldest_session:
        print(f"  Oldest:     {summary.oldest_session.isoformat()}")
        print(f"  Newest:     {summary.newest_session.isoformat()}")
    sys.exit(0)


def cmd_sessions_cleanup(args: argparse.Namespace) -> NoReturn:
    manager = _session_manager(args)
    deleted = manager.cleanup_old_sessions()
    if deleted:
        print(f"Removed {len(deleted)} session(s):")
        for session_id in deleted:
            print(f"  {session_id}")
    else:
        print("Nothing to remove")
    sys.exit(0)


def cmd_sessions_export(args: argparse.Namespace) -> NoReturn:
    """
    Export one session as JSON to stdout or --output.

    Exit codes:
        0: Exported
        1: Session not found
        4: Output could not be written
    """
    manager = _session_manager(args)
    try:
        data = manager.export_session_data(args.session_id)
    except SessionNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    text = json.dumps(data, indent=2, default=str)
    if args.output:
        try:
            Path(args.output).write_text(text, encoding="utf-8")
        except OSError as e:
            print(f"ERROR: Cannot write {args.output}: {e}", file=sys.stderr)
            sys.exit(4)
        print(f"Exported {len(data['entries'])} entries to {args.output}")
    else:
        print(text)
    sys.exit(0)


def cmd_serve(args: argparse.Namespace) -> NoReturn:
    import uvicorn

    from .monitoring.server import create_app

    manager = _session_manager(args)
    app = create_app(manager)
    uvicorn.run(app, host=args.host, port=args.port)
    sys.exit(0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='vigil',
        description='Vigil - Integration health monitoring sessions',
    )
    parser.add_argument(
        '--base-dir',
        default=None,
        help='Sessions directory (default: VIGIL_BASE_DIR or ~/.vigil/sessions)'
    )

    subparsers = parser.add_subparsers(dest='command', required=True, help='Command to execute')

    # Sessions commands
    parser_sessions = subparsers.add_parser('sessions', help='Inspect and maintain recorded sessions')
    sessions_sub = parser_sessions.add_subparsers(dest='sessions_command', required=True)

    parser_list = sessions_sub.add_parser('list', help='List sessions, newest first')
    parser_list.set_defaults(func=cmd_sessions_list)

    parser_summary = sessions_sub.add_parser('summary', help='Show totals across sessions')
    parser_summary.set_defaults(func=cmd_sessions_summary)

    parser_cleanup = sessions_sub.add_parser('cleanup', help='Apply retention limits')
    parser_cleanup.set_defaults(func=cmd_sessions_cleanup)

    parser_export = sessions_sub.add_parser('export', help='Export one session as JSON')
    parser_export.add_argument(
        'session_id',
        help='Session id to export'
    )
    parser_export.add_argument(
        '--output',
        default=None,
        help='Write to this file instead of stdout'
    )
    parser_export.set_defaults(func=cmd_sessions_export)

    # Serve command
    parser_serve = subparsers.add_parser('serve', help='Run the read-only monitoring API')
    parser_serve.add_argument(
        '--host',
        default='127.0.0.1',
        help='Bind address (default: 127.0.0.1)'
    )
    parser_serve.add_argument(
        '--port',
        type=int,
        default=8765,
        help='Port (default: 8765)'
    )
    parser_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """
    Main CLI entrypoint.

    Parses arguments and dispatches to subcommands.
    """
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == '__main__':
    main()
