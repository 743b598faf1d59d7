"""
`cligate` command line.

    cligate serve --profile work --cli claude     # proxy only, prints its URL
    cligate run --profile work -- --resume        # proxy + the CLI itself
    cligate logs --errors-only --limit 20         # read the JSONL request log
    cligate profiles                              # list configured profiles
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from cligate import __version__
from cligate.logging_config import setup_logging
from cligate.models.provider import CliFamily
from cligate.provider.config import list_profiles, load_snapshot, read_config_document
from cligate.request_log import LogFilter, RequestLogEntry, read_log_file
from cligate.routing.exceptions import ConfigurationError
from cligate.settings import settings


def _add_session_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-p",
        "--profile",
        default=settings.profile,
        help=f"Profile to serve (default: {settings.profile})",
    )
    parser.add_argument(
        "--cli",
        dest="cli_family",
        choices=[family.value for family in CliFamily],
        default=settings.cli_family,
        help="Calling CLI family; fixes the wire shape the proxy speaks",
    )
    parser.add_argument(
        "-c",
        "--config",
        dest="config_path",
        default=None,
        help="Configuration file (default: CLIGATE_CONFIG_PATH)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cligate",
        description="Local API gateway with scenario routing and failover for AI coding CLIs.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the proxy until interrupted")
    _add_session_arguments(serve_parser)
    serve_parser.add_argument(
        "--port", type=int, default=None, help="Port to bind (default: ephemeral)"
    )

    run_parser = subparsers.add_parser("run", help="Run a CLI behind a fresh proxy session")
    _add_session_arguments(run_parser)
    run_parser.add_argument(
        "--command",
        dest="executable",
        default=None,
        help="Executable to launch instead of the CLI family's default",
    )
    run_parser.add_argument(
        "cli_args",
        nargs=argparse.REMAINDER,
        help="Arguments passed through to the CLI (put them after --)",
    )

    logs_parser = subparsers.add_parser("logs", help="Query the request log file")
    logs_parser.add_argument(
        "--file",
        default=settings.request_log_file,
        help="JSONL request log (default: CLIGATE_REQUEST_LOG_FILE)",
    )
    logs_parser.add_argument("--provider", help="Only attempts against this provider id")
    logs_parser.add_argument("--outcome", help="Only attempts with this outcome class")
    logs_parser.add_argument(
        "--errors-only", action="store_true", help="Only attempts that did not succeed"
    )
    logs_parser.add_argument("--status-min", type=int, default=None)
    logs_parser.add_argument("--status-max", type=int, default=None)
    logs_parser.add_argument("--limit", type=int, default=100)
    logs_parser.add_argument("--json", action="store_true", help="Print raw JSON lines")

    profiles_parser = subparsers.add_parser("profiles", help="List configured profiles")
    profiles_parser.add_argument("-c", "--config", dest="config_path", default=None)

    return parser


def format_entry(entry: RequestLogEntry) -> str:
    status = entry.status_code if entry.status_code is not None else "-"
    line = (
        f"{entry.timestamp.isoformat(timespec='seconds')}  {entry.request_id}  "
        f"{entry.provider_id:<16} {entry.outcome:<20} {status!s:>4}  "
        f"{entry.latency_ms:>9.1f}ms  {entry.model or '-'}"
    )
    if entry.detail:
        line += f"\n    {entry.detail}"
    return line


def _cmd_serve(args: argparse.Namespace) -> int:
    from cligate.session import serve

    snapshot = load_snapshot(args.profile, args.cli_family, path=args.config_path)
    asyncio.run(serve(snapshot, port=args.port))
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    from cligate.session import run_cli

    snapshot = load_snapshot(args.profile, args.cli_family, path=args.config_path)
    cli_args = list(args.cli_args)
    if cli_args and cli_args[0] == "--":
        cli_args = cli_args[1:]
    return asyncio.run(run_cli(snapshot, cli_args, command=args.executable))


def _cmd_logs(args: argparse.Namespace) -> int:
    if not args.file:
        print(
            "No request log file configured; pass --file or set CLIGATE_REQUEST_LOG_FILE",
            file=sys.stderr,
        )
        return 2
    log_filter = LogFilter(
        provider=args.provider,
        outcome=args.outcome,
        errors_only=args.errors_only,
        status_min=args.status_min,
        status_max=args.status_max,
        limit=args.limit,
    )
    try:
        entries = read_log_file(args.file, log_filter)
    except FileNotFoundError:
        print(f"Request log {args.file} does not exist", file=sys.stderr)
        return 1
    for entry in entries:
        print(entry.model_dump_json() if args.json else format_entry(entry))
    return 0


def _cmd_profiles(args: argparse.Namespace) -> int:
    for name in list_profiles(read_config_document(args.config_path)):
        print(name)
    return 0


_COMMANDS = {
    "serve": _cmd_serve,
    "run": _cmd_run,
    "logs": _cmd_logs,
    "profiles": _cmd_profiles,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command in ("serve", "run"):
        setup_logging()
    try:
        return _COMMANDS[args.command](args)
    except ConfigurationError as exc:
        print(f"cligate: configuration error: {exc}", file=sys.stderr)
        return 2
    except FileNotFoundError as exc:
        print(f"cligate: {exc}", file=sys.stderr)
        return 127
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
