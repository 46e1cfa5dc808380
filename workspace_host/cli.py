"""Command-line entry point: ``workspace-host run``."""

import argparse
import sys

import uvicorn

from workspace_host.env import LOG_LEVEL
from workspace_host.log import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workspace-host",
        description="Remote command execution and dev-server preview gateway",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Start the HTTP server")
    run_parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    run_parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    run_parser.add_argument(
        "--reload", action="store_true", help="Reload on code changes (development only)"
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command != "run":
        parser.print_help()
        return 2

    configure_logging(level="DEBUG" if args.verbose else LOG_LEVEL)
    uvicorn.run(
        "workspace_host.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_config=None,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
