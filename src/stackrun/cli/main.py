"""Command-line entry point for stackrun."""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

from stackrun.core.errors import ExitCode


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")
    return number


def _add_state_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--state", dest="state_path", help="State file path (default: STACKRUN_STATE_PATH)")
    parser.add_argument(
        "--secure-state",
        action="store_true",
        help="Store secret payloads in the state file instead of redacting them",
    )
    parser.add_argument("--output", choices=["text", "json"], default="text", help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show detailed progress and outputs")


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--parallel", type=_positive_int, help="Maximum concurrent provider calls")
    parser.add_argument("--timeout", type=_positive_float, help="Cancel the run after this many seconds")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stackrun", description="Dependency-ordered resource lifecycle runner")
    subparsers = parser.add_subparsers(dest="command")

    up_parser = subparsers.add_parser("up", help="Create, update or replace every resource in a stack")
    up_parser.add_argument("stack_file", help="Path to stack YAML file")
    up_parser.add_argument("--refresh", action="store_true", help="Read current outputs for unchanged resources")
    _add_run_options(up_parser)
    _add_state_options(up_parser)

    preview_parser = subparsers.add_parser("preview", help="Show planned actions without calling any provider")
    preview_parser.add_argument("stack_file", help="Path to stack YAML file")
    _add_state_options(preview_parser)

    destroy_parser = subparsers.add_parser("destroy", help="Delete every resource recorded in state")
    destroy_parser.add_argument("-y", "--yes", action="store_true", help="Skip confirmation prompt")
    _add_run_options(destroy_parser)
    _add_state_options(destroy_parser)

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "up":
        from stackrun.cli.commands import up_command

        sys.exit(
            up_command(
                args.stack_file,
                state_path=args.state_path,
                secure_state=args.secure_state,
                parallel=args.parallel,
                refresh=args.refresh,
                timeout=args.timeout,
                output_format=args.output,
                verbose=args.verbose,
            )
        )

    if args.command == "preview":
        from stackrun.cli.commands import preview_command

        sys.exit(
            preview_command(
                args.stack_file,
                state_path=args.state_path,
                secure_state=args.secure_state,
                output_format=args.output,
                verbose=args.verbose,
            )
        )

    if args.command == "destroy":
        from stackrun.cli.commands import destroy_command

        sys.exit(
            destroy_command(
                state_path=args.state_path,
                secure_state=args.secure_state,
                parallel=args.parallel,
                timeout=args.timeout,
                yes=args.yes,
                output_format=args.output,
                verbose=args.verbose,
            )
        )

    parser.print_help()
    sys.exit(ExitCode.VALIDATION_ERROR)


if __name__ == "__main__":
    main()
