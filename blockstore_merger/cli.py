"""Command-line interface for blockstore merger."""

import argparse
import logging
import sys
from pathlib import Path

from . import __version__
from .context import Context
from .errors import BlockstoreError, CancelledError
from .merger import merge_blockstores, peek_blockstores
from .models import DEFAULT_BATCH_SIZE, DEFAULT_DESTINATION, MergeConfig
from .sharding import ShardSpec

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = CancelledError.exit_code


def _shard_spec(value: str) -> ShardSpec:
    try:
        return ShardSpec.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bsutil",
        description="Inspect and merge flatfs blockstores.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s peek -i /blockstore-a
  %(prog)s merge -i /blockstore-a -i /blockstore-b -i /blockstore-c -o /merged
        """
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Cancel the operation after this many seconds"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    peek = subparsers.add_parser("peek", help="Print every key held by one or more blockstores")
    peek.add_argument(
        "--input", "-i",
        dest="inputs",
        type=Path,
        action="append",
        required=True,
        help="Path to an input blockstore (repeatable)"
    )
    peek.add_argument(
        "--checksum",
        action="store_true",
        help="Also print each block's size and xxh64 checksum"
    )

    merge = subparsers.add_parser(
        "merge",
        help="Merge two or more blockstores into one",
        description="Merge two or more flatfs blockstores into one"
    )
    merge.add_argument(
        "--input", "-i",
        dest="inputs",
        type=Path,
        action="append",
        default=[],
        help="Path to an input blockstore (repeatable)"
    )
    merge.add_argument(
        "--output", "-o",
        type=Path,
        default=DEFAULT_DESTINATION,
        help=f"Path of the merged blockstore to create (default: {DEFAULT_DESTINATION})"
    )
    merge.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Blocks written per batch (default: {DEFAULT_BATCH_SIZE})"
    )
    merge.add_argument(
        "--shard",
        type=_shard_spec,
        default=ShardSpec.parse("next-to-last/3"),
        help="Shard function of the output store (default: next-to-last/3)"
    )
    merge.add_argument(
        "--sync-files",
        action="store_true",
        help="Make each batch durable as soon as it is written (default: once, at the end)"
    )
    merge.add_argument(
        "--no-progress",
        action="store_true",
        help="Do not show progress bars"
    )

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    return build_parser().parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    """Validate command-line arguments."""
    if not args.inputs:
        print("Error: at least one input is required")
        sys.exit(EXIT_FAILURE)
    if args.timeout is not None and args.timeout <= 0:
        print(f"Error: timeout must be positive: {args.timeout}")
        sys.exit(EXIT_FAILURE)
    if args.command == "merge" and args.batch_size < 1:
        print(f"Error: batch size must be at least 1: {args.batch_size}")
        sys.exit(EXIT_FAILURE)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr
    )


def build_config(args: argparse.Namespace) -> MergeConfig:
    return MergeConfig(
        sources=args.inputs,
        destination=args.output,
        batch_size=args.batch_size,
        shard=args.shard,
        sync_files=args.sync_files,
        show_progress=not args.no_progress
    )


def run(args: argparse.Namespace) -> int:
    """Run the selected command and return the process exit code."""
    ctx = Context.with_timeout(args.timeout) if args.timeout else Context.background()

    try:
        if args.command == "peek":
            peek_blockstores(args.inputs, ctx, checksum=args.checksum)
        else:
            merge_blockstores(build_config(args), ctx)
    except BlockstoreError as e:
        print(f"Error: {e}")
        return e.exit_code
    except KeyboardInterrupt:
        print("\n\nInterrupted! Blocks written so far remain in the output blockstore.")
        return EXIT_INTERRUPTED
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    validate_args(args)
    configure_logging(args.verbose)
    code = run(args)
    if code != EXIT_OK:
        sys.exit(code)
