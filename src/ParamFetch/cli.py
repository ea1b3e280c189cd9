"""Command line entry point: ``paramfetch MANIFEST --sector-size N``."""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from .cancellation import CancellationToken
from .errors import ManifestError
from .fetch import ParamFetcher, default_verification_cache
from .logging_utils import setup_logging
from .settings import FetchSettings

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_FATAL = 2
EXIT_CANCELLED = 130


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="paramfetch",
        description="Fetch and verify proof parameter files listed in a JSON manifest.",
    )
    parser.add_argument("manifest", type=Path, help="Path to the parameter manifest JSON")
    parser.add_argument(
        "--sector-size",
        type=int,
        required=True,
        help="Sector size selecting which .params files are required",
    )
    parser.add_argument("--param-dir", type=Path, help="Override FIL_PROOFS_PARAMETER_CACHE")
    parser.add_argument("--gateway", help="Override IPFS_GATEWAY")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Set logging verbosity",
    )
    parser.add_argument("--log-dir", type=Path, help="Write JSONL logs to this directory")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bars")
    return parser


def _settings_from_args(args: argparse.Namespace) -> FetchSettings:
    overrides = {}
    if args.param_dir is not None:
        overrides["param_dir"] = args.param_dir
    if args.gateway:
        overrides["gateway"] = args.gateway
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_dir is not None:
        overrides["log_dir"] = args.log_dir
    if args.no_progress:
        overrides["show_progress"] = False
    return FetchSettings(**overrides)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the fetcher and return a process exit code."""

    args = _build_parser().parse_args(argv)
    try:
        settings = _settings_from_args(args)
    except PydanticValidationError as exc:
        print(f"error: invalid configuration: {exc}", file=sys.stderr)
        return EXIT_FATAL
    logger = setup_logging(level=settings.log_level, log_dir=settings.log_dir)

    try:
        manifest_bytes = args.manifest.read_bytes()
    except OSError as exc:
        logger.error("cannot read manifest %s: %s", args.manifest, exc, extra={"stage": "cli"})
        return EXIT_FATAL

    token = CancellationToken()
    previous_handler = None
    in_main_thread = threading.current_thread() is threading.main_thread()
    if in_main_thread:
        previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: token.cancel())

    try:
        fetcher = ParamFetcher(settings=settings, cache=default_verification_cache())
        outcome = fetcher.reconcile(manifest_bytes, args.sector_size, cancellation_token=token)
    except (ManifestError, OSError) as exc:
        logger.error("%s", exc, extra={"stage": "cli"})
        return EXIT_FATAL
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    for error in outcome.errors:
        print(f"error: {error}", file=sys.stderr)
    # Cancellation takes precedence over recorded failures.
    if outcome.cancelled:
        print("cancelled before all parameter files were checked", file=sys.stderr)
        return EXIT_CANCELLED
    if outcome.errors:
        print(f"{len(outcome.errors)} parameter file error(s)", file=sys.stderr)
        return EXIT_FAILED
    print(
        f"{len(outcome.scheduled)} parameter file(s) ok, "
        f"{len(outcome.skipped)} skipped for other sector sizes"
    )
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
