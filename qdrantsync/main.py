import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from qdrantsync.config import POLICY_FULL, load_settings, write_env_template
from qdrantsync.errors import ConfigurationError, SyncCancelledError, SyncError
from qdrantsync.logs import setup_logging
from qdrantsync.sync import SyncCoordinator, SyncReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qdrant-sync",
        description="Index a source tree into a Qdrant collection",
    )
    parser.add_argument(
        "root",
        nargs="?",
        default=None,
        help="Directory to index (default: SYNC_ROOT or the current directory)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only read from Qdrant; log the changes that would be made",
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Delete and recreate the collection instead of syncing incrementally",
    )
    parser.add_argument(
        "--log",
        action="store_true",
        help="Also write a log file to log/qdrantsync-{datetime}.log",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show debug output",
    )
    parser.add_argument(
        "--init-env",
        action="store_true",
        help="Write a .env.qdrant template in the current directory and exit",
    )
    return parser


async def _run(coordinator: SyncCoordinator) -> SyncReport:
    """Run the coordinator, turning SIGINT into a graceful cancel."""
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, RuntimeError):
        loop.add_signal_handler(signal.SIGINT, coordinator.cancel)
    try:
        return await coordinator.run()
    finally:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    log_file = setup_logging(verbose=args.verbose, log_to_file=args.log)
    if log_file:
        logger.info("Logging to: %s", log_file)

    if args.init_env:
        path = write_env_template()
        if path is None:
            logger.info(".env.qdrant already exists; leaving it untouched")
        else:
            logger.info("Wrote configuration template to %s", path)
        return EXIT_OK

    if args.dry_run:
        logger.info("No changes will be made to the vector database", extra={"dry_run": True})

    try:
        settings = load_settings(root=args.root)
    except ConfigurationError as e:
        logger.error("Error: %s", e)
        return EXIT_FAILED

    coordinator = SyncCoordinator(
        settings,
        dry_run=args.dry_run,
        policy=POLICY_FULL if args.full else None,
    )
    try:
        asyncio.run(_run(coordinator))
    except SyncCancelledError:
        return EXIT_CANCELLED
    except SyncError:
        # The coordinator already logged the failure and its report
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return EXIT_CANCELLED
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
