"""
Main CLI module for the reporting sync service.

Runs one sync pass, shows the last run, or resets watermarks.
Example: python -m services.reporting_sync --status
"""

import argparse
import json
import sys
from typing import List, Optional

from pydantic import ValidationError

from . import __version__
from .log_config import configure_logging, get_logger
from .orchestrator import SyncOrchestrator
from .pipelines import PIPELINE_NAMES
from .settings import settings
from .state import LAST_RESULT_KEY, LAST_RUN_KEY, FileStateStore, StateStore

logger = get_logger(__name__)


def show_status(store: StateStore) -> dict:
    """Collect the last run time, last result and current watermarks."""
    return {
        "last_run": store.get(LAST_RUN_KEY),
        "last_result": store.get(LAST_RESULT_KEY),
        "watermarks": {name: store.get_watermark(name) for name in PIPELINE_NAMES},
    }


def reset_watermarks(store: StateStore, names: List[str]) -> List[str]:
    """
    Clear watermarks so the named pipelines resync from the beginning.

    Args:
        store: State store
        names: Pipeline names, or "all"

    Returns:
        Pipelines whose watermark was cleared

    Raises:
        ValueError: If a name is not a known pipeline
    """
    targets: List[str] = []
    for name in names:
        if name == "all":
            targets.extend(PIPELINE_NAMES)
        elif name in PIPELINE_NAMES:
            targets.append(name)
        else:
            raise ValueError(
                f"Unknown pipeline '{name}'. Expected one of: {', '.join(PIPELINE_NAMES)}, all"
            )

    cleared = list(dict.fromkeys(targets))
    for name in cleared:
        store.reset_watermark(name)
        logger.info("Watermark reset", pipeline=name)
    return cleared


def write_output(data: dict, output_file: Optional[str]) -> None:
    """Print JSON to stdout and optionally write it to a file."""
    payload = json.dumps(data, indent=2, default=str)
    if output_file:
        with open(output_file, "w", encoding="utf-8") as f:
            f.write(payload)
    print(payload)


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Reporting Sync - incremental replication into the reporting store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m services.reporting_sync
  python -m services.reporting_sync --output sync-result.json
  python -m services.reporting_sync --status
  python -m services.reporting_sync --reset-watermark usage
  python -m services.reporting_sync --reset-watermark all --log-level DEBUG
        """
    )

    parser.add_argument(
        "--status",
        action="store_true",
        help="Show the last run and current watermarks, then exit"
    )

    parser.add_argument(
        "--reset-watermark",
        action="append",
        metavar="NAME",
        choices=list(PIPELINE_NAMES) + ["all"],
        help="Clear a pipeline watermark before running (repeatable, or 'all')"
    )

    parser.add_argument(
        "--output",
        type=str,
        help="Write the run summary JSON to this file"
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from configuration"
    )

    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Override log format from configuration"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Reporting Sync {__version__}"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI application.

    Returns:
        Exit code (0 for success, 1 for partial or failed runs)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    configure_logging(
        args.log_level or config.log_level,
        args.log_format or config.log_format,
        service_name=config.service_name,
        environment=config.environment,
    )

    store = FileStateStore(config.state_path)

    if args.status:
        write_output(show_status(store), args.output)
        return 0

    if args.reset_watermark:
        reset_watermarks(store, args.reset_watermark)

    logger.info(
        "Service starting",
        service_name=config.service_name,
        version=__version__,
        environment=config.environment,
        log_level=config.log_level
    )

    try:
        summary = SyncOrchestrator(config, store).run()
    except KeyboardInterrupt:
        logger.warning("Service interrupted by user")
        return 1

    write_output(summary.to_dict(), args.output)

    if summary.success:
        logger.info("Service completed successfully")
        return 0

    logger.error("Service completed with errors", status=summary.status)
    return 1


def cli_main():
    """Synchronous entry point for setuptools console scripts."""
    return main()


if __name__ == "__main__":
    sys.exit(main())
