"""CLI entrypoint for scanning a content dump."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
import time
from typing import Any

from tqdm import tqdm

from .config import ScanConfig, load_config
from .errors import RefScanError
from .orchestrator import BatchOutcome, ScanOrchestrator
from .redirects import FileRedirectStore
from .repository import InMemoryRepository, load_repository
from .scheduler import ManualScheduler
from .status import StatusChecker
from .types import ScanType


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Scan content for references and check the status of linked URLs.",
    )

    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to JSON/YAML scan config.",
    )
    parser.add_argument(
        "--content",
        type=Path,
        default=None,
        help="JSON/YAML content dump of the form {\"entities\": [...]}.",
    )
    parser.add_argument(
        "--redirects",
        type=Path,
        default=None,
        help="JSON/YAML redirect rules of the form {\"rules\": [...]}.",
    )
    parser.add_argument(
        "--data_dir",
        type=Path,
        default=None,
        help="Directory for the index, queue, options and logs (overrides config).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    parser.add_argument(
        "--no_progress",
        action="store_true",
        help="Disable the progress bar while batches run.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Queue a new scan.")
    start.add_argument(
        "scan_type",
        choices=[scan.value for scan in ScanType],
        help="Which scan to start.",
    )
    start.add_argument("--user_id", type=int, default=-1)
    start.add_argument(
        "--run",
        action="store_true",
        help="Process the queued scan to completion before exiting.",
    )

    cancel = commands.add_parser("cancel", help="Cancel the running scan.")
    cancel.add_argument("--user_id", type=int, default=-1)
    cancel.add_argument("--notes", type=str, default=None)

    commands.add_parser("progress", help="Print progress of the current scan as JSON.")
    commands.add_parser("run", help="Process queued batches until the queue is empty.")

    check = commands.add_parser("check-url", help="Check the status of one URL.")
    check.add_argument("url")

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ScanConfig:
    config = load_config(args.config)
    if args.data_dir is not None:
        payload = config.to_dict()
        payload["data_dir"] = str(args.data_dir)
        config = ScanConfig.from_dict(payload)
    return config


def setup_logging(data_dir: Path, verbose: bool) -> None:
    log_level = logging.DEBUG if verbose else logging.INFO

    log_dir = data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "refscan.log"

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(log_level)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    # urllib3 logs every connection at DEBUG, which drowns out scan progress.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_orchestrator(
    config: ScanConfig,
    args: argparse.Namespace,
    scheduler: ManualScheduler,
) -> ScanOrchestrator:
    repository = load_repository(args.content) if args.content else InMemoryRepository()
    redirect_store = FileRedirectStore(args.redirects) if args.redirects else None
    return ScanOrchestrator(
        config,
        repository,
        redirect_store=redirect_store,
        scheduler=scheduler,
    )


def run_until_drained(orchestrator: ScanOrchestrator, *, show_progress: bool = True) -> dict[str, Any]:
    """Call `handle()` until the scan completes, is cancelled or nothing is queued."""

    start = orchestrator.progress()
    progress = tqdm(
        total=start.total,
        initial=start.done,
        desc=f"Scanning ({start.type or 'idle'})",
        unit="item",
        disable=not show_progress,
    )
    batches = 0
    try:
        while True:
            result = orchestrator.handle()
            batches += 1
            progress.update(result.processed)
            if result.outcome == BatchOutcome.LOCKED:
                logging.warning("Another process holds the scan lock; try again later")
                break
            if result.outcome in {BatchOutcome.COMPLETED, BatchOutcome.IDLE, BatchOutcome.CANCELLED}:
                break
            if result.outcome == BatchOutcome.SUSPENDED:
                logging.info("Batch %d suspended with %d item(s) left", batches, result.remaining)
                time.sleep(orchestrator.config.resume_delay_seconds)
    finally:
        progress.close()
    return {
        "outcome": result.outcome.value,
        "batches": batches,
        "progress": orchestrator.progress().to_json(),
        "stats": orchestrator.stats.to_json(),
    }


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        config = build_config(args)
    except Exception as exc:
        logging.basicConfig(level=logging.INFO)
        logging.error("Failed to build config: %s", exc)
        return 2

    setup_logging(config.data_path, verbose=args.verbose)

    if args.command == "check-url":
        with StatusChecker(config) as checker:
            print_json(checker.check(args.url).to_cache_json() | {"url": args.url})
        return 0

    scheduler = ManualScheduler()
    try:
        orchestrator = build_orchestrator(config, args, scheduler)
    except Exception as exc:
        logging.error("Failed to load content or redirects: %s", exc)
        return 2

    try:
        if args.command == "start":
            progress = orchestrator.start(ScanType(args.scan_type), user_id=args.user_id)
            if args.run:
                print_json(run_until_drained(orchestrator, show_progress=not args.no_progress))
            else:
                print_json(progress.to_json())
        elif args.command == "cancel":
            print_json(orchestrator.cancel(user_id=args.user_id, notes=args.notes).to_json())
        elif args.command == "progress":
            print_json(orchestrator.progress().to_json())
        else:
            print_json(run_until_drained(orchestrator, show_progress=not args.no_progress))
    except RefScanError as exc:
        logging.error("%s", exc)
        print_json(exc.to_json())
        return 1
    except KeyboardInterrupt:
        logging.error("Interrupted by user")
        return 130
    except Exception:
        logging.exception("Scan command failed")
        return 1
    finally:
        orchestrator.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
