#!/usr/bin/env python3
"""Ingest card shows from a CSV file into the pending review queue."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from showfinder.core.config import get_settings
from showfinder.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from showfinder.ingestion.csv_records import read_show_csv
from showfinder.ingestion.geocoder import build_geocoder
from showfinder.ingestion.orchestrator import IngestionOrchestrator
from showfinder.services.repository import get_repository
from showfinder.services.store import InMemoryRepository

logger = logging.getLogger("ingest_shows")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest card shows from a CSV file.")
    parser.add_argument("--file", "-f", help="Path to the CSV file with show records")
    parser.add_argument("--dry-run", "-d", action="store_true", help="Validate and geocode without writing")
    parser.add_argument("--batch", "-b", type=int, default=5, help="Shows per batch")
    parser.add_argument("--delay", type=int, default=1000, help="Delay between shows in milliseconds")
    return parser


async def run(csv_path: Path, *, dry_run: bool, batch_size: int, delay_ms: int) -> int:
    settings = get_settings()
    try:
        records = read_show_csv(csv_path)
    except FileNotFoundError as exc:
        logger.error("%s", exc)
        return 1

    repository = InMemoryRepository() if dry_run else get_repository()
    geocoder = build_geocoder(settings, cache=repository)
    if geocoder is None and not dry_run:
        logger.error("SF_GOOGLE_MAPS_API_KEY is required to ingest shows")
        return 1

    orchestrator = IngestionOrchestrator.from_settings(
        settings,
        repository,
        geocoder=geocoder,
        batch_size=batch_size,
        item_delay=delay_ms / 1000.0,
        dry_run=dry_run,
    )
    logger.info("ingesting %s rows from %s dry_run=%s", len(records), csv_path, dry_run)
    try:
        report = await orchestrator.ingest_csv(records, source_name=csv_path.name)
    finally:
        await repository.close()

    stats = report.stats
    logger.info(
        "ingestion finished total=%s succeeded=%s failed=%s skipped=%s inserted=%s",
        stats.total,
        stats.succeeded,
        stats.failed,
        stats.skipped,
        stats.inserted,
    )
    for item in report.items:
        if item.reason:
            logger.info("%s status=%s reason=%s", item.key, item.status, item.reason)
    return report.exit_code


def main(argv: list[str] | None = None) -> int:
    configure_logging(get_settings().log_level)
    args = build_parser().parse_args(argv)
    if not args.file:
        logger.error("--file is required")
        return 1
    if args.batch < 1 or args.delay < 0:
        logger.error("--batch must be positive and --delay must not be negative")
        return 1

    telemetry = setup_telemetry(get_settings(), component="ingest-csv")
    try:
        return asyncio.run(
            run(Path(args.file), dry_run=args.dry_run, batch_size=args.batch, delay_ms=args.delay)
        )
    finally:
        shutdown_telemetry(telemetry)


if __name__ == "__main__":
    raise SystemExit(main())
