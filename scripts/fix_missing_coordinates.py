#!/usr/bin/env python3
"""Geocode published shows that were saved without coordinates."""

from __future__ import annotations

import argparse
import asyncio
import logging

from showfinder.core.config import get_settings
from showfinder.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from showfinder.ingestion.geocoder import build_geocoder
from showfinder.ingestion.remediation import repair_missing_coordinates
from showfinder.services.repository import StoreError, get_repository

logger = logging.getLogger("fix_missing_coordinates")


async def run(*, limit: int, batch_size: int, delay_ms: int, dry_run: bool) -> int:
    settings = get_settings()
    repository = get_repository()
    geocoder = build_geocoder(settings, cache=repository)
    if geocoder is None:
        logger.error("SF_GOOGLE_MAPS_API_KEY is required to geocode shows")
        return 1

    try:
        report = await repair_missing_coordinates(
            repository,
            geocoder,
            limit=limit,
            batch_size=batch_size,
            item_delay=delay_ms / 1000.0,
            batch_delay=settings.ingest_batch_delay_seconds,
            max_retries=settings.ingest_max_retries,
            retry_delay=settings.ingest_retry_delay_seconds,
            dry_run=dry_run,
        )
    except StoreError as exc:
        logger.error("could not load shows error=%s", exc)
        return 1
    finally:
        await repository.close()

    logger.info("coordinate repair finished %s", report.stats.progress_line())
    return report.exit_code


def main(argv: list[str] | None = None) -> int:
    configure_logging(get_settings().log_level)
    parser = argparse.ArgumentParser(description="Backfill coordinates for published shows.")
    parser.add_argument("--limit", type=int, default=500)
    parser.add_argument("--batch", type=int, default=5)
    parser.add_argument("--delay", type=int, default=1000, help="Delay between shows in milliseconds")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    telemetry = setup_telemetry(get_settings(), component="fix-coordinates")
    try:
        return asyncio.run(
            run(limit=args.limit, batch_size=args.batch, delay_ms=args.delay, dry_run=args.dry_run)
        )
    finally:
        shutdown_telemetry(telemetry)


if __name__ == "__main__":
    raise SystemExit(main())
