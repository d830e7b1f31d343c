#!/usr/bin/env python3
"""Scrape card show listing pages into the pending review queue."""

from __future__ import annotations

import argparse
import asyncio
import logging

from showfinder.core.config import get_settings
from showfinder.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from showfinder.ingestion.extraction import build_engine
from showfinder.ingestion.geocoder import build_geocoder
from showfinder.ingestion.orchestrator import IngestionOrchestrator, select_source_urls
from showfinder.services.repository import StoreError, get_repository

logger = logging.getLogger("scrape_sources")


async def run(urls: list[str], *, limit: int, dry_run: bool) -> int:
    settings = get_settings()
    engine = build_engine(settings)
    if engine is None:
        logger.error("SF_GEMINI_API_KEY is required to scrape sources")
        return 1

    repository = get_repository()
    try:
        if not urls:
            try:
                urls = await select_source_urls(repository, limit=limit)
            except StoreError as exc:
                logger.error("could not load scraping sources error=%s", exc)
                return 1
        if not urls:
            logger.info("no enabled scraping sources")
            return 0

        orchestrator = IngestionOrchestrator.from_settings(
            settings,
            repository,
            engine=engine,
            geocoder=build_geocoder(settings, cache=None if dry_run else repository),
            dry_run=dry_run,
        )
        report = await orchestrator.ingest_urls(urls)
    finally:
        await repository.close()

    for item in report.items:
        logger.info("%s status=%s inserted=%s reason=%s", item.key, item.status, item.inserted, item.reason)
    logger.info("scrape finished %s", report.stats.progress_line())
    return report.exit_code


def main(argv: list[str] | None = None) -> int:
    configure_logging(get_settings().log_level)
    parser = argparse.ArgumentParser(description="Scrape card show listing pages.")
    parser.add_argument("urls", nargs="*", help="Source URLs; defaults to enabled scraping_sources by priority")
    parser.add_argument("--limit", type=int, default=10, help="Maximum sources to take from scraping_sources")
    parser.add_argument("--dry-run", action="store_true", help="Extract and geocode without writing")
    args = parser.parse_args(argv)

    telemetry = setup_telemetry(get_settings(), component="scrape-sources")
    try:
        return asyncio.run(run(list(args.urls), limit=args.limit, dry_run=args.dry_run))
    finally:
        shutdown_telemetry(telemetry)


if __name__ == "__main__":
    raise SystemExit(main())
