from __future__ import annotations

import asyncio
import logging
from typing import Any

from showfinder.ingestion.geocoder import Geocoder
from showfinder.ingestion.orchestrator import (
    ITEM_FAILED,
    ITEM_SUCCEEDED,
    IngestionReport,
    ItemResult,
    run_batches,
)
from showfinder.ingestion.retry import Sleep, with_retries

logger = logging.getLogger(__name__)


async def repair_missing_coordinates(
    repository: Any,
    geocoder: Geocoder,
    *,
    limit: int = 500,
    batch_size: int = 5,
    item_delay: float = 1.0,
    batch_delay: float = 3.0,
    max_retries: int = 3,
    retry_delay: float = 2.0,
    sleep: Sleep = asyncio.sleep,
    dry_run: bool = False,
) -> IngestionReport:
    shows = await repository.list_shows_missing_coordinates(limit=limit)
    logger.info("found %s published shows without coordinates", len(shows))

    async def handle(show: dict[str, Any]) -> ItemResult:
        address = str(show["address"]).strip()
        result = await with_retries(
            lambda: geocoder.geocode(address),
            max_retries=max_retries,
            retry_delay=retry_delay,
            sleep=sleep,
            describe=f"geocode show {show['id']}",
        )
        if result is None:
            return ItemResult(key=show["id"], status=ITEM_FAILED, reason=f"could not geocode address: {address}")
        if dry_run:
            logger.info("dry run: would set coordinates show_id=%s lat=%s lng=%s", show["id"], result.latitude, result.longitude)
            return ItemResult(key=show["id"], status=ITEM_SUCCEEDED)
        await repository.set_show_coordinates(show_id=show["id"], latitude=result.latitude, longitude=result.longitude)
        return ItemResult(key=show["id"], status=ITEM_SUCCEEDED, inserted=1)

    return await run_batches(
        shows,
        handle,
        key=lambda show: str(show["id"]),
        batch_size=batch_size,
        item_delay=item_delay,
        batch_delay=batch_delay,
        sleep=sleep,
    )
