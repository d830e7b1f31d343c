from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
from opentelemetry import trace

from showfinder.core.config import Settings
from showfinder.core.telemetry import traced
from showfinder.ingestion.chunker import chunk_html
from showfinder.ingestion.csv_records import CsvShowRecord
from showfinder.ingestion.extraction import ExtractionEngine
from showfinder.ingestion.fetcher import DEFAULT_USER_AGENT, FetchError, fetch_html
from showfinder.ingestion.geocoder import GeocodeResult, Geocoder
from showfinder.ingestion.retry import Sleep, with_retries
from showfinder.services.repository import StoreError

T = TypeVar("T")

ITEM_SUCCEEDED = "succeeded"
ITEM_FAILED = "failed"
ITEM_SKIPPED = "skipped"

_DIGIT_RE = re.compile(r"\d")

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class CandidateValidationError(ValueError):
    """Raised when a candidate lacks a name or a usable start date."""


class GeocodeFailure(Exception):
    """Raised when an address still has no coordinates after every retry."""

    def __init__(self, address: str) -> None:
        super().__init__(f"could not geocode address: {address}")
        self.address = address


def format_elapsed(seconds: float) -> str:
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@dataclass(slots=True)
class IngestionStats:
    total: int
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    inserted: int = 0
    clock: Callable[[], float] = time.monotonic
    started_at: float | None = None

    def __post_init__(self) -> None:
        if self.started_at is None:
            self.started_at = self.clock()

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.processed / self.total * 100)

    @property
    def elapsed_seconds(self) -> float:
        return self.clock() - (self.started_at or 0.0)

    @property
    def eta_seconds(self) -> float | None:
        if self.processed == 0:
            return None
        mean = self.elapsed_seconds / self.processed
        return mean * max(0, self.total - self.processed)

    def record(self, result: ItemResult) -> None:
        self.processed += 1
        self.inserted += result.inserted
        if result.status == ITEM_SUCCEEDED:
            self.succeeded += 1
        elif result.status == ITEM_SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def progress_line(self) -> str:
        eta = self.eta_seconds
        return (
            f"progress processed={self.processed}/{self.total} percent={self.percent}% "
            f"elapsed={format_elapsed(self.elapsed_seconds)} "
            f"eta={'calculating...' if eta is None else format_elapsed(eta)} "
            f"succeeded={self.succeeded} failed={self.failed} skipped={self.skipped}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "inserted": self.inserted,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass(slots=True)
class ItemResult:
    key: str
    status: str
    inserted: int = 0
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IngestionReport:
    stats: IngestionStats
    items: list[ItemResult] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.stats.failed else 0


async def run_batches(
    items: Sequence[T],
    handler: Callable[[T], Awaitable[ItemResult]],
    *,
    key: Callable[[T], str],
    batch_size: int,
    item_delay: float,
    batch_delay: float,
    sleep: Sleep = asyncio.sleep,
    stats: IngestionStats | None = None,
) -> IngestionReport:
    """Process items one at a time in fixed-size batches with rate-limit pauses."""
    batch_size = max(1, batch_size)
    report = IngestionReport(stats=stats or IngestionStats(total=len(items)))
    total_batches = (len(items) + batch_size - 1) // batch_size

    for batch_number, start in enumerate(range(0, len(items), batch_size), start=1):
        batch = items[start : start + batch_size]
        logger.info("processing batch %s of %s size=%s", batch_number, total_batches, len(batch))
        for position, item in enumerate(batch):
            item_key = key(item)
            try:
                result = await handler(item)
            except Exception as exc:
                logger.exception("item failed key=%s", item_key)
                result = ItemResult(key=item_key, status=ITEM_FAILED, reason=str(exc))
            report.items.append(result)
            report.stats.record(result)
            logger.info("%s last=%s status=%s", report.stats.progress_line(), item_key, result.status)
            if position < len(batch) - 1:
                await sleep(item_delay)
        if start + batch_size < len(items):
            logger.info("batch %s complete; pausing %.1fs", batch_number, batch_delay)
            await sleep(batch_delay)

    logger.info(
        "ingestion complete total=%s succeeded=%s failed=%s skipped=%s inserted=%s elapsed=%s",
        report.stats.total,
        report.stats.succeeded,
        report.stats.failed,
        report.stats.skipped,
        report.stats.inserted,
        format_elapsed(report.stats.elapsed_seconds),
    )
    return report


def validate_candidate(payload: dict[str, Any]) -> None:
    name = payload.get("name")
    if name is None or not str(name).strip():
        raise CandidateValidationError("candidate is missing a name")
    start_date = payload.get("startDate")
    if start_date is None or not _DIGIT_RE.search(str(start_date)):
        raise CandidateValidationError("candidate is missing a usable start date")


def candidate_address(payload: dict[str, Any]) -> str | None:
    parts = [str(payload[field_name]).strip() for field_name in ("address", "city", "state") if payload.get(field_name)]
    address = ", ".join(part for part in parts if part)
    return address or None


class IngestionOrchestrator:
    def __init__(
        self,
        repository: Any,
        *,
        engine: ExtractionEngine | None = None,
        geocoder: Geocoder | None = None,
        http_client: httpx.AsyncClient | None = None,
        fetch_timeout_seconds: float = 15.0,
        user_agent: str = DEFAULT_USER_AGENT,
        max_chunk_bytes: int = 100_000,
        max_chunks: int = 3,
        batch_size: int = 5,
        item_delay: float = 1.0,
        batch_delay: float = 3.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        sleep: Sleep = asyncio.sleep,
        dry_run: bool = False,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.geocoder = geocoder
        self.http_client = http_client
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.user_agent = user_agent
        self.max_chunk_bytes = max_chunk_bytes
        self.max_chunks = max_chunks
        self.batch_size = batch_size
        self.item_delay = item_delay
        self.batch_delay = batch_delay
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.dry_run = dry_run

    @classmethod
    def from_settings(cls, settings: Settings, repository: Any, **overrides: Any) -> IngestionOrchestrator:
        options: dict[str, Any] = {
            "fetch_timeout_seconds": settings.fetch_timeout_seconds,
            "user_agent": settings.fetch_user_agent,
            "max_chunk_bytes": settings.max_chunk_bytes,
            "max_chunks": settings.max_chunks,
            "batch_size": settings.ingest_batch_size,
            "item_delay": settings.ingest_item_delay_seconds,
            "batch_delay": settings.ingest_batch_delay_seconds,
            "max_retries": settings.ingest_max_retries,
            "retry_delay": settings.ingest_retry_delay_seconds,
        }
        options.update(overrides)
        return cls(repository, **options)

    async def ingest_urls(self, urls: Sequence[str]) -> IngestionReport:
        if self.engine is None:
            raise RuntimeError("URL ingestion requires an extraction engine")
        return await run_batches(
            list(urls),
            self.process_url,
            key=lambda url: url,
            batch_size=self.batch_size,
            item_delay=self.item_delay,
            batch_delay=self.batch_delay,
            sleep=self.sleep,
        )

    async def ingest_csv(self, records: Sequence[CsvShowRecord], *, source_name: str) -> IngestionReport:
        source_url = f"csv://{source_name}"

        async def handle(record: CsvShowRecord) -> ItemResult:
            return await self.process_csv_record(record, source_url=source_url)

        return await run_batches(
            list(records),
            handle,
            key=lambda record: f"row {record.row_number}: {record.title or '<untitled>'}",
            batch_size=self.batch_size,
            item_delay=self.item_delay,
            batch_delay=self.batch_delay,
            sleep=self.sleep,
        )

    async def process_url(self, url: str) -> ItemResult:
        if self.engine is None:
            raise RuntimeError("URL ingestion requires an extraction engine")
        with traced(tracer, "ingest.process_url", {"source.url": url}) as span:
            try:
                html = await fetch_html(
                    url,
                    client=self.http_client,
                    timeout_seconds=self.fetch_timeout_seconds,
                    user_agent=self.user_agent,
                )
            except FetchError as exc:
                logger.warning("fetch failed url=%s error=%s", url, exc)
                await self._record_source(url, ok=False)
                return ItemResult(key=url, status=ITEM_FAILED, reason=str(exc))

            plan = chunk_html(html, max_chunk_bytes=self.max_chunk_bytes, max_chunks=self.max_chunks)
            span.set_attribute("chunk.count", len(plan.chunks))
            logger.info(
                "chunked page url=%s strategy=%s chunks=%s dropped=%s",
                url,
                plan.strategy,
                len(plan.chunks),
                plan.dropped,
            )
            extraction = await self.engine.extract(url, plan.chunks)
            details: dict[str, Any] = {
                "strategy": plan.strategy,
                "chunks": [diagnostic.to_dict() for diagnostic in extraction.diagnostics],
            }
            if plan.chunks and extraction.succeeded_chunks == 0:
                await self._record_source(url, ok=False)
                return ItemResult(key=url, status=ITEM_FAILED, reason="all chunks failed", details=details)

            valid: list[dict[str, Any]] = []
            for candidate in extraction.candidates:
                try:
                    validate_candidate(candidate)
                except CandidateValidationError as exc:
                    logger.info("skipping candidate url=%s reason=%s", url, exc)
                    continue
                valid.append(candidate)
            details["skipped_candidates"] = len(extraction.candidates) - len(valid)
            await self._record_source(url, ok=True)
            if not valid:
                return ItemResult(key=url, status=ITEM_SKIPPED, reason="no valid candidates", details=details)

            inserted = 0
            geocode_failures: list[str] = []
            insert_failures: list[str] = []
            for candidate in valid:
                try:
                    geocoded = await self._geocode_candidate(candidate_address(candidate))
                except GeocodeFailure as exc:
                    geocode_failures.append(exc.address)
                    continue
                try:
                    inserted += await self._insert(url, candidate, geocoded)
                except StoreError as exc:
                    insert_failures.append(f"{candidate.get('name')}: {exc}")

            details["geocode_failures"] = geocode_failures
            details["insert_failures"] = insert_failures
            if geocode_failures or insert_failures:
                reasons = []
                if geocode_failures:
                    reasons.append(f"{len(geocode_failures)} candidate(s) could not be geocoded")
                if insert_failures:
                    reasons.append(f"{len(insert_failures)} candidate(s) could not be stored")
                reason = "; ".join(reasons)
                return ItemResult(key=url, status=ITEM_FAILED, inserted=inserted, reason=reason, details=details)
            return ItemResult(key=url, status=ITEM_SUCCEEDED, inserted=inserted, details=details)

    async def process_csv_record(self, record: CsvShowRecord, *, source_url: str) -> ItemResult:
        item_key = f"row {record.row_number}: {record.title or '<untitled>'}"
        if record.error:
            logger.info("skipping %s reason=%s", item_key, record.error)
            return ItemResult(key=item_key, status=ITEM_SKIPPED, reason=record.error)

        payload = record.to_raw_payload()
        try:
            validate_candidate(payload)
        except CandidateValidationError as exc:
            return ItemResult(key=item_key, status=ITEM_SKIPPED, reason=str(exc))

        with traced(tracer, "ingest.process_csv_record", {"csv.row": record.row_number}):
            try:
                geocoded = await self._geocode_candidate(record.full_address())
            except GeocodeFailure as exc:
                logger.warning("geocode failed %s error=%s", item_key, exc)
                return ItemResult(key=item_key, status=ITEM_FAILED, reason=str(exc))
            inserted = await self._insert(source_url, payload, geocoded)
        return ItemResult(key=item_key, status=ITEM_SUCCEEDED, inserted=inserted)

    async def _geocode_candidate(self, address: str | None) -> GeocodeResult | None:
        if self.geocoder is None or not address:
            return None
        geocoder = self.geocoder
        result = await with_retries(
            lambda: geocoder.geocode(address),
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            sleep=self.sleep,
            describe=f"geocode {address!r}",
        )
        if result is None:
            raise GeocodeFailure(address)
        return result

    async def _insert(self, source_url: str, payload: dict[str, Any], geocoded: GeocodeResult | None) -> int:
        if self.dry_run:
            logger.info("dry run: would insert pending show name=%s source=%s", payload.get("name"), source_url)
            return 0
        try:
            await self.repository.insert_pending(
                source_url=source_url,
                raw_payload=payload,
                geocoded_payload=geocoded.to_dict() if geocoded else None,
            )
        except StoreError as exc:
            logger.error("pending insert failed name=%s error=%s", payload.get("name"), exc)
            raise
        return 1

    async def _record_source(self, url: str, *, ok: bool) -> None:
        if self.dry_run:
            return
        try:
            if ok:
                await self.repository.record_source_success(url)
            else:
                await self.repository.record_source_error(url)
        except StoreError as exc:
            logger.warning("source bookkeeping failed url=%s error=%s", url, exc)


async def select_source_urls(repository: Any, *, limit: int) -> list[str]:
    sources = await repository.list_scraping_sources(limit=limit)
    return [source["url"] for source in sources]
