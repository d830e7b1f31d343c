from __future__ import annotations

import json
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from showfinder.core.config import get_settings

REVIEW_TARGET_STATUSES = {"APPROVED", "REJECTED"}
FEEDBACK_ACTIONS = {"approve", "reject", "edit", "bulk_approve", "bulk_reject"}
SOURCE_PRIORITY_MIN = 0
SOURCE_PRIORITY_MAX = 100

_PENDING_COLUMNS = """
  id::text as id,
  source_url,
  raw_payload,
  normalized_json,
  geocoded_json,
  status,
  admin_notes,
  created_at,
  reviewed_at
"""


class StoreError(Exception):
    """Base store error."""


class StoreUnavailableError(StoreError):
    """Raised when the database is unavailable or not configured."""


class StoreNotFoundError(StoreError):
    """Raised when the requested record does not exist."""


class StoreConflictError(StoreError):
    """Raised when an operation violates state transition rules."""


class AlreadyProcessedError(StoreConflictError):
    """Raised when a review targets a candidate that already left PENDING."""

    def __init__(self, candidate_id: str, status: str) -> None:
        super().__init__(f"Show already {status}")
        self.candidate_id = candidate_id
        self.status = status


class StoreValidationError(StoreError):
    """Raised when payload validation fails before persistence."""


def coerce_payload(value: Any) -> dict[str, Any] | None:
    """Normalize a payload column that may hold JSON text or a native JSON value.

    Text that does not decode to an object is preserved under ``_raw`` so the
    original value survives the conversion.
    """
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            decoded = json.loads(stripped)
        except json.JSONDecodeError:
            return {"_raw": value}
        if isinstance(decoded, dict):
            return decoded
        return {"_raw": value}
    return {"_raw": value}


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def is_admin(self, user_id: str) -> bool:
        pool = await self._get_pool()
        try:
            value = await pool.fetchval(
                """
                select exists (
                  select 1
                  from profiles
                  where id = $1::uuid
                    and role = 'admin'
                )
                """,
                user_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False
        return bool(value)

    async def insert_pending(
        self,
        *,
        source_url: str,
        raw_payload: dict[str, Any],
        geocoded_payload: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> dict[str, Any]:
        normalized_source_url = self._coerce_text(source_url)
        if not normalized_source_url:
            raise StoreValidationError("source_url must be a non-empty string")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into scraped_shows_pending (source_url, raw_payload, geocoded_json, status, created_at)
            values ($1, $2::jsonb, $3::jsonb, 'PENDING', coalesce($4::timestamptz, now()))
            returning {_PENDING_COLUMNS}
            """,
            normalized_source_url,
            json.dumps(raw_payload),
            json.dumps(geocoded_payload) if geocoded_payload is not None else None,
            created_at,
        )
        return self._pending_row_to_dict(row)

    async def get_pending(self, candidate_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_PENDING_COLUMNS}
                from scraped_shows_pending
                where id = $1::uuid
                """,
                candidate_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._pending_row_to_dict(row) if row else None

    async def list_pending(self, *, limit: int, offset: int, source: str | None = None) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_PENDING_COLUMNS}
            from scraped_shows_pending
            where status = 'PENDING'
              and ($3::text is null or source_url = $3::text)
            order by created_at desc
            limit $1
            offset $2
            """,
            limit,
            offset,
            self._coerce_text(source),
        )
        return [self._pending_row_to_dict(row) for row in rows]

    async def count_pending(self, *, source: str | None = None) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            select count(*)
            from scraped_shows_pending
            where status = 'PENDING'
              and ($1::text is null or source_url = $1::text)
            """,
            self._coerce_text(source),
        )
        return int(value or 0)

    async def list_all_pending(self, *, source: str | None = None) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_PENDING_COLUMNS}
            from scraped_shows_pending
            where status = 'PENDING'
              and ($1::text is null or source_url = $1::text)
            order by created_at desc
            """,
            self._coerce_text(source),
        )
        return [self._pending_row_to_dict(row) for row in rows]

    async def find_possible_duplicates(self, candidate: dict[str, Any], *, limit: int = 10) -> list[dict[str, Any]]:
        raw_payload = candidate.get("raw_payload") or {}
        name = self._coerce_text(raw_payload.get("name"))
        start_date = self._coerce_text(raw_payload.get("startDate"))
        if not name or not start_date:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_PENDING_COLUMNS}
            from scraped_shows_pending
            where status = 'PENDING'
              and id <> $1::uuid
              and (
                lower(raw_payload->>'name') = lower($2::text)
                or raw_payload->>'startDate' = $3::text
              )
            order by created_at desc
            limit $4
            """,
            candidate["id"],
            name,
            start_date,
            limit,
        )
        return [self._pending_row_to_dict(row) for row in rows]

    async def transition_pending(
        self,
        *,
        candidate_id: str,
        to_status: str,
        admin_notes: str | None,
        raw_payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if to_status not in REVIEW_TARGET_STATUSES:
            raise StoreValidationError("to_status must be one of: APPROVED, REJECTED")

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    update scraped_shows_pending
                    set
                      status = $2,
                      admin_notes = $3,
                      raw_payload = coalesce($4::jsonb, raw_payload),
                      reviewed_at = now()
                    where id = $1::uuid
                      and status = 'PENDING'
                    returning {_PENDING_COLUMNS}
                    """,
                    candidate_id,
                    to_status,
                    admin_notes,
                    json.dumps(raw_payload) if raw_payload is not None else None,
                )
                if row:
                    return self._pending_row_to_dict(row)

                current_status = await conn.fetchval(
                    "select status from scraped_shows_pending where id = $1::uuid",
                    candidate_id,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise StoreNotFoundError("Pending show not found") from exc
        except asyncpg.PostgresError as exc:
            raise StoreError(f"status update failed: {exc}") from exc

        if current_status is None:
            raise StoreNotFoundError("Pending show not found")
        raise AlreadyProcessedError(candidate_id, str(current_status))

    async def set_normalized_payload(self, candidate_id: str, payload: dict[str, Any]) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update scraped_shows_pending
            set normalized_json = $2::jsonb
            where id = $1::uuid
            """,
            candidate_id,
            json.dumps(payload),
        )

    async def append_feedback(
        self,
        *,
        pending_id: str,
        admin_id: str,
        action: str,
        feedback: str | None,
        created_at: datetime | None = None,
    ) -> dict[str, Any]:
        if action not in FEEDBACK_ACTIONS:
            raise StoreValidationError(f"unsupported feedback action: {action}")
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                insert into admin_feedback (pending_id, admin_id, action, feedback, created_at)
                values ($1::uuid, $2::uuid, $3, $4, coalesce($5::timestamptz, now()))
                returning id::text as id, pending_id::text as pending_id, admin_id::text as admin_id,
                  action, feedback, created_at
                """,
                pending_id,
                admin_id,
                action,
                feedback or "",
                created_at,
            )
        except asyncpg.PostgresError as exc:
            raise StoreError(f"feedback insert failed: {exc}") from exc
        return dict(row)

    async def list_feedback_since(self, since: datetime) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              af.id::text as id,
              af.pending_id::text as pending_id,
              af.action,
              af.feedback,
              af.created_at,
              ssp.source_url
            from admin_feedback af
            left join scraped_shows_pending ssp on ssp.id = af.pending_id
            where af.created_at >= $1
            order by af.created_at
            """,
            since,
        )
        return [dict(row) for row in rows]

    async def list_candidates_since(self, since: datetime) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_PENDING_COLUMNS}
            from scraped_shows_pending
            where created_at >= $1
            order by created_at
            """,
            since,
        )
        return [self._pending_row_to_dict(row) for row in rows]

    async def upsert_published_show(self, show: dict[str, Any]) -> str:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            insert into shows (
              title,
              description,
              location,
              address,
              start_date,
              end_date,
              entry_fee,
              image_url,
              status,
              latitude,
              longitude,
              organizer_name,
              organizer_email,
              daily_schedule
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14::jsonb)
            on conflict (title, start_date, location) do update
            set
              description = excluded.description,
              address = excluded.address,
              end_date = excluded.end_date,
              entry_fee = excluded.entry_fee,
              image_url = excluded.image_url,
              latitude = coalesce(excluded.latitude, shows.latitude),
              longitude = coalesce(excluded.longitude, shows.longitude),
              organizer_name = coalesce(excluded.organizer_name, shows.organizer_name),
              organizer_email = coalesce(excluded.organizer_email, shows.organizer_email),
              daily_schedule = coalesce(excluded.daily_schedule, shows.daily_schedule),
              updated_at = now()
            returning id::text
            """,
            show["title"],
            show.get("description"),
            show["location"],
            show.get("address"),
            show["start_date"],
            show["end_date"],
            show.get("entry_fee"),
            show.get("image_url"),
            show.get("status", "ACTIVE"),
            show.get("latitude"),
            show.get("longitude"),
            show.get("organizer_name"),
            show.get("organizer_email"),
            json.dumps(show["daily_schedule"]) if show.get("daily_schedule") else None,
        )
        return str(value)

    async def list_shows_missing_coordinates(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, title, address
            from shows
            where (latitude is null or longitude is null)
              and coalesce(trim(address), '') <> ''
            order by created_at
            limit $1
            """,
            limit,
        )
        return [dict(row) for row in rows]

    async def set_show_coordinates(self, *, show_id: str, latitude: float, longitude: float) -> None:
        pool = await self._get_pool()
        status = await pool.execute(
            """
            update shows
            set latitude = $2, longitude = $3, updated_at = now()
            where id = $1::uuid
            """,
            show_id,
            latitude,
            longitude,
        )
        if status.endswith(" 0"):
            raise StoreNotFoundError("show not found")

    async def get_cached_geocode(self, address_hash: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select result from geocode_cache where address_hash = $1",
            address_hash,
        )
        if not row:
            return None
        return coerce_payload(row["result"])

    async def put_cached_geocode(self, *, address_hash: str, address: str, result: dict[str, Any]) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into geocode_cache (address_hash, address, result)
            values ($1, $2, $3::jsonb)
            on conflict (address_hash) do update
            set result = excluded.result, updated_at = now()
            """,
            address_hash,
            address,
            json.dumps(result),
        )

    async def list_scraping_sources(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select url, priority_score, last_success_at, last_error_at, error_streak, enabled, notes
            from scraping_sources
            where enabled = true
            order by priority_score desc, last_success_at nulls first
            limit $1
            """,
            limit,
        )
        return [dict(row) for row in rows]

    async def record_source_success(self, url: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update scraping_sources
            set last_success_at = now(), error_streak = 0
            where url = $1
            """,
            url,
        )

    async def record_source_error(self, url: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update scraping_sources
            set last_error_at = now(), error_streak = coalesce(error_streak, 0) + 1
            where url = $1
            """,
            url,
        )

    async def adjust_source_priority(self, url: str, delta: int) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update scraping_sources
            set priority_score = least($3, greatest($2, coalesce(priority_score, 50) + $4))
            where url = $1
            """,
            url,
            SOURCE_PRIORITY_MIN,
            SOURCE_PRIORITY_MAX,
            delta,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("SF_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _pending_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "source_url": row["source_url"],
            "raw_payload": coerce_payload(row["raw_payload"]) or {},
            "normalized_payload": coerce_payload(row["normalized_json"]),
            "geocoded_payload": coerce_payload(row["geocoded_json"]),
            "status": row["status"],
            "admin_notes": row["admin_notes"],
            "created_at": row["created_at"],
            "reviewed_at": row["reviewed_at"],
        }

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
