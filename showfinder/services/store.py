from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from showfinder.services.repository import (
    FEEDBACK_ACTIONS,
    REVIEW_TARGET_STATUSES,
    SOURCE_PRIORITY_MAX,
    SOURCE_PRIORITY_MIN,
    AlreadyProcessedError,
    StoreNotFoundError,
    StoreValidationError,
    coerce_payload,
)


class InMemoryRepository:
    """Process-local store with the same surface as ``PostgresRepository``.

    Used for dry runs and tests. Status transitions run without an await
    between the status check and the write, so they are atomic per event loop.
    """

    def __init__(self, *, admin_ids: set[str] | None = None) -> None:
        self.admin_ids: set[str] = set(admin_ids or ())
        self.pending: dict[str, dict[str, Any]] = {}
        self.feedback: list[dict[str, Any]] = []
        self.shows: dict[str, dict[str, Any]] = {}
        self.geocode_cache: dict[str, dict[str, Any]] = {}
        self.sources: dict[str, dict[str, Any]] = {}

    async def close(self) -> None:
        return None

    async def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_ids

    async def insert_pending(
        self,
        *,
        source_url: str,
        raw_payload: dict[str, Any] | str,
        geocoded_payload: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> dict[str, Any]:
        if not source_url or not source_url.strip():
            raise StoreValidationError("source_url must be a non-empty string")
        record = {
            "id": str(uuid4()),
            "source_url": source_url.strip(),
            "raw_payload": raw_payload,
            "normalized_payload": None,
            "geocoded_payload": geocoded_payload,
            "status": "PENDING",
            "admin_notes": None,
            "created_at": created_at or datetime.now(timezone.utc),
            "reviewed_at": None,
        }
        self.pending[record["id"]] = record
        return self._to_dict(record)

    async def get_pending(self, candidate_id: str) -> dict[str, Any] | None:
        record = self.pending.get(candidate_id)
        return self._to_dict(record) if record else None

    async def list_pending(self, *, limit: int, offset: int, source: str | None = None) -> list[dict[str, Any]]:
        rows = await self.list_all_pending(source=source)
        return rows[offset : offset + limit]

    async def count_pending(self, *, source: str | None = None) -> int:
        return len(await self.list_all_pending(source=source))

    async def list_all_pending(self, *, source: str | None = None) -> list[dict[str, Any]]:
        rows = [
            record
            for record in self.pending.values()
            if record["status"] == "PENDING" and (source is None or record["source_url"] == source)
        ]
        rows.sort(key=lambda record: record["created_at"], reverse=True)
        return [self._to_dict(record) for record in rows]

    async def find_possible_duplicates(self, candidate: dict[str, Any], *, limit: int = 10) -> list[dict[str, Any]]:
        raw_payload = candidate.get("raw_payload") or {}
        name = _text(raw_payload.get("name"))
        start_date = _text(raw_payload.get("startDate"))
        if not name or not start_date:
            return []
        matches: list[dict[str, Any]] = []
        for row in await self.list_all_pending():
            if row["id"] == candidate.get("id"):
                continue
            other_name = _text(row["raw_payload"].get("name"))
            other_start = _text(row["raw_payload"].get("startDate"))
            if (other_name and other_name.lower() == name.lower()) or other_start == start_date:
                matches.append(row)
        return matches[:limit]

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
        record = self.pending.get(candidate_id)
        if record is None:
            raise StoreNotFoundError("Pending show not found")
        if record["status"] != "PENDING":
            raise AlreadyProcessedError(candidate_id, record["status"])
        record["status"] = to_status
        record["admin_notes"] = admin_notes
        if raw_payload is not None:
            record["raw_payload"] = copy.deepcopy(raw_payload)
        record["reviewed_at"] = datetime.now(timezone.utc)
        return self._to_dict(record)

    async def set_normalized_payload(self, candidate_id: str, payload: dict[str, Any]) -> None:
        record = self.pending.get(candidate_id)
        if record is not None:
            record["normalized_payload"] = copy.deepcopy(payload)

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
        event = {
            "id": str(uuid4()),
            "pending_id": pending_id,
            "admin_id": admin_id,
            "action": action,
            "feedback": feedback or "",
            "created_at": created_at or datetime.now(timezone.utc),
        }
        self.feedback.append(event)
        return dict(event)

    async def list_feedback_since(self, since: datetime) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        for event in self.feedback:
            if event["created_at"] < since:
                continue
            record = self.pending.get(event["pending_id"])
            events.append({**event, "source_url": record["source_url"] if record else None})
        return events

    async def list_candidates_since(self, since: datetime) -> list[dict[str, Any]]:
        return [self._to_dict(record) for record in self.pending.values() if record["created_at"] >= since]

    async def upsert_published_show(self, show: dict[str, Any]) -> str:
        key = (show["title"], show["start_date"], show["location"])
        for show_id, existing in self.shows.items():
            if (existing["title"], existing["start_date"], existing["location"]) == key:
                merged = {**existing, **{k: v for k, v in show.items() if v is not None}}
                self.shows[show_id] = merged
                return show_id
        show_id = str(uuid4())
        self.shows[show_id] = {"id": show_id, "status": "ACTIVE", **show}
        return show_id

    async def list_shows_missing_coordinates(self, *, limit: int) -> list[dict[str, Any]]:
        rows = [
            {"id": show_id, "title": show.get("title"), "address": show.get("address")}
            for show_id, show in self.shows.items()
            if (show.get("latitude") is None or show.get("longitude") is None) and _text(show.get("address"))
        ]
        return rows[:limit]

    async def set_show_coordinates(self, *, show_id: str, latitude: float, longitude: float) -> None:
        show = self.shows.get(show_id)
        if show is None:
            raise StoreNotFoundError("show not found")
        show["latitude"] = latitude
        show["longitude"] = longitude

    async def get_cached_geocode(self, address_hash: str) -> dict[str, Any] | None:
        cached = self.geocode_cache.get(address_hash)
        return dict(cached["result"]) if cached else None

    async def put_cached_geocode(self, *, address_hash: str, address: str, result: dict[str, Any]) -> None:
        self.geocode_cache[address_hash] = {"address": address, "result": dict(result)}

    def add_source(self, url: str, *, priority_score: int = 50, enabled: bool = True) -> None:
        self.sources[url] = {
            "url": url,
            "priority_score": priority_score,
            "last_success_at": None,
            "last_error_at": None,
            "error_streak": 0,
            "enabled": enabled,
            "notes": None,
        }

    async def list_scraping_sources(self, *, limit: int) -> list[dict[str, Any]]:
        rows = [dict(source) for source in self.sources.values() if source["enabled"]]
        rows.sort(key=lambda source: source["priority_score"], reverse=True)
        return rows[:limit]

    async def record_source_success(self, url: str) -> None:
        source = self.sources.get(url)
        if source is not None:
            source["last_success_at"] = datetime.now(timezone.utc)
            source["error_streak"] = 0

    async def record_source_error(self, url: str) -> None:
        source = self.sources.get(url)
        if source is not None:
            source["last_error_at"] = datetime.now(timezone.utc)
            source["error_streak"] += 1

    async def adjust_source_priority(self, url: str, delta: int) -> None:
        source = self.sources.get(url)
        if source is not None:
            score = source["priority_score"] + delta
            source["priority_score"] = min(SOURCE_PRIORITY_MAX, max(SOURCE_PRIORITY_MIN, score))

    @staticmethod
    def _to_dict(record: dict[str, Any]) -> dict[str, Any]:
        row = copy.deepcopy(record)
        row["raw_payload"] = coerce_payload(row["raw_payload"]) or {}
        row["normalized_payload"] = coerce_payload(row["normalized_payload"])
        row["geocoded_payload"] = coerce_payload(row["geocoded_payload"])
        return row


def _text(value: Any) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None
