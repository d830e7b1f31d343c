from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from showfinder.services.repository import (
    AlreadyProcessedError,
    PostgresRepository,
    StoreConflictError,
    coerce_payload,
)

CREATED_AT = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingPool:
    def __init__(self, row: dict[str, Any]) -> None:
        self.row = row
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any]:
        self.calls.append((query, args))
        return self.row


def _repository(pool: RecordingPool) -> PostgresRepository:
    repository = PostgresRepository("postgresql://showfinder@localhost/test", min_pool_size=1, max_pool_size=1)
    repository._pool = pool  # type: ignore[assignment]
    return repository


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, None),
        ("", None),
        ({"name": "Show"}, {"name": "Show"}),
        ('{"name": "Show"}', {"name": "Show"}),
        (b'{"name": "Show"}', {"name": "Show"}),
        ("not json", {"_raw": "not json"}),
        ("[1, 2]", {"_raw": "[1, 2]"}),
    ],
)
def test_coerce_payload_accepts_text_or_native_json(value: object, expected: object) -> None:
    assert coerce_payload(value) == expected


def test_already_processed_is_a_conflict() -> None:
    error = AlreadyProcessedError("abc", "APPROVED")

    assert isinstance(error, StoreConflictError)
    assert str(error) == "Show already APPROVED"
    assert error.candidate_id == "abc"


def test_postgres_insert_pending_passes_created_at() -> None:
    pool = RecordingPool(
        {
            "id": "8d7f3c1e-0000-4000-8000-000000000001",
            "source_url": "https://shows.example.com/ohio",
            "raw_payload": '{"name": "Dayton Card Show"}',
            "normalized_json": None,
            "geocoded_json": None,
            "status": "PENDING",
            "admin_notes": None,
            "created_at": CREATED_AT,
            "reviewed_at": None,
        }
    )

    row = asyncio.run(
        _repository(pool).insert_pending(
            source_url=" https://shows.example.com/ohio ",
            raw_payload={"name": "Dayton Card Show"},
            created_at=CREATED_AT,
        )
    )

    query, args = pool.calls[0]
    assert "coalesce($4::timestamptz, now())" in query
    assert args == ("https://shows.example.com/ohio", '{"name": "Dayton Card Show"}', None, CREATED_AT)
    assert row["raw_payload"] == {"name": "Dayton Card Show"}
    assert row["created_at"] == CREATED_AT


def test_postgres_append_feedback_defaults_created_at_to_now() -> None:
    pool = RecordingPool({"id": "f1", "pending_id": "p1", "admin_id": "a1", "action": "reject", "feedback": ""})

    asyncio.run(_repository(pool).append_feedback(pending_id="p1", admin_id="a1", action="reject", feedback=None))

    query, args = pool.calls[0]
    assert "coalesce($5::timestamptz, now())" in query
    assert args == ("p1", "a1", "reject", "", None)
