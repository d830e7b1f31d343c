from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from showfinder.services.normalizer import Normalizer, NormalizerReport
from showfinder.services.repository import (
    AlreadyProcessedError,
    StoreError,
    StoreNotFoundError,
    StoreValidationError,
)
from showfinder.services.review import BatchAbortedError, ReviewService
from showfinder.services.store import InMemoryRepository

SOURCE = "https://shows.example.com/ohio"
OTHER_SOURCE = "https://cards.example.org/listings"
NOW = datetime(2025, 3, 20, 12, tzinfo=timezone.utc)

GOOD_PAYLOAD = {
    "name": "Dayton Card Show",
    "startDate": "2025-04-12",
    "venueName": "Expo Hall",
    "city": "Dayton",
    "state": "OH",
}


class CountingNormalizer(Normalizer):
    def __init__(self, repository: Any) -> None:
        super().__init__(repository)
        self.calls: list[list[str]] = []

    async def run(self, candidate_ids: list[str]) -> NormalizerReport:
        self.calls.append(list(candidate_ids))
        return await super().run(candidate_ids)


class FailingFeedbackRepository(InMemoryRepository):
    async def append_feedback(self, **kwargs: Any) -> dict[str, Any]:
        raise StoreError("feedback table unavailable")


class FailingSecondTransitionRepository(InMemoryRepository):
    def __init__(self) -> None:
        super().__init__()
        self.transitions = 0

    async def transition_pending(self, **kwargs: Any) -> dict[str, Any]:
        self.transitions += 1
        if self.transitions == 2:
            raise StoreError("connection reset")
        return await super().transition_pending(**kwargs)


def _service(repository: InMemoryRepository) -> tuple[ReviewService, CountingNormalizer]:
    normalizer = CountingNormalizer(repository)
    return ReviewService(repository, normalizer=normalizer), normalizer


async def _seed(repository: InMemoryRepository, payload: dict[str, Any] | None = None, **kwargs: Any) -> str:
    row = await repository.insert_pending(source_url=kwargs.pop("source_url", SOURCE), raw_payload=payload or GOOD_PAYLOAD, **kwargs)
    return row["id"]


def test_approve_publishes_and_records_feedback() -> None:
    repository = InMemoryRepository()
    repository.add_source(SOURCE, priority_score=99)
    service, normalizer = _service(repository)

    async def run() -> Any:
        candidate_id = await _seed(repository)
        return await service.approve(candidate_id=candidate_id, admin_id="admin-1", feedback="looks good")

    outcome = asyncio.run(run())

    assert outcome.candidate["status"] == "APPROVED"
    assert outcome.candidate["admin_notes"] == "looks good"
    assert outcome.candidate["reviewed_at"] is not None
    assert outcome.feedback.ok is True
    assert [event["action"] for event in repository.feedback] == ["approve"]
    assert normalizer.calls == [[outcome.candidate["id"]]]
    assert len(outcome.normalizer.published) == 1
    assert len(repository.shows) == 1
    assert repository.sources[SOURCE]["priority_score"] == 100


def test_re_review_fails_without_side_effects() -> None:
    repository = InMemoryRepository()
    service, normalizer = _service(repository)

    async def run() -> str:
        candidate_id = await _seed(repository)
        await service.reject(candidate_id=candidate_id, admin_id="admin-1", feedback="SPAM - junk")
        return candidate_id

    candidate_id = asyncio.run(run())

    for operation in (
        lambda: service.approve(candidate_id=candidate_id, admin_id="admin-2"),
        lambda: service.reject(candidate_id=candidate_id, admin_id="admin-2"),
        lambda: service.edit(candidate_id=candidate_id, admin_id="admin-2", raw_payload=GOOD_PAYLOAD),
    ):
        with pytest.raises(AlreadyProcessedError, match="Show already REJECTED"):
            asyncio.run(operation())

    assert len(repository.feedback) == 1
    assert repository.shows == {}
    assert normalizer.calls == []


def test_concurrent_approvals_publish_once() -> None:
    repository = InMemoryRepository()
    service, normalizer = _service(repository)

    async def run() -> list[Any]:
        candidate_id = await _seed(repository)
        return await asyncio.gather(
            service.approve(candidate_id=candidate_id, admin_id="admin-1"),
            service.approve(candidate_id=candidate_id, admin_id="admin-2"),
            return_exceptions=True,
        )

    results = asyncio.run(run())

    assert sum(1 for result in results if isinstance(result, AlreadyProcessedError)) == 1
    assert len(normalizer.calls) == 1
    assert len(repository.feedback) == 1
    assert len(repository.shows) == 1


def test_reject_parses_tags_and_keeps_notes_verbatim() -> None:
    repository = InMemoryRepository()
    repository.add_source(SOURCE, priority_score=2)
    service, normalizer = _service(repository)
    notes = "CITY_MISSING, VENUE_MISSING - please fix and resubmit"

    async def run() -> Any:
        candidate_id = await _seed(repository)
        return await service.reject(candidate_id=candidate_id, admin_id="admin-1", feedback=notes)

    outcome = asyncio.run(run())

    assert outcome.parsed_tags == ["CITY_MISSING", "VENUE_MISSING"]
    assert outcome.candidate["admin_notes"] == notes
    assert repository.feedback[0]["feedback"] == notes
    assert repository.sources[SOURCE]["priority_score"] == 0
    assert normalizer.calls == []


def test_feedback_failure_does_not_roll_back_review() -> None:
    repository = FailingFeedbackRepository()
    service, _ = _service(repository)

    async def run() -> Any:
        candidate_id = await _seed(repository)
        return await service.approve(candidate_id=candidate_id, admin_id="admin-1")

    outcome = asyncio.run(run())

    assert outcome.feedback.ok is False
    assert outcome.feedback.error == "feedback table unavailable"
    assert repository.pending[outcome.candidate["id"]]["status"] == "APPROVED"


def test_edit_replaces_payload_before_publishing() -> None:
    repository = InMemoryRepository()
    service, _ = _service(repository)
    corrected = {**GOOD_PAYLOAD, "name": "Dayton Winter Card Show", "state": "Ohio"}

    async def run() -> Any:
        candidate_id = await _seed(repository, {"name": "dayton show??", "startDate": "soon"})
        return await service.edit(candidate_id=candidate_id, admin_id="admin-1", raw_payload=corrected)

    outcome = asyncio.run(run())

    assert outcome.candidate["raw_payload"]["name"] == "Dayton Winter Card Show"
    assert [event["action"] for event in repository.feedback] == ["edit"]
    show = next(iter(repository.shows.values()))
    assert show["title"] == "Dayton Winter Card Show"
    assert outcome.normalizer.failed == []


def test_edit_rejects_empty_payload() -> None:
    repository = InMemoryRepository()
    service, _ = _service(repository)

    async def run() -> Any:
        candidate_id = await _seed(repository)
        return await service.edit(candidate_id=candidate_id, admin_id="admin-1", raw_payload={})

    with pytest.raises(StoreValidationError):
        asyncio.run(run())


def test_unknown_candidate_is_not_found() -> None:
    service, _ = _service(InMemoryRepository())

    with pytest.raises(StoreNotFoundError):
        asyncio.run(service.approve(candidate_id="missing", admin_id="admin-1"))


def test_batch_approve_reports_per_id_failures_and_normalizes_once() -> None:
    repository = InMemoryRepository()
    service, normalizer = _service(repository)

    async def run() -> tuple[Any, list[str]]:
        first = await _seed(repository)
        second = await _seed(repository, {**GOOD_PAYLOAD, "name": "Akron Show", "city": "Akron"})
        done = await _seed(repository, {**GOOD_PAYLOAD, "name": "Old Show"})
        await repository.transition_pending(candidate_id=done, to_status="REJECTED", admin_notes=None)
        outcome = await service.batch(
            action="approve",
            candidate_ids=[first, done, "missing", second],
            admin_id="admin-1",
            feedback="bulk ok",
        )
        return outcome, [first, second, done]

    outcome, (first, second, done) = asyncio.run(run())

    assert [row["id"] for row in outcome.processed] == [first, second]
    assert outcome.failed == [
        {"id": done, "error": "Show already REJECTED"},
        {"id": "missing", "error": "Pending show not found"},
    ]
    assert normalizer.calls == [[first, second]]
    assert [event["action"] for event in repository.feedback] == ["bulk_approve", "bulk_approve"]
    assert len(repository.shows) == 2


def test_batch_store_error_stops_and_keeps_partial_result() -> None:
    repository = FailingSecondTransitionRepository()
    service, normalizer = _service(repository)

    async def run() -> list[str]:
        return [await _seed(repository, {**GOOD_PAYLOAD, "name": f"Show {index}"}) for index in range(3)]

    ids = asyncio.run(run())

    with pytest.raises(BatchAbortedError) as excinfo:
        asyncio.run(service.batch(action="approve", candidate_ids=ids, admin_id="admin-1"))

    partial = excinfo.value.outcome.to_dict()
    assert partial["processed"] == [ids[0]]
    assert normalizer.calls == [[ids[0]]]
    assert repository.pending[ids[0]]["status"] == "APPROVED"
    assert repository.pending[ids[2]]["status"] == "PENDING"


def test_batch_rejects_unknown_action() -> None:
    service, _ = _service(InMemoryRepository())

    with pytest.raises(StoreValidationError):
        asyncio.run(service.batch(action="archive", candidate_ids=["a"], admin_id="admin-1"))


def test_list_pending_filters_by_score_band() -> None:
    repository = InMemoryRepository()
    service, _ = _service(repository)

    async def run() -> tuple[dict[str, Any], dict[str, Any]]:
        await _seed(repository, created_at=NOW - timedelta(minutes=3))
        await _seed(repository, {"name": "Bare Show", "startDate": "2025-05-01"}, created_at=NOW - timedelta(minutes=2))
        await _seed(repository, {"name": "Other", "startDate": "2025-04-12", "city": "Kent", "venueName": "Hall"}, created_at=NOW - timedelta(minutes=1))
        low = await service.list_pending(limit=10, offset=0, max_score=70)
        page = await service.list_pending(limit=2, offset=0)
        return low, page

    low, page = asyncio.run(run())

    assert [row["raw_payload"]["name"] for row in low["shows"]] == ["Bare Show"]
    assert low["shows"][0]["quality"]["score"] == 60
    assert low["pagination"] == {"total": 1, "limit": 10, "offset": 0, "hasMore": False}
    assert page["pagination"] == {"total": 3, "limit": 2, "offset": 0, "hasMore": True}
    newest = page["shows"][0]
    assert newest["raw_payload"]["name"] == "Other"
    assert [ref["name"] for ref in newest["duplicates"]] == ["Dayton Card Show"]


def test_stats_compare_tag_counts_with_previous_window() -> None:
    repository = InMemoryRepository()
    service, _ = _service(repository)

    async def run() -> dict[str, Any]:
        ids = []
        for index in range(4):
            source = SOURCE if index < 3 else OTHER_SOURCE
            ids.append(await _seed(repository, {**GOOD_PAYLOAD, "name": f"Show {index}"}, source_url=source, created_at=NOW - timedelta(days=1)))
        old_id = await _seed(repository, created_at=NOW - timedelta(days=10))

        await repository.transition_pending(candidate_id=ids[0], to_status="REJECTED", admin_notes=None)
        await repository.transition_pending(candidate_id=ids[1], to_status="REJECTED", admin_notes=None)
        await repository.transition_pending(candidate_id=ids[3], to_status="APPROVED", admin_notes=None)
        recent = NOW - timedelta(days=1)
        await repository.append_feedback(pending_id=ids[0], admin_id="a", action="reject", feedback="CITY_MISSING, SPAM - junk", created_at=recent)
        await repository.append_feedback(pending_id=ids[1], admin_id="a", action="reject", feedback="CITY_MISSING", created_at=recent)
        await repository.append_feedback(pending_id=ids[3], admin_id="a", action="approve", feedback="CITY_MISSING", created_at=recent)
        await repository.append_feedback(pending_id=old_id, admin_id="a", action="reject", feedback="CITY_MISSING", created_at=NOW - timedelta(days=10))
        return await service.stats(days=7, now=NOW)

    stats = asyncio.run(run())

    tags = {row["tag"]: row for row in stats["feedback"]}
    assert list(tags) == ["CITY_MISSING", "SPAM"]
    assert tags["CITY_MISSING"]["count"] == 2
    assert tags["CITY_MISSING"]["percentage"] == 100.0
    assert tags["CITY_MISSING"]["previous_count"] == 1
    assert tags["CITY_MISSING"]["trend"] == 0.0
    assert tags["SPAM"]["percentage"] == 50.0
    assert tags["SPAM"]["trend"] is None
    assert tags["CITY_MISSING"]["source_distribution"] == {SOURCE: 2}

    sources = {row["source_url"]: row for row in stats["sources"]}
    assert sources[SOURCE]["total"] == 3
    assert sources[SOURCE]["rejected"] == 2
    assert sources[SOURCE]["pending"] == 1
    assert sources[SOURCE]["rejection_rate"] == 66.7
    assert sources[SOURCE]["common_issues"] == {"CITY_MISSING": 2, "SPAM": 1}
    assert sources[OTHER_SOURCE]["approval_rate"] == 100.0
    assert stats["totals"]["candidates"] == 4
    assert stats["period_days"] == 7
