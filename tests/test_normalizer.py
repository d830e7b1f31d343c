from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import pytest

from showfinder.ingestion.geocoder import GeocodeResult
from showfinder.services.normalizer import (
    NormalizationError,
    Normalizer,
    build_published_show,
    normalize_date_range,
    normalize_entry_fee,
    normalize_payload,
    normalize_state,
)
from showfinder.services.store import InMemoryRepository

TODAY = date(2025, 3, 1)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("2025-04-12", (date(2025, 4, 12), date(2025, 4, 12))),
        ("4/12/25", (date(2025, 4, 12), date(2025, 4, 12))),
        ("January 5-6, 2025", (date(2025, 1, 5), date(2025, 1, 6))),
        ("Saturday, March 15, 2025 9am-3pm", (date(2025, 3, 15), date(2025, 3, 15))),
        ("Sept 27 - Oct 2, 2025", (date(2025, 9, 27), date(2025, 10, 2))),
        ("tomorrow", (date(2025, 3, 2), date(2025, 3, 2))),
        ("TBD", (None, None)),
        (None, (None, None)),
    ],
)
def test_normalize_date_range(value: str | None, expected: tuple[date | None, date | None]) -> None:
    assert normalize_date_range(value, today=TODAY) == expected


def test_normalize_state_and_fee() -> None:
    assert normalize_state("Ohio") == "OH"
    assert normalize_state(" oh. ") == "OH"
    assert normalize_state("New York") == "NY"
    assert normalize_state("Ontario") == "Ontario"
    assert normalize_entry_fee("$5.50 at the door") == 5.5
    assert normalize_entry_fee("Free") == 0.0
    assert normalize_entry_fee("call for details") is None


def test_normalize_payload_cleans_fields_and_derives_address() -> None:
    normalized = normalize_payload(
        {
            "name": "  Buckeye &amp; Friends   Card Show ",
            "startDate": "April 12-13, 2025",
            "endDate": None,
            "city": "Columbus",
            "state": "Ohio",
            "entryFee": "$3",
            "description": "<p>Over&nbsp;100 tables</p>",
        },
        today=TODAY,
    )

    assert normalized["name"] == "Buckeye & Friends Card Show"
    assert normalized["startDate"] == "2025-04-12"
    assert normalized["endDate"] == "2025-04-13"
    assert normalized["state"] == "OH"
    assert normalized["address"] == "Columbus, OH"
    assert normalized["entryFee"] == 3.0
    assert normalized["description"] == "Over 100 tables"


def test_daily_schedule_sets_show_bounds() -> None:
    normalized = normalize_payload(
        {
            "name": "Weekend Show",
            "startDate": "2025-05-01",
            "dailySchedule": [
                {"date": "2025-05-04", "startTime": "10am", "endTime": "4pm"},
                {"date": "2025-05-03", "startTime": "9am", "endTime": "5pm"},
            ],
        }
    )

    assert normalized["startDate"] == "2025-05-03"
    assert normalized["endDate"] == "2025-05-04"
    assert [entry["date"] for entry in normalized["dailySchedule"]] == ["2025-05-03", "2025-05-04"]


def test_build_published_show_uses_venue_and_geocode() -> None:
    candidate = {"geocoded_payload": {"latitude": 39.96, "longitude": -83.0}}
    normalized = normalize_payload(
        {"name": "Spring Show", "startDate": "2025-04-12", "venueName": "Expo Hall", "city": "Columbus"}
    )

    show = build_published_show(candidate, normalized)

    assert show["location"] == "Expo Hall"
    assert show["start_date"] == datetime(2025, 4, 12, tzinfo=timezone.utc)
    assert show["end_date"] == show["start_date"]
    assert (show["latitude"], show["longitude"]) == (39.96, -83.0)


def test_build_published_show_links_image_to_source_url() -> None:
    candidate = {"source_url": "https://shows.example.com/ohio"}
    normalized = normalize_payload({"name": "Spring Show", "startDate": "2025-04-12", "city": "Columbus"})

    show = build_published_show(candidate, normalized)

    assert show["image_url"] == "https://shows.example.com/ohio"
    assert show["location"] == "Columbus"


def test_build_published_show_requires_name_and_date() -> None:
    with pytest.raises(NormalizationError):
        build_published_show({}, normalize_payload({"startDate": "2025-04-12"}))
    with pytest.raises(NormalizationError):
        build_published_show({}, normalize_payload({"name": "Undated Show", "startDate": "soon"}))


class FixedGeocoder:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def geocode(self, address: str) -> GeocodeResult | None:
        self.calls.append(address)
        return GeocodeResult(latitude=41.5, longitude=-81.7)


def test_normalizer_publishes_approved_candidates_once() -> None:
    async def run() -> tuple[InMemoryRepository, list]:
        repository = InMemoryRepository()
        approved = await repository.insert_pending(
            source_url="https://example.com/shows",
            raw_payload={"name": "Lake Erie Show", "startDate": "2025-06-07", "city": "Cleveland", "state": "OH"},
        )
        pending = await repository.insert_pending(
            source_url="https://example.com/shows",
            raw_payload={"name": "Still Pending", "startDate": "2025-06-08"},
        )
        await repository.transition_pending(candidate_id=approved["id"], to_status="APPROVED", admin_notes=None)

        geocoder = FixedGeocoder()
        normalizer = Normalizer(repository, geocoder=geocoder)
        first = await normalizer.run([approved["id"], pending["id"], "missing-id"])
        second = await normalizer.run([approved["id"]])
        return repository, [first, second, geocoder.calls, approved["id"], pending["id"]]

    repository, (first, second, calls, approved_id, pending_id) = asyncio.run(run())

    assert [entry["id"] for entry in first.published] == [approved_id]
    assert first.skipped == [pending_id, "missing-id"]
    assert second.published[0]["show_id"] == first.published[0]["show_id"]
    assert len(repository.shows) == 1
    show = next(iter(repository.shows.values()))
    assert show["location"] == "Cleveland"
    assert show["address"] == "Cleveland, OH"
    assert show["latitude"] == 41.5
    assert calls == ["Cleveland, OH", "Cleveland, OH"]
    assert repository.pending[approved_id]["normalized_payload"]["startDate"] == "2025-06-07"
