from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from showfinder.services.repository import StoreError

logger = logging.getLogger(__name__)

STATE_CODES: dict[str, str] = {
    "alabama": "AL",
    "alaska": "AK",
    "arizona": "AZ",
    "arkansas": "AR",
    "california": "CA",
    "colorado": "CO",
    "connecticut": "CT",
    "delaware": "DE",
    "florida": "FL",
    "georgia": "GA",
    "hawaii": "HI",
    "idaho": "ID",
    "illinois": "IL",
    "indiana": "IN",
    "iowa": "IA",
    "kansas": "KS",
    "kentucky": "KY",
    "louisiana": "LA",
    "maine": "ME",
    "maryland": "MD",
    "massachusetts": "MA",
    "michigan": "MI",
    "minnesota": "MN",
    "mississippi": "MS",
    "missouri": "MO",
    "montana": "MT",
    "nebraska": "NE",
    "nevada": "NV",
    "new hampshire": "NH",
    "new jersey": "NJ",
    "new mexico": "NM",
    "new york": "NY",
    "north carolina": "NC",
    "north dakota": "ND",
    "ohio": "OH",
    "oklahoma": "OK",
    "oregon": "OR",
    "pennsylvania": "PA",
    "rhode island": "RI",
    "south carolina": "SC",
    "south dakota": "SD",
    "tennessee": "TN",
    "texas": "TX",
    "utah": "UT",
    "vermont": "VT",
    "virginia": "VA",
    "washington": "WA",
    "west virginia": "WV",
    "wisconsin": "WI",
    "wyoming": "WY",
    "district of columbia": "DC",
}
_VALID_CODES = set(STATE_CODES.values())

MONTHS: dict[str, int] = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}
for _name, _number in list(MONTHS.items()):
    MONTHS[_name[:3]] = _number
MONTHS["sept"] = 9

_PREFIX_RE = re.compile(r"^(?:date|when|on|starts?|ends?)\s*:?\s*", re.IGNORECASE)
_WEEKDAY_RE = re.compile(r"^(?:mon|tue|tues|wed|thu|thur|thurs|fri|sat|sun)[a-z]*\.?,?\s+", re.IGNORECASE)
_TIME_SUFFIX_RE = re.compile(
    r"\s*(?:at|from|to|@)?\s*\d{1,2}(?:[:.]\d{2})?\s*(?:am|pm|a\.m\.|p\.m\.)(?:\s*(?:-|–|to)\s*\d{1,2}(?:[:.]\d{2})?\s*(?:am|pm|a\.m\.|p\.m\.)?)?\s*$",
    re.IGNORECASE,
)
_CLOCK_SUFFIX_RE = re.compile(r"\s*(?:at|from|to)?\s*\d{1,2}[:.]\d{2}\s*$", re.IGNORECASE)
_ISO_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_MDY_RE = re.compile(r"(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{2,4})")
_MONTH_RANGE_RE = re.compile(
    r"(?P<month>[A-Za-z]+)\.?\s+(?P<day>\d{1,2})(?:st|nd|rd|th)?"
    r"(?:\s*(?:-|–|to|&|and)\s*(?:(?P<month2>[A-Za-z]+)\.?\s+)?(?P<day2>\d{1,2})(?:st|nd|rd|th)?)?"
    r"(?:,\s*|\s+)(?P<year>\d{4})",
)
_FREE_RE = re.compile(r"^(?:free|no\s+charge|complimentary)$", re.IGNORECASE)
_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)")
_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


class NormalizationError(ValueError):
    """Raised when a candidate cannot be turned into a published show."""


@dataclass(slots=True)
class NormalizerReport:
    published: list[dict[str, str]] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "published": list(self.published),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
        }


def normalize_state(value: Any) -> str | None:
    text = normalize_text(value)
    if not text:
        return None
    cleaned = text.strip(" .").lower()
    if cleaned.upper() in _VALID_CODES:
        return cleaned.upper()
    return STATE_CODES.get(cleaned, text)


def normalize_text(value: Any) -> str | None:
    if value is None:
        return None
    text = html.unescape(str(value))
    text = _TAG_RE.sub(" ", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text or None


def normalize_entry_fee(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    if _FREE_RE.match(text):
        return 0.0
    match = _NUMBER_RE.search(text)
    if match:
        return float(match.group(1))
    return None


def normalize_date_range(value: Any, *, today: date | None = None) -> tuple[date | None, date | None]:
    """Parse a loosely formatted date or month-name range into (start, end)."""
    if value is None:
        return None, None
    cleaned = _clean_date_text(str(value))
    if not cleaned:
        return None, None

    lowered = cleaned.lower()
    if lowered in {"today", "now", "tomorrow"}:
        base = today or datetime.now(timezone.utc).date()
        parsed = base + timedelta(days=1) if lowered == "tomorrow" else base
        return parsed, parsed

    iso_match = _ISO_RE.match(cleaned)
    if iso_match:
        parsed = _safe_date(int(iso_match.group(1)), int(iso_match.group(2)), int(iso_match.group(3)))
        return parsed, parsed

    mdy_match = _MDY_RE.search(cleaned)
    if mdy_match:
        year = int(mdy_match.group(3))
        if year < 100:
            year += 2000 if year < 50 else 1900
        parsed = _safe_date(year, int(mdy_match.group(1)), int(mdy_match.group(2)))
        return parsed, parsed

    for match in _MONTH_RANGE_RE.finditer(cleaned):
        month = MONTHS.get(match.group("month").lower())
        if month is None:
            continue
        year = int(match.group("year"))
        start = _safe_date(year, month, int(match.group("day")))
        if start is None:
            continue
        end = start
        if match.group("day2"):
            end_month = MONTHS.get((match.group("month2") or "").lower(), month)
            end = _safe_date(year, end_month, int(match.group("day2"))) or start
            if end < start:
                end = start
        return start, end

    return None, None


def normalize_date(value: Any, *, today: date | None = None) -> str | None:
    start, _ = normalize_date_range(value, today=today)
    return start.isoformat() if start else None


def normalize_payload(raw_payload: dict[str, Any], *, today: date | None = None) -> dict[str, Any]:
    start, range_end = normalize_date_range(raw_payload.get("startDate"), today=today)
    end, _ = normalize_date_range(raw_payload.get("endDate"), today=today)
    if end is None or (start is not None and end < start):
        end = range_end

    schedule = _normalize_schedule(raw_payload.get("dailySchedule"))
    if schedule:
        start = date.fromisoformat(schedule[0]["date"])
        end = date.fromisoformat(schedule[-1]["date"])

    city = normalize_text(raw_payload.get("city"))
    state = normalize_state(raw_payload.get("state"))
    address = normalize_text(raw_payload.get("address"))
    if not address and city:
        address = ", ".join(part for part in (city, state) if part)

    return {
        "name": normalize_text(raw_payload.get("name")),
        "startDate": start.isoformat() if start else None,
        "endDate": end.isoformat() if end else None,
        "venueName": normalize_text(raw_payload.get("venueName")),
        "address": address,
        "city": city,
        "state": state,
        "entryFee": normalize_entry_fee(raw_payload.get("entryFee")),
        "description": normalize_text(raw_payload.get("description")),
        "url": normalize_text(raw_payload.get("url")),
        "contactInfo": normalize_text(raw_payload.get("contactInfo")),
        "organizerName": normalize_text(raw_payload.get("organizerName")),
        "organizerEmail": normalize_text(raw_payload.get("organizerEmail")),
        "imageUrl": normalize_text(raw_payload.get("imageUrl")),
        "dailySchedule": schedule or None,
    }


def build_published_show(candidate: dict[str, Any], normalized: dict[str, Any]) -> dict[str, Any]:
    title = normalized.get("name")
    if not title:
        raise NormalizationError("candidate has no name")
    if not normalized.get("startDate"):
        raise NormalizationError("candidate has no usable start date")

    start_day = date.fromisoformat(normalized["startDate"])
    end_day = date.fromisoformat(normalized["endDate"]) if normalized.get("endDate") else start_day
    geocoded = candidate.get("geocoded_payload") or {}

    return {
        "title": title,
        "description": normalized.get("description"),
        "location": normalized.get("venueName") or normalized.get("city") or title,
        "address": normalized.get("address"),
        "start_date": datetime.combine(start_day, time.min, tzinfo=timezone.utc),
        "end_date": datetime.combine(end_day, time.min, tzinfo=timezone.utc),
        "entry_fee": normalized.get("entryFee"),
        "image_url": normalized.get("imageUrl") or candidate.get("source_url"),
        "status": "ACTIVE",
        "latitude": _coerce_float(geocoded.get("latitude")),
        "longitude": _coerce_float(geocoded.get("longitude")),
        "organizer_name": normalized.get("organizerName"),
        "organizer_email": normalized.get("organizerEmail"),
        "daily_schedule": normalized.get("dailySchedule"),
    }


class Normalizer:
    """Publishes APPROVED candidates into the shows table.

    Safe to re-run for the same ids: publication is an upsert keyed by
    (title, start_date, location).
    """

    def __init__(self, repository: Any, *, geocoder: Any | None = None, today: date | None = None) -> None:
        self.repository = repository
        self.geocoder = geocoder
        self.today = today

    async def run(self, candidate_ids: list[str]) -> NormalizerReport:
        report = NormalizerReport()
        for candidate_id in candidate_ids:
            try:
                candidate = await self.repository.get_pending(candidate_id)
                if candidate is None or candidate["status"] != "APPROVED":
                    report.skipped.append(candidate_id)
                    continue
                normalized = normalize_payload(candidate["raw_payload"], today=self.today)
                show = build_published_show(candidate, normalized)
                await self._backfill_coordinates(show)
                await self.repository.set_normalized_payload(candidate_id, normalized)
                show_id = await self.repository.upsert_published_show(show)
            except (NormalizationError, StoreError) as exc:
                logger.warning("normalization failed pending_id=%s error=%s", candidate_id, exc)
                report.failed.append({"id": candidate_id, "error": str(exc)})
                continue
            logger.info("published show pending_id=%s show_id=%s", candidate_id, show_id)
            report.published.append({"id": candidate_id, "show_id": show_id})
        return report

    async def _backfill_coordinates(self, show: dict[str, Any]) -> None:
        if self.geocoder is None or show.get("latitude") is not None or not show.get("address"):
            return
        result = await self.geocoder.geocode(show["address"])
        if result is None:
            logger.info("publishing without coordinates address=%s", show["address"])
            return
        show["latitude"] = result.latitude
        show["longitude"] = result.longitude


def _clean_date_text(value: str) -> str:
    cleaned = _PREFIX_RE.sub("", value.strip())
    cleaned = _WEEKDAY_RE.sub("", cleaned)
    cleaned = _TIME_SUFFIX_RE.sub("", cleaned)
    cleaned = _CLOCK_SUFFIX_RE.sub("", cleaned)
    return cleaned.strip(" ,")


def _normalize_schedule(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    entries: list[dict[str, Any]] = []
    for item in value:
        if not isinstance(item, dict):
            continue
        day = normalize_date(item.get("date"))
        if not day:
            continue
        entries.append(
            {
                "date": day,
                "startTime": normalize_text(item.get("startTime")),
                "endTime": normalize_text(item.get("endTime")),
            }
        )
    entries.sort(key=lambda entry: entry["date"])
    return entries


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _coerce_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
