from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_SHORT_RANGE_RE = re.compile(r"\d{1,2}[-–]\d{1,2}")
_YEAR_RE = re.compile(r"\d{4}")
_HTML_MARKERS = ("<", "&nbsp;", "&amp;")
_STOP_WORDS = {
    "a",
    "an",
    "and",
    "at",
    "card",
    "cards",
    "for",
    "in",
    "of",
    "on",
    "show",
    "the",
}


@dataclass(slots=True, frozen=True)
class QualityWeights:
    missing_name: int = 30
    missing_start_date: int = 30
    missing_city: int = 20
    missing_venue_and_address: int = 20
    state_not_abbreviated: int = 5
    html_in_description: int = 5

    @classmethod
    def from_json(cls, raw: str | None) -> QualityWeights:
        if not raw:
            return cls()
        decoded = json.loads(raw)
        if not isinstance(decoded, dict):
            raise ValueError("quality weights must be a JSON object")
        known = {key: int(value) for key, value in decoded.items() if key in cls.__dataclass_fields__}
        return cls(**known)


DEFAULT_WEIGHTS = QualityWeights()


@dataclass(slots=True)
class QualityScore:
    score: int
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class DuplicateRef:
    id: str
    name: str | None
    start_date: str | None
    source_url: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "startDate": self.start_date,
            "sourceUrl": self.source_url,
        }


@dataclass(slots=True)
class DuplicateGroup:
    key: str
    reason: str
    candidates: list[DuplicateRef]

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "reason": self.reason,
            "size": len(self.candidates),
            "candidates": [candidate.to_dict() for candidate in self.candidates],
        }


def score_candidate(raw_payload: dict[str, Any], weights: QualityWeights = DEFAULT_WEIGHTS) -> QualityScore:
    name = _text(raw_payload.get("name"))
    start_date = _text(raw_payload.get("startDate"))
    city = _text(raw_payload.get("city"))
    venue = _text(raw_payload.get("venueName"))
    address = _text(raw_payload.get("address"))
    state = _text(raw_payload.get("state"))
    description = _text(raw_payload.get("description"))

    score = 100
    issues: list[str] = []
    recommendations: list[str] = []

    if not name:
        score -= weights.missing_name
        issues.append("Missing name")
        recommendations.append("Reject with TITLE_MISSING feedback")

    if not start_date:
        score -= weights.missing_start_date
        issues.append("Missing start date")
        recommendations.append("Reject with DATE_FORMAT feedback")
    elif has_date_format_issue(start_date):
        issues.append("Date format issues")
        recommendations.append("Consider DATE_FORMAT feedback")

    if not city:
        score -= weights.missing_city
        issues.append("Missing city")
        recommendations.append("Reject with CITY_MISSING feedback")

    if not venue and not address:
        score -= weights.missing_venue_and_address
        issues.append("Missing venue and address")
        recommendations.append("Reject with VENUE_MISSING feedback")

    if state and len(state) > 2:
        score -= weights.state_not_abbreviated
        issues.append("State not in 2-letter format")
        recommendations.append("Approve with STATE_FULL feedback")

    if description and any(marker in description for marker in _HTML_MARKERS):
        score -= weights.html_in_description
        issues.append("HTML artifacts in description")
        recommendations.append("Edit or approve with EXTRA_HTML feedback")

    return QualityScore(score=max(0, score), issues=issues, recommendations=recommendations)


def has_date_format_issue(value: str) -> bool:
    return "AL" in value or bool(_SHORT_RANGE_RE.search(value)) or not _YEAR_RE.search(value)


def is_possible_duplicate(left: dict[str, Any], right: dict[str, Any]) -> bool:
    """Loose duplicate rule: same name (case-insensitive) OR same start date."""
    if left.get("id") is not None and left.get("id") == right.get("id"):
        return False
    left_payload = left.get("raw_payload") or {}
    right_payload = right.get("raw_payload") or {}
    left_name = _text(left_payload.get("name"))
    left_start = _text(left_payload.get("startDate"))
    if not left_name or not left_start:
        return False
    right_name = _text(right_payload.get("name"))
    right_start = _text(right_payload.get("startDate"))
    if right_name and right_name.casefold() == left_name.casefold():
        return True
    return right_start is not None and right_start == left_start


def duplicate_ref(candidate: dict[str, Any]) -> DuplicateRef:
    payload = candidate.get("raw_payload") or {}
    return DuplicateRef(
        id=str(candidate["id"]),
        name=_text(payload.get("name")),
        start_date=_text(payload.get("startDate")),
        source_url=candidate.get("source_url"),
    )


def scan_duplicate_groups(
    candidates: list[dict[str, Any]],
    *,
    threshold: float = 0.6,
    limit: int = 100,
) -> list[DuplicateGroup]:
    snapshots = [_DuplicateSnapshot.from_candidate(candidate) for candidate in candidates]
    parent = list(range(len(snapshots)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    for i, left in enumerate(snapshots):
        if not left.name_key:
            continue
        for j in range(i + 1, len(snapshots)):
            if _pair_reason(left, snapshots[j], threshold=threshold) is None:
                continue
            root_i, root_j = find(i), find(j)
            if root_i != root_j:
                parent[root_j] = root_i

    members: dict[int, list[int]] = {}
    for index in range(len(snapshots)):
        members.setdefault(find(index), []).append(index)

    groups: list[tuple[int, Any, DuplicateGroup]] = []
    for indexes in members.values():
        if len(indexes) < 2:
            continue
        ordered = sorted(indexes, key=lambda index: snapshots[index].sort_key)
        first = snapshots[ordered[0]]
        group = DuplicateGroup(
            key=f"{first.name_key}|{first.start_date or ''}",
            reason=_reason_for_members(snapshots, ordered, threshold),
            candidates=[duplicate_ref(snapshots[index].candidate) for index in ordered],
        )
        groups.append((len(indexes), first.sort_key, group))

    groups.sort(key=lambda item: (-item[0], item[1]))
    return [group for _, _, group in groups[:limit]]


def name_similarity(left: str | None, right: str | None) -> float:
    return _jaccard(_tokenize(left), _tokenize(right))


@dataclass(slots=True)
class _DuplicateSnapshot:
    candidate: dict[str, Any]
    name_key: str | None
    tokens: set[str]
    start_date: str | None
    start_day: date | None
    city: str | None
    state: str | None
    sort_key: Any

    @classmethod
    def from_candidate(cls, candidate: dict[str, Any]) -> _DuplicateSnapshot:
        payload = candidate.get("raw_payload") or {}
        name = _text(payload.get("name"))
        start_date = _text(payload.get("startDate"))
        city = _text(payload.get("city"))
        state = _text(payload.get("state"))
        created_at = candidate.get("created_at")
        return cls(
            candidate=candidate,
            name_key=" ".join(name.casefold().split()) if name else None,
            tokens=_tokenize(name),
            start_date=start_date,
            start_day=_parse_day(start_date),
            city=city.casefold() if city else None,
            state=state.casefold() if state else None,
            sort_key=(created_at.isoformat() if isinstance(created_at, datetime) else str(created_at or ""), candidate["id"]),
        )


def _pair_reason(left: _DuplicateSnapshot, right: _DuplicateSnapshot, *, threshold: float) -> str | None:
    if not left.name_key or not right.name_key:
        return None
    same_name = left.name_key == right.name_key
    same_date = left.start_date is not None and left.start_date == right.start_date
    similar = same_name or _jaccard(left.tokens, right.tokens) >= threshold

    if same_name and same_date:
        return "same name and date"
    if similar and same_date:
        return "similar name and same date"
    if same_name and left.start_day and right.start_day and abs((left.start_day - right.start_day).days) <= 1:
        return "same name and adjacent dates"
    if similar and left.city and left.city == right.city:
        if left.state is None or right.state is None or left.state == right.state:
            return "similar name in same city"
    return None


def _reason_for_members(snapshots: list[_DuplicateSnapshot], indexes: list[int], threshold: float) -> str:
    for position, i in enumerate(indexes):
        for j in indexes[position + 1 :]:
            reason = _pair_reason(snapshots[i], snapshots[j], threshold=threshold)
            if reason:
                return reason
    return "linked"


def _parse_day(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    union = len(left | right)
    if union <= 0:
        return 0.0
    return len(left & right) / union


def _tokenize(value: str | None) -> set[str]:
    if not value:
        return set()
    tokens = _TOKEN_RE.findall(value.casefold())
    return {token for token in tokens if token not in _STOP_WORDS}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)
