from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from showfinder.services.feedback import parse_feedback_tags
from showfinder.services.normalizer import Normalizer, NormalizerReport
from showfinder.services.quality import (
    DEFAULT_WEIGHTS,
    QualityWeights,
    duplicate_ref,
    is_possible_duplicate,
    scan_duplicate_groups,
    score_candidate,
)
from showfinder.services.repository import (
    AlreadyProcessedError,
    StoreError,
    StoreNotFoundError,
    StoreValidationError,
)

APPROVE_PRIORITY_DELTA = 2
REJECT_PRIORITY_DELTA = -3
BATCH_ACTIONS = {"approve": ("APPROVED", "bulk_approve"), "reject": ("REJECTED", "bulk_reject")}
REJECT_ACTIONS = {"reject", "bulk_reject"}

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FeedbackWriteResult:
    ok: bool
    error: str | None = None


@dataclass(slots=True)
class ReviewOutcome:
    candidate: dict[str, Any]
    feedback: FeedbackWriteResult
    parsed_tags: list[str] = field(default_factory=list)
    normalizer: NormalizerReport | None = None


@dataclass(slots=True)
class BatchOutcome:
    action: str
    processed: list[dict[str, Any]] = field(default_factory=list)
    failed: list[dict[str, str]] = field(default_factory=list)
    feedback: dict[str, FeedbackWriteResult] = field(default_factory=dict)
    normalizer: NormalizerReport | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "processed": [row["id"] for row in self.processed],
            "failed": list(self.failed),
            "feedbackRecorded": all(result.ok for result in self.feedback.values()),
            "normalizer": self.normalizer.to_dict() if self.normalizer else None,
        }


class BatchAbortedError(StoreError):
    """Raised when a store failure stops a batch; carries what already happened."""

    def __init__(self, outcome: BatchOutcome, cause: StoreError) -> None:
        super().__init__(str(cause))
        self.outcome = outcome
        self.cause = cause


class ReviewService:
    def __init__(
        self,
        repository: Any,
        *,
        normalizer: Normalizer | None = None,
        weights: QualityWeights = DEFAULT_WEIGHTS,
        duplicate_threshold: float = 0.6,
        duplicate_group_limit: int = 100,
    ) -> None:
        self.repository = repository
        self.normalizer = normalizer or Normalizer(repository)
        self.weights = weights
        self.duplicate_threshold = duplicate_threshold
        self.duplicate_group_limit = duplicate_group_limit

    async def list_pending(
        self,
        *,
        limit: int,
        offset: int,
        source: str | None = None,
        min_score: int | None = None,
        max_score: int | None = None,
    ) -> dict[str, Any]:
        if min_score is not None and max_score is not None and min_score > max_score:
            raise StoreValidationError("minScore must not exceed maxScore")

        if min_score is None and max_score is None:
            rows = await self.repository.list_pending(limit=limit, offset=offset, source=source)
            total = await self.repository.count_pending(source=source)
            shows = [await self._decorate(row) for row in rows]
        else:
            low = 0 if min_score is None else min_score
            high = 100 if max_score is None else max_score
            scored = [
                (row, score_candidate(row["raw_payload"], self.weights))
                for row in await self.repository.list_all_pending(source=source)
            ]
            matching = [(row, quality) for row, quality in scored if low <= quality.score <= high]
            total = len(matching)
            shows = [await self._decorate(row, quality) for row, quality in matching[offset : offset + limit]]

        return {
            "shows": shows,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": offset + len(shows) < total,
            },
        }

    async def approve(self, *, candidate_id: str, admin_id: str, feedback: str | None = None) -> ReviewOutcome:
        candidate = await self.repository.transition_pending(
            candidate_id=candidate_id,
            to_status="APPROVED",
            admin_notes=feedback,
        )
        outcome = ReviewOutcome(
            candidate=candidate,
            feedback=await self._record_feedback(candidate_id, admin_id, "approve", feedback),
        )
        await self._adjust_source_priority(candidate["source_url"], APPROVE_PRIORITY_DELTA)
        outcome.normalizer = await self.normalizer.run([candidate_id])
        return outcome

    async def reject(self, *, candidate_id: str, admin_id: str, feedback: str | None = None) -> ReviewOutcome:
        candidate = await self.repository.transition_pending(
            candidate_id=candidate_id,
            to_status="REJECTED",
            admin_notes=feedback,
        )
        outcome = ReviewOutcome(
            candidate=candidate,
            feedback=await self._record_feedback(candidate_id, admin_id, "reject", feedback),
            parsed_tags=parse_feedback_tags(feedback),
        )
        await self._adjust_source_priority(candidate["source_url"], REJECT_PRIORITY_DELTA)
        return outcome

    async def edit(
        self,
        *,
        candidate_id: str,
        admin_id: str,
        raw_payload: dict[str, Any],
        feedback: str | None = None,
    ) -> ReviewOutcome:
        if not isinstance(raw_payload, dict) or not raw_payload:
            raise StoreValidationError("raw_payload must be a non-empty object")
        candidate = await self.repository.transition_pending(
            candidate_id=candidate_id,
            to_status="APPROVED",
            admin_notes=feedback,
            raw_payload=raw_payload,
        )
        outcome = ReviewOutcome(
            candidate=candidate,
            feedback=await self._record_feedback(candidate_id, admin_id, "edit", feedback),
        )
        await self._adjust_source_priority(candidate["source_url"], APPROVE_PRIORITY_DELTA)
        outcome.normalizer = await self.normalizer.run([candidate_id])
        return outcome

    async def batch(
        self,
        *,
        action: str,
        candidate_ids: list[str],
        admin_id: str,
        feedback: str | None = None,
    ) -> BatchOutcome:
        if action not in BATCH_ACTIONS:
            raise StoreValidationError('Invalid action. Must be "approve" or "reject"')
        if not candidate_ids:
            raise StoreValidationError("ids must contain at least one id")

        to_status, feedback_action = BATCH_ACTIONS[action]
        outcome = BatchOutcome(action=action)
        abort: StoreError | None = None
        for candidate_id in dict.fromkeys(candidate_ids):
            try:
                candidate = await self.repository.transition_pending(
                    candidate_id=candidate_id,
                    to_status=to_status,
                    admin_notes=feedback,
                )
            except (AlreadyProcessedError, StoreNotFoundError) as exc:
                outcome.failed.append({"id": candidate_id, "error": str(exc)})
                continue
            except StoreError as exc:
                logger.error("batch %s stopped at pending_id=%s error=%s", action, candidate_id, exc)
                abort = exc
                break
            outcome.processed.append(candidate)
            outcome.feedback[candidate_id] = await self._record_feedback(
                candidate_id, admin_id, feedback_action, feedback
            )
            delta = APPROVE_PRIORITY_DELTA if action == "approve" else REJECT_PRIORITY_DELTA
            await self._adjust_source_priority(candidate["source_url"], delta)

        if action == "approve" and outcome.processed:
            outcome.normalizer = await self.normalizer.run([row["id"] for row in outcome.processed])
        if abort is not None:
            raise BatchAbortedError(outcome, abort)
        return outcome

    async def duplicate_groups(self) -> list[dict[str, Any]]:
        candidates = await self.repository.list_all_pending()
        groups = scan_duplicate_groups(
            candidates,
            threshold=self.duplicate_threshold,
            limit=self.duplicate_group_limit,
        )
        return [group.to_dict() for group in groups]

    async def stats(self, *, days: int, now: datetime | None = None) -> dict[str, Any]:
        if days <= 0:
            raise StoreValidationError("days must be positive")
        now = now or datetime.now(timezone.utc)
        window_start = now - timedelta(days=days)
        previous_start = now - timedelta(days=2 * days)

        events = await self.repository.list_feedback_since(previous_start)
        current = [event for event in events if event["created_at"] >= window_start]
        previous = [event for event in events if event["created_at"] < window_start]
        feedback = _tag_stats(current, previous)

        candidates = await self.repository.list_candidates_since(window_start)
        sources = self._source_stats(candidates, current)
        return {
            "period_days": days,
            "feedback": feedback,
            "sources": sources,
            "totals": {
                "candidates": len(candidates),
                "feedback_events": len(current),
                "approved": sum(1 for row in candidates if row["status"] == "APPROVED"),
                "rejected": sum(1 for row in candidates if row["status"] == "REJECTED"),
                "pending": sum(1 for row in candidates if row["status"] == "PENDING"),
            },
        }

    async def _decorate(self, row: dict[str, Any], quality: Any | None = None) -> dict[str, Any]:
        quality = quality or score_candidate(row["raw_payload"], self.weights)
        try:
            matches = await self.repository.find_possible_duplicates(row)
        except StoreError as exc:
            logger.warning("duplicate lookup failed pending_id=%s error=%s", row["id"], exc)
            matches = []
        duplicates = [duplicate_ref(match).to_dict() for match in matches if is_possible_duplicate(row, match)]
        return {**row, "quality": quality.to_dict(), "duplicates": duplicates}

    async def _record_feedback(
        self,
        candidate_id: str,
        admin_id: str,
        action: str,
        feedback: str | None,
    ) -> FeedbackWriteResult:
        try:
            await self.repository.append_feedback(
                pending_id=candidate_id,
                admin_id=admin_id,
                action=action,
                feedback=feedback,
            )
        except StoreError as exc:
            logger.error("feedback write failed pending_id=%s action=%s error=%s", candidate_id, action, exc)
            return FeedbackWriteResult(ok=False, error=str(exc))
        return FeedbackWriteResult(ok=True)

    async def _adjust_source_priority(self, source_url: str | None, delta: int) -> None:
        if not source_url:
            return
        try:
            await self.repository.adjust_source_priority(source_url, delta)
        except StoreError as exc:
            logger.warning("source priority update failed source=%s error=%s", source_url, exc)

    def _source_stats(self, candidates: list[dict[str, Any]], events: list[dict[str, Any]]) -> list[dict[str, Any]]:
        issues: dict[str, Counter[str]] = defaultdict(Counter)
        for event in events:
            if event["action"] in REJECT_ACTIONS and event.get("source_url"):
                issues[event["source_url"]].update(parse_feedback_tags(event.get("feedback")))

        grouped: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for row in candidates:
            grouped[row["source_url"]].append(row)

        stats: list[dict[str, Any]] = []
        for source_url, rows in grouped.items():
            total = len(rows)
            approved = sum(1 for row in rows if row["status"] == "APPROVED")
            rejected = sum(1 for row in rows if row["status"] == "REJECTED")
            scores = [score_candidate(row["raw_payload"], self.weights).score for row in rows]
            stats.append(
                {
                    "source_url": source_url,
                    "total": total,
                    "approved": approved,
                    "rejected": rejected,
                    "pending": total - approved - rejected,
                    "approval_rate": round(approved * 100 / total, 1),
                    "rejection_rate": round(rejected * 100 / total, 1),
                    "avg_quality": round(sum(scores) / total, 1),
                    "common_issues": dict(issues[source_url].most_common()),
                }
            )
        stats.sort(key=lambda item: (-item["total"], item["source_url"]))
        return stats


def _tag_stats(current: list[dict[str, Any]], previous: list[dict[str, Any]]) -> list[dict[str, Any]]:
    current_rejections = [event for event in current if event["action"] in REJECT_ACTIONS]
    previous_rejections = [event for event in previous if event["action"] in REJECT_ACTIONS]
    current_total = len({event["pending_id"] for event in current_rejections})
    previous_total = len({event["pending_id"] for event in previous_rejections})

    current_counts: Counter[str] = Counter()
    distribution: dict[str, Counter[str]] = defaultdict(Counter)
    for event in current_rejections:
        for tag in parse_feedback_tags(event.get("feedback")):
            current_counts[tag] += 1
            distribution[tag][event.get("source_url") or "unknown"] += 1

    previous_counts: Counter[str] = Counter()
    for event in previous_rejections:
        previous_counts.update(parse_feedback_tags(event.get("feedback")))

    rows: list[dict[str, Any]] = []
    for tag, count in current_counts.most_common():
        previous_count = previous_counts.get(tag, 0)
        trend = None
        if previous_count and previous_total:
            trend = round((count / current_total - previous_count / previous_total) * 100, 1)
        rows.append(
            {
                "tag": tag,
                "count": count,
                "percentage": round(count * 100 / current_total, 1) if current_total else 0.0,
                "previous_count": previous_count,
                "trend": trend,
                "source_distribution": dict(distribution[tag].most_common()),
            }
        )
    return rows
