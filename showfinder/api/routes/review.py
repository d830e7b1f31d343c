import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from showfinder.core.auth import Principal
from showfinder.core.config import Settings, get_settings
from showfinder.core.security import get_admin_principal
from showfinder.ingestion.geocoder import build_geocoder
from showfinder.schemas.review import (
    ApiDocsOut,
    ApproveRequest,
    BatchRequest,
    DuplicateGroupsOut,
    EditRequest,
    PendingListOut,
    RejectRequest,
)
from showfinder.services.normalizer import Normalizer
from showfinder.services.quality import QualityWeights
from showfinder.services.repository import (
    AlreadyProcessedError,
    StoreError,
    StoreNotFoundError,
    StoreValidationError,
    get_repository,
)
from showfinder.services.review import BatchAbortedError, ReviewService

ENDPOINTS = [
    {"method": "GET", "path": "/admin-review/pending", "description": "List pending shows with quality scores"},
    {"method": "GET", "path": "/admin-review/stats", "description": "Get feedback statistics"},
    {"method": "GET", "path": "/admin-review/duplicates", "description": "Find potential duplicates"},
    {"method": "POST", "path": "/admin-review/approve", "description": "Approve a show"},
    {"method": "POST", "path": "/admin-review/reject", "description": "Reject a show"},
    {"method": "POST", "path": "/admin-review/edit", "description": "Edit and approve a show"},
    {"method": "POST", "path": "/admin-review/batch", "description": "Batch operations"},
]
KNOWN_PATHS = {endpoint["path"].removeprefix("/admin-review/") for endpoint in ENDPOINTS}
ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

BodyT = TypeVar("BodyT", bound=BaseModel)

router = APIRouter(dependencies=[Depends(get_admin_principal)])
logger = logging.getLogger(__name__)


def get_review_service(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> ReviewService:
    return ReviewService(
        repository,
        normalizer=Normalizer(repository, geocoder=build_geocoder(settings, cache=repository)),
        weights=QualityWeights.from_json(settings.quality_weights_json),
        duplicate_threshold=settings.duplicate_similarity_threshold,
        duplicate_group_limit=settings.duplicate_group_limit,
    )


def json_body(model: type[BodyT]) -> Callable[..., Awaitable[BodyT]]:
    """Parse the JSON body only after the caller has passed the admin check."""

    async def dependency(request: Request, _: Principal = Depends(get_admin_principal)) -> BodyT:
        try:
            raw = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body") from exc
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            raise RequestValidationError(exc.errors()) from exc

    return dependency


def _http_error(exc: StoreError) -> HTTPException:
    if isinstance(exc, StoreValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, StoreNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, AlreadyProcessedError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Admin review function failed: {exc}",
    )


@router.get("/pending", response_model=PendingListOut)
async def list_pending(
    service: ReviewService = Depends(get_review_service),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    source: str | None = Query(default=None),
    min_score: int | None = Query(default=None, alias="minScore", ge=0, le=100),
    max_score: int | None = Query(default=None, alias="maxScore", ge=0, le=100),
) -> dict[str, Any]:
    try:
        return await service.list_pending(
            limit=limit,
            offset=offset,
            source=source,
            min_score=min_score,
            max_score=max_score,
        )
    except StoreError as exc:
        raise _http_error(exc) from exc


@router.get("/stats")
async def feedback_stats(
    service: ReviewService = Depends(get_review_service),
    days: int = Query(default=7, ge=1, le=365),
) -> dict[str, Any]:
    try:
        return await service.stats(days=days)
    except StoreError as exc:
        raise _http_error(exc) from exc


@router.get("/duplicates", response_model=DuplicateGroupsOut)
async def duplicate_groups(service: ReviewService = Depends(get_review_service)) -> dict[str, Any]:
    try:
        return {"duplicates": await service.duplicate_groups()}
    except StoreError as exc:
        raise _http_error(exc) from exc


@router.post("/approve")
async def approve_show(
    payload: ApproveRequest = Depends(json_body(ApproveRequest)),
    principal: Principal = Depends(get_admin_principal),
    service: ReviewService = Depends(get_review_service),
) -> dict[str, Any]:
    try:
        outcome = await service.approve(candidate_id=payload.id, admin_id=principal.user_id, feedback=payload.feedback)
    except StoreError as exc:
        raise _http_error(exc) from exc

    logger.info("show approved pending_id=%s admin_id=%s", payload.id, principal.user_id)
    return {
        "message": "Show approved successfully",
        "show": outcome.candidate,
        "feedbackRecorded": outcome.feedback.ok,
        "normalizer": outcome.normalizer.to_dict() if outcome.normalizer else None,
    }


@router.post("/reject")
async def reject_show(
    payload: RejectRequest = Depends(json_body(RejectRequest)),
    principal: Principal = Depends(get_admin_principal),
    service: ReviewService = Depends(get_review_service),
) -> dict[str, Any]:
    try:
        outcome = await service.reject(candidate_id=payload.id, admin_id=principal.user_id, feedback=payload.feedback)
    except StoreError as exc:
        raise _http_error(exc) from exc

    logger.info("show rejected pending_id=%s admin_id=%s tags=%s", payload.id, principal.user_id, outcome.parsed_tags)
    return {
        "message": "Show rejected successfully",
        "show": outcome.candidate,
        "feedbackRecorded": outcome.feedback.ok,
        "parsedTags": outcome.parsed_tags,
    }


@router.post("/edit")
async def edit_show(
    payload: EditRequest = Depends(json_body(EditRequest)),
    principal: Principal = Depends(get_admin_principal),
    service: ReviewService = Depends(get_review_service),
) -> dict[str, Any]:
    try:
        outcome = await service.edit(
            candidate_id=payload.id,
            admin_id=principal.user_id,
            raw_payload=payload.raw_payload,
            feedback=payload.feedback,
        )
    except StoreError as exc:
        raise _http_error(exc) from exc

    logger.info("show edited pending_id=%s admin_id=%s", payload.id, principal.user_id)
    return {
        "message": "Show edited and approved successfully",
        "show": outcome.candidate,
        "feedbackRecorded": outcome.feedback.ok,
        "normalizer": outcome.normalizer.to_dict() if outcome.normalizer else None,
    }


@router.post("/batch")
async def batch_review(
    payload: BatchRequest = Depends(json_body(BatchRequest)),
    principal: Principal = Depends(get_admin_principal),
    service: ReviewService = Depends(get_review_service),
) -> Any:
    if not payload.action or not payload.ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields: action and ids array",
        )
    if payload.action not in {"approve", "reject"}:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid action. Must be "approve" or "reject"',
        )

    try:
        outcome = await service.batch(
            action=payload.action,
            candidate_ids=payload.ids,
            admin_id=principal.user_id,
            feedback=payload.feedback,
        )
    except BatchAbortedError as exc:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": f"Admin review function failed: {exc.cause}",
                "partial": exc.outcome.to_dict(),
            },
        )
    except StoreError as exc:
        raise _http_error(exc) from exc

    logger.info(
        "batch review action=%s processed=%s failed=%s admin_id=%s",
        payload.action,
        len(outcome.processed),
        len(outcome.failed),
        principal.user_id,
    )
    return {
        "message": f"Batch {payload.action} completed successfully for {len(outcome.processed)} shows",
        "shows": outcome.processed,
        "failed": outcome.failed,
        "feedbackRecorded": all(result.ok for result in outcome.feedback.values()),
        "normalizer": outcome.normalizer.to_dict() if outcome.normalizer else None,
    }


@router.api_route("", methods=ALL_METHODS, response_model=ApiDocsOut, include_in_schema=False)
@router.api_route("/{path:path}", methods=ALL_METHODS, response_model=ApiDocsOut, include_in_schema=False)
async def api_docs(path: str = "") -> dict[str, Any]:
    if path.strip("/") in KNOWN_PATHS:
        raise HTTPException(status_code=status.HTTP_405_METHOD_NOT_ALLOWED, detail="Method not allowed")
    return {"message": "Admin Review API", "endpoints": ENDPOINTS}
