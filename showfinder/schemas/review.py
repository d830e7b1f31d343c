from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ApproveRequest(BaseModel):
    id: str = Field(min_length=1)
    feedback: str | None = None


class RejectRequest(BaseModel):
    id: str = Field(min_length=1)
    feedback: str | None = None


class EditRequest(BaseModel):
    id: str = Field(min_length=1)
    raw_payload: dict[str, Any]
    feedback: str | None = None


class BatchRequest(BaseModel):
    # Checked in the route so the error messages stay stable for admin tooling.
    action: str | None = None
    ids: list[str] | None = None
    feedback: str | None = None


class QualityOut(BaseModel):
    score: int
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class DuplicateRefOut(BaseModel):
    id: str
    name: str | None = None
    startDate: str | None = None
    sourceUrl: str | None = None


class PendingShowOut(BaseModel):
    id: str
    source_url: str
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    normalized_payload: dict[str, Any] | None = None
    geocoded_payload: dict[str, Any] | None = None
    status: str
    admin_notes: str | None = None
    created_at: datetime
    reviewed_at: datetime | None = None
    quality: QualityOut
    duplicates: list[DuplicateRefOut] = Field(default_factory=list)


class PaginationOut(BaseModel):
    total: int
    limit: int
    offset: int
    hasMore: bool


class PendingListOut(BaseModel):
    shows: list[PendingShowOut]
    pagination: PaginationOut


class DuplicateGroupOut(BaseModel):
    key: str
    reason: str
    size: int
    candidates: list[DuplicateRefOut]


class DuplicateGroupsOut(BaseModel):
    duplicates: list[DuplicateGroupOut]


class EndpointDoc(BaseModel):
    method: str
    path: str
    description: str


class ApiDocsOut(BaseModel):
    message: str
    endpoints: list[EndpointDoc]
