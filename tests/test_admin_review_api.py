from __future__ import annotations

import asyncio
import os
from typing import Any

import pytest
from fastapi.testclient import TestClient

import showfinder.core.security as security
from showfinder.core.config import get_settings
from showfinder.main import app
from showfinder.services.repository import get_repository
from showfinder.services.store import InMemoryRepository

ADMIN_HEADERS = {"Authorization": "Bearer admin-token"}
SOURCE = "https://shows.example.com/ohio"


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository(admin_ids={"admin-1"})


@pytest.fixture
def admin_client(repository: InMemoryRepository, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    os.environ["SF_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["SF_SUPABASE_ANON_KEY"] = "anon-key"
    monkeypatch.delenv("SF_GOOGLE_MAPS_API_KEY", raising=False)
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: repository
    _mock_supabase_user(monkeypatch, {"id": "admin-1", "email": "admin@example.com"})

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("SF_SUPABASE_URL", None)
    os.environ.pop("SF_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def _seed(repository: InMemoryRepository, **payload: Any) -> str:
    raw_payload = {"name": "Dayton Card Show", "startDate": "2025-04-12", "city": "Dayton", "state": "OH", **payload}
    row = asyncio.run(repository.insert_pending(source_url=SOURCE, raw_payload=raw_payload))
    return row["id"]


def test_missing_token_is_rejected(admin_client: TestClient) -> None:
    response = admin_client.get("/admin-review/pending")

    assert response.status_code == 403
    assert response.json() == {"error": "Unauthorized. Admin access required."}


def test_missing_token_is_rejected_before_the_body_is_read(admin_client: TestClient) -> None:
    response = admin_client.post(
        "/admin-review/approve",
        content="{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 403
    assert response.json() == {"error": "Unauthorized. Admin access required."}


def test_malformed_body_from_admin_is_a_bad_request(admin_client: TestClient) -> None:
    response = admin_client.post(
        "/admin-review/approve",
        content="{not json",
        headers={**ADMIN_HEADERS, "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON body"}


def test_non_admin_user_is_rejected(admin_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "user-7", "email": "fan@example.com"})

    response = admin_client.get("/admin-review/pending", headers=ADMIN_HEADERS)

    assert response.status_code == 403
    assert response.json() == {"error": "Unauthorized. Admin access required."}


def test_unconfigured_auth_returns_service_unavailable(admin_client: TestClient) -> None:
    os.environ.pop("SF_SUPABASE_URL", None)
    get_settings.cache_clear()

    response = admin_client.get("/admin-review/pending", headers=ADMIN_HEADERS)

    assert response.status_code == 503


def test_pending_lists_scored_shows_with_pagination(admin_client: TestClient, repository: InMemoryRepository) -> None:
    _seed(repository, venueName="Expo Hall")
    _seed(repository, name="Akron Show", startDate="2025-05-01", city=None)

    response = admin_client.get("/admin-review/pending?limit=1", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["pagination"] == {"total": 2, "limit": 1, "offset": 0, "hasMore": True}
    assert len(body["shows"]) == 1
    assert "score" in body["shows"][0]["quality"]


def test_pending_rejects_out_of_range_limit(admin_client: TestClient) -> None:
    response = admin_client.get("/admin-review/pending?limit=500", headers=ADMIN_HEADERS)

    assert response.status_code == 400
    assert "limit" in response.json()["error"]


def test_approve_then_conflict_on_second_review(admin_client: TestClient, repository: InMemoryRepository) -> None:
    candidate_id = _seed(repository, venueName="Expo Hall")

    first = admin_client.post("/admin-review/approve", json={"id": candidate_id}, headers=ADMIN_HEADERS)
    second = admin_client.post("/admin-review/approve", json={"id": candidate_id}, headers=ADMIN_HEADERS)

    assert first.status_code == 200
    body = first.json()
    assert body["message"] == "Show approved successfully"
    assert body["show"]["status"] == "APPROVED"
    assert body["feedbackRecorded"] is True
    assert len(body["normalizer"]["published"]) == 1
    assert second.status_code == 409
    assert second.json() == {"error": "Show already APPROVED"}
    assert len(repository.feedback) == 1


def test_approve_unknown_show_is_not_found(admin_client: TestClient) -> None:
    response = admin_client.post("/admin-review/approve", json={"id": "missing"}, headers=ADMIN_HEADERS)

    assert response.status_code == 404


def test_reject_returns_parsed_tags(admin_client: TestClient, repository: InMemoryRepository) -> None:
    candidate_id = _seed(repository)

    response = admin_client.post(
        "/admin-review/reject",
        json={"id": candidate_id, "feedback": "VENUE_MISSING, DATE_FORMAT - no venue listed"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Show rejected successfully"
    assert body["parsedTags"] == ["VENUE_MISSING", "DATE_FORMAT"]
    assert body["show"]["admin_notes"] == "VENUE_MISSING, DATE_FORMAT - no venue listed"
    assert repository.feedback[0]["admin_id"] == "admin-1"


def test_edit_requires_payload(admin_client: TestClient, repository: InMemoryRepository) -> None:
    candidate_id = _seed(repository)

    response = admin_client.post("/admin-review/edit", json={"id": candidate_id}, headers=ADMIN_HEADERS)

    assert response.status_code == 400
    assert response.json()["error"].startswith("raw_payload")


def test_batch_validates_action_and_ids(admin_client: TestClient) -> None:
    missing = admin_client.post("/admin-review/batch", json={"action": "approve"}, headers=ADMIN_HEADERS)
    invalid = admin_client.post("/admin-review/batch", json={"action": "archive", "ids": ["a"]}, headers=ADMIN_HEADERS)

    assert missing.status_code == 400
    assert missing.json() == {"error": "Missing required fields: action and ids array"}
    assert invalid.status_code == 400
    assert invalid.json() == {"error": 'Invalid action. Must be "approve" or "reject"'}


def test_batch_reject_reports_failures(admin_client: TestClient, repository: InMemoryRepository) -> None:
    first = _seed(repository)
    second = _seed(repository, name="Akron Show")

    response = admin_client.post(
        "/admin-review/batch",
        json={"action": "reject", "ids": [first, second, "missing"], "feedback": "SPAM"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Batch reject completed successfully for 2 shows"
    assert [show["id"] for show in body["shows"]] == [first, second]
    assert body["failed"] == [{"id": "missing", "error": "Pending show not found"}]
    assert body["normalizer"] is None
    assert [event["action"] for event in repository.feedback] == ["bulk_reject", "bulk_reject"]


def test_duplicates_endpoint_groups_candidates(admin_client: TestClient, repository: InMemoryRepository) -> None:
    _seed(repository)
    _seed(repository)

    response = admin_client.get("/admin-review/duplicates", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    groups = response.json()["duplicates"]
    assert len(groups) == 1
    assert groups[0]["size"] == 2


def test_stats_endpoint_reports_window(admin_client: TestClient, repository: InMemoryRepository) -> None:
    _seed(repository)

    response = admin_client.get("/admin-review/stats?days=30", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["period_days"] == 30
    assert body["totals"]["pending"] == 1


def test_wrong_method_on_known_path_is_not_allowed(admin_client: TestClient) -> None:
    response = admin_client.get("/admin-review/approve", headers=ADMIN_HEADERS)

    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed"}


def test_unknown_path_returns_api_docs(admin_client: TestClient) -> None:
    response = admin_client.get("/admin-review/whatever", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Admin Review API"
    assert {"method": "POST", "path": "/admin-review/batch", "description": "Batch operations"} in body["endpoints"]


def test_healthz_needs_no_auth() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
