"""
test_api_routes.py — HTTP surface over the in-memory store.

Tests cover:
  - Membership gate (403 for non-members) and tier-gated fact projection
  - Citation edit permission through PATCH
  - Pending change lifecycle over HTTP and CoreError → status mapping
  - Degraded weather → 503

Requests go through httpx.ASGITransport, so the lifespan (and init_db) never
runs; app.state is populated by the fixture instead.
"""

from types import SimpleNamespace

import httpx
import pytest
from fastapi import Request

from app.api.deps import get_current_user
from app.main import app, status_for
from app.services.errors import (
    AuthorizationDenied, CoreError, DuplicatePendingChange, ExternalServiceDegraded,
    InvalidTransition, PendingChangeNotFound, SourceUnavailable,
)
from app.services.fact_synthesizer import FactSynthesizer
from app.services.local_cache import LocalFactCache
from app.services.notifications import EmailNotifier
from app.services.project_loader import ProjectLoader, SessionRegistry

BASE = "/api/v1/projects/p-1"


def _test_user(request: Request):
    user_id = request.headers.get("X-Test-User", "u-owner")
    return SimpleNamespace(id=user_id, email=f"{user_id}@buildunion.test", full_name=user_id)


@pytest.fixture
def api(fake_store, weather_factory, tmp_path):
    synthesizer = FactSynthesizer(fake_store)
    loader = ProjectLoader(fake_store, cache=LocalFactCache(str(tmp_path)), synthesizer=synthesizer)
    app.state.store = fake_store
    app.state.sessions = SessionRegistry(loader)
    app.state.weather = weather_factory(error=ExternalServiceDegraded("weather", "timeout"))
    app.state.email = EmailNotifier(api_key="")
    app.dependency_overrides[get_current_user] = _test_user
    yield app
    app.dependency_overrides.clear()


def _client(application):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=application), base_url="http://test")


def _as(user_id):
    return {"X-Test-User": user_id}


class TestStatusMapping:

    @pytest.mark.parametrize("exc,code", [
        (AuthorizationDenied("x", "worker"), 403),
        (PendingChangeNotFound("c"), 404),
        (InvalidTransition("done"), 409),
        (DuplicatePendingChange("material", "m"), 409),
        (SourceUnavailable("down"), 503),
        (ExternalServiceDegraded("ai", "down"), 503),
        (CoreError("other"), 500),
    ])
    def test_status_for(self, exc, code):
        assert status_for(exc) == code


class TestFacts:

    @pytest.mark.asyncio
    async def test_non_member_forbidden(self, api):
        async with _client(api) as client:
            r = await client.get(f"{BASE}/facts", headers=_as("u-stranger"))
        assert r.status_code == 403

    @pytest.mark.asyncio
    async def test_projection_depends_on_role(self, api):
        async with _client(api) as client:
            owner = (await client.get(f"{BASE}/facts", headers=_as("u-owner"))).json()
            worker = (await client.get(f"{BASE}/facts", headers=_as("u-worker"))).json()
        assert owner["can_view_financials"] is True
        assert "financial" in owner["sections"]
        assert [c["cite_type"] for c in owner["citations"]] == ["TRADE_SELECTION"]
        assert worker["tier"] == "worker"
        assert worker["citations"] == []
        assert "financial" not in worker["sections"]

    @pytest.mark.asyncio
    async def test_edit_requires_edit_right(self, api):
        async with _client(api) as client:
            facts = (await client.get(f"{BASE}/facts", headers=_as("u-owner"))).json()
            cid = facts["citations"][0]["id"]

            denied = await client.patch(f"{BASE}/facts/{cid}", json={"answer": "Painting"},
                                        headers=_as("u-owner"))
            assert denied.status_code == 403

            ok = await client.patch(f"{BASE}/facts/{cid}", json={"answer": "Painting"},
                                    headers=_as("u-foreman"))
            assert ok.status_code == 200
            assert ok.json()["answer"] == "Painting"
            assert ok.json()["provenance"] == "user_input"

            empty = await client.patch(f"{BASE}/facts/{cid}", json={"answer": ""},
                                       headers=_as("u-foreman"))
            assert empty.status_code == 422


class TestChanges:

    @pytest.mark.asyncio
    async def test_lifecycle(self, api):
        body = {"item_id": "drywall", "item_name": "Drywall sheets", "original_quantity": 10, "new_quantity": 14}
        async with _client(api) as client:
            created = await client.post(f"{BASE}/changes", json=body, headers=_as("u-foreman"))
            assert created.status_code == 201
            change_id = created.json()["id"]

            dup = await client.post(f"{BASE}/changes", json=body, headers=_as("u-foreman"))
            assert dup.status_code == 409

            forbidden = await client.post(f"{BASE}/changes/{change_id}/approve", json={},
                                          headers=_as("u-foreman"))
            assert forbidden.status_code == 403
            assert forbidden.json()["error"] == "AuthorizationDenied"

            approved = await client.post(f"{BASE}/changes/{change_id}/approve", json={"review_notes": "ok"},
                                         headers=_as("u-owner"))
            assert approved.status_code == 200
            assert approved.json()["apply"] == {"item_type": "material", "item_id": "drywall", "apply_quantity": 14.0}
            assert approved.json()["audit_citation_id"] == f"budget-approval-{change_id}"

            again = await client.post(f"{BASE}/changes/{change_id}/approve", json={}, headers=_as("u-owner"))
            assert again.status_code == 409

            missing = await client.post(f"{BASE}/changes/nope/reject", json={}, headers=_as("u-owner"))
            assert missing.status_code == 404

            listed = (await client.get(f"{BASE}/changes?status=approved", headers=_as("u-owner"))).json()
            assert listed["total"] == 1


class TestExternal:

    @pytest.mark.asyncio
    async def test_degraded_weather_is_503(self, api):
        async with _client(api) as client:
            r = await client.get(f"{BASE}/weather", headers=_as("u-worker"))
        assert r.status_code == 503
        assert r.json()["error"] == "ExternalServiceDegraded"

    @pytest.mark.asyncio
    async def test_invitation_notify_requires_foreman(self, api):
        payload = {"emails": ["new@x.ca"], "role": "worker"}
        async with _client(api) as client:
            worker = await client.post(f"{BASE}/invitations/notify", json=payload, headers=_as("u-worker"))
            foreman = await client.post(f"{BASE}/invitations/notify", json=payload, headers=_as("u-foreman"))
        assert worker.status_code == 403
        assert foreman.status_code == 200
        assert foreman.json()["results"][0]["error"] == "email not configured"

    @pytest.mark.asyncio
    async def test_health(self, api):
        async with _client(api) as client:
            r = await client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, api):
        async with _client(api) as client:
            r = await client.get("/health", headers={"X-Request-ID": "req-abc"})
        assert r.headers["X-Request-ID"] == "req-abc"
        assert "X-Process-Time" in r.headers
