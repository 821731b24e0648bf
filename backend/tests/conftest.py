"""
conftest.py — Shared pytest fixtures for the BuildUnion project core test suite.

No database or external service fixtures are defined here. The primary store
is replaced by ``FakeStore``, an in-memory implementation of the
ProjectStore protocol with per-operation failure injection; weather, AI and
email adapters are exercised through fakes or httpx.MockTransport.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
from datetime import date
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from app.models.fact_schema import (  # noqa: E402
    Citation, FinancialSummary, PendingStatus, ProjectProfile, ProjectSnapshot, Provenance, Task,
)
from app.services.errors import (  # noqa: E402
    DuplicatePendingChange, InvalidTransition, PendingChangeNotFound, SourceUnavailable,
)
from app.services.fact_normalizer import normalize_records  # noqa: E402
from app.services.project_store import ChangeFeed, StoreRead  # noqa: E402

PROJECT_ID = "p-1"
OWNER_ID = "u-owner"
FOREMAN_ID = "u-foreman"
WORKER_ID = "u-worker"


# ---------------------------------------------------------------------------
# In-memory primary store
# ---------------------------------------------------------------------------

class FakeStore:
    """
    ProjectStore stand-in. ``fail`` holds operation names that raise
    SourceUnavailable; ``writes`` records every whole-collection write.
    """

    def __init__(self, records=None, financial=None, tasks=None, team=None,
                 invitations=None, contracts=None, profile=None, roles=None):
        self.profile = profile or ProjectProfile(
            project_id=PROJECT_ID, name="Kitchen Reno", address="12 King St, Toronto, ON",
            trade="drywall_installation", owner_id=OWNER_ID,
        )
        self.records = list(records or [])
        self.financial = financial or FinancialSummary()
        self.tasks = list(tasks or [])
        self.team = list(team or [])
        self.invitations = list(invitations or [])
        self.contracts = list(contracts or [])
        self.roles = roles or {OWNER_ID: "owner", FOREMAN_ID: "foreman", WORKER_ID: "worker"}
        self.pending = {}
        self.fail = set()
        self.writes = []
        self.insert_batches = []
        self.feed = ChangeFeed()

    def _check(self, op):
        if op in self.fail:
            raise SourceUnavailable(f"{op} failed", self.profile.project_id)

    async def read(self, project_id):
        self._check("read")
        return StoreRead(profile=self.profile, records=list(self.records), financial=self.financial)

    async def read_citations(self, project_id):
        self._check("read_citations")
        return normalize_records(self.records)

    async def write_citations(self, project_id, citations):
        self._check("write_citations")
        self.records = [c.model_dump(mode="json") for c in citations]
        self.writes.append(list(citations))

    async def list_tasks(self, project_id):
        self._check("list_tasks")
        return list(self.tasks)

    async def insert_tasks(self, project_id, tasks):
        self._check("insert_tasks")
        self.tasks.extend(tasks)
        self.insert_batches.append(list(tasks))
        return list(tasks)

    async def update_task(self, task):
        self._check("update_task")
        self.tasks = [task if t.id == task.id else t for t in self.tasks]
        return task

    async def list_team(self, project_id):
        self._check("list_team")
        return list(self.team)

    async def list_invitations(self, project_id):
        self._check("list_invitations")
        return list(self.invitations)

    async def list_contracts(self, project_id):
        self._check("list_contracts")
        return list(self.contracts)

    async def member_role(self, project_id, user_id):
        return self.roles.get(user_id)

    async def list_pending_changes(self, project_id):
        self._check("list_pending_changes")
        return list(self.pending.values())

    async def insert_pending_change(self, change):
        self._check("insert_pending_change")
        for existing in self.pending.values():
            if existing.status == PendingStatus.PENDING and existing.item_key == change.item_key:
                raise DuplicatePendingChange(change.item_type, change.item_id)
        self.pending[change.id] = change
        self.feed.emit("pending_budget_changes", "insert", change.project_id, change.model_dump(mode="json"))
        return change

    async def update_pending_change(self, change):
        """Same guard as the SQL store: only a still-pending row moves."""
        self._check("update_pending_change")
        stored = self.pending.get(change.id)
        if stored is None:
            raise PendingChangeNotFound(change.id)
        owner_mismatch = change.status == PendingStatus.CANCELLED and stored.requested_by != change.requested_by
        if stored.status != PendingStatus.PENDING or owner_mismatch:
            raise InvalidTransition(f"Cannot move change {change.id} to {change.status.value}: already {stored.status.value}")
        self.pending[change.id] = change
        self.feed.emit("pending_budget_changes", "update", change.project_id, change.model_dump(mode="json"))
        return change


class FakeWeather:
    """WeatherClient stand-in; ``error`` makes fetch raise."""

    def __init__(self, payload=None, error=None):
        self.payload = payload or {
            "current": {"temp": -12, "feels_like": -18},
            "forecast": [],
            "alerts": [{"type": "frost", "severity": "danger",
                        "message": "Extreme frost - all concrete/masonry work prohibited"}],
        }
        self.error = error
        self.calls = 0

    async def fetch(self, address, days=5):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.payload


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_store():
    """Empty project: no facts, no tasks, default profile with a trade and address."""
    return FakeStore()


@pytest.fixture
def store_factory():
    """Build a FakeStore with custom persisted state."""
    return FakeStore


@pytest.fixture
def fake_weather():
    return FakeWeather()


@pytest.fixture
def weather_factory():
    return FakeWeather


@pytest.fixture
def make_citation():
    """Factory for canonical citations; ``provenance`` defaults to user_input."""
    def _make(cite_type, answer="", value=None, cid=None, metadata=None,
              provenance=Provenance.USER_INPUT):
        return Citation(
            id=cid or f"c-{cite_type.lower()}",
            cite_type=cite_type,
            question_key=cite_type.lower(),
            answer=answer,
            value=value if value is not None else answer,
            metadata=metadata or {},
            provenance=provenance,
        )
    return _make


@pytest.fixture
def make_task():
    def _make(tid, due=None, status="pending", archived=False, assigned_to=None):
        return Task(
            id=tid,
            project_id=PROJECT_ID,
            title=f"Task {tid}",
            status=status,
            due_date=due,
            assigned_to=assigned_to,
            archived_at="2026-01-01T00:00:00+00:00" if archived else None,
        )
    return _make


@pytest.fixture
def make_snapshot():
    """ProjectSnapshot factory over the default profile."""
    def _make(citations=(), tasks=(), team=(), invitations=(), contracts=(),
              financial=None, trade="drywall_installation", address="12 King St, Toronto, ON"):
        return ProjectSnapshot(
            profile=ProjectProfile(
                project_id=PROJECT_ID, name="Kitchen Reno", address=address,
                trade=trade, owner_id=OWNER_ID,
            ),
            citations=tuple(citations),
            tasks=tuple(tasks),
            team=tuple(team),
            invitations=tuple(invitations),
            contracts=tuple(contracts),
            financial=financial or FinancialSummary(),
        )
    return _make


@pytest.fixture
def schedule_window():
    """30-day window used by the phase scheduler tests."""
    return date(2026, 3, 1), date(2026, 3, 31)
