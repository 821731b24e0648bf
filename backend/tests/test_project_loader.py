"""
test_project_loader.py — End-to-end load pipeline over the in-memory store.

Tests cover:
  - Primary load: normalization, synthesis, background flush, weather rule, cache refresh
  - Cache fallback when the primary read fails; SourceUnavailable with no cache
  - Malformed or crashing weather replies never abort a load
  - Phase scheduling on a dated project with no tasks; skipped when the task read fails
  - Change-feed events update task and pending-change mirrors without re-synthesis
  - Task toggle permissions through the session
  - SessionRegistry reuse, explicit reload and shutdown
"""

import httpx
import pytest

from app.models.fact_schema import CiteType, PendingStatus
from app.services.errors import AuthorizationDenied, SourceUnavailable
from app.services.fact_synthesizer import FactSynthesizer
from app.services.local_cache import LocalFactCache
from app.services.project_loader import ProjectLoader, SessionRegistry
from app.services.weather_client import WeatherClient

PROJECT_ID = "p-1"


@pytest.fixture
def cache(tmp_path):
    return LocalFactCache(str(tmp_path / "facts"))


@pytest.fixture
def loader_for(cache, fake_weather):
    def _build(store, **kwargs):
        return ProjectLoader(
            store, cache=cache, synthesizer=FactSynthesizer(store, weather_client=fake_weather), **kwargs,
        )
    return _build


@pytest.fixture
def dated_records(make_citation):
    return [
        make_citation(CiteType.TIMELINE.value, "2026-03-01", metadata={"start_date": "2026-03-01"})
        .model_dump(mode="json"),
        make_citation(CiteType.END_DATE.value, "2026-03-31").model_dump(mode="json"),
    ]


class TestPrimaryLoad:

    @pytest.mark.asyncio
    async def test_empty_project_heals_and_persists(self, fake_store, loader_for, cache):
        loader = loader_for(fake_store)
        session = await loader.load(PROJECT_ID)
        await loader.synthesizer.drain()

        assert session.source == "primary"
        assert session.ledger.has(CiteType.TRADE_SELECTION.value)
        assert session.ledger.has(CiteType.WEATHER_ALERT.value)
        assert [c.cite_type for c in session.synthesized] == [CiteType.TRADE_SELECTION.value]
        assert {r["cite_type"] for r in fake_store.records} == {"TRADE_SELECTION", "WEATHER_ALERT"}
        # no dates, so nothing to schedule
        assert session.scheduled == []
        assert len(cache.load(PROJECT_ID)) == 2

    @pytest.mark.asyncio
    async def test_legacy_records_are_normalized(self, store_factory, loader_for):
        store = store_factory(records=[{"questionKey": "project_name", "answer": "Old Reno"}])
        session = await loader_for(store).load(PROJECT_ID)
        name = session.ledger.find(CiteType.PROJECT_NAME.value)
        assert name.answer == "Old Reno"

    @pytest.mark.asyncio
    async def test_dated_project_without_tasks_gets_schedule(self, store_factory, loader_for, dated_records):
        store = store_factory(records=dated_records)
        session = await loader_for(store).load(PROJECT_ID)
        assert len(session.scheduled) == 6
        assert len(session.active_tasks()) == 6
        assert len(store.insert_batches) == 1

    @pytest.mark.asyncio
    async def test_failed_task_read_skips_scheduling(self, store_factory, loader_for, dated_records):
        store = store_factory(records=dated_records)
        store.fail.add("list_tasks")
        session = await loader_for(store).load(PROJECT_ID)
        assert session.scheduled == []
        assert store.insert_batches == []

    @pytest.mark.asyncio
    async def test_schedule_disabled(self, store_factory, loader_for, dated_records):
        store = store_factory(records=dated_records)
        session = await loader_for(store, schedule_tasks=False).load(PROJECT_ID)
        assert session.scheduled == []


class TestCacheFallback:

    @pytest.mark.asyncio
    async def test_primary_failure_uses_cache(self, fake_store, loader_for, cache, make_citation):
        cache.save(PROJECT_ID, [make_citation(CiteType.PROJECT_NAME.value, "Cached Reno")])
        fake_store.fail.add("read")
        session = await loader_for(fake_store).load(PROJECT_ID)
        assert session.source == "cache"
        assert session.ledger.find(CiteType.PROJECT_NAME.value).answer == "Cached Reno"

    @pytest.mark.asyncio
    async def test_primary_failure_without_cache_raises(self, fake_store, loader_for):
        fake_store.fail.add("read")
        with pytest.raises(SourceUnavailable):
            await loader_for(fake_store).load(PROJECT_ID)


class TestWeatherFailures:

    @pytest.mark.asyncio
    async def test_gateway_html_does_not_abort_load(self, fake_store, cache):
        def handler(request):
            return httpx.Response(200, content=b"<html>gateway</html>", headers={"content-type": "text/html"})

        weather = WeatherClient(api_key="k", base_url="https://weather.test", transport=httpx.MockTransport(handler))
        loader = ProjectLoader(fake_store, cache=cache, synthesizer=FactSynthesizer(fake_store, weather_client=weather))
        session = await loader.load(PROJECT_ID)
        await loader.synthesizer.drain()
        assert not session.ledger.has(CiteType.WEATHER_ALERT.value)
        assert session.ledger.has(CiteType.TRADE_SELECTION.value)

    @pytest.mark.asyncio
    async def test_unexpected_weather_error_is_logged_not_raised(self, fake_store, cache, weather_factory):
        weather = weather_factory(error=RuntimeError("adapter bug"))
        loader = ProjectLoader(fake_store, cache=cache, synthesizer=FactSynthesizer(fake_store, weather_client=weather))
        session = await loader.load(PROJECT_ID)
        await loader.synthesizer.drain()
        assert session.source == "primary"
        assert not session.ledger.has(CiteType.WEATHER_ALERT.value)


class TestSessionFeed:

    @pytest.mark.asyncio
    async def test_task_events_update_mirror(self, fake_store, loader_for, make_task):
        session = await loader_for(fake_store).load(PROJECT_ID)
        task = make_task("t-new", assigned_to="u-worker")
        fake_store.feed.emit("project_tasks", "insert", PROJECT_ID, task.model_dump(mode="json"))
        assert "t-new" in session.tasks

        fake_store.feed.emit("project_tasks", "delete", PROJECT_ID, {"id": "t-new"})
        assert "t-new" not in session.tasks

    @pytest.mark.asyncio
    async def test_feed_does_not_resynthesize(self, fake_store, loader_for, make_task):
        session = await loader_for(fake_store).load(PROJECT_ID)
        before = len(session.ledger)
        fake_store.feed.emit("project_tasks", "insert", PROJECT_ID, make_task("t1").model_dump(mode="json"))
        assert len(session.ledger) == before

    @pytest.mark.asyncio
    async def test_pending_events_reach_coordinator(self, fake_store, loader_for):
        session = await loader_for(fake_store).load(PROJECT_ID)
        sibling = await loader_for(fake_store).load(PROJECT_ID)
        change = await sibling.coordinator.create(
            "u-foreman", "foreman", "paint", "Paint (gal)", new_quantity=6, original_quantity=4,
        )
        assert session.coordinator.get(change.id).status == PendingStatus.PENDING
        assert session.coordinator.take_new_arrivals("u-owner", "owner").count == 1

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self, fake_store, loader_for, make_task):
        session = await loader_for(fake_store).load(PROJECT_ID)
        session.close()
        fake_store.feed.emit("project_tasks", "insert", PROJECT_ID, make_task("t1").model_dump(mode="json"))
        assert "t1" not in session.tasks


class TestTaskToggle:

    @pytest.mark.asyncio
    async def test_worker_toggles_own_task(self, store_factory, loader_for, make_task):
        store = store_factory(tasks=[make_task("t1", assigned_to="u-worker"), make_task("t2")])
        session = await loader_for(store).load(PROJECT_ID)
        done = await session.toggle_task("t1", "u-worker", "worker")
        assert done.status == "completed"
        again = await session.toggle_task("t1", "u-worker", "worker")
        assert again.status == "pending"

        with pytest.raises(AuthorizationDenied):
            await session.toggle_task("t2", "u-worker", "worker")
        with pytest.raises(KeyError):
            await session.toggle_task("missing", "u-owner", "owner")


class TestRegistry:

    @pytest.mark.asyncio
    async def test_get_reuses_and_reload_replaces(self, fake_store, loader_for):
        registry = SessionRegistry(loader_for(fake_store))
        first = await registry.get(PROJECT_ID)
        assert await registry.get(PROJECT_ID) is first
        reloaded = await registry.reload(PROJECT_ID)
        assert reloaded is not first
        await registry.close_all()
