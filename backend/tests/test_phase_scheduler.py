"""
test_phase_scheduler.py — Phase allocation and the initial task batch.

Tests cover:
  - Date resolution: TIMELINE / END_DATE citations, then the financial summary
  - Demolition detection from SITE_CONDITION, then the summary column
  - Allocation: renormalized weights, half-up rounding, back-to-back windows
  - Two tasks per phase, verification node priority critical
  - Work-task priority by position among active phases (critical, high, then medium)
  - Fires only with zero non-archived tasks and both dates resolved
  - Insert failure yields no tasks
"""

from datetime import date

import pytest

from app.models.fact_schema import CiteType, FinancialSummary
from app.services.phase_scheduler import (
    allocate_phases, has_demolition, maybe_schedule, plan_phase_tasks, resolve_project_dates,
)


@pytest.fixture
def dated_citations(make_citation):
    return [
        make_citation(CiteType.TIMELINE.value, "2026-03-01", metadata={"start_date": "2026-03-01"}),
        make_citation(CiteType.END_DATE.value, "2026-03-31"),
    ]


class TestDateResolution:

    def test_from_citations(self, dated_citations):
        assert resolve_project_dates(dated_citations) == (date(2026, 3, 1), date(2026, 3, 31))

    def test_falls_back_to_financial_summary(self):
        financial = FinancialSummary(start_date="2026-05-01T00:00:00", end_date="2026-06-01")
        assert resolve_project_dates([], financial) == (date(2026, 5, 1), date(2026, 6, 1))

    def test_unparseable_value_is_unresolved(self, make_citation):
        start, end = resolve_project_dates([make_citation(CiteType.TIMELINE.value, "soon")])
        assert start is None and end is None


class TestDemolition:

    def test_site_condition_citation(self, make_citation):
        assert has_demolition([make_citation(CiteType.SITE_CONDITION.value, "Demolition")])
        assert not has_demolition([make_citation(CiteType.SITE_CONDITION.value, "clear_site")])

    def test_summary_column_fallback(self):
        assert has_demolition([], FinancialSummary(site_condition="demolition"))
        assert not has_demolition([], FinancialSummary())


class TestAllocation:

    def test_thirty_days_without_demolition(self, schedule_window):
        start, end = schedule_window
        windows = allocate_phases(start, end, with_demolition=False)
        assert [w.phase_id for w in windows] == ["preparation", "installation", "finishing"]
        assert [w.days for w in windows] == [9, 16, 5]
        assert windows[-1].end == end

    def test_windows_are_contiguous(self, schedule_window):
        start, end = schedule_window
        windows = allocate_phases(start, end, with_demolition=True)
        assert windows[0].start == start
        for prev, nxt in zip(windows, windows[1:]):
            assert nxt.start == prev.end
        assert abs(sum(w.weight_share for w in windows) - 1.0) < 1e-9

    def test_same_day_window_still_gives_each_phase_a_day(self):
        day = date(2026, 3, 1)
        windows = allocate_phases(day, day, with_demolition=True)
        assert all(w.days >= 1 for w in windows)


class TestPlan:

    def test_two_tasks_per_phase(self, schedule_window):
        start, end = schedule_window
        assert len(plan_phase_tasks("p-1", start, end, with_demolition=False)) == 6
        assert len(plan_phase_tasks("p-1", start, end, with_demolition=True)) == 8

    def test_verification_nodes_are_critical(self, schedule_window):
        start, end = schedule_window
        tasks = plan_phase_tasks("p-1", start, end, with_demolition=False, created_by="u-owner")
        verification = [t for t in tasks if t.title.startswith("Verification:")]
        assert len(verification) == 3
        assert all(t.priority == "critical" for t in verification)
        assert all(t.checklist for t in verification)
        assert all(t.assigned_to == "u-owner" for t in tasks)

    @pytest.mark.parametrize("with_demolition,expected", [
        (False, {"preparation": "critical", "installation": "high", "finishing": "medium"}),
        (True, {"demolition": "critical", "preparation": "high", "installation": "medium", "finishing": "medium"}),
    ])
    def test_work_priority_follows_phase_position(self, schedule_window, with_demolition, expected):
        start, end = schedule_window
        tasks = plan_phase_tasks("p-1", start, end, with_demolition=with_demolition)
        work = {t.phase: t.priority for t in tasks if t.title.endswith(" Work")}
        assert work == expected

    def test_pair_shares_phase_end_date(self, schedule_window):
        start, end = schedule_window
        tasks = plan_phase_tasks("p-1", start, end, with_demolition=False)
        for work, check in zip(tasks[::2], tasks[1::2]):
            assert work.phase == check.phase
            assert work.due_date == check.due_date


class TestMaybeSchedule:

    @pytest.mark.asyncio
    async def test_inserts_batch_once(self, fake_store, make_snapshot, dated_citations):
        inserted = await maybe_schedule(make_snapshot(citations=dated_citations), fake_store)
        assert len(inserted) == 6
        assert len(fake_store.insert_batches) == 1
        assert inserted[-1].due_date == date(2026, 3, 31)

    @pytest.mark.asyncio
    async def test_demolition_adds_phase(self, fake_store, make_snapshot, dated_citations, make_citation):
        facts = dated_citations + [make_citation(CiteType.SITE_CONDITION.value, "demolition")]
        inserted = await maybe_schedule(make_snapshot(citations=facts), fake_store)
        assert len(inserted) == 8
        assert inserted[0].phase == "demolition"
        assert inserted[0].priority == "critical"

    @pytest.mark.asyncio
    async def test_existing_active_task_blocks(self, fake_store, make_snapshot, make_task, dated_citations):
        snapshot = make_snapshot(citations=dated_citations, tasks=[make_task("t1")])
        assert await maybe_schedule(snapshot, fake_store) == []
        assert fake_store.insert_batches == []

    @pytest.mark.asyncio
    async def test_archived_tasks_do_not_block(self, fake_store, make_snapshot, make_task, dated_citations):
        snapshot = make_snapshot(citations=dated_citations, tasks=[make_task("t1", archived=True)])
        assert len(await maybe_schedule(snapshot, fake_store)) == 6

    @pytest.mark.asyncio
    async def test_missing_end_date_does_not_fire(self, fake_store, make_snapshot, dated_citations):
        assert await maybe_schedule(make_snapshot(citations=dated_citations[:1]), fake_store) == []

    @pytest.mark.asyncio
    async def test_insert_failure_yields_no_tasks(self, fake_store, make_snapshot, dated_citations):
        fake_store.fail.add("insert_tasks")
        assert await maybe_schedule(make_snapshot(citations=dated_citations), fake_store) == []
        assert fake_store.tasks == []
