"""
phase_scheduler.py — Initial task set for a project that has none.

Phase layout:
  - Demolition (only when the site condition calls for it), Preparation,
    Installation, Finishing & QC with relative weights 15/25/45/15
  - Weights renormalized over the active phases
  - total_days = max(1, round(end − start)); each phase ≥ 1 day
  - Phases laid out back-to-back with a running cursor
  - Two tasks per phase: the phase work task (critical, high, then medium by
    position among the active phases) and its verification node,
    both due at the phase end date

The batch is inserted once. If the insert fails the load gets zero tasks;
there is no partial insert and no retry.
"""
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.config import (
    DEFAULT_WORK_PRIORITY, DEMOLITION_SITE_CONDITION, PHASE_DEFINITIONS, VERIFICATION_PRIORITY,
    WORK_PRIORITY_BY_POSITION,
)
from app.models.fact_schema import Citation, CiteType, FinancialSummary, ProjectSnapshot, Task
from app.services.errors import SourceUnavailable

logger = logging.getLogger("buildunion-scheduler")


@dataclass(frozen=True)
class PhaseWindow:
    phase_id: str
    name: str
    start: date
    end: date
    days: int
    weight_share: float


def _parse_date(raw: Any) -> Optional[date]:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str) and len(raw) >= 10:
        try:
            return date.fromisoformat(raw[:10])
        except ValueError:
            return None
    return None


def _find(citations: Iterable[Citation], cite_type: CiteType) -> Optional[Citation]:
    for citation in citations:
        if citation.cite_type == cite_type.value:
            return citation
    return None


def resolve_project_dates(
    citations: Iterable[Citation], financial: Optional[FinancialSummary] = None
) -> Tuple[Optional[date], Optional[date]]:
    """
    Start from TIMELINE (metadata.start_date, then value), end from END_DATE
    (value, then metadata.end_date); each falls back to the financial summary.
    """
    citations = list(citations)
    start = end = None
    timeline = _find(citations, CiteType.TIMELINE)
    if timeline is not None:
        start = _parse_date(timeline.metadata.get("start_date")) or _parse_date(timeline.value)
    end_cite = _find(citations, CiteType.END_DATE)
    if end_cite is not None:
        end = _parse_date(end_cite.value) or _parse_date(end_cite.metadata.get("end_date"))
    if financial is not None:
        start = start or financial.start_date
        end = end or financial.end_date
    return start, end


def has_demolition(citations: Iterable[Citation], financial: Optional[FinancialSummary] = None) -> bool:
    """SITE_CONDITION citation first, then the summary column."""
    site = _find(citations, CiteType.SITE_CONDITION)
    if site is None:
        raw = financial.site_condition if financial is not None else None
    else:
        raw = site.value if isinstance(site.value, str) else site.answer
    if not raw:
        return False
    return str(raw).strip().lower() == DEMOLITION_SITE_CONDITION


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def active_phases(with_demolition: bool) -> List[Dict[str, Any]]:
    if with_demolition:
        return list(PHASE_DEFINITIONS)
    return [p for p in PHASE_DEFINITIONS if p["id"] != "demolition"]


def allocate_phases(start: date, end: date, with_demolition: bool) -> List[PhaseWindow]:
    phases = active_phases(with_demolition)
    total_weight = sum(p["weight"] for p in phases)
    total_days = max(1, (end - start).days)

    windows: List[PhaseWindow] = []
    cursor = start
    for phase in phases:
        share = phase["weight"] / total_weight
        days = max(1, _round_half_up(share * total_days))
        phase_end = cursor + timedelta(days=days)
        windows.append(PhaseWindow(
            phase_id=phase["id"],
            name=phase["name"],
            start=cursor,
            end=phase_end,
            days=days,
            weight_share=share,
        ))
        cursor = phase_end
    return windows


def work_priority(position: int) -> str:
    """Priority of a phase's work task from its position among the active phases."""
    if position < len(WORK_PRIORITY_BY_POSITION):
        return WORK_PRIORITY_BY_POSITION[position]
    return DEFAULT_WORK_PRIORITY


def plan_phase_tasks(
    project_id: str,
    start: date,
    end: date,
    with_demolition: bool,
    created_by: Optional[str] = None,
) -> List[Task]:
    """Pure: build the two-tasks-per-phase batch."""
    definitions = {p["id"]: p for p in PHASE_DEFINITIONS}
    tasks: List[Task] = []
    for position, window in enumerate(allocate_phases(start, end, with_demolition)):
        phase = definitions[window.phase_id]
        tasks.append(Task(
            id=str(uuid.uuid4()),
            project_id=project_id,
            title=f"{window.name} Work",
            description=f"{window.name} phase ({window.days} days, {window.start.isoformat()} to {window.end.isoformat()})",
            priority=work_priority(position),
            phase=window.phase_id,
            assigned_to=created_by,
            due_date=window.end,
        ))
        tasks.append(Task(
            id=str(uuid.uuid4()),
            project_id=project_id,
            title=f"Verification: {phase['verification']}",
            description=f"Verification node closing the {window.name} phase",
            priority=VERIFICATION_PRIORITY,
            phase=window.phase_id,
            assigned_to=created_by,
            due_date=window.end,
            checklist=[{"label": str(phase["verification"]), "done": False}],
        ))
    return tasks


async def maybe_schedule(
    snapshot: ProjectSnapshot,
    store,
    citations: Optional[Iterable[Citation]] = None,
) -> List[Task]:
    """
    Generate and insert the initial task set when the project has zero
    non-archived tasks and both dates resolve. Returns the inserted tasks,
    or [] when the scheduler does not fire or the insert fails.
    """
    if snapshot.active_tasks:
        return []
    facts = list(citations) if citations is not None else list(snapshot.citations)
    start, end = resolve_project_dates(facts, snapshot.financial)
    if start is None or end is None:
        logger.debug("Phase scheduler skipped: dates unresolved", extra={"project_id": snapshot.project_id})
        return []

    batch = plan_phase_tasks(
        snapshot.project_id, start, end, has_demolition(facts, snapshot.financial), snapshot.profile.owner_id,
    )
    try:
        inserted = await store.insert_tasks(snapshot.project_id, batch)
    except SourceUnavailable as e:
        logger.error(f"Phase task insert failed, no tasks generated: {e}", extra={"project_id": snapshot.project_id})
        return []
    logger.info(
        f"Generated {len(inserted)} phase tasks ({start.isoformat()} → {end.isoformat()})",
        extra={"project_id": snapshot.project_id},
    )
    return list(inserted)
