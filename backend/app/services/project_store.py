"""
project_store.py — Primary store adapter and in-process change feed.

The fact ledger is persisted as one JSON collection per project
(``project_summaries.verified_facts``). Every write is a whole-collection
read-modify-write; ``write_citations`` takes a row lock (SELECT ... FOR
UPDATE) for the duration of the write so two flushes cannot interleave
inside the database, although a caller holding a stale read can still
overwrite a concurrent addition.

All database failures surface as SourceUnavailable.
"""
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.models.fact_schema import (
    ChangeEvent, Citation, ContractRecord, FinancialSummary, Invitation, PendingChange, PendingStatus,
    ProjectProfile, Task, TeamMember,
)
from app.services.errors import (
    DuplicatePendingChange, FactValidationError, InvalidTransition, PendingChangeNotFound, SourceUnavailable,
)
from app.services.fact_normalizer import normalize_records

logger = logging.getLogger("buildunion-store")

ChangeHandler = Callable[[ChangeEvent], None]


@dataclass
class StoreRead:
    """One primary read: profile, raw fact records and the financial summary."""
    profile: ProjectProfile
    records: List[Any] = field(default_factory=list)
    financial: FinancialSummary = field(default_factory=FinancialSummary)


class ProjectStore(Protocol):
    async def read(self, project_id: str) -> StoreRead: ...
    async def read_citations(self, project_id: str) -> List[Citation]: ...
    async def write_citations(self, project_id: str, citations: List[Citation]) -> None: ...
    async def list_tasks(self, project_id: str) -> List[Task]: ...
    async def insert_tasks(self, project_id: str, tasks: List[Task]) -> List[Task]: ...
    async def update_task(self, task: Task) -> Task: ...
    async def list_team(self, project_id: str) -> List[TeamMember]: ...
    async def list_invitations(self, project_id: str) -> List[Invitation]: ...
    async def list_contracts(self, project_id: str) -> List[ContractRecord]: ...
    async def list_pending_changes(self, project_id: str) -> List[PendingChange]: ...
    async def insert_pending_change(self, change: PendingChange) -> PendingChange: ...
    async def update_pending_change(self, change: PendingChange) -> PendingChange: ...
    async def member_role(self, project_id: str, user_id: str) -> Optional[str]: ...


# ---------------------------------------------------------------------------
# Change feed
# ---------------------------------------------------------------------------

class ChangeFeed:
    """
    Push subscription primitive. Handlers are synchronous, run on the event
    loop and must only update in-memory state.
    """

    def __init__(self):
        self._handlers: Dict[str, List[ChangeHandler]] = defaultdict(list)

    def subscribe(self, project_id: str, handler: ChangeHandler) -> Callable[[], None]:
        self._handlers[project_id].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers.get(project_id, []):
                self._handlers[project_id].remove(handler)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        for handler in list(self._handlers.get(event.project_id, [])):
            try:
                handler(event)
            except Exception as e:
                logger.exception(f"Change handler failed for {event.table}/{event.event_type}: {e}",
                                 extra={"project_id": event.project_id})

    def emit(self, table: str, event_type: str, project_id: str, record: Dict[str, Any]) -> ChangeEvent:
        event = ChangeEvent(
            id=str(uuid.uuid4()), table=table, event_type=event_type,
            project_id=project_id, record=record,
        )
        self.publish(event)
        return event


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------

def _num(value) -> Optional[float]:
    if value is None:
        return None
    return float(value) if isinstance(value, Decimal) else value


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, datetime) else str(value)


def _ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


PENDING_ITEM_INDEX = "uq_pending_change_item"


def is_pending_item_conflict(exc: IntegrityError) -> bool:
    """True when the violated constraint is the one-open-change-per-item index."""
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return name == PENDING_ITEM_INDEX
    return PENDING_ITEM_INDEX in str(orig)


def _task_from_row(row) -> Task:
    return Task(
        id=str(row.id),
        project_id=str(row.project_id),
        title=row.title,
        description=row.description or "",
        status=row.status,
        priority=row.priority,
        phase=row.phase,
        assigned_to=row.assigned_to,
        due_date=row.due_date,
        created_at=_iso(row.created_at) or "",
        archived_at=_iso(row.archived_at),
        checklist=list(row.checklist or []),
    )


def _change_from_row(row) -> PendingChange:
    return PendingChange(
        id=str(row.id),
        project_id=str(row.project_id),
        item_type=row.item_type,
        item_id=row.item_id,
        item_name=row.item_name,
        original_quantity=_num(row.original_quantity),
        new_quantity=_num(row.new_quantity),
        original_unit_price=_num(row.original_unit_price),
        new_unit_price=_num(row.new_unit_price),
        original_total=_num(row.original_total),
        new_total=_num(row.new_total),
        change_reason=row.change_reason,
        review_notes=row.review_notes,
        requested_by=str(row.requested_by),
        status=row.status,
        created_at=_iso(row.created_at) or "",
        resolved_at=_iso(row.resolved_at),
        resolved_by=row.resolved_by,
    )


# ---------------------------------------------------------------------------
# SQLAlchemy adapter
# ---------------------------------------------------------------------------

class SqlProjectStore:
    """ProjectStore backed by the async SQLAlchemy session factory."""

    def __init__(self, session_factory=None, feed: Optional[ChangeFeed] = None):
        if session_factory is None:
            from app.db import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.feed = feed or ChangeFeed()

    def _unavailable(self, op: str, project_id: Optional[str], e: Exception) -> SourceUnavailable:
        logger.error(f"Store {op} failed: {e}", extra={"project_id": project_id})
        return SourceUnavailable(f"{op} failed: {e}", project_id)

    # -- facts ---------------------------------------------------------------

    async def read(self, project_id: str) -> StoreRead:
        from app.models.orm_models import Project, ProjectSummary
        start = time.perf_counter()
        try:
            async with self.session_factory() as session:
                project = await session.get(Project, project_id)
                if project is None:
                    raise SourceUnavailable(f"Project {project_id} not found", project_id)
                summary = (await session.execute(
                    select(ProjectSummary).where(ProjectSummary.project_id == project_id)
                )).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._unavailable("read", project_id, e) from e

        profile = ProjectProfile(
            project_id=str(project.id),
            name=project.name,
            address=project.address,
            trade=project.trade or (summary.trade if summary else None),
            owner_id=str(project.user_id),
        )
        financial = FinancialSummary()
        records: List[Any] = []
        if summary is not None:
            records = list(summary.verified_facts or [])
            financial = FinancialSummary(
                total_cost=_num(summary.total_cost),
                material_cost=_num(summary.material_cost),
                labor_cost=_num(summary.labor_cost),
                start_date=summary.project_start_date,
                end_date=summary.project_end_date,
                trade=summary.trade,
                site_condition=summary.site_condition,
            )
        logger.debug(
            f"Primary read: {len(records)} fact record(s)",
            extra={"project_id": project_id, "duration_ms": round((time.perf_counter() - start) * 1000, 2)},
        )
        return StoreRead(profile=profile, records=records, financial=financial)

    async def read_citations(self, project_id: str) -> List[Citation]:
        from app.models.orm_models import ProjectSummary
        try:
            async with self.session_factory() as session:
                facts = (await session.execute(
                    select(ProjectSummary.verified_facts).where(ProjectSummary.project_id == project_id)
                )).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._unavailable("read_citations", project_id, e) from e
        return normalize_records(facts or [])

    async def write_citations(self, project_id: str, citations: List[Citation]) -> None:
        from app.models.orm_models import ProjectSummary
        payload = [c.model_dump(mode="json") for c in citations]
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    summary = (await session.execute(
                        select(ProjectSummary)
                        .where(ProjectSummary.project_id == project_id)
                        .with_for_update()
                    )).scalar_one_or_none()
                    if summary is None:
                        session.add(ProjectSummary(project_id=project_id, verified_facts=payload))
                    else:
                        summary.verified_facts = payload
        except SQLAlchemyError as e:
            raise self._unavailable("write_citations", project_id, e) from e
        logger.debug(f"Wrote {len(payload)} citation(s)", extra={"project_id": project_id})

    # -- tasks ---------------------------------------------------------------

    async def list_tasks(self, project_id: str) -> List[Task]:
        from app.models.orm_models import ProjectTask
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(
                    select(ProjectTask)
                    .where(ProjectTask.project_id == project_id)
                    .order_by(ProjectTask.due_date)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise self._unavailable("list_tasks", project_id, e) from e
        return [_task_from_row(r) for r in rows]

    async def insert_tasks(self, project_id: str, tasks: List[Task]) -> List[Task]:
        """Single batch insert; all or nothing."""
        from app.models.orm_models import ProjectTask
        rows = [
            ProjectTask(
                id=t.id, project_id=project_id, title=t.title, description=t.description,
                status=t.status, priority=t.priority, phase=t.phase, assigned_to=t.assigned_to,
                assigned_by=t.assigned_to, due_date=t.due_date, checklist=t.checklist,
            )
            for t in tasks
        ]
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add_all(rows)
        except SQLAlchemyError as e:
            raise self._unavailable("insert_tasks", project_id, e) from e
        for task in tasks:
            self.feed.emit("project_tasks", "insert", project_id, task.model_dump(mode="json"))
        return list(tasks)

    async def update_task(self, task: Task) -> Task:
        from app.models.orm_models import ProjectTask
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await session.get(ProjectTask, task.id)
                    if row is None:
                        raise SourceUnavailable(f"Task {task.id} not found", task.project_id)
                    row.status = task.status
                    row.priority = task.priority
                    row.assigned_to = task.assigned_to
                    row.due_date = task.due_date
                    row.checklist = task.checklist
                    row.archived_at = _ts(task.archived_at)
        except SQLAlchemyError as e:
            raise self._unavailable("update_task", task.project_id, e) from e
        if task.project_id:
            self.feed.emit("project_tasks", "update", task.project_id, task.model_dump(mode="json"))
        return task

    # -- team / contracts ----------------------------------------------------

    async def list_team(self, project_id: str) -> List[TeamMember]:
        from app.models.orm_models import ProjectMember
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(
                    select(ProjectMember).where(ProjectMember.project_id == project_id)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise self._unavailable("list_team", project_id, e) from e
        return [
            TeamMember(id=str(r.id), user_id=str(r.user_id), role=r.role,
                       name=r.full_name or "Team Member", email=r.email)
            for r in rows
        ]

    async def list_invitations(self, project_id: str) -> List[Invitation]:
        from app.models.orm_models import TeamInvitation
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(
                    select(TeamInvitation).where(TeamInvitation.project_id == project_id)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise self._unavailable("list_invitations", project_id, e) from e
        return [Invitation(id=str(r.id), email=r.email, role=r.role, status=r.status) for r in rows]

    async def list_contracts(self, project_id: str) -> List[ContractRecord]:
        from app.models.orm_models import Contract
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(
                    select(Contract).where(Contract.project_id == project_id).order_by(Contract.created_at)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise self._unavailable("list_contracts", project_id, e) from e
        return [
            ContractRecord(
                id=str(r.id), contract_number=r.contract_number, client_name=r.client_name,
                total_amount=_num(r.total_amount), status=r.status, created_at=_iso(r.created_at),
            )
            for r in rows
        ]

    async def member_role(self, project_id: str, user_id: str) -> Optional[str]:
        """'owner' for the project creator, else the membership role, else None."""
        from app.models.orm_models import Project, ProjectMember
        try:
            async with self.session_factory() as session:
                project = await session.get(Project, project_id)
                if project is None:
                    return None
                if str(project.user_id) == str(user_id):
                    return "owner"
                role = (await session.execute(
                    select(ProjectMember.role).where(
                        ProjectMember.project_id == project_id,
                        ProjectMember.user_id == user_id,
                    )
                )).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._unavailable("member_role", project_id, e) from e
        return role

    # -- pending changes -----------------------------------------------------

    async def list_pending_changes(self, project_id: str) -> List[PendingChange]:
        from app.models.orm_models import PendingBudgetChange
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(
                    select(PendingBudgetChange)
                    .where(PendingBudgetChange.project_id == project_id)
                    .order_by(PendingBudgetChange.created_at.desc())
                )).scalars().all()
        except SQLAlchemyError as e:
            raise self._unavailable("list_pending_changes", project_id, e) from e
        return [_change_from_row(r) for r in rows]

    async def insert_pending_change(self, change: PendingChange) -> PendingChange:
        from app.models.orm_models import PendingBudgetChange
        data = change.model_dump(exclude={"created_at", "resolved_at"})
        data["status"] = change.status.value
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(PendingBudgetChange(**data))
        except IntegrityError as e:
            if is_pending_item_conflict(e):
                raise DuplicatePendingChange(change.item_type, change.item_id) from e
            logger.error(f"Pending change rejected by store: {e.orig}", extra={"project_id": change.project_id})
            raise FactValidationError(f"pending change rejected by store: {e.orig}") from e
        except SQLAlchemyError as e:
            raise self._unavailable("insert_pending_change", change.project_id, e) from e
        self.feed.emit("pending_budget_changes", "insert", change.project_id, change.model_dump(mode="json"))
        return change

    async def update_pending_change(self, change: PendingChange) -> PendingChange:
        """
        Resolve an open change. The UPDATE only matches rows still pending
        (and, for a cancel, still owned by the requester), so a stale session
        in another process cannot move a change out of a terminal state.
        """
        from app.models.orm_models import PendingBudgetChange
        table = PendingBudgetChange
        stmt = (
            update(table)
            .where(table.id == change.id, table.status == PendingStatus.PENDING.value)
            .values(
                status=change.status.value,
                review_notes=change.review_notes,
                resolved_by=change.resolved_by,
                resolved_at=_ts(change.resolved_at),
            )
        )
        if change.status == PendingStatus.CANCELLED:
            stmt = stmt.where(table.requested_by == change.requested_by)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    matched = (await session.execute(stmt)).rowcount
                    if not matched:
                        current = (await session.execute(
                            select(table.status).where(table.id == change.id)
                        )).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._unavailable("update_pending_change", change.project_id, e) from e
        if not matched:
            if current is None:
                raise PendingChangeNotFound(change.id)
            raise InvalidTransition(
                f"Cannot move change {change.id} to {change.status.value}: already {current}"
            )
        self.feed.emit("pending_budget_changes", "update", change.project_id, change.model_dump(mode="json"))
        return change
