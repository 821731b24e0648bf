"""
project_loader.py — Project load pipeline and per-session state.

Load order:
  1. Primary store read; the local cache is used when the read throws or
     returns no fact records
  2. Normalize records into citations and build the ledger
  3. Sibling reads (tasks, team, invitations, contracts) gathered
     concurrently; each failure degrades to an empty list
  4. Synthesis over the immutable snapshot, memory updated immediately,
     persistence scheduled in the background
  5. Live-weather rule
  6. Phase scheduler when the project still has zero non-archived tasks
  7. Cache refresh

Synthesis runs once per explicit load. Change-feed events received by a
session only update its in-memory mirrors and never re-trigger synthesis.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from app.models.fact_schema import (
    ChangeEvent, Citation, FinancialSummary, ProjectProfile, ProjectSnapshot, Task,
)
from app.services.access_tiers import (
    can_edit, can_toggle_task, require, tier_badge, tier_of, visible_citations,
)
from app.services.errors import SourceUnavailable
from app.services.fact_ledger import EditSession, FactLedger
from app.services.fact_normalizer import normalize_records
from app.services.fact_synthesizer import FactSynthesizer
from app.services.local_cache import LocalFactCache
from app.services.pending_changes import PendingChangeCoordinator
from app.services.phase_scheduler import maybe_schedule
from app.services.project_store import ChangeFeed, StoreRead

logger = logging.getLogger("buildunion-loader")

TASK_TABLE = "project_tasks"
CHAT_TABLE = "chat_messages"

_SIBLINGS = ("tasks", "team", "invitations", "contracts")


@dataclass
class ProjectSession:
    """Everything one open project dashboard holds in memory."""
    project_id: str
    store: Any
    ledger: FactLedger
    snapshot: ProjectSnapshot
    coordinator: PendingChangeCoordinator
    source: str = "primary"
    tasks: Dict[str, Task] = field(default_factory=dict)
    chat: List[Dict[str, Any]] = field(default_factory=list)
    synthesized: List[Citation] = field(default_factory=list)
    scheduled: List[Task] = field(default_factory=list)
    _unsubscribe: Optional[Callable[[], None]] = None

    # -- change feed ---------------------------------------------------------

    def handle_event(self, event: ChangeEvent) -> None:
        """Synchronous feed handler: mirror updates only."""
        if event.project_id != self.project_id:
            return
        if event.table == TASK_TABLE:
            task_id = event.record.get("id")
            if not task_id:
                return
            if event.event_type == "delete":
                self.tasks.pop(task_id, None)
            else:
                self.tasks[task_id] = Task.model_validate(event.record)
        elif event.table == CHAT_TABLE:
            if event.event_type == "insert":
                self.chat.append(event.record)
        else:
            self.coordinator.apply_event(event)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # -- reads ---------------------------------------------------------------

    def active_tasks(self) -> List[Task]:
        return [t for t in self.tasks.values() if not t.is_archived]

    def facts(self, role: Optional[str], keys: Optional[Iterable[str]] = None) -> List[Citation]:
        return visible_citations(self.ledger.all(), role, keys)

    def badge(self, role: Optional[str]) -> Dict[str, Any]:
        return tier_badge(tier_of(role))

    # -- commands ------------------------------------------------------------

    def edit_session(self, role: Optional[str], edit_mode: bool = False) -> EditSession:
        return EditSession(self.ledger, self.store, can_edit(role, edit_mode))

    async def toggle_task(self, task_id: str, actor_id: str, role: Optional[str]) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        require(can_toggle_task(role, actor_id, task), "toggle this task", role)
        status = "pending" if task.status == "completed" else "completed"
        updated = await self.store.update_task(task.model_copy(update={"status": status}))
        self.tasks[updated.id] = updated
        return updated


class ProjectLoader:
    def __init__(
        self,
        store,
        cache: Optional[LocalFactCache] = None,
        synthesizer: Optional[FactSynthesizer] = None,
        feed: Optional[ChangeFeed] = None,
        schedule_tasks: bool = True,
    ):
        self.store = store
        self.cache = cache or LocalFactCache()
        self.synthesizer = synthesizer or FactSynthesizer(store)
        self.feed = feed if feed is not None else getattr(store, "feed", None)
        self.schedule_tasks = schedule_tasks

    async def _primary(self, project_id: str) -> Optional[StoreRead]:
        try:
            return await self.store.read(project_id)
        except SourceUnavailable as e:
            logger.warning(f"Primary read failed, trying cache: {e}", extra={"project_id": project_id})
            return None

    async def _siblings(self, project_id: str) -> Dict[str, Optional[list]]:
        results = await asyncio.gather(
            self.store.list_tasks(project_id),
            self.store.list_team(project_id),
            self.store.list_invitations(project_id),
            self.store.list_contracts(project_id),
            return_exceptions=True,
        )
        out: Dict[str, Optional[list]] = {}
        for name, result in zip(_SIBLINGS, results):
            if isinstance(result, BaseException):
                logger.warning(f"Sibling read '{name}' failed: {result}", extra={"project_id": project_id})
                out[name] = None
            else:
                out[name] = list(result)
        return out

    async def load(self, project_id: str) -> ProjectSession:
        start = time.perf_counter()
        read = await self._primary(project_id)
        records = list(read.records) if read is not None else []
        source = "primary"
        if not records:
            cached = self.cache.load(project_id)
            if cached:
                records = cached
                source = "cache"
            elif read is None:
                raise SourceUnavailable("Primary read failed and no cached facts", project_id)

        profile = read.profile if read is not None else ProjectProfile(project_id=project_id)
        ledger = FactLedger(project_id, normalize_records(records))
        siblings = await self._siblings(project_id)
        snapshot = ProjectSnapshot(
            profile=profile,
            citations=tuple(ledger.all()),
            tasks=tuple(siblings["tasks"] or ()),
            team=tuple(siblings["team"] or ()),
            invitations=tuple(siblings["invitations"] or ()),
            contracts=tuple(siblings["contracts"] or ()),
            financial=read.financial if read is not None else FinancialSummary(),
        )

        result = self.synthesizer.apply(ledger, snapshot)
        self.synthesizer.schedule_flush(project_id, result.writes, ledger)
        try:
            await self.synthesizer.synthesize_weather_alert(ledger, profile.address)
        except Exception as e:
            logger.exception(f"Weather alert rule failed: {e}", extra={"project_id": project_id})

        scheduled: List[Task] = []
        # An unreadable task list must not be mistaken for an empty one
        if self.schedule_tasks and siblings["tasks"] is not None:
            scheduled = await maybe_schedule(result.snapshot, self.store, ledger.all())

        coordinator = PendingChangeCoordinator(project_id, self.store, ledger)
        try:
            await coordinator.load()
        except SourceUnavailable as e:
            logger.warning(f"Pending changes unavailable: {e}", extra={"project_id": project_id})

        self.cache.save(project_id, ledger.all())

        session = ProjectSession(
            project_id=project_id,
            store=self.store,
            ledger=ledger,
            snapshot=result.snapshot,
            coordinator=coordinator,
            source=source,
            tasks={t.id: t for t in list(siblings["tasks"] or []) + scheduled},
            synthesized=result.synthesized,
            scheduled=scheduled,
        )
        if self.feed is not None:
            session._unsubscribe = self.feed.subscribe(project_id, session.handle_event)

        logger.info(
            f"Project loaded from {source}: {len(ledger)} fact(s), "
            f"{len(result.synthesized)} synthesized, {len(scheduled)} task(s) scheduled",
            extra={"project_id": project_id, "duration_ms": round((time.perf_counter() - start) * 1000, 2)},
        )
        return session


class SessionRegistry:
    """Open project sessions keyed by project id; loads on first use."""

    def __init__(self, loader: ProjectLoader):
        self.loader = loader
        self._sessions: Dict[str, ProjectSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def get(self, project_id: str) -> ProjectSession:
        session = self._sessions.get(project_id)
        if session is not None:
            return session
        lock = self._locks.setdefault(project_id, asyncio.Lock())
        async with lock:
            if project_id not in self._sessions:
                self._sessions[project_id] = await self.loader.load(project_id)
        return self._sessions[project_id]

    async def reload(self, project_id: str) -> ProjectSession:
        """Explicit load: the only path that re-runs synthesis."""
        old = self._sessions.pop(project_id, None)
        if old is not None:
            old.close()
        return await self.get(project_id)

    async def close_all(self) -> None:
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()
        await self.loader.synthesizer.drain()
