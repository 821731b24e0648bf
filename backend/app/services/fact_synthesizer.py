"""
fact_synthesizer.py — Deterministic gap healing for the fact ledger.

Covers:
  - A declarative rule table (cite_type, deriver) evaluated uniformly
  - Pure evaluation: ``synthesize(snapshot)`` returns a new snapshot plus the
    pending writes, never touching I/O
  - Per-rule persistence with write-time absence re-verification
  - The live-weather rule, which needs an async fetch and re-checks the
    ledger immediately before it writes

Every rule only ever fills an empty slot. A user_input citation therefore
wins over anything derivable, and a second run over the same snapshot is a
no-op for every satisfied rule.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from app.models.fact_schema import (
    Citation, CiteType, ProjectSnapshot, Provenance, MULTI_INSTANCE_KEYS,
)
from app.services.errors import ExternalServiceDegraded, SourceUnavailable, SynthesisConflict
from app.services.fact_ledger import FactLedger

logger = logging.getLogger("buildunion-synth")


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

Deriver = Callable[[ProjectSnapshot], List[Tuple[Optional[str], Dict]]]


@dataclass(frozen=True)
class SynthesisRule:
    """
    One gap-healing rule.

    ``derive`` returns (dedup_key, fields) candidates from the snapshot; the
    engine keeps a candidate only when its (cite_type, dedup_key) slot is
    empty in the ledger.
    """
    name: str
    cite_type: str
    derive: Deriver


@dataclass
class PendingWrite:
    rule: str
    cite_type: str
    citations: List[Citation] = field(default_factory=list)


@dataclass
class SynthesisResult:
    snapshot: ProjectSnapshot
    writes: List[PendingWrite]

    @property
    def synthesized(self) -> List[Citation]:
        return [c for w in self.writes for c in w.citations]


def label_case(raw: str) -> str:
    """'drywall_installation' → 'Drywall Installation'."""
    words = raw.replace("-", " ").replace("_", " ").split()
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def _derive_trade(snapshot: ProjectSnapshot):
    trade = (snapshot.profile.trade or "").strip()
    if not trade:
        return []
    label = label_case(trade)
    return [(None, {
        "question_key": "trade_selection",
        "answer": label,
        "value": trade,
        "metadata": {"source": "project_trade"},
    })]


def _task_due_dates(snapshot: ProjectSnapshot) -> List[date]:
    return sorted(t.due_date for t in snapshot.active_tasks if t.due_date is not None)


def _derive_timeline(snapshot: ProjectSnapshot):
    dates = _task_due_dates(snapshot)
    if not dates:
        return []
    start = dates[0].isoformat()
    return [(None, {
        "question_key": "project_dates",
        "answer": start,
        "value": start,
        "metadata": {"start_date": start, "source": "tasks", "task_count": len(dates)},
    })]


def _derive_end_date(snapshot: ProjectSnapshot):
    dates = _task_due_dates(snapshot)
    if not dates:
        return []
    end = dates[-1].isoformat()
    return [(None, {
        "question_key": "end_date",
        "answer": end,
        "value": end,
        "metadata": {"end_date": end, "source": "tasks", "task_count": len(dates)},
    })]


def _derive_team_invites(snapshot: ProjectSnapshot):
    out = []
    seen: Set[str] = set()
    roster_emails = {m.email.lower() for m in snapshot.team if m.email}
    for member in snapshot.team:
        key = member.user_id
        if key in seen:
            continue
        seen.add(key)
        out.append((key, {
            "question_key": "team_member_invite",
            "answer": f"{member.name} ({member.role})",
            "value": {"member_id": key, "name": member.name, "role": member.role, "status": "active"},
            "metadata": {"member_id": key, "role": member.role, "status": "active"},
        }))
    for invite in snapshot.invitations:
        if invite.status != "pending" or invite.email.lower() in roster_emails:
            continue
        key = f"invite:{invite.email.lower()}"
        if key in seen:
            continue
        seen.add(key)
        out.append((key, {
            "question_key": "team_member_invite",
            "answer": f"{invite.email} ({invite.role}, invited)",
            "value": {"member_id": key, "email": invite.email, "role": invite.role, "status": "pending"},
            "metadata": {"member_id": key, "role": invite.role, "status": "pending", "invitation_id": invite.id},
        }))
    return out


def _derive_budget(snapshot: ProjectSnapshot):
    total = snapshot.financial.total_cost
    if not total or total <= 0:
        return []
    return [(None, {
        "question_key": "budget",
        "answer": f"${total:,.2f}",
        "value": float(total),
        "metadata": {
            "source": "financial_summary",
            "material_cost": snapshot.financial.material_cost,
            "labor_cost": snapshot.financial.labor_cost,
        },
    })]


def _derive_contracts(snapshot: ProjectSnapshot):
    out = []
    seen: Set[str] = set()
    for contract in snapshot.contracts:
        if contract.id in seen:
            continue
        seen.add(contract.id)
        number = contract.contract_number or contract.id[:8]
        out.append((contract.id, {
            "question_key": "contract",
            "answer": f"Contract #{number} ({contract.status})",
            "value": {
                "contract_id": contract.id,
                "contract_number": contract.contract_number,
                "total_amount": contract.total_amount,
                "status": contract.status,
                "client_name": contract.client_name,
            },
            "metadata": {"contract_id": contract.id, "status": contract.status},
        }))
    return out


SYNTHESIS_RULES: List[SynthesisRule] = [
    SynthesisRule("trade_selection", CiteType.TRADE_SELECTION.value, _derive_trade),
    SynthesisRule("timeline", CiteType.TIMELINE.value, _derive_timeline),
    SynthesisRule("end_date", CiteType.END_DATE.value, _derive_end_date),
    SynthesisRule("team_member_invite", CiteType.TEAM_MEMBER_INVITE.value, _derive_team_invites),
    SynthesisRule("budget", CiteType.BUDGET.value, _derive_budget),
    SynthesisRule("contract", CiteType.CONTRACT.value, _derive_contracts),
]


# ---------------------------------------------------------------------------
# Pure evaluation
# ---------------------------------------------------------------------------

def synthetic_id(cite_type: str, key: Optional[str], now: datetime) -> str:
    stamp = int(now.timestamp() * 1000)
    suffix = f"{key}-" if key else ""
    return f"synth-{cite_type.lower()}-{suffix}{stamp}"


def build_citation(cite_type: str, key: Optional[str], fields: Dict, now: datetime) -> Citation:
    metadata = dict(fields.get("metadata") or {})
    key_field = MULTI_INSTANCE_KEYS.get(cite_type)
    if key_field and key is not None:
        metadata[key_field] = key
    metadata["synthesized_at"] = now.isoformat()
    return Citation(
        id=synthetic_id(cite_type, key, now),
        cite_type=cite_type,
        question_key=fields.get("question_key", cite_type.lower()),
        answer=fields.get("answer", ""),
        value=fields.get("value"),
        metadata=metadata,
        timestamp=now.isoformat(),
        provenance=Provenance.SYNTHETIC,
    )


def _occupied(citations) -> Set[Tuple[str, Optional[str]]]:
    return {c.slot for c in citations}


def synthesize(
    snapshot: ProjectSnapshot,
    rules: Optional[List[SynthesisRule]] = None,
    now: Optional[datetime] = None,
) -> SynthesisResult:
    """
    Evaluate every rule against an immutable snapshot.

    A rule that throws is logged and skipped; the others still run.
    """
    now = now or datetime.now(timezone.utc)
    occupied = _occupied(snapshot.citations)
    added: List[Citation] = []
    writes: List[PendingWrite] = []

    for rule in rules if rules is not None else SYNTHESIS_RULES:
        try:
            candidates = rule.derive(snapshot)
        except Exception as e:
            logger.warning(
                f"Synthesis rule '{rule.name}' failed: {e}",
                extra={"project_id": snapshot.project_id, "cite_type": rule.cite_type},
            )
            continue
        made = []
        for key, fields in candidates:
            slot = (rule.cite_type, key)
            if slot in occupied:
                continue
            occupied.add(slot)
            made.append(build_citation(rule.cite_type, key, fields, now))
        if made:
            added.extend(made)
            writes.append(PendingWrite(rule=rule.name, cite_type=rule.cite_type, citations=made))

    new_snapshot = snapshot.model_copy(update={"citations": tuple(snapshot.citations) + tuple(added)})
    return SynthesisResult(snapshot=new_snapshot, writes=writes)


def weather_citation(address: str, payload: Dict, now: Optional[datetime] = None) -> Citation:
    now = now or datetime.now(timezone.utc)
    alerts = payload.get("alerts") or []
    current = payload.get("current") or {}
    if alerts:
        worst = "danger" if any(a.get("severity") == "danger" for a in alerts) else "warning"
        answer = f"{len(alerts)} active alert(s), {worst}: " + "; ".join(a.get("message", "") for a in alerts)
    else:
        answer = "No active construction weather alerts"
    return build_citation(CiteType.WEATHER_ALERT.value, None, {
        "question_key": "weather_alert",
        "answer": answer,
        "value": {"alerts": alerts, "current": current},
        "metadata": {"address": address, "alert_count": len(alerts), "source": "weather_service"},
    }, now)


# ---------------------------------------------------------------------------
# Application + persistence
# ---------------------------------------------------------------------------

class FactSynthesizer:
    """
    Applies synthesis to a live ledger and persists each rule's output once.

    Memory is mutated immediately. Durable storage is updated per rule by
    re-reading the persisted collection, re-verifying that each target slot
    is still empty, and writing back the union. A failed write is logged and
    never rolls memory back, so storage may lag memory until the next flush.
    """

    def __init__(self, store, weather_client=None, rules: Optional[List[SynthesisRule]] = None):
        self.store = store
        self.weather_client = weather_client
        self.rules = rules if rules is not None else SYNTHESIS_RULES
        self._background: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    def apply(self, ledger: FactLedger, snapshot: ProjectSnapshot) -> SynthesisResult:
        result = synthesize(snapshot, self.rules)
        for citation in result.synthesized:
            ledger.upsert(citation)
        if result.writes:
            logger.info(
                f"Synthesized {len(result.synthesized)} fact(s) across {len(result.writes)} rule(s)",
                extra={"project_id": snapshot.project_id},
            )
        return result

    def _lock(self, project_id: str) -> asyncio.Lock:
        if project_id not in self._locks:
            self._locks[project_id] = asyncio.Lock()
        return self._locks[project_id]

    async def _flush_one(self, project_id: str, write: PendingWrite, ledger: Optional[FactLedger]) -> str:
        async with self._lock(project_id):
            return await self._merge_and_write(project_id, write, ledger)

    async def _merge_and_write(self, project_id: str, write: PendingWrite, ledger: Optional[FactLedger]) -> str:
        persisted = await self.store.read_citations(project_id)
        taken = {c.slot: c for c in persisted}
        persisted_ids = {c.id for c in persisted}
        fresh: List[Citation] = []
        for citation in write.citations:
            if citation.id in persisted_ids:
                continue
            winner = taken.get(citation.slot)
            if winner is not None:
                conflict = SynthesisConflict(citation.cite_type, citation.dedup_key)
                logger.debug(str(conflict), extra={"project_id": project_id, "cite_type": citation.cite_type})
                if ledger is not None:
                    ledger.upsert(winner)
                continue
            fresh.append(citation)
        if not fresh:
            return "noop"
        await self.store.write_citations(project_id, list(persisted) + fresh)
        return "written"

    async def flush(
        self,
        project_id: str,
        writes: List[PendingWrite],
        ledger: Optional[FactLedger] = None,
    ) -> Dict[str, str]:
        """
        Persist each rule's citations independently.

        Rules are flushed one after another, and every flush for a project
        holds that project's lock, so whole-collection writes from this
        process never interleave. Returns rule name → written | noop | failed.
        """
        outcome: Dict[str, str] = {}
        for write in writes:
            start = time.perf_counter()
            try:
                outcome[write.rule] = await self._flush_one(project_id, write, ledger)
            except SourceUnavailable as e:
                outcome[write.rule] = "failed"
                logger.error(
                    f"Synthesized {write.cite_type} not persisted: {e}",
                    extra={"project_id": project_id, "cite_type": write.cite_type},
                )
            except Exception as e:
                outcome[write.rule] = "failed"
                logger.exception(
                    f"Unexpected flush failure for rule '{write.rule}': {e}",
                    extra={"project_id": project_id, "cite_type": write.cite_type},
                )
            finally:
                logger.debug(
                    "rule flushed",
                    extra={
                        "project_id": project_id,
                        "cite_type": write.cite_type,
                        "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                    },
                )
        return outcome

    def schedule_flush(
        self,
        project_id: str,
        writes: List[PendingWrite],
        ledger: Optional[FactLedger] = None,
    ) -> Optional[asyncio.Task]:
        """Fire-and-forget flush on the running loop."""
        if not writes:
            return None
        task = asyncio.get_running_loop().create_task(self.flush(project_id, writes, ledger))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled flush (used on shutdown and in tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def synthesize_weather_alert(
        self, ledger: FactLedger, address: Optional[str]
    ) -> Optional[Citation]:
        """
        WEATHER_ALERT rule. Absence is checked before the fetch and again
        right before the write, since a sibling load can land in between.
        """
        if ledger.has(CiteType.WEATHER_ALERT.value) or not address or self.weather_client is None:
            return None
        try:
            payload = await self.weather_client.fetch(address)
        except ExternalServiceDegraded as e:
            logger.warning(f"Weather alert synthesis skipped: {e}", extra={"project_id": ledger.project_id})
            return None

        if ledger.has(CiteType.WEATHER_ALERT.value):
            logger.debug(
                str(SynthesisConflict(CiteType.WEATHER_ALERT.value)),
                extra={"project_id": ledger.project_id},
            )
            return None
        citation = weather_citation(address, payload)
        ledger.upsert(citation)
        await self.flush(
            ledger.project_id,
            [PendingWrite(rule="weather_alert", cite_type=citation.cite_type, citations=[citation])],
            ledger,
        )
        return citation
