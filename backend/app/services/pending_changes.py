"""
pending_changes.py — Foreman modification loop with owner approval.

State machine:
    pending ──approve──▶ approved
            ──reject───▶ rejected
            ──cancel───▶ cancelled
All three targets are terminal; nothing leaves a terminal state.

Single-flight: at most one pending change per (item_type, item_id). The
coordinator never mutates the underlying item quantity. ``approve`` returns
an ApprovalOutcome and the caller applies ``new_quantity`` itself.

Other sessions are reconciled by upserting incoming change events on id,
never by polling. The owner sees at most one "new pending changes" notice
per distinct arrival event.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from app.models.fact_schema import (
    ChangeEvent, Citation, CiteType, PendingChange, PendingStatus, Provenance, utc_now_iso,
)
from app.services.access_tiers import can_request_change, can_resolve_change, require
from app.services.errors import (
    AuthorizationDenied, DuplicatePendingChange, InvalidTransition, PendingChangeNotFound,
    SourceUnavailable,
)
from app.services.fact_ledger import FactLedger, persist_citations

logger = logging.getLogger("buildunion-pending")

PENDING_TABLE = "pending_budget_changes"


@dataclass
class ApprovalOutcome:
    """Signal to the caller: apply ``new_quantity`` to the item as a separate side effect."""
    change: PendingChange
    item_type: str
    item_id: str
    new_quantity: Optional[float]
    audit_citation: Optional[Citation] = None


@dataclass
class ArrivalNotice:
    """One owner-facing notice covering every arrival since the last one."""
    project_id: str
    changes: List[PendingChange] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.changes)

    @property
    def message(self) -> str:
        if self.count == 1:
            c = self.changes[0]
            return f"New modification request: {c.item_name} ({c.change_reason or 'Requires your approval'})"
        return f"{self.count} new modification requests require your approval"


def approval_citation(change: PendingChange) -> Citation:
    """BUDGET_APPROVAL audit fact for an approve/reject decision."""
    decision = change.status.value
    verb = "Approved" if change.status == PendingStatus.APPROVED else "Rejected"
    return Citation(
        id=f"budget-approval-{change.id}",
        cite_type=CiteType.BUDGET_APPROVAL.value,
        question_key=f"budget_{decision}_{change.item_id}",
        answer=f"{verb}: {change.item_name}",
        value={
            "decision": decision,
            "item_id": change.item_id,
            "item_name": change.item_name,
            "item_type": change.item_type,
            "original": {"qty": change.original_quantity, "price": change.original_unit_price,
                         "total": change.original_total},
            "proposed": {"qty": change.new_quantity, "price": change.new_unit_price,
                         "total": change.new_total},
            "reason": change.change_reason,
            "review_notes": change.review_notes,
            "requested_by": change.requested_by,
            "reviewed_by": change.resolved_by,
        },
        metadata={"change_id": change.id, "decision": decision, "item_id": change.item_id},
        timestamp=change.resolved_at or utc_now_iso(),
        provenance=Provenance.USER_INPUT,
    )


class PendingChangeCoordinator:
    """Two-actor approval workflow for budget/material quantity edits."""

    def __init__(self, project_id: str, store, ledger: Optional[FactLedger] = None):
        self.project_id = project_id
        self.store = store
        self.ledger = ledger
        self._changes: Dict[str, PendingChange] = {}
        self._seen_events: Set[str] = set()
        self._arrivals: List[PendingChange] = []

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def load(self) -> List[PendingChange]:
        for change in await self.store.list_pending_changes(self.project_id):
            self._changes[change.id] = change
        return self.list_changes()

    def list_changes(self, status: Optional[PendingStatus] = None) -> List[PendingChange]:
        changes = sorted(self._changes.values(), key=lambda c: c.created_at, reverse=True)
        if status is None:
            return changes
        return [c for c in changes if c.status == status]

    def pending(self) -> List[PendingChange]:
        return self.list_changes(PendingStatus.PENDING)

    def pending_for(self, item_type: str, item_id: str) -> Optional[PendingChange]:
        for change in self._changes.values():
            if change.status == PendingStatus.PENDING and change.item_key == (item_type, item_id):
                return change
        return None

    def mine(self, actor_id: str) -> List[PendingChange]:
        return [c for c in self.pending() if c.requested_by == actor_id]

    def get(self, change_id: str) -> PendingChange:
        change = self._changes.get(change_id)
        if change is None:
            raise PendingChangeNotFound(change_id)
        return change

    def _pending(self, change_id: str, action: str) -> PendingChange:
        change = self.get(change_id)
        if change.is_terminal:
            raise InvalidTransition(f"Cannot {action} change {change_id}: already {change.status.value}")
        return change

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    async def create(
        self,
        actor_id: str,
        role: str,
        item_id: str,
        item_name: str,
        new_quantity: Optional[float],
        original_quantity: Optional[float] = None,
        item_type: str = "material",
        change_reason: Optional[str] = None,
        original_unit_price: Optional[float] = None,
        new_unit_price: Optional[float] = None,
    ) -> PendingChange:
        require(can_request_change(role), "request quantity changes", role)
        if self.pending_for(item_type, item_id) is not None:
            raise DuplicatePendingChange(item_type, item_id)

        def _total(qty, price):
            return round(qty * price, 2) if qty is not None and price is not None else None

        change = PendingChange(
            id=str(uuid.uuid4()),
            project_id=self.project_id,
            item_type=item_type,
            item_id=item_id,
            item_name=item_name,
            original_quantity=original_quantity,
            new_quantity=new_quantity,
            original_unit_price=original_unit_price,
            new_unit_price=new_unit_price,
            original_total=_total(original_quantity, original_unit_price),
            new_total=_total(new_quantity, new_unit_price if new_unit_price is not None else original_unit_price),
            change_reason=change_reason,
            requested_by=actor_id,
        )
        saved = await self.store.insert_pending_change(change)
        self._changes[saved.id] = saved
        logger.info(
            f"Modification submitted for approval: {item_type}:{item_id}",
            extra={"project_id": self.project_id, "change_id": saved.id},
        )
        return saved

    async def _resolve(
        self, change_id: str, actor_id: str, status: PendingStatus, review_notes: Optional[str]
    ) -> PendingChange:
        change = self._pending(change_id, status.value)
        resolved = change.model_copy(update={
            "status": status,
            "resolved_by": actor_id,
            "resolved_at": utc_now_iso(),
            "review_notes": review_notes,
        })
        saved = await self.store.update_pending_change(resolved)
        self._changes[saved.id] = saved
        return saved

    async def _record_decision(self, change: PendingChange) -> Optional[Citation]:
        """Audit fact for the decision; a failed persist is logged, not raised."""
        citation = approval_citation(change)
        if self.ledger is not None:
            self.ledger.upsert(citation)
        try:
            await persist_citations(self.store, self.project_id, [citation], overwrite=True)
        except SourceUnavailable as e:
            logger.error(
                f"BUDGET_APPROVAL citation not persisted: {e}",
                extra={"project_id": self.project_id, "change_id": change.id},
            )
        return citation

    async def approve(
        self, change_id: str, actor_id: str, role: str, review_notes: Optional[str] = None
    ) -> ApprovalOutcome:
        require(can_resolve_change(role), "approve changes", role)
        approved = await self._resolve(change_id, actor_id, PendingStatus.APPROVED, review_notes)
        citation = await self._record_decision(approved)
        logger.info("Modification approved", extra={"project_id": self.project_id, "change_id": change_id})
        return ApprovalOutcome(
            change=approved,
            item_type=approved.item_type,
            item_id=approved.item_id,
            new_quantity=approved.new_quantity,
            audit_citation=citation,
        )

    async def reject(
        self, change_id: str, actor_id: str, role: str, review_notes: Optional[str] = None
    ) -> PendingChange:
        require(can_resolve_change(role), "reject changes", role)
        rejected = await self._resolve(
            change_id, actor_id, PendingStatus.REJECTED, review_notes or "No reason provided",
        )
        await self._record_decision(rejected)
        logger.info("Modification rejected", extra={"project_id": self.project_id, "change_id": change_id})
        return rejected

    async def cancel(self, change_id: str, actor_id: str) -> PendingChange:
        change = self._pending(change_id, "cancel")
        if change.requested_by != actor_id:
            raise AuthorizationDenied("cancel another member's change", None)
        cancelled = change.model_copy(update={
            "status": PendingStatus.CANCELLED,
            "resolved_by": actor_id,
            "resolved_at": utc_now_iso(),
        })
        saved = await self.store.update_pending_change(cancelled)
        self._changes[saved.id] = saved
        logger.info("Modification cancelled", extra={"project_id": self.project_id, "change_id": change_id})
        return saved

    # -----------------------------------------------------------------------
    # Cross-session reconciliation
    # -----------------------------------------------------------------------

    def apply_event(self, event: ChangeEvent) -> Optional[PendingChange]:
        """
        Upsert a change-feed event on id. Runs on the event loop: no I/O.

        A terminal local record is never moved by a stale event.
        """
        if event.table != PENDING_TABLE or event.project_id != self.project_id:
            return None
        if event.event_type == "delete":
            return None
        try:
            incoming = PendingChange.model_validate(event.record)
        except ValueError as e:
            logger.warning(f"Ignoring malformed pending-change event {event.id}: {e}")
            return None

        current = self._changes.get(incoming.id)
        if current is not None and current.is_terminal:
            return current
        self._changes[incoming.id] = incoming

        is_arrival = event.event_type == "insert" and incoming.status == PendingStatus.PENDING
        if is_arrival and event.id not in self._seen_events:
            self._seen_events.add(event.id)
            self._arrivals.append(incoming)
        return incoming

    def take_new_arrivals(self, viewer_id: str, viewer_role: str) -> Optional[ArrivalNotice]:
        """
        Owner-only notice for arrivals since the last call; None when there is
        nothing new. Arrivals requested by the viewer are not announced.
        """
        if not can_resolve_change(viewer_role):
            return None
        fresh = [c for c in self._arrivals if c.requested_by != viewer_id]
        self._arrivals = []
        if not fresh:
            return None
        return ArrivalNotice(project_id=self.project_id, changes=fresh)
