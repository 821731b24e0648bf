"""
Pending budget change routes.
Foreman/subcontractor submissions, owner approve/reject, requester cancel,
and the owner's arrival notice.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from app.api.deps import ProjectActor, get_project_actor, get_registry
from app.models.fact_schema import PendingStatus

router = APIRouter(prefix="/api/v1/projects", tags=["Pending Changes"])
logger = logging.getLogger("buildunion-api")


class ChangeCreateRequest(BaseModel):
    item_id: str
    item_name: str
    item_type: str = "material"          # material | labor | task | other
    original_quantity: Optional[float] = None
    new_quantity: Optional[float] = None
    original_unit_price: Optional[float] = None
    new_unit_price: Optional[float] = None
    change_reason: Optional[str] = None


class ChangeReviewRequest(BaseModel):
    review_notes: Optional[str] = None


@router.get("/{project_id}/changes")
async def list_changes(
    project_id: str,
    status: Optional[PendingStatus] = Query(None),
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    changes = session.coordinator.list_changes(status)
    return {"total": len(changes), "changes": [c.model_dump(mode="json") for c in changes]}


@router.post("/{project_id}/changes", status_code=201)
async def create_change(
    project_id: str,
    req: ChangeCreateRequest,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    change = await session.coordinator.create(
        actor_id=actor.user_id,
        role=actor.role,
        item_id=req.item_id,
        item_name=req.item_name,
        new_quantity=req.new_quantity,
        original_quantity=req.original_quantity,
        item_type=req.item_type,
        change_reason=req.change_reason,
        original_unit_price=req.original_unit_price,
        new_unit_price=req.new_unit_price,
    )
    return change.model_dump(mode="json")


@router.post("/{project_id}/changes/{change_id}/approve")
async def approve_change(
    project_id: str,
    change_id: str,
    req: ChangeReviewRequest,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    """Approval only signals the caller; the client applies ``apply_quantity`` to the item."""
    session = await registry.get(project_id)
    outcome = await session.coordinator.approve(change_id, actor.user_id, actor.role, req.review_notes)
    return {
        "change": outcome.change.model_dump(mode="json"),
        "apply": {
            "item_type": outcome.item_type,
            "item_id": outcome.item_id,
            "apply_quantity": outcome.new_quantity,
        },
        "audit_citation_id": outcome.audit_citation.id if outcome.audit_citation else None,
    }


@router.post("/{project_id}/changes/{change_id}/reject")
async def reject_change(
    project_id: str,
    change_id: str,
    req: ChangeReviewRequest,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    change = await session.coordinator.reject(change_id, actor.user_id, actor.role, req.review_notes)
    return change.model_dump(mode="json")


@router.post("/{project_id}/changes/{change_id}/cancel")
async def cancel_change(
    project_id: str,
    change_id: str,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    change = await session.coordinator.cancel(change_id, actor.user_id)
    return change.model_dump(mode="json")


@router.get("/{project_id}/changes/notifications")
async def change_notifications(
    project_id: str,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    """At most one notice per batch of new arrivals; null when nothing is new."""
    session = await registry.get(project_id)
    notice = session.coordinator.take_new_arrivals(actor.user_id, actor.role)
    if notice is None:
        return {"notice": None}
    return {
        "notice": {
            "count": notice.count,
            "message": notice.message,
            "change_ids": [c.id for c in notice.changes],
        }
    }
