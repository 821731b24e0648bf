"""
Project fact ledger routes.
Tier-gated facts projection, citation edits, task toggles and the
external-service passthroughs (weather, AI analysis, invitation email).
"""
import logging
from typing import Any, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from app.api.deps import ProjectActor, get_project_actor, get_registry
from app.models.fact_schema import Citation
from app.services.access_tiers import can_edit, can_view_financials, tier_of, visible_sections
from app.services.errors import AuthorizationDenied

router = APIRouter(prefix="/api/v1/projects", tags=["Fact Ledger"])
logger = logging.getLogger("buildunion-api")


class CitationEditRequest(BaseModel):
    answer: str
    value: Optional[Any] = None
    edit_mode: bool = False


class AnalysisRequest(BaseModel):
    analysis_type: str = "full"
    tier: str = "free"
    region: Optional[str] = None


class InvitationNotifyRequest(BaseModel):
    emails: List[str]
    role: str = "worker"
    accept_url: str = ""


def _citation_out(c: Citation) -> dict:
    return c.model_dump(mode="json")


@router.post("/{project_id}/load")
async def load_project(
    project_id: str,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    """Explicit (re)load: normalize, synthesize, schedule."""
    session = await registry.reload(project_id)
    return {
        "project_id": project_id,
        "source": session.source,
        "fact_count": len(session.ledger),
        "synthesized": [c.cite_type for c in session.synthesized],
        "scheduled_tasks": len(session.scheduled),
    }


@router.get("/{project_id}/facts")
async def get_facts(
    project_id: str,
    keys: Optional[str] = Query(None, description="Comma-separated cite types for one screen"),
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    key_set = [k.strip() for k in keys.split(",") if k.strip()] if keys else None
    citations = session.facts(actor.role, key_set)
    return {
        "role": actor.role,
        "tier": tier_of(actor.role).name.lower(),
        "badge": session.badge(actor.role),
        "sections": visible_sections(actor.role),
        "can_edit": can_edit(actor.role, edit_mode=False),
        "can_view_financials": can_view_financials(actor.role),
        "total": len(citations),
        "citations": [_citation_out(c) for c in citations],
    }


@router.patch("/{project_id}/facts/{citation_id}")
async def edit_citation(
    project_id: str,
    citation_id: str,
    req: CitationEditRequest,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    editor = session.edit_session(actor.role, req.edit_mode)
    if not editor.start(citation_id):
        raise AuthorizationDenied("edit citations", actor.role)
    updated = await editor.save(req.answer, req.value)
    if updated is None:
        raise HTTPException(status_code=422, detail="Answer must not be empty")
    logger.info("Citation edited", extra={"project_id": project_id, "cite_type": updated.cite_type})
    return _citation_out(updated)


@router.get("/{project_id}/tasks")
async def list_tasks(
    project_id: str,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    tasks = sorted(session.active_tasks(), key=lambda t: (t.due_date is None, t.due_date))
    return {"total": len(tasks), "tasks": [t.model_dump(mode="json") for t in tasks]}


@router.post("/{project_id}/tasks/{task_id}/toggle")
async def toggle_task(
    project_id: str,
    task_id: str,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    try:
        task = await session.toggle_task(task_id, actor.user_id, actor.role)
    except KeyError:
        raise HTTPException(status_code=404, detail="Task not found")
    return task.model_dump(mode="json")


@router.get("/{project_id}/weather")
async def project_weather(
    project_id: str,
    request: Request,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    address = session.snapshot.profile.address
    if not address:
        raise HTTPException(status_code=400, detail="Project has no address")
    return await request.app.state.weather.fetch(address)


@router.post("/{project_id}/analysis")
async def run_analysis(
    project_id: str,
    req: AnalysisRequest,
    request: Request,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    session = await registry.get(project_id)
    try:
        return await request.app.state.ai.invoke(
            project_id, req.analysis_type, req.tier, region=req.region, snapshot=session.snapshot,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/{project_id}/invitations/notify")
async def notify_invitations(
    project_id: str,
    req: InvitationNotifyRequest,
    request: Request,
    actor: ProjectActor = Depends(get_project_actor),
    registry=Depends(get_registry),
):
    if tier_of(actor.role) < tier_of("foreman"):
        raise AuthorizationDenied("invite team members", actor.role)
    session = await registry.get(project_id)
    results = await request.app.state.email.send(req.emails, {
        "template": "invitation",
        "project_name": session.snapshot.profile.name,
        "inviter_name": actor.name or actor.email,
        "role": req.role,
        "accept_url": req.accept_url,
    })
    return {"results": [r.__dict__ for r in results]}
