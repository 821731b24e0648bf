"""
access_tiers.py — Role → AccessTier resolution and capability predicates.

The tier ladder (public < worker < foreman < owner) gates visibility. Edit,
financial-view and task-toggle rights are separate, stricter predicates: a
high tier never implies them on its own.
"""
from typing import Any, Dict, Iterable, List, Optional

from app.config import CHANGE_REQUEST_ROLES, WORKER_CLASS_ROLES
from app.models.fact_schema import AccessTier, Citation, CiteType, Task
from app.services.errors import AuthorizationDenied

ROLE_TIERS: Dict[str, AccessTier] = {
    "owner": AccessTier.OWNER,
    "foreman": AccessTier.FOREMAN,
    "worker": AccessTier.WORKER,
    "inspector": AccessTier.WORKER,
    "subcontractor": AccessTier.WORKER,
    "member": AccessTier.PUBLIC,
}

# Badge metadata rendered next to each dashboard section
TIER_BADGES: Dict[AccessTier, Dict[str, Any]] = {
    AccessTier.OWNER: {
        "label": "Owner Only",
        "can_edit": True,
        "description": "Financial data, profit margins, sensitive info",
    },
    AccessTier.FOREMAN: {
        "label": "Foreman+",
        "can_edit": True,
        "description": "Team management, scheduling, task assignment",
    },
    AccessTier.WORKER: {
        "label": "All Team",
        "can_edit": False,
        "description": "Task details, work instructions, basic project info",
    },
    AccessTier.PUBLIC: {
        "label": "Public",
        "can_edit": False,
        "description": "Client-safe information",
    },
}

# Dashboard sections: minimum tier + the cite types each one renders
SECTION_TIERS: Dict[str, Dict[str, Any]] = {
    "basic_info": {
        "tier": AccessTier.PUBLIC,
        "keys": [CiteType.PROJECT_NAME, CiteType.LOCATION, CiteType.WORK_TYPE],
    },
    "area_lock": {
        "tier": AccessTier.FOREMAN,
        "keys": [CiteType.GFA_LOCK, CiteType.BLUEPRINT_UPLOAD],
    },
    "trade_template": {
        "tier": AccessTier.FOREMAN,
        "keys": [CiteType.TRADE_SELECTION, CiteType.TEMPLATE_LOCK],
    },
    "execution_flow": {
        "tier": AccessTier.FOREMAN,
        "keys": [CiteType.EXECUTION_MODE, CiteType.SITE_CONDITION, CiteType.DEMOLITION_PRICE,
                 CiteType.TEAM_SIZE, CiteType.TIMELINE, CiteType.END_DATE],
    },
    "visual_intelligence": {
        "tier": AccessTier.WORKER,
        "keys": [CiteType.BLUEPRINT_UPLOAD, CiteType.SITE_PHOTO, CiteType.VISUAL_VERIFICATION,
                 CiteType.WEATHER_ALERT],
    },
    "team_architecture": {
        "tier": AccessTier.FOREMAN,
        "keys": [CiteType.TEAM_STRUCTURE, CiteType.TEAM_MEMBER_INVITE, CiteType.TEAM_PERMISSION_SET],
    },
    "execution_timeline": {
        "tier": AccessTier.WORKER,
        "keys": [CiteType.TIMELINE, CiteType.END_DATE, CiteType.DNA_FINALIZED],
    },
    "financial": {
        "tier": AccessTier.OWNER,
        "keys": [CiteType.BUDGET, CiteType.MATERIAL, CiteType.DEMOLITION_PRICE,
                 CiteType.CONTRACT, CiteType.BUDGET_APPROVAL],
    },
}

FINANCIAL_SECTION = "financial"


def _norm(role: Optional[str]) -> str:
    return (role or "").strip().lower()


def tier_of(role: Optional[str]) -> AccessTier:
    """Total map; unmapped roles default to public."""
    return ROLE_TIERS.get(_norm(role), AccessTier.PUBLIC)


def has_access(role: Optional[str], tier: AccessTier) -> bool:
    return tier_of(role) >= AccessTier(tier)


def can_edit(role: Optional[str], edit_mode: bool = False) -> bool:
    """Foreman always; owner only with the edit-mode toggle on; nobody else."""
    role = _norm(role)
    if role not in ("owner", "foreman"):
        return False
    return role == "foreman" or bool(edit_mode)


def can_view_financials(role: Optional[str]) -> bool:
    """Exactly owner. No tier-hierarchy override."""
    return _norm(role) == "owner"


def can_toggle_task(role: Optional[str], actor_id: Optional[str], task: Task) -> bool:
    role = _norm(role)
    if role in ("owner", "foreman"):
        return True
    if role in WORKER_CLASS_ROLES:
        return actor_id is not None and task.assigned_to == actor_id
    return False


def can_request_change(role: Optional[str]) -> bool:
    return _norm(role) in CHANGE_REQUEST_ROLES


def can_resolve_change(role: Optional[str]) -> bool:
    return _norm(role) == "owner"


def require(allowed: bool, action: str, role: Optional[str]) -> None:
    """Raise AuthorizationDenied unless ``allowed``."""
    if not allowed:
        raise AuthorizationDenied(action, role)


def section_visible(role: Optional[str], section: str) -> bool:
    config = SECTION_TIERS.get(section)
    if config is None:
        return False
    if section == FINANCIAL_SECTION:
        return can_view_financials(role)
    return has_access(role, config["tier"])


def visible_sections(role: Optional[str]) -> List[str]:
    return [name for name in SECTION_TIERS if section_visible(role, name)]


def visible_citations(
    citations: Iterable[Citation],
    role: Optional[str],
    keys: Optional[Iterable[str]] = None,
) -> List[Citation]:
    """
    Read-only projection of the ledger for one screen.

    A cite_type is visible when at least one section the role may see renders
    it. ``keys`` further narrows the projection to the screen's key set.
    """
    allowed: set = set()
    for name in visible_sections(role):
        allowed.update(k.value for k in SECTION_TIERS[name]["keys"])
    wanted = {str(getattr(k, "value", k)) for k in keys} if keys is not None else None
    return [
        c for c in citations
        if c.cite_type in allowed and (wanted is None or c.cite_type in wanted)
    ]


def tier_badge(tier: AccessTier) -> Dict[str, Any]:
    badge = dict(TIER_BADGES[AccessTier(tier)])
    badge["tier"] = AccessTier(tier).name.lower()
    return badge
