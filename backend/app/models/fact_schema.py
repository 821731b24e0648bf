"""
Canonical fact and workflow schemas for the BuildUnion project core.

Every layer (normalizer, synthesizer, scheduler, coordinator, API) speaks
these pydantic models so the dashboard can render the ledger without
branching on record shape.
"""
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and len(value) >= 10:
        return value[:10]
    return value


class CiteType(str, Enum):
    """Closed citation vocabulary."""
    PROJECT_NAME = "PROJECT_NAME"
    LOCATION = "LOCATION"
    WORK_TYPE = "WORK_TYPE"
    GFA_LOCK = "GFA_LOCK"
    BLUEPRINT_UPLOAD = "BLUEPRINT_UPLOAD"
    TRADE_SELECTION = "TRADE_SELECTION"
    TEMPLATE_LOCK = "TEMPLATE_LOCK"
    EXECUTION_MODE = "EXECUTION_MODE"
    SITE_CONDITION = "SITE_CONDITION"
    DEMOLITION_PRICE = "DEMOLITION_PRICE"
    TEAM_SIZE = "TEAM_SIZE"
    TIMELINE = "TIMELINE"
    END_DATE = "END_DATE"
    SITE_PHOTO = "SITE_PHOTO"
    VISUAL_VERIFICATION = "VISUAL_VERIFICATION"
    TEAM_STRUCTURE = "TEAM_STRUCTURE"
    TEAM_MEMBER_INVITE = "TEAM_MEMBER_INVITE"
    TEAM_PERMISSION_SET = "TEAM_PERMISSION_SET"
    DNA_FINALIZED = "DNA_FINALIZED"
    BUDGET = "BUDGET"
    MATERIAL = "MATERIAL"
    CONTRACT = "CONTRACT"
    WEATHER_ALERT = "WEATHER_ALERT"
    BUDGET_APPROVAL = "BUDGET_APPROVAL"


# Multi-instance types: one citation per distinct metadata key instead of one per type
MULTI_INSTANCE_KEYS: dict[str, str] = {
    CiteType.TEAM_MEMBER_INVITE.value: "member_id",
    CiteType.CONTRACT.value: "contract_id",
    CiteType.BUDGET_APPROVAL.value: "change_id",
}


class Provenance(str, Enum):
    USER_INPUT = "user_input"
    SYNTHETIC = "synthetic"
    LEGACY_MIGRATED = "legacy_migrated"


class AccessTier(IntEnum):
    """Ordered visibility/edit tier: public < worker < foreman < owner."""
    PUBLIC = 1
    WORKER = 2
    FOREMAN = 3
    OWNER = 4


class Citation(BaseModel):
    """A single attributed, typed piece of verified project data."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    cite_type: str
    question_key: str = Field("", alias="questionKey")
    answer: str = ""
    value: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_now_iso)
    provenance: Provenance = Provenance.USER_INPUT

    @property
    def dedup_key(self) -> Optional[str]:
        """Metadata identifier for multi-instance types, None for singletons."""
        field = MULTI_INSTANCE_KEYS.get(self.cite_type)
        if field is None:
            return None
        key = self.metadata.get(field)
        return str(key) if key is not None else None

    @property
    def slot(self) -> tuple[str, Optional[str]]:
        """(cite_type, dedup_key) — the uniqueness scope of this citation."""
        return (self.cite_type, self.dedup_key)


class TeamMember(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str = Field(alias="userId")
    role: str
    name: str = "Team Member"
    email: Optional[str] = None


class Invitation(BaseModel):
    id: str
    email: str
    role: str = "worker"
    status: str = "pending"


class Task(BaseModel):
    id: str
    project_id: Optional[str] = None
    title: str
    description: str = ""
    status: str = "pending"
    priority: str = "medium"
    phase: Optional[str] = None
    assigned_to: Optional[str] = None
    due_date: Optional[date] = None
    created_at: str = Field(default_factory=utc_now_iso)
    archived_at: Optional[str] = None
    checklist: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("due_date", mode="before")
    @classmethod
    def normalize_due_date(cls, value):
        return _coerce_date(value)

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


class ContractRecord(BaseModel):
    id: str
    contract_number: Optional[str] = None
    client_name: Optional[str] = None
    total_amount: Optional[float] = None
    status: str = "draft"
    created_at: Optional[str] = None


class FinancialSummary(BaseModel):
    total_cost: Optional[float] = None
    material_cost: Optional[float] = None
    labor_cost: Optional[float] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    trade: Optional[str] = None
    site_condition: Optional[str] = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def normalize_dates(cls, value):
        return _coerce_date(value)


class ProjectProfile(BaseModel):
    project_id: str
    name: Optional[str] = None
    address: Optional[str] = None
    trade: Optional[str] = None
    owner_id: Optional[str] = None


class ProjectSnapshot(BaseModel):
    """Immutable input to synthesis: ledger plus the related entities it heals from."""
    model_config = ConfigDict(frozen=True)

    profile: ProjectProfile
    citations: tuple[Citation, ...] = ()
    tasks: tuple[Task, ...] = ()
    team: tuple[TeamMember, ...] = ()
    invitations: tuple[Invitation, ...] = ()
    contracts: tuple[ContractRecord, ...] = ()
    financial: FinancialSummary = Field(default_factory=FinancialSummary)

    @property
    def project_id(self) -> str:
        return self.profile.project_id

    @property
    def active_tasks(self) -> list[Task]:
        return [t for t in self.tasks if not t.is_archived]


class PendingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class PendingChange(BaseModel):
    """A proposed quantity mutation awaiting owner approval."""
    id: str
    project_id: str
    item_type: str = "material"   # material | labor | task | other
    item_id: str
    item_name: str
    original_quantity: Optional[float] = None
    new_quantity: Optional[float] = None
    original_unit_price: Optional[float] = None
    new_unit_price: Optional[float] = None
    original_total: Optional[float] = None
    new_total: Optional[float] = None
    change_reason: Optional[str] = None
    review_notes: Optional[str] = None
    requested_by: str
    status: PendingStatus = PendingStatus.PENDING
    created_at: str = Field(default_factory=utc_now_iso)
    resolved_at: Optional[str] = None
    resolved_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != PendingStatus.PENDING

    @property
    def item_key(self) -> tuple[str, str]:
        return (self.item_type, self.item_id)


class ChangeEvent(BaseModel):
    """Push change-feed payload (insert/update/delete on a watched table)."""
    id: str
    table: str                     # project_tasks | pending_budget_changes | chat_messages | ...
    event_type: str                # insert | update | delete
    project_id: str
    record: dict[str, Any] = Field(default_factory=dict)
    received_at: str = Field(default_factory=utc_now_iso)

    model_config = {"json_schema_extra": {
        "example": {
            "id": "evt-001",
            "table": "pending_budget_changes",
            "event_type": "insert",
            "project_id": "p-123",
            "record": {"id": "pc-1", "item_id": "drywall", "status": "pending"},
        }
    }}
