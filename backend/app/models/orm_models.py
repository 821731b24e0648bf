"""ORM Models for the BuildUnion project core — SQLAlchemy 2.0"""
import uuid
from datetime import datetime, date
from typing import Optional
from sqlalchemy import (
    JSON, String, Text, Boolean, Numeric, DateTime, Date,
    ForeignKey, UniqueConstraint, Index, text
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from app.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def gen_uuid():
    return str(uuid.uuid4())


# ── AUTH ──────────────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(Text, nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    projects: Mapped[list["Project"]] = relationship("Project", back_populates="owner")


# ── PROJECTS ──────────────────────────────────────────────────────────────────
class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text)
    trade: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(50), default="draft")
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    owner: Mapped["User"] = relationship("User", back_populates="projects")
    summary: Mapped[Optional["ProjectSummary"]] = relationship(
        "ProjectSummary", back_populates="project", uselist=False
    )
    tasks: Mapped[list["ProjectTask"]] = relationship("ProjectTask", back_populates="project")
    members: Mapped[list["ProjectMember"]] = relationship("ProjectMember", back_populates="project")


class ProjectSummary(Base):
    """Durable home of the fact ledger (``verified_facts``) plus the financial summary."""
    __tablename__ = "project_summaries"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    verified_facts: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    total_cost: Mapped[Optional[float]] = mapped_column(Numeric(14, 2))
    material_cost: Mapped[Optional[float]] = mapped_column(Numeric(14, 2))
    labor_cost: Mapped[Optional[float]] = mapped_column(Numeric(14, 2))
    project_start_date: Mapped[Optional[date]] = mapped_column(Date)
    project_end_date: Mapped[Optional[date]] = mapped_column(Date)
    trade: Mapped[Optional[str]] = mapped_column(String(100))
    site_condition: Mapped[Optional[str]] = mapped_column(String(50))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    project: Mapped["Project"] = relationship("Project", back_populates="summary")


class ProjectTask(Base):
    __tablename__ = "project_tasks"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | in_progress | completed
    priority: Mapped[str] = mapped_column(String(20), default="medium")  # low | medium | high | critical
    phase: Mapped[Optional[str]] = mapped_column(String(50))
    assigned_to: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    assigned_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    checklist: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    project: Mapped["Project"] = relationship("Project", back_populates="tasks")


# ── TEAM ──────────────────────────────────────────────────────────────────────
class ProjectMember(Base):
    __tablename__ = "project_members"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="member")
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    project: Mapped["Project"] = relationship("Project", back_populates="members")
    __table_args__ = (UniqueConstraint("project_id", "user_id", name="uq_project_member"),)


class TeamInvitation(Base):
    __tablename__ = "team_invitations"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="worker")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | accepted | declined
    invited_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── CONTRACTS ─────────────────────────────────────────────────────────────────
class Contract(Base):
    __tablename__ = "contracts"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    contract_number: Mapped[Optional[str]] = mapped_column(String(50))
    client_name: Mapped[Optional[str]] = mapped_column(String(255))
    total_amount: Mapped[Optional[float]] = mapped_column(Numeric(14, 2))
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | sent | signed
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── PENDING BUDGET CHANGES ───────────────────────────────────────────────────
class PendingBudgetChange(Base):
    __tablename__ = "pending_budget_changes"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_type: Mapped[str] = mapped_column(String(20), nullable=False, default="material")
    item_id: Mapped[str] = mapped_column(String(255), nullable=False)
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    original_quantity: Mapped[Optional[float]] = mapped_column(Numeric(14, 4))
    new_quantity: Mapped[Optional[float]] = mapped_column(Numeric(14, 4))
    original_unit_price: Mapped[Optional[float]] = mapped_column(Numeric(14, 2))
    new_unit_price: Mapped[Optional[float]] = mapped_column(Numeric(14, 2))
    original_total: Mapped[Optional[float]] = mapped_column(Numeric(14, 2))
    new_total: Mapped[Optional[float]] = mapped_column(Numeric(14, 2))
    change_reason: Mapped[Optional[str]] = mapped_column(Text)
    review_notes: Mapped[Optional[str]] = mapped_column(Text)
    requested_by: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("users.id"))
    __table_args__ = (
        # Single-flight: one open change per item
        Index(
            "uq_pending_change_item",
            "project_id", "item_type", "item_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )
