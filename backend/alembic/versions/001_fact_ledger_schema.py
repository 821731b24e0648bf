"""fact_ledger_schema

Revision ID: 001_fact_ledger
Revises:
Create Date: 2026-10-16

Adds tables for:
- users, projects
- project_summaries (verified_facts JSONB ledger + financial summary)
- project_tasks, project_members, team_invitations, contracts
- pending_budget_changes with a partial unique index enforcing one open
  change per (project_id, item_type, item_id)

All DDL uses existence checks so the migration is idempotent — safe to run
even when Base.metadata.create_all() already created the tables.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = '001_fact_ledger'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

PENDING_INDEX = "uq_pending_change_item"


def _table_exists(conn, table_name: str) -> bool:
    result = conn.execute(
        text(
            "SELECT EXISTS("
            "  SELECT 1 FROM information_schema.tables"
            "  WHERE table_name = :tname"
            ")"
        ),
        {"tname": table_name},
    )
    return bool(result.scalar())


def _index_exists(conn, index_name: str) -> bool:
    result = conn.execute(
        text("SELECT EXISTS(SELECT 1 FROM pg_indexes WHERE indexname = :iname)"),
        {"iname": index_name},
    )
    return bool(result.scalar())


def _uuid(name: str, *args, **kwargs) -> sa.Column:
    return sa.Column(name, UUID(as_uuid=False), *args, **kwargs)


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now())


def _create(conn, name: str, *columns, **kwargs) -> None:
    if _table_exists(conn, name):
        logger.info(f"Table {name} already exists — skipping create")
        return
    op.create_table(name, *columns, **kwargs)
    logger.info(f"Created table: {name}")


def upgrade() -> None:
    conn = op.get_bind()

    _create(
        conn, 'users',
        _uuid('id', primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('hashed_password', sa.Text, nullable=False),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
    )

    _create(
        conn, 'projects',
        _uuid('id', primary_key=True),
        _uuid('user_id', sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('address', sa.Text, nullable=True),
        sa.Column('trade', sa.String(100), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='draft'),
        sa.Column('description', sa.Text, nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    _create(
        conn, 'project_summaries',
        _uuid('id', primary_key=True),
        _uuid('project_id', sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, unique=True),
        _uuid('user_id', sa.ForeignKey('users.id'), nullable=True),
        sa.Column('verified_facts', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('total_cost', sa.Numeric(14, 2), nullable=True),
        sa.Column('material_cost', sa.Numeric(14, 2), nullable=True),
        sa.Column('labor_cost', sa.Numeric(14, 2), nullable=True),
        sa.Column('project_start_date', sa.Date, nullable=True),
        sa.Column('project_end_date', sa.Date, nullable=True),
        sa.Column('trade', sa.String(100), nullable=True),
        sa.Column('site_condition', sa.String(50), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    _create(
        conn, 'project_tasks',
        _uuid('id', primary_key=True),
        _uuid('project_id', sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('priority', sa.String(20), nullable=False, server_default='medium'),
        sa.Column('phase', sa.String(50), nullable=True),
        _uuid('assigned_to', sa.ForeignKey('users.id'), nullable=True),
        _uuid('assigned_by', sa.ForeignKey('users.id'), nullable=True),
        sa.Column('due_date', sa.Date, nullable=True),
        sa.Column('checklist', JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('archived_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )

    _create(
        conn, 'project_members',
        _uuid('id', primary_key=True),
        _uuid('project_id', sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        _uuid('user_id', sa.ForeignKey('users.id'), nullable=False),
        sa.Column('role', sa.String(50), nullable=False, server_default='member'),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('joined_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('project_id', 'user_id', name='uq_project_member'),
    )

    _create(
        conn, 'team_invitations',
        _uuid('id', primary_key=True),
        _uuid('project_id', sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('role', sa.String(50), nullable=False, server_default='worker'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        _uuid('invited_by', sa.ForeignKey('users.id'), nullable=True),
        _created_at(),
    )

    _create(
        conn, 'contracts',
        _uuid('id', primary_key=True),
        _uuid('project_id', sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('contract_number', sa.String(50), nullable=True),
        sa.Column('client_name', sa.String(255), nullable=True),
        sa.Column('total_amount', sa.Numeric(14, 2), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='draft'),
        _created_at(),
    )

    _create(
        conn, 'pending_budget_changes',
        _uuid('id', primary_key=True),
        _uuid('project_id', sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('item_type', sa.String(20), nullable=False, server_default='material'),
        sa.Column('item_id', sa.String(255), nullable=False),
        sa.Column('item_name', sa.String(255), nullable=False),
        sa.Column('original_quantity', sa.Numeric(14, 4), nullable=True),
        sa.Column('new_quantity', sa.Numeric(14, 4), nullable=True),
        sa.Column('original_unit_price', sa.Numeric(14, 2), nullable=True),
        sa.Column('new_unit_price', sa.Numeric(14, 2), nullable=True),
        sa.Column('original_total', sa.Numeric(14, 2), nullable=True),
        sa.Column('new_total', sa.Numeric(14, 2), nullable=True),
        sa.Column('change_reason', sa.Text, nullable=True),
        sa.Column('review_notes', sa.Text, nullable=True),
        _uuid('requested_by', sa.ForeignKey('users.id'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        _created_at(),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        _uuid('resolved_by', sa.ForeignKey('users.id'), nullable=True),
    )

    # ── single-flight guard for open changes ─────────────────────────────────
    if not _index_exists(conn, PENDING_INDEX):
        op.create_index(
            PENDING_INDEX,
            'pending_budget_changes',
            ['project_id', 'item_type', 'item_id'],
            unique=True,
            postgresql_where=sa.text("status = 'pending'"),
        )
        logger.info(f"Created partial unique index: {PENDING_INDEX}")


def downgrade() -> None:
    conn = op.get_bind()
    if _index_exists(conn, PENDING_INDEX):
        op.drop_index(PENDING_INDEX, table_name='pending_budget_changes')
    for table in (
        'pending_budget_changes', 'contracts', 'team_invitations', 'project_members',
        'project_tasks', 'project_summaries', 'projects', 'users',
    ):
        if _table_exists(conn, table):
            op.drop_table(table)
