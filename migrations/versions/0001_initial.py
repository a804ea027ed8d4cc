"""runs and processing steps

Revision ID: 0001
Revises: None
Create Date: 2023-12-01 00:00:00
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

from wipac.runflow.core.config import settings

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

SCHEMA = settings.database_schema

WORKFLOW_STATES = (
    "Not Yet Started",
    "Transfer from Tape",
    "Process Step 1",
    "Finish Step 1",
    "Transfer WIPAC",
    "Process Step 2",
    "Finish Step 2",
    "Complete",
    "Step 1 Error",
    "Step 2 Error",
)

workflow_state = sa.Enum(*WORKFLOW_STATES, name="workflow_state", schema=SCHEMA)


def upgrade() -> None:
    op.create_table(
        "runs",
        sa.Column("run_number", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("file_number", sa.Integer(), nullable=False),
        sa.Column("run_start_date", sa.DateTime(), nullable=False),
        sa.Column(
            "state",
            workflow_state,
            nullable=False,
            server_default="Not Yet Started",
        ),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.current_timestamp()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint("run_number", name="pk_runs"),
        schema=SCHEMA,
    )

    op.create_table(
        "processing_steps",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("run_number", sa.Integer(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("started_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("site", sa.Text(), nullable=True),
        sa.Column("checksum", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.current_timestamp()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.current_timestamp()),
        sa.ForeignKeyConstraint(
            ["run_number"],
            [f"{SCHEMA}.runs.run_number" if SCHEMA else "runs.run_number"],
            name="fk_processing_steps_run_number_runs",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_processing_steps"),
        sa.UniqueConstraint(
            "run_number", "step_number", name="uq_processing_steps_run_number"
        ),
        schema=SCHEMA,
    )

    op.create_index("idx_runs_state", "runs", ["state"], schema=SCHEMA)
    op.create_index("idx_runs_start_date", "runs", ["run_start_date"], schema=SCHEMA)
    op.create_index(
        "idx_steps_run_number", "processing_steps", ["run_number"], schema=SCHEMA
    )
    op.create_index(
        "idx_steps_step_number", "processing_steps", ["step_number"], schema=SCHEMA
    )
    op.create_index("idx_steps_site", "processing_steps", ["site"], schema=SCHEMA)


def downgrade() -> None:
    op.drop_index("idx_steps_site", table_name="processing_steps", schema=SCHEMA)
    op.drop_index("idx_steps_step_number", table_name="processing_steps", schema=SCHEMA)
    op.drop_index("idx_steps_run_number", table_name="processing_steps", schema=SCHEMA)
    op.drop_index("idx_runs_start_date", table_name="runs", schema=SCHEMA)
    op.drop_index("idx_runs_state", table_name="runs", schema=SCHEMA)
    op.drop_table("processing_steps", schema=SCHEMA)
    op.drop_table("runs", schema=SCHEMA)
    workflow_state.drop(op.get_bind(), checkfirst=True)
