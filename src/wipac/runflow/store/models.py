from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wipac.runflow.contracts.state import WorkflowState
from wipac.runflow.core.db import Base
from wipac.runflow.core.utils import utc_now

workflow_state_type = Enum(
    WorkflowState,
    name="workflow_state",
    values_callable=lambda enum: [member.value for member in enum],
    validate_strings=True,
)


class Run(Base):
    __tablename__ = "runs"
    __table_args__ = (
        Index("idx_runs_state", "state"),
        Index("idx_runs_start_date", "run_start_date"),
    )

    run_number: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=False
    )
    file_number: Mapped[int] = mapped_column(Integer, nullable=False)
    run_start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    state: Mapped[WorkflowState] = mapped_column(
        workflow_state_type,
        nullable=False,
        default=WorkflowState.NOT_YET_STARTED,
        server_default=WorkflowState.NOT_YET_STARTED.value,
    )
    url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.current_timestamp()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.current_timestamp()
    )

    steps: Mapped[list["ProcessingStep"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="ProcessingStep.step_number",
        lazy="selectin",
    )


class ProcessingStep(Base):
    __tablename__ = "processing_steps"
    __table_args__ = (
        UniqueConstraint("run_number", "step_number"),
        Index("idx_steps_run_number", "run_number"),
        Index("idx_steps_step_number", "step_number"),
        Index("idx_steps_site", "site"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    run_number: Mapped[int] = mapped_column(
        Integer,
        ForeignKey(Run.__table__.c.run_number, ondelete="CASCADE"),
        nullable=False,
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    started_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    site: Mapped[str | None] = mapped_column(Text, nullable=True)
    checksum: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.current_timestamp()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.current_timestamp()
    )

    run: Mapped[Run] = relationship(back_populates="steps")
