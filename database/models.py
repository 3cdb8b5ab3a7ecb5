"""
SQLAlchemy models for the freelancer invoicing system.

Tables:
- profiles: One freelancer profile per owner
- tasks: Billable tasks with hourly rates
- time_logs: Hours logged against tasks
- invoices: Invoice snapshots with lifecycle status
- invoice_history: State transition history
- timers: Work timer state, one per owner

Every row carries the owning user's id; column names are snake_case.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from state_machine.models import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ProfileModel(Base):
    """Freelancer profile table."""

    __tablename__ = "profiles"

    owner_id = Column(String(64), primary_key=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    logo_url = Column(Text, nullable=True)

    business_name = Column(String(255), nullable=False, default="")
    business_type = Column(String(20), nullable=False, default="freelancer")
    website = Column(String(255), nullable=True)

    address = Column(String(255), nullable=False, default="")
    city = Column(String(100), nullable=False, default="")
    state = Column(String(100), nullable=False, default="")
    zip_code = Column(String(20), nullable=False, default="")
    country = Column(String(100), nullable=False, default="")

    profession = Column(String(100), nullable=False, default="")
    default_hourly_rate = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    time_zone = Column(String(64), nullable=False, default="UTC")
    preferred_payment_terms = Column(String(100), nullable=False, default="Net 30")

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Profile {self.owner_id}>"


class TaskModel(Base):
    """Task table."""

    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    rate = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), default="active", nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    time_logs = relationship(
        "TimeLogModel",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_tasks_owner_created", "owner_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Task {self.id} {self.name!r}>"


class TimeLogModel(Base):
    """Time log table."""

    __tablename__ = "time_logs"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    task_id = Column(
        String(36),
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    hours = Column(Numeric(10, 4), nullable=False)
    date = Column(Date, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    task = relationship("TaskModel", back_populates="time_logs")

    def __repr__(self) -> str:
        return f"<TimeLog {self.id} task={self.task_id} hours={self.hours}>"


class InvoiceModel(Base):
    """Invoice table."""

    __tablename__ = "invoices"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)

    # Snapshot taken at creation
    task_ids = Column(JSON, nullable=False)
    total_hours = Column(Numeric(12, 4), nullable=False)
    # hours (4 places) x rate (2 places) is exact at 6 places
    total_amount = Column(Numeric(16, 6), nullable=False)

    # State machine
    status = Column(String(30), default="draft", nullable=False, index=True)

    # Client details
    client_name = Column(String(255), nullable=True)
    client_email = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    # Approval
    approval_link = Column(String(512), nullable=True, unique=True)
    approved_at = Column(DateTime, nullable=True)
    client_signature = Column(String(255), nullable=True)
    client_comments = Column(Text, nullable=True)

    # Payment
    payment_method = Column(String(20), nullable=True)
    payment_instructions = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    history = relationship(
        "InvoiceHistoryModel",
        back_populates="invoice",
        order_by="InvoiceHistoryModel.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_invoices_owner_status", "owner_id", "status"),
        Index("ix_invoices_owner_created", "owner_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Invoice {self.id} status={self.status}>"


class InvoiceHistoryModel(Base):
    """Invoice state transition history."""

    __tablename__ = "invoice_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(
        String(36),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    previous_state = Column(String(30), nullable=True)
    new_state = Column(String(30), nullable=False)
    trigger = Column(String(50), nullable=False)

    triggered_by = Column(String(255), nullable=True)  # owner, client, system
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    invoice = relationship("InvoiceModel", back_populates="history")

    def __repr__(self) -> str:
        return f"<History {self.invoice_id}: {self.previous_state} -> {self.new_state}>"


class TimerModel(Base):
    """Work timer state, one row per owner."""

    __tablename__ = "timers"

    owner_id = Column(String(64), primary_key=True)
    task_id = Column(String(36), nullable=True)
    is_running = Column(Boolean, nullable=False, default=False)
    start_time = Column(DateTime, nullable=True)
    seconds = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Timer {self.owner_id} task={self.task_id} running={self.is_running}>"
