"""Core domain models for the freelancer invoicing system.

Attributes are snake_case in Python; JSON payloads use camelCase aliases
(``taskIds``, ``totalHours``) and accept either spelling on input.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


# Scales stored by the database; amounts keep RATE_PLACES + HOURS_PLACES digits.
RATE_PLACES = 2
HOURS_PLACES = 4


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the database stores datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus(str, Enum):
    """Task statuses."""

    ACTIVE = "active"
    COMPLETED = "completed"


class InvoiceStatus(str, Enum):
    """Possible invoice statuses matching state machine states."""

    DRAFT = "draft"
    SENT = "sent"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class PaymentMethod(str, Enum):
    """Payment methods a freelancer can offer on an approved invoice."""

    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"
    STRIPE = "stripe"
    CHECK = "check"


class BusinessType(str, Enum):
    """Kind of business behind a freelancer profile."""

    FREELANCER = "freelancer"
    AGENCY = "agency"
    CONSULTANT = "consultant"
    OTHER = "other"


class DomainModel(BaseModel):
    """Base for models exchanged with clients."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


# ============================================================================
# Tasks
# ============================================================================


class TaskCreate(DomainModel):
    """Payload for creating a task."""

    name: str = Field(..., min_length=1)
    rate: Decimal = Field(..., ge=0, decimal_places=RATE_PLACES, description="Hourly rate")
    status: TaskStatus = TaskStatus.ACTIVE
    description: Optional[str] = None


class TaskUpdate(DomainModel):
    """Partial task update."""

    name: Optional[str] = Field(None, min_length=1)
    rate: Optional[Decimal] = Field(None, ge=0, decimal_places=RATE_PLACES)
    status: Optional[TaskStatus] = None
    description: Optional[str] = None


class Task(TaskCreate):
    """A billable unit of work with an hourly rate."""

    id: str
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Time logs
# ============================================================================


class TimeLogCreate(DomainModel):
    """Payload for logging hours against a task."""

    task_id: str
    hours: Decimal = Field(..., gt=0, decimal_places=HOURS_PLACES)
    logged_on: date = Field(..., alias="date")
    description: Optional[str] = None


class TimeLogUpdate(DomainModel):
    """Partial time log update."""

    task_id: Optional[str] = None
    hours: Optional[Decimal] = Field(None, gt=0, decimal_places=HOURS_PLACES)
    logged_on: Optional[date] = Field(None, alias="date")
    description: Optional[str] = None


class TimeLog(TimeLogCreate):
    """A dated quantity of hours worked against a task."""

    id: str
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Invoices
# ============================================================================


class InvoiceCreate(DomainModel):
    """Request to build an invoice from a task selection."""

    task_ids: list[str]
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None


class InvoiceUpdate(DomainModel):
    """Fields the owner may edit directly on an invoice."""

    client_name: Optional[str] = None
    client_email: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None


class Invoice(DomainModel):
    """Invoice snapshot aggregating unbilled time across a set of tasks."""

    id: str
    task_ids: list[str] = Field(..., min_length=1)
    total_hours: Decimal = Field(..., ge=0)
    total_amount: Decimal = Field(..., ge=0)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    created_at: datetime = Field(default_factory=utcnow)
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    approval_link: Optional[str] = None
    approved_at: Optional[datetime] = None
    client_signature: Optional[str] = None
    client_comments: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    payment_instructions: Optional[str] = None

    @property
    def number(self) -> str:
        """Human-facing invoice number."""
        return f"INV-{self.id[:8]}"


# Fields computed once at creation and never written afterwards.
SNAPSHOT_FIELDS = frozenset({"id", "created_at", "total_hours", "total_amount"})

# Client decision fields, write-once after approval or rejection.
DECISION_FIELDS = frozenset({"approved_at", "client_signature", "client_comments"})


# ============================================================================
# Profile
# ============================================================================


class FreelancerProfile(DomainModel):
    """Freelancer business profile, one per account."""

    full_name: str = Field(..., min_length=1)
    email: str
    phone: Optional[str] = None
    logo_url: Optional[str] = None
    business_name: str = ""
    business_type: BusinessType = BusinessType.FREELANCER
    website: Optional[str] = None
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""
    profession: str = ""
    default_hourly_rate: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=RATE_PLACES)
    currency: str = Field(default="USD", max_length=3)
    time_zone: str = "UTC"
    preferred_payment_terms: str = "Net 30"

    @property
    def display_name(self) -> str:
        """Name shown as the invoice sender."""
        return self.business_name or self.full_name


# ============================================================================
# Work timer
# ============================================================================


class TimerState(DomainModel):
    """Serializable work timer state, persisted per owner."""

    task_id: Optional[str] = None
    is_running: bool = False
    start_time: Optional[datetime] = None
    # Seconds accumulated before the current run.
    seconds: int = 0
