"""State machine module for invoice lifecycle management."""

from state_machine.invoice_state import InvoiceFSM, InvoiceState, TransitionError
from state_machine.models import (
    FreelancerProfile,
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    Task,
    TaskStatus,
    TimeLog,
)

__all__ = [
    "InvoiceFSM",
    "InvoiceState",
    "TransitionError",
    "FreelancerProfile",
    "Invoice",
    "InvoiceStatus",
    "PaymentMethod",
    "Task",
    "TaskStatus",
    "TimeLog",
]
