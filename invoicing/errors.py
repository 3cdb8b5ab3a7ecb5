"""Typed errors for invoice, task and time log operations."""

from typing import Any, Optional


class InvoicingError(Exception):
    """Base class for domain errors surfaced to callers."""

    code = "INVOICING_ERROR"

    def __init__(self, message: str, **details: Any):
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {"error": self.code, "message": str(self), **self.details}


class ValidationError(InvoicingError):
    """A required field is missing or an input is not acceptable."""

    code = "VALIDATION_ERROR"


class NotFound(InvoicingError):
    """Unknown invoice, task, time log, profile or approval token."""

    code = "NOT_FOUND"


class StateConflict(InvoicingError):
    """A transition was attempted from the wrong status."""

    code = "STATE_CONFLICT"

    def __init__(
        self,
        message: str,
        current_state: str,
        attempted_action: str,
        invoice_id: Optional[str] = None,
        invoice: Optional[Any] = None,
    ):
        self.current_state = current_state
        self.attempted_action = attempted_action
        self.invoice_id = invoice_id
        # Snapshot of the invoice as it stands, so callers can report it.
        self.invoice = invoice
        super().__init__(
            message,
            current_state=current_state,
            attempted_action=attempted_action,
            invoice_id=invoice_id,
        )


class ApprovalConflict(StateConflict):
    """A client decision arrived for an invoice that is no longer awaiting one."""

    code = "APPROVAL_CONFLICT"


class UpstreamFailure(InvoicingError):
    """Persistence, e-mail or ClickUp call failed; prior state is retained."""

    code = "UPSTREAM_FAILURE"

    def __init__(self, message: str, service: str, **details: Any):
        self.service = service
        super().__init__(message, service=service, **details)
