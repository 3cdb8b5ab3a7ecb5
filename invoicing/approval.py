"""
Client-facing approval flow.

A client holding an approval link can view the invoice breakdown and apply
exactly one decision (approve with a signature, or reject with a reason).
The client never sees the owner's other data; everything is resolved from
the token.
"""

import logging
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import Field

from invoicing.engine import InvoiceLifecycleEngine
from invoicing.errors import ApprovalConflict, NotFound, StateConflict
from invoicing.tokens import parse_approval_token, token_matches_link
from state_machine.invoice_state import InvoiceState
from state_machine.models import DomainModel, FreelancerProfile, Invoice

logger = logging.getLogger(__name__)

UNKNOWN_TASK_NAME = "Unknown Task"


class ApproveDecision(DomainModel):
    """Client approves, signing with their name."""

    action: Literal["approve"] = "approve"
    signature: str = Field(..., min_length=1)
    comments: Optional[str] = None


class RejectDecision(DomainModel):
    """Client rejects, giving a reason."""

    action: Literal["reject"] = "reject"
    reason: str = Field(..., min_length=1)


Decision = Annotated[Union[ApproveDecision, RejectDecision], Field(discriminator="action")]


class ApprovalLine(DomainModel):
    """One task row of the breakdown shown to the client."""

    task_id: str
    name: str
    hours: Decimal
    rate: Decimal
    amount: Decimal


class ApprovalView(DomainModel):
    """Everything the client needs to review an invoice."""

    invoice: Invoice
    profile: Optional[FreelancerProfile] = None
    lines: list[ApprovalLine]
    total_hours: Decimal
    total_amount: Decimal
    awaiting_decision: bool


class ApprovalSession:
    """Resolves approval tokens and applies client decisions."""

    def __init__(self, engine: InvoiceLifecycleEngine):
        self.engine = engine
        self.store = engine.store

    def resolve(self, token: str) -> ApprovalView:
        """
        Load the invoice behind an approval token.

        Raises:
            NotFound: Malformed token, unknown invoice, or a token that was
                not issued for this invoice.
        """
        invoice = self._invoice_for_token(token)
        return ApprovalView(
            invoice=invoice,
            profile=self.store.get_profile(),
            lines=self._breakdown(invoice),
            total_hours=invoice.total_hours,
            total_amount=invoice.total_amount,
            awaiting_decision=invoice.status.value == InvoiceState.PENDING_APPROVAL,
        )

    def decide(self, token: str, decision: Union[ApproveDecision, RejectDecision]) -> Invoice:
        """
        Apply the client's decision.

        Raises:
            NotFound: Token does not resolve.
            ApprovalConflict: The invoice already left pending_approval. The
                error carries the recorded status and invoice.
            ValidationError: Missing signature or reason.
        """
        invoice = self._invoice_for_token(token)
        if invoice.status.value != InvoiceState.PENDING_APPROVAL:
            raise self._already_decided(invoice, decision.action)

        try:
            if isinstance(decision, ApproveDecision):
                updated = self.engine.client_approve(
                    invoice.id, decision.signature, decision.comments
                )
            else:
                updated = self.engine.client_reject(invoice.id, decision.reason)
        except StateConflict as e:
            # Another decision landed between our read and the transition.
            current = e.invoice or self.store.get_invoice(invoice.id) or invoice
            raise self._already_decided(current, decision.action) from e

        logger.info(f"Client decision '{decision.action}' applied to invoice {invoice.id}")
        return updated

    def _invoice_for_token(self, token: str) -> Invoice:
        parsed = parse_approval_token(token or "")
        invoice = self.store.get_invoice(parsed[0]) if parsed else None
        if invoice is None or not token_matches_link(token, invoice.approval_link):
            logger.warning("Approval token did not resolve")
            raise NotFound("Approval link is invalid or has expired")
        return invoice

    def _breakdown(self, invoice: Invoice) -> list[ApprovalLine]:
        # Hours are split evenly across tasks; the snapshot keeps no per-task figures.
        share = invoice.total_hours / len(invoice.task_ids)
        lines = []
        for task_id in invoice.task_ids:
            task = self.store.get_task(task_id)
            rate = task.rate if task else Decimal("0")
            lines.append(
                ApprovalLine(
                    task_id=task_id,
                    name=task.name if task else UNKNOWN_TASK_NAME,
                    hours=share,
                    rate=rate,
                    amount=share * rate,
                )
            )
        return lines

    @staticmethod
    def _already_decided(invoice: Invoice, action: str) -> ApprovalConflict:
        status = invoice.status.value
        return ApprovalConflict(
            f"Invoice '{invoice.id}' is no longer awaiting approval (status '{status}')",
            current_state=status,
            attempted_action=f"client_{action}",
            invoice_id=invoice.id,
            invoice=invoice,
        )
