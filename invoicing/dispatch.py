"""
Invoice e-mail dispatch.

Composes the invoice and approval-request e-mails, hands them to the
EmailJS client, and moves a draft invoice to ``sent`` once an e-mail has
actually been delivered. The mailto hand-off changes no state.
"""

import logging
from typing import Any, Optional

from invoicing.engine import InvoiceLifecycleEngine
from invoicing.errors import StateConflict, UpstreamFailure, ValidationError
from notifications.email_client import EmailClient, EmailClientError
from state_machine.invoice_state import InvoiceState
from state_machine.models import FreelancerProfile, Invoice

logger = logging.getLogger(__name__)

DEFAULT_SENDER_NAME = "Smart Invoice"
DEFAULT_SIGNATURE = "Your Business Name"


def default_subject(invoice: Invoice) -> str:
    return f"Invoice #{invoice.number} - {invoice.total_amount:.2f}"


def default_message(invoice: Invoice, profile: Optional[FreelancerProfile] = None) -> str:
    """Plain-text body of the invoice e-mail."""
    signature = (profile.business_name if profile else "") or DEFAULT_SIGNATURE
    return (
        f"Dear {invoice.client_name or 'Client'},\n"
        "\n"
        "Please find attached your invoice for the services provided.\n"
        "\n"
        "Invoice Details:\n"
        f"- Invoice Number: {invoice.number}\n"
        f"- Amount Due: ${invoice.total_amount:.2f}\n"
        f"- Hours: {invoice.total_hours:.1f}\n"
        "\n"
        "Payment is due within 30 days of the invoice date.\n"
        "\n"
        "Thank you for your business!\n"
        "\n"
        "Best regards,\n"
        f"{signature}"
    )


def approval_request_message(invoice: Invoice, profile: Optional[FreelancerProfile] = None) -> str:
    """Plain-text body inviting the client to review and approve."""
    sender = profile.display_name if profile else DEFAULT_SIGNATURE
    return (
        f"Dear {invoice.client_name or 'Client'},\n"
        "\n"
        f"Invoice {invoice.number} for ${invoice.total_amount:.2f} "
        f"({invoice.total_hours:.1f} hours) is ready for your review.\n"
        "\n"
        "Please review and approve or reject it here:\n"
        f"{invoice.approval_link}\n"
        "\n"
        "Best regards,\n"
        f"{sender}"
    )


class InvoiceDispatcher:
    """Sends invoice and approval-request e-mails for one owner."""

    def __init__(self, engine: InvoiceLifecycleEngine, email_client: EmailClient):
        self.engine = engine
        self.email_client = email_client

    async def email_invoice(
        self,
        invoice_id: str,
        to: Optional[str] = None,
        subject: Optional[str] = None,
        message: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        E-mail an invoice to the client.

        Args:
            invoice_id: Invoice to send.
            to: Recipient; defaults to the invoice's client email.
            subject: Subject line; defaults to the invoice number and amount.
            message: Body; defaults to the standard invoice letter.

        Returns:
            Dict with ``delivered``, optional ``mailto`` and the (possibly
            updated) ``invoice``.

        Raises:
            ValidationError: No recipient.
            UpstreamFailure: EmailJS rejected or timed out; nothing changes.
        """
        invoice = self.engine.get_invoice(invoice_id)
        profile = self.engine.store.get_profile()

        recipient = self._recipient(invoice, to)
        result = await self._send(
            recipient,
            subject or default_subject(invoice),
            message or default_message(invoice, profile),
            invoice,
            profile,
        )

        if result.get("delivered") and invoice.status.value == InvoiceState.DRAFT:
            try:
                invoice = self.engine.send(invoice_id)
            except StateConflict as e:
                # The e-mail is out; someone else moved the invoice meanwhile.
                logger.warning(f"Invoice {invoice_id} e-mailed but not marked sent: {e}")
                invoice = self.engine.get_invoice(invoice_id)

        return {**result, "invoice": invoice}

    async def email_approval_request(self, invoice_id: str) -> dict[str, Any]:
        """
        E-mail the existing approval link to the client.

        Raises:
            StateConflict: The invoice is not awaiting approval.
            ValidationError: No client email.
            UpstreamFailure: EmailJS rejected or timed out.
        """
        invoice = self.engine.get_invoice(invoice_id)
        if invoice.status.value != InvoiceState.PENDING_APPROVAL or not invoice.approval_link:
            raise StateConflict(
                f"Invoice '{invoice_id}' has no pending approval request "
                f"(status '{invoice.status.value}')",
                current_state=invoice.status.value,
                attempted_action="email_approval_request",
                invoice_id=invoice_id,
                invoice=invoice,
            )

        profile = self.engine.store.get_profile()
        result = await self._send(
            self._recipient(invoice, None),
            f"Please approve invoice #{invoice.number}",
            approval_request_message(invoice, profile),
            invoice,
            profile,
        )
        return {**result, "invoice": invoice}

    @staticmethod
    def _recipient(invoice: Invoice, to: Optional[str]) -> str:
        recipient = (to or invoice.client_email or "").strip()
        if not recipient:
            raise ValidationError(
                "Missing recipient: add a client email or pass one explicitly",
                invoice_id=invoice.id,
                fields=["to"],
            )
        return recipient

    async def _send(
        self,
        to: str,
        subject: str,
        body: str,
        invoice: Invoice,
        profile: Optional[FreelancerProfile],
    ) -> dict[str, Any]:
        from_name = (profile.display_name if profile else "") or DEFAULT_SENDER_NAME
        try:
            return await self.email_client.send_email(
                to,
                subject,
                body,
                from_name=from_name,
                invoice_id=invoice.id,
                amount=f"{invoice.total_amount:.2f}",
            )
        except EmailClientError as e:
            logger.error(f"Sending invoice {invoice.id} to {to} failed: {e}")
            raise UpstreamFailure(
                f"E-mail delivery failed: {e}",
                service="email",
                invoice_id=invoice.id,
                status_code=e.status_code,
            ) from e
