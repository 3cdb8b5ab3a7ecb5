"""Tests for invoice e-mail dispatch."""

from unittest.mock import AsyncMock

import pytest

from invoicing.dispatch import (
    InvoiceDispatcher,
    approval_request_message,
    default_message,
    default_subject,
)
from invoicing.errors import StateConflict, UpstreamFailure, ValidationError
from notifications.email_client import EmailClientError
from state_machine.invoice_state import InvoiceState
from state_machine.models import FreelancerProfile, InvoiceCreate

from conftest import add_task, log_hours


@pytest.fixture
def email_client():
    client = AsyncMock()
    client.send_email = AsyncMock(return_value={"delivered": True, "response": "OK"})
    return client


@pytest.fixture
def dispatcher(engine, email_client):
    return InvoiceDispatcher(engine, email_client)


@pytest.fixture
def draft(engine, store):
    task = add_task(store, "Task A", "50")
    log_hours(store, task, "2")
    log_hours(store, task, "3")
    return engine.create_invoice(
        InvoiceCreate(task_ids=[task.id], client_name="Acme", client_email="client@example.com")
    )


class TestMessages:
    def test_subject(self, draft) -> None:
        assert default_subject(draft) == f"Invoice #{draft.number} - 250.00"

    def test_body_signed_with_business_name(self, draft) -> None:
        profile = FreelancerProfile(full_name="Ada", email="ada@x.com", business_name="Ada Studio")

        body = default_message(draft, profile)

        assert body.startswith("Dear Acme,")
        assert "- Amount Due: $250.00" in body
        assert "- Hours: 5.0" in body
        assert body.endswith("Ada Studio")

    def test_body_without_profile(self, draft) -> None:
        assert default_message(draft).endswith("Your Business Name")

    def test_approval_request_contains_link(self, engine, draft) -> None:
        pending = engine.send_for_approval(draft.id)
        assert pending.approval_link in approval_request_message(pending)


class TestEmailInvoice:
    @pytest.mark.asyncio
    async def test_delivery_sends_draft(self, dispatcher, email_client, draft) -> None:
        result = await dispatcher.email_invoice(draft.id)

        assert result["delivered"] is True
        assert result["invoice"].status.value == InvoiceState.SENT
        args, kwargs = email_client.send_email.call_args
        assert args[0] == "client@example.com"
        assert args[1] == default_subject(draft)
        assert kwargs["from_name"] == "Smart Invoice"
        assert kwargs["amount"] == "250.00"

    @pytest.mark.asyncio
    async def test_mailto_handoff_keeps_draft(self, dispatcher, email_client, draft) -> None:
        email_client.send_email.return_value = {"delivered": False, "mailto": "mailto:x"}

        result = await dispatcher.email_invoice(draft.id)

        assert result["mailto"] == "mailto:x"
        assert result["invoice"].status.value == InvoiceState.DRAFT

    @pytest.mark.asyncio
    async def test_resend_keeps_status(self, engine, dispatcher, draft) -> None:
        engine.send(draft.id)

        result = await dispatcher.email_invoice(draft.id, to="other@example.com", subject="Again")

        assert result["invoice"].status.value == InvoiceState.SENT

    @pytest.mark.asyncio
    async def test_missing_recipient(self, engine, store, dispatcher, email_client) -> None:
        task = add_task(store)
        log_hours(store, task, "1")
        invoice = engine.create_invoice(InvoiceCreate(task_ids=[task.id]))

        with pytest.raises(ValidationError):
            await dispatcher.email_invoice(invoice.id)

        email_client.send_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_upstream_failure_leaves_draft(self, engine, dispatcher, email_client, draft) -> None:
        email_client.send_email.side_effect = EmailClientError("boom", status_code=500)

        with pytest.raises(UpstreamFailure) as exc_info:
            await dispatcher.email_invoice(draft.id)

        assert exc_info.value.service == "email"
        assert engine.get_invoice(draft.id).status.value == InvoiceState.DRAFT

    @pytest.mark.asyncio
    async def test_status_change_during_delivery(self, engine, dispatcher, email_client, draft) -> None:
        """The invoice leaves draft while the e-mail is in flight."""

        async def deliver_after_approval_request(*args, **kwargs):
            engine.send_for_approval(draft.id)
            return {"delivered": True, "response": "OK"}

        email_client.send_email.side_effect = deliver_after_approval_request

        result = await dispatcher.email_invoice(draft.id)

        assert result["delivered"] is True
        assert result["invoice"].status.value == InvoiceState.PENDING_APPROVAL


class TestEmailApprovalRequest:
    @pytest.mark.asyncio
    async def test_sends_link(self, engine, store, dispatcher, email_client, draft) -> None:
        store.create_profile(FreelancerProfile(full_name="Ada", email="ada@x.com"))
        pending = engine.send_for_approval(draft.id)

        result = await dispatcher.email_approval_request(draft.id)

        assert result["delivered"] is True
        args, kwargs = email_client.send_email.call_args
        assert args[1] == f"Please approve invoice #{pending.number}"
        assert pending.approval_link in args[2]
        assert kwargs["from_name"] == "Ada"

    @pytest.mark.asyncio
    async def test_requires_pending_invoice(self, dispatcher, email_client, draft) -> None:
        with pytest.raises(StateConflict):
            await dispatcher.email_approval_request(draft.id)

        email_client.send_email.assert_not_called()
