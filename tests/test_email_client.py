"""Tests for the EmailJS client."""

import json
from urllib.parse import unquote

import httpx
import pytest

from notifications.email_client import EmailClient, EmailClientError, build_mailto


def configured_client(handler) -> EmailClient:
    return EmailClient(
        service_id="svc",
        template_id="tpl",
        public_key="pub",
        transport=httpx.MockTransport(handler),
    )


class TestMailto:
    def test_encodes_subject_and_body(self) -> None:
        url = build_mailto("client@example.com", "Invoice #INV-1 - 250.00", "Line 1\nLine 2 & more")

        assert url.startswith("mailto:client@example.com?subject=")
        subject, body = url.split("?", 1)[1].split("&body=")
        assert unquote(subject[len("subject="):]) == "Invoice #INV-1 - 250.00"
        assert unquote(body) == "Line 1\nLine 2 & more"
        assert " " not in url


class TestEmailClient:
    """Test EmailClient send behaviour."""

    @pytest.mark.asyncio
    async def test_unconfigured_returns_mailto(self) -> None:
        def handler(request):
            raise AssertionError("no request expected")

        client = EmailClient(service_id="svc", transport=httpx.MockTransport(handler))

        result = await client.send_email("c@example.com", "Hi", "Body")

        assert not client.is_configured
        assert result["delivered"] is False
        assert result["mailto"].startswith("mailto:c@example.com")

    @pytest.mark.asyncio
    async def test_posts_template_payload(self) -> None:
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, text="OK")

        client = configured_client(handler)

        result = await client.send_email(
            "c@example.com", "Subject", "Body", from_name="Ada", invoice_id="inv-1", amount="250.00"
        )
        await client.close()

        assert result == {"delivered": True, "response": "OK"}
        assert captured["url"] == "https://api.emailjs.com/api/v1.0/email/send"
        assert captured["body"] == {
            "service_id": "svc",
            "template_id": "tpl",
            "user_id": "pub",
            "template_params": {
                "to_email": "c@example.com",
                "subject": "Subject",
                "message": "Body",
                "from_name": "Ada",
                "invoice_id": "inv-1",
                "amount": "250.00",
            },
        }

    @pytest.mark.asyncio
    async def test_error_status_raises(self) -> None:
        client = configured_client(lambda request: httpx.Response(400, text="The user_id is invalid"))

        with pytest.raises(EmailClientError) as exc_info:
            await client.send_email("c@example.com", "Subject", "Body")

        assert exc_info.value.status_code == 400
        assert "user_id is invalid" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_raises(self) -> None:
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = configured_client(handler)

        with pytest.raises(EmailClientError, match="timeout"):
            await client.send_email("c@example.com", "Subject", "Body")
