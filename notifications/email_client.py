"""
EmailJS REST client for sending invoice e-mails.

Documentation: https://www.emailjs.com/docs/rest-api/send/

When the EmailJS keys are missing the client does not send anything; it
returns a ``mailto:`` URL so the owner can send the message from their own
mail program.
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class EmailClientError(Exception):
    """Error communicating with EmailJS."""

    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[str] = None):
        self.status_code = status_code
        self.response = response
        super().__init__(message)


def build_mailto(to: str, subject: str, body: str) -> str:
    """Build a mailto: URL with subject and body pre-filled."""
    return f"mailto:{to}?subject={quote(subject)}&body={quote(body)}"


class EmailClient:
    """
    Client for the EmailJS send endpoint.

    Features:
    - Send a templated e-mail with arbitrary template params
    - mailto: hand-off when not configured
    - Async HTTP calls
    """

    BASE_URL = "https://api.emailjs.com"
    SEND_PATH = "/api/v1.0/email/send"

    def __init__(
        self,
        service_id: Optional[str] = None,
        template_id: Optional[str] = None,
        public_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize EmailJS client.

        Args:
            service_id: EmailJS service id.
            template_id: EmailJS template id.
            public_key: EmailJS public key (sent as user_id).
            base_url: Override of the API origin.
            timeout: HTTP request timeout in seconds.
            transport: Custom httpx transport (tests use MockTransport).
        """
        self.service_id = service_id
        self.template_id = template_id
        self.public_key = public_key
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        """Check if all three EmailJS keys are present."""
        return bool(self.service_id and self.template_id and self.public_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        **params: Any,
    ) -> dict[str, Any]:
        """
        Send an e-mail through EmailJS.

        Args:
            to: Recipient address.
            subject: Subject line.
            body: Plain-text message.
            **params: Extra template params (from_name, invoice_id, amount, ...).

        Returns:
            ``{"delivered": True, ...}`` after a successful send, or
            ``{"delivered": False, "mailto": url}`` when unconfigured.

        Raises:
            EmailClientError: If sending fails.
        """
        if not self.is_configured:
            logger.warning("EmailJS not configured - handing off to mailto")
            return {"delivered": False, "mailto": build_mailto(to, subject, body)}

        payload = {
            "service_id": self.service_id,
            "template_id": self.template_id,
            "user_id": self.public_key,
            "template_params": {
                "to_email": to,
                "subject": subject,
                "message": body,
                **params,
            },
        }

        text = await self._make_request("POST", self.SEND_PATH, json=payload)
        logger.info(f"E-mail sent to {to}: {subject}")
        return {"delivered": True, "response": text}

    async def _make_request(self, method: str, url: str, **kwargs: Any) -> str:
        """Make HTTP request to EmailJS. The API answers with plain text."""
        client = await self._get_client()

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise EmailClientError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise EmailClientError(f"Request error: {e}") from e

        if response.status_code >= 400:
            raise EmailClientError(
                f"EmailJS error: {response.text or 'Unknown error'}",
                status_code=response.status_code,
                response=response.text,
            )

        return response.text
