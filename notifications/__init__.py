"""Outbound e-mail."""

from notifications.email_client import EmailClient, EmailClientError, build_mailto

__all__ = ["EmailClient", "EmailClientError", "build_mailto"]
