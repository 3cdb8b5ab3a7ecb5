"""Approval link issuance and parsing.

Links look like ``{origin}/approve/{invoice_id}_{secret}``. Invoice ids are
uuid4 strings (no underscore), so the first underscore splits the token.
"""

import hmac
import secrets
from typing import Optional

APPROVE_PATH = "/approve/"
DEFAULT_TOKEN_BYTES = 16


def generate_secret(nbytes: int = DEFAULT_TOKEN_BYTES) -> str:
    """Random URL-safe hex secret from the OS CSPRNG."""
    return secrets.token_hex(nbytes)


def build_approval_token(invoice_id: str, secret: str) -> str:
    return f"{invoice_id}_{secret}"


def build_approval_link(origin: str, invoice_id: str, nbytes: int = DEFAULT_TOKEN_BYTES) -> str:
    """Issue a fresh approval link for an invoice."""
    token = build_approval_token(invoice_id, generate_secret(nbytes))
    return f"{origin.rstrip('/')}{APPROVE_PATH}{token}"


def parse_approval_token(token: str) -> Optional[tuple[str, str]]:
    """
    Split a token into (invoice_id, secret).

    Returns:
        The pair, or None when the token is malformed.
    """
    invoice_id, sep, secret = token.partition("_")
    if not sep or not invoice_id or not secret:
        return None
    return invoice_id, secret


def token_from_link(link: Optional[str]) -> Optional[str]:
    """Extract the token part of a stored approval link."""
    if not link or APPROVE_PATH not in link:
        return None
    return link.rsplit(APPROVE_PATH, 1)[1]


def token_matches_link(token: str, link: Optional[str]) -> bool:
    """Constant-time check that ``token`` is the one issued in ``link``."""
    issued = token_from_link(link)
    if issued is None:
        return False
    return hmac.compare_digest(issued.encode("utf-8"), token.encode("utf-8"))
