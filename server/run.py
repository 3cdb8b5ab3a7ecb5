#!/usr/bin/env python3
"""
Run the invoicing API server.

Usage:
    python server/run.py

Environment variables:
    HOST - Server host (default: 0.0.0.0)
    PORT - Server port (default: 8000)
    DEBUG - Enable auto-reload (default: false)
    DATABASE_URL - SQLAlchemy URL (default: sqlite:///./invoices.db)
    PUBLIC_ORIGIN - Origin used in approval links
    EMAILJS_SERVICE_ID / EMAILJS_TEMPLATE_ID / EMAILJS_PUBLIC_KEY - E-mail delivery
    CLICKUP_CLIENT_ID / CLICKUP_CLIENT_SECRET - ClickUp import
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import uvicorn
from server.config import get_settings


def main() -> None:
    """Run the server."""
    settings = get_settings()

    print(f"""
Freelancer Invoicing API
  Host: {settings.host}
  Port: {settings.port}
  Debug: {settings.debug}
  Database: {settings.database_url.split('@')[-1]}
  Approval origin: {settings.public_origin}
  EmailJS configured: {bool(settings.emailjs_service_id and settings.emailjs_public_key)}
  ClickUp configured: {bool(settings.clickup_client_id)}
    """)

    uvicorn.run(
        "server.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
