"""Third-party task sources."""

from integrations.clickup_client import ClickUpClient, ClickUpClientError, to_task_create

__all__ = ["ClickUpClient", "ClickUpClientError", "to_task_create"]
