"""Index of billed tasks, maintained as invoices come and go."""

import logging
from typing import Iterable

from state_machine.models import Invoice

logger = logging.getLogger(__name__)


class BilledTaskIndex:
    """
    Maps task id -> ids of the invoices that include it.

    A task is billed while at least one existing invoice references it,
    whatever that invoice's status (a rejected invoice still holds its tasks).
    """

    def __init__(self, invoices: Iterable[Invoice] = ()) -> None:
        self._owners: dict[str, set[str]] = {}
        self._tasks_by_invoice: dict[str, frozenset[str]] = {}
        for invoice in invoices:
            self.add(invoice)

    @classmethod
    def rebuild(cls, invoices: Iterable[Invoice]) -> "BilledTaskIndex":
        """Build a fresh index from a full invoice list."""
        return cls(invoices)

    def add(self, invoice: Invoice) -> None:
        """Register a newly created invoice."""
        self._set_tasks(invoice.id, invoice.task_ids)

    def update(self, invoice: Invoice) -> None:
        """Re-register an invoice whose task set may have changed."""
        self._set_tasks(invoice.id, invoice.task_ids)

    def remove(self, invoice_id: str) -> None:
        """Forget a deleted invoice, releasing tasks no other invoice holds."""
        for task_id in self._tasks_by_invoice.pop(invoice_id, frozenset()):
            owners = self._owners.get(task_id)
            if owners is None:
                continue
            owners.discard(invoice_id)
            if not owners:
                del self._owners[task_id]

    def _set_tasks(self, invoice_id: str, task_ids: Iterable[str]) -> None:
        self.remove(invoice_id)
        tasks = frozenset(task_ids)
        self._tasks_by_invoice[invoice_id] = tasks
        for task_id in tasks:
            self._owners.setdefault(task_id, set()).add(invoice_id)
        logger.debug(f"Billed index: invoice {invoice_id} holds {len(tasks)} task(s)")

    def is_billed(self, task_id: str) -> bool:
        """Check whether any invoice references the task."""
        return task_id in self._owners

    def invoices_for_task(self, task_id: str) -> set[str]:
        """Ids of invoices including the task."""
        return set(self._owners.get(task_id, ()))

    def billed_task_ids(self) -> set[str]:
        """All task ids currently on an invoice."""
        return set(self._owners)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._owners

    def __len__(self) -> int:
        return len(self._owners)
