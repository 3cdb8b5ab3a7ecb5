"""In-memory entity store for development and testing."""

import logging
from typing import Any, Optional
from uuid import uuid4

from database.base import BaseEntityStore, ChangeAction
from invoicing.errors import NotFound, StateConflict, ValidationError
from state_machine.models import (
    FreelancerProfile,
    Invoice,
    InvoiceCreate,
    Task,
    TaskCreate,
    TaskUpdate,
    TimeLog,
    TimeLogCreate,
    TimeLogUpdate,
    TimerState,
    utcnow,
)

logger = logging.getLogger(__name__)


class InMemoryEntityStore(BaseEntityStore):
    """Simple in-memory store for one owner. Returned models are deep copies."""

    def __init__(self, owner_id: str) -> None:
        super().__init__(owner_id)
        self._tasks: dict[str, Task] = {}
        self._time_logs: dict[str, TimeLog] = {}
        self._invoices: dict[str, Invoice] = {}
        self._history: dict[str, list[dict[str, Any]]] = {}
        self._profile: Optional[FreelancerProfile] = None
        self._timer: Optional[TimerState] = None

    # Tasks

    def list_tasks(self) -> list[Task]:
        tasks = sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=True)
        return [task.model_copy(deep=True) for task in tasks]

    def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def create_task(self, data: TaskCreate) -> Task:
        task = Task(id=str(uuid4()), created_at=utcnow(), **data.model_dump())
        self._tasks[task.id] = task
        self._emit("task", ChangeAction.CREATED, task.id)
        return task.model_copy(deep=True)

    def update_task(self, task_id: str, data: TaskUpdate) -> Task:
        task = self._require_task(task_id)
        updated = task.model_copy(update=data.model_dump(exclude_unset=True))
        self._tasks[task_id] = updated
        self._emit("task", ChangeAction.UPDATED, task_id)
        return updated.model_copy(deep=True)

    def delete_task(self, task_id: str) -> int:
        self._require_task(task_id)
        doomed = [log_id for log_id, log in self._time_logs.items() if log.task_id == task_id]
        for log_id in doomed:
            del self._time_logs[log_id]
        del self._tasks[task_id]
        self._emit("task", ChangeAction.DELETED, task_id)
        return len(doomed)

    def _require_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFound(f"Task '{task_id}' not found", task_id=task_id)
        return task

    # Time logs

    def list_time_logs(self, task_id: Optional[str] = None) -> list[TimeLog]:
        logs = [
            log for log in self._time_logs.values()
            if task_id is None or log.task_id == task_id
        ]
        logs.sort(key=lambda log: log.created_at, reverse=True)
        return [log.model_copy(deep=True) for log in logs]

    def get_time_log(self, log_id: str) -> Optional[TimeLog]:
        log = self._time_logs.get(log_id)
        return log.model_copy(deep=True) if log else None

    def create_time_log(self, data: TimeLogCreate) -> TimeLog:
        self._require_task(data.task_id)
        log = TimeLog(id=str(uuid4()), created_at=utcnow(), **data.model_dump())
        self._time_logs[log.id] = log
        self._emit("time_log", ChangeAction.CREATED, log.id)
        return log.model_copy(deep=True)

    def update_time_log(self, log_id: str, data: TimeLogUpdate) -> TimeLog:
        log = self._time_logs.get(log_id)
        if log is None:
            raise NotFound(f"Time log '{log_id}' not found", log_id=log_id)
        changes = data.model_dump(exclude_unset=True)
        if "task_id" in changes:
            self._require_task(changes["task_id"])
        updated = log.model_copy(update=changes)
        self._time_logs[log_id] = updated
        self._emit("time_log", ChangeAction.UPDATED, log_id)
        return updated.model_copy(deep=True)

    def delete_time_log(self, log_id: str) -> None:
        if self._time_logs.pop(log_id, None) is None:
            raise NotFound(f"Time log '{log_id}' not found", log_id=log_id)
        self._emit("time_log", ChangeAction.DELETED, log_id)

    # Invoices

    def list_invoices(self, status: Optional[str] = None) -> list[Invoice]:
        invoices = [
            inv for inv in self._invoices.values()
            if status is None or inv.status == status
        ]
        invoices.sort(key=lambda inv: inv.created_at, reverse=True)
        return [inv.model_copy(deep=True) for inv in invoices]

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        invoice = self._invoices.get(invoice_id)
        return invoice.model_copy(deep=True) if invoice else None

    def create_invoice(self, data: InvoiceCreate, total_hours: Any, total_amount: Any) -> Invoice:
        if not data.task_ids:
            raise ValidationError("An invoice needs at least one task", fields=["task_ids"])
        invoice = Invoice(
            id=str(uuid4()),
            created_at=utcnow(),
            total_hours=total_hours,
            total_amount=total_amount,
            **data.model_dump(),
        )
        self._invoices[invoice.id] = invoice
        self._history[invoice.id] = [
            self._history_entry(None, invoice.status.value, "create", "owner")
        ]
        self._emit("invoice", ChangeAction.CREATED, invoice.id)
        return invoice.model_copy(deep=True)

    def update_invoice(
        self,
        invoice_id: str,
        changes: dict[str, Any],
        expected_status: Optional[str] = None,
        trigger: Optional[str] = None,
        triggered_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Invoice:
        current = self._invoices.get(invoice_id)
        if current is None:
            raise NotFound(f"Invoice '{invoice_id}' not found", invoice_id=invoice_id)

        if expected_status is not None and current.status != expected_status:
            raise StateConflict(
                f"Invoice '{invoice_id}' is '{current.status.value}', expected '{expected_status}'",
                current_state=current.status.value,
                attempted_action=trigger or "update",
                invoice_id=invoice_id,
                invoice=current.model_copy(deep=True),
            )

        self._check_invoice_changes(current, changes)
        # Validate through the model so enums and decimals are coerced.
        updated = Invoice.model_validate({**current.model_dump(), **changes})
        if "approval_link" in changes and changes["approval_link"]:
            for other in self._invoices.values():
                if other.id != invoice_id and other.approval_link == changes["approval_link"]:
                    raise ValidationError("Approval link already in use", invoice_id=invoice_id)

        self._invoices[invoice_id] = updated
        if trigger and updated.status != current.status:
            self._history.setdefault(invoice_id, []).append(
                self._history_entry(
                    current.status.value, updated.status.value, trigger, triggered_by, reason
                )
            )
        self._emit("invoice", ChangeAction.UPDATED, invoice_id)
        return updated.model_copy(deep=True)

    def delete_invoice(self, invoice_id: str) -> None:
        if self._invoices.pop(invoice_id, None) is None:
            raise NotFound(f"Invoice '{invoice_id}' not found", invoice_id=invoice_id)
        self._history.pop(invoice_id, None)
        self._emit("invoice", ChangeAction.DELETED, invoice_id)

    def get_history(self, invoice_id: str) -> list[dict[str, Any]]:
        return [dict(entry) for entry in self._history.get(invoice_id, [])]

    # Profile

    def get_profile(self) -> Optional[FreelancerProfile]:
        return self._profile.model_copy(deep=True) if self._profile else None

    def create_profile(self, profile: FreelancerProfile) -> FreelancerProfile:
        if self._profile is not None:
            raise ValidationError("Profile already exists", owner_id=self.owner_id)
        self._profile = profile.model_copy(deep=True)
        self._emit("profile", ChangeAction.CREATED, self.owner_id)
        return profile.model_copy(deep=True)

    def update_profile(self, changes: dict[str, Any]) -> FreelancerProfile:
        if self._profile is None:
            raise NotFound("Profile not found", owner_id=self.owner_id)
        self._profile = FreelancerProfile.model_validate({**self._profile.model_dump(), **changes})
        self._emit("profile", ChangeAction.UPDATED, self.owner_id)
        return self._profile.model_copy(deep=True)

    def delete_profile(self) -> None:
        if self._profile is None:
            raise NotFound("Profile not found", owner_id=self.owner_id)
        self._profile = None
        self._emit("profile", ChangeAction.DELETED, self.owner_id)

    # Timer

    def get_timer_state(self) -> Optional[TimerState]:
        return self._timer.model_copy(deep=True) if self._timer else None

    def save_timer_state(self, state: TimerState) -> None:
        self._timer = state.model_copy(deep=True)
