"""Entity store contract shared by the in-memory and database stores."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from invoicing.errors import ValidationError
from state_machine.invoice_state import InvoiceState
from state_machine.models import (
    DECISION_FIELDS,
    SNAPSHOT_FIELDS,
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


class ChangeAction:
    """Kinds of store mutation."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class StoreChange:
    """Notification describing one committed mutation."""

    entity: str
    action: str
    entity_id: str
    owner_id: str
    timestamp: datetime = field(default_factory=utcnow)


ChangeListener = Callable[[StoreChange], None]


class EntityStore(Protocol):
    """Persistence contract for one owner's tasks, time logs, invoices and profile."""

    owner_id: str

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]: ...

    def list_tasks(self) -> list[Task]: ...
    def get_task(self, task_id: str) -> Optional[Task]: ...
    def create_task(self, data: TaskCreate) -> Task: ...
    def update_task(self, task_id: str, data: TaskUpdate) -> Task: ...
    def delete_task(self, task_id: str) -> int: ...

    def list_time_logs(self, task_id: Optional[str] = None) -> list[TimeLog]: ...
    def get_time_log(self, log_id: str) -> Optional[TimeLog]: ...
    def create_time_log(self, data: TimeLogCreate) -> TimeLog: ...
    def update_time_log(self, log_id: str, data: TimeLogUpdate) -> TimeLog: ...
    def delete_time_log(self, log_id: str) -> None: ...

    def list_invoices(self, status: Optional[str] = None) -> list[Invoice]: ...
    def get_invoice(self, invoice_id: str) -> Optional[Invoice]: ...
    def create_invoice(
        self, data: InvoiceCreate, total_hours: Any, total_amount: Any
    ) -> Invoice: ...
    def update_invoice(
        self,
        invoice_id: str,
        changes: dict[str, Any],
        expected_status: Optional[str] = None,
        trigger: Optional[str] = None,
        triggered_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Invoice: ...
    def delete_invoice(self, invoice_id: str) -> None: ...

    def get_history(self, invoice_id: str) -> list[dict[str, Any]]: ...

    def get_profile(self) -> Optional[FreelancerProfile]: ...
    def create_profile(self, profile: FreelancerProfile) -> FreelancerProfile: ...
    def update_profile(self, changes: dict[str, Any]) -> FreelancerProfile: ...
    def delete_profile(self) -> None: ...

    def get_timer_state(self) -> Optional[TimerState]: ...
    def save_timer_state(self, state: TimerState) -> None: ...


class BaseEntityStore:
    """Change notification and invoice update rules common to every store."""

    def __init__(self, owner_id: str) -> None:
        if not owner_id:
            raise ValueError("owner_id is required")
        self.owner_id = owner_id
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a listener called synchronously after each committed mutation.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @staticmethod
    def _history_entry(
        previous_state: Optional[str],
        new_state: str,
        trigger: str,
        triggered_by: Optional[str] = None,
        reason: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> dict[str, Any]:
        return {
            "timestamp": (timestamp or utcnow()).isoformat(),
            "source": previous_state,
            "dest": new_state,
            "trigger": trigger,
            "triggered_by": triggered_by,
            "reason": reason,
        }

    def _emit(self, entity: str, action: str, entity_id: str) -> None:
        change = StoreChange(
            entity=entity,
            action=action,
            entity_id=entity_id,
            owner_id=self.owner_id,
        )
        logger.debug(f"Store change: {entity} {action} {entity_id}")
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Store listener failed on {entity} {action}: {e}")

    @staticmethod
    def _check_invoice_changes(current: Invoice, changes: dict[str, Any]) -> None:
        """
        Reject invoice updates that would break the snapshot or decision rules.

        Raises:
            ValidationError: On unknown fields, totals, or rewriting a decision.
        """
        unknown = set(changes) - set(Invoice.model_fields)
        if unknown:
            raise ValidationError(
                f"Unknown invoice field(s): {sorted(unknown)}",
                fields=sorted(unknown),
            )

        frozen = SNAPSHOT_FIELDS & set(changes)
        if frozen:
            raise ValidationError(
                f"Invoice field(s) {sorted(frozen)} are fixed when the invoice is created",
                fields=sorted(frozen),
            )

        if "task_ids" in changes and not changes["task_ids"]:
            raise ValidationError("An invoice needs at least one task", fields=["task_ids"])

        if current.status.value in InvoiceState.decision_states() or current.status.value == InvoiceState.PAID:
            rewritten = [
                name
                for name in DECISION_FIELDS & set(changes)
                if changes[name] != getattr(current, name)
            ]
            if rewritten:
                raise ValidationError(
                    f"Client decision already recorded; {sorted(rewritten)} cannot change",
                    fields=sorted(rewritten),
                    invoice_id=current.id,
                )
