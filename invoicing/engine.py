"""
Invoice Lifecycle Engine.

Connects:
- Entity Store (source of truth for invoices, tasks and time logs)
- Billing Calculator (totals snapshot at creation)
- State Machine (transition validation)
- Event Bus (notifications on state change)

Flow:
    Owner/Client action → lock invoice → FSM validation → guards
                                                    ↓
    Event ← history ← compare-and-swap write ← field changes

Guard failures raise typed errors and leave the stored invoice untouched.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Generator, Iterable, Optional

from billing.calculator import BillingResult, calculate_invoice
from billing.index import BilledTaskIndex
from database.base import ChangeAction, EntityStore, StoreChange
from invoicing.errors import NotFound, StateConflict, ValidationError
from invoicing.events import EventBus, InvoiceEvent, InvoiceEventType
from invoicing.tokens import DEFAULT_TOKEN_BYTES, build_approval_link
from state_machine.invoice_state import InvoiceFSM, InvoiceState, TransitionError
from state_machine.models import (
    Invoice,
    InvoiceCreate,
    InvoiceUpdate,
    PaymentMethod,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_ORIGIN = "http://localhost:5173"

# Precondition named in the error when a trigger is illegal for the status.
TRIGGER_PRECONDITIONS: dict[str, str] = {
    "send": "invoice is not a draft",
    "send_for_approval": "invoice cannot be sent for approval from its current state",
    "client_approve": "invoice not in approvable state",
    "client_reject": "invoice not in rejectable state",
    "mark_paid": "invoice is not approved",
    "setup_payment": "payment can only be set up on an approved invoice",
}


class InvoiceLockRegistry:
    """One lock per invoice id, shared by every engine in the process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, invoice_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(invoice_id)
            if lock is None:
                lock = self._locks[invoice_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, invoice_id: str) -> Generator[None, None, None]:
        """Serialize mutations of one invoice."""
        with self.lock_for(invoice_id):
            yield

    def discard(self, key: str) -> None:
        """Forget the lock of a deleted invoice."""
        with self._guard:
            self._locks.pop(key, None)

    def __contains__(self, key: object) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


_default_locks = InvoiceLockRegistry()


def get_default_lock_registry() -> InvoiceLockRegistry:
    """Process-wide lock registry."""
    return _default_locks


class InvoiceLifecycleEngine:
    """
    Drives invoices through their lifecycle for one owner's store.

    The engine enforces:
    - Totals are computed once, from unbilled logs, at creation
    - Every status change is a legal FSM transition from the stored status
    - Decision fields are written exactly once
    - Transitions on the same invoice never interleave
    """

    def __init__(
        self,
        store: EntityStore,
        event_bus: Optional[EventBus] = None,
        locks: Optional[InvoiceLockRegistry] = None,
        origin: str = DEFAULT_ORIGIN,
        token_bytes: int = DEFAULT_TOKEN_BYTES,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the engine.

        Args:
            store: Entity store scoped to the invoice owner.
            event_bus: Bus receiving lifecycle events. A private one if omitted.
            locks: Per-invoice lock registry. Process default if omitted.
            origin: Public origin used to build approval links.
            token_bytes: Random bytes in each approval token.
            clock: Source of timestamps (approved_at).
        """
        self.store = store
        self.event_bus = event_bus or EventBus()
        self._locks = locks or get_default_lock_registry()
        self.origin = origin
        self.token_bytes = token_bytes
        self._clock = clock

        self.billed_index = BilledTaskIndex.rebuild(store.list_invoices())
        self._unsubscribe = store.subscribe(self._on_store_change)

    def close(self) -> None:
        """Stop tracking store changes."""
        self._unsubscribe()

    def _on_store_change(self, change: StoreChange) -> None:
        if change.entity != "invoice":
            return
        if change.action == ChangeAction.DELETED:
            self.billed_index.remove(change.entity_id)
            return
        invoice = self.store.get_invoice(change.entity_id)
        if invoice is not None:
            self.billed_index.update(invoice)

    # ------------------------------------------------------------------
    # Creation and owner edits
    # ------------------------------------------------------------------

    def preview(self, task_ids: Iterable[str]) -> BillingResult:
        """Compute totals for a selection without creating anything."""
        selection = self._validate_selection(task_ids)
        tasks = {task.id: task for task in self.store.list_tasks()}
        self._require_tasks(selection, tasks)
        return calculate_invoice(selection, tasks, self.store.list_time_logs(), self.billed_index)

    def create_invoice(self, data: InvoiceCreate) -> Invoice:
        """
        Create a draft invoice from the selected tasks' unbilled time.

        Raises:
            ValidationError: Empty task selection.
            NotFound: A selected task does not exist.
        """
        selection = self._validate_selection(data.task_ids)

        # One create per owner at a time, so no two invoices snapshot the same logs.
        with self._locks.hold(self._create_lock_key()):
            self._refresh_billed_index()
            result = self.preview(selection)

            invoice = self.store.create_invoice(
                data.model_copy(update={"task_ids": selection}),
                total_hours=result.total_hours,
                total_amount=result.total_amount,
            )
            self.billed_index.add(invoice)

        logger.info(
            f"Invoice {invoice.id} created: {len(selection)} task(s), "
            f"{result.total_hours}h, {result.total_amount}"
        )
        self._publish(
            InvoiceEventType.CREATED,
            invoice,
            total_hours=str(result.total_hours),
            total_amount=str(result.total_amount),
            log_ids=[log.id for log in result.included_logs],
        )
        return invoice

    def update_invoice(self, invoice_id: str, data: InvoiceUpdate) -> Invoice:
        """Edit client details, description or notes."""
        with self._locks.hold(invoice_id):
            self._require_invoice(invoice_id)
            return self.store.update_invoice(invoice_id, data.model_dump(exclude_unset=True))

    def delete_invoice(self, invoice_id: str) -> None:
        """Delete an invoice; its tasks become billable again."""
        with self._locks.hold(self._create_lock_key()):
            with self._locks.hold(invoice_id):
                self.store.delete_invoice(invoice_id)
            self._locks.discard(invoice_id)
        logger.info(f"Invoice {invoice_id} deleted")

    def get_invoice(self, invoice_id: str) -> Invoice:
        return self._require_invoice(invoice_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def send(self, invoice_id: str) -> Invoice:
        """draft -> sent."""
        return self._transition(invoice_id, "send")

    def send_for_approval(self, invoice_id: str) -> Invoice:
        """
        draft/sent -> pending_approval, issuing a fresh approval link.

        Raises:
            ValidationError: The invoice has no client email.
        """

        def guard(invoice: Invoice) -> None:
            if not (invoice.client_email or "").strip():
                raise ValidationError(
                    "Missing client email: add one before sending for approval",
                    invoice_id=invoice.id,
                    fields=["client_email"],
                )

        def changes(invoice: Invoice) -> dict[str, Any]:
            return {
                "approval_link": build_approval_link(self.origin, invoice.id, self.token_bytes)
            }

        return self._transition(invoice_id, "send_for_approval", guard=guard, build=changes)

    def client_approve(
        self,
        invoice_id: str,
        signature: str,
        comments: Optional[str] = None,
    ) -> Invoice:
        """pending_approval -> approved, recording signature and comments."""
        signature = (signature or "").strip()

        def guard(invoice: Invoice) -> None:
            if not signature:
                raise ValidationError(
                    "Signature is required to approve the invoice",
                    invoice_id=invoice.id,
                    fields=["signature"],
                )

        def changes(invoice: Invoice) -> dict[str, Any]:
            return {
                "approved_at": self._clock(),
                "client_signature": signature,
                "client_comments": comments or None,
            }

        return self._transition(
            invoice_id, "client_approve", guard=guard, build=changes, actor="client"
        )

    def client_reject(self, invoice_id: str, reason: str) -> Invoice:
        """pending_approval -> rejected, storing the reason as client comments."""
        reason = (reason or "").strip()

        def guard(invoice: Invoice) -> None:
            if not reason:
                raise ValidationError(
                    "A reason is required to reject the invoice",
                    invoice_id=invoice.id,
                    fields=["reason"],
                )

        return self._transition(
            invoice_id,
            "client_reject",
            guard=guard,
            build=lambda invoice: {"client_comments": reason},
            actor="client",
            reason=reason,
        )

    def mark_paid(self, invoice_id: str) -> Invoice:
        """approved -> paid."""
        return self._transition(invoice_id, "mark_paid")

    def setup_payment(
        self,
        invoice_id: str,
        method: Any,
        instructions: Optional[str] = None,
    ) -> Invoice:
        """
        Attach payment method and instructions to an approved invoice.

        Status is unchanged; calling again overwrites both fields.
        """
        try:
            payment_method = PaymentMethod(method)
        except ValueError as e:
            raise ValidationError(
                f"Unknown payment method: {method!r}",
                invoice_id=invoice_id,
                allowed=[m.value for m in PaymentMethod],
            ) from e

        with self._locks.hold(invoice_id):
            invoice = self._require_invoice(invoice_id)
            if invoice.status.value != InvoiceState.APPROVED:
                raise self._conflict(invoice, "setup_payment")

            updated = self.store.update_invoice(
                invoice_id,
                {
                    "payment_method": payment_method,
                    "payment_instructions": instructions,
                },
                expected_status=InvoiceState.APPROVED,
            )

        logger.info(f"Invoice {invoice_id}: payment method set to {payment_method.value}")
        self._publish(InvoiceEventType.PAYMENT_CONFIGURED, updated, method=payment_method.value)
        return updated

    def available_actions(self, invoice_id: str) -> list[str]:
        """Operations allowed from the invoice's current status."""
        invoice = self._require_invoice(invoice_id)
        actions = InvoiceFSM(invoice_id, initial_state=invoice.status.value).get_available_triggers()
        if invoice.status.value == InvoiceState.APPROVED:
            actions.append("setup_payment")
        return actions

    def history(self, invoice_id: str) -> list[dict[str, Any]]:
        """Recorded transitions, oldest first."""
        self._require_invoice(invoice_id)
        return self.store.get_history(invoice_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        invoice_id: str,
        trigger: str,
        guard: Optional[Callable[[Invoice], None]] = None,
        build: Optional[Callable[[Invoice], dict[str, Any]]] = None,
        actor: str = "owner",
        reason: Optional[str] = None,
    ) -> Invoice:
        with self._locks.hold(invoice_id):
            invoice = self._require_invoice(invoice_id)
            previous_state = invoice.status.value

            fsm = InvoiceFSM(invoice_id, initial_state=previous_state)
            if not fsm.can_trigger(trigger):
                raise self._conflict(invoice, trigger)

            if guard:
                guard(invoice)

            changes = build(invoice) if build else {}

            try:
                fsm.trigger(trigger)
            except TransitionError as e:
                raise self._conflict(invoice, trigger) from e

            changes["status"] = fsm.current_state
            updated = self.store.update_invoice(
                invoice_id,
                changes,
                expected_status=previous_state,
                trigger=trigger,
                triggered_by=actor,
                reason=reason,
            )

        self._publish(
            InvoiceEventType.FOR_STATE[updated.status.value],
            updated,
            previous_state=previous_state,
            trigger=trigger,
        )
        return updated

    def _conflict(self, invoice: Invoice, action: str) -> StateConflict:
        precondition = TRIGGER_PRECONDITIONS.get(action, f"cannot {action}")
        logger.warning(
            f"Invoice {invoice.id}: blocked '{action}' from '{invoice.status.value}'"
        )
        return StateConflict(
            f"Invoice '{invoice.id}': {precondition} (status '{invoice.status.value}')",
            current_state=invoice.status.value,
            attempted_action=action,
            invoice_id=invoice.id,
            invoice=invoice,
        )

    def _create_lock_key(self) -> str:
        return f"create:{self.store.owner_id}"

    def _refresh_billed_index(self) -> None:
        # Another engine for the same owner may have created an invoice since
        # our last store notification.
        self.billed_index = BilledTaskIndex.rebuild(self.store.list_invoices())

    def _require_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.store.get_invoice(invoice_id)
        if invoice is None:
            raise NotFound(f"Invoice '{invoice_id}' not found", invoice_id=invoice_id)
        return invoice

    @staticmethod
    def _validate_selection(task_ids: Iterable[str]) -> list[str]:
        selection = list(dict.fromkeys(task_ids or []))
        if not selection:
            raise ValidationError("Select at least one task", fields=["task_ids"])
        return selection

    @staticmethod
    def _require_tasks(selection: list[str], tasks: dict[str, Any]) -> None:
        missing = [task_id for task_id in selection if task_id not in tasks]
        if missing:
            raise NotFound(f"Unknown task(s): {missing}", task_ids=missing)

    def _publish(self, event_type: str, invoice: Invoice, **payload: Any) -> None:
        self.event_bus.publish(
            InvoiceEvent(
                event_type=event_type,
                invoice_id=invoice.id,
                owner_id=self.store.owner_id,
                payload={"status": invoice.status.value, **payload},
            )
        )
