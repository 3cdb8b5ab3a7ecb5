"""Invoice lifecycle events and the in-process event bus."""

import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import uuid4

from state_machine.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 1000
DEFAULT_MAX_FIRED_KEYS = 10000


class InvoiceEventType:
    """Event names published by the lifecycle engine."""

    CREATED = "invoice_created"
    SENT = "invoice_sent"
    PENDING_APPROVAL = "invoice_pending_approval"
    APPROVED = "invoice_approved"
    REJECTED = "invoice_rejected"
    PAID = "invoice_paid"
    PAYMENT_CONFIGURED = "payment_configured"

    # Destination state -> event emitted on entering it.
    FOR_STATE = {
        "sent": SENT,
        "pending_approval": PENDING_APPROVAL,
        "approved": APPROVED,
        "rejected": REJECTED,
        "paid": PAID,
    }

    # The lifecycle graph has no cycles, so each of these fires at most once per invoice.
    ONCE_PER_INVOICE = frozenset({CREATED, SENT, PENDING_APPROVAL, APPROVED, REJECTED, PAID})


@dataclass
class InvoiceEvent:
    """
    Event emitted when an invoice changes.

    Features:
    - Unique event ID
    - Idempotency key: lifecycle events are keyed by type and invoice, so a
      replayed transition event is not delivered twice
    """

    event_type: str
    invoice_id: str
    owner_id: Optional[str]
    timestamp: datetime = field(default_factory=utcnow)
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))
    idempotency_key: Optional[str] = None

    def __post_init__(self) -> None:
        """Generate idempotency key if not provided."""
        if not self.idempotency_key:
            if self.event_type in InvoiceEventType.ONCE_PER_INVOICE:
                self.idempotency_key = f"{self.event_type}:{self.invoice_id}"
            else:
                # Repeatable events (payment set-up can be overwritten)
                self.idempotency_key = f"{self.event_type}:{self.invoice_id}:{self.event_id}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "invoice_id": self.invoice_id,
            "owner_id": self.owner_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
            "idempotency_key": self.idempotency_key,
        }


EventHandler = Callable[[InvoiceEvent], None]


class EventBus:
    """
    Simple event bus for invoice events.

    History and the set of fired idempotency keys are bounded; the oldest
    entries are dropped first.
    """

    def __init__(
        self,
        max_history: int = DEFAULT_MAX_HISTORY,
        max_fired_keys: int = DEFAULT_MAX_FIRED_KEYS,
    ) -> None:
        self._subscribers: list[EventHandler] = []
        self._event_history: deque[InvoiceEvent] = deque(maxlen=max_history)
        self._fired_keys: OrderedDict[str, None] = OrderedDict()
        self._max_fired_keys = max_fired_keys

    def subscribe(self, handler: EventHandler) -> None:
        """Add a subscriber."""
        self._subscribers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove a subscriber."""
        if handler in self._subscribers:
            self._subscribers.remove(handler)

    def publish(self, event: InvoiceEvent) -> bool:
        """
        Publish an event to all subscribers.

        Returns:
            True if the event was published, False if its idempotency key
            already fired.
        """
        if event.idempotency_key in self._fired_keys:
            logger.debug(f"Event already fired (idempotent): {event.idempotency_key}")
            return False

        self._fired_keys[event.idempotency_key] = None
        while len(self._fired_keys) > self._max_fired_keys:
            self._fired_keys.popitem(last=False)
        self._event_history.append(event)

        logger.info(f"Publishing event: {event.event_type} for {event.invoice_id}")

        for handler in list(self._subscribers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Subscriber error on {event.event_type}: {e}")

        return True

    def get_history(self, invoice_id: Optional[str] = None) -> list[InvoiceEvent]:
        """Get published events, optionally for one invoice."""
        if invoice_id is None:
            return list(self._event_history)
        return [e for e in self._event_history if e.invoice_id == invoice_id]

    def clear_history(self) -> None:
        """Clear event history and fired keys."""
        self._event_history.clear()
        self._fired_keys.clear()

    clear = clear_history
