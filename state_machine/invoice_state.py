"""Invoice state machine implementation using the transitions library."""

import logging
from typing import Any, Callable, Optional

from transitions import Machine, MachineError

from state_machine.models import InvoiceStatus, utcnow

logger = logging.getLogger(__name__)


class InvoiceState:
    """Invoice state constants matching InvoiceStatus enum."""

    DRAFT = InvoiceStatus.DRAFT.value
    SENT = InvoiceStatus.SENT.value
    PENDING_APPROVAL = InvoiceStatus.PENDING_APPROVAL.value
    APPROVED = InvoiceStatus.APPROVED.value
    REJECTED = InvoiceStatus.REJECTED.value
    PAID = InvoiceStatus.PAID.value

    @classmethod
    def all_states(cls) -> list[str]:
        """Return all valid states."""
        return [status.value for status in InvoiceStatus]

    @classmethod
    def terminal_states(cls) -> list[str]:
        """Return states with no outgoing transition."""
        return [cls.PAID]

    @classmethod
    def decision_states(cls) -> list[str]:
        """Return states reached by a client decision."""
        return [cls.APPROVED, cls.REJECTED]

    @classmethod
    def is_terminal(cls, state: str) -> bool:
        """Check if a state is terminal."""
        return state in cls.terminal_states()


class TransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: str,
        attempted_trigger: str,
        invoice_id: Optional[str] = None,
    ):
        self.current_state = current_state
        self.attempted_trigger = attempted_trigger
        self.invoice_id = invoice_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "error": "TransitionError",
            "message": str(self),
            "current_state": self.current_state,
            "attempted_trigger": self.attempted_trigger,
            "invoice_id": self.invoice_id,
        }


class InvoiceFSM:
    """
    Finite State Machine for invoice lifecycle management.

    States:
        - draft: Initial state when invoice is created
        - sent: Invoice has been e-mailed to the client
        - pending_approval: Approval link issued, waiting for the client
        - approved: Client signed off on the invoice
        - rejected: Client declined the invoice
        - paid: Payment received (terminal)

    Transitions:
        - send: draft -> sent
        - send_for_approval: draft/sent -> pending_approval
        - client_approve: pending_approval -> approved
        - client_reject: pending_approval -> rejected
        - mark_paid: approved -> paid
    """

    TRANSITIONS = [
        {
            "trigger": "send",
            "source": InvoiceState.DRAFT,
            "dest": InvoiceState.SENT,
        },
        {
            "trigger": "send_for_approval",
            "source": [InvoiceState.DRAFT, InvoiceState.SENT],
            "dest": InvoiceState.PENDING_APPROVAL,
        },
        {
            "trigger": "client_approve",
            "source": InvoiceState.PENDING_APPROVAL,
            "dest": InvoiceState.APPROVED,
        },
        {
            "trigger": "client_reject",
            "source": InvoiceState.PENDING_APPROVAL,
            "dest": InvoiceState.REJECTED,
        },
        {
            "trigger": "mark_paid",
            "source": InvoiceState.APPROVED,
            "dest": InvoiceState.PAID,
        },
    ]

    def __init__(
        self,
        invoice_id: str,
        initial_state: str = InvoiceState.DRAFT,
        on_transition: Optional[Callable[[str, str, str, str], None]] = None,
    ):
        """
        Initialize the invoice state machine.

        Args:
            invoice_id: Unique identifier for the invoice
            initial_state: Starting state (default: draft)
            on_transition: Optional callback called on each transition
                          with (invoice_id, source_state, dest_state, trigger)
        """
        self.invoice_id = invoice_id
        self._on_transition = on_transition
        self._history: list[dict[str, Any]] = []

        if initial_state not in InvoiceState.all_states():
            raise ValueError(f"Invalid initial state: {initial_state}")

        self.machine = Machine(
            model=self,
            states=InvoiceState.all_states(),
            transitions=self.TRANSITIONS,
            initial=initial_state,
            auto_transitions=False,
            send_event=True,
            before_state_change=self._before_transition,
            after_state_change=self._after_transition,
        )

    @property
    def current_state(self) -> str:
        """Get the current state."""
        return self.state  # type: ignore[return-value]

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return InvoiceState.is_terminal(self.current_state)

    @property
    def history(self) -> list[dict[str, Any]]:
        """Transitions taken by this machine instance."""
        return self._history.copy()

    def _before_transition(self, event: Any) -> None:
        logger.debug(
            f"Invoice {self.invoice_id}: Attempting transition "
            f"'{event.event.name}' from '{self.state}'"
        )

    def _after_transition(self, event: Any) -> None:
        source = event.transition.source
        dest = event.transition.dest
        trigger = event.event.name

        self._history.append(
            {
                "timestamp": utcnow().isoformat(),
                "source": source,
                "dest": dest,
                "trigger": trigger,
            }
        )

        logger.info(
            f"Invoice {self.invoice_id}: Transition '{trigger}' "
            f"completed: {source} -> {dest}"
        )

        if self._on_transition:
            self._on_transition(self.invoice_id, source, dest, trigger)

    def can_trigger(self, trigger: str) -> bool:
        """Check if a trigger can be executed from current state."""
        may_method = getattr(self, f"may_{trigger}", None)
        if may_method:
            return may_method()
        return False

    def get_available_triggers(self) -> list[str]:
        """Get list of triggers available from current state."""
        available = []
        for transition in self.TRANSITIONS:
            trigger = transition["trigger"]
            sources = transition["source"]
            if isinstance(sources, str):
                sources = [sources]
            if self.current_state in sources and trigger not in available:
                available.append(trigger)
        return available

    def trigger(self, trigger_name: str, **kwargs: Any) -> dict[str, Any]:
        """
        Execute a state transition.

        Args:
            trigger_name: Name of the trigger to execute
            **kwargs: Additional arguments passed to transition callbacks

        Returns:
            Dictionary with transition result

        Raises:
            TransitionError: If the transition is not valid from current state
        """
        if self.is_terminal:
            raise TransitionError(
                f"Cannot transition from terminal state '{self.current_state}'",
                current_state=self.current_state,
                attempted_trigger=trigger_name,
                invoice_id=self.invoice_id,
            )

        if not self.can_trigger(trigger_name):
            available = self.get_available_triggers()
            raise TransitionError(
                f"Cannot execute '{trigger_name}' from state '{self.current_state}'. "
                f"Available triggers: {available}",
                current_state=self.current_state,
                attempted_trigger=trigger_name,
                invoice_id=self.invoice_id,
            )

        previous_state = self.current_state

        try:
            getattr(self, trigger_name)(**kwargs)
        except MachineError as e:
            raise TransitionError(
                str(e),
                current_state=previous_state,
                attempted_trigger=trigger_name,
                invoice_id=self.invoice_id,
            ) from e

        return {
            "success": True,
            "invoice_id": self.invoice_id,
            "previous_state": previous_state,
            "current_state": self.current_state,
            "trigger": trigger_name,
        }

    def __repr__(self) -> str:
        return f"InvoiceFSM(invoice_id={self.invoice_id!r}, state={self.current_state!r})"
