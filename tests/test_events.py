"""Tests for invoice events and the event bus."""

from invoicing.events import EventBus, InvoiceEvent, InvoiceEventType


def event(event_type, invoice_id="inv-1", **payload):
    return InvoiceEvent(event_type=event_type, invoice_id=invoice_id, owner_id="owner-1", payload=payload)


class TestIdempotency:
    """Test events fire once per idempotency key."""

    def test_lifecycle_event_fires_once_per_invoice(self) -> None:
        bus = EventBus()
        received = []
        bus.subscribe(received.append)

        assert bus.publish(event(InvoiceEventType.APPROVED, previous_state="pending_approval"))
        assert not bus.publish(event(InvoiceEventType.APPROVED, previous_state="pending_approval"))

        assert len(received) == 1
        assert len(bus.get_history()) == 1

    def test_same_type_on_other_invoice_fires(self) -> None:
        bus = EventBus()

        bus.publish(event(InvoiceEventType.SENT, "inv-1"))

        assert bus.publish(event(InvoiceEventType.SENT, "inv-2"))

    def test_repeatable_event_always_fires(self) -> None:
        bus = EventBus()

        assert bus.publish(event(InvoiceEventType.PAYMENT_CONFIGURED, method="paypal"))
        assert bus.publish(event(InvoiceEventType.PAYMENT_CONFIGURED, method="stripe"))

        assert len(bus.get_history("inv-1")) == 2

    def test_explicit_key_wins(self) -> None:
        custom = InvoiceEvent(
            event_type=InvoiceEventType.PAYMENT_CONFIGURED,
            invoice_id="inv-1",
            owner_id=None,
            idempotency_key="payment:inv-1:v1",
        )
        assert custom.to_dict()["idempotency_key"] == "payment:inv-1:v1"


class TestBounds:
    def test_history_is_bounded(self) -> None:
        bus = EventBus(max_history=10)

        for i in range(25):
            bus.publish(event(InvoiceEventType.CREATED, f"inv-{i}"))

        history = bus.get_history()
        assert len(history) == 10
        assert history[0].invoice_id == "inv-15"

    def test_fired_keys_are_bounded(self) -> None:
        bus = EventBus(max_fired_keys=5)

        for i in range(6):
            bus.publish(event(InvoiceEventType.CREATED, f"inv-{i}"))

        # Oldest key was dropped, so it can fire again.
        assert bus.publish(event(InvoiceEventType.CREATED, "inv-0"))
        assert not bus.publish(event(InvoiceEventType.CREATED, "inv-5"))

    def test_clear(self) -> None:
        bus = EventBus()
        bus.publish(event(InvoiceEventType.SENT))

        bus.clear()

        assert bus.get_history() == []
        assert bus.publish(event(InvoiceEventType.SENT))

    def test_failing_subscriber_does_not_block_others(self) -> None:
        bus = EventBus()
        received = []

        def broken(evt):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        bus.publish(event(InvoiceEventType.PAID))

        assert len(received) == 1

    def test_clear_history(self) -> None:
        bus = EventBus()
        bus.publish(event(InvoiceEventType.PAID))

        bus.clear_history()

        assert bus.get_history() == []
