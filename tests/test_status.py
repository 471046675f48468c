"""
Unit tests for the payment lifecycle and stored payment details.
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from checkout_payments.core.order_state import append_history, apply_payment_transition
from checkout_payments.core.payment_details import (
    AddressCryptoDetails,
    GatewayDetails,
    InvoiceCryptoDetails,
    dump_payment_details,
    load_payment_details,
)
from checkout_payments.core.status import (
    FulfillmentStatus,
    PaymentStatus,
    Rail,
    can_transition,
    is_terminal,
)
from checkout_payments.database.models import Order

NOW = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


def address_details(**overrides) -> AddressCryptoDetails:
    values = {
        "address": "bc1qtestaddress1",
        "expected_amount": Decimal("0.01"),
        "exchange_rate": Decimal("11000"),
        "rate_locked_until": NOW + timedelta(minutes=15),
        "expires_at": NOW + timedelta(hours=24),
        "required_confirmations": 2,
    }
    values.update(overrides)
    return AddressCryptoDetails(**values)


def make_order(rail: Rail, payment_status: PaymentStatus = PaymentStatus.PENDING) -> Order:
    return Order(
        id=uuid.uuid4(),
        payment_method_type=rail.value,
        payment_status=payment_status.value,
        status=FulfillmentStatus.PENDING.value,
        status_history=[],
        payment_details={},
    )


class TestTransitionGraph:
    """Test suite for per-rail transition graphs."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status", [PaymentStatus.COMPLETED, PaymentStatus.EXPIRED, PaymentStatus.FAILED]
    )
    def test_terminal_statuses_have_no_exits(self, status: PaymentStatus) -> None:
        """Nothing leaves a terminal status."""
        for rail in Rail:
            for target in PaymentStatus:
                assert not can_transition(rail, status, target)

    @pytest.mark.unit
    def test_terminal_set(self) -> None:
        assert {s for s in PaymentStatus if is_terminal(s)} == {
            PaymentStatus.COMPLETED,
            PaymentStatus.EXPIRED,
            PaymentStatus.FAILED,
        }

    @pytest.mark.unit
    def test_gateway_has_no_confirmation_states(self) -> None:
        """The gateway moves straight from pending to completed or failed."""
        assert can_transition(Rail.GATEWAY, PaymentStatus.PENDING, PaymentStatus.COMPLETED)
        assert can_transition(Rail.GATEWAY, PaymentStatus.PENDING, PaymentStatus.FAILED)
        assert not can_transition(
            Rail.GATEWAY, PaymentStatus.PENDING, PaymentStatus.AWAITING_CONFIRMATION
        )
        assert not can_transition(Rail.GATEWAY, PaymentStatus.PENDING, PaymentStatus.EXPIRED)

    @pytest.mark.unit
    @pytest.mark.parametrize("rail", [Rail.ADDRESS_CRYPTO, Rail.INVOICE_CRYPTO])
    def test_crypto_rails_never_return_to_pending(self, rail: Rail) -> None:
        """A short payment can surface before or after confirmations start."""
        assert can_transition(rail, PaymentStatus.PENDING, PaymentStatus.UNDERPAID)
        assert can_transition(rail, PaymentStatus.UNDERPAID, PaymentStatus.AWAITING_CONFIRMATION)
        assert can_transition(rail, PaymentStatus.AWAITING_CONFIRMATION, PaymentStatus.UNDERPAID)
        assert not can_transition(rail, PaymentStatus.AWAITING_CONFIRMATION, PaymentStatus.PENDING)
        assert not can_transition(rail, PaymentStatus.UNDERPAID, PaymentStatus.PENDING)

    @pytest.mark.unit
    def test_same_status_is_not_a_transition(self) -> None:
        assert not can_transition(Rail.ADDRESS_CRYPTO, PaymentStatus.PENDING, PaymentStatus.PENDING)


class TestPaymentDetails:
    """Test suite for the stored details union."""

    @pytest.mark.unit
    def test_load_picks_rail_model(self) -> None:
        """Stored JSON is read back as its rail's model."""
        raw = dump_payment_details(address_details())

        loaded = load_payment_details(raw)

        assert isinstance(loaded, AddressCryptoDetails)
        assert loaded.expected_amount == Decimal("0.01")
        assert loaded.asset == "BTC"

    @pytest.mark.unit
    def test_load_invoice_and_gateway(self) -> None:
        invoice = InvoiceCryptoDetails(
            invoice_id="INV-1",
            expected_amount=Decimal("1"),
            exchange_rate=Decimal("110"),
            rate_locked_until=NOW,
            expires_at=NOW,
            required_confirmations=10,
        )
        gateway = GatewayDetails(provider_order_id="GW-1")

        assert isinstance(load_payment_details(dump_payment_details(invoice)), InvoiceCryptoDetails)
        assert isinstance(load_payment_details(dump_payment_details(gateway)), GatewayDetails)

    @pytest.mark.unit
    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            load_payment_details({"type": "cheque", "provider_order_id": "X"})

    @pytest.mark.unit
    def test_expiry_and_rate_lock(self) -> None:
        details = address_details()

        assert not details.is_expired(NOW)
        assert details.is_expired(NOW + timedelta(hours=24))
        assert details.rate_lock_valid(NOW)
        assert not details.rate_lock_valid(NOW + timedelta(minutes=15))


class TestApplyPaymentTransition:
    """Test suite for order payment transitions."""

    @pytest.mark.unit
    def test_completion_moves_fulfillment_to_processing(self) -> None:
        order = make_order(Rail.ADDRESS_CRYPTO)

        changed = apply_payment_transition(
            order, PaymentStatus.COMPLETED, address_details(confirmations=2), "Paid", NOW
        )

        assert changed
        assert order.payment_status == "completed"
        assert order.status == "processing"
        assert order.paid_at == NOW
        assert [entry["kind"] for entry in order.status_history] == ["payment", "fulfillment"]
        assert order.payment_details["confirmations"] == 2

    @pytest.mark.unit
    def test_backward_transition_keeps_status_but_updates_details(self) -> None:
        """A late lower-confirmation event refreshes details without regressing."""
        order = make_order(Rail.ADDRESS_CRYPTO, PaymentStatus.AWAITING_CONFIRMATION)

        changed = apply_payment_transition(
            order, PaymentStatus.PENDING, address_details(confirmations=1), "Late", NOW
        )

        assert not changed
        assert order.payment_status == "awaiting_confirmation"
        assert order.status_history == []
        assert order.payment_details["confirmations"] == 1

    @pytest.mark.unit
    def test_no_target_only_stores_details(self) -> None:
        order = make_order(Rail.ADDRESS_CRYPTO)

        assert not apply_payment_transition(order, None, address_details(), "Seen", NOW)
        assert order.payment_status == "pending"

    @pytest.mark.unit
    def test_completion_of_cancelled_order_keeps_fulfillment(self) -> None:
        order = make_order(Rail.GATEWAY)
        order.status = FulfillmentStatus.CANCELLED.value

        apply_payment_transition(
            order, PaymentStatus.COMPLETED, GatewayDetails(provider_order_id="GW-1"), "Paid", NOW
        )

        assert order.payment_status == "completed"
        assert order.status == "cancelled"

    @pytest.mark.unit
    def test_history_is_replaced_not_mutated(self) -> None:
        """The history list is reassigned so JSON changes are detected."""
        order = make_order(Rail.GATEWAY)
        original = order.status_history

        append_history(order, "fulfillment", "pending", "Created", NOW)

        assert original == []
        assert order.status_history[0]["timestamp"] == NOW.isoformat()
