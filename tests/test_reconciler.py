"""
Tests for webhook authentication, replay protection and payment reconciliation.
"""
import json
from decimal import Decimal
from typing import Any, Dict, Optional

import pytest
from sqlalchemy import select

from checkout_payments.core.collaborators import Requester, SqlPromotionBook
from checkout_payments.core.errors import InvariantViolation, WebhookAuthError
from checkout_payments.core.order_state import ORDER_COMPLETED
from checkout_payments.core.reconciler import WebhookReconciler
from checkout_payments.database.models import ProcessedWebhookEvent

ADDRESS_SECRET = "address-secret"
INVOICE_SECRET = "invoice-secret"

GATEWAY_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://gateway.test/certs/1",
    "paypal-transmission-id": "T-1",
    "paypal-transmission-sig": "signature",
    "paypal-transmission-time": "2025-01-06T12:00:00Z",
}


class RecordingRedis:
    """In-memory stand-in for the few Redis calls the reconciler makes."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.keys: Dict[str, str] = {}

    async def exists(self, key: str) -> int:
        if self.fail:
            raise ConnectionError("redis down")
        return int(key in self.keys)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        if self.fail:
            raise ConnectionError("redis down")
        self.keys[key] = value


def address_callback(
    sign: Any, addr: str, value: int, confirmations: int, txid: str = "tx-1"
) -> tuple:
    body = json.dumps(
        {"addr": addr, "txid": txid, "value": value, "confirmations": confirmations}
    ).encode()
    return {"x-webhook-signature": sign(ADDRESS_SECRET, body)}, body


def invoice_callback(sign: Any, invoice_id: str, status: str, confirmations: int) -> tuple:
    body = json.dumps(
        {"id": invoice_id, "status": status, "confirmations": confirmations}
    ).encode()
    return {"x-globee-signature": sign(INVOICE_SECRET, body)}, body


async def place_order(
    container: Any, seed: Any, requester: Requester, address: dict, rail: str
) -> Any:
    product = await seed.product(price="100.00", stock=5)
    method = await seed.shipping(base_cost="10.00")
    await seed.cart(requester, product)
    result = await container.orchestrator.create_order(
        requester=requester,
        shipping_address=address,
        shipping_method_id=method.id,
        rail=rail,
    )
    return result


class TestAddressCryptoWebhooks:
    """Test suite for address-crypto callbacks."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_underpayment_is_not_terminal(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        """Half the expected amount at 6 confirmations is underpaid, not completed."""
        result = await place_order(container, seed, user, address, "address-crypto")
        assert Decimal(result.rail_handle["expected_amount"]) == Decimal("0.01")

        outcome = await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 500000, 6)
        )

        assert outcome.status == "applied"
        assert outcome.payment_status == "underpaid"
        assert outcome.completed is False
        stored = await seed.get_order(result.order.id)
        assert stored.payment_status == "underpaid"
        assert stored.payment_details["amount_received"] == "0.00500000"
        assert stored.status == "pending"
        assert await seed.outbox_events(ORDER_COMPLETED) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirmations_progress_to_completion(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        result = await place_order(container, seed, user, address, "address-crypto")

        first = await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 1000000, 1)
        )
        second = await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 1000000, 2)
        )

        assert first.payment_status == "awaiting_confirmation"
        assert second.payment_status == "completed"
        assert second.completed is True
        stored = await seed.get_order(result.order.id)
        assert stored.status == "processing"
        assert stored.payment_details["confirmations"] == 2
        assert [e["status"] for e in stored.status_history if e["kind"] == "payment"] == [
            "awaiting_confirmation",
            "completed",
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_delivery_applies_once(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        """The same completing callback twice yields one completion event."""
        result = await place_order(container, seed, user, address, "address-crypto")
        headers, body = address_callback(sign, "bc1qtestaddress1", 1000000, 2)

        first = await container.reconciler.handle("address-crypto", headers, body)
        second = await container.reconciler.handle("address-crypto", headers, body)

        assert first.status == "applied"
        assert first.completed is True
        assert second.status == "duplicate"
        assert second.completed is False
        events = await seed.outbox_events(ORDER_COMPLETED)
        assert len(events) == 1
        assert events[0].aggregate_id == result.order.id
        async with container.session_factory() as db:
            ledger = (await db.execute(select(ProcessedWebhookEvent))).scalars().all()
        assert len(ledger) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_terminal_order_is_not_moved(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        result = await place_order(container, seed, user, address, "address-crypto")
        await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 1000000, 2)
        )

        later = await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 400000, 9)
        )

        assert later.status == "terminal"
        stored = await seed.get_order(result.order.id)
        assert stored.payment_status == "completed"
        assert stored.payment_details["confirmations"] == 2
        assert len(await seed.outbox_events(ORDER_COMPLETED)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_late_lower_confirmation_event(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        """A reordered earlier event refreshes details without moving backwards."""
        result = await place_order(container, seed, user, address, "address-crypto")
        await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 1000000, 1)
        )

        late = await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 1000000, 0)
        )

        assert late.status == "ignored"
        stored = await seed.get_order(result.order.id)
        assert stored.payment_status == "awaiting_confirmation"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_short_payment_after_confirmations_started(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        """A short transaction seen while awaiting confirmations marks the order underpaid."""
        result = await place_order(container, seed, user, address, "address-crypto")
        first = await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 1000000, 0)
        )

        short = await container.reconciler.handle(
            "address-crypto",
            *address_callback(sign, "bc1qtestaddress1", 500000, 6, txid="tx-2"),
        )

        assert first.payment_status == "awaiting_confirmation"
        assert short.status == "applied"
        assert short.payment_status == "underpaid"
        stored = await seed.get_order(result.order.id)
        assert stored.payment_status == "underpaid"
        assert stored.payment_details["transaction_hash"] == "tx-2"
        assert [entry["status"] for entry in stored.status_history][-2:] == [
            "awaiting_confirmation",
            "underpaid",
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_after_window_expires_order(
        self, container: Any, seed: Any, sign: Any, clock: Any, user: Requester, address: dict
    ) -> None:
        result = await place_order(container, seed, user, address, "address-crypto")
        clock.advance(hours=25)

        outcome = await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 1000000, 3)
        )

        assert outcome.payment_status == "expired"
        assert outcome.completed is False
        stored = await seed.get_order(result.order.id)
        assert stored.payment_status == "expired"
        assert await seed.outbox_events(ORDER_COMPLETED) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_superseded_address_still_resolves(
        self, container: Any, seed: Any, sign: Any, clock: Any, user: Requester, address: dict
    ) -> None:
        """A payment to the address issued before a re-quote still reaches the order."""
        result = await place_order(container, seed, user, address, "address-crypto")
        clock.advance(minutes=16)
        await container.orchestrator.initiate_async_payment(result.order.id, user)

        outcome = await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 1000000, 1)
        )

        assert outcome.order_id == str(result.order.id)
        assert outcome.payment_status == "awaiting_confirmation"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_changes_nothing(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        result = await place_order(container, seed, user, address, "address-crypto")
        _, body = address_callback(sign, "bc1qtestaddress1", 1000000, 2)

        with pytest.raises(WebhookAuthError):
            await container.reconciler.handle(
                "address-crypto", {"x-webhook-signature": sign("wrong-secret", body)}, body
            )
        with pytest.raises(WebhookAuthError):
            await container.reconciler.handle("address-crypto", {}, body)

        stored = await seed.get_order(result.order.id)
        assert stored.payment_status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_address_is_an_anomaly(self, container: Any, sign: Any) -> None:
        with pytest.raises(InvariantViolation):
            await container.reconciler.handle(
                "address-crypto", *address_callback(sign, "bc1qunknown", 1000000, 2)
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_rail(self, container: Any) -> None:
        with pytest.raises(InvariantViolation) as exc_info:
            await container.reconciler.handle("carrier-pigeon", {}, b"{}")

        assert exc_info.value.http_status == 400
        assert exc_info.value.context == {"rail": "carrier-pigeon"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_completion_after_cancellation(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        """Money arriving for a cancelled order is recorded but fulfillment stays cancelled."""
        result = await place_order(container, seed, user, address, "address-crypto")
        await container.cancellation.cancel_order(result.order.id, user)

        outcome = await container.reconciler.handle(
            "address-crypto", *address_callback(sign, "bc1qtestaddress1", 1000000, 2)
        )

        assert outcome.payment_status == "completed"
        assert outcome.completed is False
        stored = await seed.get_order(result.order.id)
        assert stored.status == "cancelled"
        assert await seed.outbox_events(ORDER_COMPLETED) == []


class TestInvoiceCryptoWebhooks:
    """Test suite for hosted-invoice notifications."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invoice_confirmed(
        self, container: Any, seed: Any, sign: Any, guest: Requester, address: dict
    ) -> None:
        result = await place_order(container, seed, guest, address, "invoice-crypto")

        paid = await container.reconciler.handle(
            "invoice-crypto", *invoice_callback(sign, "INV-1", "paid", 4)
        )
        confirmed = await container.reconciler.handle(
            "invoice-crypto", *invoice_callback(sign, "INV-1", "confirmed", 10)
        )

        assert paid.payment_status == "awaiting_confirmation"
        assert confirmed.payment_status == "completed"
        assert confirmed.completed is True
        stored = await seed.get_order(result.order.id)
        assert stored.payment_details["provider_status"] == "confirmed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_underpaid_after_partial_confirmation(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        result = await place_order(container, seed, user, address, "invoice-crypto")

        partial = await container.reconciler.handle(
            "invoice-crypto", *invoice_callback(sign, "INV-1", "partially_confirmed", 3)
        )
        underpaid = await container.reconciler.handle(
            "invoice-crypto", *invoice_callback(sign, "INV-1", "underpaid", 3)
        )

        assert partial.payment_status == "awaiting_confirmation"
        assert underpaid.status == "applied"
        assert underpaid.payment_status == "underpaid"
        assert underpaid.completed is False
        stored = await seed.get_order(result.order.id)
        assert stored.payment_status == "underpaid"
        assert stored.payment_details["provider_status"] == "underpaid"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_expiry_fails_payment(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        result = await place_order(container, seed, user, address, "invoice-crypto")

        outcome = await container.reconciler.handle(
            "invoice-crypto", *invoice_callback(sign, "INV-1", "expired", 0)
        )

        assert outcome.payment_status == "failed"
        assert (await seed.get_order(result.order.id)).payment_status == "failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invoice_signature_header(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        await place_order(container, seed, user, address, "invoice-crypto")
        _, body = invoice_callback(sign, "INV-1", "confirmed", 10)

        with pytest.raises(WebhookAuthError):
            await container.reconciler.handle(
                "invoice-crypto", {"x-globee-signature": sign(ADDRESS_SECRET, body)}, body
            )


class TestGatewayWebhooks:
    """Test suite for gateway notifications."""

    def _event(self, event_id: str, event_type: str, provider_order_id: str) -> bytes:
        return json.dumps(
            {
                "id": event_id,
                "event_type": event_type,
                "resource": {
                    "id": f"CAP-{provider_order_id}",
                    "status": "COMPLETED",
                    "supplementary_data": {"related_ids": {"order_id": provider_order_id}},
                },
            }
        ).encode()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_completed_webhook_settles_order(
        self, container: Any, seed: Any, user: Requester, address: dict
    ) -> None:
        """A capture reported only by webhook finalizes the order like a direct capture."""
        result = await place_order(container, seed, user, address, "gateway")

        outcome = await container.reconciler.handle(
            "gateway",
            GATEWAY_HEADERS,
            self._event("WH-1", "PAYMENT.CAPTURE.COMPLETED", "GW-1"),
        )

        assert outcome.status == "applied"
        assert outcome.completed is True
        stored = await seed.get_order(result.order.id)
        assert stored.payment_status == "completed"
        assert stored.payment_details["capture_id"] == "CAP-GW-1"
        assert (await seed.get_cart(user)).items == []
        assert len(await seed.outbox_events(ORDER_COMPLETED)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_after_capture_is_terminal(
        self, container: Any, seed: Any, user: Requester, address: dict
    ) -> None:
        result = await place_order(container, seed, user, address, "gateway")
        await container.orchestrator.capture(result.order.id, "GW-1", user)

        outcome = await container.reconciler.handle(
            "gateway",
            GATEWAY_HEADERS,
            self._event("WH-2", "PAYMENT.CAPTURE.COMPLETED", "GW-1"),
        )

        assert outcome.status == "terminal"
        assert len(await seed.outbox_events(ORDER_COMPLETED)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_verification(
        self, container: Any, seed: Any, providers: Any, user: Requester, address: dict
    ) -> None:
        result = await place_order(container, seed, user, address, "gateway")
        providers.gateway.verification_status = "FAILURE"

        with pytest.raises(WebhookAuthError):
            await container.reconciler.handle(
                "gateway",
                GATEWAY_HEADERS,
                self._event("WH-3", "PAYMENT.CAPTURE.COMPLETED", "GW-1"),
            )

        assert (await seed.get_order(result.order.id)).payment_status == "pending"


class TestReplayFastPath:
    """Test suite for the Redis replay cache."""

    def _reconciler(self, container: Any, redis_client: Optional[RecordingRedis]) -> WebhookReconciler:
        return WebhookReconciler(
            container.executor,
            container.adapters,
            container.carts,
            SqlPromotionBook(),
            container.settings,
            redis_client=redis_client,
            clock=container.orchestrator.clock,
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cached_event_short_circuits(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        redis_client = RecordingRedis()
        reconciler = self._reconciler(container, redis_client)
        await place_order(container, seed, user, address, "address-crypto")
        headers, body = address_callback(sign, "bc1qtestaddress1", 1000000, 2)

        first = await reconciler.handle("address-crypto", headers, body)
        second = await reconciler.handle("address-crypto", headers, body)

        assert first.status == "applied"
        assert second.status == "duplicate"
        assert second.order_id is None
        assert list(redis_client.keys) == ["webhook:processed:address-crypto:tx-1:1000000:2"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redis_outage_falls_back_to_ledger(
        self, container: Any, seed: Any, sign: Any, user: Requester, address: dict
    ) -> None:
        reconciler = self._reconciler(container, RecordingRedis(fail=True))
        await place_order(container, seed, user, address, "address-crypto")
        headers, body = address_callback(sign, "bc1qtestaddress1", 1000000, 2)

        first = await reconciler.handle("address-crypto", headers, body)
        second = await reconciler.handle("address-crypto", headers, body)

        assert first.status == "applied"
        assert second.status == "duplicate"
        assert len(await seed.outbox_events(ORDER_COMPLETED)) == 1
