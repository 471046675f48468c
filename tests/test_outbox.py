"""
Tests for outbox dispatch and order completion side effects.
"""
import uuid
from typing import Any, Dict, List

import pytest
from sqlalchemy import select

from checkout_payments.core.collaborators import Requester, SqlLoyaltyCreditor
from checkout_payments.core.completion import OrderCompletionDispatcher
from checkout_payments.core.order_state import ORDER_CANCELLED, ORDER_COMPLETED
from checkout_payments.core.outbox import OutboxDispatcher
from checkout_payments.database.models import LoyaltyCredit, OutboxEvent


class FailingCreditor:
    async def credit(self, order_event: Dict[str, Any]) -> None:
        raise RuntimeError("loyalty service down")


class RecordingNotifier:
    def __init__(self) -> None:
        self.confirmed: List[str] = []
        self.cancelled: List[str] = []

    async def order_confirmed(self, order_event: Dict[str, Any]) -> None:
        self.confirmed.append(order_event["order_id"])

    async def order_cancelled(self, order_event: Dict[str, Any]) -> None:
        self.cancelled.append(order_event["order_id"])


def order_payload(user_id: Any = "user-1", total: str = "110.00") -> Dict[str, Any]:
    return {
        "order_id": str(uuid.uuid4()),
        "order_number": "ORD-00000001-001",
        "user_id": user_id,
        "session_id": None if user_id else "session-1",
        "customer_email": "ada@example.com",
        "payment_method_type": "gateway",
        "payment_status": "completed",
        "total_amount": total,
        "currency": "GBP",
    }


async def add_event(session_factory: Any, event_type: str, payload: Dict[str, Any]) -> int:
    async with session_factory() as db:
        event = OutboxEvent(
            aggregate_id=uuid.UUID(payload["order_id"]),
            aggregate_type="order",
            event_type=event_type,
            payload=payload,
        )
        db.add(event)
        await db.commit()
        return event.id


async def get_event(session_factory: Any, event_id: int) -> OutboxEvent:
    async with session_factory() as db:
        return await db.get(OutboxEvent, event_id)


class TestOutboxDispatcher:
    """Test suite for outbox delivery bookkeeping."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_completed_order_is_credited_and_published(
        self, container: Any, seed: Any, user: Requester, address: dict
    ) -> None:
        product = await seed.product(price="100.00")
        method = await seed.shipping(base_cost="10.00")
        await seed.cart(user, product)
        result = await container.orchestrator.create_order(
            requester=user, shipping_address=address, shipping_method_id=method.id, rail="gateway"
        )
        await container.orchestrator.capture(result.order.id, "GW-1", user)

        published = await container.outbox.process_batch()

        assert published == 1
        event = (await seed.outbox_events(ORDER_COMPLETED))[0]
        assert event.published is True
        assert event.published_at is not None
        assert event.last_error is None
        async with container.session_factory() as db:
            credits = (await db.execute(select(LoyaltyCredit))).scalars().all()
        assert [(c.order_id, c.user_id, c.points) for c in credits] == [
            (result.order.id, "user-1", 110)
        ]
        assert await container.outbox.get_pending_count() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_side_effect_failures_are_isolated(self, session_factory: Any) -> None:
        """A failing loyalty credit neither blocks the confirmation nor redelivers the event."""
        notifier = RecordingNotifier()
        dispatcher = OrderCompletionDispatcher(FailingCreditor(), notifier)
        outbox = OutboxDispatcher(session_factory, dispatcher.dispatch, max_attempts=3)
        payload = order_payload()
        event_id = await add_event(session_factory, ORDER_COMPLETED, payload)

        assert await outbox.process_batch() == 1

        event = await get_event(session_factory, event_id)
        assert event.published is True
        assert event.last_error == "loyalty_credit: loyalty service down"
        assert event.attempts == 0
        assert notifier.confirmed == [payload["order_id"]]
        assert await outbox.process_batch() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_crashing_handler_retries_then_parks(self, session_factory: Any) -> None:
        calls: List[int] = []

        async def handler(event_data: Dict[str, Any]) -> Dict[str, str]:
            calls.append(event_data["id"])
            raise RuntimeError("handler crashed")

        outbox = OutboxDispatcher(session_factory, handler, max_attempts=2)
        event_id = await add_event(session_factory, ORDER_COMPLETED, order_payload())

        assert await outbox.process_batch() == 0
        assert (await get_event(session_factory, event_id)).attempts == 1
        assert await outbox.get_pending_count() == 1

        assert await outbox.process_batch() == 0
        parked = await get_event(session_factory, event_id)
        assert parked.attempts == 2
        assert parked.published is False
        assert parked.last_error == "handler crashed"

        assert await outbox.process_batch() == 0
        assert calls == [event_id, event_id]
        assert await outbox.get_pending_count() == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_events_delivered_in_creation_order(self, session_factory: Any) -> None:
        seen: List[str] = []

        async def handler(event_data: Dict[str, Any]) -> Dict[str, str]:
            seen.append(event_data["event_type"])
            return {}

        outbox = OutboxDispatcher(session_factory, handler)
        await add_event(session_factory, ORDER_COMPLETED, order_payload())
        await add_event(session_factory, ORDER_CANCELLED, order_payload())

        assert await outbox.process_batch() == 2
        assert seen == [ORDER_COMPLETED, ORDER_CANCELLED]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_batch_size_limits_work(self, session_factory: Any) -> None:
        async def handler(event_data: Dict[str, Any]) -> Dict[str, str]:
            return {}

        outbox = OutboxDispatcher(session_factory, handler, batch_size=2)
        for _ in range(3):
            await add_event(session_factory, ORDER_COMPLETED, order_payload())

        assert await outbox.process_batch() == 2
        assert await outbox.get_pending_count() == 1
        assert await outbox.process_batch() == 1


class TestCompletionDispatcher:
    """Test suite for routing events to side effects."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancellation_sends_notice_only(self) -> None:
        notifier = RecordingNotifier()
        dispatcher = OrderCompletionDispatcher(FailingCreditor(), notifier)
        payload = order_payload()

        failures = await dispatcher.dispatch({"event_type": ORDER_CANCELLED, "payload": payload})

        assert failures == {}
        assert notifier.cancelled == [payload["order_id"]]
        assert notifier.confirmed == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_event_is_ignored(self) -> None:
        dispatcher = OrderCompletionDispatcher(FailingCreditor(), RecordingNotifier())

        assert await dispatcher.dispatch({"event_type": "order.shipped", "payload": {}}) == {}


class TestLoyaltyCreditor:
    """Test suite for loyalty credit."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_credit_granted_once(self, session_factory: Any) -> None:
        creditor = SqlLoyaltyCreditor(session_factory)
        payload = order_payload(total="54.99")

        await creditor.credit(payload)
        await creditor.credit(payload)

        async with session_factory() as db:
            credits = (await db.execute(select(LoyaltyCredit))).scalars().all()
        assert len(credits) == 1
        assert credits[0].points == 54

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_guest_orders_earn_nothing(self, session_factory: Any) -> None:
        creditor = SqlLoyaltyCreditor(session_factory)

        await creditor.credit(order_payload(user_id=None))

        async with session_factory() as db:
            assert (await db.execute(select(LoyaltyCredit))).scalars().all() == []
