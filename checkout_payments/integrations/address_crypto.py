"""
Address-based crypto rail (Bitcoin via Blockonomics).

Each order gets a fresh deposit address and an amount locked at the current
exchange rate. The provider calls back with the observed transaction and
its confirmation count.
"""
import json
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping

import structlog

from checkout_payments.core.errors import ValidationError
from checkout_payments.core.payment_details import AddressCryptoDetails
from checkout_payments.core.status import PaymentStatus, Rail
from checkout_payments.database.models import Order
from checkout_payments.integrations.base import (
    AnyDetails,
    ProviderHandle,
    RailAdapter,
    RefundResult,
    StatusTransition,
    WebhookEvent,
    verify_hmac_signature,
)
from checkout_payments.integrations.exchange_rates import RateOracle

logger = structlog.get_logger(__name__)

BTC_PLACES = Decimal("0.00000001")
SATOSHIS_PER_BTC = Decimal(100_000_000)
SIGNATURE_HEADER = "x-webhook-signature"


def satoshis_to_btc(value: int) -> Decimal:
    return (Decimal(value) / SATOSHIS_PER_BTC).quantize(BTC_PLACES)


def is_payment_sufficient(received: Decimal, expected: Decimal, tolerance_percent: Decimal) -> bool:
    """Received amount covers the expected amount less the tolerated shortfall."""
    return received >= expected - expected * tolerance_percent / 100


class AddressCryptoAdapter(RailAdapter):
    """Deposit-address rail with confirmation thresholds."""

    rail = Rail.ADDRESS_CRYPTO
    asset = "BTC"

    def __init__(self, *args: Any, rate_oracle: RateOracle, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.rate_oracle = rate_oracle

    async def initiate(self, order: Order) -> ProviderHandle:
        now = self.clock()
        rate = await self.rate_oracle.get_rate(self.asset, order.currency)
        expected = (order.total_amount / rate).quantize(BTC_PLACES, rounding=ROUND_HALF_UP)

        response = await self.http.request(
            "new_address",
            "POST",
            "/new_address",
            headers={"Authorization": f"Bearer {self.settings.address_crypto_api_key}"},
        )
        address = response.json()["address"]

        details = AddressCryptoDetails(
            address=address,
            expected_amount=expected,
            exchange_rate=rate,
            rate_locked_until=now + timedelta(minutes=self.settings.address_crypto_rate_lock_minutes),
            expires_at=now + timedelta(hours=self.settings.address_crypto_payment_window_hours),
            required_confirmations=self.settings.address_crypto_required_confirmations,
        )

        logger.info(
            "crypto_address_issued",
            order_id=str(order.id),
            address=address,
            expected_amount=str(expected),
            exchange_rate=str(rate),
        )

        return ProviderHandle(
            payment_reference=address,
            details=details,
            client_payload=self.describe(details),
        )

    def describe(self, details: AnyDetails) -> Dict[str, Any]:
        payload = details.model_dump(mode="json")
        payload["payment_uri"] = f"bitcoin:{payload['address']}?amount={payload['expected_amount']}"
        return payload

    async def refund(self, order: Order) -> RefundResult:
        details = AddressCryptoDetails.model_validate(order.payment_details)
        return RefundResult(
            status="requires_manual_refund",
            amount=str(details.amount_received),
            error="On-chain payments are refunded manually",
        )

    async def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> None:
        verify_hmac_signature(
            self.settings.address_crypto_webhook_secret, body, headers.get(SIGNATURE_HEADER)
        )

    def parse_webhook(self, body: bytes) -> WebhookEvent:
        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Malformed address payment callback")
        if not isinstance(payload, dict) or not payload.get("addr") or not payload.get("txid"):
            raise ValidationError("Missing required fields: addr and txid")

        try:
            value = int(payload.get("value", 0))
            confirmations = int(payload.get("confirmations", 0))
        except (TypeError, ValueError):
            raise ValidationError("value and confirmations must be integers")

        return WebhookEvent(
            rail=self.rail,
            event_type="address_payment",
            reference=payload["addr"],
            fingerprint=f"{payload['txid']}:{value}:{confirmations}",
            payload={**payload, "value": value, "confirmations": confirmations},
        )

    def reconcile(
        self, event: WebhookEvent, order: Order, details: AnyDetails, now: datetime
    ) -> StatusTransition:
        received = satoshis_to_btc(event.payload["value"])
        confirmations = event.payload["confirmations"]
        observed = details.model_copy(
            update={
                "amount_received": received,
                "confirmations": confirmations,
                "transaction_hash": event.payload["txid"],
                "last_event_at": now,
            }
        )

        if not is_payment_sufficient(
            received, details.expected_amount, self.settings.underpayment_tolerance_percent
        ):
            return StatusTransition(
                PaymentStatus.UNDERPAID,
                observed,
                f"Received {received} {self.asset}, expected {details.expected_amount}",
            )
        if confirmations >= details.required_confirmations:
            return StatusTransition(
                PaymentStatus.COMPLETED,
                observed,
                f"Payment confirmed with {confirmations} confirmations",
            )
        return StatusTransition(
            PaymentStatus.AWAITING_CONFIRMATION,
            observed,
            f"Payment seen with {confirmations}/{details.required_confirmations} confirmations",
        )
