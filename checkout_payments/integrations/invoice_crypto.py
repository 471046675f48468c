"""
Hosted-invoice crypto rail (Monero via GloBee).

The provider hosts the payment page and reports invoice status in its own
vocabulary, which is mapped onto our payment statuses here.
"""
import json
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import structlog

from checkout_payments.core.errors import ValidationError
from checkout_payments.core.payment_details import InvoiceCryptoDetails
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

XMR_PLACES = Decimal("0.000000000001")
SIGNATURE_HEADER = "x-globee-signature"

PAID_STATUSES = {"paid", "confirmed", "complete", "completed"}
FAILED_STATUSES = {"cancelled", "canceled", "expired", "failed", "invalid"}


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value not in (None, "") else Decimal("0")
    except InvalidOperation:
        raise ValidationError("Amounts must be numeric")


class InvoiceCryptoAdapter(RailAdapter):
    """Provider-hosted invoice rail."""

    rail = Rail.INVOICE_CRYPTO
    asset = "XMR"

    def __init__(self, *args: Any, rate_oracle: RateOracle, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self.rate_oracle = rate_oracle

    async def initiate(self, order: Order) -> ProviderHandle:
        now = self.clock()
        rate = await self.rate_oracle.get_rate(self.asset, order.currency)
        expected = (order.total_amount / rate).quantize(XMR_PLACES, rounding=ROUND_HALF_UP)

        response = await self.http.request(
            "create_invoice",
            "POST",
            "/payment-request",
            headers={"X-AUTH-KEY": self.settings.invoice_crypto_api_key},
            json={
                "total": float(order.total_amount),
                "currency": order.currency,
                "order_id": order.order_number,
                "custom_payment_id": str(order.id),
                "customer": {"email": order.customer_email},
                "success_url": f"{self.settings.frontend_url}/checkout/success?order_id={order.id}",
                "cancel_url": f"{self.settings.frontend_url}/checkout/cancel?order_id={order.id}",
                "ipn_url": f"{self.settings.backend_url}/webhooks/{self.rail.value}",
                "confirmation_speed": "high",
            },
        )
        payload = response.json()
        invoice = payload.get("data", payload)

        expires_at = _parse_datetime(invoice.get("expiration_time")) or now + timedelta(
            hours=self.settings.invoice_crypto_payment_window_hours
        )
        details = InvoiceCryptoDetails(
            invoice_id=str(invoice["id"]),
            address=invoice.get("payment_address"),
            payment_url=invoice.get("redirect_url") or invoice.get("payment_url"),
            provider_status=invoice.get("status"),
            expected_amount=expected,
            exchange_rate=rate,
            rate_locked_until=now + timedelta(minutes=self.settings.invoice_crypto_rate_lock_minutes),
            expires_at=expires_at,
            required_confirmations=self.settings.invoice_crypto_required_confirmations,
        )

        logger.info(
            "crypto_invoice_created",
            order_id=str(order.id),
            invoice_id=details.invoice_id,
            expected_amount=str(expected),
            expires_at=expires_at.isoformat(),
        )

        return ProviderHandle(
            payment_reference=details.invoice_id,
            details=details,
            client_payload=self.describe(details),
        )

    async def refund(self, order: Order) -> RefundResult:
        details = InvoiceCryptoDetails.model_validate(order.payment_details)
        return RefundResult(
            status="requires_manual_refund",
            amount=str(details.amount_received),
            error="Invoice payments are refunded manually",
        )

    async def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> None:
        verify_hmac_signature(
            self.settings.invoice_crypto_webhook_secret, body, headers.get(SIGNATURE_HEADER)
        )

    def parse_webhook(self, body: bytes) -> WebhookEvent:
        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Malformed invoice notification")
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("status"):
            raise ValidationError("Missing required fields: id and status")

        try:
            confirmations = int(payload.get("confirmations") or 0)
        except (TypeError, ValueError):
            raise ValidationError("confirmations must be an integer")
        status = str(payload["status"]).lower()

        return WebhookEvent(
            rail=self.rail,
            event_type=f"invoice.{status}",
            reference=str(payload["id"]),
            fingerprint=f"{payload['id']}:{status}:{confirmations}",
            payload={**payload, "status": status, "confirmations": confirmations},
        )

    def reconcile(
        self, event: WebhookEvent, order: Order, details: AnyDetails, now: datetime
    ) -> StatusTransition:
        status = event.payload["status"]
        confirmations = event.payload["confirmations"]
        updates = {
            "provider_status": status,
            "confirmations": confirmations,
            "last_event_at": now,
            "transaction_hash": event.payload.get("transaction_hash") or details.transaction_hash,
        }
        if event.payload.get("paid_amount") not in (None, ""):
            updates["amount_received"] = _decimal(event.payload["paid_amount"])
        observed = details.model_copy(update=updates)

        if status in PAID_STATUSES:
            if confirmations >= details.required_confirmations:
                target = PaymentStatus.COMPLETED
                note = f"Invoice paid with {confirmations} confirmations"
            else:
                target = PaymentStatus.AWAITING_CONFIRMATION
                note = f"Invoice paid, {confirmations}/{details.required_confirmations} confirmations"
        elif status == "partially_confirmed":
            target = PaymentStatus.AWAITING_CONFIRMATION
            note = f"Invoice partially confirmed ({confirmations} confirmations)"
        elif status == "underpaid":
            target = PaymentStatus.UNDERPAID
            note = f"Invoice underpaid: received {observed.amount_received} {self.asset}"
        elif status in FAILED_STATUSES:
            target = PaymentStatus.FAILED
            note = f"Invoice {status} at provider"
        else:
            target = None
            note = f"Invoice status {status} needs no action"

        return StatusTransition(target, observed, note)
