"""
Synchronous gateway rail (PayPal Orders v2).

The customer approves a provider order on the provider's page; the client
then asks us to capture it and the result is final immediately. Webhooks
are verified by posting them back to the provider.
"""
import asyncio
import json
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import structlog

from checkout_payments.core.errors import ValidationError, WebhookAuthError
from checkout_payments.core.payment_details import GatewayDetails
from checkout_payments.core.status import PaymentStatus, Rail
from checkout_payments.database.models import Order
from checkout_payments.integrations.base import (
    AnyDetails,
    CaptureResult,
    ProviderError,
    ProviderErrorType,
    ProviderHandle,
    RailAdapter,
    RefundResult,
    StatusTransition,
    WebhookEvent,
)

logger = structlog.get_logger(__name__)

VERIFICATION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

EVENT_TARGETS = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentStatus.COMPLETED,
    "PAYMENT.CAPTURE.DENIED": PaymentStatus.FAILED,
    "CHECKOUT.ORDER.VOIDED": PaymentStatus.FAILED,
}


class GatewayAdapter(RailAdapter):
    """Approve-then-capture gateway."""

    rail = Rail.GATEWAY
    is_synchronous = True

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    async def _get_access_token(self) -> str:
        """OAuth client-credentials token, reused until a minute before it expires."""
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            response = await self.http.request(
                "oauth_token",
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.settings.gateway_client_id, self.settings.gateway_client_secret),
            )
            payload = response.json()
            self._access_token = payload["access_token"]
            self._token_expires_at = time.monotonic() + int(payload.get("expires_in", 0)) - 60
            return self._access_token

    async def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self._get_access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def _order_body(self, order: Order) -> Dict[str, Any]:
        currency = order.currency

        def money(value: Any) -> Dict[str, str]:
            return {"currency_code": currency, "value": f"{value:.2f}"}

        return {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order.order_number,
                    "custom_id": str(order.id),
                    "amount": {
                        "currency_code": currency,
                        "value": f"{order.total_amount:.2f}",
                        "breakdown": {
                            "item_total": money(order.subtotal),
                            "shipping": money(order.shipping_cost),
                            "discount": money(order.discount_amount),
                        },
                    },
                    "items": [
                        {
                            "name": item["name"][:127],
                            "sku": item.get("sku") or item["slug"][:127],
                            "quantity": str(item["quantity"]),
                            "unit_amount": money(Decimal(item["unit_price"])),
                        }
                        for item in order.items
                    ],
                }
            ],
            "application_context": {
                "brand_name": self.settings.app_name,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": f"{self.settings.frontend_url}/checkout/success?order_id={order.id}",
                "cancel_url": f"{self.settings.frontend_url}/checkout/cancel?order_id={order.id}",
            },
        }

    async def initiate(self, order: Order) -> ProviderHandle:
        response = await self.http.request(
            "create_order",
            "POST",
            "/v2/checkout/orders",
            json=self._order_body(order),
            headers=await self._headers(request_id=f"order-{order.id}"),
        )
        payload = response.json()
        approval_url = next(
            (
                link["href"]
                for link in payload.get("links", [])
                if link.get("rel") in ("approve", "payer-action")
            ),
            None,
        )
        details = GatewayDetails(
            provider_order_id=payload["id"],
            approval_url=approval_url,
            provider_status=payload.get("status"),
        )

        logger.info(
            "gateway_order_created",
            order_id=str(order.id),
            provider_order_id=details.provider_order_id,
        )

        return ProviderHandle(
            payment_reference=details.provider_order_id,
            details=details,
            client_payload=self.describe(details),
        )

    async def capture(self, order: Order, provider_order_id: str) -> CaptureResult:
        response = await self.http.request(
            "capture_order",
            "POST",
            f"/v2/checkout/orders/{provider_order_id}/capture",
            headers=await self._headers(request_id=f"capture-{order.id}"),
        )
        payload = response.json()
        try:
            capture = payload["purchase_units"][0]["payments"]["captures"][0]
        except (KeyError, IndexError, TypeError):
            capture = {}
        payer = payload.get("payer") or {}

        return CaptureResult(
            status=payload.get("status", "UNKNOWN"),
            capture_id=capture.get("id"),
            payer_id=payer.get("payer_id"),
            payer_email=payer.get("email_address"),
        )

    async def refund(self, order: Order) -> RefundResult:
        details = GatewayDetails.model_validate(order.payment_details)
        if not details.capture_id:
            return RefundResult(status="failed", error="No capture recorded for this order")

        response = await self.http.request(
            "refund_capture",
            "POST",
            f"/v2/payments/captures/{details.capture_id}/refund",
            json={},
            headers=await self._headers(request_id=f"refund-{order.id}"),
        )
        payload = response.json()
        provider_status = payload.get("status", "")
        status = {"COMPLETED": "succeeded", "PENDING": "pending"}.get(provider_status, "failed")
        amount = (payload.get("amount") or {}).get("value") or f"{order.total_amount:.2f}"

        logger.info(
            "gateway_refund_requested",
            order_id=str(order.id),
            refund_id=payload.get("id"),
            provider_status=provider_status,
        )

        error = None
        if status == "failed":
            error = f"Provider reported {provider_status or 'no status'}"
        return RefundResult(
            status=status, refund_id=payload.get("id"), amount=amount, error=error
        )

    async def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> None:
        verification = {name: headers.get(header) for name, header in VERIFICATION_HEADERS.items()}
        if not all(verification.values()):
            raise WebhookAuthError("Missing webhook verification headers")
        if not self.settings.gateway_webhook_id:
            raise WebhookAuthError("Webhook id is not configured")
        try:
            event = json.loads(body)
        except ValueError:
            raise WebhookAuthError("Webhook body is not valid JSON")

        try:
            response = await self.http.request(
                "verify_webhook",
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json={
                    **verification,
                    "webhook_id": self.settings.gateway_webhook_id,
                    "webhook_event": event,
                },
                headers=await self._headers(),
            )
        except ProviderError as e:
            if e.error_type == ProviderErrorType.PERMANENT:
                raise WebhookAuthError("Webhook verification was rejected")
            raise

        if response.json().get("verification_status") != "SUCCESS":
            raise WebhookAuthError("Invalid webhook signature")

    def parse_webhook(self, body: bytes) -> WebhookEvent:
        try:
            payload = json.loads(body)
            event_id = payload["id"]
            event_type = payload["event_type"]
        except (ValueError, KeyError, TypeError):
            raise ValidationError("Malformed gateway webhook")

        resource = payload.get("resource") or {}
        if event_type.startswith("CHECKOUT.ORDER."):
            reference = resource.get("id")
        else:
            reference = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get(
                "order_id"
            )

        return WebhookEvent(
            rail=self.rail,
            event_type=event_type,
            reference=reference,
            fingerprint=str(event_id),
            payload=payload,
        )

    def reconcile(
        self, event: WebhookEvent, order: Order, details: AnyDetails, now: datetime
    ) -> StatusTransition:
        resource = event.payload.get("resource") or {}
        target = EVENT_TARGETS.get(event.event_type)

        updates: Dict[str, Any] = {
            "provider_status": resource.get("status") or details.provider_status
        }
        if event.event_type == "PAYMENT.CAPTURE.COMPLETED":
            updates["capture_id"] = details.capture_id or resource.get("id")
            updates["captured_at"] = details.captured_at or now

        return StatusTransition(
            target=target,
            details=details.model_copy(update=updates),
            note=f"Gateway event {event.event_type}",
        )
