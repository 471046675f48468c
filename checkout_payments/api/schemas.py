"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from checkout_payments.core.status import Rail


class AddressSchema(BaseModel):
    """Postal address."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = Field(default=None, description="Recipient name")
    line1: str = Field(..., min_length=1, description="First address line")
    line2: Optional[str] = Field(default=None, description="Second address line")
    city: str = Field(..., min_length=1, description="City")
    region: Optional[str] = Field(default=None, description="County, state or region")
    postal_code: str = Field(..., min_length=1, description="Postal code")
    country: str = Field(..., min_length=2, max_length=2, description="ISO 3166-1 alpha-2 country")

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        """Normalize the country code."""
        return v.upper()


class CreateOrderRequest(BaseModel):
    """Request schema for checking out the current cart."""

    shipping_address: AddressSchema = Field(..., description="Delivery address")
    shipping_method_id: UUID = Field(..., description="Chosen shipping method")
    payment_method: Rail = Field(..., description="Payment rail")
    billing_address: Optional[AddressSchema] = Field(
        default=None, description="Billing address (defaults to the shipping address)"
    )
    customer_email: Optional[str] = Field(default=None, max_length=255, description="Contact email")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "shipping_address": {
                        "name": "Ada Lovelace",
                        "line1": "12 St James's Square",
                        "city": "London",
                        "postal_code": "SW1Y 4JH",
                        "country": "GB",
                    },
                    "shipping_method_id": "5f0c6f1e-4a2b-4d3c-9e8f-7a6b5c4d3e2f",
                    "payment_method": "gateway",
                    "customer_email": "ada@example.com",
                }
            ]
        }
    }


class OrderTotalsSchema(BaseModel):
    subtotal: str = Field(..., description="Sum of line totals")
    shipping_cost: str = Field(..., description="Shipping charged")
    discount_amount: str = Field(..., description="Promotion discount")
    total_amount: str = Field(..., description="Amount due")
    currency: str = Field(..., description="Currency code")


class CreateOrderResponse(BaseModel):
    """Response schema for order creation."""

    order_id: str = Field(..., description="Order ID")
    order_number: str = Field(..., description="Customer-facing order number")
    payment_method: str = Field(..., description="Payment rail")
    payment_status: str = Field(..., description="Payment status")
    status: str = Field(..., description="Fulfillment status")
    totals: OrderTotalsSchema = Field(..., description="Order totals")
    promotion_code: Optional[str] = Field(default=None, description="Applied promotion code")
    rail_handle: Dict[str, Any] = Field(
        ..., description="What the client needs to pay: approval URL, address or invoice"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "123e4567-e89b-12d3-a456-426614174000",
                    "order_number": "ORD-12345678-042",
                    "payment_method": "address-crypto",
                    "payment_status": "pending",
                    "status": "pending",
                    "totals": {
                        "subtotal": "100.00",
                        "shipping_cost": "10.00",
                        "discount_amount": "0.00",
                        "total_amount": "110.00",
                        "currency": "GBP",
                    },
                    "rail_handle": {
                        "address": "bc1qexampleaddress",
                        "expected_amount": "0.00250000",
                        "expires_at": "2025-01-07T10:00:00+00:00",
                    },
                }
            ]
        }
    }


class CaptureRequest(BaseModel):
    """Request schema for capturing an approved gateway payment."""

    order_id: UUID = Field(..., description="Order ID")
    provider_order_id: str = Field(..., min_length=1, description="Gateway order ID")


class CaptureResponse(BaseModel):
    order_id: str = Field(..., description="Order ID")
    status: str = Field(..., description="Capture status")
    capture_id: Optional[str] = Field(default=None, description="Gateway capture ID")


class InitiateCryptoRequest(BaseModel):
    """Request schema for fetching (or refreshing) a crypto payment handle."""

    order_id: UUID = Field(..., description="Order ID")


class PaymentStatusResponse(BaseModel):
    """Response schema for payment status."""

    model_config = ConfigDict(extra="allow")

    order_id: str = Field(..., description="Order ID")
    order_number: str = Field(..., description="Customer-facing order number")
    payment_method: str = Field(..., description="Payment rail")
    payment_status: str = Field(..., description="Payment status")
    status: str = Field(..., description="Fulfillment status")
    is_expired: bool = Field(..., description="Payment window has passed")
    total_amount: str = Field(..., description="Amount due in fiat")
    currency: str = Field(..., description="Currency code")
    confirmations: Optional[int] = Field(default=None, description="Observed confirmations")
    required_confirmations: Optional[int] = Field(
        default=None, description="Confirmations needed to complete"
    )
    amount_received: Optional[str] = Field(default=None, description="Crypto amount received")
    expected_amount: Optional[str] = Field(default=None, description="Crypto amount expected")
    expires_at: Optional[str] = Field(default=None, description="Payment window end (ISO 8601)")


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500, description="Cancellation reason")


class CancelOrderResponse(BaseModel):
    """Response schema for cancellation."""

    order_id: str = Field(..., description="Order ID")
    status: str = Field(..., description="Fulfillment status")
    payment_status: str = Field(..., description="Payment status")
    refund: Optional[Dict[str, Any]] = Field(default=None, description="Refund outcome")


class WebhookResponse(BaseModel):
    received: bool = Field(..., description="Delivery acknowledged")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable message")
    alternatives: Optional[List[str]] = Field(
        default=None, description="Other payment rails to try"
    )
