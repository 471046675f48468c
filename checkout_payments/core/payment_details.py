"""
Per-rail payment details.

Stored on the order as JSON and always read back through the tagged union,
so every consumer works with the concrete shape of its rail.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class GatewayDetails(BaseModel):
    """Approve-then-capture gateway order."""

    model_config = ConfigDict(frozen=True)

    type: Literal["gateway"] = "gateway"
    provider_order_id: str
    approval_url: Optional[str] = None
    provider_status: Optional[str] = None
    capture_id: Optional[str] = None
    payer_id: Optional[str] = None
    payer_email: Optional[str] = None
    captured_at: Optional[datetime] = None


class CryptoDetails(BaseModel):
    """Fields shared by the confirmation-based crypto rails."""

    model_config = ConfigDict(frozen=True)

    asset: str
    expected_amount: Decimal
    exchange_rate: Decimal
    rate_locked_until: datetime
    expires_at: datetime
    required_confirmations: int
    confirmations: int = 0
    amount_received: Decimal = Decimal("0")
    transaction_hash: Optional[str] = None
    last_event_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def rate_lock_valid(self, now: datetime) -> bool:
        return now < self.rate_locked_until


class AddressCryptoDetails(CryptoDetails):
    """Fresh deposit address watched for on-chain confirmations."""

    type: Literal["address-crypto"] = "address-crypto"
    asset: str = "BTC"
    address: str


class InvoiceCryptoDetails(CryptoDetails):
    """Provider-hosted invoice reporting its own status vocabulary."""

    type: Literal["invoice-crypto"] = "invoice-crypto"
    asset: str = "XMR"
    invoice_id: str
    address: Optional[str] = None
    payment_url: Optional[str] = None
    provider_status: Optional[str] = None


PaymentDetails = Annotated[
    Union[GatewayDetails, AddressCryptoDetails, InvoiceCryptoDetails],
    Field(discriminator="type"),
]

_details_adapter: TypeAdapter[Any] = TypeAdapter(PaymentDetails)


def load_payment_details(raw: Dict[str, Any]) -> Union[
    GatewayDetails, AddressCryptoDetails, InvoiceCryptoDetails
]:
    """Parse stored JSON into the rail's details model."""
    return _details_adapter.validate_python(raw)


def dump_payment_details(
    details: Union[GatewayDetails, AddressCryptoDetails, InvoiceCryptoDetails],
) -> Dict[str, Any]:
    """Serialize details into JSON-safe primitives for storage."""
    return details.model_dump(mode="json")
