"""Payment provider integrations."""
from .address_crypto import AddressCryptoAdapter
from .base import (
    ProviderError,
    ProviderHandle,
    ProviderUnavailableError,
    RailAdapter,
    RefundResult,
)
from .exchange_rates import CoinGeckoRateOracle, RateOracle
from .gateway import GatewayAdapter
from .invoice_crypto import InvoiceCryptoAdapter
from .registry import build_adapters

__all__ = [
    "AddressCryptoAdapter",
    "CoinGeckoRateOracle",
    "GatewayAdapter",
    "InvoiceCryptoAdapter",
    "ProviderError",
    "ProviderHandle",
    "ProviderUnavailableError",
    "RailAdapter",
    "RateOracle",
    "RefundResult",
    "build_adapters",
]
