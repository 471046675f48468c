"""Builds the enabled rail adapters once at process start."""
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional

import httpx
import structlog

from checkout_payments.config import Settings
from checkout_payments.core.clock import utcnow
from checkout_payments.core.status import Rail
from checkout_payments.integrations.address_crypto import AddressCryptoAdapter
from checkout_payments.integrations.base import ProviderHttpClient, RailAdapter
from checkout_payments.integrations.exchange_rates import RateOracle
from checkout_payments.integrations.gateway import GatewayAdapter
from checkout_payments.integrations.invoice_crypto import InvoiceCryptoAdapter

logger = structlog.get_logger(__name__)


def build_adapters(
    settings: Settings,
    rate_oracle: RateOracle,
    http_clients: Optional[Mapping[Rail, httpx.AsyncClient]] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Dict[Rail, RailAdapter]:
    """
    Construct one adapter per enabled rail.

    Args:
        settings: Application settings
        rate_oracle: Exchange rate source for the crypto rails
        http_clients: Optional pre-built httpx clients per rail (tests inject mock transports)
        clock: Time source

    Returns:
        Dict[Rail, RailAdapter]: Adapters keyed by rail
    """
    http_clients = http_clients or {}
    base_urls = {
        Rail.GATEWAY: settings.gateway_base_url,
        Rail.ADDRESS_CRYPTO: settings.address_crypto_base_url,
        Rail.INVOICE_CRYPTO: settings.invoice_crypto_base_url,
    }

    adapters: Dict[Rail, RailAdapter] = {}
    for rail in (Rail(name) for name in settings.get_enabled_rails()):
        http = ProviderHttpClient(rail.value, settings, base_urls[rail], http_clients.get(rail))
        if rail == Rail.GATEWAY:
            adapters[rail] = GatewayAdapter(settings, http, clock=clock)
        elif rail == Rail.ADDRESS_CRYPTO:
            adapters[rail] = AddressCryptoAdapter(settings, http, clock=clock, rate_oracle=rate_oracle)
        else:
            adapters[rail] = InvoiceCryptoAdapter(settings, http, clock=clock, rate_oracle=rate_oracle)

    logger.info("rail_adapters_built", rails=[rail.value for rail in adapters])
    return adapters
