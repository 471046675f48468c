"""
Process-wide service wiring.

Everything that talks to the outside world (database, Redis, provider
HTTP clients) is built once here at startup and injected into the
services. Tests pass their own engine, HTTP transports and rate oracle.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from checkout_payments.config import Settings
from checkout_payments.core.cancellation import CancellationService
from checkout_payments.core.clock import utcnow
from checkout_payments.core.collaborators import (
    LoggingNotifier,
    SqlCartStore,
    SqlCatalog,
    SqlLoyaltyCreditor,
    SqlPromotionBook,
    SqlShippingCatalog,
)
from checkout_payments.core.completion import OrderCompletionDispatcher
from checkout_payments.core.orchestrator import CheckoutCollaborators, OrderOrchestrator
from checkout_payments.core.outbox import OutboxDispatcher
from checkout_payments.core.reconciler import WebhookReconciler
from checkout_payments.core.status import Rail
from checkout_payments.core.transactions import TransactionExecutor, select_executor
from checkout_payments.database.connection import close_db, get_engine, get_session_factory
from checkout_payments.integrations.base import RailAdapter
from checkout_payments.integrations.exchange_rates import CoinGeckoRateOracle, RateOracle
from checkout_payments.integrations.registry import build_adapters
from checkout_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    executor: TransactionExecutor
    adapters: Dict[Rail, RailAdapter]
    rate_oracle: RateOracle
    orchestrator: OrderOrchestrator
    reconciler: WebhookReconciler
    cancellation: CancellationService
    dispatcher: OrderCompletionDispatcher
    outbox: OutboxDispatcher
    health: HealthCheck
    carts: SqlCartStore
    redis_client: Optional[aioredis.Redis] = None
    owns_engine: bool = field(default=False)

    async def aclose(self) -> None:
        """Release provider clients, Redis and (when this container created it) the engine."""
        for adapter in self.adapters.values():
            await adapter.aclose()
        if isinstance(self.rate_oracle, CoinGeckoRateOracle):
            await self.rate_oracle.aclose()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if self.owns_engine:
            await close_db()
        logger.info("service_container_closed")


async def build_container(
    settings: Settings,
    engine: Optional[AsyncEngine] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    http_clients: Optional[Mapping[Rail, httpx.AsyncClient]] = None,
    rate_oracle: Optional[RateOracle] = None,
    redis_client: Optional[aioredis.Redis] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ServiceContainer:
    """
    Build every service once for the life of the process.

    Args:
        settings: Application settings
        engine: Optional engine; the global engine is used otherwise
        session_factory: Optional session factory bound to engine
        http_clients: Optional httpx clients per rail
        rate_oracle: Optional exchange rate source
        redis_client: Optional Redis client; built from redis_url when configured
        clock: Time source

    Returns:
        ServiceContainer: Wired services
    """
    owns_engine = engine is None
    if engine is None:
        engine = get_engine(settings)
        session_factory = get_session_factory(settings)
    elif session_factory is None:
        session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )

    executor = await select_executor(settings.transaction_mode, engine, session_factory)

    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(
            settings.redis_url, encoding="utf-8", decode_responses=True
        )

    rate_oracle = rate_oracle or CoinGeckoRateOracle(settings)
    adapters = build_adapters(settings, rate_oracle, http_clients, clock=clock)

    catalog = SqlCatalog()
    carts = SqlCartStore(settings.max_cart_items, settings.max_item_quantity)
    promotions = SqlPromotionBook()

    orchestrator = OrderOrchestrator(
        executor,
        adapters,
        CheckoutCollaborators(
            catalog=catalog,
            carts=carts,
            shipping=SqlShippingCatalog(),
            promotions=promotions,
        ),
        settings,
        clock=clock,
    )
    reconciler = WebhookReconciler(
        executor, adapters, carts, promotions, settings, redis_client=redis_client, clock=clock
    )
    cancellation = CancellationService(executor, adapters, catalog, clock=clock)
    dispatcher = OrderCompletionDispatcher(SqlLoyaltyCreditor(session_factory), LoggingNotifier())
    outbox = OutboxDispatcher(
        session_factory,
        dispatcher.dispatch,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        max_attempts=settings.outbox_max_attempts,
    )
    health = HealthCheck(session_factory, redis_client, transaction_strategy=executor.name)

    logger.info(
        "service_container_built",
        rails=[rail.value for rail in adapters],
        transaction_strategy=executor.name,
        redis_enabled=redis_client is not None,
    )

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        executor=executor,
        adapters=adapters,
        rate_oracle=rate_oracle,
        orchestrator=orchestrator,
        reconciler=reconciler,
        cancellation=cancellation,
        dispatcher=dispatcher,
        outbox=outbox,
        health=health,
        carts=carts,
        redis_client=redis_client,
        owns_engine=owns_engine,
    )
