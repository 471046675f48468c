"""
Pytest configuration and fixtures.

Each test gets its own SQLite database file, a container wired with
in-process provider fakes served through httpx.MockTransport, a fixed
exchange rate and a controllable clock.
"""
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from checkout_payments.api.main import create_app
from checkout_payments.config import Settings
from checkout_payments.container import ServiceContainer, build_container
from checkout_payments.core.collaborators import Requester, SqlCartStore
from checkout_payments.core.status import Rail
from checkout_payments.core.transactions import TransactionalExecutor
from checkout_payments.database.models import (
    Base,
    Cart,
    Order,
    OutboxEvent,
    Product,
    Promotion,
    ShippingMethod,
)

START_TIME = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRateOracle:
    """Fixed fiat price per asset."""

    def __init__(self) -> None:
        self.rates = {"BTC": Decimal("11000"), "XMR": Decimal("110")}
        self.calls = 0

    async def get_rate(self, asset: str, fiat: str) -> Decimal:
        self.calls += 1
        return self.rates[asset]


class FakeGateway:
    """Approve-then-capture gateway speaking the PayPal v2 shapes the adapter uses."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.capture_status = "COMPLETED"
        self.refund_status = "COMPLETED"
        self.verification_status = "SUCCESS"
        self.create_status_code = 201
        self.refund_status_code = 201
        self._counter = 0

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": 3600})
        if path == "/v2/checkout/orders":
            if self.create_status_code >= 400:
                return httpx.Response(self.create_status_code, json={"name": "ERROR"})
            self._counter += 1
            provider_id = f"GW-{self._counter}"
            return httpx.Response(
                201,
                json={
                    "id": provider_id,
                    "status": "CREATED",
                    "links": [
                        {"rel": "self", "href": f"https://gateway.test/orders/{provider_id}"},
                        {"rel": "approve", "href": f"https://gateway.test/approve/{provider_id}"},
                    ],
                },
            )
        if path.startswith("/v2/checkout/orders/") and path.endswith("/capture"):
            provider_id = path.split("/")[-2]
            return httpx.Response(
                201,
                json={
                    "id": provider_id,
                    "status": self.capture_status,
                    "purchase_units": [
                        {"payments": {"captures": [{"id": f"CAP-{provider_id}"}]}}
                    ],
                    "payer": {"payer_id": "PAYER-1", "email_address": "buyer@example.com"},
                },
            )
        if path.startswith("/v2/payments/captures/") and path.endswith("/refund"):
            if self.refund_status_code >= 400:
                return httpx.Response(self.refund_status_code, json={"name": "ERROR"})
            return httpx.Response(
                201,
                json={
                    "id": "REFUND-1",
                    "status": self.refund_status,
                    "amount": {"value": "110.00", "currency_code": "GBP"},
                },
            )
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})


class FakeAddressProvider:
    """Hands out a fresh deposit address per request."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self._counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not request.url.path.endswith("/new_address"):
            return httpx.Response(404)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"message": "unavailable"})
        self._counter += 1
        return httpx.Response(200, json={"address": f"bc1qtestaddress{self._counter}"})


class FakeInvoiceProvider:
    """Creates hosted invoices; expiration_time can be forced."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.expiration_time: Optional[str] = None
        self._counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not request.url.path.endswith("/payment-request"):
            return httpx.Response(404)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"success": False})
        self._counter += 1
        invoice_id = f"INV-{self._counter}"
        data: Dict[str, Any] = {
            "id": invoice_id,
            "status": "unpaid",
            "payment_address": f"4XMRtestaddress{self._counter}",
            "redirect_url": f"https://invoices.test/{invoice_id}",
        }
        if self.expiration_time:
            data["expiration_time"] = self.expiration_time
        return httpx.Response(200, json={"success": True, "data": data})


class Providers:
    def __init__(self) -> None:
        self.gateway = FakeGateway()
        self.address = FakeAddressProvider()
        self.invoice = FakeInvoiceProvider()

    def clients(self, settings: Settings) -> Dict[Rail, httpx.AsyncClient]:
        return {
            Rail.GATEWAY: httpx.AsyncClient(
                transport=httpx.MockTransport(self.gateway), base_url=settings.gateway_base_url
            ),
            Rail.ADDRESS_CRYPTO: httpx.AsyncClient(
                transport=httpx.MockTransport(self.address),
                base_url=settings.address_crypto_base_url,
            ),
            Rail.INVOICE_CRYPTO: httpx.AsyncClient(
                transport=httpx.MockTransport(self.invoice),
                base_url=settings.invoice_crypto_base_url,
            ),
        }


class Seeder:
    """Creates catalog, shipping, promotion and cart rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: FrozenClock):
        self.session_factory = session_factory
        self.clock = clock
        self.carts = SqlCartStore()
        self._counter = 0

    async def product(
        self,
        price: str = "100.00",
        stock: int = 5,
        is_active: bool = True,
        weight_kg: str = "1.000",
        category_ids: Optional[List[str]] = None,
    ) -> Product:
        self._counter += 1
        product = Product(
            name=f"Product {self._counter}",
            slug=f"product-{self._counter}",
            sku=f"SKU-{self._counter}",
            price=Decimal(price),
            stock_quantity=stock,
            weight_kg=Decimal(weight_kg),
            category_ids=category_ids or [],
            is_active=is_active,
        )
        async with self.session_factory() as db:
            db.add(product)
            await db.commit()
        return product

    async def shipping(
        self,
        base_cost: str = "10.00",
        supported_countries: Optional[List[str]] = None,
        free_shipping_threshold: Optional[str] = None,
        max_weight_kg: Optional[str] = None,
    ) -> ShippingMethod:
        self._counter += 1
        method = ShippingMethod(
            name="Standard",
            code=f"standard-{self._counter}",
            base_cost=Decimal(base_cost),
            supported_countries=supported_countries or [],
            free_shipping_threshold=(
                Decimal(free_shipping_threshold) if free_shipping_threshold else None
            ),
            min_order_value=Decimal("0"),
            max_weight_kg=Decimal(max_weight_kg) if max_weight_kg else None,
        )
        async with self.session_factory() as db:
            db.add(method)
            await db.commit()
        return method

    async def promotion(self, code: str = "SAVE10", type: str = "percentage", **kwargs: Any) -> Promotion:
        values: Dict[str, Any] = {
            "value": Decimal("10"),
            "minimum_order_subtotal": Decimal("0"),
            "applicable_product_ids": [],
            "applicable_category_ids": [],
            "total_usage_limit": None,
            "per_user_usage_limit": 1,
            "times_used": 0,
            "users_used": {},
            "starts_at": self.clock() - timedelta(days=1),
            "ends_at": self.clock() + timedelta(days=30),
            "status": "active",
            "is_deleted": False,
        }
        values.update(kwargs)
        promotion = Promotion(code=code, type=type, **values)
        async with self.session_factory() as db:
            db.add(promotion)
            await db.commit()
        return promotion

    async def cart(
        self,
        requester: Requester,
        product: Product,
        quantity: int = 1,
        promotion_code: Optional[str] = None,
    ) -> None:
        async with self.session_factory() as db:
            fresh = await db.get(Product, product.id)
            cart = await self.carts.add_item(db, requester, fresh, quantity)
            if promotion_code:
                cart.promotion_code = promotion_code
            await db.commit()

    async def get_order(self, order_id: Any) -> Order:
        async with self.session_factory() as db:
            return await db.get(Order, order_id)

    async def get_product(self, product_id: Any) -> Product:
        async with self.session_factory() as db:
            return await db.get(Product, product_id)

    async def get_cart(self, requester: Requester) -> Optional[Cart]:
        async with self.session_factory() as db:
            return await self.carts.get_cart(db, requester)

    async def get_promotion(self, promotion_id: Any) -> Promotion:
        async with self.session_factory() as db:
            return await db.get(Promotion, promotion_id)

    async def outbox_events(self, event_type: Optional[str] = None) -> List[OutboxEvent]:
        async with self.session_factory() as db:
            stmt = select(OutboxEvent).order_by(OutboxEvent.id)
            if event_type:
                stmt = stmt.where(OutboxEvent.event_type == event_type)
            return list((await db.execute(stmt)).scalars().all())


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'checkout_test.db'}",
        transaction_mode="transactional",
        redis_url=None,
        app_name="checkout-payments-test",
        app_env="test",
        log_level="WARNING",
        provider_retry_max_attempts=2,
        provider_retry_base_delay=0,
        gateway_client_id="client-id",
        gateway_client_secret="client-secret",
        gateway_webhook_id="WH-TEST",
        address_crypto_api_key="address-key",
        address_crypto_webhook_secret="address-secret",
        invoice_crypto_api_key="invoice-key",
        invoice_crypto_webhook_secret="invoice-secret",
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def providers() -> Providers:
    return Providers()


@pytest.fixture
def rate_oracle() -> FakeRateOracle:
    return FakeRateOracle()


@pytest.fixture
def sign() -> Callable[[str, bytes], str]:
    return sign_body


@pytest_asyncio.fixture
async def test_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create test database engine with fresh tables."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
def executor(session_factory: async_sessionmaker[AsyncSession]) -> TransactionalExecutor:
    return TransactionalExecutor(session_factory)


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession], clock: FrozenClock) -> Seeder:
    return Seeder(session_factory, clock)


@pytest_asyncio.fixture
async def container(
    test_settings: Settings,
    test_engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    providers: Providers,
    rate_oracle: FakeRateOracle,
    clock: FrozenClock,
) -> AsyncGenerator[ServiceContainer, Any]:
    """Services wired against the test database and provider fakes."""
    services = await build_container(
        test_settings,
        engine=test_engine,
        session_factory=session_factory,
        http_clients=providers.clients(test_settings),
        rate_oracle=rate_oracle,
        clock=clock,
    )
    yield services
    await services.aclose()


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def user() -> Requester:
    return Requester(user_id="user-1")


@pytest.fixture
def guest() -> Requester:
    return Requester(session_id="session-1")


@pytest.fixture
def address() -> Dict[str, str]:
    return {
        "name": "Ada Lovelace",
        "line1": "12 St James's Square",
        "city": "London",
        "postal_code": "SW1Y 4JH",
        "country": "GB",
    }
