"""
Shared plumbing for payment provider integrations.

Implements:
- Provider error classification (transient / permanent / rate limit)
- Circuit breaker per provider
- Exponential backoff for transient errors
- The rail adapter contract
"""
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from checkout_payments.config import Settings
from checkout_payments.core.clock import utcnow
from checkout_payments.core.errors import ValidationError, WebhookAuthError
from checkout_payments.core.payment_details import (
    AddressCryptoDetails,
    GatewayDetails,
    InvoiceCryptoDetails,
)
from checkout_payments.core.status import PaymentStatus, Rail
from checkout_payments.database.models import Order
from checkout_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

AnyDetails = GatewayDetails | AddressCryptoDetails | InvoiceCryptoDetails


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class ProviderError(Exception):
    """Base exception for provider-related errors."""

    def __init__(
        self,
        message: str,
        error_type: ProviderErrorType,
        provider: str,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Error message
            error_type: Classification of error
            provider: Provider name
            status_code: HTTP status returned by the provider, if any
            original_error: Underlying exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.provider = provider
        self.status_code = status_code
        self.original_error = original_error


class ProviderUnavailableError(ProviderError):
    """Provider timed out, could not be reached, answered 5xx/429 or its circuit is open."""


class CircuitOpenError(ProviderUnavailableError):
    pass


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            provider: Provider name used in logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Only ProviderUnavailableError counts as a failure; a permanent
        rejection means the provider is up.

        Raises:
            CircuitOpenError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.provider, self.state)
                logger.info("circuit_breaker_half_open", provider=self.provider)
            else:
                raise CircuitOpenError(
                    "Circuit breaker is open",
                    ProviderErrorType.TRANSIENT,
                    provider=self.provider,
                )

        try:
            result = await func(*args, **kwargs)
        except ProviderUnavailableError:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.provider, self.state)
                logger.info("circuit_breaker_closed", provider=self.provider)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.provider, self.state)
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider,
                failure_count=self.failure_count,
            )


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderUnavailableError) and not isinstance(error, CircuitOpenError)


class ProviderHttpClient:
    """
    httpx client wrapper with error mapping, retries and a circuit breaker.

    Timeouts, connection failures, 429 and 5xx responses become
    ProviderUnavailableError and are retried with exponential backoff;
    other 4xx responses become permanent ProviderError.
    """

    def __init__(
        self,
        provider: str,
        settings: Settings,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        self.client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(settings.provider_timeout_seconds),
        )
        self.max_attempts = settings.provider_retry_max_attempts
        self.base_delay = settings.provider_retry_base_delay
        self.circuit_breaker = CircuitBreaker(
            provider,
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout_seconds,
        )

    async def request(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request to the provider.

        Args:
            operation: Operation name for logs and metrics
            method: HTTP method
            url: URL relative to the provider base URL
            **kwargs: Passed to httpx

        Returns:
            httpx.Response: Successful (2xx/3xx) response

        Raises:
            ProviderUnavailableError: Transient failure after all retries
            ProviderError: Permanent rejection
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, min=0, max=16 * self.base_delay),
            reraise=True,
        ):
            with attempt:
                return await self.circuit_breaker.call(
                    self._send, operation, method, url, **kwargs
                )
        raise AssertionError("unreachable")  # pragma: no cover

    async def _send(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        start_time = time.time()
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            self._record_failure(operation, ProviderErrorType.TRANSIENT, start_time, str(e))
            raise ProviderUnavailableError(
                f"{self.provider} {operation} timed out",
                ProviderErrorType.TRANSIENT,
                provider=self.provider,
                original_error=e,
            )
        except httpx.TransportError as e:
            self._record_failure(operation, ProviderErrorType.TRANSIENT, start_time, str(e))
            raise ProviderUnavailableError(
                f"{self.provider} {operation} could not connect",
                ProviderErrorType.TRANSIENT,
                provider=self.provider,
                original_error=e,
            )

        if response.status_code == 429 or response.status_code >= 500:
            error_type = (
                ProviderErrorType.RATE_LIMIT
                if response.status_code == 429
                else ProviderErrorType.TRANSIENT
            )
            self._record_failure(operation, error_type, start_time, response.text[:500])
            raise ProviderUnavailableError(
                f"{self.provider} {operation} returned {response.status_code}",
                error_type,
                provider=self.provider,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            self._record_failure(
                operation, ProviderErrorType.PERMANENT, start_time, response.text[:500]
            )
            raise ProviderError(
                f"{self.provider} {operation} rejected with {response.status_code}",
                ProviderErrorType.PERMANENT,
                provider=self.provider,
                status_code=response.status_code,
            )

        metrics.record_provider_call(self.provider, operation, "success", time.time() - start_time)
        return response

    def _record_failure(
        self, operation: str, error_type: ProviderErrorType, start_time: float, detail: str
    ) -> None:
        metrics.record_provider_call(self.provider, operation, "error", time.time() - start_time)
        metrics.record_provider_error(self.provider, error_type.value)
        logger.error(
            "provider_api_error",
            provider=self.provider,
            operation=operation,
            error_type=error_type.value,
            detail=detail,
        )

    async def aclose(self) -> None:
        await self.client.aclose()


def verify_hmac_signature(secret: str, body: bytes, signature: Optional[str]) -> None:
    """
    Check a hex HMAC-SHA256 signature of the raw body.

    Accepts an optional "sha256=" prefix and compares in constant time.

    Raises:
        WebhookAuthError: If the secret is unset, the signature missing or wrong
    """
    if not secret:
        raise WebhookAuthError("Webhook secret is not configured")
    if not signature:
        raise WebhookAuthError("Missing webhook signature")
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookAuthError("Invalid webhook signature")


@dataclass
class ProviderHandle:
    """What a rail returns from initiate: the webhook key, stored details and the client view."""

    payment_reference: str
    details: AnyDetails
    client_payload: Dict[str, Any]


@dataclass
class CaptureResult:
    status: str
    capture_id: Optional[str] = None
    payer_id: Optional[str] = None
    payer_email: Optional[str] = None


@dataclass
class RefundResult:
    status: str  # succeeded, pending, requires_manual_refund, failed
    refund_id: Optional[str] = None
    amount: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WebhookEvent:
    """Parsed provider notification."""

    rail: Rail
    event_type: str
    reference: Optional[str]
    fingerprint: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusTransition:
    """Classification of a webhook: where the payment should move and what was observed."""

    target: Optional[PaymentStatus]
    details: AnyDetails
    note: str


class RailAdapter(ABC):
    """Contract every payment rail implements."""

    rail: Rail
    is_synchronous: bool = False

    def __init__(
        self,
        settings: Settings,
        http: ProviderHttpClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.http = http
        self.clock = clock

    @abstractmethod
    async def initiate(self, order: Order) -> ProviderHandle:
        """Create the provider-side payment for an order that is about to be committed."""

    async def capture(self, order: Order, provider_order_id: str) -> CaptureResult:
        raise ValidationError(f"Capture is not supported on the {self.rail.value} rail")

    @abstractmethod
    async def refund(self, order: Order) -> RefundResult:
        """Ask the provider to return a captured payment."""

    @abstractmethod
    async def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> None:
        """Authenticate a notification; raise WebhookAuthError when it fails."""

    @abstractmethod
    def parse_webhook(self, body: bytes) -> WebhookEvent:
        """Parse an authenticated notification body."""

    @abstractmethod
    def reconcile(
        self, event: WebhookEvent, order: Order, details: AnyDetails, now: datetime
    ) -> StatusTransition:
        """Classify an event against the order's current details."""

    def describe(self, details: AnyDetails) -> Dict[str, Any]:
        """Client view of stored details."""
        return details.model_dump(mode="json")

    async def aclose(self) -> None:
        await self.http.aclose()
