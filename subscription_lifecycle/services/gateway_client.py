"""
Payment gateway (Stripe) client.

Every call is bounded by GATEWAY_TIMEOUT_SECONDS, retried on transient
failures (network, rate limits, timeouts) and surfaced as ExternalGatewayError
so callers only deal with one failure type. Callers that must not fail because
of the gateway wrap the call in `best_effort`.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import settings
from ..core.exceptions import ExternalGatewayError

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, asyncio.TimeoutError)


@dataclass
class GatewayCallOutcome:
    """Captured result of a best-effort gateway call"""
    operation: str
    succeeded: bool
    error: Optional[str] = None
    result: Any = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "error": self.error,
        }


def skipped_outcome(operation: str, reason: str) -> GatewayCallOutcome:
    return GatewayCallOutcome(operation=operation, succeeded=False, error=reason, skipped=True)


async def best_effort(
    operation: str,
    call: Callable[..., Awaitable[Any]],
    *args,
    **kwargs
) -> GatewayCallOutcome:
    """
    Run a gateway call whose failure must not fail the caller.

    Only ExternalGatewayError is captured; anything else is a bug and
    propagates.
    """
    try:
        result = await call(*args, **kwargs)
    except ExternalGatewayError as e:
        logger.error(
            f"Best-effort gateway call '{operation}' failed: {e.message}",
            exc_info=True,
            extra={"operation": operation}
        )
        return GatewayCallOutcome(operation=operation, succeeded=False, error=e.message)

    return GatewayCallOutcome(operation=operation, succeeded=True, result=result)


class GatewayClient:
    """Thin async wrapper over the Stripe SDK"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(settings.GATEWAY_MAX_RETRIES),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True
    )
    async def _attempt(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)

    async def _call(self, operation: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if not self.api_key:
            raise ExternalGatewayError("Payment gateway is not configured", operation=operation)

        try:
            return await self._attempt(func, *args, api_key=self.api_key, **kwargs)
        except asyncio.TimeoutError:
            raise ExternalGatewayError(
                f"Payment gateway timed out during {operation}", operation=operation
            )
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            raise ExternalGatewayError(
                f"Payment gateway rejected {operation}: {message}", operation=operation
            ) from e

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    async def create_customer(self, email: str, name: Optional[str] = None,
                              metadata: Optional[Dict[str, str]] = None) -> Any:
        return await self._call(
            "create_customer",
            stripe.Customer.create_async,
            email=email,
            name=name,
            metadata=metadata or {},
            idempotency_key=str(uuid.uuid4()),
        )

    async def retrieve_customer(self, customer_id: str) -> Any:
        return await self._call("retrieve_customer", stripe.Customer.retrieve_async, customer_id)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def create_subscription(self, customer_id: str, price_id: str,
                                  metadata: Optional[Dict[str, str]] = None) -> Any:
        return await self._call(
            "create_subscription",
            stripe.Subscription.create_async,
            customer=customer_id,
            items=[{"price": price_id}],
            metadata=metadata or {},
            idempotency_key=str(uuid.uuid4()),
        )

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        return await self._call(
            "retrieve_subscription", stripe.Subscription.retrieve_async, subscription_id
        )

    async def update_subscription(self, subscription_id: str, price_id: str,
                                  prorate: bool = True) -> Any:
        """Swap the subscription's single item to a new price"""
        current = await self.retrieve_subscription(subscription_id)
        item_id = current["items"]["data"][0]["id"]
        return await self._call(
            "update_subscription",
            stripe.Subscription.modify_async,
            subscription_id,
            items=[{"id": item_id, "price": price_id}],
            proration_behavior="create_prorations" if prorate else "none",
        )

    async def cancel_subscription(self, subscription_id: str) -> Any:
        return await self._call("cancel_subscription", stripe.Subscription.cancel_async, subscription_id)

    async def pause_subscription(self, subscription_id: str, behavior: str = "void",
                                 resumes_at: Optional[datetime] = None) -> Any:
        pause_collection: Dict[str, Any] = {"behavior": behavior}
        if resumes_at is not None:
            pause_collection["resumes_at"] = int(resumes_at.timestamp())
        return await self._call(
            "pause_subscription",
            stripe.Subscription.modify_async,
            subscription_id,
            pause_collection=pause_collection,
        )

    async def resume_subscription(self, subscription_id: str) -> Any:
        # An empty string clears pause_collection
        return await self._call(
            "resume_subscription",
            stripe.Subscription.modify_async,
            subscription_id,
            pause_collection="",
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: str) -> Any:
        """
        Verify the signature header and parse the event.

        Raises stripe.SignatureVerificationError on a bad signature and
        ValueError on a malformed payload.
        """
        if not self.webhook_secret:
            raise ExternalGatewayError("Webhook secret is not configured", operation="construct_event")
        return stripe.Webhook.construct_event(
            payload,
            signature,
            self.webhook_secret,
            tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
        )


gateway_client = GatewayClient()
