"""Stripe-backed payment gateway for placement fees."""

from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol

import stripe

from ...config import get_settings
from ...services.errors import GatewayError


class StripeServiceError(GatewayError):
    """Raised when Stripe operations fail, time out, or are misconfigured."""


class PaymentGateway(Protocol):
    async def create_customer(self, email: str, name: Optional[str], metadata: dict[str, str]) -> dict[str, Any]:
        ...

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_ref: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> dict[str, Any]:
        ...

    async def retrieve_payment_intent(self, intent_id: str) -> dict[str, Any]:
        ...


def _intent_to_dict(intent: Any) -> dict[str, Any]:
    return {
        "id": intent["id"],
        "status": intent["status"],
        "amount": int(intent["amount"]),
        "currency": intent["currency"],
        "client_secret": intent.get("client_secret"),
        "metadata": dict(intent.get("metadata") or {}),
    }


class StripeService:
    def __init__(self, timeout_seconds: Optional[float] = None):
        self.settings = get_settings()
        self.timeout_seconds = timeout_seconds or self.settings.stripe_timeout_seconds

    def _ensure_secret_key(self) -> None:
        if not self.settings.stripe_secret_key:
            raise StripeServiceError("Stripe is not configured for this environment")
        stripe.api_key = self.settings.stripe_secret_key

    async def _call(self, description: str, fn):
        self._ensure_secret_key()
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StripeServiceError(
                f"Stripe timed out while trying to {description}",
                details={"timeout_seconds": self.timeout_seconds},
            ) from exc
        except stripe.StripeError as exc:
            raise StripeServiceError(f"Failed to {description}: {exc}") from exc

    async def create_customer(
        self,
        email: str,
        name: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        def _create():
            return stripe.Customer.create(email=email, name=name, metadata=metadata or {})

        customer = await self._call("create Stripe customer", _create)
        return {"id": customer["id"], "email": customer.get("email")}

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        customer_ref: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> dict[str, Any]:
        if amount <= 0:
            raise StripeServiceError("Payment amount must be positive")

        def _create():
            return stripe.PaymentIntent.create(
                amount=int(amount),
                currency=currency,
                customer=customer_ref,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )

        intent = await self._call("create payment intent", _create)
        return _intent_to_dict(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> dict[str, Any]:
        def _retrieve():
            return stripe.PaymentIntent.retrieve(intent_id)

        intent = await self._call("retrieve payment intent", _retrieve)
        return _intent_to_dict(intent)
