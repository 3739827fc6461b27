"""Stripe checkout and customer-portal sessions.

Webhook handling (fulfilling purchases into credits) lives outside this
service; checkout metadata carries ``user_id`` and the plan/pack key for it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import stripe
from fastapi.concurrency import run_in_threadpool

from tale_forge.backend.storage.store import StoryStore
from tale_forge.common.config import CREDIT_PACKS, SUBSCRIPTION_PLANS, Settings
from tale_forge.common.errors import (
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from tale_forge.common.models import AuthUser

logger = logging.getLogger(__name__)


class BillingService:
    def __init__(self, settings: Settings, store: StoryStore):
        self.settings = settings
        self.store = store

    def _require_ready(self) -> None:
        if not self.settings.stripe_enabled:
            raise ServiceUnavailableError("Stripe is not configured.")

    async def _customer_id(self, user: AuthUser) -> str:
        customer_id = await self.store.get_customer_id(user.id)
        if customer_id:
            return customer_id
        try:
            customer = await run_in_threadpool(
                stripe.Customer.create,
                api_key=self.settings.stripe_secret_key,
                email=user.email or None,
                metadata={"user_id": user.id},
            )
        except stripe.StripeError as exc:
            logger.error("Stripe customer creation failed: %s", exc)
            raise ServiceUnavailableError("Failed to create Stripe customer") from exc
        customer_id = str(customer.get("id") or "")
        await self.store.set_customer_id(user.id, customer_id)
        return customer_id

    async def checkout_session(
        self, user: AuthUser, price_key: str, *, success_url: str, cancel_url: str
    ) -> Dict[str, Any]:
        self._require_ready()
        key = (price_key or "").strip().lower()
        if key in SUBSCRIPTION_PLANS:
            mode = "subscription"
        elif key in CREDIT_PACKS:
            mode = "payment"
        else:
            raise ValidationError(
                "Unknown plan or credit pack",
                details={"allowed": sorted(SUBSCRIPTION_PLANS | CREDIT_PACKS)},
            )
        price_id = self.settings.price_id(key)
        if not price_id:
            raise ServiceUnavailableError("Stripe prices are not configured.")

        customer_id = await self._customer_id(user)
        params: Dict[str, Any] = {
            "api_key": self.settings.stripe_secret_key,
            "mode": mode,
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": {"user_id": user.id, "price_key": key},
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": {"user_id": user.id, "plan": key}}
        try:
            session = await run_in_threadpool(stripe.checkout.Session.create, **params)
        except stripe.StripeError as exc:
            logger.error("Stripe checkout failed: %s", exc)
            raise ServiceUnavailableError("Failed to create checkout session") from exc
        logger.info("Checkout session %s created for %s (%s)", session.get("id"), user.id, key)
        return {"url": session.get("url"), "session_id": session.get("id")}

    async def portal_session(self, user: AuthUser, *, return_url: str) -> Dict[str, Any]:
        self._require_ready()
        customer_id = await self.store.get_customer_id(user.id)
        if not customer_id:
            raise NotFoundError("No billing account is linked to this user.")
        try:
            session = await run_in_threadpool(
                stripe.billing_portal.Session.create,
                api_key=self.settings.stripe_secret_key,
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe portal failed: %s", exc)
            raise ServiceUnavailableError("Failed to create portal session") from exc
        return {"url": session.get("url")}
