"""``admin-stripe-sync`` — plan catalogue sync and revenue metrics.

Super admins only.  Stripe amounts are cents; the ``plans`` table and
the metrics are dollars.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import stripe

from pilot_functions.config import settings
from pilot_functions.errors import ForbiddenError, InvalidRequestError, RowStoreError, UnauthorizedError, UpstreamError
from pilot_functions.store.base import RowStoreBase
from pilot_functions.store.models import Filter, utcnow_iso

logger = logging.getLogger(__name__)

PLANS = "plans"
USER_ROLES = "user_roles"
ADMIN_AUDIT_LOG = "admin_audit_log"

CHURN_WINDOW_SECONDS = 30 * 24 * 60 * 60
DEFAULT_LIFETIME_MONTHS = 24


def _json_metadata(product: Any, key: str) -> dict[str, Any]:
    metadata = getattr(product, "metadata", None)
    raw = metadata[key] if metadata and key in metadata else None
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Invalid %s JSON for product %s", key, product.id)
        return {}


def _interval(price: Any) -> str | None:
    recurring = getattr(price, "recurring", None)
    return getattr(recurring, "interval", None) if recurring else None


def _r2(value: float) -> float:
    return round(value * 100) / 100


def compute_revenue_metrics(subscriptions: list[Any], now: float | None = None) -> dict[str, Any]:
    """MRR, ARR, churn, ARPU, LTV and trial conversion from a subscription list.

    Churn is cancellations in the last 30 days over (active + those
    cancellations).  LTV is ARPU over monthly churn, or 24 months of ARPU
    when nothing churned.
    """
    now = now if now is not None else time.time()
    active = [s for s in subscriptions if s.status == "active"]
    trialing = [s for s in subscriptions if s.status == "trialing"]

    mrr_cents = 0
    for sub in active:
        # subscript: `.items` is the mapping method on Stripe objects
        items = sub["items"].data if "items" in sub else []
        price = getattr(items[0], "price", None) if items else None
        if price is None:
            continue
        amount = price.unit_amount or 0
        interval = _interval(price)
        if interval == "month":
            mrr_cents += amount
        elif interval == "year":
            mrr_cents += round(amount / 12)
    mrr = mrr_cents / 100

    window_start = now - CHURN_WINDOW_SECONDS
    canceled = [
        s for s in subscriptions if s.status == "canceled" and (getattr(s, "canceled_at", None) or 0) > window_start
    ]
    period_start = len(active) + len(canceled)
    churn_rate = len(canceled) / period_start * 100 if period_start else 0.0
    arpu = mrr / len(active) if active else 0.0
    ltv = arpu / (churn_rate / 100) if churn_rate else arpu * DEFAULT_LIFETIME_MONTHS

    with_trial = [s for s in subscriptions if getattr(s, "trial_end", None)]
    converted = [s for s in with_trial if s.status == "active" and s.trial_end < now]
    trial_conversion = len(converted) / len(with_trial) * 100 if with_trial else 0.0

    return {
        "mrr": _r2(mrr),
        "arr": _r2(mrr * 12),
        "activeSubscriptions": len(active),
        "trialCount": len(trialing),
        "churnRate": _r2(churn_rate),
        "arpu": _r2(arpu),
        "ltv": _r2(ltv),
        "trialConversion": _r2(trial_conversion),
        "netRevenueRetention": 100 - churn_rate,
        "canceledThisMonth": len(canceled),
    }


class BillingService:
    """Stripe-backed admin actions.

    Parameters
    ----------
    store:
        Row store.
    client:
        ``stripe.StripeClient``; built from ``settings.stripe_secret_key``
        on first use when *None*.
    """

    def __init__(self, store: RowStoreBase, client: stripe.StripeClient | None = None) -> None:
        self.store = store
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not settings.stripe_secret_key:
                raise UpstreamError("Stripe is not configured. Please add STRIPE_SECRET_KEY secret.")
            self._client = stripe.StripeClient(settings.stripe_secret_key)
        return self._client

    def require_super_admin(self, caller_id: str | None) -> None:
        if not caller_id:
            raise UnauthorizedError("Missing authorization header")
        role = self.store.first(USER_ROLES, [Filter.equals("user_id", caller_id)], columns="role")
        if not role or role.get("role") != "super_admin":
            raise ForbiddenError("Unauthorized: Super admin access required")

    def handle(self, action: str | None, caller_id: str | None) -> dict[str, Any]:
        self.require_super_admin(caller_id)
        if action == "sync_products":
            return self.sync_products(caller_id)
        if action == "get_revenue_metrics":
            return self.revenue_metrics()
        raise InvalidRequestError('Invalid action. Must be "sync_products" or "get_revenue_metrics"')

    # -- actions ---------------------------------------------------------------

    def sync_products(self, admin_id: str) -> dict[str, Any]:
        """Upsert every active Stripe product into ``plans``."""
        logger.info("Starting Stripe product sync")
        try:
            products = self.client.products.list(params={"active": True, "limit": 100}).data
            prices = self.client.prices.list(params={"active": True, "limit": 100}).data
        except stripe.StripeError as exc:
            raise UpstreamError(f"Stripe request failed: {exc}") from exc
        logger.info("Found %d products and %d prices", len(products), len(prices))

        synced = 0
        errors: list[str] = []
        for product in products:
            product_prices = [p for p in prices if p.product == product.id]
            monthly = next((p for p in product_prices if _interval(p) == "month"), None)
            yearly = next((p for p in product_prices if _interval(p) == "year"), None)
            try:
                self.store.upsert(
                    PLANS,
                    {
                        "id": product.id,
                        "name": product.name,
                        "price_monthly": ((monthly.unit_amount if monthly else 0) or 0) / 100,
                        "price_yearly": ((yearly.unit_amount if yearly else 0) or 0) / 100,
                        "features": _json_metadata(product, "features"),
                        "limits": _json_metadata(product, "limits"),
                        "active": product.active,
                        "updated_at": utcnow_iso(),
                    },
                    on_conflict="id",
                )
                synced += 1
            except RowStoreError as exc:
                errors.append(f"Failed to sync {product.name}: {exc.message}")

        details: dict[str, Any] = {"products_found": len(products), "prices_found": len(prices), "synced": synced}
        if errors:
            details["errors"] = errors
        self.store.insert(
            ADMIN_AUDIT_LOG,
            {"admin_user_id": admin_id, "action": "stripe.sync_products", "target_type": "plans", "details": details},
        )
        logger.info("Stripe sync complete: %d products synced, %d errors", synced, len(errors))

        result: dict[str, Any] = {"success": True, "synced": synced, "total": len(products)}
        if errors:
            result["errors"] = errors
        return result

    def revenue_metrics(self) -> dict[str, Any]:
        logger.info("Fetching Stripe revenue metrics")
        try:
            subscriptions = self.client.subscriptions.list(
                params={"status": "all", "limit": 100, "expand": ["data.items.data.price"]}
            ).data
        except stripe.StripeError as exc:
            raise UpstreamError(f"Stripe request failed: {exc}") from exc
        metrics = compute_revenue_metrics(subscriptions)
        logger.info("Revenue metrics calculated: %s", metrics)
        return metrics
