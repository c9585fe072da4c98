"""
dreamlight.services.payment_service — Stripe Checkout & Revenue Metrics
========================================================================

Stripe is called over its REST API with form-encoded bodies (nested keys
use Stripe's ``a[b][0][c]`` bracket notation).  Revenue, refunds and
chargebacks are mirrored into ``financial_metrics`` in minor units; each
Stripe object is recorded at most once per metric type.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Any

import httpx
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dreamlight.database.engine import run_db
from dreamlight.database.models import FinancialMetric, MetricType, Package, User, utcnow
from dreamlight.errors import NotFoundError, UpstreamError, ValidationError
from dreamlight.services import discord_service

logger = logging.getLogger(__name__)

STRIPE_API = "https://api.stripe.com/v1"
MIN_CUSTOM_AMOUNT_CENTS = 100
PERIOD_DAYS = {"week": 7, "month": 30, "year": 365}


def flatten_params(data: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Encode nested dicts/lists the way Stripe's form API expects."""
    pairs: list[tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(flatten_params(value, name))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(flatten_params(item, f"{name}[{i}]"))
                else:
                    pairs.append((f"{name}[{i}]", str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


class StripeClient:
    """The handful of Stripe endpoints the panel uses."""

    def __init__(self, secret_key: str, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._auth = (secret_key, "")
        self._transport = transport

    async def _request(self, method: str, path: str, params: dict | None = None) -> dict:
        encoded = flatten_params(params or {})
        async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
            if method == "GET":
                resp = await client.get(f"{STRIPE_API}{path}", params=encoded, auth=self._auth)
            else:
                resp = await client.request(method, f"{STRIPE_API}{path}", data=dict(encoded), auth=self._auth)
        if resp.status_code >= 300:
            try:
                message = resp.json().get("error", {}).get("message", resp.text)
            except ValueError:
                message = resp.text
            raise UpstreamError(f"Stripe error: {message}", upstream_status=resp.status_code)
        return resp.json()

    async def find_customer(self, email: str) -> str | None:
        found = await self._request("GET", "/customers", {"email": email, "limit": 1})
        data = found.get("data") or []
        return data[0]["id"] if data else None

    async def create_checkout_session(self, params: dict) -> dict:
        return await self._request("POST", "/checkout/sessions", params)

    async def list_charges(self, since: datetime, limit: int = 100) -> list[dict]:
        found = await self._request("GET", "/charges", {
            "created": {"gte": int(since.timestamp())}, "limit": limit,
        })
        return found.get("data", [])

    async def list_disputes(self, since: datetime, limit: int = 50) -> list[dict]:
        found = await self._request("GET", "/disputes", {
            "created": {"gte": int(since.timestamp())}, "limit": limit,
        })
        return found.get("data", [])


def get_stripe_client() -> StripeClient:
    key = os.getenv("STRIPE_SECRET_KEY", "").strip()
    if not key:
        raise UpstreamError("STRIPE_SECRET_KEY is not set")
    return StripeClient(key)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------
def to_cents(amount: Any) -> int:
    try:
        cents = round(float(amount) * 100)
    except (TypeError, ValueError):
        raise ValidationError("Minimum amount is $1") from None
    if cents < MIN_CUSTOM_AMOUNT_CENTS:
        raise ValidationError("Minimum amount is $1")
    return cents


def _active_package(engine, package_id: int) -> dict:
    with Session(engine) as session:
        pkg = session.get(Package, package_id)
        if pkg is None or not pkg.is_active:
            raise NotFoundError("Package not found or inactive")
        return {
            "name": pkg.name,
            "description": pkg.description,
            "price_amount": pkg.price_amount,
            "currency": pkg.currency,
            "interval": pkg.interval,
        }


async def create_checkout(
    engine,
    client: StripeClient,
    user: dict,
    *,
    origin: str,
    package_id: int | None = None,
    custom_amount: Any = None,
) -> dict:
    """Create a Stripe Checkout session and return ``{"url": ...}``."""
    origin = (origin or "http://localhost:3000").rstrip("/")
    urls = {
        "success_url": f"{origin}/packages?success=true",
        "cancel_url": f"{origin}/packages?canceled=true",
    }

    if custom_amount not in (None, "", 0):
        cents = to_cents(custom_amount)
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "customer_email": user["email"],
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": "usd",
                    "unit_amount": cents,
                    "product_data": {
                        "name": "Custom Support",
                        "description": "User defined contribution",
                    },
                },
            }],
            **urls,
        }
    elif package_id:
        pkg = await run_db(_active_package, engine, int(package_id))
        customer = await client.find_customer(user["email"])
        params = {
            "mode": "subscription",
            "customer": customer,
            "customer_email": None if customer else user["email"],
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": pkg["currency"],
                    "unit_amount": pkg["price_amount"],
                    "recurring": {"interval": pkg["interval"]},
                    "product_data": {
                        "name": pkg["name"],
                        "description": pkg["description"] or None,
                    },
                },
            }],
            "metadata": {"package_id": package_id, "user_id": user.get("id")},
            **urls,
        }
    else:
        raise ValidationError("No packageId or customAmount provided")

    session = await client.create_checkout_session(params)
    logger.info("Checkout session %s created for %s", session.get("id"), user["email"])
    return {"url": session["url"]}


# ---------------------------------------------------------------------------
# Purchase webhook
# ---------------------------------------------------------------------------
def record_purchase(engine, payload: dict) -> dict:
    email = (payload.get("customerEmail") or "").strip().lower()
    try:
        price = float(payload.get("price") or 0)
    except (TypeError, ValueError):
        price = 0
    if not email or price <= 0:
        raise ValidationError("Invalid webhook data")

    currency = str(payload.get("currency") or "USD").upper()
    payment_id = payload.get("paymentId") or None
    with Session(engine) as session:
        if payment_id and session.scalar(
            select(FinancialMetric.id).where(
                FinancialMetric.stripe_payment_id == payment_id,
                FinancialMetric.metric_type == MetricType.REVENUE,
            )
        ):
            logger.info("Purchase %s already recorded", payment_id)
            return {"duplicate": True}
        session.add(FinancialMetric(
            metric_type=MetricType.REVENUE,
            amount=round(price * 100),
            currency=currency,
            stripe_payment_id=payment_id,
            customer_email=email,
            description=payload.get("packageName"),
            metadata_={"customer_name": payload.get("customerName")},
        ))
        username = session.scalar(select(User.username).where(func.lower(User.email) == email))
        try:
            session.commit()
        except IntegrityError:
            # A concurrent redelivery inserted the row first
            session.rollback()
            return {"duplicate": True}
    return {
        "duplicate": False,
        "customer_email": email,
        "customer_name": payload.get("customerName") or username,
        "username": username or payload.get("customerName"),
        "package_name": payload.get("packageName"),
        "price": price,
        "currency": currency,
    }


async def handle_purchase_webhook(engine, payload: dict) -> dict:
    log_data = await run_db(record_purchase, engine, payload)
    if log_data.pop("duplicate"):
        return {"ok": True, "duplicate": True}
    await discord_service.send_log_quietly(engine, "purchase_completed", log_data)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------
def _period_window(period: str, now: datetime) -> tuple[datetime, datetime, int]:
    days = PERIOD_DAYS.get(period, PERIOD_DAYS["month"])
    start = now - timedelta(days=days)
    return start, now, days


def _totals(session: Session, start: datetime, end: datetime | None = None) -> dict[str, int]:
    stmt = (
        select(FinancialMetric.metric_type, func.count(), func.coalesce(func.sum(FinancialMetric.amount), 0))
        .where(FinancialMetric.recorded_at >= start)
        .group_by(FinancialMetric.metric_type)
    )
    if end is not None:
        stmt = stmt.where(FinancialMetric.recorded_at < end)
    rows = session.execute(stmt).all()
    by_type = {t: (int(c), int(s)) for t, c, s in rows}
    return {
        "revenue": by_type.get(MetricType.REVENUE, (0, 0))[1],
        "transactions": by_type.get(MetricType.REVENUE, (0, 0))[0],
        "refunds": by_type.get(MetricType.REFUND, (0, 0))[1],
        "chargebacks": by_type.get(MetricType.CHARGEBACK, (0, 0))[0],
    }


def growth_rate(current: int, previous: int) -> float:
    if previous <= 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100, 1)


def financial_overview(engine, period: str = "month", now: datetime | None = None) -> dict:
    """Totals for *period* (major units) with growth vs the prior period."""
    now = now or utcnow()
    start, _, days = _period_window(period, now)
    with Session(engine) as session:
        current = _totals(session, start)
        previous = _totals(session, start - timedelta(days=days), start)
        top = session.execute(
            select(FinancialMetric.description, func.count().label("n"))
            .where(
                FinancialMetric.metric_type == MetricType.REVENUE,
                FinancialMetric.recorded_at >= start,
                FinancialMetric.description.is_not(None),
            )
            .group_by(FinancialMetric.description)
            .order_by(func.count().desc())
            .limit(1)
        ).first()

    tx = current["transactions"]
    return {
        "revenue": current["revenue"] / 100,
        "transactions": tx,
        "chargebacks": current["chargebacks"],
        "refunds": current["refunds"] / 100,
        "top_package": top[0] if top else None,
        "avg_order_value": round(current["revenue"] / tx / 100, 2) if tx else 0,
        "growth_rate": growth_rate(current["revenue"], previous["revenue"]),
        "period": period if period in PERIOD_DAYS else "month",
    }


def revenue_chart(engine, period: str = "month", now: datetime | None = None) -> list[dict]:
    now = now or utcnow()
    start, _, _ = _period_window(period, now)
    with Session(engine) as session:
        rows = session.execute(
            select(FinancialMetric.recorded_at, FinancialMetric.amount)
            .where(
                FinancialMetric.metric_type == MetricType.REVENUE,
                FinancialMetric.recorded_at >= start,
            )
            .order_by(FinancialMetric.recorded_at)
        ).all()
    daily: dict[str, int] = {}
    for recorded_at, amount in rows:
        day = recorded_at.date().isoformat()
        daily[day] = daily.get(day, 0) + amount
    return [{"date": d, "revenue": v / 100} for d, v in sorted(daily.items())]


def _insert_metric(engine, **fields: Any) -> bool:
    """Insert unless the (stripe id, type) pair exists.  Returns ``True`` if new."""
    with Session(engine) as session:
        exists = session.scalar(
            select(FinancialMetric.id).where(
                FinancialMetric.stripe_payment_id == fields["stripe_payment_id"],
                FinancialMetric.metric_type == fields["metric_type"],
            )
        )
        if exists:
            return False
        session.add(FinancialMetric(**fields))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return False
        return True


def store_stripe_objects(engine, charges: list[dict], disputes: list[dict]) -> dict[str, int]:
    added_charges = 0
    for charge in charges:
        metric_type = MetricType.REVENUE if charge.get("status") == "succeeded" else MetricType.TRANSACTION
        added_charges += _insert_metric(
            engine,
            metric_type=metric_type,
            amount=int(charge.get("amount") or 0),
            currency=str(charge.get("currency") or "usd").upper(),
            stripe_payment_id=charge["id"],
            customer_email=(charge.get("billing_details") or {}).get("email") or charge.get("receipt_email"),
            description=charge.get("description"),
            metadata_={
                "stripe_customer_id": charge.get("customer"),
                "payment_method": (charge.get("payment_method_details") or {}).get("type"),
            },
        )
        if charge.get("amount_refunded"):
            added_charges += _insert_metric(
                engine,
                metric_type=MetricType.REFUND,
                amount=int(charge["amount_refunded"]),
                currency=str(charge.get("currency") or "usd").upper(),
                stripe_payment_id=charge["id"],
                description=charge.get("description"),
            )

    added_disputes = 0
    for dispute in disputes:
        added_disputes += _insert_metric(
            engine,
            metric_type=MetricType.CHARGEBACK,
            amount=int(dispute.get("amount") or 0),
            currency=str(dispute.get("currency") or "usd").upper(),
            stripe_payment_id=dispute.get("charge") or dispute["id"],
            metadata_={"dispute_reason": dispute.get("reason"), "status": dispute.get("status")},
        )
    return {"charges_added": added_charges, "disputes_added": added_disputes}


async def sync_stripe_data(engine, client: StripeClient, period: str = "month") -> dict:
    start, _, _ = _period_window(period, utcnow())
    charges = await client.list_charges(start)
    disputes = await client.list_disputes(start)
    added = await run_db(store_stripe_objects, engine, charges, disputes)
    logger.info("Stripe sync: %d charges, %d disputes fetched, %s", len(charges), len(disputes), added)
    return {
        "success": True,
        "message": f"Synced {len(charges)} charges and {len(disputes)} disputes",
        **added,
    }
