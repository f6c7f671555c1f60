"""Billing calculator and subscription management service."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from flask import current_app

from extensions import db
from models import (
    USAGE_METRICS,
    VALID_BILLING_CYCLES,
    VALID_PAYMENT_METHODS,
    AppSetting,
    OrganizationSubscription,
    SubscriptionPayment,
    SubscriptionPlan,
)
from services.audit import log_action
from utils import as_utc

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


# ---------------------------------------------------------------------------
# Price calculation
# ---------------------------------------------------------------------------

def _plan_value(plan, key: str):
    if isinstance(plan, dict):
        return plan.get(key)
    return getattr(plan, key, None)


def _to_decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _prices(plan) -> tuple[Decimal, Optional[Decimal]]:
    monthly = _to_decimal(_plan_value(plan, "price_monthly")) or _ZERO
    yearly = _to_decimal(_plan_value(plan, "price_yearly"))
    return monthly, yearly


def calculate_subscription_price(plan, billing_cycle: str) -> Decimal:
    """Price charged for one *billing_cycle* of *plan*.

    A plan without a yearly price is billed ``monthly * 12`` per year.
    """
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValueError(f"Unknown billing cycle: {billing_cycle!r}")
    monthly, yearly = _prices(plan)
    if billing_cycle == "monthly":
        return monthly
    return yearly if yearly is not None else monthly * 12


def calculate_yearly_savings(plan) -> Decimal:
    """Amount saved per year by paying yearly instead of monthly."""
    monthly, _ = _prices(plan)
    savings = monthly * 12 - calculate_subscription_price(plan, "yearly")
    return savings if savings > 0 else _ZERO


def calculate_discount_percent(plan) -> int:
    """Yearly discount in whole percent, rounded half-up, never negative."""
    monthly, _ = _prices(plan)
    full_year = monthly * 12
    if full_year <= 0:
        return 0
    savings = calculate_yearly_savings(plan)
    if savings <= 0:
        return 0
    percent = savings / full_year * 100
    return int(percent.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def has_feature(plan, feature: str) -> bool:
    """Return True if *plan* enables *feature*."""
    if plan is None:
        return False
    features = _plan_value(plan, "features")
    if isinstance(features, str):
        try:
            features = json.loads(features)
        except ValueError:
            return False
    return feature in (features or [])


def serialize_plan(plan: SubscriptionPlan, billing_cycle: str = "monthly") -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "slug": plan.slug,
        "description": plan.description,
        "currency": plan.currency,
        "price_monthly": float(plan.price_monthly or 0),
        "price_yearly": float(plan.price_yearly) if plan.price_yearly is not None else None,
        "price": float(calculate_subscription_price(plan, billing_cycle)),
        "billing_cycle": billing_cycle,
        "yearly_savings": float(calculate_yearly_savings(plan)),
        "discount_percent": calculate_discount_percent(plan),
        "features": plan.feature_list,
        "limits": {f"max_{m}": getattr(plan, f"max_{m}") for m in USAGE_METRICS},
    }


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def _get_global_setting(key: str, default: str = "") -> str:
    """Get a global (org_id=NULL) AppSetting value."""
    row = AppSetting.query.filter_by(org_id=None, key=key).first()
    return row.value if row and row.value else default


def _get_int_setting(key: str, default: int) -> int:
    val = _get_global_setting(key, str(default))
    try:
        return int(val)
    except (ValueError, TypeError):
        return default


def _get_trial_days() -> int:
    """Return the configured trial duration in days."""
    return _get_int_setting("billing_trial_days", current_app.config["BILLING_CONFIG"].trial_days)


def _get_grace_period_days() -> int:
    """Return the configured grace period in days."""
    return _get_int_setting(
        "billing_grace_period_days", current_app.config["BILLING_CONFIG"].grace_period_days
    )


def _period_length(billing_cycle: str) -> timedelta:
    return timedelta(days=365) if billing_cycle == "yearly" else timedelta(days=30)


# ---------------------------------------------------------------------------
# Subscription lifecycle
# ---------------------------------------------------------------------------

def get_organization_subscription(org_id: int) -> Optional[OrganizationSubscription]:
    """Return the subscription of an organization, or None."""
    return OrganizationSubscription.query.filter_by(org_id=org_id).first()


def is_organization_active(org_id: int) -> bool:
    """Check if an organization's subscription allows normal operation."""
    sub = get_organization_subscription(org_id)
    if not sub:
        return True  # No subscription = allow (grace for setup)
    return sub.status in ("trial", "active", "past_due", "grace_period")


def create_trial_subscription(org_id: int) -> OrganizationSubscription:
    """Create a trial subscription for a new organization (not committed)."""
    slug = current_app.config["BILLING_CONFIG"].default_plan_slug
    plan = SubscriptionPlan.query.filter_by(slug=slug).first()
    if not plan:
        plan = SubscriptionPlan.query.order_by(SubscriptionPlan.sort_order).first()
    if not plan:
        raise ValueError("No subscription plans configured.")
    trial_days = _get_trial_days()
    now = datetime.now(timezone.utc)
    sub = OrganizationSubscription(
        org_id=org_id,
        plan_id=plan.id,
        status="trial",
        billing_cycle="monthly",
        current_period_start=now,
        current_period_end=now + timedelta(days=trial_days),
        trial_ends_at=now + timedelta(days=trial_days),
    )
    db.session.add(sub)
    db.session.flush()
    logger.info("Created trial subscription for organization %s (%s days)", org_id, trial_days)
    return sub


def create_subscription(
    org_id: int,
    plan_id: int,
    billing_cycle: str = "monthly",
) -> OrganizationSubscription:
    """Create or update the subscription of an organization."""
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValueError(f"Unknown billing cycle: {billing_cycle!r}")
    plan = db.session.get(SubscriptionPlan, plan_id)
    if not plan or not plan.is_active:
        raise ValueError("Invalid subscription plan.")
    now = datetime.now(timezone.utc)
    period_end = now + _period_length(billing_cycle)

    sub = get_organization_subscription(org_id)
    if sub:
        sub.plan_id = plan_id
        sub.billing_cycle = billing_cycle
        sub.status = "active"
        sub.current_period_start = now
        sub.current_period_end = period_end
        sub.trial_ends_at = None
        sub.cancelled_at = None
    else:
        sub = OrganizationSubscription(
            org_id=org_id,
            plan_id=plan_id,
            status="active",
            billing_cycle=billing_cycle,
            current_period_start=now,
            current_period_end=period_end,
        )
        db.session.add(sub)
    db.session.flush()
    log_action(
        "subscribe", "subscription", sub.id,
        f"plan={plan.slug} cycle={billing_cycle}", org_id=org_id,
    )
    db.session.commit()
    logger.info("Created/updated subscription for organization %s (plan=%s)", org_id, plan.slug)
    return sub


def change_billing_cycle(org_id: int, billing_cycle: str) -> Optional[OrganizationSubscription]:
    """Switch the billing cycle; the current period is re-derived from its start."""
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValueError(f"Unknown billing cycle: {billing_cycle!r}")
    sub = get_organization_subscription(org_id)
    if not sub:
        return None
    if sub.billing_cycle == billing_cycle:
        return sub
    sub.billing_cycle = billing_cycle
    if sub.status == "active" and sub.current_period_start:
        sub.current_period_end = as_utc(sub.current_period_start) + _period_length(billing_cycle)
    log_action("change_cycle", "subscription", sub.id, f"cycle={billing_cycle}", org_id=org_id)
    db.session.commit()
    logger.info("Organization %s switched to %s billing", org_id, billing_cycle)
    return sub


def cancel_subscription(org_id: int) -> None:
    """Cancel a subscription (effective at period end)."""
    sub = get_organization_subscription(org_id)
    if not sub:
        return
    sub.cancelled_at = datetime.now(timezone.utc)
    log_action("cancel", "subscription", sub.id, org_id=org_id)
    db.session.commit()
    logger.info("Cancelled subscription for organization %s", org_id)


def record_payment(
    org_id: int,
    amount,
    payment_method: str,
    *,
    bank_reference: str = "",
    notes: str = "",
    stripe_payment_intent_id: str = "",
) -> SubscriptionPayment:
    """Record a completed subscription payment for an organization."""
    if payment_method not in VALID_PAYMENT_METHODS:
        raise ValueError(f"Unknown payment method: {payment_method!r}")
    sub = get_organization_subscription(org_id)
    payment = SubscriptionPayment(
        org_id=org_id,
        subscription_id=sub.id if sub else None,
        amount=Decimal(str(amount)),
        currency=sub.plan.currency if sub else "EUR",
        payment_method=payment_method,
        status="completed",
        bank_reference=bank_reference or None,
        notes=notes or None,
        stripe_payment_intent_id=stripe_payment_intent_id or None,
        paid_at=datetime.now(timezone.utc),
    )
    db.session.add(payment)
    db.session.commit()
    logger.info("Recorded payment of %s for organization %s", amount, org_id)
    return payment


def reactivate_after_payment(org_id: int) -> None:
    """Reactivate a suspended/past_due subscription after payment."""
    sub = get_organization_subscription(org_id)
    if not sub:
        return
    if sub.status in ("suspended", "past_due", "grace_period", "cancelled"):
        now = datetime.now(timezone.utc)
        sub.status = "active"
        sub.current_period_start = now
        sub.current_period_end = now + _period_length(sub.billing_cycle)
        sub.grace_period_ends_at = None
        sub.cancelled_at = None
        db.session.commit()
        logger.info("Reactivated subscription for organization %s", org_id)


def check_subscription_expiry(now: Optional[datetime] = None) -> int:
    """Transition expired subscriptions; returns how many changed status.

    Called periodically from ``manage.py check-subscriptions``.
    """
    now = now or datetime.now(timezone.utc)
    grace_days = _get_grace_period_days()
    changed = 0

    for sub in OrganizationSubscription.query.all():
        before = sub.status
        trial_end = as_utc(sub.trial_ends_at)
        period_end = as_utc(sub.current_period_end)
        grace_end = as_utc(sub.grace_period_ends_at)

        if sub.status == "trial" and trial_end:
            if now > trial_end:
                sub.status = "active" if sub.stripe_subscription_id else "suspended"
        elif sub.status == "active" and period_end:
            if now > period_end:
                sub.status = "past_due"
        elif sub.status == "past_due" and period_end:
            if now > period_end + timedelta(days=7):
                sub.status = "grace_period"
                sub.grace_period_ends_at = now + timedelta(days=grace_days)
        elif sub.status == "grace_period" and grace_end:
            if now > grace_end:
                sub.status = "suspended"

        if sub.status != before:
            changed += 1
            logger.info("Organization %s subscription %s -> %s", sub.org_id, before, sub.status)

    db.session.commit()
    return changed


def seed_default_plans() -> int:
    """Create the default subscription plans if none exist; returns count added."""
    if SubscriptionPlan.query.count() > 0:
        return 0

    plans = [
        SubscriptionPlan(
            name="Starter",
            slug="starter",
            description="Small guest houses",
            price_monthly=Decimal("49.00"),
            price_yearly=Decimal("490.00"),
            max_rooms=20,
            max_users=5,
            max_transactions=2000,
            max_api_calls=10000,
            features=json.dumps(["pms", "pos"]),
            sort_order=1,
        ),
        SubscriptionPlan(
            name="Pro",
            slug="pro",
            description="Hotels with restaurant and loyalty program",
            price_monthly=Decimal("99.00"),
            price_yearly=Decimal("990.00"),
            max_rooms=100,
            max_users=25,
            max_transactions=20000,
            max_api_calls=100000,
            features=json.dumps(["pms", "pos", "loyalty", "analytics"]),
            sort_order=2,
        ),
        SubscriptionPlan(
            name="Enterprise",
            slug="enterprise",
            description="Hotel groups, no limits",
            price_monthly=Decimal("249.00"),
            price_yearly=None,  # billed monthly * 12
            features=json.dumps(["pms", "pos", "loyalty", "analytics", "api"]),
            sort_order=3,
        ),
    ]
    for plan in plans:
        db.session.add(plan)
    db.session.flush()
    logger.info("Seeded default subscription plans")
    return len(plans)
