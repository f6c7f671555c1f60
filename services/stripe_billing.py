"""Stripe payment integration service."""

from __future__ import annotations

import logging
from typing import Optional

import stripe
from flask import current_app

from extensions import db
from models import OrganizationSubscription
from services.billing import (
    calculate_subscription_price,
    reactivate_after_payment,
    record_payment,
)

logger = logging.getLogger(__name__)


def _configured() -> bool:
    """Point the stripe client at the configured key; False when Stripe is off."""
    cfg = current_app.config["STRIPE_CONFIG"]
    if not cfg.enabled or not cfg.secret_key:
        return False
    stripe.api_key = cfg.secret_key
    return True


def create_stripe_customer(organization) -> Optional[str]:
    """Create a Stripe customer for an organization. Returns customer ID."""
    if not _configured():
        return None
    try:
        customer = stripe.Customer.create(
            name=organization.name,
            email=organization.billing_email or organization.email,
            metadata={"org_id": str(organization.id)},
        )
        return customer.id
    except stripe.StripeError as e:
        logger.error("Failed to create Stripe customer for organization %s: %s", organization.id, e)
        return None


def create_stripe_subscription(subscription, plan) -> Optional[str]:
    """Create a Stripe subscription. Returns subscription ID."""
    if not _configured() or not subscription.stripe_customer_id:
        return None
    amount = calculate_subscription_price(plan, subscription.billing_cycle)
    try:
        stripe_sub = stripe.Subscription.create(
            customer=subscription.stripe_customer_id,
            items=[{"price_data": {
                "currency": plan.currency.lower(),
                "unit_amount": int(amount * 100),
                "recurring": {
                    "interval": "month" if subscription.billing_cycle == "monthly" else "year",
                },
                "product_data": {"name": plan.name},
            }}],
            metadata={"org_id": str(subscription.org_id)},
        )
        return stripe_sub.id
    except stripe.StripeError as e:
        logger.error("Failed to create Stripe subscription: %s", e)
        return None


def cancel_stripe_subscription(subscription) -> bool:
    """Cancel a Stripe subscription at period end."""
    if not _configured() or not subscription.stripe_subscription_id:
        return False
    try:
        stripe.Subscription.modify(
            subscription.stripe_subscription_id,
            cancel_at_period_end=True,
        )
        return True
    except stripe.StripeError as e:
        logger.error("Failed to cancel Stripe subscription: %s", e)
        return False


def handle_webhook(payload, sig_header: str) -> bool:
    """Process a Stripe webhook event. Returns True on success."""
    if not _configured():
        return False
    webhook_secret = current_app.config["STRIPE_CONFIG"].webhook_secret
    if not webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not configured")
        return False

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error("Stripe webhook verification failed: %s", e)
        return False

    event_type = event["type"]
    data = event["data"]["object"]

    if event_type == "invoice.paid":
        sub = OrganizationSubscription.query.filter_by(
            stripe_customer_id=data.get("customer")
        ).first()
        if sub:
            amount = data.get("amount_paid", 0) / 100
            record_payment(
                sub.org_id, amount, "stripe",
                stripe_payment_intent_id=data.get("payment_intent") or "",
            )
            reactivate_after_payment(sub.org_id)
            logger.info("Stripe invoice.paid for organization %s", sub.org_id)

    elif event_type == "invoice.payment_failed":
        sub = OrganizationSubscription.query.filter_by(
            stripe_customer_id=data.get("customer")
        ).first()
        if sub and sub.status == "active":
            sub.status = "past_due"
            db.session.commit()
            logger.info("Stripe payment failed for organization %s -> past_due", sub.org_id)

    elif event_type == "customer.subscription.deleted":
        sub = OrganizationSubscription.query.filter_by(
            stripe_subscription_id=data.get("id")
        ).first()
        if sub:
            sub.status = "cancelled"
            db.session.commit()
            logger.info("Stripe subscription deleted for organization %s", sub.org_id)

    return True
