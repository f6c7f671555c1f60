"""Billing, subscription and usage routes."""

import json

from flask import Blueprint, jsonify, request

from extensions import csrf, db
from models import USAGE_METRICS, Organization, SubscriptionPlan
from services.auth import login_required, role_required
from services.billing import (
    calculate_subscription_price,
    cancel_subscription,
    change_billing_cycle,
    create_subscription,
    get_organization_subscription,
    serialize_plan,
)
from services.organization import require_organization
from services.stripe_billing import (
    cancel_stripe_subscription,
    create_stripe_customer,
    create_stripe_subscription,
    handle_webhook,
)
from services.usage import get_usage, track_usage
from utils import safe_int

billing_bp = Blueprint("billing", __name__)


def _iso(value):
    return value.isoformat() if value else None


def _serialize_subscription(sub):
    if not sub:
        return None
    return {
        "id": sub.id,
        "org_id": sub.org_id,
        "plan": serialize_plan(sub.plan, sub.billing_cycle),
        "status": sub.status,
        "billing_cycle": sub.billing_cycle,
        "price": float(calculate_subscription_price(sub.plan, sub.billing_cycle)),
        "current_period_start": _iso(sub.current_period_start),
        "current_period_end": _iso(sub.current_period_end),
        "trial_ends_at": _iso(sub.trial_ends_at),
        "grace_period_ends_at": _iso(sub.grace_period_ends_at),
        "cancelled_at": _iso(sub.cancelled_at),
    }


@billing_bp.route("/api/billing/plans")
def plans():
    """Active plans priced for the requested billing cycle."""
    billing_cycle = request.args.get("billing_cycle", "monthly")
    if billing_cycle not in ("monthly", "yearly"):
        return jsonify({"error": "Invalid billing cycle."}), 400
    rows = (
        SubscriptionPlan.query.filter_by(is_active=True)
        .order_by(SubscriptionPlan.sort_order)
        .all()
    )
    return jsonify([serialize_plan(p, billing_cycle) for p in rows])


@billing_bp.route("/api/billing/subscription")
@login_required
def subscription():
    org_id = require_organization()
    return jsonify(_serialize_subscription(get_organization_subscription(org_id)))


@billing_bp.route("/api/billing/subscription", methods=["POST"])
@role_required("manage_billing")
def subscribe():
    """Choose a plan; paid plans are charged through Stripe when it is enabled."""
    org_id = require_organization()
    data = request.get_json(silent=True) or {}
    plan_id = safe_int(data.get("plan_id"))
    billing_cycle = data.get("billing_cycle", "monthly")
    try:
        sub = create_subscription(org_id, plan_id, billing_cycle)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    if calculate_subscription_price(sub.plan, billing_cycle) > 0:
        if not sub.stripe_customer_id:
            sub.stripe_customer_id = create_stripe_customer(db.session.get(Organization, org_id))
        stripe_sub_id = create_stripe_subscription(sub, sub.plan)
        if stripe_sub_id:
            sub.stripe_subscription_id = stripe_sub_id
        db.session.commit()
    return jsonify(_serialize_subscription(sub)), 201


@billing_bp.route("/api/billing/subscription/cycle", methods=["POST"])
@role_required("manage_billing")
def change_cycle():
    org_id = require_organization()
    data = request.get_json(silent=True) or {}
    try:
        sub = change_billing_cycle(org_id, data.get("billing_cycle", ""))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    if not sub:
        return jsonify({"error": "No subscription."}), 404
    return jsonify(_serialize_subscription(sub))


@billing_bp.route("/api/billing/subscription/cancel", methods=["POST"])
@role_required("manage_billing")
def cancel():
    org_id = require_organization()
    sub = get_organization_subscription(org_id)
    if not sub:
        return jsonify({"error": "No subscription."}), 404
    cancel_stripe_subscription(sub)
    cancel_subscription(org_id)
    return jsonify(_serialize_subscription(sub))


@billing_bp.route("/api/billing/usage")
@login_required
def usage():
    org_id = require_organization()
    return jsonify(get_usage(org_id))


@billing_bp.route("/api/billing/usage/track", methods=["POST"])
@login_required
def usage_track():
    org_id = require_organization()
    data = request.get_json(silent=True) or {}
    metric_name = data.get("metric_name", "")
    if metric_name not in USAGE_METRICS:
        return jsonify({"error": f"Unknown metric: {metric_name}"}), 400
    increment = safe_int(data.get("increment"), 1)
    try:
        value = track_usage(org_id, metric_name, increment)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    db.session.commit()
    return jsonify({"metric_name": metric_name, "metric_value": value})


# ---------------------------------------------------------------------------
# Stripe webhook
# ---------------------------------------------------------------------------

@billing_bp.route("/webhook/stripe", methods=["POST"])
@csrf.exempt
def webhook_stripe():
    """Handle Stripe webhook events."""
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature", "")
    result = handle_webhook(payload, sig_header)
    if result:
        return json.dumps({"status": "ok"}), 200, {"Content-Type": "application/json"}
    return json.dumps({"status": "error"}), 400, {"Content-Type": "application/json"}
