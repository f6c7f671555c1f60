"""Loyalty program routes: customers, balances and point movements."""

from flask import Blueprint, jsonify, request

from services.auth import get_current_user, login_required, role_required
from services.loyalty import (
    InsufficientPointsError,
    LoyaltyError,
    award_points,
    enroll_guest,
    get_active_program,
    get_balance,
    get_transactions,
    list_customers,
    points_for_spend,
    redeem_points,
)
from services.organization import require_organization
from utils import parse_date, safe_int

loyalty_bp = Blueprint("loyalty", __name__, url_prefix="/api/loyalty")


def _serialize_transaction(entry):
    return {
        "id": entry.id,
        "guest_id": entry.guest_id,
        "points": entry.points,
        "transaction_type": entry.transaction_type,
        "description": entry.description,
        "reference": entry.reference,
        "reservation_id": entry.reservation_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _points_from_request():
    data = request.get_json(silent=True) or {}
    points = data.get("points")
    if isinstance(points, str) and points.strip().isdigit():
        points = int(points)
    return data, points


@loyalty_bp.route("/customers")
@login_required
def customers():
    org_id = require_organization()
    return jsonify(list_customers(org_id, request.args.get("q", "").strip()))


@loyalty_bp.route("/customers", methods=["POST"])
@role_required("manage_loyalty")
def create_customer():
    org_id = require_organization()
    data = request.get_json(silent=True) or {}
    first_name = (data.get("first_name") or "").strip()
    if not first_name:
        return jsonify({"error": "First name is required."}), 400
    guest = enroll_guest(
        org_id,
        first_name=first_name,
        last_name=(data.get("last_name") or "").strip(),
        email=(data.get("email") or "").strip(),
        phone=(data.get("phone") or "").strip(),
        date_of_birth=parse_date(data.get("date_of_birth")),
    )
    program = get_active_program(org_id)
    return jsonify({
        "id": guest.id,
        "first_name": guest.first_name,
        "last_name": guest.last_name or "",
        "total_points": 0,
        "program_id": program.id if program else None,
    }), 201


@loyalty_bp.route("/customers/<int:guest_id>/transactions")
@login_required
def transactions(guest_id):
    org_id = require_organization()
    return jsonify({
        "balance": get_balance(org_id, guest_id),
        "transactions": [_serialize_transaction(t) for t in get_transactions(org_id, guest_id)],
    })


@loyalty_bp.route("/customers/<int:guest_id>/award", methods=["POST"])
@role_required("manage_loyalty")
def award(guest_id):
    """Award explicit ``points``, or points earned for a spent ``amount``."""
    org_id = require_organization()
    data, points = _points_from_request()
    user = get_current_user()
    reason = data.get("reason")
    try:
        if points is None and data.get("amount") is not None:
            points = points_for_spend(
                org_id, guest_id, data["amount"], nights=safe_int(data.get("nights"))
            )
            reason = reason or f"Purchase of {data['amount']}"
        entry = award_points(
            org_id, guest_id, points, reason or "Manual award",
            transaction_type=data.get("transaction_type", "earned"),
            reference=data.get("reference"),
            user_id=user.id,
        )
    except (TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400
    except LoyaltyError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({
        "transaction": _serialize_transaction(entry),
        "balance": get_balance(org_id, guest_id),
    }), 201


@loyalty_bp.route("/customers/<int:guest_id>/redeem", methods=["POST"])
@role_required("manage_loyalty")
def redeem(guest_id):
    org_id = require_organization()
    data, points = _points_from_request()
    user = get_current_user()
    try:
        entry = redeem_points(
            org_id, guest_id, points, data.get("reason") or "Redemption",
            reference=data.get("reference"),
            user_id=user.id,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except InsufficientPointsError as e:
        return jsonify({"error": str(e), "balance": e.balance}), 409
    except LoyaltyError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({
        "transaction": _serialize_transaction(entry),
        "balance": get_balance(org_id, guest_id),
    }), 201
