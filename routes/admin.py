"""Admin routes: user management within an organization."""

import re

from flask import Blueprint, jsonify, request
from werkzeug.security import generate_password_hash

from extensions import db
from models import VALID_ROLES, User, UserOrganization
from services.audit import log_action
from services.auth import get_current_user, role_required
from services.organization import require_organization
from services.usage import can_add_resource, sync_resource_usage

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _validate_password(password: str) -> str | None:
    """Return error message if password is weak, else None."""
    if len(password) < 8:
        return "Password must be at least 8 characters."
    if not re.search(r"[A-Z]", password):
        return "Password must contain an uppercase letter."
    if not re.search(r"[a-z]", password):
        return "Password must contain a lowercase letter."
    if not re.search(r"\d", password):
        return "Password must contain a digit."
    return None


def _serialize(user, membership=None):
    return {
        "id": user.id,
        "username": user.username,
        "role": user.role,
        "role_override": membership.role_override if membership else None,
        "is_active": bool(user.is_active),
    }


@admin_bp.route("/users")
@role_required("manage_all")
def users():
    org_id = require_organization()
    memberships = UserOrganization.query.filter_by(org_id=org_id).all()
    return jsonify([_serialize(m.user, m) for m in memberships if m.user])


@admin_bp.route("/users", methods=["POST"])
@role_required("manage_all")
def create_user():
    """Create a user in the current organization, within the plan's user limit."""
    org_id = require_organization()
    data = request.get_json(silent=True) or {}
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    role = data.get("role", "staff")

    if not username:
        return jsonify({"error": "Username is required."}), 400
    pw_error = _validate_password(password)
    if pw_error:
        return jsonify({"error": pw_error}), 400
    if role not in VALID_ROLES:
        return jsonify({"error": "Invalid role."}), 400
    if User.query.filter_by(username=username).first():
        return jsonify({"error": "Username already exists."}), 409
    if not can_add_resource(org_id, "users"):
        return jsonify({"error": "User limit of your plan reached."}), 402

    user = User(
        username=username,
        password_hash=generate_password_hash(password),
        role=role,
    )
    db.session.add(user)
    db.session.flush()
    membership = UserOrganization(user_id=user.id, org_id=org_id)
    db.session.add(membership)
    db.session.flush()
    sync_resource_usage(org_id)
    log_action("create", "user", user.id, f"role={role}", org_id=org_id)
    db.session.commit()
    return jsonify(_serialize(user, membership)), 201


@admin_bp.route("/users/<int:user_id>/toggle", methods=["POST"])
@role_required("manage_all")
def toggle_user(user_id: int):
    membership = UserOrganization.query.filter_by(
        user_id=user_id, org_id=require_organization()
    ).first()
    caller = get_current_user()
    if not membership:
        return jsonify({"error": "User not found."}), 404
    if membership.user_id == caller.id:
        return jsonify({"error": "You cannot deactivate yourself."}), 400
    user = membership.user
    user.is_active = not user.is_active
    action = "activate" if user.is_active else "deactivate"
    log_action(action, "user", user.id, f"is_active={user.is_active}",
               org_id=membership.org_id)
    db.session.commit()
    return jsonify(_serialize(user, membership))
