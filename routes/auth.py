"""Authentication routes."""

from flask import Blueprint, jsonify, request, session
from flask_wtf.csrf import generate_csrf

from extensions import db, limiter
from models import UserOrganization
from services.audit import log_action
from services.auth import authenticate, effective_permissions, get_current_user, login_required

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _default_org_id(user):
    memberships = UserOrganization.query.filter_by(user_id=user.id).all()
    if len(memberships) == 1:
        return memberships[0].org_id
    default = next((m for m in memberships if m.is_default), None)
    return default.org_id if default else None


def _user_payload(user):
    org_id = session.get("active_org_id")
    return {
        "id": user.id,
        "username": user.username,
        "role": user.role,
        "is_superadmin": bool(user.is_superadmin),
        "active_org_id": org_id,
        "permissions": sorted(effective_permissions(user, org_id)),
    }


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per minute")
def login():
    data = request.get_json(silent=True) or request.form
    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    user = authenticate(username, password)
    if not user:
        return jsonify({"error": "Invalid credentials."}), 401

    session.clear()
    session["user_id"] = user.id
    session.permanent = True
    org_id = _default_org_id(user)
    if org_id:
        session["active_org_id"] = org_id
    log_action("login", "user", user.id, "user logged in", org_id=org_id, user_id=user.id)
    db.session.commit()
    return jsonify(_user_payload(user))


@auth_bp.route("/logout", methods=["POST"])
def logout():
    user = get_current_user()
    if user:
        log_action("logout", "user", user.id, "user logged out",
                   org_id=session.get("active_org_id"))
        db.session.commit()
    session.clear()
    return jsonify({"ok": True})


@auth_bp.route("/me")
@login_required
def me():
    payload = _user_payload(get_current_user())
    payload["csrf_token"] = generate_csrf()
    return jsonify(payload)


@auth_bp.route("/csrf")
def csrf_token():
    """Token for the ``X-CSRFToken`` header of subsequent writes."""
    return jsonify({"csrf_token": generate_csrf()})
