"""Organization listing, creation and switching routes."""

import re

from flask import Blueprint, current_app, g, jsonify, request, session

from extensions import db
from models import Organization, UserOrganization
from services.audit import log_action
from services.auth import get_current_user, login_required
from services.billing import create_trial_subscription
from services.loyalty import create_default_program
from utils import safe_int

organizations_bp = Blueprint("organizations", __name__, url_prefix="/api/organizations")


def _serialize(org, membership=None):
    return {
        "id": org.id,
        "name": org.name,
        "slug": org.slug,
        "currency": org.currency,
        "is_default": bool(membership.is_default) if membership else False,
        "active": org.id == session.get("active_org_id"),
    }


@organizations_bp.route("", methods=["GET"])
@login_required
def list_organizations():
    user = get_current_user()
    memberships = UserOrganization.query.filter_by(user_id=user.id).all()
    orgs = [
        _serialize(m.organization, m)
        for m in memberships
        if m.organization and m.organization.is_active
    ]
    return jsonify(orgs)


@organizations_bp.route("", methods=["POST"])
@login_required
def create_organization():
    """Create an organization with a trial subscription and switch to it."""
    user = get_current_user()
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return jsonify({"error": "Organization name is required."}), 400

    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "org"
    if Organization.query.filter_by(slug=slug).first():
        slug = f"{slug}-{Organization.query.count() + 1}"

    org = Organization(
        name=name,
        slug=slug,
        currency=data.get("currency") or current_app.config["APP_CONFIG"].base_currency,
        is_active=True,
    )
    db.session.add(org)
    db.session.flush()

    # Rows for the new organization must pass the flush guard
    g._org_id = org.id
    g.current_org = org

    db.session.add(UserOrganization(user_id=user.id, org_id=org.id, is_default=False))
    create_trial_subscription(org.id)
    create_default_program(org.id)
    log_action("create", "organization", org.id, name, org_id=org.id)
    db.session.commit()

    session["active_org_id"] = org.id
    return jsonify(_serialize(org)), 201


@organizations_bp.route("/switch", methods=["POST"])
@login_required
def switch_organization():
    data = request.get_json(silent=True) or {}
    org_id = safe_int(data.get("org_id"))
    if not org_id:
        return jsonify({"error": "Invalid organization."}), 400
    user = get_current_user()
    membership = UserOrganization.query.filter_by(user_id=user.id, org_id=org_id).first()
    if not membership and not user.is_superadmin:
        return jsonify({"error": "No access to this organization."}), 403
    org = db.session.get(Organization, org_id)
    if not org or not org.is_active:
        return jsonify({"error": "Organization is not active."}), 404
    session["active_org_id"] = org.id
    return jsonify(_serialize(org, membership))
