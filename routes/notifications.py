"""Notification feed routes."""

from flask import Blueprint, jsonify, request

from services.auth import login_required
from services.notifications import get_notification_center
from services.organization import require_organization
from utils import parse_bool

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.route("")
@login_required
def index():
    org_id = require_organization()
    center = get_notification_center()
    items = center.list(org_id, unread_only=parse_bool(request.args.get("unread")))
    return jsonify({
        "notifications": [n.to_dict() for n in items],
        "unread_count": center.unread_count(org_id),
    })


@notifications_bp.route("/<notification_id>/read", methods=["POST"])
@login_required
def mark_read(notification_id):
    org_id = require_organization()
    if not get_notification_center().mark_as_read(org_id, notification_id):
        return jsonify({"error": "Notification not found."}), 404
    return jsonify({"ok": True})


@notifications_bp.route("/read-all", methods=["POST"])
@login_required
def mark_all_read():
    org_id = require_organization()
    return jsonify({"updated": get_notification_center().mark_all_as_read(org_id)})


@notifications_bp.route("", methods=["DELETE"])
@login_required
def clear():
    org_id = require_organization()
    get_notification_center().clear_all(org_id)
    return jsonify({"ok": True})
