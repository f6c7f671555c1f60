"""Hotel analytics route."""

import datetime

from flask import Blueprint, jsonify, request

from services.analytics import get_analytics
from services.auth import role_required
from services.billing import get_organization_subscription, has_feature
from services.organization import require_organization
from utils import parse_bool, parse_date

analytics_bp = Blueprint("analytics", __name__, url_prefix="/api/analytics")


@analytics_bp.route("")
@role_required("view_analytics")
def index():
    """KPIs and daily series; defaults to the last 30 days."""
    org_id = require_organization()
    sub = get_organization_subscription(org_id)
    if sub and not has_feature(sub.plan, "analytics"):
        return jsonify({"error": "Analytics is not included in your plan."}), 402
    today = datetime.date.today()
    raw_from, raw_to = request.args.get("from"), request.args.get("to")
    date_to = parse_date(raw_to) if raw_to else today
    date_from = parse_date(raw_from) if raw_from else None
    if date_to is None or (raw_from and date_from is None):
        return jsonify({"error": "Dates must use the YYYY-MM-DD format."}), 400
    date_from = date_from or date_to - datetime.timedelta(days=29)
    try:
        data = get_analytics(
            org_id, date_from, date_to,
            compare_with_previous_period=parse_bool(request.args.get("compare")),
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(data.to_dict())
