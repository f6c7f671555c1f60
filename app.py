"""Application factory and request hooks for the Flask application."""

from __future__ import annotations

import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import event
from werkzeug.exceptions import HTTPException

from config import env_bool, enable_sqlite_fks, load_config
from extensions import csrf, db, limiter
from models import Organization, OrganizationSubscription, SubscriptionPlan, User, UserOrganization
from routes import register_blueprints
from services.auth import ensure_admin_user
from services.billing import is_organization_active, seed_default_plans
from services.loyalty import create_default_program
from services.notifications import register_notification_listeners
from services.organization import OrganizationSecurityError, register_organization_guards
from utils import utc_now

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------

def _seed_defaults(app_cfg, billing_cfg):
    """Create plans and the default organization if they don't exist.

    Safe to call repeatedly (idempotent).
    """
    seed_default_plans()

    default_org = Organization.query.filter_by(slug="default").first()
    if not default_org:
        default_org = Organization(
            name=app_cfg.name,
            slug="default",
            currency=app_cfg.base_currency,
            is_active=True,
        )
        db.session.add(default_org)
        db.session.flush()
        logger.info("Created default organization (id=%s)", default_org.id)

        plan = SubscriptionPlan.query.filter_by(slug=billing_cfg.default_plan_slug).first()
        if plan:
            now = utc_now()
            db.session.add(OrganizationSubscription(
                org_id=default_org.id,
                plan_id=plan.id,
                status="active",
                billing_cycle="yearly",
                current_period_start=now,
                current_period_end=now + timedelta(days=365),
            ))
        create_default_program(default_org.id)

    db.session.commit()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app():
    """Create and configure the Flask application."""
    app_cfg, billing_cfg, loyalty_cfg, notification_cfg, stripe_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["BILLING_CONFIG"] = billing_cfg
    app.config["LOYALTY_CONFIG"] = loyalty_cfg
    app.config["NOTIFICATION_CONFIG"] = notification_cfg
    app.config["STRIPE_CONFIG"] = stripe_cfg
    app.config["RATELIMIT_ENABLED"] = env_bool("RATELIMIT_ENABLED", True)

    # Session security
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = (
        os.environ.get("FLASK_ENV", "") != "development"
    )
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)

    # Initialize extensions
    csrf.init_app(app)
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()
        _seed_defaults(app_cfg, billing_cfg)
        ensure_admin_user()

    # Cross-organization write guard and push notifications
    register_organization_guards(app)
    register_notification_listeners(app)

    # Register all blueprints
    register_blueprints(app)

    # ------------------------------------------------------------------
    # Request hooks
    # ------------------------------------------------------------------

    # Endpoints that stay writable for suspended organizations
    _BILLING_EXEMPT_PREFIXES = ("auth.", "organizations.", "billing.")

    @app.before_request
    def load_current_user_and_organization():
        """Set ``g.current_user`` and ``g.current_org`` from the session."""
        g.current_user = None
        g.current_org = None
        g._org_id = None
        user_id = session.get("user_id")
        if not user_id:
            return None
        user = db.session.get(User, user_id)
        if not user or not user.is_active:
            session.clear()
            return None
        g.current_user = user

        org_id = session.get("active_org_id")
        if not org_id:
            # Auto-select the only, or the default, membership
            memberships = UserOrganization.query.filter_by(user_id=user.id).all()
            default = memberships[0] if len(memberships) == 1 else next(
                (m for m in memberships if m.is_default), None
            )
            org_id = default.org_id if default else None
        if not org_id:
            return None

        membership = UserOrganization.query.filter_by(user_id=user.id, org_id=org_id).first()
        org = db.session.get(Organization, org_id)
        if (membership or user.is_superadmin) and org and org.is_active:
            session["active_org_id"] = org.id
            g.current_org = org
            g._org_id = org.id
        else:
            session.pop("active_org_id", None)
        return None

    @app.before_request
    def check_subscription_status():
        """Suspended and cancelled organizations are read-only."""
        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return None
        if not request.endpoint or request.endpoint.startswith(_BILLING_EXEMPT_PREFIXES):
            return None
        user = getattr(g, "current_user", None)
        org = getattr(g, "current_org", None)
        if not user or not org:
            return None
        # Super admins bypass billing checks
        if user.is_superadmin:
            return None
        if not is_organization_active(org.id):
            return jsonify({"error": "Account is suspended. Renew your subscription."}), 402
        return None

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )
        response.headers["Cache-Control"] = "no-store"
        if os.environ.get("FLASK_ENV") == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({"error": error.description}), error.code

    @app.errorhandler(OrganizationSecurityError)
    def organization_violation(error):
        db.session.rollback()
        logger.warning("Blocked write: %s", error)
        return jsonify({"error": "Access to another organization's data denied."}), 403

    @app.errorhandler(500)
    def server_error(_error):
        db.session.rollback()
        return jsonify({"error": "Internal server error."}), 500

    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
