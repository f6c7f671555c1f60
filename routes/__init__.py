"""Blueprint registration."""

from routes.admin import admin_bp
from routes.analytics import analytics_bp
from routes.auth import auth_bp
from routes.billing import billing_bp
from routes.loyalty import loyalty_bp
from routes.notifications import notifications_bp
from routes.organizations import organizations_bp
from routes.reservations import reservations_bp

ALL_BLUEPRINTS = [
    auth_bp,
    organizations_bp,
    billing_bp,
    analytics_bp,
    loyalty_bp,
    reservations_bp,
    notifications_bp,
    admin_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
