"""SQLAlchemy models and role-permission mapping."""

from __future__ import annotations

import json

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Role / Permission mapping
# ---------------------------------------------------------------------------

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "admin": {"manage_all"},
    "manager": {
        "manage_reservations", "manage_rooms", "manage_loyalty",
        "view_analytics", "manage_billing",
    },
    "receptionist": {"manage_reservations", "manage_loyalty"},
    "accountant": {"view_analytics", "manage_billing"},
    "staff": {"view_reservations"},
}

VALID_ROLES = list(ROLE_PERMISSIONS.keys())


# ---------------------------------------------------------------------------
# Organization
# ---------------------------------------------------------------------------

class Organization(db.Model):
    """An isolated hotel or restaurant business."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    email = db.Column(db.String(120))
    phone = db.Column(db.String(60))
    billing_email = db.Column(db.String(120))
    currency = db.Column(db.String(10), default="XOF")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    user_memberships = db.relationship(
        "UserOrganization", backref="organization", cascade="all, delete-orphan"
    )


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(30), nullable=False, default="staff")
    is_active = db.Column(db.Boolean, default=True)
    is_superadmin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    org_memberships = db.relationship(
        "UserOrganization", backref="user", cascade="all, delete-orphan"
    )


class UserOrganization(db.Model):
    """Associates users with organizations, optionally overriding the global role."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), nullable=False)
    role_override = db.Column(db.String(30))
    is_default = db.Column(db.Boolean, default=False)

    __table_args__ = (
        db.UniqueConstraint("user_id", "org_id", name="uq_user_organization"),
    )


# ---------------------------------------------------------------------------
# Rooms, guests & reservations
# ---------------------------------------------------------------------------

VALID_RESERVATION_STATUSES = {
    "option", "confirmed", "present", "checked_out", "cancelled", "noshow",
}
# Reservations that count as sold room-nights
REVENUE_STATUSES = ("confirmed", "present", "checked_out")
# Reservations that currently hold a room
OCCUPYING_STATUSES = ("confirmed", "present")
CLOSED_STATUSES = ("checked_out", "cancelled", "noshow")


class Room(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True, nullable=False)
    number = db.Column(db.String(20), nullable=False)
    room_type = db.Column(db.String(40))
    floor = db.Column(db.String(20))
    status = db.Column(db.String(30), default="clean")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint("org_id", "number", name="uq_room_number_org"),
    )


class Guest(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True, nullable=False)
    first_name = db.Column(db.String(80))
    last_name = db.Column(db.String(80))
    email = db.Column(db.String(120))
    phone = db.Column(db.String(60))
    date_of_birth = db.Column(db.Date)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    reservations = db.relationship("Reservation", backref="guest")

    @property
    def full_name(self):
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class Reservation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True, nullable=False)
    reference = db.Column(db.String(40))
    guest_id = db.Column(db.Integer, db.ForeignKey("guest.id"))
    room_id = db.Column(db.Integer, db.ForeignKey("room.id"))
    date_arrival = db.Column(db.Date, nullable=False)
    date_departure = db.Column(db.Date)
    rate_total = db.Column(db.Numeric(12, 2, asdecimal=True))
    status = db.Column(db.String(30), nullable=False, default="option")
    source = db.Column(db.String(60))
    checked_in_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    room = db.relationship("Room")

    __table_args__ = (
        db.Index("ix_reservation_dates", "org_id", "date_arrival", "date_departure"),
        db.Index("ix_reservation_status", "status"),
    )


class PaymentTransaction(db.Model):
    """Guest-side payment recorded against a reservation."""
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True, nullable=False)
    reservation_id = db.Column(db.Integer, db.ForeignKey("reservation.id"))
    amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    method = db.Column(db.String(30), nullable=False, default="cash")
    created_at = db.Column(db.DateTime, default=utc_now)

    reservation = db.relationship("Reservation")


# ---------------------------------------------------------------------------
# Loyalty
# ---------------------------------------------------------------------------

class LoyaltyProgram(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text)
    currency_unit = db.Column(db.Integer, default=1000)
    points_per_currency_unit = db.Column(db.Integer, default=1)
    points_per_night = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)

    tiers = db.relationship(
        "LoyaltyTier", backref="program", cascade="all, delete-orphan",
        order_by="LoyaltyTier.min_points",
    )


class LoyaltyTier(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    program_id = db.Column(db.Integer, db.ForeignKey("loyalty_program.id"), nullable=False)
    code = db.Column(db.String(30), nullable=False)
    name = db.Column(db.String(60), nullable=False)
    min_points = db.Column(db.Integer, nullable=False, default=0)
    sort_order = db.Column(db.Integer, default=0)


class LoyaltyAccount(db.Model):
    """Running points balance of one guest in one program."""
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True, nullable=False)
    guest_id = db.Column(db.Integer, db.ForeignKey("guest.id"), nullable=False)
    program_id = db.Column(db.Integer, db.ForeignKey("loyalty_program.id"), nullable=False)
    total_points = db.Column(db.Integer, nullable=False, default=0)
    tier_id = db.Column(db.Integer, db.ForeignKey("loyalty_tier.id"))
    tier_achieved_at = db.Column(db.DateTime)
    last_activity_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    guest = db.relationship("Guest", backref=db.backref("loyalty_accounts"))
    program = db.relationship("LoyaltyProgram")
    tier = db.relationship("LoyaltyTier")

    __table_args__ = (
        db.UniqueConstraint("guest_id", "program_id", name="uq_loyalty_account"),
        db.CheckConstraint("total_points >= 0", name="ck_loyalty_points_non_negative"),
    )


class LoyaltyTransaction(db.Model):
    """Append-only points ledger entry; redemptions carry negative points."""
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True, nullable=False)
    guest_id = db.Column(db.Integer, db.ForeignKey("guest.id"), nullable=False)
    program_id = db.Column(db.Integer, db.ForeignKey("loyalty_program.id"), nullable=False)
    points = db.Column(db.Integer, nullable=False)
    transaction_type = db.Column(db.String(20), nullable=False)
    description = db.Column(db.String(255))
    reference = db.Column(db.String(80))
    reservation_id = db.Column(db.Integer, db.ForeignKey("reservation.id"))
    created_by_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_loyalty_transaction_guest", "guest_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"))
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    user = db.relationship("User")

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )


# ---------------------------------------------------------------------------
# Application settings
# ---------------------------------------------------------------------------

class AppSetting(db.Model):
    """Key-value store for per-organization settings (org_id=NULL for global)."""
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True)
    key = db.Column(db.String(80), nullable=False)
    value = db.Column(db.Text)

    __table_args__ = (
        db.UniqueConstraint("org_id", "key", name="uq_app_setting_org_key"),
    )


# ---------------------------------------------------------------------------
# Subscription billing
# ---------------------------------------------------------------------------

VALID_BILLING_CYCLES = {"monthly", "yearly"}
VALID_PAYMENT_METHODS = {"stripe", "bank_transfer", "manual"}
USAGE_METRICS = ("rooms", "users", "transactions", "api_calls")


class SubscriptionPlan(db.Model):
    """Available subscription tiers. A NULL limit means unlimited."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(60), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    description = db.Column(db.Text)
    price_monthly = db.Column(db.Numeric(10, 2, asdecimal=True), default=0.0)
    price_yearly = db.Column(db.Numeric(10, 2, asdecimal=True))
    currency = db.Column(db.String(10), default="EUR")
    max_rooms = db.Column(db.Integer)
    max_users = db.Column(db.Integer)
    max_transactions = db.Column(db.Integer)
    max_api_calls = db.Column(db.Integer)
    features = db.Column(db.Text)  # JSON list of feature flags
    is_active = db.Column(db.Boolean, default=True)
    sort_order = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, default=utc_now)

    @property
    def feature_list(self) -> list[str]:
        if not self.features:
            return []
        try:
            return list(json.loads(self.features))
        except (ValueError, TypeError):
            return []


class OrganizationSubscription(db.Model):
    """Links an organization to its (single) subscription plan."""
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), unique=True, nullable=False)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"), nullable=False)
    status = db.Column(db.String(30), default="trial")
    billing_cycle = db.Column(db.String(20), default="monthly")
    current_period_start = db.Column(db.DateTime)
    current_period_end = db.Column(db.DateTime)
    trial_ends_at = db.Column(db.DateTime)
    grace_period_ends_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    stripe_customer_id = db.Column(db.String(120))
    stripe_subscription_id = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    organization = db.relationship(
        "Organization", backref=db.backref("subscription", uselist=False)
    )
    plan = db.relationship("SubscriptionPlan")


class UsageMetric(db.Model):
    """Per-period consumption counter. A new period starts a new row."""
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), index=True, nullable=False)
    metric_name = db.Column(db.String(40), nullable=False)
    metric_value = db.Column(db.Integer, nullable=False, default=0)
    period_start = db.Column(db.DateTime, nullable=False)
    period_end = db.Column(db.DateTime, nullable=False)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.UniqueConstraint("org_id", "metric_name", "period_start", name="uq_usage_metric_period"),
    )


class SubscriptionPayment(db.Model):
    """Tracks every payment event for an organization subscription."""
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, db.ForeignKey("organization.id"), nullable=False)
    subscription_id = db.Column(db.Integer, db.ForeignKey("organization_subscription.id"))
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), default="EUR")
    payment_method = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(30), default="pending")
    stripe_payment_intent_id = db.Column(db.String(120))
    bank_reference = db.Column(db.String(120))
    paid_at = db.Column(db.DateTime)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    subscription = db.relationship("OrganizationSubscription")
