"""Test suite for the Hotel Suite backend.

Tests cover: billing calculator, usage metering, analytics KPIs, loyalty
ledger, reservations, push notifications, Stripe webhooks and the JSON API.
"""

import datetime
import os
from decimal import Decimal
from types import SimpleNamespace

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["FLASK_ENV"] = "development"

import services.loyalty as loyalty_service
import services.usage as usage_service
from app import create_app
from config_models import LoyaltyConfig, StripeConfig
from extensions import db
from models import (
    AuditLog,
    Guest,
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyTier,
    LoyaltyTransaction,
    Organization,
    OrganizationSubscription,
    PaymentTransaction,
    Reservation,
    Room,
    SubscriptionPayment,
    SubscriptionPlan,
    UsageMetric,
    User,
    UserOrganization,
)
from services.analytics import (
    compare_kpis,
    compute_daily_occupancy,
    compute_daily_revenue,
    compute_kpis,
    compute_source_breakdown,
    compute_stay_length_distribution,
    count_nights,
    get_analytics,
    period_days,
    previous_period,
)
from services.billing import (
    calculate_discount_percent,
    calculate_subscription_price,
    calculate_yearly_savings,
    change_billing_cycle,
    check_subscription_expiry,
    create_subscription,
    create_trial_subscription,
    has_feature,
    seed_default_plans,
)
from services.loyalty import (
    InsufficientPointsError,
    LoyaltyError,
    award_points,
    calculate_points_for_purchase,
    enroll_guest,
    get_balance,
    get_transactions,
    list_customers,
    loyalty_status_for_spend,
    points_for_spend,
    redeem_points,
)
from services.notifications import Notification, NotificationCenter
from services.organization import OrganizationSecurityError, org_query
from services.reservations import ReservationError, assign_room, check_in, validate_room_assignment
from services.usage import (
    can_add_resource,
    current_period,
    get_usage,
    is_metric_limit_reached,
    is_usage_limit_reached,
    sync_resource_usage,
    track_usage,
)
from utils import parse_bool, parse_date, safe_int, utc_now
from werkzeug.security import generate_password_hash

TEST_PASSWORD = "Testpassword1"
D = datetime.date


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    with application.app_context():
        admin = User.query.filter_by(username="admin").first()
        admin.password_hash = generate_password_hash(TEST_PASSWORD)
        db.session.commit()
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def org_id(app):
    with app.app_context():
        return Organization.query.filter_by(slug="default").first().id


@pytest.fixture
def logged_in_client(client, app, org_id):
    """Create test client with logged-in admin session."""
    with app.app_context():
        user = User.query.filter_by(username="admin").first()
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
            sess["active_org_id"] = org_id
    return client


def _login_as(client, app, username, role):
    """Create a non-superadmin member of the default organization and log in."""
    with app.app_context():
        org = Organization.query.filter_by(slug="default").first()
        user = User(
            username=username,
            password_hash=generate_password_hash(TEST_PASSWORD),
            role=role,
        )
        db.session.add(user)
        db.session.flush()
        db.session.add(UserOrganization(user_id=user.id, org_id=org.id, is_default=True))
        db.session.commit()
        with client.session_transaction() as sess:
            sess["user_id"] = user.id
            sess["active_org_id"] = org.id
        return user.id


def _set_plan_limit(app, org_id, **limits):
    with app.app_context():
        sub = OrganizationSubscription.query.filter_by(org_id=org_id).first()
        for key, value in limits.items():
            setattr(sub.plan, key, value)
        db.session.commit()


@pytest.fixture
def sample_data(app, org_id):
    """Two rooms, one guest and a few January 2024 reservations.

    Returns dict of IDs to avoid detached instance errors.
    """
    with app.app_context():
        room1 = Room(org_id=org_id, number="101", room_type="double", floor="1")
        room2 = Room(org_id=org_id, number="102", room_type="single", floor="1")
        guest = Guest(org_id=org_id, first_name="Awa", last_name="Diallo", email="awa@example.com")
        db.session.add_all([room1, room2, guest])
        db.session.flush()

        stay = Reservation(
            org_id=org_id, reference="R-1", guest_id=guest.id, room_id=room1.id,
            date_arrival=D(2024, 1, 1), date_departure=D(2024, 1, 3),
            rate_total=Decimal("20000"), status="confirmed", source="booking",
        )
        day_use = Reservation(
            org_id=org_id, reference="R-2", guest_id=guest.id, room_id=room2.id,
            date_arrival=D(2024, 1, 2), date_departure=D(2024, 1, 2),
            rate_total=Decimal("5000"), status="checked_out",
        )
        cancelled = Reservation(
            org_id=org_id, reference="R-3", guest_id=guest.id,
            date_arrival=D(2024, 1, 1), date_departure=D(2024, 1, 2),
            rate_total=Decimal("99999"), status="cancelled",
        )
        pending = Reservation(
            org_id=org_id, reference="R-4", guest_id=guest.id,
            date_arrival=D(2024, 1, 5), date_departure=D(2024, 1, 6),
            rate_total=Decimal("15000"), status="option",
        )
        db.session.add_all([stay, day_use, cancelled, pending])
        db.session.commit()
        return {
            "room1": room1.id,
            "room2": room2.id,
            "guest": guest.id,
            "stay": stay.id,
            "day_use": day_use.id,
            "cancelled": cancelled.id,
            "pending": pending.id,
        }


# ---------------------------------------------------------------------------
# Utility functions
# ---------------------------------------------------------------------------


class TestUtilityFunctions:
    def test_safe_int(self):
        assert safe_int("42") == 42
        assert safe_int(None) == 0
        assert safe_int("abc", default=7) == 7

    def test_parse_date(self):
        assert parse_date("2024-01-31") == D(2024, 1, 31)
        assert parse_date("31.01.2024") is None
        assert parse_date(None) is None

    def test_parse_bool(self):
        assert parse_bool("true") is True
        assert parse_bool("1") is True
        assert parse_bool("no") is False
        assert parse_bool(None) is False


# ---------------------------------------------------------------------------
# Billing calculator
# ---------------------------------------------------------------------------


class TestBillingCalculator:
    def test_monthly_price(self):
        plan = {"price_monthly": 100, "price_yearly": 1000}
        assert calculate_subscription_price(plan, "monthly") == 100

    def test_yearly_price_and_discount(self):
        plan = {"price_monthly": 100, "price_yearly": 1000}
        assert calculate_subscription_price(plan, "yearly") == 1000
        assert calculate_yearly_savings(plan) == 200
        assert calculate_discount_percent(plan) == 17

    def test_yearly_falls_back_to_monthly_times_twelve(self):
        plan = {"price_monthly": 100, "price_yearly": None}
        assert calculate_subscription_price(plan, "yearly") == 1200
        assert calculate_yearly_savings(plan) == 0
        assert calculate_discount_percent(plan) == 0

    def test_no_discount_when_yearly_not_cheaper(self):
        plan = {"price_monthly": 100, "price_yearly": 1300}
        assert calculate_yearly_savings(plan) == 0
        assert calculate_discount_percent(plan) == 0

    def test_free_plan_has_no_discount(self):
        plan = {"price_monthly": 0, "price_yearly": 0}
        assert calculate_discount_percent(plan) == 0

    def test_discount_rounds_half_up(self):
        plan = {"price_monthly": 100, "price_yearly": 1050}
        assert calculate_discount_percent(plan) == 13

    def test_decimal_prices(self):
        plan = {"price_monthly": Decimal("49.00"), "price_yearly": Decimal("490.00")}
        assert calculate_yearly_savings(plan) == Decimal("98.00")
        assert calculate_discount_percent(plan) == 17

    def test_unknown_cycle_rejected(self):
        with pytest.raises(ValueError):
            calculate_subscription_price({"price_monthly": 10}, "weekly")

    def test_has_feature(self):
        assert has_feature({"features": ["pms", "loyalty"]}, "loyalty")
        assert has_feature({"features": '["pms"]'}, "pms")
        assert not has_feature({"features": None}, "pms")
        assert not has_feature(None, "pms")


# ---------------------------------------------------------------------------
# Usage metering
# ---------------------------------------------------------------------------


class TestUsageLimits:
    def test_unlimited(self):
        assert is_usage_limit_reached(10_000, None) is False

    def test_zero_limit(self):
        assert is_usage_limit_reached(0, 0) is False
        assert is_usage_limit_reached(1, 0) is True

    def test_below_and_at_limit(self):
        assert is_usage_limit_reached(9, 10) is False
        assert is_usage_limit_reached(10, 10) is True
        assert is_usage_limit_reached(11, 10) is True

    def test_metric_lookup(self):
        sub = SimpleNamespace(plan=SimpleNamespace(max_rooms=10, max_users=None))
        usage = [{"metric_name": "rooms", "metric_value": 10}]
        assert is_metric_limit_reached(sub, usage, "rooms") is True
        assert is_metric_limit_reached(sub, usage, "users") is False

    def test_missing_metric_counts_as_zero(self):
        sub = SimpleNamespace(plan=SimpleNamespace(max_transactions=5))
        assert is_metric_limit_reached(sub, [], "transactions") is False

    def test_no_subscription_never_limited(self):
        assert is_metric_limit_reached(None, [{"metric_name": "rooms", "metric_value": 99}], "rooms") is False

    def test_calendar_month_period(self):
        start, end = current_period(None, datetime.datetime(2024, 2, 15, 10, 30))
        assert start == datetime.datetime(2024, 2, 1)
        assert end == datetime.datetime(2024, 3, 1)

    def test_december_rollover(self):
        start, end = current_period(None, datetime.datetime(2024, 12, 31, 23, 59))
        assert start == datetime.datetime(2024, 12, 1)
        assert end == datetime.datetime(2025, 1, 1)

    def test_subscription_period(self):
        sub = SimpleNamespace(
            current_period_start=datetime.datetime(2024, 1, 10, tzinfo=datetime.timezone.utc),
            current_period_end=datetime.datetime(2024, 2, 9, tzinfo=datetime.timezone.utc),
        )
        start, end = current_period(sub, datetime.datetime(2024, 1, 20, tzinfo=datetime.timezone.utc))
        assert start == datetime.datetime(2024, 1, 10)
        assert end == datetime.datetime(2024, 2, 9)


class TestUsageTracking:
    def test_track_usage_increments(self, app, org_id):
        with app.app_context():
            assert track_usage(org_id, "transactions") == 1
            assert track_usage(org_id, "transactions", 4) == 5
            db.session.commit()
            usage = {u["metric_name"]: u for u in get_usage(org_id)}
            assert usage["transactions"]["metric_value"] == 5
            assert usage["transactions"]["limit_reached"] is False
            assert usage["api_calls"]["metric_value"] == 0

    def test_unknown_metric_rejected(self, app, org_id):
        with app.app_context():
            with pytest.raises(ValueError):
                track_usage(org_id, "minibar")

    def test_negative_increment_rejected(self, app, org_id):
        with app.app_context():
            with pytest.raises(ValueError):
                track_usage(org_id, "api_calls", -1)

    def test_new_period_starts_at_zero(self, app, org_id):
        with app.app_context():
            track_usage(org_id, "api_calls", 5)
            later = datetime.datetime(2099, 6, 15, tzinfo=datetime.timezone.utc)
            assert track_usage(org_id, "api_calls", 1, now=later) == 1
            db.session.commit()
            assert UsageMetric.query.filter_by(org_id=org_id, metric_name="api_calls").count() == 2

    def test_sync_never_lowers_counter(self, app, org_id, sample_data):
        with app.app_context():
            assert sync_resource_usage(org_id)["rooms"] == 2
            room = db.session.get(Room, sample_data["room1"])
            room.is_active = False
            db.session.commit()
            assert sync_resource_usage(org_id)["rooms"] == 2

    def test_can_add_resource(self, app, org_id, sample_data):
        _set_plan_limit(app, org_id, max_rooms=2)
        with app.app_context():
            assert can_add_resource(org_id, "rooms") is False
            db.session.get(Room, sample_data["room2"]).is_active = False
            db.session.commit()
            assert can_add_resource(org_id, "rooms") is True

    def test_unlimited_plan_allows_resource(self, app, org_id):
        _set_plan_limit(app, org_id, max_users=None)
        with app.app_context():
            assert can_add_resource(org_id, "users") is True

    def test_concurrently_created_row_is_reused(self, app, org_id, monkeypatch):
        with app.app_context():
            track_usage(org_id, "transactions", 3)
            db.session.commit()
            real_find = usage_service._find_metric_row
            calls = []

            def missed_first_lookup(*args):
                calls.append(args)
                return None if len(calls) == 1 else real_find(*args)

            monkeypatch.setattr(usage_service, "_find_metric_row", missed_first_lookup)
            assert track_usage(org_id, "transactions") == 4
            db.session.commit()
            assert UsageMetric.query.filter_by(org_id=org_id, metric_name="transactions").count() == 1


# ---------------------------------------------------------------------------
# Subscription lifecycle
# ---------------------------------------------------------------------------


class TestSubscriptionLifecycle:
    def test_default_plans_seeded_once(self, app):
        with app.app_context():
            assert SubscriptionPlan.query.count() == 3
            assert seed_default_plans() == 0

    def test_create_subscription_invalid_cycle(self, app, org_id):
        with app.app_context():
            plan = SubscriptionPlan.query.filter_by(slug="starter").first()
            with pytest.raises(ValueError):
                create_subscription(org_id, plan.id, "weekly")

    def test_create_subscription_invalid_plan(self, app, org_id):
        with app.app_context():
            with pytest.raises(ValueError):
                create_subscription(org_id, 9999, "monthly")

    def test_change_billing_cycle(self, app, org_id):
        with app.app_context():
            sub = change_billing_cycle(org_id, "monthly")
            assert sub.billing_cycle == "monthly"
            start = sub.current_period_start.replace(tzinfo=None)
            end = sub.current_period_end.replace(tzinfo=None)
            assert end - start == datetime.timedelta(days=30)

    def test_expiry_transitions(self, app, org_id):
        with app.app_context():
            org = Organization(name="Trial Inn", slug="trial-inn")
            db.session.add(org)
            db.session.flush()
            create_trial_subscription(org.id)
            db.session.commit()
            trial_org_id = org.id

            changed = check_subscription_expiry(utc_now() + datetime.timedelta(days=400))
            assert changed == 2
            assert OrganizationSubscription.query.filter_by(org_id=trial_org_id).first().status == "suspended"
            assert OrganizationSubscription.query.filter_by(org_id=org_id).first().status == "past_due"

            check_subscription_expiry(utc_now() + datetime.timedelta(days=380))
            sub = OrganizationSubscription.query.filter_by(org_id=org_id).first()
            assert sub.status == "grace_period"
            assert sub.grace_period_ends_at is not None

            check_subscription_expiry(utc_now() + datetime.timedelta(days=500))
            assert OrganizationSubscription.query.filter_by(org_id=org_id).first().status == "suspended"


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------


def _res(arrival, departure=None, rate=0, source=None, status="confirmed"):
    return {
        "date_arrival": arrival,
        "date_departure": departure,
        "rate_total": rate,
        "source": source,
        "status": status,
    }


class TestAnalyticsCalculations:
    def test_same_day_stay_is_one_night(self):
        assert count_nights(D(2024, 1, 1), D(2024, 1, 1)) == 1
        assert count_nights(D(2024, 1, 1), None) == 1

    def test_nights(self):
        assert count_nights(D(2024, 1, 1), D(2024, 1, 4)) == 3
        assert count_nights(
            datetime.datetime(2024, 1, 1, 14), datetime.datetime(2024, 1, 2, 11)
        ) == 1

    def test_period_days_inclusive(self):
        assert period_days(D(2024, 1, 1), D(2024, 1, 1)) == 1
        assert period_days(D(2024, 1, 1), D(2024, 1, 31)) == 31

    def test_single_room_single_day(self):
        kpis = compute_kpis([_res(D(2024, 1, 1), D(2024, 1, 1), 100)], 1, D(2024, 1, 1), D(2024, 1, 1))
        assert kpis.occupancy_rate == 100
        assert kpis.average_stay_length == 1
        assert kpis.adr == 100
        assert kpis.revpar == 100

    def test_zero_rooms(self):
        kpis = compute_kpis([_res(D(2024, 1, 1), D(2024, 1, 2), 500)], 0, D(2024, 1, 1), D(2024, 1, 2))
        assert kpis.occupancy_rate == 0
        assert kpis.revpar == 0
        assert kpis.adr == 500

    def test_zero_reservations(self):
        kpis = compute_kpis([], 10, D(2024, 1, 1), D(2024, 1, 7))
        assert kpis.adr == 0
        assert kpis.average_stay_length == 0
        assert kpis.occupancy_rate == 0
        assert kpis.total_reservations == 0

    def test_occupancy_is_clamped(self):
        rows = [_res(D(2024, 1, 1), D(2024, 1, 1), 10) for _ in range(3)]
        kpis = compute_kpis(rows, 1, D(2024, 1, 1), D(2024, 1, 1))
        assert kpis.occupancy_rate == 100

    def test_missing_rate_counts_as_zero(self):
        kpis = compute_kpis([_res(D(2024, 1, 1), D(2024, 1, 2), None)], 1, D(2024, 1, 1), D(2024, 1, 1))
        assert kpis.total_revenue == 0

    def test_daily_series(self):
        rows = [_res(D(2024, 1, 1), D(2024, 1, 4), 300)]
        occupancy = compute_daily_occupancy(rows, 2, D(2024, 1, 1), D(2024, 1, 4))
        assert [p.occupied_rooms for p in occupancy] == [1, 1, 1, 0]
        assert occupancy[0].occupancy_rate == 50
        revenue = compute_daily_revenue(rows, 2, D(2024, 1, 1), D(2024, 1, 4))
        assert [p.revenue for p in revenue] == [100, 100, 100, 0]
        assert revenue[0].adr == 100
        assert revenue[0].revpar == 50

    def test_source_breakdown_defaults_to_walk_in(self):
        rows = [
            _res(D(2024, 1, 1), rate=300, source="booking"),
            _res(D(2024, 1, 1), rate=100),
            _res(D(2024, 1, 2), rate=100, source="booking"),
        ]
        shares = compute_source_breakdown(rows)
        assert [s.source for s in shares] == ["booking", "walk_in"]
        assert shares[0].count == 2
        assert shares[0].percentage == 80
        assert shares[1].percentage == 20

    def test_stay_length_distribution(self):
        rows = [
            _res(D(2024, 1, 1), D(2024, 1, 2)),
            _res(D(2024, 1, 1), D(2024, 1, 2)),
            _res(D(2024, 1, 1), D(2024, 1, 4)),
            _res(D(2024, 1, 1), D(2024, 1, 1)),
        ]
        buckets = compute_stay_length_distribution(rows)
        assert [(b.nights, b.count) for b in buckets] == [(1, 3), (3, 1)]
        assert buckets[0].percentage == 75

    def test_previous_period(self):
        assert previous_period(D(2024, 1, 8), D(2024, 1, 14)) == (D(2024, 1, 1), D(2024, 1, 7))

    def test_compare_kpis(self):
        current = compute_kpis([_res(D(2024, 1, 1), D(2024, 1, 2), 200)], 1, D(2024, 1, 1), D(2024, 1, 1))
        previous = compute_kpis([_res(D(2024, 1, 1), D(2024, 1, 2), 100)], 1, D(2024, 1, 1), D(2024, 1, 1))
        changes = compare_kpis(current, previous)
        assert changes["total_revenue"] == 100
        assert changes["occupancy_rate"] == 0
        empty = compute_kpis([], 1, D(2024, 1, 1), D(2024, 1, 1))
        assert compare_kpis(current, empty)["adr"] is None


class TestAnalyticsDatabase:
    def test_get_analytics(self, app, org_id, sample_data):
        with app.app_context():
            data = get_analytics(org_id, D(2024, 1, 1), D(2024, 1, 3))
            assert data.kpis.total_reservations == 2
            assert data.kpis.total_revenue == 25000
            assert data.kpis.occupancy_rate == 50
            assert data.kpis.adr == 12500
            assert data.kpis.revpar == pytest.approx(25000 / 6)
            assert data.kpis.average_stay_length == 1.5
            assert [p.occupied_rooms for p in data.occupancy] == [1, 2, 0]
            assert [p.revenue for p in data.revenue] == [10000, 15000, 0]
            assert [s.source for s in data.sources] == ["booking", "walk_in"]

    def test_excludes_other_organizations(self, app, org_id, sample_data):
        with app.app_context():
            other = Organization(name="Other", slug="other")
            db.session.add(other)
            db.session.flush()
            db.session.add(Reservation(
                org_id=other.id, date_arrival=D(2024, 1, 1), date_departure=D(2024, 1, 2),
                rate_total=Decimal("777"), status="confirmed",
            ))
            db.session.commit()
            data = get_analytics(org_id, D(2024, 1, 1), D(2024, 1, 3))
            assert data.kpis.total_revenue == 25000

    def test_invalid_range(self, app, org_id):
        with app.app_context():
            with pytest.raises(ValueError):
                get_analytics(org_id, D(2024, 1, 3), D(2024, 1, 1))

    def test_range_is_capped_at_a_year(self, app, org_id):
        with app.app_context():
            with pytest.raises(ValueError):
                get_analytics(org_id, D(2023, 1, 1), D(2024, 1, 2))
            data = get_analytics(org_id, D(2024, 1, 1), D(2024, 12, 31))
            assert len(data.occupancy) == 366

    def test_previous_period_comparison(self, app, org_id, sample_data):
        with app.app_context():
            data = get_analytics(org_id, D(2024, 1, 1), D(2024, 1, 3), compare_with_previous_period=True)
            assert data.previous_kpis.total_reservations == 0
            assert data.kpi_changes["total_revenue"] is None


# ---------------------------------------------------------------------------
# Loyalty ledger
# ---------------------------------------------------------------------------


class TestLoyaltyCalculations:
    def test_points_for_purchase(self, app):
        with app.app_context():
            assert calculate_points_for_purchase(25999) == 25
            assert calculate_points_for_purchase(999) == 0
            assert calculate_points_for_purchase(0) == 0
            assert calculate_points_for_purchase(25999, status="gold") == 38
            assert calculate_points_for_purchase(10000, status="platinum") == 20

    def test_points_with_program(self, app):
        with app.app_context():
            program = LoyaltyProgram(name="x", currency_unit=500, points_per_currency_unit=2)
            assert calculate_points_for_purchase(1200, program) == 4

    def test_status_for_spend(self):
        cfg = LoyaltyConfig(currency_unit=1000, silver_threshold=50000,
                            gold_threshold=200000, platinum_threshold=500000)
        assert loyalty_status_for_spend(49999, cfg) == "bronze"
        assert loyalty_status_for_spend(50000, cfg) == "silver"
        assert loyalty_status_for_spend(200000, cfg) == "gold"
        assert loyalty_status_for_spend(500000, cfg) == "platinum"

    def test_points_for_spend(self, app, org_id, sample_data):
        with app.app_context():
            program = LoyaltyProgram.query.filter_by(org_id=org_id).first()
            program.points_per_night = 10
            vip = Guest(org_id=org_id, first_name="Ama")
            db.session.add(vip)
            db.session.flush()
            db.session.add(Reservation(
                org_id=org_id, guest_id=vip.id, date_arrival=D(2024, 2, 1),
                date_departure=D(2024, 2, 5), rate_total=Decimal("250000"), status="checked_out",
            ))
            db.session.commit()

            assert points_for_spend(org_id, sample_data["guest"], 25999) == 25
            assert points_for_spend(org_id, sample_data["guest"], 25999, nights=2) == 45
            assert points_for_spend(org_id, vip.id, 10000) == 15
            with pytest.raises(ValueError):
                points_for_spend(org_id, vip.id, "abc")
            with pytest.raises(ValueError):
                points_for_spend(org_id, vip.id, 1000, nights=-1)


class TestLoyaltyLedger:
    def test_enroll_creates_account(self, app, org_id):
        with app.app_context():
            guest = enroll_guest(org_id, first_name="Moussa", last_name="Kone")
            assert LoyaltyAccount.query.filter_by(guest_id=guest.id).count() == 1
            assert get_balance(org_id, guest.id) == 0

    def test_award_and_redeem(self, app, org_id, sample_data):
        guest_id = sample_data["guest"]
        with app.app_context():
            award_points(org_id, guest_id, 120, "Stay R-1")
            assert get_balance(org_id, guest_id) == 120
            award_points(org_id, guest_id, 500, "Birthday", transaction_type="bonus")
            account = LoyaltyAccount.query.filter_by(guest_id=guest_id).first()
            assert account.total_points == 620
            assert account.tier.code == "silver"

            entry = redeem_points(org_id, guest_id, 100, "Free breakfast")
            assert entry.points == -100
            assert entry.transaction_type == "redeemed"
            assert get_balance(org_id, guest_id) == 520
            assert [t.points for t in get_transactions(org_id, guest_id)] == [-100, 500, 120]

    def test_redeem_more_than_balance_fails(self, app, org_id, sample_data):
        guest_id = sample_data["guest"]
        with app.app_context():
            award_points(org_id, guest_id, 50, "Welcome")
            with pytest.raises(InsufficientPointsError) as exc:
                redeem_points(org_id, guest_id, 100, "Spa")
            assert exc.value.balance == 50
            assert get_balance(org_id, guest_id) == 50
            assert LoyaltyTransaction.query.filter_by(guest_id=guest_id).count() == 1

    def test_stale_balance_read_cannot_overdraw(self, app, org_id, sample_data, monkeypatch):
        guest_id = sample_data["guest"]
        with app.app_context():
            award_points(org_id, guest_id, 50, "Welcome")
            real_get = loyalty_service._get_account

            def stale_locked_read(org_id, guest_id, program, for_update=False):
                account = real_get(org_id, guest_id, program, for_update)
                if for_update and account is not None:
                    return SimpleNamespace(id=account.id, total_points=100)
                return account

            monkeypatch.setattr(loyalty_service, "_get_account", stale_locked_read)
            with pytest.raises(InsufficientPointsError) as exc:
                redeem_points(org_id, guest_id, 80, "Spa")
            assert exc.value.balance == 50
            assert get_balance(org_id, guest_id) == 50
            assert LoyaltyTransaction.query.filter_by(guest_id=guest_id).count() == 1

    def test_concurrently_opened_account_is_reused(self, app, org_id, sample_data, monkeypatch):
        guest_id = sample_data["guest"]
        with app.app_context():
            award_points(org_id, guest_id, 10, "Welcome")
            real_get = loyalty_service._get_account
            calls = []

            def missed_first_lookup(*args, **kwargs):
                calls.append(args)
                return None if len(calls) == 1 else real_get(*args, **kwargs)

            monkeypatch.setattr(loyalty_service, "_get_account", missed_first_lookup)
            award_points(org_id, guest_id, 5, "Late checkout")
            assert get_balance(org_id, guest_id) == 15
            assert LoyaltyAccount.query.filter_by(guest_id=guest_id).count() == 1

    def test_redeem_without_account_fails(self, app, org_id, sample_data):
        with app.app_context():
            with pytest.raises(InsufficientPointsError):
                redeem_points(org_id, sample_data["guest"], 1, "Spa")

    def test_points_must_be_positive(self, app, org_id, sample_data):
        with app.app_context():
            for bad in (0, -5, 1.5, "10"):
                with pytest.raises(ValueError):
                    award_points(org_id, sample_data["guest"], bad, "x")
            with pytest.raises(ValueError):
                redeem_points(org_id, sample_data["guest"], 0, "x")

    def test_guest_of_other_organization(self, app, org_id):
        with app.app_context():
            other = Organization(name="Other", slug="other")
            db.session.add(other)
            db.session.flush()
            guest = Guest(org_id=other.id, first_name="Eve")
            db.session.add(guest)
            db.session.commit()
            with pytest.raises(LoyaltyError):
                award_points(org_id, guest.id, 10, "x")

    def test_no_active_program(self, app, org_id, sample_data):
        with app.app_context():
            LoyaltyProgram.query.filter_by(org_id=org_id).update({"is_active": False})
            db.session.commit()
            with pytest.raises(LoyaltyError):
                award_points(org_id, sample_data["guest"], 10, "x")

    def test_award_is_audited(self, app, org_id, sample_data):
        with app.app_context():
            award_points(org_id, sample_data["guest"], 10, "x")
            assert AuditLog.query.filter_by(action="award_points").count() == 1

    def test_list_customers(self, app, org_id, sample_data):
        with app.app_context():
            award_points(org_id, sample_data["guest"], 30, "x")
            customers = list_customers(org_id)
            assert len(customers) == 1
            customer = customers[0]
            assert customer["total_points"] == 30
            assert customer["total_spent"] == 25000
            assert customer["visit_count"] == 2
            assert customer["average_spend"] == 12500
            assert customer["loyalty_status"] == "bronze"
            assert list_customers(org_id, "nobody") == []


# ---------------------------------------------------------------------------
# Reservations
# ---------------------------------------------------------------------------


class TestReservations:
    def test_assign_room_conflict(self, app, org_id, sample_data):
        with app.app_context():
            overlapping = Reservation(
                org_id=org_id, date_arrival=D(2024, 1, 2), date_departure=D(2024, 1, 4),
                status="confirmed",
            )
            db.session.add(overlapping)
            db.session.commit()
            room = db.session.get(Room, sample_data["room1"])
            ok, reason = validate_room_assignment(org_id, overlapping, room)
            assert ok is False
            assert "101" in reason
            with pytest.raises(ReservationError):
                assign_room(org_id, overlapping.id, room.id)

    def test_back_to_back_stays_do_not_conflict(self, app, org_id, sample_data):
        with app.app_context():
            follow_up = Reservation(
                org_id=org_id, date_arrival=D(2024, 1, 3), date_departure=D(2024, 1, 4),
                status="confirmed",
            )
            db.session.add(follow_up)
            db.session.commit()
            assign_room(org_id, follow_up.id, sample_data["room1"])
            assert db.session.get(Reservation, follow_up.id).room_id == sample_data["room1"]

    def test_closed_reservation_cannot_be_assigned(self, app, org_id, sample_data):
        with app.app_context():
            with pytest.raises(ReservationError):
                assign_room(org_id, sample_data["cancelled"], sample_data["room2"])

    def test_check_in_requires_room(self, app, org_id, sample_data):
        with app.app_context():
            with pytest.raises(ReservationError):
                check_in(org_id, sample_data["pending"])

    def test_check_in(self, app, org_id, sample_data):
        with app.app_context():
            assign_room(org_id, sample_data["pending"], sample_data["room2"])
            reservation = check_in(org_id, sample_data["pending"])
            assert reservation.status == "present"
            assert reservation.checked_in_at is not None


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class TestNotificationCenter:
    def test_keeps_latest_items(self):
        center = NotificationCenter(max_items=2)
        for i in range(3):
            center.add(Notification(org_id=1, type="payment", title=str(i), message=""))
        assert [n.title for n in center.list(1)] == ["2", "1"]

    def test_read_state(self):
        center = NotificationCenter()
        first = center.add(Notification(org_id=1, type="payment", title="a", message=""))
        center.add(Notification(org_id=1, type="payment", title="b", message=""))
        center.add(Notification(org_id=2, type="payment", title="c", message=""))
        assert center.unread_count(1) == 2
        assert center.mark_as_read(1, first.id) is True
        assert center.mark_as_read(2, first.id) is False
        assert center.unread_count(1) == 1
        assert center.mark_all_as_read(1) == 1
        assert center.unread_count(2) == 1
        center.clear_all(1)
        assert center.list(1) == []

    def test_subscribe_and_disabled_types(self):
        center = NotificationCenter(enabled_types={"reservation"})
        received = []
        unsubscribe = center.subscribe(received.append)
        center.add(Notification(org_id=1, type="reservation", title="r", message=""))
        center.add(Notification(org_id=1, type="payment", title="p", message=""))
        assert [n.title for n in received] == ["r"]
        assert len(center.list(1)) == 2
        unsubscribe()
        center.add(Notification(org_id=1, type="reservation", title="r2", message=""))
        assert len(received) == 1


class TestNotificationEvents:
    def test_committed_reservation_notifies(self, app, org_id, sample_data):
        center = app.extensions["notification_center"]
        items = center.list(org_id)
        assert len(items) == 4
        assert {n.type for n in items} == {"reservation"}
        assert all(n.message.startswith("Awa Diallo - arrival") for n in items)

    def test_guest_flushed_with_reservation_is_named(self, app, org_id):
        center = app.extensions["notification_center"]
        with app.app_context():
            db.session.add(Guest(id=500, org_id=org_id, first_name="Kofi", last_name="Mensah"))
            db.session.add(Reservation(
                org_id=org_id, guest_id=500, date_arrival=D(2024, 3, 1), status="option",
            ))
            db.session.commit()
        assert center.list(org_id)[0].message == "Kofi Mensah - arrival 2024-03-01"

    def test_savepoint_rollback_keeps_outer_events(self, app, org_id):
        center = app.extensions["notification_center"]
        with app.app_context():
            db.session.add(Reservation(
                org_id=org_id, reference="OUTER", date_arrival=D(2024, 3, 1), status="option",
            ))
            db.session.flush()
            savepoint = db.session.begin_nested()
            db.session.add(Reservation(
                org_id=org_id, reference="INNER", date_arrival=D(2024, 3, 2), status="option",
            ))
            db.session.flush()
            savepoint.rollback()
            db.session.commit()
            assert [r.reference for r in Reservation.query.all()] == ["OUTER"]
        assert [n.data["reference"] for n in center.list(org_id)] == ["OUTER"]

    def test_released_savepoint_waits_for_outer_commit(self, app, org_id):
        center = app.extensions["notification_center"]
        with app.app_context():
            with db.session.begin_nested():
                db.session.add(Reservation(
                    org_id=org_id, reference="NESTED", date_arrival=D(2024, 3, 1), status="option",
                ))
            assert center.list(org_id) == []
            db.session.rollback()
        assert center.list(org_id) == []

    def test_rollback_discards_events(self, app, org_id):
        center = app.extensions["notification_center"]
        with app.app_context():
            db.session.add(Reservation(org_id=org_id, date_arrival=D(2024, 3, 1), status="option"))
            db.session.flush()
            db.session.rollback()
        assert center.list(org_id) == []

    def test_check_in_notifies(self, app, org_id, sample_data):
        center = app.extensions["notification_center"]
        with app.app_context():
            assign_room(org_id, sample_data["pending"], sample_data["room2"])
            check_in(org_id, sample_data["pending"])
        latest = center.list(org_id)[0]
        assert latest.type == "checkin"
        assert "102" in latest.message


# ---------------------------------------------------------------------------
# Organization isolation
# ---------------------------------------------------------------------------


class TestOrganizationIsolation:
    def test_cross_organization_write_blocked(self, app, org_id):
        with app.app_context():
            other = Organization(name="Other", slug="other")
            db.session.add(other)
            db.session.commit()
            other_id = other.id
        with app.test_request_context():
            from flask import g
            g._org_id = org_id
            db.session.add(Room(org_id=other_id, number="666"))
            with pytest.raises(OrganizationSecurityError):
                db.session.flush()
            db.session.rollback()

    def _other_organization(self, app):
        with app.app_context():
            other = Organization(name="Other", slug="other")
            db.session.add(other)
            db.session.flush()
            guest = Guest(org_id=other.id, first_name="Eve")
            program = LoyaltyProgram(org_id=other.id, name="Other Rewards")
            db.session.add_all([guest, program])
            db.session.commit()
            return guest.id, program.id

    def test_points_for_foreign_guest_blocked(self, app, org_id):
        guest_id, _ = self._other_organization(app)
        with app.test_request_context():
            from flask import g
            g._org_id = org_id
            program = LoyaltyProgram.query.filter_by(org_id=org_id).first()
            db.session.add(LoyaltyTransaction(
                org_id=org_id, guest_id=guest_id, program_id=program.id,
                points=10, transaction_type="earned",
            ))
            with pytest.raises(OrganizationSecurityError):
                db.session.flush()
            db.session.rollback()

    def test_tier_on_foreign_program_blocked(self, app, org_id):
        _, program_id = self._other_organization(app)
        with app.test_request_context():
            from flask import g
            g._org_id = org_id
            db.session.add(LoyaltyTier(program_id=program_id, code="vip", name="VIP", min_points=1))
            with pytest.raises(OrganizationSecurityError):
                db.session.flush()
            db.session.rollback()

    def test_usage_row_of_other_organization_blocked(self, app, org_id):
        with app.app_context():
            other = Organization(name="Other", slug="other")
            db.session.add(other)
            db.session.commit()
            other_id = other.id
        with app.test_request_context():
            from flask import g
            g._org_id = org_id
            with pytest.raises(OrganizationSecurityError):
                track_usage(other_id, "transactions")
            db.session.rollback()

    def test_org_query_rejects_unscoped_model(self, app, org_id):
        with app.test_request_context():
            from flask import g
            g.current_org = db.session.get(Organization, org_id)
            assert org_query(Room).count() == 0
            with pytest.raises(TypeError):
                org_query(SubscriptionPlan)


# ---------------------------------------------------------------------------
# App creation
# ---------------------------------------------------------------------------


class TestAppCreation:
    def test_create_app(self, app):
        assert app is not None
        assert app.config["TESTING"] is True

    def test_defaults_seeded(self, app, org_id):
        with app.app_context():
            admin = User.query.filter_by(username="admin").first()
            assert admin.is_superadmin
            assert UserOrganization.query.filter_by(user_id=admin.id, org_id=org_id).count() == 1
            sub = OrganizationSubscription.query.filter_by(org_id=org_id).first()
            assert sub.status == "active"
            program = LoyaltyProgram.query.filter_by(org_id=org_id).first()
            assert [t.code for t in program.tiers] == ["bronze", "silver", "gold", "platinum"]

    def test_session_config(self, app):
        assert app.config["SESSION_COOKIE_HTTPONLY"] is True
        assert app.config["SESSION_COOKIE_SAMESITE"] == "Lax"

    def test_security_headers(self, client):
        resp = client.get("/api/billing/plans")
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    def test_not_found_is_json(self, client):
        resp = client.get("/api/does-not-exist")
        assert resp.status_code == 404
        assert "error" in resp.get_json()


# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------


class TestAuthRoutes:
    def test_login_success(self, client, org_id):
        resp = client.post("/api/auth/login", json={"username": "admin", "password": TEST_PASSWORD})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["username"] == "admin"
        assert data["active_org_id"] == org_id
        assert "manage_all" in data["permissions"]

    def test_login_failure(self, client):
        resp = client.post("/api/auth/login", json={"username": "admin", "password": "wrong"})
        assert resp.status_code == 401

    def test_me_requires_login(self, client):
        assert client.get("/api/auth/me").status_code == 401

    def test_logout(self, logged_in_client):
        assert logged_in_client.post("/api/auth/logout").status_code == 200
        assert logged_in_client.get("/api/auth/me").status_code == 401

    def test_permission_denied(self, client, app):
        _login_as(client, app, "housekeeper", "staff")
        resp = client.post("/api/loyalty/customers", json={"first_name": "X"})
        assert resp.status_code == 403


class TestOrganizationRoutes:
    def test_create_and_switch(self, logged_in_client, app, org_id):
        resp = logged_in_client.post("/api/organizations", json={"name": "Maison Rouge"})
        assert resp.status_code == 201
        new_id = resp.get_json()["id"]
        with app.app_context():
            assert OrganizationSubscription.query.filter_by(org_id=new_id).first().status == "trial"
            assert LoyaltyProgram.query.filter_by(org_id=new_id).count() == 1

        orgs = logged_in_client.get("/api/organizations").get_json()
        assert {o["id"] for o in orgs} == {org_id, new_id}
        assert next(o for o in orgs if o["id"] == new_id)["active"] is True

        resp = logged_in_client.post("/api/organizations/switch", json={"org_id": org_id})
        assert resp.status_code == 200
        assert resp.get_json()["active"] is True

    def test_create_requires_name(self, logged_in_client):
        assert logged_in_client.post("/api/organizations", json={}).status_code == 400

    def test_switch_to_unknown(self, logged_in_client):
        resp = logged_in_client.post("/api/organizations/switch", json={"org_id": 9999})
        assert resp.status_code == 404


class TestBillingRoutes:
    def test_plans_yearly(self, client):
        resp = client.get("/api/billing/plans?billing_cycle=yearly")
        assert resp.status_code == 200
        plans = {p["slug"]: p for p in resp.get_json()}
        assert plans["pro"]["price"] == 990
        assert plans["pro"]["discount_percent"] == 17
        assert plans["enterprise"]["price"] == 2988
        assert plans["enterprise"]["discount_percent"] == 0

    def test_plans_invalid_cycle(self, client):
        assert client.get("/api/billing/plans?billing_cycle=weekly").status_code == 400

    def test_subscribe(self, logged_in_client, app):
        with app.app_context():
            starter_id = SubscriptionPlan.query.filter_by(slug="starter").first().id
        resp = logged_in_client.post(
            "/api/billing/subscription", json={"plan_id": starter_id, "billing_cycle": "monthly"}
        )
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["status"] == "active"
        assert data["price"] == 49
        assert logged_in_client.get("/api/billing/subscription").get_json()["plan"]["slug"] == "starter"

    def test_subscribe_invalid_cycle(self, logged_in_client, app):
        with app.app_context():
            starter_id = SubscriptionPlan.query.filter_by(slug="starter").first().id
        resp = logged_in_client.post(
            "/api/billing/subscription", json={"plan_id": starter_id, "billing_cycle": "weekly"}
        )
        assert resp.status_code == 400

    def test_change_cycle_and_cancel(self, logged_in_client):
        resp = logged_in_client.post("/api/billing/subscription/cycle", json={"billing_cycle": "monthly"})
        assert resp.get_json()["billing_cycle"] == "monthly"
        resp = logged_in_client.post("/api/billing/subscription/cancel")
        assert resp.get_json()["cancelled_at"] is not None

    def test_usage(self, logged_in_client):
        resp = logged_in_client.post("/api/billing/usage/track", json={"metric_name": "api_calls", "increment": 3})
        assert resp.get_json()["metric_value"] == 3
        usage = {u["metric_name"]: u for u in logged_in_client.get("/api/billing/usage").get_json()}
        assert set(usage) == {"rooms", "users", "transactions", "api_calls"}
        assert usage["api_calls"]["metric_value"] == 3

    def test_usage_unknown_metric(self, logged_in_client):
        resp = logged_in_client.post("/api/billing/usage/track", json={"metric_name": "minibar"})
        assert resp.status_code == 400

    def test_suspended_organization_is_read_only(self, client, app, org_id):
        _login_as(client, app, "manager", "manager")
        with app.app_context():
            OrganizationSubscription.query.filter_by(org_id=org_id).update({"status": "suspended"})
            db.session.commit()
        assert client.get("/api/rooms").status_code == 200
        assert client.post("/api/rooms", json={"number": "201"}).status_code == 402


class TestStripeWebhook:
    def _enable_stripe(self, app, org_id):
        app.config["STRIPE_CONFIG"] = StripeConfig(
            enabled=True, secret_key="sk_test_123", webhook_secret="whsec_123"
        )
        with app.app_context():
            sub = OrganizationSubscription.query.filter_by(org_id=org_id).first()
            sub.stripe_customer_id = "cus_123"
            sub.status = "past_due"
            db.session.commit()

    def test_invoice_paid_reactivates(self, client, app, org_id, monkeypatch):
        import stripe

        self._enable_stripe(app, org_id)
        event = {
            "type": "invoice.paid",
            "data": {"object": {"customer": "cus_123", "amount_paid": 9900, "payment_intent": "pi_1"}},
        }
        monkeypatch.setattr(stripe.Webhook, "construct_event", lambda payload, sig, secret: event)
        resp = client.post("/webhook/stripe", data="{}", headers={"Stripe-Signature": "t=1,v1=x"})
        assert resp.status_code == 200
        with app.app_context():
            assert OrganizationSubscription.query.filter_by(org_id=org_id).first().status == "active"
            payment = SubscriptionPayment.query.filter_by(org_id=org_id).first()
            assert payment.amount == Decimal("99.00")
            assert payment.stripe_payment_intent_id == "pi_1"

    def test_bad_signature(self, client, app, org_id, monkeypatch):
        import stripe

        self._enable_stripe(app, org_id)

        def _raise(payload, sig, secret):
            raise stripe.SignatureVerificationError("bad", sig)

        monkeypatch.setattr(stripe.Webhook, "construct_event", _raise)
        resp = client.post("/webhook/stripe", data="{}", headers={"Stripe-Signature": "x"})
        assert resp.status_code == 400

    def test_disabled(self, client):
        assert client.post("/webhook/stripe", data="{}").status_code == 400


class TestAnalyticsRoutes:
    def test_analytics(self, logged_in_client, sample_data):
        resp = logged_in_client.get("/api/analytics?from=2024-01-01&to=2024-01-03&compare=true")
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["kpis"]["occupancy_rate"] == 50
        assert data["kpis"]["total_reservations"] == 2
        assert len(data["occupancy"]) == 3
        assert data["previous_kpis"]["total_reservations"] == 0

    def test_single_day(self, logged_in_client, app, org_id):
        with app.app_context():
            db.session.add(Room(org_id=org_id, number="1"))
            db.session.add(Reservation(
                org_id=org_id, date_arrival=D(2024, 1, 1), date_departure=D(2024, 1, 1),
                rate_total=Decimal("100"), status="confirmed",
            ))
            db.session.commit()
        data = logged_in_client.get("/api/analytics?from=2024-01-01&to=2024-01-01").get_json()
        assert data["kpis"]["occupancy_rate"] == 100
        assert data["kpis"]["average_stay_length"] == 1

    def test_invalid_range(self, logged_in_client):
        resp = logged_in_client.get("/api/analytics?from=2024-02-01&to=2024-01-01")
        assert resp.status_code == 400

    def test_malformed_dates_rejected(self, logged_in_client):
        assert logged_in_client.get("/api/analytics?from=2024-13-01&to=2024-01-31").status_code == 400
        assert logged_in_client.get("/api/analytics?to=yesterday").status_code == 400

    def test_range_longer_than_a_year_rejected(self, logged_in_client):
        resp = logged_in_client.get("/api/analytics?from=2020-01-01&to=2024-01-01")
        assert resp.status_code == 400
        assert "366" in resp.get_json()["error"]

    def test_requires_permission(self, client, app):
        _login_as(client, app, "desk", "receptionist")
        assert client.get("/api/analytics").status_code == 403

    def test_requires_plan_feature(self, logged_in_client, app, org_id):
        with app.app_context():
            starter = SubscriptionPlan.query.filter_by(slug="starter").first()
            OrganizationSubscription.query.filter_by(org_id=org_id).update({"plan_id": starter.id})
            db.session.commit()
        assert logged_in_client.get("/api/analytics").status_code == 402


class TestLoyaltyRoutes:
    def test_customer_award_redeem(self, logged_in_client):
        resp = logged_in_client.post("/api/loyalty/customers", json={"first_name": "Awa", "last_name": "Diallo"})
        assert resp.status_code == 201
        guest_id = resp.get_json()["id"]

        resp = logged_in_client.post(f"/api/loyalty/customers/{guest_id}/award", json={"points": 50})
        assert resp.status_code == 201
        assert resp.get_json()["balance"] == 50

        resp = logged_in_client.post(f"/api/loyalty/customers/{guest_id}/redeem", json={"points": 100})
        assert resp.status_code == 409
        assert resp.get_json()["balance"] == 50

        resp = logged_in_client.get(f"/api/loyalty/customers/{guest_id}/transactions")
        data = resp.get_json()
        assert data["balance"] == 50
        assert len(data["transactions"]) == 1

        customers = logged_in_client.get("/api/loyalty/customers").get_json()
        assert customers[0]["total_points"] == 50

    def test_invalid_points(self, logged_in_client, sample_data):
        resp = logged_in_client.post(
            f"/api/loyalty/customers/{sample_data['guest']}/award", json={"points": "abc"}
        )
        assert resp.status_code == 400

    def test_unknown_customer(self, logged_in_client):
        resp = logged_in_client.post("/api/loyalty/customers/9999/award", json={"points": 5})
        assert resp.status_code == 404

    def test_award_for_amount_spent(self, logged_in_client, sample_data):
        url = f"/api/loyalty/customers/{sample_data['guest']}/award"
        resp = logged_in_client.post(url, json={"amount": 25999})
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["balance"] == 25
        assert data["transaction"]["points"] == 25
        assert data["transaction"]["description"] == "Purchase of 25999"
        assert logged_in_client.post(url, json={"amount": "abc"}).status_code == 400
        # Too small to earn a point
        assert logged_in_client.post(url, json={"amount": 10}).status_code == 400
        assert logged_in_client.post(
            "/api/loyalty/customers/9999/award", json={"amount": 5000}
        ).status_code == 404


class TestReservationRoutes:
    def test_rooms(self, logged_in_client):
        resp = logged_in_client.post("/api/rooms", json={"number": "301", "room_type": "suite"})
        assert resp.status_code == 201
        assert logged_in_client.post("/api/rooms", json={"number": "301"}).status_code == 409
        assert logged_in_client.post("/api/rooms", json={}).status_code == 400
        rooms = logged_in_client.get("/api/rooms").get_json()
        assert [r["number"] for r in rooms] == ["301"]

    def test_room_limit(self, logged_in_client, app, org_id):
        _set_plan_limit(app, org_id, max_rooms=1)
        assert logged_in_client.post("/api/rooms", json={"number": "1"}).status_code == 201
        assert logged_in_client.post("/api/rooms", json={"number": "2"}).status_code == 402

    def test_list_reservations(self, logged_in_client, sample_data):
        data = logged_in_client.get("/api/reservations?status=confirmed").get_json()
        assert [r["reference"] for r in data] == ["R-1"]
        data = logged_in_client.get("/api/reservations?from=2024-01-04").get_json()
        assert [r["reference"] for r in data] == ["R-4"]
        assert logged_in_client.get("/api/reservations?status=bogus").status_code == 400

    def test_assign_check_in_and_pay(self, logged_in_client, app, org_id, sample_data):
        rid = sample_data["pending"]
        resp = logged_in_client.post(f"/api/reservations/{rid}/check-in")
        assert resp.status_code == 409

        resp = logged_in_client.post(
            f"/api/reservations/{rid}/assign-room", json={"room_id": sample_data["room1"]}
        )
        assert resp.status_code == 200
        assert resp.get_json()["room_number"] == "101"

        resp = logged_in_client.post(f"/api/reservations/{rid}/check-in")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "present"

        resp = logged_in_client.post(
            f"/api/reservations/{rid}/payments", json={"amount": 15000, "method": "cash"}
        )
        assert resp.status_code == 201
        with app.app_context():
            assert PaymentTransaction.query.filter_by(reservation_id=rid).count() == 1
            usage = {u["metric_name"]: u["metric_value"] for u in get_usage(org_id)}
            assert usage["transactions"] == 1

    def test_conflicting_assignment(self, logged_in_client, app, org_id, sample_data):
        with app.app_context():
            clash = Reservation(
                org_id=org_id, date_arrival=D(2024, 1, 2), date_departure=D(2024, 1, 4),
                status="confirmed",
            )
            db.session.add(clash)
            db.session.commit()
            clash_id = clash.id
        resp = logged_in_client.post(
            f"/api/reservations/{clash_id}/assign-room", json={"room_id": sample_data["room1"]}
        )
        assert resp.status_code == 409

    def test_unknown_reservation(self, logged_in_client):
        assert logged_in_client.post("/api/reservations/9999/check-in").status_code == 404

    def test_invalid_payment(self, logged_in_client, sample_data):
        resp = logged_in_client.post(
            f"/api/reservations/{sample_data['stay']}/payments", json={"amount": -5}
        )
        assert resp.status_code == 409


class TestNotificationRoutes:
    def test_feed(self, logged_in_client, sample_data):
        data = logged_in_client.get("/api/notifications").get_json()
        assert data["unread_count"] == 4
        first_id = data["notifications"][0]["id"]

        assert logged_in_client.post(f"/api/notifications/{first_id}/read").status_code == 200
        assert logged_in_client.get("/api/notifications").get_json()["unread_count"] == 3
        assert logged_in_client.post("/api/notifications/unknown/read").status_code == 404

        assert logged_in_client.post("/api/notifications/read-all").get_json()["updated"] == 3
        assert logged_in_client.delete("/api/notifications").status_code == 200
        assert logged_in_client.get("/api/notifications").get_json()["notifications"] == []

    def test_payment_pushes_notification(self, logged_in_client, sample_data):
        logged_in_client.post(
            f"/api/reservations/{sample_data['stay']}/payments", json={"amount": 2000, "method": "card"}
        )
        latest = logged_in_client.get("/api/notifications").get_json()["notifications"][0]
        assert latest["type"] == "payment"
        assert latest["priority"] == "low"


class TestAdminRoutes:
    def test_create_user(self, logged_in_client, app, org_id):
        resp = logged_in_client.post(
            "/api/admin/users",
            json={"username": "frontdesk", "password": "Secret123", "role": "receptionist"},
        )
        assert resp.status_code == 201
        users = logged_in_client.get("/api/admin/users").get_json()
        assert {u["username"] for u in users} == {"admin", "frontdesk"}
        with app.app_context():
            usage = {u["metric_name"]: u["metric_value"] for u in get_usage(org_id)}
            assert usage["users"] == 2

    def test_weak_password(self, logged_in_client):
        resp = logged_in_client.post(
            "/api/admin/users", json={"username": "weak", "password": "short", "role": "staff"}
        )
        assert resp.status_code == 400

    def test_user_limit(self, logged_in_client, app, org_id):
        _set_plan_limit(app, org_id, max_users=1)
        resp = logged_in_client.post(
            "/api/admin/users", json={"username": "extra", "password": "Secret123", "role": "staff"}
        )
        assert resp.status_code == 402

    def test_toggle_user(self, logged_in_client, app):
        resp = logged_in_client.post(
            "/api/admin/users",
            json={"username": "night", "password": "Secret123", "role": "staff"},
        )
        user_id = resp.get_json()["id"]
        resp = logged_in_client.post(f"/api/admin/users/{user_id}/toggle")
        assert resp.get_json()["is_active"] is False


class TestSubscriptionPayments:
    def test_manual_payment_reactivates(self, app, org_id):
        from services.billing import reactivate_after_payment, record_payment

        with app.app_context():
            OrganizationSubscription.query.filter_by(org_id=org_id).update({"status": "suspended"})
            db.session.commit()
            payment = record_payment(org_id, "99.00", "bank_transfer", bank_reference="VS123")
            reactivate_after_payment(org_id)
            assert payment.status == "completed"
            assert OrganizationSubscription.query.filter_by(org_id=org_id).first().status == "active"

    def test_unknown_payment_method(self, app, org_id):
        from services.billing import record_payment

        with app.app_context():
            with pytest.raises(ValueError):
                record_payment(org_id, 10, "cheque")


class TestCsrfEndpoint:
    def test_csrf_token(self, client):
        resp = client.get("/api/auth/csrf")
        assert resp.status_code == 200
        assert resp.get_json()["csrf_token"]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestManageCli:
    def test_seed_plans(self):
        from click.testing import CliRunner
        from manage import cli

        result = CliRunner().invoke(cli, ["seed-plans"])
        assert result.exit_code == 0
        assert "Plans already present." in result.output

    def test_check_subscriptions(self):
        from click.testing import CliRunner
        from manage import cli

        result = CliRunner().invoke(cli, ["check-subscriptions"])
        assert result.exit_code == 0
        assert "0 subscriptions changed status." in result.output

    def test_sync_usage_unknown_organization(self):
        from click.testing import CliRunner
        from manage import cli

        result = CliRunner().invoke(cli, ["sync-usage", "--org-id", "9999"])
        assert result.exit_code == 1
