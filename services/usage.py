"""Usage metering against subscription plan quotas.

Counters live in ``UsageMetric`` rows keyed by (organization, metric, period
start).  Within a period a counter only grows; a new billing period simply
starts a new row at zero.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import USAGE_METRICS, Room, UsageMetric, UserOrganization
from services.billing import get_organization_subscription

logger = logging.getLogger(__name__)


def is_usage_limit_reached(current: int, limit: Optional[int]) -> bool:
    """Return True when *current* usage has reached *limit*.

    ``None`` means unlimited.  A zero limit counts as reached as soon as
    anything is used.
    """
    if limit is None:
        return False
    return current > 0 and current >= limit


def _field(row, key: str):
    if isinstance(row, dict):
        return row.get(key)
    return getattr(row, key, None)


def usage_value(usage, metric_name: str) -> int:
    """Current value of *metric_name* in a list of usage rows (0 if absent)."""
    for row in usage or []:
        if _field(row, "metric_name") == metric_name:
            return int(_field(row, "metric_value") or 0)
    return 0


def is_metric_limit_reached(subscription, usage, metric_name: str) -> bool:
    """Check one metric of *usage* against the plan of *subscription*."""
    if subscription is None or subscription.plan is None:
        return False
    limit = getattr(subscription.plan, f"max_{metric_name}", None)
    return is_usage_limit_reached(usage_value(usage, metric_name), limit)


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------

def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def current_period(subscription, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Bounds of the billing period containing *now* (naive UTC).

    Falls back to the calendar month when the subscription has no period
    covering *now*.
    """
    now = _naive_utc(now or datetime.now(timezone.utc))
    if subscription is not None and subscription.current_period_start and subscription.current_period_end:
        start = _naive_utc(subscription.current_period_start)
        end = _naive_utc(subscription.current_period_end)
        if start <= now < end:
            return start, end
    return _month_bounds(now)


def _find_metric_row(org_id: int, metric_name: str, period_start: datetime) -> Optional[UsageMetric]:
    return UsageMetric.query.filter_by(
        org_id=org_id, metric_name=metric_name, period_start=period_start
    ).with_for_update().first()


def _get_metric_row(org_id: int, metric_name: str, period: tuple[datetime, datetime]) -> UsageMetric:
    start, end = period
    row = _find_metric_row(org_id, metric_name, start)
    if row:
        return row
    row = UsageMetric(
        org_id=org_id,
        metric_name=metric_name,
        metric_value=0,
        period_start=start,
        period_end=end,
    )
    try:
        with db.session.begin_nested():
            db.session.add(row)
    except IntegrityError:
        # Another writer created the period row first
        logger.debug("Usage row %s/%s created concurrently", org_id, metric_name)
        row = _find_metric_row(org_id, metric_name, start)
    return row


def _check_metric(metric_name: str) -> None:
    if metric_name not in USAGE_METRICS:
        raise ValueError(f"Unknown usage metric: {metric_name!r}")


# ---------------------------------------------------------------------------
# Reading & tracking
# ---------------------------------------------------------------------------

def get_usage(org_id: int, now: Optional[datetime] = None) -> list[dict]:
    """Current-period counters of every metric, with plan limit status."""
    sub = get_organization_subscription(org_id)
    start, end = current_period(sub, now)
    rows = {
        row.metric_name: row.metric_value
        for row in UsageMetric.query.filter_by(org_id=org_id, period_start=start).all()
    }
    usage = []
    for metric in USAGE_METRICS:
        value = rows.get(metric, 0)
        limit = getattr(sub.plan, f"max_{metric}") if sub else None
        usage.append({
            "metric_name": metric,
            "metric_value": value,
            "limit": limit,
            "limit_reached": is_usage_limit_reached(value, limit),
            "period_start": start.isoformat(),
            "period_end": end.isoformat(),
        })
    return usage


def track_usage(org_id: int, metric_name: str, increment: int = 1,
                now: Optional[datetime] = None) -> int:
    """Add *increment* to the current-period counter and return the new value.

    Does not commit; the caller commits with the change being metered.
    """
    _check_metric(metric_name)
    if increment < 0:
        raise ValueError("Usage counters cannot decrease within a period.")
    period = current_period(get_organization_subscription(org_id), now)
    row = _get_metric_row(org_id, metric_name, period)
    if increment:
        UsageMetric.query.filter_by(id=row.id).update(
            {UsageMetric.metric_value: UsageMetric.metric_value + increment},
            synchronize_session=False,
        )
        db.session.refresh(row)
    return row.metric_value


def _live_count(org_id: int, metric_name: str) -> Optional[int]:
    if metric_name == "rooms":
        return Room.query.filter_by(org_id=org_id, is_active=True).count()
    if metric_name == "users":
        return UserOrganization.query.filter_by(org_id=org_id).count()
    return None


def sync_resource_usage(org_id: int, now: Optional[datetime] = None) -> dict:
    """Refresh the rooms/users counters from their tables (never lowering them).

    Does not commit.
    """
    period = current_period(get_organization_subscription(org_id), now)
    synced = {}
    for metric in ("rooms", "users"):
        row = _get_metric_row(org_id, metric, period)
        count = _live_count(org_id, metric)
        if count > row.metric_value:
            row.metric_value = count
        synced[metric] = row.metric_value
    db.session.flush()
    logger.debug("Synced usage for organization %s: %s", org_id, synced)
    return synced


def can_add_resource(org_id: int, metric_name: str, now: Optional[datetime] = None) -> bool:
    """Return True if the organization may create one more *metric_name*."""
    _check_metric(metric_name)
    sub = get_organization_subscription(org_id)
    limit = getattr(sub.plan, f"max_{metric_name}") if sub else None
    if limit is None:
        return True
    current = _live_count(org_id, metric_name)
    if current is None:
        start, _ = current_period(sub, now)
        row = UsageMetric.query.filter_by(
            org_id=org_id, metric_name=metric_name, period_start=start
        ).first()
        current = row.metric_value if row else 0
    return current < limit
