"""Hotel KPI aggregation: occupancy, ADR, RevPAR and stay length.

The ``compute_*`` functions are pure and work on any sequence of reservation
rows (ORM objects or dicts with ``date_arrival``, ``date_departure``,
``rate_total``, ``status`` and ``source``).  The ``fetch_*`` functions read
the rows of one organization from the database.
"""

from __future__ import annotations

import datetime
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

from extensions import db
from models import REVENUE_STATUSES, Reservation, Room

logger = logging.getLogger(__name__)

_SECONDS_PER_DAY = 24 * 60 * 60

# Longest range the dashboard computes daily series for
MAX_RANGE_DAYS = 366


@dataclass
class KPIData:
    occupancy_rate: float = 0.0
    adr: float = 0.0
    revpar: float = 0.0
    total_revenue: float = 0.0
    total_reservations: int = 0
    average_stay_length: float = 0.0


@dataclass
class OccupancyPoint:
    date: str
    occupancy_rate: float
    available_rooms: int
    occupied_rooms: int


@dataclass
class RevenuePoint:
    date: str
    revenue: float
    adr: float
    revpar: float


@dataclass
class SourceShare:
    source: str
    count: int
    revenue: float
    percentage: float


@dataclass
class StayLengthBucket:
    nights: int
    count: int
    percentage: float


@dataclass
class AnalyticsData:
    date_from: str
    date_to: str
    kpis: KPIData
    occupancy: list = field(default_factory=list)
    revenue: list = field(default_factory=list)
    sources: list = field(default_factory=list)
    stay_length: list = field(default_factory=list)
    previous_kpis: Optional[KPIData] = None
    kpi_changes: Optional[dict] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def _field(row, key: str):
    if isinstance(row, dict):
        return row.get(key)
    return getattr(row, key, None)


def _as_datetime(value) -> datetime.datetime:
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value)
    if isinstance(value, datetime.datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    return datetime.datetime.combine(value, datetime.time.min)


def _revenue(row) -> float:
    return float(_field(row, "rate_total") or 0)


def count_nights(arrival, departure=None) -> int:
    """Nights of a stay; a same-day stay still counts as one night."""
    if departure is None:
        departure = arrival
    seconds = (_as_datetime(departure) - _as_datetime(arrival)).total_seconds()
    return max(1, math.ceil(seconds / _SECONDS_PER_DAY))


def reservation_nights(row) -> int:
    return count_nights(_field(row, "date_arrival"), _field(row, "date_departure"))


def period_days(date_from, date_to) -> int:
    """Number of days in the inclusive range [date_from, date_to]."""
    seconds = (_as_datetime(date_to) - _as_datetime(date_from)).total_seconds()
    return max(0, math.ceil(seconds / _SECONDS_PER_DAY) + 1)


def _date_range(date_from: datetime.date, date_to: datetime.date) -> Iterable[datetime.date]:
    day = date_from
    while day <= date_to:
        yield day
        day += datetime.timedelta(days=1)


def _occupies(row, day: datetime.date) -> bool:
    arrival = _as_datetime(_field(row, "date_arrival")).date()
    return arrival <= day < arrival + datetime.timedelta(days=reservation_nights(row))


# ---------------------------------------------------------------------------
# Pure computations
# ---------------------------------------------------------------------------

def compute_kpis(reservations, total_rooms: int, date_from, date_to) -> KPIData:
    """Aggregate KPIs for *reservations* over the inclusive date range."""
    total_reservations = len(reservations)
    total_revenue = sum(_revenue(r) for r in reservations)
    total_room_nights = sum(reservation_nights(r) for r in reservations)
    available_room_nights = total_rooms * period_days(date_from, date_to)

    occupancy_rate = 0.0
    revpar = 0.0
    if available_room_nights > 0:
        occupancy_rate = min(100.0, total_room_nights / available_room_nights * 100)
        revpar = total_revenue / available_room_nights

    adr = total_revenue / total_reservations if total_reservations > 0 else 0.0
    average_stay = total_room_nights / total_reservations if total_reservations > 0 else 0.0

    return KPIData(
        occupancy_rate=occupancy_rate,
        adr=adr,
        revpar=revpar,
        total_revenue=total_revenue,
        total_reservations=total_reservations,
        average_stay_length=average_stay,
    )


def compute_daily_occupancy(reservations, total_rooms: int,
                            date_from: datetime.date, date_to: datetime.date) -> list[OccupancyPoint]:
    points = []
    for day in _date_range(date_from, date_to):
        occupied = sum(1 for r in reservations if _occupies(r, day))
        rate = min(100.0, occupied / total_rooms * 100) if total_rooms > 0 else 0.0
        points.append(OccupancyPoint(
            date=day.isoformat(),
            occupancy_rate=rate,
            available_rooms=total_rooms,
            occupied_rooms=occupied,
        ))
    return points


def compute_daily_revenue(reservations, total_rooms: int,
                          date_from: datetime.date, date_to: datetime.date) -> list[RevenuePoint]:
    """Per-day revenue; each stay's total is spread evenly over its nights."""
    points = []
    for day in _date_range(date_from, date_to):
        in_house = [r for r in reservations if _occupies(r, day)]
        revenue = sum(_revenue(r) / reservation_nights(r) for r in in_house)
        rooms_sold = len(in_house)
        points.append(RevenuePoint(
            date=day.isoformat(),
            revenue=revenue,
            adr=revenue / rooms_sold if rooms_sold > 0 else 0.0,
            revpar=revenue / total_rooms if total_rooms > 0 else 0.0,
        ))
    return points


def compute_source_breakdown(reservations) -> list[SourceShare]:
    totals: dict[str, list] = {}
    for r in reservations:
        source = _field(r, "source") or "walk_in"
        bucket = totals.setdefault(source, [0, 0.0])
        bucket[0] += 1
        bucket[1] += _revenue(r)
    total_revenue = sum(revenue for _, revenue in totals.values())
    shares = [
        SourceShare(
            source=source,
            count=count,
            revenue=revenue,
            percentage=revenue / total_revenue * 100 if total_revenue > 0 else 0.0,
        )
        for source, (count, revenue) in totals.items()
    ]
    shares.sort(key=lambda s: (-s.count, s.source))
    return shares


def compute_stay_length_distribution(reservations) -> list[StayLengthBucket]:
    counts: dict[int, int] = {}
    for r in reservations:
        nights = reservation_nights(r)
        counts[nights] = counts.get(nights, 0) + 1
    total = len(reservations)
    return [
        StayLengthBucket(
            nights=nights,
            count=count,
            percentage=count / total * 100 if total > 0 else 0.0,
        )
        for nights, count in sorted(counts.items())
    ]


def compare_kpis(current: KPIData, previous: KPIData) -> dict:
    """Percent change per KPI; None where the previous value is zero."""
    changes = {}
    for name, value in asdict(current).items():
        before = getattr(previous, name)
        changes[name] = (value - before) / before * 100 if before else None
    return changes


def previous_period(date_from: datetime.date, date_to: datetime.date) -> tuple[datetime.date, datetime.date]:
    """The range of equal length ending the day before *date_from*."""
    length = period_days(date_from, date_to)
    prev_to = date_from - datetime.timedelta(days=1)
    return prev_to - datetime.timedelta(days=length - 1), prev_to


# ---------------------------------------------------------------------------
# Database readers
# ---------------------------------------------------------------------------

def fetch_room_count(org_id: int) -> int:
    return Room.query.filter_by(org_id=org_id, is_active=True).count()


def fetch_reservations(org_id: int, date_from: datetime.date, date_to: datetime.date,
                       statuses=REVENUE_STATUSES) -> list[Reservation]:
    """Reservations whose stay overlaps [date_from, date_to]."""
    departure = db.func.coalesce(Reservation.date_departure, Reservation.date_arrival)
    return (
        Reservation.query
        .filter(
            Reservation.org_id == org_id,
            Reservation.date_arrival <= date_to,
            departure >= date_from,
            Reservation.status.in_(statuses),
        )
        .order_by(Reservation.date_arrival)
        .all()
    )


def fetch_kpis(org_id: int, date_from: datetime.date, date_to: datetime.date) -> KPIData:
    return compute_kpis(
        fetch_reservations(org_id, date_from, date_to),
        fetch_room_count(org_id),
        date_from,
        date_to,
    )


def get_analytics(org_id: int, date_from: datetime.date, date_to: datetime.date,
                  compare_with_previous_period: bool = False) -> AnalyticsData:
    """All dashboard series for one organization and date range."""
    if date_to < date_from:
        raise ValueError("date_to must not be before date_from.")
    if period_days(date_from, date_to) > MAX_RANGE_DAYS:
        raise ValueError(f"Date range cannot exceed {MAX_RANGE_DAYS} days.")
    total_rooms = fetch_room_count(org_id)
    reservations = fetch_reservations(org_id, date_from, date_to)

    data = AnalyticsData(
        date_from=date_from.isoformat(),
        date_to=date_to.isoformat(),
        kpis=compute_kpis(reservations, total_rooms, date_from, date_to),
        occupancy=compute_daily_occupancy(reservations, total_rooms, date_from, date_to),
        revenue=compute_daily_revenue(reservations, total_rooms, date_from, date_to),
        sources=compute_source_breakdown(reservations),
        stay_length=compute_stay_length_distribution(reservations),
    )
    if compare_with_previous_period:
        prev_from, prev_to = previous_period(date_from, date_to)
        data.previous_kpis = fetch_kpis(org_id, prev_from, prev_to)
        data.kpi_changes = compare_kpis(data.kpis, data.previous_kpis)
    logger.debug(
        "Analytics for organization %s %s..%s: %s reservations",
        org_id, date_from, date_to, len(reservations),
    )
    return data
