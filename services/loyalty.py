"""Loyalty points ledger: award, redeem, tiers and customer summaries."""

from __future__ import annotations

import logging
import math
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    REVENUE_STATUSES,
    Guest,
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyTier,
    LoyaltyTransaction,
)
from services.audit import log_action
from utils import utc_now

logger = logging.getLogger(__name__)

# Points multiplier per spend-based status
STATUS_MULTIPLIERS = {
    "bronze": 1.0,
    "silver": 1.2,
    "gold": 1.5,
    "platinum": 2.0,
}


class LoyaltyError(Exception):
    """Raised when a loyalty operation cannot be performed."""


class InsufficientPointsError(LoyaltyError):
    """Raised when a redemption exceeds the available balance."""

    def __init__(self, balance: int, requested: int):
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient points balance: {balance} available, {requested} requested"
        )


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def loyalty_status_for_spend(total_spent, config=None) -> str:
    """Spend-based status: bronze, silver, gold or platinum."""
    config = config or current_app.config["LOYALTY_CONFIG"]
    total_spent = float(total_spent or 0)
    if total_spent >= config.platinum_threshold:
        return "platinum"
    if total_spent >= config.gold_threshold:
        return "gold"
    if total_spent >= config.silver_threshold:
        return "silver"
    return "bronze"


def calculate_points_for_purchase(amount, program: Optional[LoyaltyProgram] = None,
                                  status: str = "bronze") -> int:
    """Points earned for spending *amount*.

    Default rule is one point per full currency unit (1000) spent, scaled by
    the status multiplier.
    """
    if program is not None:
        unit = program.currency_unit or current_app.config["LOYALTY_CONFIG"].currency_unit
        per_unit = program.points_per_currency_unit or 1
    else:
        unit = current_app.config["LOYALTY_CONFIG"].currency_unit
        per_unit = 1
    if not amount or float(amount) <= 0:
        return 0
    base = float(amount) / unit * per_unit
    return math.floor(base * STATUS_MULTIPLIERS.get(status, 1.0))


def _check_points(points) -> int:
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise ValueError("Points must be a positive integer.")
    return points


# ---------------------------------------------------------------------------
# Programs & accounts
# ---------------------------------------------------------------------------

def get_active_program(org_id: int) -> Optional[LoyaltyProgram]:
    return (
        LoyaltyProgram.query.filter_by(org_id=org_id, is_active=True)
        .order_by(LoyaltyProgram.id)
        .first()
    )


def _require_program(org_id: int) -> LoyaltyProgram:
    program = get_active_program(org_id)
    if not program:
        raise LoyaltyError("No active loyalty program.")
    return program


def _require_guest(org_id: int, guest_id: int) -> Guest:
    guest = db.session.get(Guest, guest_id)
    if not guest or guest.org_id != org_id:
        raise LoyaltyError("Customer not found.")
    return guest


def _get_account(org_id: int, guest_id: int, program: LoyaltyProgram,
                 for_update: bool = False) -> Optional[LoyaltyAccount]:
    query = LoyaltyAccount.query.filter_by(
        org_id=org_id, guest_id=guest_id, program_id=program.id
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def _get_or_create_account(org_id: int, guest_id: int, program: LoyaltyProgram) -> LoyaltyAccount:
    account = _get_account(org_id, guest_id, program, for_update=True)
    if account:
        return account
    account = LoyaltyAccount(
        org_id=org_id, guest_id=guest_id, program_id=program.id, total_points=0
    )
    try:
        with db.session.begin_nested():
            db.session.add(account)
    except IntegrityError:
        # Opened concurrently by another award or enrollment
        logger.debug("Loyalty account for guest %s created concurrently", guest_id)
        account = _get_account(org_id, guest_id, program, for_update=True)
    return account


def get_balance(org_id: int, guest_id: int) -> int:
    """Current points balance of a guest in the active program (0 if none)."""
    program = get_active_program(org_id)
    if not program:
        return 0
    account = _get_account(org_id, guest_id, program)
    return account.total_points if account else 0


def update_tier(account: LoyaltyAccount) -> Optional[LoyaltyTier]:
    """Move *account* to the highest tier whose threshold its balance meets."""
    tier = (
        LoyaltyTier.query.filter(
            LoyaltyTier.program_id == account.program_id,
            LoyaltyTier.min_points <= account.total_points,
        )
        .order_by(LoyaltyTier.min_points.desc())
        .first()
    )
    new_tier_id = tier.id if tier else None
    if new_tier_id != account.tier_id:
        account.tier_id = new_tier_id
        account.tier_achieved_at = utc_now()
        logger.info(
            "Guest %s moved to tier %s", account.guest_id, tier.code if tier else None
        )
    return tier


# ---------------------------------------------------------------------------
# Ledger operations
# ---------------------------------------------------------------------------

def award_points(
    org_id: int,
    guest_id: int,
    points: int,
    reason: str,
    *,
    transaction_type: str = "earned",
    reference: Optional[str] = None,
    reservation_id: Optional[int] = None,
    user_id: Optional[int] = None,
) -> LoyaltyTransaction:
    """Add *points* to a guest's balance and append a ledger entry."""
    _check_points(points)
    if transaction_type not in ("earned", "bonus"):
        raise ValueError(f"Invalid award type: {transaction_type!r}")
    _require_guest(org_id, guest_id)
    program = _require_program(org_id)
    account = _get_or_create_account(org_id, guest_id, program)

    LoyaltyAccount.query.filter_by(id=account.id).update(
        {
            LoyaltyAccount.total_points: LoyaltyAccount.total_points + points,
            LoyaltyAccount.last_activity_at: utc_now(),
        },
        synchronize_session=False,
    )
    db.session.refresh(account)
    update_tier(account)

    entry = LoyaltyTransaction(
        org_id=org_id,
        guest_id=guest_id,
        program_id=program.id,
        points=points,
        transaction_type=transaction_type,
        description=reason,
        reference=reference,
        reservation_id=reservation_id,
        created_by_id=user_id,
    )
    db.session.add(entry)
    db.session.flush()
    log_action("award_points", "guest", guest_id, f"+{points}: {reason}",
               org_id=org_id, user_id=user_id)
    db.session.commit()
    logger.info("Awarded %s points to guest %s (balance %s)", points, guest_id, account.total_points)
    return entry


def redeem_points(
    org_id: int,
    guest_id: int,
    points: int,
    reason: str,
    *,
    reference: Optional[str] = None,
    user_id: Optional[int] = None,
) -> LoyaltyTransaction:
    """Subtract *points* from a guest's balance and append a ledger entry.

    Raises ``InsufficientPointsError`` and leaves the balance untouched when
    the balance is too low.
    """
    _check_points(points)
    _require_guest(org_id, guest_id)
    program = _require_program(org_id)
    account = _get_account(org_id, guest_id, program, for_update=True)
    balance = account.total_points if account else 0
    if points > balance:
        db.session.rollback()
        raise InsufficientPointsError(balance, points)

    # The guarded update is authoritative if the balance moved since the read.
    updated = LoyaltyAccount.query.filter(
        LoyaltyAccount.id == account.id,
        LoyaltyAccount.total_points >= points,
    ).update(
        {
            LoyaltyAccount.total_points: LoyaltyAccount.total_points - points,
            LoyaltyAccount.last_activity_at: utc_now(),
        },
        synchronize_session=False,
    )
    if not updated:
        db.session.rollback()
        raise InsufficientPointsError(get_balance(org_id, guest_id), points)
    db.session.refresh(account)
    update_tier(account)

    entry = LoyaltyTransaction(
        org_id=org_id,
        guest_id=guest_id,
        program_id=program.id,
        points=-points,
        transaction_type="redeemed",
        description=reason,
        reference=reference,
        created_by_id=user_id,
    )
    db.session.add(entry)
    db.session.flush()
    log_action("redeem_points", "guest", guest_id, f"-{points}: {reason}",
               org_id=org_id, user_id=user_id)
    db.session.commit()
    logger.info("Redeemed %s points for guest %s (balance %s)", points, guest_id, account.total_points)
    return entry


def get_transactions(org_id: int, guest_id: int, limit: int = 100) -> list[LoyaltyTransaction]:
    return (
        LoyaltyTransaction.query.filter_by(org_id=org_id, guest_id=guest_id)
        .order_by(LoyaltyTransaction.created_at.desc(), LoyaltyTransaction.id.desc())
        .limit(limit)
        .all()
    )


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

def enroll_guest(org_id: int, *, first_name: str, last_name: str = "",
                 email: str = "", phone: str = "", date_of_birth=None) -> Guest:
    """Create a guest and open an empty loyalty account when a program exists."""
    guest = Guest(
        org_id=org_id,
        first_name=first_name,
        last_name=last_name or None,
        email=email or None,
        phone=phone or None,
        date_of_birth=date_of_birth,
    )
    db.session.add(guest)
    db.session.flush()
    program = get_active_program(org_id)
    if program:
        _get_or_create_account(org_id, guest.id, program)
    log_action("enroll", "guest", guest.id, guest.full_name, org_id=org_id)
    db.session.commit()
    logger.info("Enrolled guest %s in organization %s", guest.id, org_id)
    return guest


def customer_summary(guest: Guest, program: Optional[LoyaltyProgram]) -> dict:
    stays = [r for r in guest.reservations if r.status in REVENUE_STATUSES]
    total_spent = sum(float(r.rate_total or 0) for r in stays)
    visit_count = len(stays)
    account = None
    if program:
        account = next((a for a in guest.loyalty_accounts if a.program_id == program.id), None)
    return {
        "id": guest.id,
        "first_name": guest.first_name or "",
        "last_name": guest.last_name or "",
        "email": guest.email or "",
        "phone": guest.phone or "",
        "total_points": account.total_points if account else 0,
        "tier": account.tier.code if account and account.tier else None,
        "member_since": guest.created_at.isoformat() if guest.created_at else None,
        "total_spent": total_spent,
        "visit_count": visit_count,
        "average_spend": total_spent / visit_count if visit_count else 0.0,
        "loyalty_status": loyalty_status_for_spend(total_spent),
    }


def points_for_spend(org_id: int, guest_id: int, amount, nights: int = 0) -> int:
    """Points a guest earns for spending *amount* over *nights* nights.

    The purchase rule uses the guest's spend-based status; the program's
    per-night bonus is added on top.
    """
    amount = float(amount)
    if nights < 0:
        raise ValueError("Nights cannot be negative.")
    guest = _require_guest(org_id, guest_id)
    program = _require_program(org_id)
    status = customer_summary(guest, program)["loyalty_status"]
    points = calculate_points_for_purchase(amount, program, status)
    return points + nights * (program.points_per_night or 0)


def list_customers(org_id: int, search: str = "") -> list[dict]:
    """Active guests with their loyalty balance and spend statistics."""
    query = Guest.query.filter_by(org_id=org_id, is_active=True)
    if search:
        like = f"%{search.lower()}%"
        query = query.filter(db.or_(
            db.func.lower(Guest.first_name).like(like),
            db.func.lower(Guest.last_name).like(like),
            db.func.lower(Guest.email).like(like),
            Guest.phone.like(f"%{search}%"),
        ))
    program = get_active_program(org_id)
    guests = query.order_by(Guest.created_at.desc(), Guest.id.desc()).all()
    return [customer_summary(g, program) for g in guests]


DEFAULT_TIERS = (
    ("bronze", "Bronze", 0),
    ("silver", "Silver", 500),
    ("gold", "Gold", 2000),
    ("platinum", "Platinum", 5000),
)


def create_default_program(org_id: int, name: str = "Guest Rewards") -> LoyaltyProgram:
    """Create the standard four-tier program for an organization (not committed)."""
    program = LoyaltyProgram(
        org_id=org_id,
        name=name,
        currency_unit=current_app.config["LOYALTY_CONFIG"].currency_unit,
        points_per_currency_unit=1,
    )
    for sort_order, (code, tier_name, min_points) in enumerate(DEFAULT_TIERS, start=1):
        program.tiers.append(LoyaltyTier(
            code=code, name=tier_name, min_points=min_points, sort_order=sort_order
        ))
    db.session.add(program)
    db.session.flush()
    logger.info("Created loyalty program for organization %s", org_id)
    return program
