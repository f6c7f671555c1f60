"""Front-desk operations on reservations: room assignment, check-in, payments."""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from extensions import db
from models import (
    CLOSED_STATUSES,
    OCCUPYING_STATUSES,
    PaymentTransaction,
    Reservation,
    Room,
)
from services.audit import log_action
from services.usage import track_usage
from utils import utc_now

logger = logging.getLogger(__name__)

CHECKIN_ALLOWED_STATUSES = ("option", "confirmed")
RESERVATION_PAYMENT_METHODS = {"cash", "card", "mobile_money", "bank_transfer"}


class ReservationError(Exception):
    """Raised when a reservation operation violates a front-desk rule."""


def _get_reservation(org_id: int, reservation_id: int) -> Reservation:
    reservation = db.session.get(Reservation, reservation_id)
    if not reservation or reservation.org_id != org_id:
        raise ReservationError("Reservation not found.")
    return reservation


def _stay_end(reservation: Reservation):
    """Exclusive end of the nights occupied; a same-day stay holds one night."""
    departure = reservation.date_departure
    if departure is None or departure <= reservation.date_arrival:
        return reservation.date_arrival + timedelta(days=1)
    return departure


def find_conflicts(room: Room, reservation: Reservation) -> list[Reservation]:
    """Active reservations on *room* whose nights overlap *reservation*."""
    candidates = Reservation.query.filter(
        Reservation.org_id == room.org_id,
        Reservation.room_id == room.id,
        Reservation.id != reservation.id,
        Reservation.status.in_(OCCUPYING_STATUSES),
        Reservation.date_arrival < _stay_end(reservation),
    ).all()
    return [r for r in candidates if _stay_end(r) > reservation.date_arrival]


def validate_room_assignment(org_id: int, reservation: Reservation,
                             room: Optional[Room]) -> tuple[bool, Optional[str]]:
    """Return ``(ok, reason)`` for putting *reservation* in *room*."""
    if room is None or room.org_id != org_id:
        return False, "Room not found."
    if reservation.org_id != org_id:
        return False, "Reservation not found."
    if not room.is_active:
        return False, "Room is out of service."
    if reservation.status in CLOSED_STATUSES:
        return False, f"Reservation is {reservation.status}."
    if find_conflicts(room, reservation):
        return False, f"Room {room.number} is already booked for these dates."
    return True, None


def assign_room(org_id: int, reservation_id: int, room_id: int) -> Reservation:
    reservation = _get_reservation(org_id, reservation_id)
    room = db.session.get(Room, room_id)
    ok, reason = validate_room_assignment(org_id, reservation, room)
    if not ok:
        raise ReservationError(reason)
    previous = reservation.room_id
    reservation.room_id = room.id
    log_action("assign_room", "reservation", reservation.id,
               f"room {previous} -> {room.id}", org_id=org_id)
    db.session.commit()
    logger.info("Reservation %s assigned to room %s", reservation.id, room.number)
    return reservation


def check_in(org_id: int, reservation_id: int) -> Reservation:
    """Mark the guest as present.  The reservation needs an assigned room."""
    reservation = _get_reservation(org_id, reservation_id)
    if reservation.status not in CHECKIN_ALLOWED_STATUSES:
        raise ReservationError(f"Cannot check in a reservation that is {reservation.status}.")
    if not reservation.room_id:
        raise ReservationError("Assign a room before check-in.")
    ok, reason = validate_room_assignment(org_id, reservation, reservation.room)
    if not ok:
        raise ReservationError(reason)
    reservation.status = "present"
    reservation.checked_in_at = utc_now()
    log_action("check_in", "reservation", reservation.id, "", org_id=org_id)
    db.session.commit()
    logger.info("Reservation %s checked in", reservation.id)
    return reservation


def record_payment_transaction(org_id: int, reservation_id: int, amount,
                               method: str = "cash") -> PaymentTransaction:
    """Store a guest payment and count it against the ``transactions`` quota."""
    reservation = _get_reservation(org_id, reservation_id)
    try:
        amount = Decimal(str(amount))
    except (InvalidOperation, TypeError):
        raise ReservationError("Invalid amount.")
    if not amount.is_finite() or amount <= 0:
        raise ReservationError("Amount must be positive.")
    if method not in RESERVATION_PAYMENT_METHODS:
        raise ReservationError(f"Unknown payment method: {method}")
    payment = PaymentTransaction(
        org_id=org_id,
        reservation_id=reservation.id,
        amount=amount,
        method=method,
    )
    db.session.add(payment)
    db.session.flush()
    track_usage(org_id, "transactions")
    log_action("payment", "reservation", reservation.id, f"{amount} ({method})", org_id=org_id)
    db.session.commit()
    logger.info("Payment of %s recorded on reservation %s", amount, reservation.id)
    return payment
