"""Room and reservation routes for the front desk."""

from flask import Blueprint, jsonify, request

from extensions import db
from models import VALID_RESERVATION_STATUSES, Reservation, Room
from services.audit import log_action
from services.auth import login_required, role_required
from services.organization import org_query, require_organization, stamp_organization
from services.reservations import (
    ReservationError,
    assign_room,
    check_in,
    record_payment_transaction,
)
from services.usage import can_add_resource, sync_resource_usage
from utils import parse_date, safe_int

reservations_bp = Blueprint("reservations", __name__, url_prefix="/api")


def _serialize_room(room):
    return {
        "id": room.id,
        "number": room.number,
        "room_type": room.room_type,
        "floor": room.floor,
        "status": room.status,
        "is_active": bool(room.is_active),
    }


def _serialize_reservation(r):
    return {
        "id": r.id,
        "reference": r.reference,
        "guest_id": r.guest_id,
        "guest_name": r.guest.full_name if r.guest else None,
        "room_id": r.room_id,
        "room_number": r.room.number if r.room else None,
        "date_arrival": r.date_arrival.isoformat(),
        "date_departure": r.date_departure.isoformat() if r.date_departure else None,
        "rate_total": float(r.rate_total or 0),
        "status": r.status,
        "source": r.source or "walk_in",
        "checked_in_at": r.checked_in_at.isoformat() if r.checked_in_at else None,
    }


def _error(e: ReservationError):
    status = 404 if "not found" in str(e).lower() else 409
    return jsonify({"error": str(e)}), status


@reservations_bp.route("/rooms")
@login_required
def rooms():
    rows = org_query(Room).order_by(Room.number).all()
    return jsonify([_serialize_room(r) for r in rows])


@reservations_bp.route("/rooms", methods=["POST"])
@role_required("manage_rooms")
def create_room():
    org_id = require_organization()
    data = request.get_json(silent=True) or {}
    number = str(data.get("number") or "").strip()
    if not number:
        return jsonify({"error": "Room number is required."}), 400
    if org_query(Room).filter_by(number=number).first():
        return jsonify({"error": f"Room {number} already exists."}), 409
    if not can_add_resource(org_id, "rooms"):
        return jsonify({"error": "Room limit of your plan reached."}), 402

    room = stamp_organization(Room(
        number=number,
        room_type=data.get("room_type"),
        floor=str(data["floor"]) if data.get("floor") is not None else None,
    ))
    db.session.add(room)
    db.session.flush()
    sync_resource_usage(org_id)
    log_action("create", "room", room.id, number, org_id=org_id)
    db.session.commit()
    return jsonify(_serialize_room(room)), 201


@reservations_bp.route("/reservations")
@login_required
def reservations():
    query = org_query(Reservation)
    status = request.args.get("status")
    if status:
        if status not in VALID_RESERVATION_STATUSES:
            return jsonify({"error": f"Unknown status: {status}"}), 400
        query = query.filter(Reservation.status == status)
    date_from = parse_date(request.args.get("from"))
    date_to = parse_date(request.args.get("to"))
    if date_from:
        query = query.filter(
            db.func.coalesce(Reservation.date_departure, Reservation.date_arrival) >= date_from
        )
    if date_to:
        query = query.filter(Reservation.date_arrival <= date_to)
    rows = query.order_by(Reservation.date_arrival, Reservation.id).all()
    return jsonify([_serialize_reservation(r) for r in rows])


@reservations_bp.route("/reservations/<int:reservation_id>/assign-room", methods=["POST"])
@role_required("manage_reservations")
def reservation_assign_room(reservation_id):
    org_id = require_organization()
    data = request.get_json(silent=True) or {}
    room_id = safe_int(data.get("room_id"))
    if not room_id:
        return jsonify({"error": "room_id is required."}), 400
    try:
        reservation = assign_room(org_id, reservation_id, room_id)
    except ReservationError as e:
        return _error(e)
    return jsonify(_serialize_reservation(reservation))


@reservations_bp.route("/reservations/<int:reservation_id>/check-in", methods=["POST"])
@role_required("manage_reservations")
def reservation_check_in(reservation_id):
    org_id = require_organization()
    try:
        reservation = check_in(org_id, reservation_id)
    except ReservationError as e:
        return _error(e)
    return jsonify(_serialize_reservation(reservation))


@reservations_bp.route("/reservations/<int:reservation_id>/payments", methods=["POST"])
@role_required("manage_reservations")
def reservation_payment(reservation_id):
    org_id = require_organization()
    data = request.get_json(silent=True) or {}
    try:
        payment = record_payment_transaction(
            org_id, reservation_id, data.get("amount"), data.get("method", "cash")
        )
    except ReservationError as e:
        return _error(e)
    return jsonify({
        "id": payment.id,
        "reservation_id": payment.reservation_id,
        "amount": float(payment.amount),
        "method": payment.method,
    }), 201
