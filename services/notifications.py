"""In-process push notifications for reservation and payment events.

Events are collected from the session at flush time and only handed to the
``NotificationCenter`` once the transaction commits. Rolling back a savepoint
drops the events flushed inside it; rolling back the transaction drops all.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from flask import current_app, has_app_context
from sqlalchemy import event, inspect

from extensions import db
from models import Guest, PaymentTransaction, Reservation, Room
from services.organization import flushed_instance
from utils import utc_now

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("reservation", "checkin", "payment")

_PENDING_KEY = "pending_notifications"


@dataclass
class Notification:
    org_id: int
    type: str
    title: str
    message: str
    priority: str = "medium"
    data: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: utc_now().isoformat())
    read: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class NotificationCenter:
    """Keeps the most recent notifications of each organization in memory."""

    def __init__(self, max_items: int = 100, enabled_types=None):
        self.max_items = max_items
        self.enabled_types = set(NOTIFICATION_TYPES if enabled_types is None else enabled_types)
        self._items: dict[int, deque] = {}
        self._subscribers: list[Callable[[Notification], None]] = []
        self._lock = threading.Lock()

    def _queue(self, org_id: int) -> deque:
        return self._items.setdefault(org_id, deque(maxlen=self.max_items))

    def add(self, notification: Notification) -> Notification:
        with self._lock:
            self._queue(notification.org_id).appendleft(notification)
            subscribers = list(self._subscribers)
        if notification.type not in self.enabled_types:
            return notification
        for callback in subscribers:
            try:
                callback(notification)
            except Exception:
                logger.exception("Notification subscriber failed")
        return notification

    def list(self, org_id: int, unread_only: bool = False) -> list[Notification]:
        with self._lock:
            items = list(self._items.get(org_id, ()))
        if unread_only:
            items = [n for n in items if not n.read]
        return items

    def unread_count(self, org_id: int) -> int:
        return len(self.list(org_id, unread_only=True))

    def mark_as_read(self, org_id: int, notification_id: str) -> bool:
        with self._lock:
            for item in self._items.get(org_id, ()):
                if item.id == notification_id:
                    item.read = True
                    return True
        return False

    def mark_all_as_read(self, org_id: int) -> int:
        changed = 0
        with self._lock:
            for item in self._items.get(org_id, ()):
                if not item.read:
                    item.read = True
                    changed += 1
        return changed

    def clear_all(self, org_id: int) -> None:
        with self._lock:
            self._items.pop(org_id, None)

    def subscribe(self, callback: Callable[[Notification], None]) -> Callable[[], None]:
        """Register *callback* for new notifications; returns the unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe


# ---------------------------------------------------------------------------
# Event builders
# ---------------------------------------------------------------------------

def _guest_name(reservation: Reservation) -> str:
    guest = reservation.guest
    if guest is None:
        # Relationships of rows pending in the current flush are not loaded
        guest = flushed_instance(db.session, Guest, reservation.guest_id)
    return guest.full_name if guest else "Guest"


def reservation_created(reservation: Reservation) -> Notification:
    return Notification(
        org_id=reservation.org_id,
        type="reservation",
        title="New reservation",
        message=f"{_guest_name(reservation)} - arrival {reservation.date_arrival}",
        priority="medium",
        data={"reservation_id": reservation.id, "reference": reservation.reference},
    )


def guest_checked_in(reservation: Reservation) -> Notification:
    room = reservation.room or flushed_instance(db.session, Room, reservation.room_id)
    return Notification(
        org_id=reservation.org_id,
        type="checkin",
        title="Guest checked in",
        message=f"{_guest_name(reservation)} - room {room.number if room else '?'}",
        priority="medium",
        data={"reservation_id": reservation.id, "room_id": reservation.room_id},
    )


def payment_received(payment: PaymentTransaction) -> Notification:
    return Notification(
        org_id=payment.org_id,
        type="payment",
        title="Payment received",
        message=f"{payment.amount} ({payment.method})",
        priority="low",
        data={"payment_id": payment.id, "reservation_id": payment.reservation_id},
    )


def _status_changed_to(obj, status: str) -> bool:
    history = inspect(obj).attrs.status.history
    return bool(history.added) and history.added[0] == status and status not in (history.deleted or ())


# ---------------------------------------------------------------------------
# Session listeners
# ---------------------------------------------------------------------------

def _collect_on_flush(session, flush_context):
    # Tag each event with the innermost savepoint it was flushed in
    savepoint = session.get_nested_transaction()
    pending = session.info.setdefault(_PENDING_KEY, [])
    for obj in session.new:
        if isinstance(obj, Reservation):
            pending.append((savepoint, reservation_created(obj)))
        elif isinstance(obj, PaymentTransaction):
            pending.append((savepoint, payment_received(obj)))
    for obj in session.dirty:
        if isinstance(obj, Reservation) and _status_changed_to(obj, "present"):
            pending.append((savepoint, guest_checked_in(obj)))


def _deliver_on_commit(session):
    if session.get_nested_transaction() is not None:
        # Savepoint released; the enclosing transaction can still roll back
        return
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending or not has_app_context():
        return
    center = current_app.extensions.get("notification_center")
    if center is None:
        return
    for _, notification in pending:
        center.add(notification)
    logger.debug("Delivered %s notifications", len(pending))


def _flushed_within(savepoint, transaction) -> bool:
    while savepoint is not None:
        if savepoint is transaction:
            return True
        savepoint = savepoint.parent
    return False


def _discard_on_rollback(session, previous_transaction):
    if previous_transaction.nested:
        pending = session.info.get(_PENDING_KEY)
        if pending:
            pending[:] = [
                item for item in pending
                if not _flushed_within(item[0], previous_transaction)
            ]
    elif previous_transaction.parent is None:
        session.info.pop(_PENDING_KEY, None)


_LISTENERS = (
    ("after_flush", _collect_on_flush),
    ("after_commit", _deliver_on_commit),
    ("after_soft_rollback", _discard_on_rollback),
)


def register_notification_listeners(app, center: Optional[NotificationCenter] = None) -> NotificationCenter:
    """Attach a ``NotificationCenter`` to *app* and hook the session events."""
    if center is None:
        cfg = app.config["NOTIFICATION_CONFIG"]
        center = NotificationCenter(cfg.max_items, cfg.enabled_types)
    app.extensions["notification_center"] = center
    for name, fn in _LISTENERS:
        if not event.contains(db.session, name, fn):
            event.listen(db.session, name, fn)
    return center


def get_notification_center() -> NotificationCenter:
    return current_app.extensions["notification_center"]
