"""Organization context and data isolation services."""

from __future__ import annotations

from typing import Optional

from flask import abort, g
from sqlalchemy import event

from extensions import db
from models import (
    Guest,
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyTier,
    LoyaltyTransaction,
    PaymentTransaction,
    Reservation,
    Room,
    SubscriptionPayment,
    UsageMetric,
)

# Models whose rows belong to exactly one organization
ORG_SCOPED_MODELS = (
    Room,
    Guest,
    Reservation,
    PaymentTransaction,
    LoyaltyProgram,
    LoyaltyAccount,
    LoyaltyTransaction,
    UsageMetric,
    SubscriptionPayment,
)

# Foreign keys of scoped rows that must point into the same organization
_PARENT_KEYS = (
    ("guest_id", Guest),
    ("room_id", Room),
    ("reservation_id", Reservation),
    ("program_id", LoyaltyProgram),
)


class OrganizationSecurityError(Exception):
    """Raised when a cross-organization write is attempted."""


def get_current_organization():
    """Return the active Organization object from ``g``, or None."""
    return getattr(g, "current_org", None)


def get_current_org_id() -> Optional[int]:
    """Return the active org_id from ``g``, or None."""
    org = get_current_organization()
    return org.id if org else None


def require_organization() -> int:
    """Return the current org_id or abort with 403."""
    org_id = get_current_org_id()
    if org_id is None:
        abort(403, description="No organization selected.")
    return org_id


def org_query(model):
    """Return a query on an organization-scoped *model* for the current organization.

    Usage::

        rooms = org_query(Room).filter_by(is_active=True).all()
    """
    if model not in ORG_SCOPED_MODELS:
        raise TypeError(f"{model.__name__} is not scoped to an organization")
    org_id = require_organization()
    return model.query.filter_by(org_id=org_id)


def stamp_organization(obj):
    """Set ``org_id`` on *obj* to the current organization.

    Call before ``db.session.add()``.  Returns *obj* for chaining.
    """
    if isinstance(obj, ORG_SCOPED_MODELS):
        obj.org_id = require_organization()
    return obj


def flushed_instance(session, model, pk):
    """Return the *model* row with primary key *pk* from inside a flush.

    Rows inserted by the running flush are not in the identity map yet, so
    ``session.new`` is searched before falling back to ``session.get``.
    """
    if pk is None:
        return None
    for obj in session.new:
        if isinstance(obj, model) and obj.id == pk:
            return obj
    return session.get(model, pk)


def _owning_org_ids(session, obj):
    """Yield (label, org_id) for *obj* and the rows it references."""
    if isinstance(obj, LoyaltyTier):
        program = obj.program or flushed_instance(session, LoyaltyProgram, obj.program_id)
        if program is not None:
            yield "LoyaltyProgram", program.org_id
        return
    yield type(obj).__name__, obj.org_id
    for key, parent_model in _PARENT_KEYS:
        parent = flushed_instance(session, parent_model, getattr(obj, key, None))
        if parent is not None:
            yield parent_model.__name__, parent.org_id


def _enforce_org_on_flush(session, flush_context):
    """Verify that new/dirty rows and the rows they reference match the active organization.

    Primary isolation is ``org_query()`` and ``stamp_organization()``; this
    catches writes that bypass them, such as a loyalty entry for another
    organization's guest or a reservation in another organization's room.
    """
    try:
        active_org_id = getattr(g, "_org_id", None)
    except RuntimeError:
        # Outside app context (CLI, scripts)
        return

    if active_org_id is None:
        return

    for obj in list(session.new) + list(session.dirty):
        if not isinstance(obj, ORG_SCOPED_MODELS + (LoyaltyTier,)):
            continue
        for label, obj_org_id in _owning_org_ids(session, obj):
            if obj_org_id is not None and obj_org_id != active_org_id:
                raise OrganizationSecurityError(
                    f"Cross-organization write blocked: {type(obj).__name__} "
                    f"references {label} of organization {obj_org_id}, "
                    f"active organization is {active_org_id}"
                )


def register_organization_guards(app):
    """Register the after_flush event listener.  Call once during app init."""
    if not event.contains(db.session, "after_flush", _enforce_org_on_flush):
        event.listen(db.session, "after_flush", _enforce_org_on_flush)
