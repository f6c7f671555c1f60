"""Authentication and authorization services."""

from __future__ import annotations

import logging
import secrets
from functools import wraps
from typing import Optional

from flask import g, jsonify, session
from werkzeug.security import check_password_hash, generate_password_hash

from extensions import db
from models import ROLE_PERMISSIONS, Organization, User, UserOrganization

logger = logging.getLogger(__name__)


def get_current_user() -> Optional[User]:
    """Return the currently logged-in user from ``flask.g``."""
    return getattr(g, "current_user", None)


def authenticate(username: str, password: str) -> Optional[User]:
    """Return the active user matching the credentials, or None."""
    user = User.query.filter_by(username=username).first()
    if user and user.is_active and check_password_hash(user.password_hash, password):
        return user
    return None


def effective_permissions(user: User, org_id: Optional[int]) -> set[str]:
    """Permissions of *user* in *org_id*, honouring ``role_override``."""
    role = user.role
    if org_id:
        membership = UserOrganization.query.filter_by(
            user_id=user.id, org_id=org_id
        ).first()
        if membership and membership.role_override:
            role = membership.role_override
    permissions = set(ROLE_PERMISSIONS.get(role, set()))
    if user.is_superadmin:
        permissions.add("manage_all")
    return permissions


def login_required(f):
    """Decorator that answers 401 if the user is not authenticated."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not get_current_user():
            return jsonify({"error": "Authentication required."}), 401
        return f(*args, **kwargs)

    return decorated


def role_required(permission: str):
    """Decorator that checks user has *permission* (or ``manage_all``)."""

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            user = get_current_user()
            if not user:
                return jsonify({"error": "Authentication required."}), 401
            permissions = effective_permissions(user, session.get("active_org_id"))
            if permission not in permissions and "manage_all" not in permissions:
                return jsonify({"error": "Permission denied."}), 403
            return f(*args, **kwargs)

        return decorated

    return decorator


def ensure_admin_user():
    """Create a default admin user if the users table is empty.

    The admin is linked to the default organization and made superadmin.
    """
    if User.query.count() == 0:
        password = secrets.token_urlsafe(12)
        admin = User(
            username="admin",
            password_hash=generate_password_hash(password),
            role="admin",
            is_superadmin=True,
        )
        db.session.add(admin)
        db.session.flush()

        default_org = Organization.query.filter_by(slug="default").first()
        if default_org:
            db.session.add(UserOrganization(
                user_id=admin.id,
                org_id=default_org.id,
                is_default=True,
            ))

        db.session.commit()
        # Print to stdout only, never log credentials to persistent log files
        print(
            f"Created default admin user. Initial password: {password} "
            "(change immediately after first login)"
        )
