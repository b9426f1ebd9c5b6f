from functools import wraps
from flask import g, jsonify

from errors import ForbiddenError
from models.user import ROLE_ADMIN

def require_roles(*role_names: str):
    """
    Usage: @require_roles("facility_owner")
    Admins pass every role check.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            actor = getattr(g, "actor", None)
            if actor is None:
                return jsonify(error="Authentication required"), 401

            if actor.role != ROLE_ADMIN and actor.role not in role_names:
                return jsonify(error="Forbidden"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator


def ensure_facility_owner(actor, facility):
    """Raises ForbiddenError unless actor owns the facility (admins always pass)."""
    if actor.is_admin:
        return
    if facility is None or facility.owner_user_id != actor.user_id:
        raise ForbiddenError("You do not manage this facility")
