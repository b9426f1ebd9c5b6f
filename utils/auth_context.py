from dataclasses import dataclass
from functools import wraps
from flask import current_app, g, jsonify, request

from errors import ValidationError
from models.user import ROLE_ADMIN, ROLE_OWNER, ROLE_USER, ROLES


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as supplied by the upstream identity provider."""
    user_id: int
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_owner(self) -> bool:
        return self.role == ROLE_OWNER


def load_current_actor():
    user_header = current_app.config.get("IDENTITY_USER_HEADER", "X-User-Id")
    role_header = current_app.config.get("IDENTITY_ROLE_HEADER", "X-User-Role")

    raw_id = request.headers.get(user_header)
    if not raw_id:
        g.actor = None
        return
    try:
        user_id = int(raw_id)
    except ValueError:
        g.actor = None
        return

    role = (request.headers.get(role_header) or ROLE_USER).strip().lower()
    if role not in ROLES:
        role = ROLE_USER
    g.actor = Actor(user_id=user_id, role=role)

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "actor", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data
