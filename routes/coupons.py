from datetime import datetime

from flask import Blueprint, jsonify, g

from errors import ValidationError
from models.user import ROLE_ADMIN
from security.rbac import require_roles
from services import get_services
from utils.auth_context import json_body, login_required

coupons_bp = Blueprint("coupons", __name__)


def _parse_dt(value, field):
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}. Use ISO e.g. 2026-01-20T00:00:00")


@coupons_bp.post("/coupons/validate")
@login_required
def validate_coupon():
    data = json_body()
    if not data.get("code") or data.get("total_amount") is None:
        return jsonify(error="Coupon code and total amount are required"), 400
    quote = get_services().coupons.validate(data["code"], data["total_amount"], g.actor.user_id)
    return jsonify(quote.to_dict()), 200


@coupons_bp.post("/admin/coupons")
@require_roles(ROLE_ADMIN)
def create_coupon():
    data = json_body()
    coupon = get_services().coupons.create(
        g.actor,
        code=data.get("code"),
        name=data.get("name"),
        description=data.get("description"),
        discount_type=data.get("discount_type"),
        discount_value=data.get("discount_value"),
        min_booking_amount=data.get("min_booking_amount"),
        max_discount_amount=data.get("max_discount_amount"),
        usage_limit=data.get("usage_limit"),
        user_usage_limit=data.get("user_usage_limit"),
        valid_from=_parse_dt(data.get("valid_from"), "valid_from"),
        valid_until=_parse_dt(data.get("valid_until"), "valid_until"),
        is_active=bool(data.get("is_active", True)),
    )
    return jsonify(id=coupon.id, code=coupon.code), 201
