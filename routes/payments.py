from flask import Blueprint, jsonify, g

from services import get_services
from utils.auth_context import login_required

payments_bp = Blueprint("payments", __name__)


@payments_bp.post("/bookings/<int:booking_id>/checkout")
@login_required
def start_checkout(booking_id: int):
    result = get_services().checkout.start(g.actor, booking_id)
    return jsonify(result), 200
