from flask import Blueprint, request, jsonify, g

from models.user import ROLE_OWNER
from security.rbac import require_roles
from services import get_services
from utils.auth_context import json_body, login_required

booking_bp = Blueprint("booking", __name__)


def _iso(dt):
    return dt.isoformat() if dt else None


def _booking_json(b):
    payment = b.payment
    return {
        "id": b.id,
        "user_id": b.user_id,
        "facility_id": b.facility_id,
        "court_id": b.court_id,
        "time_slot_id": b.time_slot_id,
        "status": b.status,
        "version": b.version,
        "booking_date": b.booking_date.isoformat(),
        "start_time": b.start_time,
        "end_time": b.end_time,
        "total_hours": str(b.total_hours),
        "price_per_hour": str(b.price_per_hour),
        "total_amount": str(b.total_amount),
        "platform_fee": str(b.platform_fee),
        "tax": str(b.tax),
        "discount": str(b.discount),
        "modification_fee": str(b.modification_fee),
        "final_amount": str(b.final_amount),
        "special_requests": b.special_requests,
        "created_at": _iso(b.created_at),
        "confirmed_at": _iso(b.confirmed_at),
        "cancelled_at": _iso(b.cancelled_at),
        "completed_at": _iso(b.completed_at),
        "no_show_at": _iso(b.no_show_at),
        "cancellation_reason": b.cancellation_reason,
        "payment": {
            "status": payment.status,
            "total_amount": str(payment.total_amount),
            "paid_at": _iso(payment.paid_at),
            "failure_reason": payment.failure_reason,
        } if payment else None,
    }


# ---------- PLAYERS: book a slot ----------
@booking_bp.post("/bookings")
@login_required
def create_booking():
    data = json_body()
    booking = get_services().bookings.create(
        g.actor,
        court_id=data.get("court_id"),
        day=data.get("date"),
        start_time=data.get("start_time"),
        end_time=data.get("end_time"),
        coupon_code=data.get("coupon_code"),
        special_requests=data.get("special_requests"),
    )
    return jsonify(_booking_json(booking)), 201


# ---------- PLAYERS: view my bookings ----------
@booking_bp.get("/bookings/me")
@login_required
def my_bookings():
    rows = get_services().bookings.list_for_user(g.actor, status=request.args.get("status"))
    return jsonify([_booking_json(b) for b in rows]), 200


@booking_bp.get("/bookings/<int:booking_id>")
@login_required
def get_booking(booking_id: int):
    booking = get_services().bookings.get(g.actor, booking_id)
    return jsonify(_booking_json(booking)), 200


# ---------- PLAYERS: cancel booking (24h policy window) ----------
@booking_bp.post("/bookings/<int:booking_id>/cancel")
@login_required
def cancel_booking(booking_id: int):
    data = json_body()
    booking = get_services().bookings.cancel(
        g.actor,
        booking_id,
        reason=data.get("reason"),
        expected_version=data.get("version"),
    )
    return jsonify(message="Booking cancelled successfully", booking=_booking_json(booking)), 200


# ---------- PLAYERS: reschedule ----------
@booking_bp.post("/bookings/<int:booking_id>/modification-fee")
@login_required
def modification_fee(booking_id: int):
    data = json_body()
    quote = get_services().bookings.quote_modification(
        g.actor, booking_id, data.get("new_date"), data.get("new_time")
    )
    return jsonify(quote), 200


@booking_bp.post("/bookings/<int:booking_id>/modify")
@login_required
def modify_booking(booking_id: int):
    data = json_body()
    booking = get_services().bookings.modify(
        g.actor,
        booking_id,
        new_date=data.get("new_date"),
        new_time=data.get("new_time"),
        expected_version=data.get("version"),
    )
    return jsonify(message="Booking modified successfully", booking=_booking_json(booking)), 200


@booking_bp.post("/bookings/<int:booking_id>/review")
@login_required
def review_booking(booking_id: int):
    data = json_body()
    review = get_services().bookings.review(
        g.actor, booking_id, rating=data.get("rating"), comment=data.get("comment")
    )
    return jsonify(
        id=review.id,
        booking_id=review.booking_id,
        rating=review.rating,
        comment=review.comment,
        created_at=_iso(review.created_at),
    ), 201


# ---------- OWNERS: bookings at my facilities ----------
@booking_bp.get("/owner/bookings")
@require_roles(ROLE_OWNER)
def owner_bookings():
    rows = get_services().bookings.list_for_owner(
        g.actor,
        status=request.args.get("status"),
        day=request.args.get("date"),
    )
    return jsonify([_booking_json(b) for b in rows]), 200


@booking_bp.patch("/owner/bookings/<int:booking_id>/status")
@require_roles(ROLE_OWNER)
def owner_update_status(booking_id: int):
    data = json_body()
    booking = get_services().bookings.owner_transition(
        g.actor,
        booking_id,
        data.get("status"),
        expected_version=data.get("version"),
        reason=data.get("reason"),
    )
    return jsonify(booking=_booking_json(booking)), 200


# ---------- account deletion ----------
@booking_bp.delete("/users/<int:user_id>")
@login_required
def delete_account(user_id: int):
    result = get_services().bookings.delete_account(g.actor, user_id)
    return jsonify(message="Account deleted", **result), 200
