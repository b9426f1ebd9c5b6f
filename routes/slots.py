from flask import Blueprint, request, jsonify, g

from models.user import ROLE_OWNER
from security.rbac import require_roles
from services import get_services
from utils.auth_context import json_body, login_required
from utils.timeparse import parse_date

slots_bp = Blueprint("slots", __name__)


def _slot_json(s):
    return {
        "id": s.id,
        "court_id": s.court_id,
        "date": s.date.isoformat(),
        "start_time": s.start_time,
        "end_time": s.end_time,
        "price": str(s.price),
        "is_booked": s.is_booked,
        "is_blocked": s.is_blocked,
        "block_reason": s.block_reason,
    }


# ---------- OWNERS: generate slots from operating hours ----------
@slots_bp.post("/owner/time-slots/generate")
@require_roles(ROLE_OWNER)
def generate_slots():
    data = json_body()
    svc = get_services()
    owner_id = None if g.actor.is_admin else g.actor.user_id
    result = svc.slot_generator.generate(
        owner_id=owner_id,
        days=data.get("days", 30),
        facility_id=data.get("facility_id"),
    )
    return jsonify(message="Time slots generated successfully", **result.to_dict()), 200


# ---------- OWNERS: block / unblock ----------
@slots_bp.post("/owner/time-slots/block")
@require_roles(ROLE_OWNER)
def block_slots():
    data = json_body()
    result = get_services().blocker.block(
        g.actor,
        court_id=data.get("court_id"),
        day=data.get("date"),
        start_time=data.get("start_time"),
        end_time=data.get("end_time"),
        reason=data.get("reason"),
    )
    return jsonify(
        message="Time slot blocked successfully",
        slots_affected=result.slots_affected,
        slot_ids=result.slot_ids,
    ), 200


@slots_bp.patch("/owner/time-slots/<int:slot_id>/unblock")
@require_roles(ROLE_OWNER)
def unblock_slot(slot_id: int):
    slot = get_services().blocker.unblock(g.actor, slot_id)
    return jsonify(message="Time slot unblocked successfully", time_slot=_slot_json(slot)), 200


@slots_bp.get("/owner/time-slots/blocked")
@require_roles(ROLE_OWNER)
def list_blocked():
    rows = get_services().blocker.list_blocked(
        g.actor,
        court_id=request.args.get("court_id", type=int),
        from_date=request.args.get("from"),
    )
    return jsonify([_slot_json(s) for s in rows]), 200


# ---------- PLAYERS: availability ----------
@slots_bp.get("/courts/<int:court_id>/availability")
@login_required
def court_availability(court_id: int):
    date_str = request.args.get("date")
    if not date_str:
        return jsonify(error="Date parameter is required"), 400
    day = parse_date(date_str)
    slots = get_services().availability.for_court(court_id, day)
    return jsonify(court_id=court_id, date=day.isoformat(), slots=slots), 200
