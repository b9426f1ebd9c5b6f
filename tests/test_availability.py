import pytest

from errors import NotFoundError
from conftest import TODAY, TOMORROW, actor_for, headers_for


def test_generated_slots_are_reported(services, court):
    services.slot_generator.generate(days=1)

    slots = services.availability.for_court(court.id, TODAY)

    assert [s["time"] for s in slots] == ["09:00", "10:00", "11:00"]
    assert all(s["available"] for s in slots)
    assert all(s["slot_id"] for s in slots)
    assert slots[0]["price"] == "500.00"


def test_default_grid_when_no_slots_exist(services, court):
    slots = services.availability.for_court(court.id, TOMORROW)

    assert len(slots) == 16
    assert slots[0]["time"] == "06:00"
    assert slots[-1]["end_time"] == "22:00"
    assert all(s["available"] and s["slot_id"] is None for s in slots)


def test_pending_booking_makes_slot_unavailable(services, court, player):
    services.slot_generator.generate(days=1)
    services.bookings.create(actor_for(player), court.id, TODAY.isoformat(), "10:00")

    by_time = {s["time"]: s for s in services.availability.for_court(court.id, TODAY)}
    assert by_time["10:00"]["available"] is False
    assert by_time["09:00"]["available"] is True
    assert services.availability.is_available(court.id, TODAY, "10:00") is False


def test_blocked_slot_is_flagged(services, court, owner):
    services.slot_generator.generate(days=1)
    services.blocker.block(actor_for(owner), court.id, TODAY.isoformat(), "11:00", "12:00", "Cleaning")

    by_time = {s["time"]: s for s in services.availability.for_court(court.id, TODAY)}
    assert by_time["11:00"]["blocked"] is True
    assert by_time["11:00"]["available"] is False


def test_unknown_court(services, court):
    with pytest.raises(NotFoundError):
        services.availability.for_court(9999, TODAY)


def test_availability_endpoint(client, services, court, player):
    services.slot_generator.generate(days=1)

    resp = client.get(f"/courts/{court.id}/availability?date={TODAY.isoformat()}", headers=headers_for(player))

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["court_id"] == court.id
    assert len(body["slots"]) == 3


def test_availability_endpoint_requires_date(client, court, player):
    resp = client.get(f"/courts/{court.id}/availability", headers=headers_for(player))
    assert resp.status_code == 400


def test_availability_endpoint_requires_identity(client, court):
    resp = client.get(f"/courts/{court.id}/availability?date={TODAY.isoformat()}")
    assert resp.status_code == 401
