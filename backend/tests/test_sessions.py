import pytest
from fastapi import HTTPException

import auth
import models
import sessions
from conftest import login_headers, make_user
from schemas import GuestCheckIn


def test_check_in_creates_guest_and_session(client, db, check_in):
    body = check_in(name="Asha", phone="98765-43210", table_name="T5", num_guests=3)

    assert body["success"] is True
    assert body["resumed"] is False
    assert body["user"]["role"] == auth.ROLE_OUTSIDER
    assert body["user"]["phone"] == "9876543210"
    assert body["session"]["status"] == models.SESSION_ACTIVE
    assert body["session"]["table_name"] == "T5"
    assert body["session"]["num_guests"] == 3
    assert body["access_token"]


def test_second_check_in_resumes_the_active_session(client, db, check_in):
    first = check_in(table_name="T5", num_guests=2)
    second = check_in(table_name="T7", num_guests=4)

    assert second["resumed"] is True
    assert second["session"]["id"] == first["session"]["id"]
    assert second["session"]["table_name"] == "T7"
    assert second["session"]["num_guests"] == 4

    db.expire_all()
    active = db.query(models.GuestSession).filter(
        models.GuestSession.guest_phone == "9876543210",
        models.GuestSession.status == models.SESSION_ACTIVE,
    ).count()
    assert active == 1


def test_check_in_rotates_the_guest_token(client, db, check_in):
    first = check_in()
    second = check_in()

    resp = client.get(f"/sessions/{first['session']['id']}",
                      headers={"Authorization": f"Bearer {first['access_token']}"})
    assert resp.status_code == 401

    resp = client.get(f"/sessions/{second['session']['id']}",
                      headers={"Authorization": f"Bearer {second['access_token']}"})
    assert resp.status_code == 200


def test_check_in_refuses_internal_phone(client, db):
    make_user(db, name="Ravi", phone="9111111111", role=auth.ROLE_RIDER)

    resp = client.post("/sessions/check-in", json={
        "name": "Ravi", "phone": "9111111111", "table_name": "T1", "num_guests": 1,
    })

    assert resp.status_code == 400
    assert resp.json()["success"] is False


@pytest.mark.parametrize("payload, message", [
    ({"name": "", "phone": "9876543210", "table_name": "T1"}, "Name is required"),
    ({"name": "Asha", "phone": "12345", "table_name": "T1"}, "Valid 10-digit phone number is required"),
    ({"name": "Asha", "phone": "9876543210", "table_name": ""}, "Table number is required"),
])
def test_check_in_validation(client, db, payload, message):
    resp = client.post("/sessions/check-in", json=payload)
    assert resp.status_code == 400
    assert message in resp.json()["error"]


def test_active_session_lookup_reports_totals(client, db, menu, check_in, kitchen_headers):
    guest = check_in()
    for item, quantity in (("pasta", 2), ("salad", 1)):
        client.post("/orders", json={
            "user_id": guest["user"]["id"],
            "session_id": guest["session"]["id"],
            "table_name": "T5",
            "items": [{"item_id": menu[item].id, "quantity": quantity}],
        })
    cancelled = client.post("/orders", json={
        "user_id": guest["user"]["id"],
        "session_id": guest["session"]["id"],
        "table_name": "T5",
        "items": [{"item_id": menu["coffee"].id, "quantity": 1}],
    }).json()
    client.put(f"/orders/{cancelled['id']}/status", json={"status": "cancelled"}, headers=kitchen_headers)

    body = client.get("/sessions/active", params={"phone": "9876543210"}).json()

    assert body["active"] is True
    assert body["session"]["order_count"] == 2
    assert body["session"]["calculated_total"] == 390

    by_user = client.get("/sessions/active", params={"user_id": guest["user"]["id"]}).json()
    assert by_user["session"]["id"] == guest["session"]["id"]


def test_active_session_lookup_without_session(client, db):
    body = client.get("/sessions/active", params={"phone": "9000000099"}).json()
    assert body == {"success": True, "active": False, "session": None}

    assert client.get("/sessions/active").status_code == 400


def test_request_bill_flags_session(client, db, menu, check_in, kitchen_headers):
    guest = check_in()
    client.post("/orders", json={
        "user_id": guest["user"]["id"],
        "session_id": guest["session"]["id"],
        "table_name": "T5",
        "items": [{"item_id": menu["pasta"].id, "quantity": 1}],
    })

    resp = client.post("/bills/request", json={"session_id": guest["session"]["id"]},
                       headers={"Authorization": f"Bearer {guest['access_token']}"})

    assert resp.status_code == 200, resp.text
    assert resp.json()["bill_requested"] is True
    assert resp.json()["total_amount"] == 150

    requests = client.get("/kitchen/bill-requests", headers=kitchen_headers).json()
    assert [s["id"] for s in requests] == [guest["session"]["id"]]
    db.expire_all()
    assert db.query(models.Bill).count() == 0


def test_request_bill_for_someone_elses_session(client, db, check_in):
    guest = check_in()
    stranger = make_user(db, name="Stranger", phone="9444444444", role=auth.ROLE_RIDER)

    resp = client.post("/bills/request", json={"session_id": guest["session"]["id"]},
                       headers=login_headers(db, stranger))
    assert resp.status_code == 403


def test_check_in_service_resumes_after_direct_call(db):
    payload = GuestCheckIn(name="Meera", phone="9555555555", table_name="T2", num_guests=2)

    first = sessions.check_in(db, payload)
    second = sessions.check_in(db, payload)

    assert second["resumed"] is True
    assert second["session"].id == first["session"].id
    assert auth.user_from_token(db, first["token"]) is None
    assert auth.user_from_token(db, second["token"]).id == first["user"].id


def test_get_session_not_found(db):
    with pytest.raises(HTTPException) as exc:
        sessions.get_session(db, 404)
    assert exc.value.status_code == 404
