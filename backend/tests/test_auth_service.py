import auth
import models
from conftest import make_user


def _login(auth_client, phone, pin):
    return auth_client.post("/login", json={"phone": phone, "pin": pin})


def test_health(auth_client):
    assert auth_client.get("/health").json() == {"status": "auth service healthy"}


def test_login_returns_token_and_user(auth_client, db):
    make_user(db, name="Chef Marco", phone="9000000010", role=auth.ROLE_KITCHEN, pin="111111")

    resp = _login(auth_client, "9000000010", "111111")

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["success"] is True
    assert body["token_type"] == "bearer"
    assert body["user"]["role"] == auth.ROLE_KITCHEN
    assert "pin_hash" not in body["user"]

    me = auth_client.get("/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.json()["name"] == "Chef Marco"


def test_login_accepts_legacy_role_names(auth_client, db):
    make_user(db, name="Old Manager", phone="9000000011", role="KITCHEN_MANAGER", pin="111111")

    resp = _login(auth_client, "9000000011", "111111")

    assert resp.status_code == 200
    assert resp.json()["user"]["role"] == auth.ROLE_KITCHEN


def test_wrong_pin_is_rejected_and_audited(auth_client, db):
    make_user(db, phone="9000000012", role=auth.ROLE_RIDER, pin="123456")

    resp = _login(auth_client, "9000000012", "654321")

    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "Invalid phone or PIN"}
    db.expire_all()
    log = db.query(models.AuthLog).filter(models.AuthLog.event_type == "failed_login").one()
    assert log.status == "failed"
    assert log.reason == "Invalid PIN"


def test_account_locks_after_five_failures(auth_client, db):
    make_user(db, phone="9000000013", role=auth.ROLE_RIDER, pin="123456")

    for _ in range(5):
        assert _login(auth_client, "9000000013", "000000").status_code == 401

    resp = _login(auth_client, "9000000013", "123456")
    assert resp.status_code == 429
    assert "Account locked" in resp.json()["error"]


def test_guest_accounts_cannot_use_pin_login(auth_client, db):
    make_user(db, phone="9000000014", role=auth.ROLE_OUTSIDER)

    resp = _login(auth_client, "9000000014", "123456")
    assert resp.status_code == 403


def test_login_validates_input(auth_client, db):
    assert _login(auth_client, "123", "123456").status_code == 400
    assert _login(auth_client, "9000000015", "12").status_code == 400


def test_logout_revokes_the_token(auth_client, db):
    make_user(db, phone="9000000016", role=auth.ROLE_STAFF, pin="123456")
    token = _login(auth_client, "9000000016", "123456").json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}

    assert auth_client.post("/logout", headers=headers).status_code == 200
    assert auth_client.get("/me", headers=headers).status_code == 401


def test_refresh_rotates_the_token(auth_client, db):
    make_user(db, phone="9000000017", role=auth.ROLE_STAFF, pin="123456")
    old = _login(auth_client, "9000000017", "123456").json()["access_token"]

    new = auth_client.post("/refresh", headers={"Authorization": f"Bearer {old}"}).json()["access_token"]

    assert new != old
    assert auth_client.get("/me", headers={"Authorization": f"Bearer {old}"}).status_code == 401
    assert auth_client.get("/me", headers={"Authorization": f"Bearer {new}"}).status_code == 200


def test_admin_manages_users(auth_client, db):
    make_user(db, name="Admin", phone="9000000020", role=auth.ROLE_ADMIN, pin="222222")
    token = _login(auth_client, "9000000020", "222222").json()["access_token"]
    headers = {"Authorization": f"Bearer {token}"}

    resp = auth_client.post("/users", json={
        "name": "Lucia", "phone": "9333333333", "role": "staff", "pin": "333333",
    }, headers=headers)
    assert resp.status_code == 200, resp.text
    created = resp.json()
    assert created["role"] == auth.ROLE_STAFF

    duplicate = auth_client.post("/users", json={
        "name": "Lucia again", "phone": "9333333333", "role": "RIDER", "pin": "333333",
    }, headers=headers)
    assert duplicate.status_code == 409

    resp = auth_client.put(f"/users/{created['id']}", json={"position": "Barista"}, headers=headers)
    assert resp.json()["position"] == "Barista"

    resp = auth_client.put(f"/users/{created['id']}/pin", json={"new_pin": "444444"}, headers=headers)
    assert resp.status_code == 200
    assert _login(auth_client, "9333333333", "444444").status_code == 200

    staff = auth_client.get("/users", params={"role": "STAFF"}, headers=headers).json()
    assert [u["name"] for u in staff] == ["Lucia"]

    assert auth_client.delete(f"/users/{created['id']}", headers=headers).status_code == 200
    db.expire_all()
    assert db.query(models.User).filter(models.User.phone == "9333333333").count() == 0


def test_user_creation_rejects_guest_role_and_short_pin(auth_client, db):
    make_user(db, name="Admin", phone="9000000020", role=auth.ROLE_ADMIN, pin="222222")
    headers = {"Authorization": f"Bearer {_login(auth_client, '9000000020', '222222').json()['access_token']}"}

    resp = auth_client.post("/users", json={
        "name": "Guesty", "phone": "9333333334", "role": "OUTSIDER", "pin": "333333",
    }, headers=headers)
    assert resp.status_code == 400

    resp = auth_client.post("/users", json={
        "name": "Shorty", "phone": "9333333335", "role": "RIDER", "pin": "12a",
    }, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "PIN must be exactly 6 digits"


def test_admin_cannot_delete_self(auth_client, db):
    admin = make_user(db, name="Admin", phone="9000000020", role=auth.ROLE_ADMIN, pin="222222")
    headers = {"Authorization": f"Bearer {_login(auth_client, '9000000020', '222222').json()['access_token']}"}

    assert auth_client.delete(f"/users/{admin.id}", headers=headers).status_code == 400


def test_non_admin_cannot_list_users(auth_client, db):
    make_user(db, phone="9000000018", role=auth.ROLE_KITCHEN, pin="123456")
    token = _login(auth_client, "9000000018", "123456").json()["access_token"]

    resp = auth_client.get("/users", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 403
