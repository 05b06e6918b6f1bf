import os

# Must be set before config.py is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import auth  # noqa: E402
import models  # noqa: E402
from database import Base, SessionLocal, engine  # noqa: E402


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    import main

    return TestClient(main.app)


@pytest.fixture
def auth_client(db):
    import auth_service

    return TestClient(auth_service.app)


def make_user(db, name="Test User", phone="9000000001", role=auth.ROLE_RIDER, pin=None):
    user = models.User(
        name=name,
        phone=phone,
        role=role,
        pin_hash=auth.get_pin_hash(pin) if pin else None,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def login_headers(db, user):
    token = auth.issue_session_token(db, user)
    db.commit()
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def menu(db):
    mains = models.Category(name="Mains", sort_order=1)
    drinks = models.Category(name="Drinks", sort_order=2)
    db.add_all([mains, drinks])
    db.flush()

    items = {
        "pasta": models.MenuItem(name="Pasta Arrabbiata", price=150, category_id=mains.id),
        "salad": models.MenuItem(name="Caesar Salad", price=90, category_id=mains.id),
        "soup": models.MenuItem(name="Tomato Soup", price=100, category_id=mains.id),
        "coffee": models.MenuItem(name="Cappuccino", price=60, category_id=drinks.id),
        "tiramisu": models.MenuItem(name="Tiramisu", price=120, category_id=mains.id, available=False),
    }
    db.add_all(items.values())
    db.commit()
    for item in items.values():
        db.refresh(item)
    return items


@pytest.fixture
def kitchen_user(db):
    return make_user(db, name="Chef Marco", phone="9000000010", role=auth.ROLE_KITCHEN, pin="111111")


@pytest.fixture
def kitchen_headers(db, kitchen_user):
    return login_headers(db, kitchen_user)


@pytest.fixture
def admin_user(db):
    return make_user(db, name="Admin", phone="9000000020", role=auth.ROLE_ADMIN, pin="222222")


@pytest.fixture
def admin_headers(db, admin_user):
    return login_headers(db, admin_user)


@pytest.fixture
def check_in(client):
    """Check a guest in through the API and return the response body."""
    def _check_in(name="Asha", phone="9876543210", table_name="T5", num_guests=2):
        resp = client.post("/sessions/check-in", json={
            "name": name,
            "phone": phone,
            "table_name": table_name,
            "num_guests": num_guests,
        })
        assert resp.status_code == 200, resp.text
        return resp.json()
    return _check_in
