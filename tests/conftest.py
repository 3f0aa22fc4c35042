from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import ensure_indexes, get_db
from directory import Identity
from lifecycle import CouponLifecycle
from main import app

FIXED_NOW = datetime(2026, 3, 14, 10, 30, tzinfo=timezone.utc)


def fake_qr(data: str) -> str:
    return "data:image/png;base64,UVI="


@pytest.fixture
def db():
    database = mongomock.MongoClient()["coupons_test"]
    ensure_indexes(database)
    return database


def _add_user(db, role, email, name):
    return str(db["user"].insert_one({"name": name, "email": email, "role": role, "is_active": True}).inserted_id)


@pytest.fixture
def admin(db):
    return Identity(id=_add_user(db, "admin", "admin@example.org", "Admin"), role="admin", email="admin@example.org")


@pytest.fixture
def donor(db):
    return Identity(id=_add_user(db, "donor", "donor@example.org", "Dana Donor"), role="donor", email="donor@example.org")


@pytest.fixture
def other_donor(db):
    return Identity(id=_add_user(db, "donor", "other@example.org", "Omar Other"), role="donor", email="other@example.org")


@pytest.fixture
def partner_user(db):
    return Identity(
        id=_add_user(db, "partner", "kitchen@example.org", "Annapurna Kitchen"), role="partner", email="kitchen@example.org"
    )


@pytest.fixture
def partner_id(db, partner_user):
    return str(
        db["partner"].insert_one(
            {
                "name": "Annapurna Kitchen",
                "email": "kitchen@example.org",
                "phone": "+91 98765 43210",
                "user": partner_user.id,
                "category": "restaurant",
                "status": "approved",
                "analytics": {"total_redemptions": 0, "total_revenue": 0},
            }
        ).inserted_id
    )


@pytest.fixture
def other_partner(db):
    user_id = _add_user(db, "partner", "lab@example.org", "City Lab")
    partner = str(
        db["partner"].insert_one(
            {"name": "City Lab", "email": "lab@example.org", "user": user_id, "category": "pathology_lab", "status": "approved"}
        ).inserted_id
    )
    return Identity(id=user_id, role="partner", email="lab@example.org"), partner


@pytest.fixture
def lifecycle_at(db):
    def make(when):
        return CouponLifecycle(db, encode_qr=fake_qr, clock=lambda: when)

    return make


@pytest.fixture
def lifecycle(lifecycle_at):
    return lifecycle_at(FIXED_NOW)


@pytest.fixture
def percentage_coupon(lifecycle, donor, partner_id):
    return lifecycle.create(
        donor,
        title="10% off groceries",
        category="food",
        value={"kind": "percentage", "percentage": 10},
        validity={"start_date": FIXED_NOW - timedelta(hours=1), "end_date": FIXED_NOW + timedelta(days=10)},
        partner=partner_id,
        usage={"max_uses": 3},
    )


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def headers(identity):
        return {"X-User-Id": identity.id}

    return headers


@pytest.fixture
def unknown_id():
    return str(ObjectId())


@pytest.fixture
def now():
    return FIXED_NOW
