from datetime import timedelta

from bson import ObjectId
from jose import jwt

import main
from conftest import PASSWORD, auth, now
from database import USERS


def register(client, **overrides):
    body = {
        "name": "Thabo Mokoena",
        "email": "thabo@tut.ac.za",
        "password": "secret123",
        "userType": "customer",
        "campus": "pretoria-main",
        "whatsapp": "0711111111",
    }
    body.update(overrides)
    return client.post("/api/auth/register", json=body)


def test_register_returns_user_and_token(client, db):
    res = register(client)
    assert res.status_code == 201
    data = res.json()
    assert data["success"] is True
    assert data["user"]["email"] == "thabo@tut.ac.za"
    assert data["user"]["type"] == "customer"
    assert "password" not in data["user"]
    claims = jwt.decode(data["token"], main.JWT_SECRET, algorithms=[main.JWT_ALG])
    assert claims["id"] == data["user"]["id"]
    stored = db[USERS].find_one({"email": "thabo@tut.ac.za"})
    assert stored["password"] != "secret123"


def test_register_seller_starts_without_subscription(client):
    data = register(client, userType="seller").json()
    assert data["user"]["type"] == "seller"
    assert data["user"]["subscribed"] is False


def test_buyer_is_stored_as_customer(client):
    assert register(client, userType="buyer").json()["user"]["type"] == "customer"


def test_register_rejects_non_campus_email(client):
    res = register(client, email="thabo@gmail.com")
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION_ERROR"


def test_register_rejects_unknown_campus(client):
    assert register(client, campus="mars").status_code == 400


def test_register_rejects_admin_type(client):
    res = register(client, userType="admin")
    assert res.status_code == 400
    assert res.json()["success"] is False


def test_duplicate_email_conflicts(client):
    register(client)
    res = register(client, email="THABO@tut.ac.za")
    assert res.status_code == 409
    assert res.json()["code"] == "CONFLICT"


def test_register_is_rate_limited(client):
    for i in range(3):
        assert register(client, email=f"user{i}@tut.ac.za").status_code == 201
    res = register(client, email="user9@tut.ac.za")
    assert res.status_code == 429
    assert res.json()["code"] == "RATE_LIMIT_EXCEEDED"
    assert res.json()["retryAfter"] == 3600


def test_login(client, make_user, db):
    user = make_user()
    res = client.post("/api/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert res.status_code == 200
    assert res.json()["user"]["id"] == str(user["_id"])
    assert db[USERS].find_one({"_id": user["_id"]})["lastLoginAt"] is not None


def test_login_with_wrong_password(client, make_user):
    user = make_user()
    res = client.post("/api/auth/login", json={"email": user["email"], "password": "wrong-password"})
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_CREDENTIALS"


def test_login_unknown_email(client):
    res = client.post("/api/auth/login", json={"email": "nobody@tut.ac.za", "password": "whatever"})
    assert res.status_code == 400


def test_login_demotes_expired_seller(client, make_user, db):
    user = make_user(type="seller", subscribed=True, end_date=now() - timedelta(days=1))
    res = client.post("/api/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert res.status_code == 200
    assert res.json()["user"]["type"] == "customer"
    stored = db[USERS].find_one({"_id": user["_id"]})
    assert stored["subscribed"] is False
    assert stored["type"] == "customer"
    assert stored["subscriptionStatus"] == "expired"


def test_login_deactivated_account(client, make_user):
    user = make_user(isActive=False)
    res = client.post("/api/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert res.status_code == 403
    assert res.json()["code"] == "ACCOUNT_DEACTIVATED"


def test_me_requires_token(client):
    res = client.get("/api/users/me")
    assert res.status_code == 401
    assert res.json()["code"] == "TOKEN_REQUIRED"


def test_me_rejects_bad_token(client):
    res = client.get("/api/users/me", headers={"Authorization": "Bearer not-a-token"})
    assert res.status_code == 403
    assert res.json()["code"] == "TOKEN_INVALID"


def test_me_for_missing_user(client):
    ghost = {"_id": ObjectId(), "email": "ghost@tut.ac.za", "type": "customer", "campus": "arts"}
    res = client.get("/api/users/me", headers=auth(ghost))
    assert res.status_code == 404


def test_me(client, make_user):
    user = make_user()
    data = client.get("/api/users/me", headers=auth(user)).json()
    assert data["user"]["email"] == user["email"]
    assert "password" not in data["user"]


def test_refresh_accepts_expired_token(client, make_user):
    user = make_user()
    expired = main.create_access_token(user, expires_delta=timedelta(seconds=-10))
    res = client.post("/api/auth/refresh", headers={"Authorization": f"Bearer {expired}"})
    assert res.status_code == 200
    assert res.json()["token"]


def test_verify_token(client, make_user):
    user = make_user()
    data = client.get("/api/auth/verify-token", headers=auth(user)).json()
    assert data["valid"] is True
    assert data["user"]["id"] == str(user["_id"])
    res = client.get("/api/auth/verify-token")
    assert res.status_code == 401
    assert res.json()["valid"] is False


def test_parse_duration():
    assert main.parse_duration("7d") == timedelta(days=7)
    assert main.parse_duration("12h") == timedelta(hours=12)
    assert main.parse_duration("90") == timedelta(seconds=90)
