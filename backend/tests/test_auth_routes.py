"""
Account endpoints: register, login, current user, profile update.
"""
from unittest.mock import AsyncMock

from jose import jwt

from conftest import make_user, auth_headers
from auth import (
    hash_password,
    create_access_token,
    create_user_token,
    decode_access_token,
    validate_password_strength,
    JWT_SECRET,
    JWT_ALGORITHM,
)


def test_password_strength_rules():
    assert validate_password_strength("short1") == (False, "Password must be at least 8 characters")
    assert validate_password_strength("12345678") == (False, "Password must contain at least one letter")
    assert validate_password_strength("abcdefgh") == (False, "Password must contain at least one number")
    assert validate_password_strength("abcdefg1")[0] is True
    assert validate_password_strength("a1" * 40) == (False, "Password must be at most 72 bytes")


def test_token_claims_and_issuer():
    user = make_user(role="admin", plan="pro")
    payload = decode_access_token(create_user_token(user))
    assert payload["sub"] == user["uid"]
    assert payload["role"] == "admin"
    assert payload["plan"] == "pro"
    assert payload["iss"] == "flowforge-ai"

    foreign = jwt.encode({"sub": user["uid"], "iss": "someone-else"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
    assert decode_access_token(foreign) is None
    assert decode_access_token(create_access_token({"email": user["email"]})) is None


def test_register_creates_free_user(client, patched_db):
    db = patched_db(None)

    response = client.post(
        "/api/auth/register",
        json={"email": "New.Maker@Example.com", "password": "automate42"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["token_type"] == "bearer"
    assert body["user"]["email"] == "new.maker@example.com"
    assert body["user"]["display_name"] == "New.Maker"
    assert body["user"]["plan"] == "free"
    assert body["user"]["primary_platform"] is None
    assert set(body["user"]["usage"]) == {"n8n", "zapier", "make", "power_automate"}
    assert "password_hash" not in body["user"]

    payload = decode_access_token(body["access_token"])
    assert payload["sub"] == body["user"]["uid"]

    stored = db.users.insert_one.call_args.args[0]
    assert stored["password_hash"] != "automate42"
    events = [c.args[0]["event"] for c in db.analytics_events.insert_one.call_args_list]
    assert events == ["funnel_signup", "conversion_signup"]


def test_register_duplicate_email(client, patched_db):
    patched_db(make_user())
    response = client.post(
        "/api/auth/register",
        json={"email": "maker@example.com", "password": "automate42"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Email already registered"


def test_register_weak_password(client, patched_db):
    patched_db(None)
    response = client.post(
        "/api/auth/register",
        json={"email": "maker@example.com", "password": "onlyletters"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Password must contain at least one number"


def test_login(client, patched_db):
    user = make_user()
    user["password_hash"] = hash_password("automate42")
    db = patched_db(user)

    response = client.post(
        "/api/auth/login",
        json={"email": "maker@example.com", "password": "automate42"},
    )

    assert response.status_code == 200
    assert response.json()["user"]["uid"] == user["uid"]
    assert "last_login_at" in db.users.update_one.call_args.args[1]["$set"]


def test_login_wrong_password(client, patched_db):
    user = make_user()
    user["password_hash"] = hash_password("automate42")
    patched_db(user)
    response = client.post(
        "/api/auth/login",
        json={"email": "maker@example.com", "password": "wrong-pass1"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


def test_me(client, patched_db):
    user = make_user(primary_platform="make")
    patched_db(user)
    response = client.get("/api/auth/me", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["primary_platform"] == "make"


def test_me_with_bad_token(client):
    response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_me_unknown_user(client, patched_db):
    db = patched_db(None)
    response = client.get("/api/auth/me", headers=auth_headers(make_user()))
    assert response.status_code == 401
    assert response.json()["detail"] == "User not found"
    db.users.find_one.assert_awaited()


def test_update_profile(client, patched_db):
    user = make_user()
    db = patched_db(user)
    db.users.find_one = AsyncMock(side_effect=[user, dict(user, display_name="Flow Builder")])

    response = client.put(
        "/api/auth/profile",
        json={"display_name": "Flow Builder"},
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    assert response.json()["display_name"] == "Flow Builder"
    assert db.users.update_one.call_args.args[1] == {"$set": {"display_name": "Flow Builder"}}
