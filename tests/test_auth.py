from datetime import datetime, timedelta, timezone

import jwt
from bson import ObjectId

import auth
import config
import database

REGISTRATION = {
    "name": "Mira",
    "email": "Mira@Example.com",
    "password": "s3cret-pass",
    "dob": "1994-07-21T00:00:00",
    "gender": "female",
    "phone": "5550142",
    "address": "3 Chord Avenue",
}


def register(client, **overrides):
    return client.post("/api/auth/register", json={**REGISTRATION, **overrides})


def login(client, **payload):
    return client.post("/api/auth/login", json=payload)


def test_register_hashes_password_and_hides_it(client):
    resp = register(client)
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["email"] == "mira@example.com"
    assert data["role"] == "user"
    assert "password_hash" not in data

    stored = database.db["user"].find_one({"email": "mira@example.com"})
    assert stored["password_hash"] != REGISTRATION["password"]
    assert auth.verify_password(REGISTRATION["password"], stored["password_hash"])


def test_register_duplicate_email(client):
    register(client)
    resp = register(client, email="mira@example.com")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Email already registered"


def test_register_missing_field(client):
    payload = dict(REGISTRATION)
    del payload["phone"]
    resp = client.post("/api/auth/register", json=payload)
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_register_rejects_non_data_uri_image(client):
    resp = register(client, image="https://example.com/me.png")
    assert resp.status_code == 400
    assert database.db["user"].count_documents({}) == 0


def test_login_issues_token_with_role(client):
    register(client)
    resp = login(client, email="mira@example.com", password=REGISTRATION["password"])
    assert resp.status_code == 200
    data = resp.json()["data"]
    payload = jwt.decode(data["token"], config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    assert payload["id"] == data["user"]["id"]
    assert payload["role"] == "user"
    assert "password_hash" not in data["user"]


def test_login_wrong_password_gives_no_token(client):
    register(client)
    resp = login(client, email="mira@example.com", password="wrong-password")
    assert resp.status_code == 401
    body = resp.json()
    assert body == {"success": False, "error": "Invalid credentials"}


def test_login_unknown_email(client):
    resp = login(client, email="ghost@example.com", password="whatever")
    assert resp.status_code == 401


def test_login_persists_new_push_token(client):
    register(client)
    resp = login(client, email="mira@example.com", password=REGISTRATION["password"], push_token="ExponentPushToken[abc]")
    assert resp.json()["data"]["user"]["push_token"] == "ExponentPushToken[abc]"
    assert database.db["user"].find_one({"email": "mira@example.com"})["push_token"] == "ExponentPushToken[abc]"


def test_expired_token_is_rejected(client, user):
    expired = jwt.encode(
        {"id": user["id"], "role": "user", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        config.JWT_SECRET,
        algorithm=config.JWT_ALGO,
    )
    resp = client.get(f"/api/cart/history/{user['id']}", headers={"Authorization": f"Bearer {expired}"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "Token expired"


def test_save_token(client, user, make_user):
    resp = client.post("/api/auth/savetoken", json={"user_id": user["id"], "token": "tok-1"}, headers=user["headers"])
    assert resp.status_code == 200
    assert resp.json()["data"]["push_token"] == "tok-1"

    other = make_user("other@melodymix.com")
    resp = client.post("/api/auth/savetoken", json={"user_id": user["id"], "token": "tok-2"}, headers=other["headers"])
    assert resp.status_code == 403


def test_update_profile_only_touches_supplied_fields(client, user):
    resp = client.put(f"/api/auth/profile/{user['id']}", json={"phone": "5550999"}, headers=user["headers"])
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["phone"] == "5550999"
    assert data["address"] == "12 Harmony Street"
    assert "password_hash" not in data


def test_update_profile_password_change_requires_current_password(client, user):
    url = f"/api/auth/profile/{user['id']}"
    resp = client.put(url, json={"current_password": "nope", "new_password": "brand-new"}, headers=user["headers"])
    assert resp.status_code == 400
    assert resp.json()["error"] == "Current password is incorrect"

    resp = client.put(url, json={"new_password": "brand-new"}, headers=user["headers"])
    assert resp.status_code == 400

    resp = client.put(
        url, json={"current_password": user["password"], "new_password": "brand-new"}, headers=user["headers"]
    )
    assert resp.status_code == 200
    stored = database.db["user"].find_one({"_id": ObjectId(user["id"])})
    assert auth.verify_password("brand-new", stored["password_hash"])


def test_update_profile_email_must_stay_unique(client, user, make_user):
    make_user("taken@melodymix.com")
    resp = client.put(
        f"/api/auth/profile/{user['id']}", json={"email": "taken@melodymix.com"}, headers=user["headers"]
    )
    assert resp.status_code == 400


def test_update_profile_of_someone_else_is_forbidden(client, user, make_user, admin):
    other = make_user("victim@melodymix.com")
    resp = client.put(f"/api/auth/profile/{other['id']}", json={"name": "x"}, headers=user["headers"])
    assert resp.status_code == 403
    resp = client.put(f"/api/auth/profile/{other['id']}", json={"name": "Renamed"}, headers=admin["headers"])
    assert resp.status_code == 200
    assert resp.json()["data"]["name"] == "Renamed"
