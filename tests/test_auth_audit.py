import pytest

from db import db
from login import _parse_device
from seed_admin_user import build_admin_user, seed_admin_user


@pytest.fixture
def admin_user():
    doc = build_admin_user("grace", "s3cret-pass", "Grace Achieng", role="admin")
    doc["_id"] = db.users.insert_one(doc).inserted_id
    return doc


class TestLogin:
    def test_success_sets_session(self, anon_client, admin_user):
        resp = anon_client.post("/api/auth/login", json={"username": "grace", "password": "s3cret-pass"})
        assert resp.status_code == 200
        assert resp.get_json()["user"]["role"] == "admin"

        me = anon_client.get("/api/auth/me").get_json()
        assert me["user"]["name"] == "Grace Achieng"
        assert db.login_logs.find_one({"username": "grace", "success": True})
        assert db.users.find_one({"_id": admin_user["_id"]})["lastLogin"]

    def test_wrong_password(self, anon_client, admin_user):
        resp = anon_client.post("/api/auth/login", json={"username": "grace", "password": "nope"})
        assert resp.status_code == 401
        assert db.login_logs.find_one({"username": "grace", "success": False})

    def test_unknown_user(self, anon_client):
        resp = anon_client.post("/api/auth/login", json={"username": "ghost", "password": "x"})
        assert resp.status_code == 401

    def test_non_admin_role_refused(self, anon_client):
        db.users.insert_one(build_admin_user("cashier", "pw", "Cashier", role="agent"))
        resp = anon_client.post("/api/auth/login", json={"username": "cashier", "password": "pw"})
        assert resp.status_code == 403

    def test_inactive_account_refused(self, anon_client, admin_user):
        db.users.update_one({"_id": admin_user["_id"]}, {"$set": {"status": "inactive"}})
        resp = anon_client.post("/api/auth/login", json={"username": "grace", "password": "s3cret-pass"})
        assert resp.status_code == 403

    def test_logout_clears_session(self, admin_client):
        assert admin_client.post("/api/auth/logout").status_code == 200
        assert admin_client.get("/api/auth/me").status_code == 401


class TestSeed:
    def test_requires_password(self, monkeypatch):
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
        with pytest.raises(SystemExit):
            seed_admin_user()

    def test_upsert_keeps_created_at(self, monkeypatch):
        monkeypatch.setenv("ADMIN_USERNAME", "owner")
        monkeypatch.setenv("ADMIN_PASSWORD", "first")
        seed_admin_user()
        created = db.users.find_one({"username": "owner"})["createdAt"]
        monkeypatch.setenv("ADMIN_PASSWORD", "second")
        seed_admin_user()
        user = db.users.find_one({"username": "owner"})
        assert user["createdAt"] == created
        assert user["role"] == "superadmin"
        assert user["password"].startswith("$2")


class TestActivityAudit:
    def test_device_parsing(self):
        ua = "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
        device = _parse_device(ua)
        assert device["browser"].startswith("Chrome")
        assert device["os"] == "Android"
        assert device["is_mobile"] is True
        assert device["is_pc"] is False

    def test_desktop_device(self):
        ua = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        device = _parse_device(ua)
        assert device["os"] == "Windows"
        assert device["is_pc"] is True
        assert device["is_mobile"] is False

    def test_explicit_action_logged_once(self, admin_client):
        admin_client.post("/api/categories", json={
            "name": "Laundry", "description": "d", "icon": "i", "color": "#000000",
        })
        logs = list(db.activity_logs.find({}))
        assert len(logs) == 1
        assert logs[0]["action"] == "category.created"
        assert logs[0]["meta"]["name"] == "Laundry"
        assert logs[0]["role"] == "admin"

    def test_generic_mutation_logged(self, admin_client):
        admin_client.post("/api/pos/quote", json={"items": [{"serviceName": "Ironing", "price": "100"}]})
        log = db.activity_logs.find_one({})
        assert log["action"] == "order.created"
        assert log["meta"]["path"] == "/api/pos/quote"

    def test_failed_and_read_requests_not_logged(self, admin_client):
        admin_client.get("/api/customers")
        admin_client.post("/api/customers", json={"phone": "bad"})
        assert db.activity_logs.count_documents({}) == 0
