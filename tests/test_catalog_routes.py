import pytest

from db import db


@pytest.fixture
def category(admin_client):
    resp = admin_client.post("/api/categories", json={
        "name": "Laundry",
        "description": "Everyday washing",
        "icon": "shirt",
        "color": "#3B82F6",
    })
    assert resp.status_code == 201
    return resp.get_json()["category"]


def _service(client, **overrides):
    body = {
        "name": "Wash & Fold",
        "description": "Washed, dried and folded",
        "category": "Laundry",
        "price": "150",
        "unit": "per kg",
        "turnaround": "24",
        "turnaroundUnit": "hours",
        "features": ["Eco detergent", "  ", "Folded"],
    }
    body.update(overrides)
    return client.post("/api/services", json=body)


class TestCategories:
    def test_color_must_be_hex(self, admin_client):
        resp = admin_client.post("/api/categories", json={
            "name": "Dry Clean", "description": "d", "icon": "i", "color": "blue",
        })
        assert resp.status_code == 400

    def test_lowercase_hex_accepted(self, admin_client):
        resp = admin_client.post("/api/categories", json={
            "name": "Dry Clean", "description": "d", "icon": "i", "color": "#aabbcc",
        })
        assert resp.status_code == 201

    def test_duplicate_name(self, admin_client, category):
        resp = admin_client.post("/api/categories", json={
            "name": "Laundry", "description": "d", "icon": "i", "color": "#000000",
        })
        assert resp.status_code == 400

    def test_list_counts_services(self, admin_client, category):
        _service(admin_client)
        cats = admin_client.get("/api/categories").get_json()["categories"]
        assert cats[0]["serviceCount"] == 1

    def test_rename_moves_services(self, admin_client, category):
        _service(admin_client)
        resp = admin_client.put(f"/api/categories/{category['_id']}", json={"name": "Wash"})
        assert resp.status_code == 200
        assert db.services.find_one({"name": "Wash & Fold"})["category"] == "Wash"

    def test_delete(self, admin_client, category):
        assert admin_client.delete(f"/api/categories/{category['_id']}").status_code == 200
        assert admin_client.delete(f"/api/categories/{category['_id']}").status_code == 404


class TestServices:
    def test_create_defaults(self, admin_client, category):
        resp = _service(admin_client, name="  Ironing  ")
        assert resp.status_code == 201
        svc = resp.get_json()["service"]
        assert svc["name"] == "Ironing"
        assert svc["image"] == "/placeholder.svg"
        assert svc["features"] == ["Eco detergent", "Folded"]
        assert svc["active"] is True

    def test_required_fields(self, admin_client, category):
        assert _service(admin_client, turnaround="").status_code == 400

    def test_category_must_exist(self, admin_client, category):
        assert _service(admin_client, category="Shoes").status_code == 400

    def test_unique_name(self, admin_client, category):
        _service(admin_client)
        assert _service(admin_client).status_code == 400

    def test_invalid_id(self, admin_client):
        assert admin_client.get("/api/services/nope").status_code == 400

    def test_filters_and_search(self, admin_client, category):
        _service(admin_client)
        _service(admin_client, name="Duvet Cleaning", description="Big items", featured=True)
        _service(admin_client, name="Curtains", description="Drapes", active=False)

        def names(qs):
            return sorted(s["name"] for s in admin_client.get(f"/api/services{qs}").get_json()["services"])

        assert names("?status=inactive") == ["Curtains"]
        assert names("?status=featured") == ["Duvet Cleaning"]
        assert names("?search=drapes") == ["Curtains"]
        assert len(names("?search=eco")) == 3
        assert len(names("?status=active")) == 2

    def test_bulk_update(self, admin_client, category):
        _service(admin_client)
        _service(admin_client, name="Ironing")
        resp = admin_client.put("/api/services/bulk-update", json={"category": "Laundry", "active": False})
        assert resp.get_json()["modifiedCount"] == 2
        assert db.services.count_documents({"active": False}) == 2

    def test_bulk_update_requires_boolean(self, admin_client, category):
        resp = admin_client.put("/api/services/bulk-update", json={"category": "Laundry", "active": "no"})
        assert resp.status_code == 400

    def test_update_and_delete(self, admin_client, category):
        svc = _service(admin_client).get_json()["service"]
        resp = admin_client.put(f"/api/services/{svc['_id']}", json={"price": 200})
        assert resp.get_json()["service"]["price"] == "200"
        assert admin_client.delete(f"/api/services/{svc['_id']}").status_code == 200
        assert admin_client.get(f"/api/services/{svc['_id']}").status_code == 404
