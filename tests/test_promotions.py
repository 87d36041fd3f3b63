from datetime import datetime, timedelta

import pytest

from db import db
from services.promotion_service import (
    PromotionError,
    apply_code,
    apply_locked_in,
    calculate_discount,
    find_active_promotion,
    increment_usage,
    lock_in,
    update_promotion_statuses,
)


def _promo(**overrides):
    now = datetime.utcnow()
    doc = {
        "title": "Holiday Offer",
        "promoCode": "HOLIDAY10",
        "discount": 10,
        "discountType": "percentage",
        "startDate": now - timedelta(days=1),
        "endDate": now + timedelta(days=7),
        "status": "active",
        "usageLimit": 100,
        "usageCount": 0,
        "minOrderAmount": 0,
        "maxDiscount": 0,
        "createdAt": now,
    }
    doc.update(overrides)
    doc["_id"] = db.promotions.insert_one(doc).inserted_id
    return doc


class TestCalculateDiscount:
    def test_percentage_is_rounded(self):
        assert calculate_discount({"discountType": "percentage", "discount": 15}, 1333) == 200.0

    def test_fixed_amount(self):
        assert calculate_discount({"discountType": "fixed", "discount": 250}, 1000) == 250.0

    def test_capped_by_max_discount(self):
        promo = {"discountType": "percentage", "discount": 50, "maxDiscount": 300}
        assert calculate_discount(promo, 1000) == 300.0

    def test_below_minimum_gives_nothing(self):
        promo = {"discountType": "fixed", "discount": 250, "minOrderAmount": 2000}
        assert calculate_discount(promo, 1999) == 0.0


class TestStatusRefresh:
    def test_scheduled_becomes_active(self):
        promo = _promo(status="scheduled")
        assert update_promotion_statuses() == 1
        assert db.promotions.find_one({"_id": promo["_id"]})["status"] == "active"

    def test_ended_becomes_expired(self):
        now = datetime.utcnow()
        promo = _promo(startDate=now - timedelta(days=10), endDate=now - timedelta(days=1))
        update_promotion_statuses()
        assert db.promotions.find_one({"_id": promo["_id"]})["status"] == "expired"

    def test_usage_limit_expires(self):
        promo = _promo(usageLimit=5, usageCount=5)
        update_promotion_statuses()
        assert db.promotions.find_one({"_id": promo["_id"]})["status"] == "expired"


class TestLookup:
    def test_case_insensitive_code(self):
        _promo()
        assert find_active_promotion("holiday10")["promoCode"] == "HOLIDAY10"

    def test_unknown_code(self):
        with pytest.raises(PromotionError) as exc:
            find_active_promotion("NOPE")
        assert exc.value.status == 404

    def test_missing_code(self):
        with pytest.raises(PromotionError) as exc:
            find_active_promotion("  ")
        assert exc.value.status == 400


class TestLockIn:
    def test_lock_in_returns_calculated_discount(self):
        _promo(discountType="fixed", discount=300)
        details = lock_in("HOLIDAY10", 1500)
        assert details["lockedIn"] is True
        assert details["calculatedDiscount"] == 300.0

    def test_lock_in_below_minimum(self):
        _promo(minOrderAmount=5000)
        with pytest.raises(PromotionError) as exc:
            lock_in("HOLIDAY10", 1000)
        assert "Minimum order amount" in exc.value.message

    def test_locked_in_honored_after_delete(self):
        """A deleted promotion still gives the discount that was locked in."""
        promo = _promo(discountType="fixed", discount=200)
        details = lock_in("HOLIDAY10", 1000)
        db.promotions.delete_one({"_id": promo["_id"]})
        fields = apply_locked_in(details)
        assert fields["promoDiscount"] == 200.0
        assert fields["promoCode"] == "HOLIDAY10"

    def test_locked_in_counts_usage(self):
        promo = _promo()
        apply_locked_in(lock_in("HOLIDAY10", 1000))
        assert db.promotions.find_one({"_id": promo["_id"]})["usageCount"] == 1


class TestUsage:
    def test_reaching_limit_expires(self):
        promo = _promo(usageLimit=2, usageCount=1)
        assert increment_usage(promo["_id"]) is True
        stored = db.promotions.find_one({"_id": promo["_id"]})
        assert stored["usageCount"] == 2
        assert stored["status"] == "expired"

    def test_unknown_promotion(self):
        assert increment_usage("not-an-id") is False

    def test_apply_code_drops_invalid_codes(self):
        assert apply_code("MISSING", 1000) == {}

    def test_apply_code(self):
        _promo()
        fields = apply_code("HOLIDAY10", 1000)
        assert fields["promoDiscount"] == 100.0
        assert fields["promotionDetails"]["promoCode"] == "HOLIDAY10"


class TestPromotionRoutes:
    def test_create_and_list(self, admin_client):
        now = datetime.utcnow()
        resp = admin_client.post("/api/promotions", json={
            "title": "Launch",
            "promoCode": "launch20",
            "discount": 20,
            "discountType": "percentage",
            "startDate": (now - timedelta(hours=1)).isoformat(),
            "endDate": (now + timedelta(days=3)).isoformat(),
            "status": "scheduled",
        })
        assert resp.status_code == 201
        assert resp.get_json()["promotion"]["promoCode"] == "LAUNCH20"

        listed = admin_client.get("/api/promotions").get_json()["promotions"]
        assert listed[0]["status"] == "active"

    def test_duplicate_code_rejected(self, admin_client):
        _promo()
        now = datetime.utcnow()
        resp = admin_client.post("/api/promotions", json={
            "title": "Again",
            "promoCode": "holiday10",
            "discount": 5,
            "discountType": "fixed",
            "startDate": now.isoformat(),
            "endDate": (now + timedelta(days=1)).isoformat(),
        })
        assert resp.status_code == 400

    def test_invalid_discount_type(self, admin_client):
        now = datetime.utcnow()
        resp = admin_client.post("/api/promotions", json={
            "title": "Bad",
            "promoCode": "BAD",
            "discount": 5,
            "discountType": "bogus",
            "startDate": now.isoformat(),
            "endDate": (now + timedelta(days=1)).isoformat(),
        })
        assert resp.status_code == 400

    def test_validate_and_lock_in(self, admin_client):
        _promo(discountType="fixed", discount=150)
        resp = admin_client.get("/api/promotions/validate?code=holiday10&orderAmount=1000")
        assert resp.status_code == 200
        assert resp.get_json()["calculatedDiscount"] == 150.0

        resp = admin_client.post("/api/promotions/lock-in", json={"promoCode": "HOLIDAY10", "orderAmount": 1000})
        body = resp.get_json()
        assert body["lockedInPromotion"]["lockedIn"] is True

    def test_validate_unknown(self, admin_client):
        resp = admin_client.get("/api/promotions/validate?code=NOPE")
        assert resp.status_code == 404

    def test_delete(self, admin_client):
        promo = _promo()
        assert admin_client.delete(f"/api/promotions/{promo['_id']}").status_code == 200
        assert admin_client.delete(f"/api/promotions/{promo['_id']}").status_code == 404

    def test_requires_login(self, anon_client):
        assert anon_client.get("/api/promotions").status_code == 401
