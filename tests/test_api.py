from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from cart_pricing.main import app, engine
from cart_pricing.storage import CARTS_DB, CATALOG, COUPONS_DB, OFFERS_DB


@pytest.fixture
def client():
    for store in (CATALOG, OFFERS_DB, COUPONS_DB, CARTS_DB):
        store.clear()
    with TestClient(app) as client:
        client.post("/products", json={"id": "laptop", "title": "Dev Laptop", "price": 10000,
                                       "category": "Electronics", "stock": 5})
        client.post("/products", json={"id": "shirt", "title": "Cotton T-Shirt", "price": 5000,
                                       "category": "Clothing", "stock": 5})
        yield client


def window(days_back=1, days_ahead=30):
    now = datetime.now(timezone.utc)
    return {
        "validFrom": (now - timedelta(days=days_back)).isoformat(),
        "validUntil": (now + timedelta(days=days_ahead)).isoformat(),
    }


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


class TestOffersApi:
    def test_create_and_apply_category_offer(self, client):
        r = client.post("/offers", json={
            "title": "Gadget week",
            "offerType": "category_discount",
            "discountType": "percentage",
            "discountValue": 10,
            "applicableCategories": ["Electronics"],
            **window(),
        })
        assert r.status_code == 201
        offer_id = r.json()["id"]

        r = client.post("/offers/apply", json={"items": [
            {"productId": "laptop", "quantity": 1, "unitPrice": 10000},
            {"productId": "shirt", "quantity": 1, "unitPrice": 5000},
        ]})
        body = r.json()
        assert body["totalDiscount"] == 1000
        assert body["applicableOffers"][0]["offerId"] == offer_id

    def test_missing_type_fields_rejected(self, client):
        r = client.post("/offers", json={"title": "Broken", "offerType": "bogo", "bogoProductId": "laptop",
                                         **window()})
        assert r.status_code == 422

    def test_unknown_products_rejected(self, client):
        r = client.post("/offers", json={
            "title": "Ghost", "offerType": "product_discount", "discountType": "fixed",
            "discountValue": 100, "applicableProducts": ["ghost"], **window(),
        })
        assert r.status_code == 400

    def test_active_listing_and_update(self, client):
        r = client.post("/offers", json={"title": "Ship", "offerType": "free_shipping",
                                         "freeShippingMinAmount": 5000, **window()})
        offer_id = r.json()["id"]
        client.post("/offers", json={"title": "Later", "offerType": "free_shipping",
                                     "freeShippingMinAmount": 5000, **window(days_back=-5)})

        active = client.get("/offers/active").json()
        assert [o["id"] for o in active] == [offer_id]

        r = client.patch(f"/offers/{offer_id}", json={"isActive": False})
        assert r.status_code == 200
        assert client.get("/offers/active").json() == []

        r = client.patch(f"/offers/{offer_id}", json={"offerType": "bogo"})
        assert r.status_code == 400

    def test_usage_count_is_not_editable(self, client):
        offer_id = client.post("/offers", json={"title": "Ship", "offerType": "free_shipping",
                                                "freeShippingMinAmount": 0, **window()}).json()["id"]
        created_at = client.get(f"/offers/{offer_id}").json()["createdAt"]

        r = client.patch(f"/offers/{offer_id}", json={"usageCount": 99, "createdAt": "2020-01-01T00:00:00",
                                                       "title": "Free delivery"})

        assert r.status_code == 200
        assert r.json()["title"] == "Free delivery"
        assert r.json()["usageCount"] == 0
        assert r.json()["createdAt"] == created_at

    def test_delete(self, client):
        offer_id = client.post("/offers", json={"title": "Ship", "offerType": "free_shipping",
                                                "freeShippingMinAmount": 0, **window()}).json()["id"]
        assert client.delete(f"/offers/{offer_id}").status_code == 204
        assert client.get(f"/offers/{offer_id}").status_code == 404


class TestCouponsApi:
    def test_duplicate_code(self, client):
        payload = {"code": "save20", "discountType": "percentage", "discountValue": 20, **window()}
        assert client.post("/coupons", json=payload).status_code == 201
        assert client.post("/coupons", json={**payload, "code": "SAVE20"}).status_code == 409

    def test_validate(self, client):
        client.post("/coupons", json={"code": "SAVE20", "discountType": "percentage",
                                      "discountValue": 20, **window()})
        r = client.post("/coupons/validate", json={
            "code": "save20", "userId": "user-1",
            "items": [{"productId": "laptop", "quantity": 2, "unitPrice": 10000}],
        })
        assert r.json()["isValid"] is True
        assert r.json()["discountAmount"] == 4000

    def test_validate_expired(self, client):
        client.post("/coupons", json={"code": "OLD", "discountType": "fixed", "discountValue": 100,
                                      **window(days_back=10, days_ahead=-1)})
        r = client.post("/coupons/validate", json={
            "code": "OLD", "items": [{"productId": "laptop", "quantity": 1, "unitPrice": 10000}],
        })
        assert r.json()["isValid"] is False
        assert "expired" in r.json()["error"]

    def test_redeem_until_exhausted(self, client):
        client.post("/coupons", json={"code": "ONCE", "discountType": "fixed", "discountValue": 100,
                                      "usageLimit": 1, **window()})
        r = client.post("/coupons/ONCE/redeem", json={"userId": "user-1", "orderId": "order-1"})
        assert r.status_code == 200
        assert r.json()["usageCount"] == 1

        r = client.post("/coupons/ONCE/redeem", json={"userId": "user-2", "orderId": "order-2"})
        assert r.status_code == 400

    def test_edit_does_not_undo_concurrent_redemption(self, client, monkeypatch):
        client.post("/coupons", json={"code": "RACE", "discountType": "fixed", "discountValue": 100,
                                      "usageLimit": 1, **window()})
        write = COUPONS_DB.update_fields

        def redeem_then_write(code, changes):
            # a checkout lands after the handler has read the coupon
            engine.redeem_coupon("RACE", "user-1", "order-1")
            return write(code, changes)

        monkeypatch.setattr(COUPONS_DB, "update_fields", redeem_then_write)
        r = client.patch("/coupons/RACE", json={"description": "edited", "usageCount": 0})
        assert r.status_code == 200
        assert r.json()["description"] == "edited"
        assert r.json()["usageCount"] == 1
        assert len(r.json()["usageHistory"]) == 1

        monkeypatch.undo()
        r = client.post("/coupons/RACE/redeem", json={"userId": "user-2", "orderId": "order-2"})
        assert r.status_code == 400

    def test_invalid_edit(self, client):
        client.post("/coupons", json={"code": "SAVE20", "discountType": "percentage",
                                      "discountValue": 20, **window()})
        assert client.patch("/coupons/SAVE20", json={"discountValue": 150}).status_code == 422
        assert client.patch("/coupons/NOPE", json={"description": "x"}).status_code == 404


class TestCartApi:
    def test_cart_flow(self, client):
        client.post("/coupons", json={"code": "SAVE20", "discountType": "percentage",
                                      "discountValue": 20, **window()})

        r = client.post("/cart/user-1/items", json={"productId": "laptop", "quantity": 1})
        assert r.status_code == 200
        assert r.json()["pricing"]["subtotal"] == 10000

        r = client.post("/cart/user-1/coupon", json={"code": "save20"})
        assert r.status_code == 200
        assert r.json()["cart"]["couponCode"] == "SAVE20"
        assert r.json()["pricing"]["total"] == 8000

        r = client.post("/cart/user-1/checkout", json={"orderId": "order-1"})
        assert r.status_code == 200
        assert r.json()["total"] == 8000

        coupon = client.get("/coupons/code/SAVE20").json()
        assert coupon["usageCount"] == 1
        assert client.get("/cart/user-1").json()["cart"]["items"] == []

    def test_cart_errors(self, client):
        assert client.post("/cart/user-1/items", json={"productId": "ghost", "quantity": 1}).status_code == 404
        assert client.post("/cart/user-1/items", json={"productId": "laptop", "quantity": 6}).status_code == 400
        assert client.post("/cart/user-1/coupon", json={"code": "NOPE"}).status_code == 400

    def test_price_cart_endpoint(self, client):
        r = client.post("/pricing/cart", json={
            "items": [{"productId": "shirt", "quantity": 2, "unitPrice": 5000}],
            "couponCode": "MISSING",
        })
        body = r.json()
        assert body["total"] == 10000
        assert body["couponCode"] is None
