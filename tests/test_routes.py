"""
API tests through the FastAPI test client.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import loyalty
from main import app
from models import get_db


@pytest.fixture
def client(engine, setup_data, tiers, reward):
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_list_products(client):
    response = client.get("/api/products")
    assert response.status_code == 200
    assert [p["name"] for p in response.json()] == ["Sourdough Loaf", "Croissant"]


def test_place_and_read_order(client):
    response = client.post("/api/orders", json={
        "customer_id": 1,
        "items": [{"product_id": 2, "quantity": 4}],
    })
    assert response.status_code == 200
    order = response.json()
    assert order["status"] == "PENDING"
    assert Decimal(str(order["total"])) == Decimal("10.00")

    response = client.get(f"/api/orders/{order['id']}")
    assert response.json()["order_number"] == order["order_number"]


def test_order_errors(client):
    assert client.get("/api/orders/999").status_code == 404

    response = client.post("/api/orders", json={
        "customer_id": 1,
        "items": [{"product_id": 1, "quantity": 1000}],
    })
    assert response.status_code == 400
    assert "Insufficient stock" in response.json()["detail"]

    response = client.post("/api/orders", json={
        "customer_id": 1,
        "items": [{"product_id": 1, "quantity": 0}],
    })
    assert response.status_code == 422


def test_status_flow_and_refund(client):
    order = client.post("/api/orders", json={
        "customer_id": 1, "items": [{"product_id": 1, "quantity": 1}],
    }).json()

    response = client.post(f"/api/orders/{order['id']}/status", json={"status": "COMPLETED"})
    assert response.status_code == 400

    for status in ("CONFIRMED", "PREPARING", "READY", "COMPLETED"):
        response = client.post(f"/api/orders/{order['id']}/status", json={"status": status})
        assert response.status_code == 200
    assert client.get("/api/loyalty/customers/1").json()["balance"] == 100

    response = client.post("/api/refunds", json={"order_id": order["id"]})
    assert response.status_code == 200
    assert response.json()["status"] == "REFUNDED"
    assert client.post("/api/refunds", json={"order_id": order["id"]}).status_code == 400


def test_cancel_order(client):
    order = client.post("/api/orders", json={
        "customer_id": 1, "items": [{"product_id": 1, "quantity": 1}],
    }).json()
    response = client.post(f"/api/orders/{order['id']}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    assert client.post(f"/api/orders/{order['id']}/cancel").status_code == 400


def test_promotion_create_validate_apply(client):
    response = client.post("/api/promotions", json={
        "name": "Ten off",
        "promo_code": "SAVE10",
        "discount_type": "PERCENTAGE",
        "discount_value": "10",
        "usage_limit": 1,
        "start_date": "2024-01-01T00:00:00",
    })
    assert response.status_code == 200
    assert [p["promo_code"] for p in client.get("/api/promotions").json()] == ["SAVE10"]

    response = client.post("/api/promotions/validate", json={
        "promo_code": "SAVE10", "customer_id": 1, "order_total": "50.00",
    })
    assert response.json()["valid"] is True
    assert Decimal(str(response.json()["discount_amount"])) == Decimal("5.00")

    response = client.post("/api/promotions/apply", json={
        "promo_code": "SAVE10", "customer_id": 1, "order_total": "50.00",
    })
    assert response.status_code == 200
    assert Decimal(str(response.json()["final_amount"])) == Decimal("45.00")

    response = client.post("/api/promotions/apply", json={
        "promo_code": "SAVE10", "customer_id": 1, "order_total": "50.00",
    })
    assert response.status_code == 400

    response = client.post("/api/promotions/validate", json={
        "promo_code": "NOPE", "customer_id": 1, "order_total": "50.00",
    })
    assert response.json()["valid"] is False


def test_loyalty_endpoints(client):
    response = client.post("/api/loyalty/award", json={"customer_id": 1, "amount": "120.00"})
    assert response.status_code == 200
    assert response.json()["points_awarded"] == 120

    # 120 points cannot pay for a 250 point reward
    response = client.post("/api/loyalty/redeem", json={"customer_id": 1, "reward_id": 1})
    assert response.status_code == 409

    summary = client.get("/api/loyalty/customers/1").json()
    assert summary["tier"]["name"] == "Bronze"
    assert summary["next_tier"]["name"] == "Silver"
    assert summary["points_to_next_tier"] == 380

    assert len(client.get("/api/loyalty/customers/1/history").json()) == 1
    assert client.get("/api/loyalty/customers/1/rewards").json() == []
    assert [t["name"] for t in client.get("/api/loyalty/tiers").json()] == ["Bronze", "Silver", "Gold"]
    assert client.get("/api/loyalty/customers/999").status_code == 404
    assert client.post("/api/loyalty/redeem", json={"customer_id": 1, "reward_id": 99}).status_code == 404


def test_expire_endpoint(client, db_session):
    loyalty.award_bonus_points(db_session, 1, 50, "Old", datetime(2020, 1, 1))

    response = client.post("/api/loyalty/expire")
    assert response.json() == {"processed": 1}
    assert client.post("/api/loyalty/expire").json() == {"processed": 0}


def test_promotion_admin_endpoints(client):
    created = client.post("/api/promotions", json={
        "name": "Pastry week",
        "promo_code": "PASTRY",
        "discount_type": "BUY_ONE_GET_ONE",
        "discount_value": "0",
        "category_id": 2,
        "start_date": "2024-01-01T00:00:00",
    }).json()
    promo_id = created["id"]

    response = client.put(f"/api/promotions/{promo_id}", json={"maximum_discount": "3.00"})
    assert response.status_code == 200
    assert Decimal(str(response.json()["maximum_discount"])) == Decimal("3.00")

    found = client.get("/api/promotions/search", params={"category_id": 2}).json()
    assert [p["id"] for p in found] == [promo_id]

    assert client.post(f"/api/promotions/{promo_id}/deactivate").json()["is_active"] is False
    assert client.get("/api/promotions").json() == []
    assert client.post(f"/api/promotions/{promo_id}/activate").json()["is_active"] is True

    assert client.delete(f"/api/promotions/{promo_id}").json() == {"id": promo_id, "deleted": True}
    assert client.get(f"/api/promotions/{promo_id}").status_code == 404


def test_apply_promotion_to_order_endpoint(client):
    client.post("/api/promotions", json={
        "name": "Once", "promo_code": "ONCE", "discount_type": "FIXED_AMOUNT",
        "discount_value": "2.00", "usage_limit": 1, "start_date": "2024-01-01T00:00:00",
    })
    order = client.post("/api/orders", json={
        "customer_id": 1, "items": [{"product_id": 2, "quantity": 4}],
    }).json()

    assert client.post("/api/promotions/apply", json={
        "promo_code": "ONCE", "customer_id": 1, "order_id": 999, "order_total": "10.00",
    }).status_code == 404

    response = client.post("/api/promotions/apply", json={
        "promo_code": "ONCE", "customer_id": 1, "order_id": order["id"], "order_total": "10.00",
    })
    assert response.status_code == 200
    usages = client.get("/api/promotions/usages", params={"order_id": order["id"]}).json()
    assert len(usages) == 1

    client.post(f"/api/orders/{order['id']}/cancel")
    assert client.get(f"/api/promotions/{usages[0]['promotion_id']}").json()["usage_count"] == 0


def test_tier_and_reward_admin_endpoints(client):
    tier = client.post("/api/loyalty/tiers", json={
        "name": "Platinum", "points_threshold": 5000, "points_multiplier": "2.0",
    }).json()
    response = client.put(f"/api/loyalty/tiers/{tier['id']}", json={"free_shipping": True})
    assert response.json()["free_shipping"] is True
    assert client.delete(f"/api/loyalty/tiers/{tier['id']}").status_code == 200
    assert client.delete(f"/api/loyalty/tiers/{tier['id']}").status_code == 404

    reward = client.post("/api/loyalty/rewards", json={
        "name": "Free slice", "points_cost": 80, "reward_type": "FREE_PRODUCT",
    }).json()
    response = client.put(f"/api/loyalty/rewards/{reward['id']}", json={"points_cost": 90})
    assert response.json()["points_cost"] == 90
    assert [r["name"] for r in client.get("/api/loyalty/rewards").json()] == ["Free slice", "$5 off"]
    assert client.delete(f"/api/loyalty/rewards/{reward['id']}").status_code == 200
    assert client.put(f"/api/loyalty/rewards/{reward['id']}", json={"points_cost": 1}).status_code == 404
