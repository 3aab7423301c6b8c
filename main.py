"""
Bakery backend: orders, promotions and loyalty points (FastAPI).

Run:
    pip install -e .
    python main.py
"""

import logging
from datetime import timedelta
from decimal import Decimal

from fastapi import FastAPI

from models import (
    Category, Customer, DiscountType, LoyaltyReward, LoyaltyTier, Product, Promotion,
    RewardType, SessionLocal, init_db,
)
from routes import router
from utils import configure_logging, get_config, utcnow

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Bakery", version="0.1.0", debug=get_config()["debug"])
app.include_router(router)


# ── Seed data ─────────────────────────────────────────────────────

def seed():
    """Insert demo data if the database is empty."""
    db = SessionLocal()
    try:
        if db.query(Product).count() > 0:
            return  # already seeded

        breads = Category(name="Breads")
        pastries = Category(name="Pastries")
        cakes = Category(name="Cakes")
        db.add_all([breads, pastries, cakes])
        db.flush()

        products = [
            Product(name="Sourdough Loaf", description="Naturally leavened, 800g", price=Decimal("7.50"), stock=40, category_id=breads.id),
            Product(name="Baguette", description="Classic French stick", price=Decimal("3.25"), stock=80, category_id=breads.id),
            Product(name="Butter Croissant", description="Laminated, all-butter", price=Decimal("2.95"), stock=120, category_id=pastries.id),
            Product(name="Pain au Chocolat", description="Two batons of dark chocolate", price=Decimal("3.45"), stock=90, category_id=pastries.id),
            Product(name="Carrot Cake", description="Whole 8-inch cake, cream cheese frosting", price=Decimal("32.00"), stock=10, category_id=cakes.id),
        ]
        db.add_all(products)

        customers = [
            Customer(name="Alice Johnson", email="alice@example.com"),
            Customer(name="Bob Smith", email="bob@example.com"),
            Customer(name="Carol Lee", email="carol@example.com"),
        ]
        db.add_all(customers)

        tiers = [
            LoyaltyTier(name="Bronze", points_threshold=0, points_multiplier=Decimal("1.00")),
            LoyaltyTier(name="Silver", points_threshold=500, points_multiplier=Decimal("1.25"), free_shipping=True),
            LoyaltyTier(name="Gold", points_threshold=1000, points_multiplier=Decimal("1.50"),
                        discount_percentage=5, free_shipping=True),
        ]
        db.add_all(tiers)

        rewards = [
            LoyaltyReward(name="$5 off", points_cost=250, reward_type=RewardType.DISCOUNT_AMOUNT, discount_amount=Decimal("5.00")),
            LoyaltyReward(name="Free croissant", points_cost=100, reward_type=RewardType.FREE_PRODUCT),
            LoyaltyReward(name="Free delivery", points_cost=150, reward_type=RewardType.FREE_SHIPPING),
        ]
        db.add_all(rewards)

        now = utcnow()
        promos = [
            Promotion(name="Ten percent off", promo_code="SAVE10", discount_type=DiscountType.PERCENTAGE,
                      discount_value=Decimal("10"), minimum_order_value=Decimal("20.00"), start_date=now),
            Promotion(name="Welcome", promo_code="WELCOME5", discount_type=DiscountType.FIXED_AMOUNT,
                      discount_value=Decimal("5.00"), per_customer_limit=1, start_date=now),
            Promotion(name="Pastry week", promo_code="PASTRY2FOR1", discount_type=DiscountType.BUY_ONE_GET_ONE,
                      discount_value=Decimal("0"), category_id=pastries.id, usage_limit=100,
                      start_date=now, end_date=now + timedelta(days=7)),
            Promotion(name="Free delivery", promo_code="SHIPFREE", discount_type=DiscountType.FREE_SHIPPING,
                      discount_value=Decimal("0"), minimum_order_value=Decimal("30.00"), start_date=now),
        ]
        db.add_all(promos)

        db.commit()
        logger.info("Seeded database with products, customers, tiers, rewards and promotions")
    finally:
        db.close()


@app.get("/health")
def health():
    return {"status": "ok"}


# ── Startup ───────────────────────────────────────────────────────

@app.on_event("startup")
def on_startup():
    init_db()
    seed()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=get_config()["debug"])
