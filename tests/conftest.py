"""
Shared fixtures: an in-memory SQLite database per test.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import (
    Base, Category, Customer, DiscountType, LoyaltyReward, LoyaltyTier, Product,
    Promotion, RewardType,
)

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create an in-memory SQLite database for testing."""
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def setup_data(db_session):
    """A category, two products and a customer."""
    breads = Category(id=1, name="Breads")
    pastries = Category(id=2, name="Pastries")
    loaf = Product(id=1, name="Sourdough Loaf", price=Decimal("100.00"), stock=10, category_id=1)
    croissant = Product(id=2, name="Croissant", price=Decimal("2.50"), stock=50, category_id=2)
    customer = Customer(id=1, name="Test Customer", email="test@example.com")
    db_session.add_all([breads, pastries, loaf, croissant, customer])
    db_session.commit()
    return {"loaf": loaf, "croissant": croissant, "customer": customer}


@pytest.fixture
def tiers(db_session):
    tiers = [
        LoyaltyTier(id=1, name="Bronze", points_threshold=0, points_multiplier=Decimal("1.00")),
        LoyaltyTier(id=2, name="Silver", points_threshold=500, points_multiplier=Decimal("1.25"),
                    free_shipping=True),
        LoyaltyTier(id=3, name="Gold", points_threshold=1000, points_multiplier=Decimal("1.50"),
                    discount_percentage=5, free_shipping=True),
    ]
    db_session.add_all(tiers)
    db_session.commit()
    return tiers


@pytest.fixture
def reward(db_session):
    reward = LoyaltyReward(id=1, name="$5 off", points_cost=250,
                           reward_type=RewardType.DISCOUNT_AMOUNT, discount_amount=Decimal("5.00"))
    db_session.add(reward)
    db_session.commit()
    return reward


@pytest.fixture
def make_promotion(db_session):
    """Factory for promotions starting a day before NOW."""

    def _make(**fields):
        values = {
            "name": "Promo",
            "discount_type": DiscountType.PERCENTAGE,
            "discount_value": Decimal("10"),
            "start_date": datetime(2024, 5, 31),
            "is_active": True,
            "usage_count": 0,
        }
        values.update(fields)
        promotion = Promotion(**values)
        db_session.add(promotion)
        db_session.commit()
        return promotion

    return _make
