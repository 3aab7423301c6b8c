"""
Database models for the bakery backend.
"""

import enum

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, ForeignKey, Boolean, Enum,
    create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from utils import get_config, utcnow

Base = declarative_base()

DATABASE_URL = get_config()["database_url"]
engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


Money = Numeric(10, 2, asdecimal=True)


# ── Enums ─────────────────────────────────────────────────────────

class DiscountType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    BUY_ONE_GET_ONE = "BUY_ONE_GET_ONE"
    FREE_SHIPPING = "FREE_SHIPPING"


class TransactionType(str, enum.Enum):
    EARN = "EARN"
    REDEEM = "REDEEM"
    EXPIRE = "EXPIRE"
    ADJUST = "ADJUST"


class RewardType(str, enum.Enum):
    DISCOUNT_AMOUNT = "DISCOUNT_AMOUNT"
    DISCOUNT_PERCENTAGE = "DISCOUNT_PERCENTAGE"
    FREE_PRODUCT = "FREE_PRODUCT"
    FREE_SHIPPING = "FREE_SHIPPING"
    SPECIAL_OFFER = "SPECIAL_OFFER"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY = "READY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class DeliveryMethod(str, enum.Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"


class InvoiceStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


# ── Catalog ───────────────────────────────────────────────────────

class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(String(500), default="")
    price = Column(Money, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    category = relationship("Category")


# ── Customers ─────────────────────────────────────────────────────

class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(120), unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    orders = relationship("Order", back_populates="customer")


# ── Promotions ────────────────────────────────────────────────────

class Promotion(Base):
    __tablename__ = "promotions"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    promo_code = Column(String(50), unique=True, nullable=True, index=True)
    discount_type = Column(Enum(DiscountType), nullable=False)
    discount_value = Column(Money, nullable=False)
    minimum_order_value = Column(Money, nullable=True)
    maximum_discount = Column(Money, nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    per_customer_limit = Column(Integer, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    usages = relationship("PromotionUsage", back_populates="promotion")


class PromotionUsage(Base):
    """One application of a promotion. Written once, never updated."""

    __tablename__ = "promotion_usages"

    id = Column(Integer, primary_key=True, index=True)
    promotion_id = Column(Integer, ForeignKey("promotions.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    discount_amount = Column(Money, nullable=False)
    used_at = Column(DateTime, default=utcnow)

    promotion = relationship("Promotion", back_populates="usages")
    order = relationship("Order")


# ── Loyalty ───────────────────────────────────────────────────────

class LoyaltyTier(Base):
    __tablename__ = "loyalty_tiers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)
    description = Column(String(500), nullable=True)
    points_threshold = Column(Integer, nullable=False)
    points_multiplier = Column(Numeric(5, 2), nullable=False, default=1)
    discount_percentage = Column(Integer, nullable=True)
    free_shipping = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)


class LoyaltyReward(Base):
    __tablename__ = "loyalty_rewards"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    points_cost = Column(Integer, nullable=False)
    reward_type = Column(Enum(RewardType), nullable=False)
    discount_amount = Column(Money, nullable=True)
    discount_percentage = Column(Integer, nullable=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)


class LoyaltyPoints(Base):
    """Append-only points ledger entry."""

    __tablename__ = "loyalty_points"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    points = Column(Integer, nullable=False)  # signed delta
    total_points = Column(Integer, nullable=False)  # balance after this entry
    transaction_type = Column(Enum(TransactionType), nullable=False)
    transaction_reference = Column(String(100), nullable=True)
    description = Column(String(255), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    expiry_date = Column(DateTime, nullable=True)
    # set on EXPIRE entries only; unique so an entry can lapse once
    expired_entry_id = Column(Integer, ForeignKey("loyalty_points.id"), unique=True, nullable=True)
    created_at = Column(DateTime, default=utcnow)


# ── Orders ────────────────────────────────────────────────────────

class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(40), unique=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    delivery_method = Column(Enum(DeliveryMethod), nullable=False, default=DeliveryMethod.PICKUP)
    subtotal = Column(Money, default=0)
    tax_amount = Column(Money, default=0)
    shipping_amount = Column(Money, default=0)
    discount_amount = Column(Money, default=0)
    total = Column(Money, default=0)
    refund_amount = Column(Money, nullable=True)  # set when refunded
    promo_code_used = Column(String(50), nullable=True)
    promotion_id = Column(Integer, ForeignKey("promotions.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    customer = relationship("Customer", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    invoice = relationship("Invoice", back_populates="order", uselist=False)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)  # snapshot at add-time
    total_price = Column(Money, nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    invoice_number = Column(String(40), unique=True, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, nullable=False)
    amount = Column(Money, nullable=False)
    tax_amount = Column(Money, default=0)
    discount_amount = Column(Money, default=0)
    shipping_amount = Column(Money, default=0)
    total_amount = Column(Money, nullable=False)
    status = Column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.PENDING)
    invoice_date = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="invoice")


# ── Create tables ─────────────────────────────────────────────────

def init_db():
    Base.metadata.create_all(bind=engine)
