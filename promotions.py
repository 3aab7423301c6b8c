"""
Promotion validation and discount calculation.

Handles:
  - Validity checks (active flag, date window, usage limit)
  - Discount calculation per discount type
  - Applying a promotion to an order with exactly-once usage accounting
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from exceptions import (
    BusinessError, PromotionInvalidError, PromotionNotApplicableError, ResourceNotFoundError,
)
from models import Customer, DiscountType, Order, OrderStatus, Promotion, PromotionUsage
from utils import get_config, to_money, utcnow

logger = logging.getLogger(__name__)

BOGO_RATE = Decimal("0.5")

# orders in these states no longer hold a promotion usage
RELEASED_ORDER_STATES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)


def is_valid(promotion: Promotion, now: datetime | None = None) -> bool:
    """Return True if the promotion can be used at `now`. No side effects."""
    now = now or utcnow()
    if not promotion.is_active:
        return False
    if now < promotion.start_date:
        return False
    if promotion.end_date is not None and now >= promotion.end_date:
        return False
    if promotion.usage_limit is not None and (promotion.usage_count or 0) >= promotion.usage_limit:
        return False
    return True


def meets_minimum(promotion: Promotion, order_total) -> bool:
    if promotion.minimum_order_value is None:
        return True
    return to_money(order_total) >= to_money(promotion.minimum_order_value)


def calculate_discount(promotion: Promotion, order_total) -> Decimal:
    """Calculate the discount a promotion grants on an order total.

    An unmet minimum order value yields zero rather than an error. Fixed
    amounts never exceed the order total, and `maximum_discount` caps every
    discount type.

    Args:
        promotion: The promotion to evaluate.
        order_total: The pre-discount total the promotion applies to.

    Returns:
        The discount, rounded to cents, never negative.
    """
    order_total = to_money(order_total)
    if not meets_minimum(promotion, order_total):
        return to_money(0)

    value = to_money(promotion.discount_value)
    kind = promotion.discount_type

    if kind == DiscountType.PERCENTAGE:
        discount = order_total * value / Decimal(100)
    elif kind == DiscountType.FIXED_AMOUNT:
        discount = min(value, order_total)
    elif kind == DiscountType.BUY_ONE_GET_ONE:
        # flat half off the total; pairs of eligible items are not inspected
        discount = order_total * BOGO_RATE
    elif kind == DiscountType.FREE_SHIPPING:
        discount = get_config()["free_shipping_discount"]
    else:
        discount = Decimal(0)

    if promotion.maximum_discount is not None:
        discount = min(discount, to_money(promotion.maximum_discount))

    return max(to_money(discount), to_money(0))


def eligible_subtotal(promotion: Promotion, items) -> Decimal:
    """Sum the order lines a scoped promotion applies to.

    Unscoped promotions apply to every line. Items are OrderItem rows with
    their `product` loaded.
    """
    total = Decimal(0)
    for item in items:
        if promotion.product_id is not None and item.product_id != promotion.product_id:
            continue
        if promotion.category_id is not None and item.product.category_id != promotion.category_id:
            continue
        total += to_money(item.total_price)
    return to_money(total)


# ── Lookups ───────────────────────────────────────────────────────

def get_promotion_by_code(db: Session, promo_code: str) -> Promotion | None:
    code = (promo_code or "").strip()
    if not code:
        return None
    return db.query(Promotion).filter(Promotion.promo_code == code).first()


def count_customer_usages(db: Session, promotion_id: int, customer_id: int) -> int:
    """Count a customer's usages that still hold (order not cancelled/refunded)."""
    return (
        db.query(func.count(PromotionUsage.id))
        .outerjoin(Order, PromotionUsage.order_id == Order.id)
        .filter(
            PromotionUsage.promotion_id == promotion_id,
            PromotionUsage.customer_id == customer_id,
            or_(Order.id.is_(None), Order.status.notin_(RELEASED_ORDER_STATES)),
        )
        .scalar()
    )


def get_active_valid_promotions(db: Session, now: datetime | None = None) -> list[Promotion]:
    now = now or utcnow()
    return (
        db.query(Promotion)
        .filter(
            Promotion.is_active == True,
            Promotion.start_date <= now,
            or_(Promotion.end_date.is_(None), Promotion.end_date > now),
            or_(Promotion.usage_limit.is_(None), Promotion.usage_count < Promotion.usage_limit),
        )
        .order_by(Promotion.id)
        .all()
    )


def get_promotions_expiring_soon(
    db: Session, now: datetime | None = None, days: int = 7,
) -> list[Promotion]:
    now = now or utcnow()
    return (
        db.query(Promotion)
        .filter(
            Promotion.is_active == True,
            Promotion.end_date.isnot(None),
            Promotion.end_date > now,
            Promotion.end_date <= now + timedelta(days=days),
        )
        .order_by(Promotion.end_date)
        .all()
    )


def create_promotion(db: Session, **fields) -> Promotion:
    """Create a promotion, rejecting a promo code that is already taken."""
    code = fields.get("promo_code")
    if code and get_promotion_by_code(db, code):
        raise BusinessError(f"Promotion with code {code} already exists")

    promotion = Promotion(**fields)
    db.add(promotion)
    db.commit()
    db.refresh(promotion)
    logger.info("Created promotion %s (%s)", promotion.id, promotion.promo_code)
    return promotion


def get_promotion(db: Session, promotion_id: int) -> Promotion:
    promotion = db.query(Promotion).filter(Promotion.id == promotion_id).first()
    if not promotion:
        raise ResourceNotFoundError("Promotion not found")
    return promotion


def get_all_promotions(db: Session) -> list[Promotion]:
    return db.query(Promotion).order_by(Promotion.id).all()


def get_active_promotions(
    db: Session,
    discount_type: DiscountType | None = None,
    category_id: int | None = None,
    product_id: int | None = None,
) -> list[Promotion]:
    """Active promotions, optionally narrowed by discount type, category or product.

    Only the active flag is checked; use `get_active_valid_promotions` for the
    ones usable right now.
    """
    query = db.query(Promotion).filter(Promotion.is_active == True)
    if discount_type is not None:
        query = query.filter(Promotion.discount_type == discount_type)
    if category_id is not None:
        query = query.filter(Promotion.category_id == category_id)
    if product_id is not None:
        query = query.filter(Promotion.product_id == product_id)
    return query.order_by(Promotion.id).all()


def get_promotion_usages(
    db: Session,
    promotion_id: int | None = None,
    customer_id: int | None = None,
    order_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[PromotionUsage]:
    query = db.query(PromotionUsage)
    if promotion_id is not None:
        query = query.filter(PromotionUsage.promotion_id == promotion_id)
    if customer_id is not None:
        query = query.filter(PromotionUsage.customer_id == customer_id)
    if order_id is not None:
        query = query.filter(PromotionUsage.order_id == order_id)
    if start is not None:
        query = query.filter(PromotionUsage.used_at >= start)
    if end is not None:
        query = query.filter(PromotionUsage.used_at <= end)
    return query.order_by(PromotionUsage.used_at, PromotionUsage.id).all()


# ── Admin ─────────────────────────────────────────────────────────

def update_promotion(db: Session, promotion_id: int, **fields) -> Promotion:
    """Update the given fields of a promotion.

    `usage_count` is owned by `record_usage`/`release_promotion_usage` and
    cannot be set here.
    """
    promotion = get_promotion(db, promotion_id)
    fields.pop("usage_count", None)
    code = fields.get("promo_code")
    if code and code != promotion.promo_code and get_promotion_by_code(db, code):
        raise BusinessError(f"Promotion with code {code} already exists")

    for name, value in fields.items():
        setattr(promotion, name, value)
    db.commit()
    db.refresh(promotion)
    logger.info("Updated promotion %s: %s", promotion_id, ", ".join(sorted(fields)))
    return promotion


def set_promotion_active(db: Session, promotion_id: int, active: bool) -> Promotion:
    promotion = get_promotion(db, promotion_id)
    promotion.is_active = active
    db.commit()
    db.refresh(promotion)
    logger.info("Promotion %s %s", promotion_id, "activated" if active else "deactivated")
    return promotion


def activate_promotion(db: Session, promotion_id: int) -> Promotion:
    return set_promotion_active(db, promotion_id, True)


def deactivate_promotion(db: Session, promotion_id: int) -> Promotion:
    return set_promotion_active(db, promotion_id, False)


def delete_promotion(db: Session, promotion_id: int) -> None:
    """Delete a promotion that was never used.

    Used promotions are referenced by usage records and orders; deactivate
    them instead.
    """
    promotion = get_promotion(db, promotion_id)
    used = db.query(PromotionUsage.id).filter(PromotionUsage.promotion_id == promotion_id).first()
    if used:
        raise BusinessError(f"Promotion {promotion_id} has been used, deactivate it instead")
    db.delete(promotion)
    db.commit()
    logger.info("Deleted promotion %s", promotion_id)


# ── Validation & application ──────────────────────────────────────

def _per_customer_limit(promotion: Promotion) -> int | None:
    if promotion.per_customer_limit is not None:
        return promotion.per_customer_limit
    return get_config()["promotion_per_customer_limit"]


def check_promotion(
    db: Session,
    promotion: Promotion,
    customer_id: int,
    order_total,
    now: datetime | None = None,
) -> Promotion:
    """Raise unless `promotion` can be applied for this customer and total."""
    now = now or utcnow()
    code = promotion.promo_code or promotion.id

    if not is_valid(promotion, now):
        logger.warning("Rejected promotion %s: not valid at %s", code, now)
        raise PromotionInvalidError(f"Promotion {code} is not valid")

    limit = _per_customer_limit(promotion)
    if limit is not None and count_customer_usages(db, promotion.id, customer_id) >= limit:
        logger.warning("Rejected promotion %s: customer %s reached limit", code, customer_id)
        raise PromotionInvalidError(f"Promotion {code} usage limit reached for this customer")

    if not meets_minimum(promotion, order_total):
        logger.warning("Promotion %s not applicable to total %s", code, order_total)
        raise PromotionNotApplicableError(
            f"Order total {to_money(order_total)} is below the minimum "
            f"{to_money(promotion.minimum_order_value)} for promotion {code}"
        )
    return promotion


def validate_promotion(
    db: Session,
    promo_code: str,
    customer_id: int,
    order_total,
    now: datetime | None = None,
) -> Promotion:
    """Look up a promo code and check it.

    Raises:
        PromotionInvalidError: Unknown code, inactive, outside its window,
            exhausted, or the customer's own limit is reached.
        PromotionNotApplicableError: Valid, but the order is below the minimum.
    """
    promotion = get_promotion_by_code(db, promo_code)
    if not promotion:
        logger.warning("Rejected unknown promo code %r", promo_code)
        raise PromotionInvalidError(f"Invalid or expired promo code: {promo_code}")
    return check_promotion(db, promotion, customer_id, order_total, now)


def record_usage(
    db: Session,
    promotion: Promotion,
    customer_id: int,
    order_id: int | None,
    discount_amount: Decimal,
) -> PromotionUsage:
    """Claim one use of `promotion` and write the usage record. Does not commit.

    The counter is incremented with a single conditional UPDATE so concurrent
    requests can never push it past `usage_limit`.
    """
    if not db.query(Customer.id).filter(Customer.id == customer_id).first():
        raise ResourceNotFoundError("Customer not found")

    claimed = (
        db.query(Promotion)
        .filter(
            Promotion.id == promotion.id,
            Promotion.is_active == True,
            or_(Promotion.usage_limit.is_(None), Promotion.usage_count < Promotion.usage_limit),
        )
        .update({Promotion.usage_count: Promotion.usage_count + 1}, synchronize_session="fetch")
    )
    if not claimed:
        logger.warning("Promotion %s exhausted while applying", promotion.id)
        raise PromotionInvalidError(f"Promotion {promotion.promo_code or promotion.id} is not valid")

    usage = PromotionUsage(
        promotion_id=promotion.id,
        customer_id=customer_id,
        order_id=order_id,
        discount_amount=to_money(discount_amount),
        used_at=utcnow(),
    )
    db.add(usage)
    db.flush()
    return usage


def _order_for_promotion(db: Session, order_id: int, customer_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise ResourceNotFoundError("Order not found")
    if order.customer_id != customer_id:
        raise BusinessError(f"Order #{order_id} does not belong to customer {customer_id}")
    if order.status in RELEASED_ORDER_STATES:
        raise BusinessError(f"Order #{order_id} is {order.status.value.lower()}")
    if order.promotion_id is not None:
        raise BusinessError(f"Order #{order_id} already has a promotion applied")
    return order


def apply_promotion(
    db: Session,
    promo_code: str,
    customer_id: int,
    order_id: int | None,
    order_total,
    now: datetime | None = None,
) -> dict:
    """Apply a promo code to an order total and record the usage.

    Args:
        db: Database session.
        promo_code: Code entered by the customer.
        customer_id: ID of the customer using the code.
        order_id: ID of the order the discount belongs to. The order is linked
            to the promotion so cancelling or refunding it gives the use back.
        order_total: The pre-discount total.

    Returns:
        Dict with the promotion, usage record id, discount and final amount.

    Raises:
        ResourceNotFoundError: Unknown customer or order.
        BusinessError: The order belongs to another customer, is closed, or
            already carries a promotion.
        PromotionInvalidError, PromotionNotApplicableError: Nothing is written.
    """
    order_total = to_money(order_total)
    try:
        order = _order_for_promotion(db, order_id, customer_id) if order_id is not None else None
        promotion = validate_promotion(db, promo_code, customer_id, order_total, now)
        discount = calculate_discount(promotion, order_total)
        usage = record_usage(db, promotion, customer_id, order_id, discount)
        if order is not None:
            order.promotion_id = promotion.id
            order.promo_code_used = promotion.promo_code
    except BusinessError:
        db.rollback()
        raise
    db.commit()

    logger.info(
        "Applied promotion %s for customer %s on order %s: discount %s",
        promotion.promo_code, customer_id, order_id, discount,
    )
    return {
        "promotion_id": promotion.id,
        "usage_id": usage.id,
        "discount_amount": discount,
        "final_amount": max(order_total - discount, to_money(0)),
    }


def release_promotion_usage(db: Session, order: Order) -> bool:
    """Give back the usage an order held. Does not commit.

    The usage record itself stays as audit trail; cancelled and refunded orders
    are excluded when counting a customer's usages.
    """
    if order.promotion_id is None:
        return False
    released = (
        db.query(Promotion)
        .filter(Promotion.id == order.promotion_id, Promotion.usage_count > 0)
        .update({Promotion.usage_count: Promotion.usage_count - 1}, synchronize_session="fetch")
    )
    if released:
        logger.info("Released promotion %s usage from order %s", order.promotion_id, order.id)
    return bool(released)
