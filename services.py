"""
Business logic for bakery orders.

Handles:
  - Order placement with stock validation and price snapshots
  - Total reconciliation (items + tax + shipping - discount) for orders and invoices
  - Discount choice (loyalty tier vs promo code)
  - Status transitions, cancellation and refunds
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

import loyalty
import promotions
from exceptions import (
    BusinessError, InvalidStatusTransitionError, PromotionInvalidError,
    PromotionNotApplicableError, ResourceNotFoundError,
)
from models import (
    Customer, DeliveryMethod, DiscountType, Invoice, InvoiceStatus, Order, OrderItem,
    OrderStatus, Product,
)
from utils import get_config, to_money, utcnow

logger = logging.getLogger(__name__)


# ── Status machine ────────────────────────────────────────────────

TERMINAL_STATES = {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.READY: {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    # a finished sale can still be refunded
    OrderStatus.COMPLETED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


# ── Totals ────────────────────────────────────────────────────────

def line_total(quantity: int, unit_price) -> Decimal:
    return to_money(to_money(unit_price) * quantity)


def compute_total(subtotal, tax=None, shipping=None, discount=None) -> Decimal:
    """subtotal + tax + shipping - discount, never below zero."""
    total = to_money(subtotal) + to_money(tax) + to_money(shipping) - to_money(discount)
    return max(total, to_money(0))


def recalculate_order_totals(order: Order) -> Order:
    """Recompute every item total, the subtotal and the order total in place."""
    subtotal = Decimal(0)
    for item in order.items:
        item.total_price = line_total(item.quantity, item.unit_price)
        subtotal += item.total_price
    order.subtotal = to_money(subtotal)
    order.total = compute_total(
        order.subtotal, order.tax_amount, order.shipping_amount, order.discount_amount,
    )
    return order


def recalculate_invoice_totals(invoice: Invoice) -> Invoice:
    invoice.total_amount = compute_total(
        invoice.amount, invoice.tax_amount, invoice.shipping_amount, invoice.discount_amount,
    )
    return invoice


def _generate_number(prefix: str) -> str:
    return f"{prefix}-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


# ── Placement ─────────────────────────────────────────────────────

def _choose_discount(
    db: Session,
    order: Order,
    customer: Customer,
    promo_code: str | None,
    now: datetime,
) -> tuple[Decimal, bool]:
    """Pick the discount for a new order.

    Business rule: if a customer has BOTH a tier discount and a promo code, the
    larger one applies (not both). The promotion is only recorded as used when
    it wins.

    Returns:
        (discount, waives_shipping). A free-shipping promotion discounts the
        delivery charge only, never the goods.
    """
    tier = loyalty.current_tier(db, customer.id, now)
    tier_discount = to_money(0)
    if tier and tier.discount_percentage:
        tier_discount = to_money(order.subtotal * Decimal(tier.discount_percentage) / Decimal(100))

    if not promo_code:
        return tier_discount, False

    promotion = promotions.get_promotion_by_code(db, promo_code)
    if not promotion:
        raise PromotionInvalidError(f"Invalid or expired promo code: {promo_code}")
    base = promotions.eligible_subtotal(promotion, order.items)
    if base <= 0:
        raise PromotionNotApplicableError(
            f"No items in this order qualify for promotion {promo_code}"
        )
    promotions.check_promotion(db, promotion, customer.id, base, now)
    promo_discount = promotions.calculate_discount(promotion, base)
    waives_shipping = promotion.discount_type == DiscountType.FREE_SHIPPING
    if waives_shipping:
        if to_money(order.shipping_amount) <= 0:
            raise PromotionNotApplicableError(
                f"Promotion {promo_code} waives delivery, but this order has no delivery charge"
            )
        promo_discount = min(promo_discount, to_money(order.shipping_amount))

    if promo_discount < tier_discount:
        logger.info(
            "Tier discount %s beats promotion %s (%s) on order %s",
            tier_discount, promo_code, promo_discount, order.id,
        )
        return tier_discount, False

    promotions.record_usage(db, promotion, customer.id, order.id, promo_discount)
    order.promo_code_used = promotion.promo_code
    order.promotion_id = promotion.id
    return promo_discount, waives_shipping


def place_order(
    db: Session,
    customer_id: int,
    items: list[dict],
    promo_code: str | None = None,
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP,
    now: datetime | None = None,
) -> Order:
    """Place a new order.

    Args:
        db: Database session.
        customer_id: ID of the customer.
        items: List of {"product_id": int, "quantity": int}.
        promo_code: Optional promo code string.
        delivery_method: PICKUP or DELIVERY.

    Returns:
        The created Order, in PENDING status.

    Raises:
        ResourceNotFoundError: Customer or product not found.
        BusinessError: Empty order, bad quantity or insufficient stock.
        PromotionInvalidError, PromotionNotApplicableError: Promo code rejected.
    """
    now = now or utcnow()
    config = get_config()
    try:
        customer = db.query(Customer).filter(Customer.id == customer_id).first()
        if not customer:
            raise ResourceNotFoundError("Customer not found")
        if not items:
            raise BusinessError("Order must contain at least one item")

        order = Order(
            order_number=_generate_number("ORD"),
            customer_id=customer.id,
            status=OrderStatus.PENDING,
            delivery_method=DeliveryMethod(delivery_method),
            tax_amount=to_money(0),
            shipping_amount=to_money(0),
            discount_amount=to_money(0),
            created_at=now,
        )

        for item in items:
            product = db.query(Product).filter(Product.id == item["product_id"]).first()
            if not product:
                raise ResourceNotFoundError(f"Product {item['product_id']} not found")

            quantity = item["quantity"]
            if quantity <= 0:
                raise BusinessError(f"Quantity for '{product.name}' must be positive")
            if product.stock < quantity:
                raise BusinessError(
                    f"Insufficient stock for '{product.name}': "
                    f"requested {quantity}, available {product.stock}"
                )

            order.items.append(OrderItem(
                product=product,
                product_id=product.id,
                quantity=quantity,
                unit_price=to_money(product.price),
                total_price=line_total(quantity, product.price),
            ))

            # Decrement stock
            product.stock -= quantity

        recalculate_order_totals(order)
        db.add(order)
        db.flush()

        if order.delivery_method == DeliveryMethod.DELIVERY:
            tier = loyalty.current_tier(db, customer.id, now)
            if not (tier and tier.free_shipping):
                order.shipping_amount = to_money(config["delivery_fee"])

        discount, waives_shipping = _choose_discount(db, order, customer, promo_code, now)
        if waives_shipping:
            order.discount_amount = discount
            taxable = order.subtotal
        else:
            order.discount_amount = min(discount, order.subtotal)
            taxable = order.subtotal - order.discount_amount
        order.tax_amount = to_money(taxable * config["tax_rate"])
        recalculate_order_totals(order)
    except BusinessError:
        db.rollback()
        raise

    db.commit()
    db.refresh(order)
    logger.info(
        "Placed order %s for customer %s: subtotal %s discount %s total %s",
        order.order_number, customer_id, order.subtotal, order.discount_amount, order.total,
    )
    return order


# ── Status changes ────────────────────────────────────────────────

def get_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise ResourceNotFoundError("Order not found")
    return order


def generate_invoice(db: Session, order: Order, now: datetime | None = None) -> Invoice:
    """Create the invoice for a completed order. Does not commit."""
    if order.invoice is not None:
        return order.invoice
    invoice = Invoice(
        invoice_number=_generate_number("INV"),
        order_id=order.id,
        amount=order.subtotal,
        tax_amount=order.tax_amount,
        discount_amount=order.discount_amount,
        shipping_amount=order.shipping_amount,
        status=InvoiceStatus.PENDING,
        invoice_date=now or utcnow(),
    )
    recalculate_invoice_totals(invoice)
    order.invoice = invoice
    db.add(invoice)
    return invoice


def _reverse_order(db: Session, order: Order, new_status: OrderStatus, now: datetime):
    for item in order.items:
        product = db.query(Product).filter(Product.id == item.product_id).first()
        if product:
            product.stock += item.quantity

    loyalty.reverse_points_for_order(db, order, now)
    promotions.release_promotion_usage(db, order)

    if order.invoice is not None:
        order.invoice.status = (
            InvoiceStatus.REFUNDED if new_status == OrderStatus.REFUNDED
            else InvoiceStatus.CANCELLED
        )


def update_order_status(
    db: Session,
    order_id: int,
    new_status: OrderStatus,
    now: datetime | None = None,
) -> Order:
    """Move an order through its lifecycle.

    Completing an order awards loyalty points for the amount paid and issues
    the invoice. Cancelling or refunding restores stock, reverses awarded
    points and releases the promotion usage.

    Raises:
        ResourceNotFoundError: Unknown order.
        InvalidStatusTransitionError: Transition not allowed from the current state.
    """
    now = now or utcnow()
    new_status = OrderStatus(new_status)
    try:
        order = get_order(db, order_id)
        current = order.status
        if not can_transition(current, new_status):
            raise InvalidStatusTransitionError(
                f"Invalid status transition from {current.value} to {new_status.value}"
            )

        if new_status == OrderStatus.COMPLETED:
            if loyalty.has_earned_for_order(db, order.id):
                logger.info("Order %s already earned points, skipping award", order.id)
            else:
                loyalty.earn_for_order(db, order.customer_id, order.id, order.total, now)
            generate_invoice(db, order, now)
        elif new_status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            _reverse_order(db, order, new_status, now)
            if new_status == OrderStatus.REFUNDED:
                order.refund_amount = to_money(order.total)

        order.status = new_status
        order.updated_at = now
    except BusinessError:
        db.rollback()
        raise

    db.commit()
    db.refresh(order)
    logger.info("Order %s moved from %s to %s", order.id, current.value, new_status.value)
    return order


def cancel_order(db: Session, order_id: int, now: datetime | None = None) -> Order:
    order = get_order(db, order_id)
    if order.status in TERMINAL_STATES:
        raise InvalidStatusTransitionError("Order cannot be cancelled")
    return update_order_status(db, order_id, OrderStatus.CANCELLED, now)


def process_refund(db: Session, order_id: int, now: datetime | None = None) -> dict:
    """Process a full refund for an order.

    Business rule: the refund amount is the TOTAL the customer actually paid at
    the time of purchase (order.total), never a recalculation from current
    product prices.

    Args:
        db: Database session.
        order_id: ID of the order to refund.

    Returns:
        Dict with refund details.

    Raises:
        ResourceNotFoundError: Order not found.
        InvalidStatusTransitionError: Order already refunded or cancelled.
    """
    order = get_order(db, order_id)
    if order.status == OrderStatus.REFUNDED:
        raise InvalidStatusTransitionError("Order already refunded")

    order = update_order_status(db, order_id, OrderStatus.REFUNDED, now)
    return {
        "order_id": order.id,
        "refund_amount": order.refund_amount,
        "status": order.status.value,
    }
