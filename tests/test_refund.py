"""
Tests for refund processing to ensure correct refund amounts.
"""

from datetime import datetime
from decimal import Decimal

import pytest

import loyalty
from models import InvoiceStatus, OrderStatus, Product
from services import place_order, process_refund, update_order_status

NOW = datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def promo(make_promotion):
    return make_promotion(promo_code="DISCOUNT20", discount_value=Decimal("20"))


def _complete(db_session, order_id):
    for status in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
        update_order_status(db_session, order_id, status, NOW)


def test_refund_uses_order_total_not_current_price(db_session, setup_data):
    """Test that refund uses order.total, not current product prices."""
    # Place an order at $100
    order = place_order(db=db_session, customer_id=1, items=[{"product_id": 1, "quantity": 1}], now=NOW)
    assert order.total == Decimal("100.00")
    original_total = order.total

    # Change the product price after the order
    product = db_session.query(Product).filter(Product.id == 1).first()
    product.price = Decimal("150.00")
    db_session.commit()

    result = process_refund(db=db_session, order_id=order.id, now=NOW)

    assert result["refund_amount"] == original_total
    assert result["status"] == "REFUNDED"


def test_refund_with_promo_code_discount(db_session, setup_data, promo):
    """Test that refund reflects the discounted total when promo code was used."""
    order = place_order(db_session, 1, [{"product_id": 1, "quantity": 1}], "DISCOUNT20", now=NOW)
    assert order.subtotal == Decimal("100.00")
    assert order.discount_amount == Decimal("20.00")
    assert order.total == Decimal("80.00")

    result = process_refund(db=db_session, order_id=order.id, now=NOW)

    assert result["refund_amount"] == Decimal("80.00")
    db_session.refresh(promo)
    assert promo.usage_count == 0


def test_refund_restores_stock(db_session, setup_data):
    """Test that refund restores product stock correctly."""
    product = db_session.query(Product).filter(Product.id == 1).first()
    initial_stock = product.stock  # 10

    order = place_order(db_session, 1, [{"product_id": 1, "quantity": 3}], now=NOW)
    db_session.refresh(product)
    assert product.stock == initial_stock - 3

    process_refund(db=db_session, order_id=order.id, now=NOW)

    db_session.refresh(product)
    assert product.stock == initial_stock


def test_refund_already_refunded_order_raises_error(db_session, setup_data):
    order = place_order(db_session, 1, [{"product_id": 1, "quantity": 1}], now=NOW)

    process_refund(db=db_session, order_id=order.id, now=NOW)

    with pytest.raises(ValueError, match="Order already refunded"):
        process_refund(db=db_session, order_id=order.id, now=NOW)


def test_refund_cancelled_order_raises_error(db_session, setup_data):
    order = place_order(db_session, 1, [{"product_id": 1, "quantity": 1}], now=NOW)
    update_order_status(db_session, order.id, OrderStatus.CANCELLED, NOW)

    with pytest.raises(ValueError, match="Invalid status transition"):
        process_refund(db=db_session, order_id=order.id, now=NOW)


def test_refund_nonexistent_order_raises_error(db_session, setup_data):
    with pytest.raises(ValueError, match="Order not found"):
        process_refund(db=db_session, order_id=9999)


def test_refund_of_completed_order_reverses_points(db_session, setup_data, promo):
    """Points earned on the amount paid are taken back on refund."""
    order = place_order(db_session, 1, [{"product_id": 1, "quantity": 1}], "DISCOUNT20", now=NOW)
    _complete(db_session, order.id)
    assert loyalty.current_balance(db_session, 1, NOW) == 80

    process_refund(db=db_session, order_id=order.id, now=NOW)

    assert loyalty.current_balance(db_session, 1, NOW) == 0
    db_session.refresh(order)
    assert order.invoice.status == InvoiceStatus.REFUNDED
