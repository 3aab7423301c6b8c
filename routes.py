"""
API routes for the bakery backend.
"""

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

import loyalty
import promotions
from exceptions import BusinessError, InsufficientPointsError, ResourceNotFoundError
from models import (
    Customer, DeliveryMethod, DiscountType, LoyaltyPoints, OrderStatus, Product, RewardType,
    get_db,
)
from services import (
    cancel_order, get_order, place_order, process_refund, update_order_status,
)

router = APIRouter(prefix="/api")


def _http_error(e: BusinessError) -> HTTPException:
    if isinstance(e, ResourceNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InsufficientPointsError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# ── Pydantic schemas ─────────────────────────────────────────────

class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)


class PlaceOrderIn(BaseModel):
    customer_id: int
    items: list[OrderItemIn]
    promo_code: str | None = None
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP


class StatusIn(BaseModel):
    status: OrderStatus


class RefundIn(BaseModel):
    order_id: int


class ApplyPromotionIn(BaseModel):
    promo_code: str
    customer_id: int
    order_id: int | None = None
    order_total: Decimal = Field(..., ge=0)


class ValidatePromotionIn(BaseModel):
    promo_code: str
    customer_id: int
    order_total: Decimal = Field(..., ge=0)


class PromotionIn(BaseModel):
    name: str
    description: str | None = None
    promo_code: str | None = None
    discount_type: DiscountType
    discount_value: Decimal = Field(..., ge=0)
    minimum_order_value: Decimal | None = None
    maximum_discount: Decimal | None = None
    usage_limit: int | None = None
    per_customer_limit: int | None = None
    start_date: datetime
    end_date: datetime | None = None
    is_active: bool = True
    category_id: int | None = None
    product_id: int | None = None


class PromotionUpdateIn(BaseModel):
    name: str | None = None
    description: str | None = None
    promo_code: str | None = None
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(None, ge=0)
    minimum_order_value: Decimal | None = None
    maximum_discount: Decimal | None = None
    usage_limit: int | None = None
    per_customer_limit: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool | None = None
    category_id: int | None = None
    product_id: int | None = None


class TierIn(BaseModel):
    name: str
    description: str | None = None
    points_threshold: int = Field(..., ge=0)
    points_multiplier: Decimal = Field(Decimal("1.00"), ge=0)
    discount_percentage: int | None = Field(None, ge=0, le=100)
    free_shipping: bool = False
    active: bool = True


class TierUpdateIn(BaseModel):
    name: str | None = None
    description: str | None = None
    points_threshold: int | None = Field(None, ge=0)
    points_multiplier: Decimal | None = Field(None, ge=0)
    discount_percentage: int | None = Field(None, ge=0, le=100)
    free_shipping: bool | None = None
    active: bool | None = None


class RewardIn(BaseModel):
    name: str
    description: str | None = None
    points_cost: int = Field(..., gt=0)
    reward_type: RewardType
    discount_amount: Decimal | None = None
    discount_percentage: int | None = Field(None, ge=0, le=100)
    product_id: int | None = None
    active: bool = True
    start_date: datetime | None = None
    end_date: datetime | None = None


class RewardUpdateIn(BaseModel):
    name: str | None = None
    description: str | None = None
    points_cost: int | None = Field(None, gt=0)
    reward_type: RewardType | None = None
    discount_amount: Decimal | None = None
    discount_percentage: int | None = Field(None, ge=0, le=100)
    product_id: int | None = None
    active: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class AwardPointsIn(BaseModel):
    customer_id: int
    order_id: int | None = None
    amount: Decimal = Field(..., ge=0)


class RedeemIn(BaseModel):
    customer_id: int
    reward_id: int


# ── Serializers ───────────────────────────────────────────────────

def _order_out(order):
    return {
        "id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "status": order.status.value,
        "delivery_method": order.delivery_method.value,
        "subtotal": order.subtotal,
        "tax_amount": order.tax_amount,
        "shipping_amount": order.shipping_amount,
        "discount_amount": order.discount_amount,
        "total": order.total,
        "refund_amount": order.refund_amount,
        "promo_code_used": order.promo_code_used,
        "items": [
            {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_price": item.total_price,
            }
            for item in order.items
        ],
    }


def _promotion_out(p):
    return {
        "id": p.id,
        "name": p.name,
        "promo_code": p.promo_code,
        "discount_type": p.discount_type.value,
        "discount_value": p.discount_value,
        "minimum_order_value": p.minimum_order_value,
        "maximum_discount": p.maximum_discount,
        "usage_limit": p.usage_limit,
        "usage_count": p.usage_count,
        "start_date": p.start_date.isoformat(),
        "end_date": p.end_date.isoformat() if p.end_date else None,
        "is_active": p.is_active,
        "category_id": p.category_id,
        "product_id": p.product_id,
    }


def _entry_out(e: LoyaltyPoints):
    return {
        "id": e.id,
        "customer_id": e.customer_id,
        "points": e.points,
        "total_points": e.total_points,
        "transaction_type": e.transaction_type.value,
        "transaction_reference": e.transaction_reference,
        "description": e.description,
        "order_id": e.order_id,
        "expiry_date": e.expiry_date.isoformat() if e.expiry_date else None,
        "created_at": e.created_at.isoformat() if e.created_at else None,
    }


def _tier_out(t):
    if t is None:
        return None
    return {
        "id": t.id,
        "name": t.name,
        "points_threshold": t.points_threshold,
        "points_multiplier": t.points_multiplier,
        "discount_percentage": t.discount_percentage,
        "free_shipping": t.free_shipping,
    }


def _reward_out(r):
    return {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "points_cost": r.points_cost,
        "reward_type": r.reward_type.value,
        "discount_amount": r.discount_amount,
        "discount_percentage": r.discount_percentage,
        "product_id": r.product_id,
        "active": r.active,
    }


def _usage_out(u):
    return {
        "id": u.id,
        "promotion_id": u.promotion_id,
        "customer_id": u.customer_id,
        "order_id": u.order_id,
        "discount_amount": u.discount_amount,
        "used_at": u.used_at.isoformat() if u.used_at else None,
    }


# ── Products ──────────────────────────────────────────────────────

@router.get("/products")
def list_products(db: Session = Depends(get_db)):
    products = db.query(Product).all()
    return [
        {
            "id": p.id,
            "name": p.name,
            "description": p.description,
            "price": p.price,
            "stock": p.stock,
            "category_id": p.category_id,
        }
        for p in products
    ]


# ── Orders ────────────────────────────────────────────────────────

@router.post("/orders")
def create_order(body: PlaceOrderIn, db: Session = Depends(get_db)):
    try:
        order = place_order(
            db=db,
            customer_id=body.customer_id,
            items=[item.model_dump() for item in body.items],
            promo_code=body.promo_code,
            delivery_method=body.delivery_method,
        )
    except BusinessError as e:
        raise _http_error(e)
    return _order_out(order)


@router.get("/orders/{order_id}")
def read_order(order_id: int, db: Session = Depends(get_db)):
    try:
        order = get_order(db, order_id)
    except BusinessError as e:
        raise _http_error(e)
    return _order_out(order)


@router.post("/orders/{order_id}/status")
def change_order_status(order_id: int, body: StatusIn, db: Session = Depends(get_db)):
    try:
        order = update_order_status(db, order_id, body.status)
    except BusinessError as e:
        raise _http_error(e)
    return _order_out(order)


@router.post("/orders/{order_id}/cancel")
def cancel(order_id: int, db: Session = Depends(get_db)):
    try:
        order = cancel_order(db, order_id)
    except BusinessError as e:
        raise _http_error(e)
    return _order_out(order)


# ── Refunds ───────────────────────────────────────────────────────

@router.post("/refunds")
def refund_order(body: RefundIn, db: Session = Depends(get_db)):
    try:
        result = process_refund(db=db, order_id=body.order_id)
    except BusinessError as e:
        raise _http_error(e)
    return result


# ── Promotions ────────────────────────────────────────────────────

@router.get("/promotions")
def list_promotions(db: Session = Depends(get_db)):
    return [_promotion_out(p) for p in promotions.get_active_valid_promotions(db)]


@router.post("/promotions")
def create_promotion(body: PromotionIn, db: Session = Depends(get_db)):
    try:
        promotion = promotions.create_promotion(db, **body.model_dump())
    except BusinessError as e:
        raise _http_error(e)
    return _promotion_out(promotion)


@router.post("/promotions/validate")
def validate_promotion(body: ValidatePromotionIn, db: Session = Depends(get_db)):
    try:
        promotion = promotions.validate_promotion(
            db, body.promo_code, body.customer_id, body.order_total,
        )
    except BusinessError as e:
        return {"valid": False, "reason": str(e)}
    discount = promotions.calculate_discount(promotion, body.order_total)
    return {"valid": True, "promotion_id": promotion.id, "discount_amount": discount}


@router.post("/promotions/apply")
def apply_promotion(body: ApplyPromotionIn, db: Session = Depends(get_db)):
    try:
        return promotions.apply_promotion(
            db,
            promo_code=body.promo_code,
            customer_id=body.customer_id,
            order_id=body.order_id,
            order_total=body.order_total,
        )
    except BusinessError as e:
        raise _http_error(e)


@router.get("/promotions/search")
def search_promotions(
    discount_type: DiscountType | None = None,
    category_id: int | None = None,
    product_id: int | None = None,
    db: Session = Depends(get_db),
):
    found = promotions.get_active_promotions(
        db, discount_type=discount_type, category_id=category_id, product_id=product_id,
    )
    return [_promotion_out(p) for p in found]


@router.get("/promotions/expiring")
def expiring_promotions(days: int = 7, db: Session = Depends(get_db)):
    return [_promotion_out(p) for p in promotions.get_promotions_expiring_soon(db, days=days)]


@router.get("/promotions/usages")
def promotion_usages(
    promotion_id: int | None = None,
    customer_id: int | None = None,
    order_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    db: Session = Depends(get_db),
):
    usages = promotions.get_promotion_usages(
        db, promotion_id=promotion_id, customer_id=customer_id, order_id=order_id,
        start=start, end=end,
    )
    return [_usage_out(u) for u in usages]


@router.get("/promotions/{promotion_id}")
def read_promotion(promotion_id: int, db: Session = Depends(get_db)):
    try:
        return _promotion_out(promotions.get_promotion(db, promotion_id))
    except BusinessError as e:
        raise _http_error(e)


@router.put("/promotions/{promotion_id}")
def update_promotion(promotion_id: int, body: PromotionUpdateIn, db: Session = Depends(get_db)):
    try:
        promotion = promotions.update_promotion(
            db, promotion_id, **body.model_dump(exclude_unset=True),
        )
    except BusinessError as e:
        raise _http_error(e)
    return _promotion_out(promotion)


@router.post("/promotions/{promotion_id}/activate")
def activate_promotion(promotion_id: int, db: Session = Depends(get_db)):
    try:
        return _promotion_out(promotions.activate_promotion(db, promotion_id))
    except BusinessError as e:
        raise _http_error(e)


@router.post("/promotions/{promotion_id}/deactivate")
def deactivate_promotion(promotion_id: int, db: Session = Depends(get_db)):
    try:
        return _promotion_out(promotions.deactivate_promotion(db, promotion_id))
    except BusinessError as e:
        raise _http_error(e)


@router.delete("/promotions/{promotion_id}")
def delete_promotion(promotion_id: int, db: Session = Depends(get_db)):
    try:
        promotions.delete_promotion(db, promotion_id)
    except BusinessError as e:
        raise _http_error(e)
    return {"id": promotion_id, "deleted": True}


# ── Loyalty ───────────────────────────────────────────────────────

@router.get("/loyalty/tiers")
def list_tiers(db: Session = Depends(get_db)):
    return [_tier_out(t) for t in loyalty.get_all_tiers(db)]


@router.post("/loyalty/tiers")
def create_tier(body: TierIn, db: Session = Depends(get_db)):
    return _tier_out(loyalty.create_tier(db, **body.model_dump()))


@router.put("/loyalty/tiers/{tier_id}")
def update_tier(tier_id: int, body: TierUpdateIn, db: Session = Depends(get_db)):
    try:
        tier = loyalty.update_tier(db, tier_id, **body.model_dump(exclude_unset=True))
    except BusinessError as e:
        raise _http_error(e)
    return _tier_out(tier)


@router.delete("/loyalty/tiers/{tier_id}")
def delete_tier(tier_id: int, db: Session = Depends(get_db)):
    try:
        loyalty.delete_tier(db, tier_id)
    except BusinessError as e:
        raise _http_error(e)
    return {"id": tier_id, "deleted": True}


@router.get("/loyalty/rewards")
def list_rewards(db: Session = Depends(get_db)):
    return [_reward_out(r) for r in loyalty.get_all_rewards(db)]


@router.post("/loyalty/rewards")
def create_reward(body: RewardIn, db: Session = Depends(get_db)):
    return _reward_out(loyalty.create_reward(db, **body.model_dump()))


@router.put("/loyalty/rewards/{reward_id}")
def update_reward(reward_id: int, body: RewardUpdateIn, db: Session = Depends(get_db)):
    try:
        reward = loyalty.update_reward(db, reward_id, **body.model_dump(exclude_unset=True))
    except BusinessError as e:
        raise _http_error(e)
    return _reward_out(reward)


@router.delete("/loyalty/rewards/{reward_id}")
def delete_reward(reward_id: int, db: Session = Depends(get_db)):
    try:
        loyalty.delete_reward(db, reward_id)
    except BusinessError as e:
        raise _http_error(e)
    return {"id": reward_id, "deleted": True}


@router.get("/loyalty/customers/{customer_id}")
def loyalty_summary(customer_id: int, db: Session = Depends(get_db)):
    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")

    upcoming = loyalty.next_tier(db, customer_id)
    return {
        "customer_id": customer_id,
        "balance": loyalty.current_balance(db, customer_id),
        "tier": _tier_out(loyalty.current_tier(db, customer_id)),
        "next_tier": _tier_out(upcoming[0]) if upcoming else None,
        "points_to_next_tier": upcoming[1] if upcoming else 0,
    }


@router.get("/loyalty/customers/{customer_id}/history")
def points_history(customer_id: int, db: Session = Depends(get_db)):
    return [_entry_out(e) for e in loyalty.get_points_history(db, customer_id)]


@router.get("/loyalty/customers/{customer_id}/rewards")
def available_rewards(customer_id: int, db: Session = Depends(get_db)):
    return [_reward_out(r) for r in loyalty.get_available_rewards(db, customer_id)]


@router.post("/loyalty/award")
def award_points(body: AwardPointsIn, db: Session = Depends(get_db)):
    try:
        entry = loyalty.award_points_for_purchase(
            db, body.customer_id, body.order_id, body.amount,
        )
    except BusinessError as e:
        raise _http_error(e)
    return {"points_awarded": entry.points, "entry": _entry_out(entry)}


@router.post("/loyalty/redeem")
def redeem(body: RedeemIn, db: Session = Depends(get_db)):
    try:
        entry = loyalty.redeem_points(db, body.customer_id, body.reward_id)
    except BusinessError as e:
        raise _http_error(e)
    return _entry_out(entry)


@router.post("/loyalty/expire")
def expire_points(db: Session = Depends(get_db)):
    return {"processed": loyalty.process_expired_points(db)}
