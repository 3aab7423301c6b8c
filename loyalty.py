"""
Loyalty points ledger and tiers.

Handles:
  - Live balance aggregation over the append-only ledger
  - Tier lookup (current and next)
  - Awarding, redeeming, reversing and expiring points

Balances are always derived from ledger entries and never stored on the
customer, so concurrent appends cannot lose an update.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_FLOOR

from sqlalchemy import and_, func, not_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased

from exceptions import BusinessError, InsufficientPointsError, ResourceNotFoundError
from models import (
    Customer, LoyaltyPoints, LoyaltyReward, LoyaltyTier, Order, TransactionType,
)
from utils import get_config, utcnow

logger = logging.getLogger(__name__)


# ── Balance ───────────────────────────────────────────────────────

def _lapsed(now: datetime):
    """Positive entries past their expiry that no EXPIRE entry compensates yet."""
    marker = aliased(LoyaltyPoints)
    compensated = select(marker.expired_entry_id).where(marker.expired_entry_id.isnot(None))
    return and_(
        LoyaltyPoints.points > 0,
        LoyaltyPoints.expiry_date.isnot(None),
        LoyaltyPoints.expiry_date <= now,
        LoyaltyPoints.id.notin_(compensated),
    )


def _ledger_sum(db: Session, customer_id: int, now: datetime) -> int:
    total = (
        db.query(func.coalesce(func.sum(LoyaltyPoints.points), 0))
        .filter(LoyaltyPoints.customer_id == customer_id, not_(_lapsed(now)))
        .scalar()
    )
    return int(total)


def current_balance(db: Session, customer_id: int, now: datetime | None = None) -> int:
    """Live points balance for a customer, never negative.

    Entries past their expiry date drop out of the balance as soon as the date
    passes, whether or not `process_expired_points` has run yet.
    """
    return max(_ledger_sum(db, customer_id, now or utcnow()), 0)


# ── Tiers ─────────────────────────────────────────────────────────

def get_all_tiers(db: Session) -> list[LoyaltyTier]:
    return (
        db.query(LoyaltyTier)
        .filter(LoyaltyTier.active == True)
        .order_by(LoyaltyTier.points_threshold.asc())
        .all()
    )


def tier_for_points(db: Session, points: int) -> LoyaltyTier | None:
    return (
        db.query(LoyaltyTier)
        .filter(LoyaltyTier.active == True, LoyaltyTier.points_threshold <= points)
        .order_by(LoyaltyTier.points_threshold.desc())
        .first()
    )


def current_tier(db: Session, customer_id: int, now: datetime | None = None) -> LoyaltyTier | None:
    return tier_for_points(db, current_balance(db, customer_id, now))


def next_tier(
    db: Session, customer_id: int, now: datetime | None = None,
) -> tuple[LoyaltyTier, int] | None:
    """Return the next tier up and the points still needed, or None at the top."""
    balance = current_balance(db, customer_id, now)
    tier = (
        db.query(LoyaltyTier)
        .filter(LoyaltyTier.active == True, LoyaltyTier.points_threshold > balance)
        .order_by(LoyaltyTier.points_threshold.asc())
        .first()
    )
    if tier is None:
        return None
    return tier, tier.points_threshold - balance


# ── Ledger writes ─────────────────────────────────────────────────

def _lock_customer(db: Session, customer_id: int) -> Customer:
    # Row lock serializes check-then-append per customer (no-op on SQLite).
    customer = (
        db.query(Customer).filter(Customer.id == customer_id).with_for_update().first()
    )
    if not customer:
        raise ResourceNotFoundError("Customer not found")
    return customer


def _expiry_from(now: datetime) -> datetime:
    return now + timedelta(days=get_config()["points_expiry_days"])


def points_for_amount(amount, multiplier) -> int:
    """floor(amount x multiplier), never negative."""
    amount = Decimal(str(amount))
    multiplier = Decimal(str(multiplier)) if multiplier is not None else Decimal(1)
    points = (amount * multiplier).to_integral_value(rounding=ROUND_FLOOR)
    return max(int(points), 0)


def has_earned_for_order(db: Session, order_id: int) -> bool:
    return (
        db.query(LoyaltyPoints.id)
        .filter(
            LoyaltyPoints.order_id == order_id,
            LoyaltyPoints.transaction_type == TransactionType.EARN,
        )
        .first()
    ) is not None


def earn_for_order(
    db: Session,
    customer_id: int,
    order_id: int | None,
    amount,
    now: datetime | None = None,
) -> LoyaltyPoints:
    """Append the EARN entry for a purchase. Does not commit."""
    now = now or utcnow()
    _lock_customer(db, customer_id)

    if order_id is not None and has_earned_for_order(db, order_id):
        raise BusinessError(f"Points already awarded for order #{order_id}")

    balance = current_balance(db, customer_id, now)
    tier = tier_for_points(db, balance)
    points = points_for_amount(amount, tier.points_multiplier if tier else None)

    entry = LoyaltyPoints(
        customer_id=customer_id,
        points=points,
        total_points=balance + points,
        transaction_type=TransactionType.EARN,
        transaction_reference=f"ORDER_{order_id}" if order_id is not None else "PURCHASE",
        description=f"Points earned for order #{order_id}",
        order_id=order_id,
        expiry_date=_expiry_from(now),
        created_at=now,
    )
    db.add(entry)
    db.flush()
    logger.info("Customer %s earned %s points (order %s)", customer_id, points, order_id)
    return entry


def award_points_for_purchase(
    db: Session,
    customer_id: int,
    order_id: int | None,
    amount,
    now: datetime | None = None,
) -> LoyaltyPoints:
    """Award points for a purchase using the customer's current tier multiplier.

    Args:
        db: Database session.
        customer_id: ID of the customer.
        order_id: ID of the order being rewarded. Each order earns once.
        amount: Amount paid.

    Returns:
        The EARN ledger entry.

    Raises:
        ResourceNotFoundError: Unknown customer or order.
        BusinessError: Points were already awarded for this order, or the
            order belongs to someone else.
    """
    try:
        if order_id is not None:
            order = db.query(Order).filter(Order.id == order_id).first()
            if not order:
                raise ResourceNotFoundError("Order not found")
            if order.customer_id != customer_id:
                raise BusinessError(f"Order #{order_id} does not belong to customer {customer_id}")
        entry = earn_for_order(db, customer_id, order_id, amount, now)
    except BusinessError:
        db.rollback()
        raise
    db.commit()
    db.refresh(entry)
    return entry


def award_bonus_points(
    db: Session,
    customer_id: int,
    points: int,
    description: str,
    now: datetime | None = None,
) -> LoyaltyPoints:
    now = now or utcnow()
    if points <= 0:
        raise BusinessError("Bonus points must be positive")
    _lock_customer(db, customer_id)

    balance = current_balance(db, customer_id, now)
    entry = LoyaltyPoints(
        customer_id=customer_id,
        points=points,
        total_points=balance + points,
        transaction_type=TransactionType.EARN,
        transaction_reference="BONUS",
        description=description,
        expiry_date=_expiry_from(now),
        created_at=now,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info("Customer %s received %s bonus points", customer_id, points)
    return entry


def _reward_available(reward: LoyaltyReward, now: datetime) -> bool:
    if not reward.active:
        return False
    if reward.start_date is not None and now < reward.start_date:
        return False
    if reward.end_date is not None and now >= reward.end_date:
        return False
    return True


def redeem_points(
    db: Session,
    customer_id: int,
    reward_id: int,
    now: datetime | None = None,
) -> LoyaltyPoints:
    """Spend points on a reward.

    Raises:
        ResourceNotFoundError: Unknown customer or reward.
        BusinessError: Reward inactive or outside its availability window.
        InsufficientPointsError: Balance below the reward cost. No entry is written.
    """
    now = now or utcnow()
    try:
        _lock_customer(db, customer_id)
        reward = db.query(LoyaltyReward).filter(LoyaltyReward.id == reward_id).first()
        if not reward:
            raise ResourceNotFoundError("Reward not found")
        if not _reward_available(reward, now):
            raise BusinessError("Reward is not active")

        balance = current_balance(db, customer_id, now)
        if balance < reward.points_cost:
            logger.warning(
                "Customer %s cannot redeem reward %s: balance %s < cost %s",
                customer_id, reward_id, balance, reward.points_cost,
            )
            raise InsufficientPointsError(balance, reward.points_cost)
    except BusinessError:
        db.rollback()
        raise

    entry = LoyaltyPoints(
        customer_id=customer_id,
        points=-reward.points_cost,
        total_points=balance - reward.points_cost,
        transaction_type=TransactionType.REDEEM,
        transaction_reference=f"REWARD_{reward_id}",
        description=f"Points redeemed for {reward.name}",
        created_at=now,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info("Customer %s redeemed %s points for reward %s", customer_id, reward.points_cost, reward_id)
    return entry


def reverse_points_for_order(
    db: Session, order: Order, now: datetime | None = None,
) -> LoyaltyPoints | None:
    """Take back the points an order earned. Does not commit.

    The deduction never exceeds the live balance. An order is reversed at most
    once.
    """
    now = now or utcnow()
    earned = (
        db.query(func.coalesce(func.sum(LoyaltyPoints.points), 0))
        .filter(
            LoyaltyPoints.order_id == order.id,
            LoyaltyPoints.transaction_type == TransactionType.EARN,
        )
        .scalar()
    )
    if not earned:
        return None
    reversed_already = (
        db.query(LoyaltyPoints.id)
        .filter(
            LoyaltyPoints.order_id == order.id,
            LoyaltyPoints.transaction_type == TransactionType.ADJUST,
        )
        .first()
    )
    if reversed_already:
        return None

    balance = current_balance(db, order.customer_id, now)
    deduction = min(int(earned), balance)
    entry = LoyaltyPoints(
        customer_id=order.customer_id,
        points=-deduction,
        total_points=balance - deduction,
        transaction_type=TransactionType.ADJUST,
        transaction_reference=f"REVERSAL_ORDER_{order.id}",
        description=f"Points reversed for order #{order.id}",
        order_id=order.id,
        created_at=now,
    )
    db.add(entry)
    db.flush()
    logger.info("Reversed %s points for order %s", deduction, order.id)
    return entry


def process_expired_points(db: Session, now: datetime | None = None) -> int:
    """Append EXPIRE entries for every lapsed entry not yet compensated.

    Each EXPIRE entry removes what is left of the lapsed entry's contribution:
    min(points, balance including the entry). Running this twice processes
    nothing the second time; the unique `expired_entry_id` column keeps a
    concurrent run from expiring the same entry again.

    Returns:
        Number of entries processed.
    """
    now = now or utcnow()
    lapsed = (
        db.query(LoyaltyPoints)
        .filter(_lapsed(now))
        .order_by(LoyaltyPoints.customer_id, LoyaltyPoints.expiry_date, LoyaltyPoints.id)
        .all()
    )

    processed = 0
    for source in lapsed:
        without = _ledger_sum(db, source.customer_id, now)
        remaining = max(0, min(source.points, without + source.points))
        try:
            with db.begin_nested():
                db.add(LoyaltyPoints(
                    customer_id=source.customer_id,
                    points=-remaining,
                    total_points=max(without + source.points - remaining, 0),
                    transaction_type=TransactionType.EXPIRE,
                    transaction_reference=f"EXPIRY_{source.id}",
                    description=f"Points expired from transaction #{source.id}",
                    expired_entry_id=source.id,
                    created_at=now,
                ))
        except IntegrityError:
            logger.info("Ledger entry %s was already expired by another run", source.id)
            continue
        processed += 1

    db.commit()
    logger.info("Processed %s expired ledger entries", processed)
    return processed


# ── Reads ─────────────────────────────────────────────────────────

def get_points_history(
    db: Session,
    customer_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[LoyaltyPoints]:
    query = db.query(LoyaltyPoints).filter(LoyaltyPoints.customer_id == customer_id)
    if start is not None:
        query = query.filter(LoyaltyPoints.created_at >= start)
    if end is not None:
        query = query.filter(LoyaltyPoints.created_at <= end)
    return query.order_by(LoyaltyPoints.created_at, LoyaltyPoints.id).all()


def get_available_rewards(
    db: Session, customer_id: int, now: datetime | None = None,
) -> list[LoyaltyReward]:
    now = now or utcnow()
    balance = current_balance(db, customer_id, now)
    rewards = (
        db.query(LoyaltyReward)
        .filter(LoyaltyReward.active == True, LoyaltyReward.points_cost <= balance)
        .order_by(LoyaltyReward.points_cost)
        .all()
    )
    return [r for r in rewards if _reward_available(r, now)]


# ── Tier & reward admin ───────────────────────────────────────────

def get_tier(db: Session, tier_id: int) -> LoyaltyTier:
    tier = db.query(LoyaltyTier).filter(LoyaltyTier.id == tier_id).first()
    if not tier:
        raise ResourceNotFoundError("Tier not found")
    return tier


def create_tier(db: Session, **fields) -> LoyaltyTier:
    tier = LoyaltyTier(**fields)
    db.add(tier)
    db.commit()
    db.refresh(tier)
    logger.info("Created loyalty tier %s at %s points", tier.name, tier.points_threshold)
    return tier


def update_tier(db: Session, tier_id: int, **fields) -> LoyaltyTier:
    tier = get_tier(db, tier_id)
    for name, value in fields.items():
        setattr(tier, name, value)
    db.commit()
    db.refresh(tier)
    logger.info("Updated loyalty tier %s", tier_id)
    return tier


def delete_tier(db: Session, tier_id: int) -> None:
    # Tiers are looked up by threshold at read time, nothing references the row.
    db.delete(get_tier(db, tier_id))
    db.commit()
    logger.info("Deleted loyalty tier %s", tier_id)


def get_reward(db: Session, reward_id: int) -> LoyaltyReward:
    reward = db.query(LoyaltyReward).filter(LoyaltyReward.id == reward_id).first()
    if not reward:
        raise ResourceNotFoundError("Reward not found")
    return reward


def get_all_rewards(db: Session) -> list[LoyaltyReward]:
    return db.query(LoyaltyReward).order_by(LoyaltyReward.points_cost, LoyaltyReward.id).all()


def create_reward(db: Session, **fields) -> LoyaltyReward:
    reward = LoyaltyReward(**fields)
    db.add(reward)
    db.commit()
    db.refresh(reward)
    logger.info("Created reward %s costing %s points", reward.name, reward.points_cost)
    return reward


def update_reward(db: Session, reward_id: int, **fields) -> LoyaltyReward:
    reward = get_reward(db, reward_id)
    for name, value in fields.items():
        setattr(reward, name, value)
    db.commit()
    db.refresh(reward)
    logger.info("Updated reward %s", reward_id)
    return reward


def delete_reward(db: Session, reward_id: int) -> None:
    # Redemptions keep their REWARD_<id> reference string, not a foreign key.
    db.delete(get_reward(db, reward_id))
    db.commit()
    logger.info("Deleted reward %s", reward_id)
