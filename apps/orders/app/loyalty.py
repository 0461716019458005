from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, insert, or_, select, update
from sqlalchemy.orm import Session

from apps.orders.app import settings
from apps.orders.app.db import Customer, LoyaltyTransaction
from apps.orders.app.errors import ConflictError, NotFoundError, ValidationError

_log = logging.getLogger("cafe.loyalty")

_customers = Customer.__table__
_ltx = LoyaltyTransaction.__table__


@dataclass
class Balance:
    customer_id: int
    points: int
    stored: Optional[int]
    earned: int
    redeemed: int
    welcome_pending: int

    @property
    def derived(self) -> bool:
        return not self.stored

    def as_dict(self) -> Dict[str, Any]:
        return {
            "customerId": self.customer_id,
            "points": self.points,
            "storedPoints": self.stored,
            "totalEarned": self.earned,
            "totalRedeemed": self.redeemed,
            "source": "history" if self.derived else "stored",
        }


def points_for_amount(amount: float) -> int:
    if amount is None or amount <= 0:
        return 0
    return int(math.floor(float(amount) * settings.LOYALTY_POINTS_PER_PESO))


def earn_points(executor, customer_id: int, order_id: Optional[str], amount: float, points: Optional[int] = None) -> int:
    """
    Credit `points` (or the amount-derived default) to the customer. The
    counter bump and the ledger row share the caller's transaction.
    """
    pts = points_for_amount(amount) if points is None else int(points)
    if pts <= 0:
        return 0
    res = executor.execute(
        update(_customers)
        .where(_customers.c.id == customer_id)
        .values(loyalty_points=func.coalesce(_customers.c.loyalty_points, 0) + pts)
    )
    if res.rowcount == 0:
        raise NotFoundError("Customer not found")
    executor.execute(
        insert(_ltx).values(
            customer_id=customer_id,
            order_id=order_id,
            points_earned=pts,
            points_redeemed=0,
            transaction_type="earn",
            reason="order" if order_id else "adjust",
            description=f"Earned {pts} points from order {order_id}" if order_id else f"Earned {pts} points",
        )
    )
    return pts


def grant_welcome(s: Session, customer: Customer) -> int:
    if not settings.WELCOME_POINTS_ENABLED or settings.WELCOME_POINTS <= 0:
        return 0
    already = s.execute(
        select(func.count(LoyaltyTransaction.id)).where(
            LoyaltyTransaction.customer_id == customer.id,
            LoyaltyTransaction.reason == "welcome",
        )
    ).scalar()
    if already:
        return 0
    pts = settings.WELCOME_POINTS
    customer.loyalty_points = (customer.loyalty_points or 0) + pts
    s.add(
        LoyaltyTransaction(
            customer_id=customer.id,
            points_earned=pts,
            transaction_type="earn",
            reason="welcome",
            description=f"Welcome points for new customer: {customer.full_name} ({customer.email})",
        )
    )
    return pts


def compute_balance(s: Session, customer_id: int) -> Balance:
    """
    The stored counter wins when it is set and non-zero. Otherwise the
    balance is rebuilt from the ledger, adding the welcome bonus when it is
    enabled but was never written as a row. Never negative.
    """
    c = s.get(Customer, customer_id)
    if not c:
        raise NotFoundError("Customer not found")
    row = s.execute(
        select(
            func.coalesce(func.sum(LoyaltyTransaction.points_earned), 0),
            func.coalesce(func.sum(LoyaltyTransaction.points_redeemed), 0),
            func.coalesce(func.sum(case((LoyaltyTransaction.reason == "welcome", 1), else_=0)), 0),
        ).where(LoyaltyTransaction.customer_id == customer_id)
    ).one()
    earned, redeemed, welcome_rows = int(row[0] or 0), int(row[1] or 0), int(row[2] or 0)
    welcome = settings.WELCOME_POINTS if (settings.WELCOME_POINTS_ENABLED and not welcome_rows) else 0
    stored = c.loyalty_points
    if stored:
        points = stored
    else:
        points = max(0, earned - redeemed + welcome)
    return Balance(customer_id, int(points), stored, earned, redeemed, welcome)


def _reconcile_stored(s: Session, bal: Balance) -> None:
    # Only fills an empty counter; a concurrent writer that set it first wins.
    if bal.derived and bal.points > 0:
        s.execute(
            update(_customers)
            .where(
                _customers.c.id == bal.customer_id,
                or_(_customers.c.loyalty_points.is_(None), _customers.c.loyalty_points == 0),
            )
            .values(loyalty_points=bal.points)
        )


def redeem(s: Session, customer_id: int, points: int, description: Optional[str] = None) -> Balance:
    if points is None or int(points) <= 0:
        raise ValidationError("points must be positive")
    points = int(points)
    _reconcile_stored(s, compute_balance(s, customer_id))
    res = s.execute(
        update(_customers)
        .where(_customers.c.id == customer_id, _customers.c.loyalty_points >= points)
        .values(loyalty_points=_customers.c.loyalty_points - points)
    )
    if res.rowcount == 0:
        s.rollback()
        raise ConflictError("Insufficient loyalty points")
    s.execute(
        insert(_ltx).values(
            customer_id=customer_id,
            points_earned=0,
            points_redeemed=points,
            transaction_type="redeem",
            reason="redeem",
            description=description or f"Redeemed {points} points",
        )
    )
    s.commit()
    s.expire_all()
    return compute_balance(s, customer_id)


def adjust(s: Session, customer_id: int, points: int, kind: str, reason: str) -> Dict[str, Any]:
    if kind not in ("add", "subtract"):
        raise ValidationError('Type must be either "add" or "subtract"')
    if not points or int(points) <= 0 or not reason:
        raise ValidationError("Missing required fields: customerId, points, reason, type")
    points = int(points)
    _reconcile_stored(s, compute_balance(s, customer_id))
    stored = func.coalesce(_customers.c.loyalty_points, 0)
    current = select(stored).where(_customers.c.id == customer_id)
    previous = int(s.execute(current.with_for_update()).scalar_one())
    if kind == "add":
        value = stored + points
    else:
        value = case((stored > points, stored - points), else_=0)
    s.execute(update(_customers).where(_customers.c.id == customer_id).values(loyalty_points=value))
    new_points = int(s.execute(current).scalar_one())
    # Report against the row as written; a concurrent earn may have landed since the read.
    if kind == "add":
        previous = new_points - points
    elif new_points > 0:
        previous = new_points + points
    s.execute(
        insert(_ltx).values(
            customer_id=customer_id,
            points_earned=points if kind == "add" else 0,
            points_redeemed=points if kind == "subtract" else 0,
            transaction_type="earn" if kind == "add" else "redeem",
            reason="adjust",
            description=reason,
        )
    )
    s.commit()
    _log.info("loyalty adjusted", extra={"customer_id": customer_id, "previous": previous, "new": new_points})
    return {"previousPoints": previous, "newPoints": new_points, "adjustment": points}


def transactions(s: Session, customer_id: int, limit: int = 50) -> List[LoyaltyTransaction]:
    stmt = (
        select(LoyaltyTransaction)
        .where(LoyaltyTransaction.customer_id == customer_id)
        .order_by(LoyaltyTransaction.id.desc())
        .limit(max(1, min(limit, 200)))
    )
    return list(s.execute(stmt).scalars().all())


def stats(s: Session, customer_id: int) -> Dict[str, Any]:
    bal = compute_balance(s, customer_id)
    c = s.get(Customer, customer_id)
    row = s.execute(
        select(func.count(LoyaltyTransaction.id), func.max(LoyaltyTransaction.created_at)).where(
            LoyaltyTransaction.customer_id == customer_id
        )
    ).one()
    return {
        "currentPoints": bal.points,
        "memberSince": c.created_at if c else None,
        "totalTransactions": int(row[0] or 0),
        "totalEarned": bal.earned,
        "totalRedeemed": bal.redeemed,
        "lastTransaction": row[1],
    }
