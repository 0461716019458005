from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from apps.orders.app import loyalty
from apps.orders.app.db import get_session
from apps.orders.app.schemas import AdjustReq, EarnReq, LoyaltyTransactionOut, RedeemReq

router = APIRouter(prefix="/loyalty", tags=["loyalty"])


@router.get("/points/{customer_id}")
def points(customer_id: int, s: Session = Depends(get_session)):
    return {"success": True, **loyalty.compute_balance(s, customer_id).as_dict()}


@router.post("/earn")
def earn(req: EarnReq, s: Session = Depends(get_session)):
    try:
        pts = loyalty.earn_points(s, req.customerId, req.orderId, req.amount, req.points)
        s.commit()
    except Exception:
        s.rollback()
        raise
    return {"success": True, "pointsEarned": pts, "points": loyalty.compute_balance(s, req.customerId).points}


@router.post("/redeem")
def redeem(req: RedeemReq, s: Session = Depends(get_session)):
    bal = loyalty.redeem(s, req.customerId, req.points, req.description)
    return {"success": True, "pointsRedeemed": req.points, "remainingPoints": bal.points}


@router.post("/adjust")
def adjust(req: AdjustReq, s: Session = Depends(get_session)):
    return {"success": True, **loyalty.adjust(s, req.customerId, req.points, req.type, req.reason)}


@router.get("/transactions/{customer_id}")
def transactions(customer_id: int, limit: int = 50, s: Session = Depends(get_session)):
    rows = [LoyaltyTransactionOut.model_validate(t).model_dump(mode="json")
            for t in loyalty.transactions(s, customer_id, limit)]
    return {"success": True, "transactions": rows}


@router.get("/stats/{customer_id}")
def stats(customer_id: int, s: Session = Depends(get_session)):
    return {"success": True, "stats": loyalty.stats(s, customer_id)}
