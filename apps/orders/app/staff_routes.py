from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from apps.orders.app import lifecycle
from apps.orders.app.db import get_session
from apps.orders.app.notify import Notifier, get_notifier
from apps.orders.app.schemas import CancelReq, StatusUpdateReq, VerifyPaymentReq

router = APIRouter(prefix="/staff/orders", tags=["staff"])


@router.post("/{order_id}/verify-payment")
def verify_payment(order_id: str, req: VerifyPaymentReq, s: Session = Depends(get_session),
                   notifier: Notifier = Depends(get_notifier)):
    settlement = lifecycle.verify_payment(s, notifier, order_id, req.staffId, req.notes)
    return {"success": True, "message": "Payment verified successfully", **settlement.as_dict()}


@router.put("/{order_id}/status")
def update_status(order_id: str, req: StatusUpdateReq, s: Session = Depends(get_session),
                  notifier: Notifier = Depends(get_notifier)):
    o = lifecycle.update_status(s, notifier, order_id, req.status, req.staffId)
    return {"success": True, "orderId": o.order_id, "status": o.status, "completedTime": o.completed_time}


@router.post("/{order_id}/cancel")
def cancel(order_id: str, req: CancelReq, s: Session = Depends(get_session),
           notifier: Notifier = Depends(get_notifier)):
    o = lifecycle.cancel_order(s, notifier, order_id, req.reason, req.staffId)
    return {"success": True, "message": "Order cancelled", "orderId": o.order_id, "status": o.status}
