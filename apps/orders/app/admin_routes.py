from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from apps.orders.app import cleanup, inventory
from apps.orders.app.db import get_session
from apps.orders.app.notify import Notifier, get_notifier

router = APIRouter(tags=["admin"])


@router.get("/inventory/low-stock")
def low_stock(s: Session = Depends(get_session)):
    items = inventory.low_stock_payload(inventory.low_stock(s))
    return {"success": True, "items": items, "count": len(items)}


@router.post("/inventory/low-stock/check")
def low_stock_check(s: Session = Depends(get_session), notifier: Notifier = Depends(get_notifier)):
    items = inventory.alert_low_stock(s, notifier)
    return {"success": True, "items": items, "count": len(items), "alerted": bool(items)}


@router.get("/cleanup/stats")
def cleanup_stats(s: Session = Depends(get_session)):
    return {"success": True, "stats": cleanup.cleanup_stats(s)}


@router.post("/cleanup/run")
def cleanup_run(s: Session = Depends(get_session)):
    result = cleanup.cleanup_old_orders(s)
    return {"success": True, "message": f"Cleanup completed: {result['totalDeleted']} orders deleted", **result}
