from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.orders.app import inventory, lifecycle
from apps.orders.app.db import MenuItem, get_session
from apps.orders.app.notify import Notifier, get_notifier
from apps.orders.app.schemas import FulfillmentReq, GuestCheckoutReq, MenuItemOut

router = APIRouter(prefix="/guest", tags=["guest"])


@router.post("/checkout")
def checkout(req: GuestCheckoutReq, s: Session = Depends(get_session), notifier: Notifier = Depends(get_notifier)):
    order = lifecycle.place_order(
        s,
        notifier,
        lifecycle.GuestOrder(
            customer_name=req.customerName,
            items=[i.model_dump() for i in req.items] if req.items else None,
            customer_email=req.customerEmail,
            customer_phone=req.customerPhone,
            total_amount=req.totalAmount,
            payment_method=req.paymentMethod,
            notes=req.notes,
            table_number=req.tableNumber,
        ),
    )
    return {
        "success": True,
        "message": "Guest order placed successfully",
        "orderId": order.order_id,
        "orderNumber": order.order_number,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "queuePosition": order.queue_position,
        "totalPrice": order.total_price,
        "tableNumber": order.table_number,
        "estimatedReadyTime": order.estimated_ready_time,
    }


@router.get("/order-status/{order_id}")
def order_status(order_id: str, s: Session = Depends(get_session)):
    o = lifecycle.get_order(s, order_id)
    return {
        "success": True,
        "order": {
            "orderId": o.order_id,
            "orderNumber": o.order_number,
            "customerName": o.customer_name,
            "tableNumber": o.table_number,
            "items": o.items,
            "totalPrice": o.total_price,
            "status": o.status,
            "paymentStatus": o.payment_status,
            "paymentMethod": o.payment_method,
            "queuePosition": o.queue_position,
            "receiptPath": o.receipt_path,
            "orderTime": o.order_time,
            "estimatedReadyTime": o.estimated_ready_time,
            "completedTime": o.completed_time,
        },
    }


@router.post("/check-fulfillment")
def check_fulfillment(req: FulfillmentReq, s: Session = Depends(get_session)):
    result = inventory.check_fulfillment(s, [i.model_dump() for i in req.items])
    return {"success": True, **result}


@router.get("/menu")
def menu(s: Session = Depends(get_session)):
    stmt = (
        select(MenuItem)
        .where(MenuItem.is_available.is_(True), MenuItem.visible_in_customer_menu.is_(True))
        .order_by(MenuItem.category, MenuItem.name)
    )
    items: List[MenuItemOut] = [MenuItemOut.model_validate(m) for m in s.execute(stmt).scalars().all()]
    return {"success": True, "menu_items": [i.model_dump() for i in items]}
