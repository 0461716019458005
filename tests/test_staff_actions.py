from __future__ import annotations

import io

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from apps.orders.app import lifecycle, receipts
from apps.orders.app.db import Order, PaymentTransaction
from apps.orders.app.errors import ConflictError, UnauthenticatedError, ValidationError


def _place(engine, notifier, email=None) -> str:
    with Session(engine) as s:
        return lifecycle.place_order(
            s,
            notifier,
            lifecycle.GuestOrder(customer_name="Dee", customer_email=email,
                                 items=[{"name": "Latte", "quantity": 1, "price": 120}],
                                 total_amount=120, payment_method="gcash"),
        ).order_id


def test_receipt_verification_settles_the_order(engine, notifier, receipts_dir):
    order_id = _place(engine, notifier, email="dee@example.com")
    with Session(engine) as s:
        receipts.upload_receipt(s, notifier, order_id, "proof.jpg", "image/jpeg", io.BytesIO(b"\xff\xd8jpeg"))
    notifier.events.clear()

    with Session(engine) as s:
        settlement = lifecycle.verify_payment(s, notifier, order_id, 4)
    assert settlement.method == "gcash"
    assert settlement.transaction_id.startswith("MANUAL-")

    with Session(engine) as s:
        o = s.execute(select(Order).where(Order.order_id == order_id)).scalar_one()
        assert (o.status, o.payment_status) == ("pending", "paid")
        assert s.execute(select(func.count(PaymentTransaction.id))).scalar_one() == 1

    confirmed = [(r, d) for r, e, d in notifier.events if e == "order-updated"]
    assert {r for r, _ in confirmed} == {f"order-{order_id}", "staff-room", "admin-room", "customer-dee@example.com"}
    assert all(d["status"] == "confirmed" for _, d in confirmed)
    assert len(notifier.rooms("payment-updated")) == 3

    with Session(engine) as s:
        with pytest.raises(ConflictError):
            lifecycle.verify_payment(s, notifier, order_id, 4)


def test_verification_requires_staff(engine, notifier):
    order_id = _place(engine, notifier)
    with Session(engine) as s:
        with pytest.raises(UnauthenticatedError):
            lifecycle.verify_payment(s, notifier, order_id, None)


def test_kitchen_status_only_after_payment(engine, notifier):
    order_id = _place(engine, notifier)
    with Session(engine) as s:
        with pytest.raises(ConflictError):
            lifecycle.update_status(s, notifier, order_id, "preparing")
        lifecycle.confirm_cash_payment(s, notifier, order_id, 120, 2)
        assert lifecycle.update_status(s, notifier, order_id, "preparing", 2).status == "preparing"
        done = lifecycle.update_status(s, notifier, order_id, "completed", 2)
        assert done.status == "completed"
        assert done.completed_time is not None
        with pytest.raises(ConflictError):
            lifecycle.update_status(s, notifier, order_id, "ready")
        with pytest.raises(ValidationError):
            lifecycle.update_status(s, notifier, order_id, "teleported")


def test_cancel_refuses_paid_orders(engine, notifier):
    unpaid = _place(engine, notifier)
    paid = _place(engine, notifier)
    with Session(engine) as s:
        lifecycle.confirm_cash_payment(s, notifier, paid, 120, 2)
        assert lifecycle.cancel_order(s, notifier, unpaid, "guest left").status == "cancelled"
        with pytest.raises(ConflictError):
            lifecycle.cancel_order(s, notifier, unpaid)
        with pytest.raises(ConflictError) as ei:
            lifecycle.cancel_order(s, notifier, paid)
        assert ei.value.detail == "Paid orders cannot be cancelled"


def test_staff_endpoints(client, engine, notifier):
    order_id = _place(engine, notifier)
    r = client.put(f"/staff/orders/{order_id}/status", json={"status": "ready", "staffId": 2})
    assert r.status_code == 400
    assert r.json()["error"] == "Order payment has not been confirmed"

    r = client.post(f"/staff/orders/{order_id}/verify-payment", json={"staffId": 2})
    assert r.status_code == 200, r.text
    assert r.json()["message"] == "Payment verified successfully"

    r = client.put(f"/staff/orders/{order_id}/status", json={"status": "ready", "staffId": 2})
    assert r.status_code == 200
    assert (r.json()["orderId"], r.json()["status"]) == (order_id, "ready")

    r = client.post(f"/staff/orders/{order_id}/cancel", json={"reason": "oops"})
    assert r.status_code == 400


def test_receipt_on_cancelled_order_cannot_be_verified(engine, notifier, receipts_dir):
    order_id = _place(engine, notifier)
    with Session(engine) as s:
        receipts.upload_receipt(s, notifier, order_id, "proof.jpg", "image/jpeg", io.BytesIO(b"\xff\xd8jpeg"))
        lifecycle.cancel_order(s, notifier, order_id, "duplicate order")
    with Session(engine) as s:
        with pytest.raises(ConflictError) as ei:
            lifecycle.verify_payment(s, notifier, order_id, 4)
        assert ei.value.detail == "Cancelled orders cannot be paid"
        o = s.execute(select(Order).where(Order.order_id == order_id)).scalar_one()
        assert (o.status, o.payment_status) == ("cancelled", "pending_verification")
        assert s.execute(select(func.count(PaymentTransaction.id))).scalar_one() == 0
