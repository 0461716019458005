from __future__ import annotations

import threading

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from apps.orders.app import lifecycle
from apps.orders.app.db import ActivityLog, Base, Ingredient, Order, PaymentTransaction
from apps.orders.app.errors import ConflictError, UnauthenticatedError, ValidationError


def _place(engine, notifier) -> str:
    with Session(engine) as s:
        order = lifecycle.place_order(
            s,
            notifier,
            lifecycle.GuestOrder(
                customer_name="Ana",
                items=[{"name": "Burger", "quantity": 2, "price": 150}],
                total_amount=300,
                payment_method="cash",
            ),
        )
        return order.order_id


def _txn_count(engine, order_id: str) -> int:
    with Session(engine) as s:
        return s.execute(
            select(func.count(PaymentTransaction.id)).where(PaymentTransaction.order_id == order_id)
        ).scalar_one()


def test_cash_payment_marks_order_paid_and_notifies_each_room_once(engine, notifier, seed_menu):
    seed_menu(stock=1000)
    order_id = _place(engine, notifier)
    notifier.events.clear()

    with Session(engine) as s:
        settlement = lifecycle.confirm_cash_payment(s, notifier, order_id, 300, 7)
    assert settlement.method == "cash"
    assert settlement.transaction_id.startswith("CASH-")
    assert settlement.fallback is False

    with Session(engine) as s:
        o = s.execute(select(Order).where(Order.order_id == order_id)).scalar_one()
        assert o.payment_status == "paid"
        assert o.status == "pending"
        assert o.payment_method == "cash"
        assert o.completed_time is not None
        txn = s.execute(select(PaymentTransaction)).scalar_one()
        assert (txn.payment_method, txn.status, txn.amount, txn.staff_id) == ("cash", "completed", 300, 7)
        assert txn.reference == f"CASH-{order_id}"
        assert s.execute(select(Ingredient.actual_quantity)).scalar_one() == 700
        actions = s.execute(select(ActivityLog.action).where(ActivityLog.order_id == order_id)).scalars().all()
        assert "payment_confirmed" in actions

    assert sorted(notifier.rooms("payment-updated")) == sorted([f"order-{order_id}", "staff-room", "admin-room"])


def test_second_confirmation_is_a_conflict(engine, notifier, seed_menu):
    seed_menu()
    order_id = _place(engine, notifier)
    with Session(engine) as s:
        lifecycle.confirm_cash_payment(s, notifier, order_id, 300, 7)
        with pytest.raises(ConflictError):
            lifecycle.confirm_cash_payment(s, notifier, order_id, 300, 7)
    assert _txn_count(engine, order_id) == 1


def test_cash_payment_requires_staff(engine, notifier, seed_menu):
    seed_menu()
    order_id = _place(engine, notifier)
    with Session(engine) as s:
        with pytest.raises(UnauthenticatedError):
            lifecycle.confirm_cash_payment(s, notifier, order_id, 300, None)
        with pytest.raises(UnauthenticatedError):
            lifecycle.confirm_cash_payment(s, notifier, order_id, 300, "")
    assert _txn_count(engine, order_id) == 0


def test_short_cash_amount_is_rejected_without_writes(engine, notifier, seed_menu):
    seed_menu()
    order_id = _place(engine, notifier)
    with Session(engine) as s:
        with pytest.raises(ValidationError) as ei:
            lifecycle.confirm_cash_payment(s, notifier, order_id, 250, 7)
        assert ei.value.detail == "Payment amount insufficient"
        o = s.execute(select(Order).where(Order.order_id == order_id)).scalar_one()
        assert o.payment_status == "pending"
    assert _txn_count(engine, order_id) == 0


def test_racing_cash_confirmations_settle_once(tmp_path, notifier, monkeypatch):
    eng = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    Base.metadata.create_all(eng)
    order_id = _place(eng, notifier)

    # Both callers read the unpaid order before either writes.
    barrier = threading.Barrier(2, timeout=10)
    real_load = lifecycle._load_order

    def _load_then_wait(s, oid):
        snap = real_load(s, oid)
        barrier.wait()
        return snap

    monkeypatch.setattr(lifecycle, "_load_order", _load_then_wait)

    outcomes = []

    def _confirm(staff):
        with Session(eng) as s:
            try:
                lifecycle.confirm_cash_payment(s, notifier, order_id, 300, staff)
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")

    threads = [threading.Thread(target=_confirm, args=(staff,)) for staff in (1, 2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ["conflict", "ok"]
    assert _txn_count(eng, order_id) == 1
    assert notifier.rooms("payment-updated").count("staff-room") == 1


def _operational_error() -> OperationalError:
    return OperationalError("UPDATE orders", {}, Exception("database is locked"))


def test_transient_failure_falls_back_to_a_fresh_connection(engine, notifier, seed_menu, monkeypatch):
    seed_menu()
    order_id = _place(engine, notifier)
    real_settle = lifecycle._settle
    calls = []

    def _flaky(executor, *args, **kwargs):
        calls.append(executor)
        if len(calls) == 1:
            raise _operational_error()
        return real_settle(executor, *args, **kwargs)

    monkeypatch.setattr(lifecycle, "_settle", _flaky)
    with Session(engine) as s:
        settlement = lifecycle.confirm_cash_payment(s, notifier, order_id, 300, 7)

    assert len(calls) == 2
    assert not isinstance(calls[1], Session)
    assert settlement.fallback is True
    assert _txn_count(engine, order_id) == 1
    with Session(engine) as s:
        assert s.execute(select(Order.payment_status).where(Order.order_id == order_id)).scalar_one() == "paid"
    assert len(notifier.rooms("payment-updated")) == 3


def test_failed_fallback_raises_the_original_error(engine, notifier, seed_menu, monkeypatch):
    seed_menu()
    order_id = _place(engine, notifier)
    raised = []

    def _always_down(executor, *args, **kwargs):
        exc = _operational_error()
        raised.append(exc)
        raise exc

    monkeypatch.setattr(lifecycle, "_settle", _always_down)
    notifier.events.clear()
    with Session(engine) as s:
        with pytest.raises(OperationalError) as ei:
            lifecycle.confirm_cash_payment(s, notifier, order_id, 300, 7)

    assert len(raised) == 2
    assert ei.value is raised[0]
    assert _txn_count(engine, order_id) == 0
    assert notifier.events == []


def test_permanent_failure_is_not_retried(engine, notifier, seed_menu, monkeypatch):
    seed_menu()
    order_id = _place(engine, notifier)
    calls = []

    def _broken(executor, *args, **kwargs):
        calls.append(executor)
        raise IntegrityError("INSERT INTO payment_transactions", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(lifecycle, "_settle", _broken)
    with Session(engine) as s:
        with pytest.raises(IntegrityError):
            lifecycle.confirm_cash_payment(s, notifier, order_id, 300, 7)
    assert len(calls) == 1


def test_cash_endpoint(client, engine, notifier, seed_menu):
    seed_menu()
    order_id = _place(engine, notifier)
    r = client.post(f"/payment/cash/{order_id}", json={"amount": 300, "staffId": 7})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["message"] == "Cash payment processed successfully"
    assert body["method"] == "cash"
    assert body["orderId"] == order_id
    assert body["staffId"] == 7

    r2 = client.get(f"/payment/status/{order_id}")
    assert r2.json()["paymentStatus"] == "paid"
    r3 = client.get(f"/payment/history/{order_id}")
    assert [h["payment_method"] for h in r3.json()["history"]] == ["cash"]


def test_cash_endpoint_without_staff_is_401(client, engine, notifier, seed_menu):
    seed_menu()
    order_id = _place(engine, notifier)
    r = client.post(f"/payment/cash/{order_id}", json={"amount": 300})
    assert r.status_code == 401
    assert r.json() == {"success": False, "error": "Staff authentication required"}


def test_cash_endpoint_surfaces_exhausted_retry_as_500(client, engine, notifier, seed_menu, monkeypatch):
    seed_menu()
    order_id = _place(engine, notifier)

    def _always_down(executor, *args, **kwargs):
        raise _operational_error()

    monkeypatch.setattr(lifecycle, "_settle", _always_down)
    r = client.post(f"/payment/cash/{order_id}", json={"amount": 300, "staffId": 7})
    assert r.status_code == 500
    assert r.json()["success"] is False
    assert r.json()["error"] == "temporarily unavailable"


class _UnreachableBind:
    def __init__(self):
        self.errors = []

    def connect(self):
        exc = OperationalError("connect", {}, Exception("could not connect to server"))
        self.errors.append(exc)
        raise exc


def test_fallback_that_cannot_connect_raises_the_original_error(engine, notifier, seed_menu, monkeypatch):
    seed_menu()
    order_id = _place(engine, notifier)
    first = _operational_error()

    def _down(executor, *args, **kwargs):
        raise first

    monkeypatch.setattr(lifecycle, "_settle", _down)
    bind = _UnreachableBind()
    with Session(engine) as s:
        monkeypatch.setattr(s, "get_bind", lambda *a, **k: bind)
        with pytest.raises(OperationalError) as ei:
            lifecycle.confirm_cash_payment(s, notifier, order_id, 300, 7)

    assert len(bind.errors) == 1
    assert ei.value is first
    assert _txn_count(engine, order_id) == 0


def test_cancelled_order_cannot_be_paid_in_cash(engine, notifier, seed_menu):
    seed_menu(stock=1000)
    order_id = _place(engine, notifier)
    with Session(engine) as s:
        lifecycle.cancel_order(s, notifier, order_id, "guest left")
    notifier.events.clear()

    with Session(engine) as s:
        with pytest.raises(ConflictError) as ei:
            lifecycle.confirm_cash_payment(s, notifier, order_id, 300, 7)
        assert ei.value.detail == "Cancelled orders cannot be paid"

    assert _txn_count(engine, order_id) == 0
    assert notifier.events == []
    with Session(engine) as s:
        o = s.execute(select(Order).where(Order.order_id == order_id)).scalar_one()
        assert (o.status, o.payment_status) == ("cancelled", "pending")
        assert s.execute(select(Ingredient.actual_quantity)).scalar_one() == 1000


def test_cancel_between_read_and_settle_wins(engine, notifier, seed_menu, monkeypatch):
    seed_menu(stock=1000)
    order_id = _place(engine, notifier)
    real_load = lifecycle._load_order
    cancelled = []

    def _load_then_cancel(s, oid):
        snap = real_load(s, oid)
        if not cancelled:
            cancelled.append(oid)
            with Session(engine) as other:
                lifecycle.cancel_order(other, notifier, oid, "kitchen closed")
        return snap

    monkeypatch.setattr(lifecycle, "_load_order", _load_then_cancel)
    with Session(engine) as s:
        with pytest.raises(ConflictError):
            lifecycle.confirm_cash_payment(s, notifier, order_id, 300, 7)

    assert _txn_count(engine, order_id) == 0
    with Session(engine) as s:
        assert s.execute(select(Order.payment_status).where(Order.order_id == order_id)).scalar_one() == "pending"
        assert s.execute(select(Ingredient.actual_quantity)).scalar_one() == 1000
