"""
Order lifecycle: checkout, payment confirmation and staff transitions.

Every path that marks an order paid goes through `_settle`, which flips
`payment_status` with a conditional UPDATE (`... WHERE payment_status <> 'paid'
AND status <> 'cancelled'`) and only then writes the transaction row. A zero
row count means another confirmation or a cancel won and the caller gets a
ConflictError; nothing is written.
"""
from __future__ import annotations

import json
import logging
import secrets
import string
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import case, func, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from apps.orders.app import inventory, loyalty, settings
from apps.orders.app.db import (
    ActivityLog,
    Customer,
    Order,
    PaymentTransaction,
    QueueCounter,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_PENDING_VERIFICATION,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUS_PENDING_VERIFICATION,
    STATUS_PREPARING,
    STATUS_READY,
    business_day,
    utcnow,
)
from apps.orders.app.errors import (
    ConflictError,
    ErrorKind,
    InternalError,
    InvalidSignatureError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
    classify_db_error,
)
from apps.orders.app.notify import (
    ADMIN_ROOM,
    NEW_ORDER,
    ORDER_UPDATED,
    STAFF_ROOM,
    Notifier,
    broadcast_payment,
    customer_room,
    emit_many,
    now_iso,
    order_room,
)
from apps.orders.app.providers import WalletProvider

_log = logging.getLogger("cafe.orders")
_pay_log = logging.getLogger("cafe.payments")

_orders = Order.__table__
_txns = PaymentTransaction.__table__
_activity = ActivityLog.__table__
_queue = QueueCounter.__table__

_ALNUM = string.ascii_lowercase + string.digits
CALLBACK_SUCCESS = ("success", "completed")
STAFF_STATUSES = (STATUS_PENDING, STATUS_PREPARING, STATUS_READY, STATUS_COMPLETED)


@dataclass(frozen=True)
class OrderSnapshot:
    """Plain copy of an order row, usable across sessions and connections."""

    id: int
    order_id: str
    customer_id: Optional[int]
    customer_email: Optional[str]
    customer_name: Optional[str]
    total_price: float
    status: str
    payment_status: str
    payment_method: Optional[str]
    items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Settlement:
    order_id: str
    amount: float
    method: str
    transaction_id: str
    reference: str
    staff_id: Optional[int]
    timestamp: datetime
    points_earned: int = 0
    fallback: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "amount": self.amount,
            "method": self.method,
            "transactionId": self.transaction_id,
            "staffId": self.staff_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class GuestOrder:
    customer_name: Optional[str]
    items: Optional[List[Dict[str, Any]]]
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    total_amount: Optional[float] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    table_number: Any = None


def new_order_id() -> str:
    return f"ORD-{int(time.time() * 1000)}-{''.join(secrets.choice(_ALNUM) for _ in range(9))}"


def _order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{''.join(secrets.choice(_ALNUM) for _ in range(5))}"


def clamp_table_number(raw: Any) -> Optional[int]:
    if raw is None or raw is False or raw == "" or raw == 0:
        return None
    if isinstance(raw, int) and not isinstance(raw, bool) and 1 <= raw <= settings.MAX_TABLE_NUMBER:
        return raw
    try:
        n = int(float(raw))
    except (TypeError, ValueError):
        raise ValidationError("tableNumber must be a number")
    return min(settings.MAX_TABLE_NUMBER, max(1, n))


def _staff_id(raw: Any) -> Optional[int]:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _snapshot(s, order_id: str) -> Optional[OrderSnapshot]:
    row = s.execute(
        select(
            Order.id,
            Order.order_id,
            Order.customer_id,
            Customer.email,
            Order.customer_name,
            Order.total_price,
            Order.status,
            Order.payment_status,
            Order.payment_method,
            Order.items_json,
        )
        .outerjoin(Customer, Customer.id == Order.customer_id)
        .where(Order.order_id == order_id)
    ).first()
    if row is None:
        return None
    try:
        items = json.loads(row.items_json or "[]")
    except ValueError:
        items = []
    return OrderSnapshot(
        id=row.id,
        order_id=row.order_id,
        customer_id=row.customer_id,
        customer_email=row.email,
        customer_name=row.customer_name,
        total_price=float(row.total_price or 0.0),
        status=row.status,
        payment_status=row.payment_status,
        payment_method=row.payment_method,
        items=items if isinstance(items, list) else [],
    )


def _load_order(s, order_id: str) -> OrderSnapshot:
    snap = _snapshot(s, order_id)
    if snap is None:
        raise NotFoundError("Order not found")
    return snap


def log_activity(executor, action: str, order_id: Optional[str], actor_type: str = "system",
                 actor_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None) -> None:
    executor.execute(
        insert(_activity).values(
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            order_id=order_id,
            details=json.dumps(details, default=str) if details else None,
        )
    )


# --- checkout -------------------------------------------------------------


def next_queue_position(s: Session, day: str) -> int:
    """
    Per-day kitchen sequence. The counter row is bumped with a single
    UPDATE so two checkouts can never read the same value; the first order
    of the day seeds it from whatever that day already holds.
    """
    for _ in range(3):
        res = s.execute(
            update(_queue).where(_queue.c.business_day == day).values(last_position=_queue.c.last_position + 1)
        )
        if res.rowcount:
            return int(s.execute(select(_queue.c.last_position).where(_queue.c.business_day == day)).scalar_one())
        seed = int(
            s.execute(
                select(func.coalesce(func.max(Order.queue_position), 0)).where(Order.business_day == day)
            ).scalar_one()
        ) + 1
        try:
            with s.begin_nested():
                s.execute(insert(_queue).values(business_day=day, last_position=seed))
            return seed
        except IntegrityError:
            continue
    raise InternalError("could not assign queue position")


def resolve_guest_customer(s: Session, email: Optional[str], name: Optional[str],
                           phone: Optional[str] = None) -> Optional[Customer]:
    email = (email or "").strip().lower()
    if not email:
        return None
    existing = s.execute(select(Customer).where(Customer.email == email)).scalar_one_or_none()
    if existing is not None:
        return existing
    c = Customer(
        email=email,
        full_name=name,
        phone=phone,
        username=f"guest_{int(time.time() * 1000)}",
        loyalty_points=0,
        is_guest=True,
    )
    try:
        with s.begin_nested():
            s.add(c)
            s.flush()
    except IntegrityError:
        # Same email checked out concurrently; use the row that won.
        return s.execute(select(Customer).where(Customer.email == email)).scalar_one()
    loyalty.grant_welcome(s, c)
    return c


def place_order(s: Session, notifier: Notifier, req: GuestOrder) -> Order:
    name = (req.customer_name or "").strip()
    items = [dict(i) for i in (req.items or [])]
    if not name or not items:
        raise ValidationError("Missing required fields: customerName, items")

    fulfillment = inventory.check_fulfillment(s, items)
    if not fulfillment["canFulfillOrder"]:
        raise ValidationError(
            "Order cannot be fulfilled due to insufficient inventory",
            extra={"fulfillment_details": fulfillment},
        )

    table_number = clamp_table_number(req.table_number)
    total = req.total_amount
    if total is None:
        total = sum(float(i.get("price") or 0) * int(i.get("quantity") or 1) for i in items)

    customer = resolve_guest_customer(s, req.customer_email, name, req.customer_phone)
    now = utcnow()
    day = business_day(now)
    order = Order(
        order_id=new_order_id(),
        order_number=_order_number(),
        customer_id=customer.id if customer else None,
        customer_name=name,
        table_number=table_number,
        items_json=json.dumps(items),
        total_price=float(total),
        status=STATUS_PENDING_VERIFICATION,
        payment_status=PAYMENT_PENDING,
        payment_method=(req.payment_method or "cash").strip().lower(),
        notes=req.notes or None,
        order_type="dine_in",
        queue_position=next_queue_position(s, day),
        business_day=day,
        order_time=now,
        estimated_ready_time=now + timedelta(minutes=settings.ESTIMATED_READY_MINUTES),
    )
    s.add(order)
    s.flush()
    log_activity(s, "order_placed", order.order_id, actor_type="guest",
                  details={"total": order.total_price, "method": order.payment_method})
    s.commit()
    s.refresh(order)
    _log.info("guest order placed", extra={"order_id": order.order_id, "queue_position": order.queue_position})

    event = {
        "orderId": order.order_id,
        "status": order.status,
        "customerName": name,
        "totalPrice": order.total_price,
        "orderType": order.order_type,
        "tableNumber": table_number,
        "items": items,
        "timestamp": now_iso(),
        "isGuest": True,
    }
    emit_many(notifier, (ADMIN_ROOM, STAFF_ROOM), NEW_ORDER, event)
    if customer is not None:
        notifier.emit(customer_room(customer.email), ORDER_UPDATED, event)
    return order


def get_order(s: Session, order_id: str) -> Order:
    o = s.execute(select(Order).where(Order.order_id == order_id)).scalar_one_or_none()
    if o is None:
        raise NotFoundError("Order not found")
    return o


# --- payments -------------------------------------------------------------


def request_payment(s: Session, provider: WalletProvider, order_id: str, table_number: Any = None) -> Dict[str, Any]:
    order = get_order(s, order_id)
    if order.payment_status == PAYMENT_PAID:
        raise ConflictError("Order is already paid")
    if order.status == STATUS_CANCELLED:
        raise ConflictError("Cancelled orders cannot be paid")
    table = clamp_table_number(table_number) if table_number not in (None, "") else order.table_number
    qr = provider.create_qr(order.order_id, order.total_price, table)
    order.qr_code = qr["qrCode"]
    order.payment_method = provider.name
    s.commit()
    return {
        "qrCode": qr["qrCode"],
        "paymentUrl": qr["paymentUrl"],
        "orderId": order.order_id,
        "amount": order.total_price,
        "reference": qr["reference"],
        f"{provider.name}PaymentId": qr["paymentId"],
    }


def _settle(executor, snap: OrderSnapshot, method: str, amount: float, transaction_id: str,
            reference: str, staff_id: Optional[int], notes: Optional[str]) -> Settlement:
    now = utcnow()
    res = executor.execute(
        update(_orders)
        .where(
            _orders.c.order_id == snap.order_id,
            _orders.c.payment_status != PAYMENT_PAID,
            _orders.c.status != STATUS_CANCELLED,
        )
        .values(
            payment_status=PAYMENT_PAID,
            payment_method=method,
            status=case(
                (_orders.c.status == STATUS_PENDING_VERIFICATION, STATUS_PENDING),
                else_=_orders.c.status,
            ),
            completed_time=now,
            updated_at=now,
        )
    )
    if res.rowcount == 0:
        raise ConflictError("Order is already paid or cancelled")
    executor.execute(
        insert(_txns).values(
            order_id=snap.order_id,
            payment_method=method,
            amount=amount,
            transaction_id=transaction_id,
            reference=reference,
            status="completed",
            staff_id=staff_id,
            notes=notes,
            created_at=now,
        )
    )
    inventory.deduct_for_items(executor, snap.items)
    points = 0
    if snap.customer_id and settings.LOYALTY_ENABLED:
        try:
            points = loyalty.earn_points(executor, snap.customer_id, snap.order_id, snap.total_price)
        except NotFoundError:
            _pay_log.warning("order %s references missing customer %s", snap.order_id, snap.customer_id)
    log_activity(
        executor,
        "payment_confirmed",
        snap.order_id,
        actor_type="staff" if staff_id is not None else "system",
        actor_id=staff_id,
        details={"method": method, "amount": amount, "transaction_id": transaction_id},
    )
    return Settlement(snap.order_id, amount, method, transaction_id, reference, staff_id, now, points)


def _cash_fallback(bind, snap: OrderSnapshot, amount: float, transaction_id: str, reference: str,
                   staff_id: Optional[int], notes: Optional[str], original: BaseException) -> Settlement:
    conn = trans = None
    try:
        conn = bind.connect()
        trans = conn.begin()
        settlement = _settle(conn, snap, "cash", amount, transaction_id, reference, staff_id,
                             notes or "fallback write")
        trans.commit()
    except (SQLAlchemyError, OSError, HTTPException):
        _pay_log.error("cash fallback failed for %s", snap.order_id, exc_info=True)
        if trans is not None:
            try:
                trans.rollback()
            except SQLAlchemyError:
                _pay_log.warning("rollback after failed cash fallback did not complete")
        raise original
    finally:
        if conn is not None:
            conn.close()
    return replace(settlement, fallback=True)


def confirm_cash_payment(s: Session, notifier: Notifier, order_id: str, amount: Optional[float],
                         staff_id: Any, notes: Optional[str] = None) -> Settlement:
    """
    Staff-confirmed cash payment. A transient storage failure on the normal
    path is retried exactly once on a fresh connection; if that also fails the
    first error is raised. Permanent errors are raised as-is.
    """
    if staff_id is None or str(staff_id).strip() == "":
        raise UnauthenticatedError("Staff authentication required")
    staff = _staff_id(staff_id)
    snap = _load_order(s, order_id)
    if snap.payment_status == PAYMENT_PAID:
        raise ConflictError("Order is already paid")
    if snap.status == STATUS_CANCELLED:
        raise ConflictError("Cancelled orders cannot be paid")
    paid = float(amount) if amount is not None else snap.total_price
    if paid < snap.total_price:
        raise ValidationError("Payment amount insufficient")

    transaction_id = f"CASH-{uuid.uuid4()}"
    reference = f"CASH-{order_id}"
    try:
        settlement = _settle(s, snap, "cash", paid, transaction_id, reference, staff, notes)
        s.commit()
    except HTTPException:
        s.rollback()
        raise
    except (SQLAlchemyError, OSError) as exc:
        s.rollback()
        if classify_db_error(exc) is not ErrorKind.TRANSIENT:
            raise
        _pay_log.warning("transient error on cash payment for %s, trying fallback: %s", order_id, exc)
        settlement = _cash_fallback(s.get_bind(), snap, paid, transaction_id, reference, staff, notes, exc)

    _pay_log.info(
        "cash payment recorded",
        extra={"order_id": order_id, "transaction_id": settlement.transaction_id, "fallback": settlement.fallback},
    )
    broadcast_payment(notifier, order_id, {"status": PAYMENT_PAID, "method": "cash", "amount": paid, "staffId": staff_id})
    return settlement


def handle_provider_callback(s: Session, notifier: Notifier, provider: WalletProvider,
                             raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
    if not provider.verify_signature(raw_body, signature):
        _pay_log.warning("%s callback rejected: bad signature", provider.name)
        raise InvalidSignatureError()
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise ValidationError("Invalid callback payload")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid callback payload")

    order_id = str(payload.get("orderId") or "")
    payment_id = str(payload.get("paymentId") or "")
    status = str(payload.get("status") or "").lower()
    result: Dict[str, Any] = {"orderId": order_id, "amount": payload.get("amount"), "applied": False}
    if status not in CALLBACK_SUCCESS:
        _pay_log.info("%s callback for %s with status %r ignored", provider.name, order_id, status)
        return result
    if not order_id or not payment_id:
        raise ValidationError("orderId and paymentId are required")

    seen = s.execute(select(PaymentTransaction.id).where(PaymentTransaction.transaction_id == payment_id)).first()
    if seen is not None:
        _pay_log.info("%s callback replay for payment %s ignored", provider.name, payment_id)
        return {**result, "duplicate": True}
    snap = _load_order(s, order_id)
    if snap.payment_status == PAYMENT_PAID:
        return {**result, "duplicate": True}
    if snap.status == STATUS_CANCELLED:
        _pay_log.warning("%s callback for cancelled order %s not applied (payment %s)",
                         provider.name, order_id, payment_id)
        return {**result, "cancelled": True}
    try:
        amount = float(payload["amount"]) if payload.get("amount") is not None else snap.total_price
    except (TypeError, ValueError):
        raise ValidationError("Invalid callback payload")
    if amount < snap.total_price:
        raise ValidationError("Payment amount insufficient")

    reference = str(payload.get("reference") or f"{provider.name.upper()}-{order_id}")
    try:
        settlement = _settle(s, snap, provider.name, amount, payment_id, reference, None, f"{provider.name} webhook")
        s.commit()
    except (ConflictError, IntegrityError):
        # Lost a race with another writer on this order.
        s.rollback()
        return {**result, "duplicate": True}
    except Exception:
        s.rollback()
        raise

    broadcast_payment(notifier, order_id, {"status": PAYMENT_PAID, "method": provider.name, "amount": amount})
    return {"orderId": order_id, "amount": settlement.amount, "applied": True}


def payment_snapshot(s: Session, order_id: str) -> Dict[str, Any]:
    o = get_order(s, order_id)
    return {
        "orderId": o.order_id,
        "paymentStatus": o.payment_status,
        "paymentMethod": o.payment_method,
        "amount": o.total_price,
        "createdAt": o.created_at,
        "completedAt": o.completed_time,
    }


def payment_history(s: Session, order_id: str) -> List[PaymentTransaction]:
    stmt = select(PaymentTransaction).where(PaymentTransaction.order_id == order_id).order_by(PaymentTransaction.id.asc())
    return list(s.execute(stmt).scalars().all())


# --- staff actions --------------------------------------------------------


def _order_rooms(snap: OrderSnapshot) -> List[str]:
    rooms = [order_room(snap.order_id), STAFF_ROOM, ADMIN_ROOM]
    if snap.customer_email:
        rooms.append(customer_room(snap.customer_email))
    return rooms


def verify_payment(s: Session, notifier: Notifier, order_id: str, staff_id: Any, notes: Optional[str] = None) -> Settlement:
    """Manual confirmation of an uploaded wallet receipt."""
    if staff_id is None or str(staff_id).strip() == "":
        raise UnauthenticatedError("Staff authentication required")
    snap = _load_order(s, order_id)
    if snap.payment_status == PAYMENT_PAID:
        raise ConflictError("Order is already paid")
    if snap.status == STATUS_CANCELLED:
        raise ConflictError("Cancelled orders cannot be paid")
    if snap.payment_status not in (PAYMENT_PENDING, PAYMENT_PENDING_VERIFICATION):
        raise ConflictError(f"Order payment cannot be verified from '{snap.payment_status}'")
    staff = _staff_id(staff_id)
    method = snap.payment_method or "cash"
    try:
        settlement = _settle(s, snap, method, snap.total_price, f"MANUAL-{uuid.uuid4()}",
                             f"RECEIPT-{order_id}", staff, notes or "receipt verified")
        s.commit()
    except Exception:
        s.rollback()
        raise
    data = {"orderId": order_id, "status": "confirmed", "paymentStatus": PAYMENT_PAID, "timestamp": now_iso()}
    emit_many(notifier, _order_rooms(snap), ORDER_UPDATED, data)
    broadcast_payment(notifier, order_id, {"status": PAYMENT_PAID, "method": method, "amount": snap.total_price, "staffId": staff_id})
    return settlement


def update_status(s: Session, notifier: Notifier, order_id: str, status: str, staff_id: Any = None) -> Order:
    status = (status or "").strip().lower()
    if status not in STAFF_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(STAFF_STATUSES)}")
    snap = _load_order(s, order_id)
    now = utcnow()
    values: Dict[str, Any] = {"status": status, "updated_at": now}
    if status == STATUS_COMPLETED:
        values["completed_time"] = now
    staff = _staff_id(staff_id)
    if staff is not None:
        values["staff_id"] = staff
    res = s.execute(
        update(_orders)
        .where(
            _orders.c.order_id == order_id,
            _orders.c.payment_status == PAYMENT_PAID,
            _orders.c.status.not_in((STATUS_CANCELLED, STATUS_COMPLETED)),
        )
        .values(**values)
    )
    if res.rowcount == 0:
        s.rollback()
        if snap.payment_status != PAYMENT_PAID:
            raise ConflictError("Order payment has not been confirmed")
        raise ConflictError(f"Order is already {snap.status}")
    log_activity(s, "status_updated", order_id, actor_type="staff", actor_id=staff, details={"status": status})
    s.commit()
    emit_many(notifier, _order_rooms(snap), ORDER_UPDATED, {"orderId": order_id, "status": status, "timestamp": now_iso()})
    return get_order(s, order_id)


def cancel_order(s: Session, notifier: Notifier, order_id: str, reason: Optional[str] = None, staff_id: Any = None) -> Order:
    snap = _load_order(s, order_id)
    res = s.execute(
        update(_orders)
        .where(
            _orders.c.order_id == order_id,
            _orders.c.payment_status != PAYMENT_PAID,
            _orders.c.status.not_in((STATUS_CANCELLED, STATUS_COMPLETED)),
        )
        .values(status=STATUS_CANCELLED, updated_at=utcnow())
    )
    if res.rowcount == 0:
        s.rollback()
        if snap.payment_status == PAYMENT_PAID:
            raise ConflictError("Paid orders cannot be cancelled")
        raise ConflictError(f"Order is already {snap.status}")
    log_activity(s, "order_cancelled", order_id, actor_type="staff", actor_id=_staff_id(staff_id),
                  details={"reason": reason} if reason else None)
    s.commit()
    emit_many(notifier, _order_rooms(snap), ORDER_UPDATED,
              {"orderId": order_id, "status": STATUS_CANCELLED, "timestamp": now_iso()})
    return get_order(s, order_id)
