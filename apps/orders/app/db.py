from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from apps.orders.app import settings

DB_SCHEMA = settings.DB_SCHEMA

# order.status
STATUS_PENDING = "pending"
STATUS_PENDING_VERIFICATION = "pending_verification"
STATUS_PREPARING = "preparing"
STATUS_READY = "ready"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_PENDING_VERIFICATION, STATUS_PREPARING, STATUS_READY)

# order.payment_status
PAYMENT_PENDING = "pending"
PAYMENT_PENDING_VERIFICATION = "pending_verification"
PAYMENT_PAID = "paid"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def business_day(ts: Optional[datetime] = None) -> str:
    return (ts or utcnow()).strftime("%Y-%m-%d")


class Base(DeclarativeBase):
    pass


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, default=None)
    full_name: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    username: Mapped[Optional[str]] = mapped_column(String(100), default=None)
    phone: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    loyalty_points: Mapped[Optional[int]] = mapped_column(Integer, default=0)
    is_guest: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    customer_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    customer_name: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    table_number: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    items_json: Mapped[str] = mapped_column(Text, default="[]")
    total_price: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(32), default=STATUS_PENDING)
    payment_status: Mapped[str] = mapped_column(String(32), default=PAYMENT_PENDING)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), default="cash")
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    order_type: Mapped[str] = mapped_column(String(32), default="dine_in")
    queue_position: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    business_day: Mapped[Optional[str]] = mapped_column(String(10), default=None, index=True)
    qr_code: Mapped[Optional[str]] = mapped_column(Text, default=None)
    receipt_path: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    staff_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    order_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    estimated_ready_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    completed_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None, onupdate=utcnow)

    @property
    def items(self) -> List[dict[str, Any]]:
        try:
            data = json.loads(self.items_json or "[]")
        except ValueError:
            return []
        return data if isinstance(data, list) else []


class PaymentTransaction(Base):
    """Append-only; a payment is corrected by inserting a new row."""

    __tablename__ = "payment_transactions"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), index=True)
    payment_method: Mapped[str] = mapped_column(String(32))
    amount: Mapped[float] = mapped_column(Float)
    # Provider payment id (or CASH-<uuid>); unique so a replayed webhook cannot insert twice.
    transaction_id: Mapped[str] = mapped_column(String(128), unique=True)
    reference: Mapped[Optional[str]] = mapped_column(String(128), default=None)
    status: Mapped[str] = mapped_column(String(32), default="completed")
    staff_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    notes: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LoyaltyTransaction(Base):
    __tablename__ = "loyalty_transactions"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(Integer, index=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    points_earned: Mapped[int] = mapped_column(Integer, default=0)
    points_redeemed: Mapped[int] = mapped_column(Integer, default=0)
    transaction_type: Mapped[str] = mapped_column(String(16), default="earn")  # earn|redeem
    reason: Mapped[str] = mapped_column(String(16), default="order")  # order|welcome|adjust|redeem
    description: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Ingredient(Base):
    __tablename__ = "ingredients"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    actual_quantity: Mapped[float] = mapped_column(Float, default=0.0)
    actual_unit: Mapped[str] = mapped_column(String(32), default="g")
    low_stock_threshold: Mapped[Optional[float]] = mapped_column(Float, default=None)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None, onupdate=utcnow)


class MenuItem(Base):
    __tablename__ = "menu_items"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(String(400), default=None)
    category: Mapped[Optional[str]] = mapped_column(String(80), default=None)
    price: Mapped[float] = mapped_column(Float, default=0.0)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    visible_in_customer_menu: Mapped[bool] = mapped_column(Boolean, default=True)


class MenuItemIngredient(Base):
    __tablename__ = "menu_item_ingredients"
    __table_args__ = (
        UniqueConstraint("menu_item_id", "ingredient_id", name="uq_menu_item_ingredient"),
        *([{"schema": DB_SCHEMA}] if DB_SCHEMA else []),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    menu_item_id: Mapped[int] = mapped_column(Integer, index=True)
    ingredient_id: Mapped[int] = mapped_column(Integer)
    required_display_amount: Mapped[float] = mapped_column(Float, default=0.0)
    recipe_unit: Mapped[str] = mapped_column(String(32), default="g")


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_type: Mapped[str] = mapped_column(String(16), default="system")  # guest|staff|admin|system
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    action: Mapped[str] = mapped_column(String(64))
    order_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    details: Mapped[Optional[str]] = mapped_column(Text, default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class QueueCounter(Base):
    __tablename__ = "queue_counters"
    __table_args__ = ({"schema": DB_SCHEMA} if DB_SCHEMA else {})
    business_day: Mapped[str] = mapped_column(String(10), primary_key=True)
    last_position: Mapped[int] = mapped_column(Integer, default=0)


DB_URL = settings.DB_URL
engine = create_engine(DB_URL, future=True, pool_pre_ping=True)


def get_session():
    with Session(engine) as s:
        yield s


def create_all() -> None:
    Base.metadata.create_all(engine)
