from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class OrderLineIn(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    quantity: int = Field(default=1, ge=1)
    price: float = Field(default=0.0, ge=0)
    menuItemId: Optional[int] = None
    customizations: Optional[Any] = None


class GuestCheckoutReq(BaseModel):
    # Presence of name/items is checked in the domain so the error text matches.
    customerName: Optional[str] = None
    customerEmail: Optional[str] = None
    customerPhone: Optional[str] = None
    items: Optional[List[OrderLineIn]] = None
    totalAmount: Optional[float] = Field(default=None, ge=0)
    paymentMethod: Optional[str] = "cash"
    notes: Optional[str] = None
    tableNumber: Optional[Union[int, str]] = None


class FulfillmentReq(BaseModel):
    items: List[OrderLineIn]


class QRReq(BaseModel):
    tableNumber: Optional[Union[int, str]] = None


class CashPaymentReq(BaseModel):
    amount: Optional[float] = Field(default=None, ge=0)
    staffId: Optional[Union[int, str]] = None
    notes: Optional[str] = None


class VerifyPaymentReq(BaseModel):
    staffId: Optional[Union[int, str]] = None
    notes: Optional[str] = None


class StatusUpdateReq(BaseModel):
    status: str
    staffId: Optional[Union[int, str]] = None


class CancelReq(BaseModel):
    reason: Optional[str] = None
    staffId: Optional[Union[int, str]] = None


class EarnReq(BaseModel):
    customerId: int
    orderId: Optional[str] = None
    amount: float = Field(default=0.0, ge=0)
    points: Optional[int] = Field(default=None, ge=0)


class RedeemReq(BaseModel):
    customerId: int
    points: int = Field(gt=0)
    description: Optional[str] = None


class AdjustReq(BaseModel):
    customerId: int
    points: int
    reason: str
    type: str


class PaymentTransactionOut(BaseModel):
    id: int
    order_id: str
    payment_method: str
    amount: float
    transaction_id: str
    reference: Optional[str]
    status: str
    staff_id: Optional[int]
    notes: Optional[str]
    created_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class LoyaltyTransactionOut(BaseModel):
    id: int
    customer_id: int
    order_id: Optional[str]
    points_earned: int
    points_redeemed: int
    transaction_type: str
    reason: str
    description: Optional[str]
    created_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class MenuItemOut(BaseModel):
    id: int
    name: str
    description: Optional[str]
    category: Optional[str]
    price: float
    is_available: bool
    model_config = ConfigDict(from_attributes=True)
