from __future__ import annotations

import json
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.orders.app import lifecycle, settings
from apps.orders.app.db import get_session
from apps.orders.app.errors import (
    ErrorKind,
    NotFoundError,
    TransientInfrastructureError,
    ValidationError,
    classify_db_error,
)
from apps.orders.app.notify import Notifier, get_notifier
from apps.orders.app.providers import WalletProvider, qr_data_url
from apps.orders.app.schemas import CashPaymentReq, PaymentTransactionOut, QRReq

router = APIRouter(prefix="/payment", tags=["payment"])


def get_providers(request: Request) -> Dict[str, WalletProvider]:
    return request.app.state.providers


def _provider(providers: Dict[str, WalletProvider], name: str) -> WalletProvider:
    p = providers.get((name or "").lower())
    if p is None:
        raise NotFoundError("Unknown payment provider")
    return p


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/cash/{order_id}")
def cash_payment(order_id: str, req: CashPaymentReq, s: Session = Depends(get_session),
                 notifier: Notifier = Depends(get_notifier)):
    try:
        settlement = lifecycle.confirm_cash_payment(s, notifier, order_id, req.amount, req.staffId, req.notes)
    except SQLAlchemyError as exc:
        if classify_db_error(exc) is ErrorKind.TRANSIENT:
            raise TransientInfrastructureError(exc) from exc
        raise
    return {"success": True, "message": "Cash payment processed successfully", **settlement.as_dict()}


@router.post("/{provider}/qr/{order_id}")
def wallet_qr(provider: str, order_id: str, req: Optional[QRReq] = None, s: Session = Depends(get_session),
              providers: Dict[str, WalletProvider] = Depends(get_providers)):
    p = _provider(providers, provider)
    data = lifecycle.request_payment(s, p, order_id, req.tableNumber if req else None)
    return {"success": True, **data}


@router.post("/{provider}/callback")
def wallet_callback(provider: str, request: Request, raw: bytes = Depends(_raw_body),
                    s: Session = Depends(get_session), notifier: Notifier = Depends(get_notifier),
                    providers: Dict[str, WalletProvider] = Depends(get_providers)):
    p = _provider(providers, provider)
    signature = request.headers.get(f"x-{p.name}-signature")
    lifecycle.handle_provider_callback(s, notifier, p, raw, signature)
    return {"success": True}


@router.get("/{provider}/process")
def simulated_process(provider: str, orderId: str, amount: Optional[float] = None, reference: Optional[str] = None,
                      s: Session = Depends(get_session), notifier: Notifier = Depends(get_notifier),
                      providers: Dict[str, WalletProvider] = Depends(get_providers)):
    """Landing page of the dev QR links: completes the payment as if the wallet called back."""
    if settings.is_prod_env():
        raise NotFoundError("Not found")
    p = _provider(providers, provider)
    if not p.webhook_secret:
        raise ValidationError(f"{p.name} webhook secret is not configured")
    payload = {
        "orderId": orderId,
        "amount": amount,
        "reference": reference,
        "paymentId": reference or f"SIM-{orderId}",
        "status": "success",
    }
    body = json.dumps(payload).encode()
    result = lifecycle.handle_provider_callback(s, notifier, p, body, p.sign_webhook(body))
    return {"success": True, **result}


@router.get("/status/{order_id}")
def payment_status(order_id: str, s: Session = Depends(get_session)):
    return {"success": True, **lifecycle.payment_snapshot(s, order_id)}


@router.get("/status/{payment_id}/{method}")
def provider_status(payment_id: str, method: str, providers: Dict[str, WalletProvider] = Depends(get_providers)):
    return {"success": True, "status": _provider(providers, method).check_status(payment_id)}


@router.get("/history/{order_id}")
def payment_history(order_id: str, s: Session = Depends(get_session)):
    rows: List[PaymentTransactionOut] = [
        PaymentTransactionOut.model_validate(t) for t in lifecycle.payment_history(s, order_id)
    ]
    return {"success": True, "history": [r.model_dump(mode="json") for r in rows]}


@router.post("/status-qr/{order_id}")
def status_qr(order_id: str, req: Optional[QRReq] = None):
    url = f"{settings.FRONTEND_URL}/payment-status/{order_id}"
    if req is not None and req.tableNumber not in (None, ""):
        url += f"?table={req.tableNumber}"
    return {"success": True, "qrCode": qr_data_url(url), "url": url, "orderId": order_id}
