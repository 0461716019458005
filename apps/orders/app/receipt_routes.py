from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from apps.orders.app import receipts
from apps.orders.app.db import get_session
from apps.orders.app.errors import ValidationError
from apps.orders.app.notify import Notifier, get_notifier

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.post("/upload-receipt")
def upload_receipt(
    receipt: Optional[UploadFile] = File(default=None),
    orderId: Optional[str] = Form(default=None),
    s: Session = Depends(get_session),
    notifier: Notifier = Depends(get_notifier),
):
    if receipt is None:
        raise ValidationError("No file uploaded")
    try:
        url = receipts.upload_receipt(s, notifier, (orderId or "").strip(), receipt.filename,
                                      receipt.content_type, receipt.file)
    finally:
        receipt.file.close()
    return {
        "success": True,
        "message": "Receipt uploaded successfully",
        "orderId": orderId,
        "receiptPath": url,
    }


@router.get("/receipt/{order_id}")
def get_receipt(order_id: str, s: Session = Depends(get_session)):
    return FileResponse(receipts.receipt_file(s, order_id))
