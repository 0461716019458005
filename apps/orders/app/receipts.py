from __future__ import annotations

import logging
import mimetypes
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from apps.orders.app import settings
from apps.orders.app.db import Order, PAYMENT_PAID, PAYMENT_PENDING_VERIFICATION, STATUS_CANCELLED, utcnow
from apps.orders.app.errors import ConflictError, NotFoundError, ValidationError
from apps.orders.app.lifecycle import log_activity, get_order
from apps.orders.app.notify import (
    ORDER_UPDATED,
    PAYMENT_UPDATED,
    STAFF_ROOM,
    ADMIN_ROOM,
    Notifier,
    emit_many,
    now_iso,
    order_room,
)

_log = logging.getLogger("cafe.orders")

_orders = Order.__table__
_SAFE = re.compile(r"[^A-Za-z0-9_-]")
_CHUNK = 64 * 1024


@dataclass(frozen=True)
class StoredReceipt:
    path: Path
    url: str
    size: int


def receipts_dir() -> Path:
    return Path(settings.RECEIPTS_DIR)


def _extension(filename: Optional[str], content_type: str) -> str:
    ext = Path(filename or "").suffix.lower()
    if ext and len(ext) <= 6 and _SAFE.sub("", ext[1:]) == ext[1:]:
        return ext
    return mimetypes.guess_extension(content_type) or ".img"


def _copy_limited(src: BinaryIO, dst: BinaryIO, limit: int) -> int:
    written = 0
    while True:
        chunk = src.read(_CHUNK)
        if not chunk:
            return written
        written += len(chunk)
        if written > limit:
            raise ValidationError(f"File too large (max {limit // (1024 * 1024)}MB)")
        dst.write(chunk)


@contextmanager
def stored_receipt(order_id: str, filename: Optional[str], content_type: str, source: BinaryIO) -> Iterator[StoredReceipt]:
    """
    Write the upload to the receipts directory and yield its location. If the
    write or anything in the with-block fails, the file is removed.
    """
    name = f"receipt_{_SAFE.sub('_', order_id)}_{int(time.time() * 1000)}{_extension(filename, content_type)}"
    dest = receipts_dir() / name
    dest.parent.mkdir(parents=True, exist_ok=True)
    created = False
    try:
        with dest.open("xb") as fh:
            created = True
            size = _copy_limited(source, fh, settings.RECEIPT_MAX_BYTES)
        if size == 0:
            raise ValidationError("Empty file")
        yield StoredReceipt(path=dest, url=f"{settings.RECEIPTS_URL_PREFIX}/{name}", size=size)
    except BaseException:
        if created:
            dest.unlink(missing_ok=True)
        raise


def upload_receipt(s: Session, notifier: Notifier, order_id: str, filename: Optional[str],
                   content_type: Optional[str], source: BinaryIO) -> str:
    if not order_id:
        raise ValidationError("Order ID is required")
    content_type = (content_type or "").lower()
    if not content_type.startswith("image/"):
        raise ValidationError("Only image files are allowed")
    order = get_order(s, order_id)
    if order.payment_status == PAYMENT_PAID:
        raise ConflictError("Order is already paid")
    if order.status == STATUS_CANCELLED:
        raise ConflictError("Cancelled orders cannot be paid")

    with stored_receipt(order_id, filename, content_type, source) as stored:
        try:
            res = s.execute(
                update(_orders)
                .where(
                    _orders.c.order_id == order_id,
                    _orders.c.payment_status != PAYMENT_PAID,
                    _orders.c.status != STATUS_CANCELLED,
                )
                .values(
                    receipt_path=stored.url,
                    payment_status=PAYMENT_PENDING_VERIFICATION,
                    updated_at=utcnow(),
                )
            )
            if res.rowcount == 0:
                raise ConflictError("Order is already paid or cancelled")
            log_activity(
                s,
                "receipt_uploaded",
                order_id,
                actor_type="guest",
                details={"receipt_path": stored.url, "size": stored.size, "content_type": content_type},
            )
            s.commit()
        except BaseException:
            s.rollback()
            raise

    _log.info("receipt uploaded", extra={"order_id": order_id, "receipt_path": stored.url})
    data = {
        "orderId": order_id,
        "status": PAYMENT_PENDING_VERIFICATION,
        "paymentStatus": PAYMENT_PENDING_VERIFICATION,
        "receiptPath": stored.url,
        "timestamp": now_iso(),
    }
    rooms = (order_room(order_id), STAFF_ROOM, ADMIN_ROOM)
    emit_many(notifier, rooms, PAYMENT_UPDATED, data)
    emit_many(notifier, rooms, ORDER_UPDATED, data)
    return stored.url


def receipt_file(s: Session, order_id: str) -> Path:
    order = get_order(s, order_id)
    if not order.receipt_path:
        raise NotFoundError("Receipt not found")
    path = receipts_dir() / Path(order.receipt_path).name
    if not path.is_file():
        raise NotFoundError("Receipt file not found")
    return path


def remove_receipt(receipt_path: Optional[str]) -> bool:
    if not receipt_path:
        return False
    path = receipts_dir() / Path(receipt_path).name
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
