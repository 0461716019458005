"""
Purge stale orders.

Cancelled orders are dropped after CLEANUP_CANCELLED_DAYS, unpaid orders
still waiting for verification after CLEANUP_PENDING_DAYS. Paid orders are
never touched. Run from cron with:

    python -m apps.orders.app.cleanup
"""
from __future__ import annotations

import logging
import sys
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from apps.orders.app import settings
from apps.orders.app.db import (
    Order,
    PAYMENT_PAID,
    STATUS_CANCELLED,
    STATUS_PENDING_VERIFICATION,
    utcnow,
)
from apps.orders.app.receipts import remove_receipt

log = logging.getLogger("cafe.cleanup")

_orders = Order.__table__


def _criteria(now: datetime):
    cancelled_cutoff = now - timedelta(days=settings.CLEANUP_CANCELLED_DAYS)
    pending_cutoff = now - timedelta(days=settings.CLEANUP_PENDING_DAYS)
    cancelled = (
        Order.status == STATUS_CANCELLED,
        Order.payment_status != PAYMENT_PAID,
        Order.order_time < cancelled_cutoff,
    )
    pending = (
        Order.status == STATUS_PENDING_VERIFICATION,
        Order.payment_status != PAYMENT_PAID,
        Order.order_time < pending_cutoff,
    )
    return cancelled, pending


def _bucket(s: Session, where) -> Dict[str, Any]:
    row = s.execute(select(func.count(Order.id), func.min(Order.order_time), func.max(Order.order_time)).where(*where)).one()
    return {"count": int(row[0] or 0), "oldest_order": row[1], "newest_order": row[2]}


def cleanup_stats(s: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    cancelled, pending = _criteria(now or utcnow())
    return {
        "cancelledOrders": _bucket(s, cancelled),
        "pendingVerificationOrders": _bucket(s, pending),
    }


def cleanup_old_orders(s: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    cancelled, pending = _criteria(now or utcnow())
    receipts = [
        p
        for where in (cancelled, pending)
        for (p,) in s.execute(select(Order.receipt_path).where(*where, Order.receipt_path.is_not(None))).all()
    ]
    removed_cancelled = s.execute(delete(_orders).where(*cancelled)).rowcount or 0
    removed_pending = s.execute(delete(_orders).where(*pending)).rowcount or 0
    s.commit()
    files = sum(1 for p in receipts if remove_receipt(p))
    result = {
        "cancelledDeleted": removed_cancelled,
        "pendingVerificationDeleted": removed_pending,
        "receiptFilesDeleted": files,
        "totalDeleted": removed_cancelled + removed_pending,
    }
    log.info("order cleanup finished", extra=result)
    return result


def main() -> int:
    from cafe_shared import setup_json_logging
    from apps.orders.app.db import create_all, engine

    setup_json_logging()
    create_all()
    with Session(engine) as s:
        result = cleanup_old_orders(s)
    log.info("deleted %s orders", result["totalDeleted"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
