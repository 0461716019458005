from __future__ import annotations

import asyncio
import logging
import os

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cafe_shared import (
    EventPublisher,
    RequestIDMiddleware,
    add_standard_health,
    configure_cors,
    register_shutdown,
    register_startup,
    setup_json_logging,
)

from apps.orders.app import settings
from apps.orders.app.admin_routes import router as admin_router
from apps.orders.app.db import create_all, engine
from apps.orders.app.errors import install_exception_handlers
from apps.orders.app.guest_routes import router as guest_router
from apps.orders.app.inventory import alert_low_stock
from apps.orders.app.loyalty_routes import router as loyalty_router
from apps.orders.app.notify import RoomHub
from apps.orders.app.payment_routes import router as payment_router
from apps.orders.app.providers import build_providers
from apps.orders.app.receipt_routes import router as receipt_router
from apps.orders.app.staff_routes import router as staff_router
from apps.orders.app.ws import router as ws_router

_log = logging.getLogger("cafe.orders")

app = FastAPI(title="Cafe Orders API", version="0.1.0")
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", "*"))
add_standard_health(app)
install_exception_handlers(app)

app.state.notifier = RoomHub(EventPublisher())
app.state.providers = build_providers()

for _router in (guest_router, payment_router, receipt_router, staff_router, loyalty_router, admin_router, ws_router):
    app.include_router(_router)
app.mount(settings.RECEIPTS_URL_PREFIX, StaticFiles(directory=settings.RECEIPTS_DIR, check_dir=False), name="receipts")


def _check_low_stock() -> None:
    with Session(engine) as s:
        alert_low_stock(s, app.state.notifier)


async def _low_stock_loop(interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(_check_low_stock)
        except SQLAlchemyError as e:
            _log.warning("low stock poll failed: %s", e)


@register_startup(app)
async def _startup():
    create_all()
    hub = app.state.notifier
    hub.bind_loop(asyncio.get_running_loop())
    hub.start_relay()
    if settings.LOW_STOCK_POLL_SECS > 0:
        app.state.low_stock_task = asyncio.create_task(_low_stock_loop(settings.LOW_STOCK_POLL_SECS))
    _log.info("orders service started", extra={"env": settings.ENV})


@register_shutdown(app)
async def _shutdown():
    task = getattr(app.state, "low_stock_task", None)
    if task is not None:
        task.cancel()
    app.state.notifier.stop_relay()
    for provider in app.state.providers.values():
        provider.close()
