from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol, Set

from fastapi import Request, WebSocket

from cafe_shared import EventPublisher

_log = logging.getLogger("cafe.events")

STAFF_ROOM = "staff-room"
ADMIN_ROOM = "admin-room"

PAYMENT_UPDATED = "payment-updated"
ORDER_UPDATED = "order-updated"
NEW_ORDER = "new-order-received"
LOW_STOCK = "low-stock-alert"


def order_room(order_id: str) -> str:
    return f"order-{order_id}"


def customer_room(email: str) -> str:
    return f"customer-{email}"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Notifier(Protocol):
    def emit(self, room: str, event: str, data: Dict[str, Any]) -> None: ...


def emit_many(notifier: Notifier, rooms: Iterable[str], event: str, data: Dict[str, Any]) -> None:
    for room in rooms:
        notifier.emit(room, event, data)


def broadcast_payment(notifier: Notifier, order_id: str, data: Dict[str, Any]) -> None:
    payload = {"orderId": order_id, "timestamp": now_iso(), **data}
    emit_many(notifier, (order_room(order_id), STAFF_ROOM, ADMIN_ROOM), PAYMENT_UPDATED, payload)


class RoomHub:
    """
    In-process websocket rooms. `emit` may be called from request threads;
    sends are scheduled on the loop the hub was bound to at startup. When a
    publisher is configured, events also go to Redis and events from other
    workers are relayed to local sockets.
    """

    def __init__(self, publisher: Optional[EventPublisher] = None) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._publisher = publisher
        self._relay: Optional[threading.Thread] = None
        self._stopping = False
        self.node_id = uuid.uuid4().hex

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def join(self, ws: WebSocket, room: str) -> None:
        with self._lock:
            self._rooms[room].add(ws)

    def leave(self, ws: WebSocket, room: str) -> None:
        with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(ws)
                if not members:
                    del self._rooms[room]

    def drop(self, ws: WebSocket) -> None:
        with self._lock:
            for room in [r for r, members in self._rooms.items() if ws in members]:
                self._rooms[room].discard(ws)
                if not self._rooms[room]:
                    del self._rooms[room]

    def members(self, room: str) -> int:
        with self._lock:
            return len(self._rooms.get(room, ()))

    def emit(self, room: str, event: str, data: Dict[str, Any]) -> None:
        message = {"event": event, "room": room, "data": data}
        if self._publisher is not None:
            self._publisher.publish("orders", event, {"room": room, "data": data, "node": self.node_id})
        self._deliver(message)

    def _deliver(self, message: Dict[str, Any]) -> None:
        loop = self._loop
        with self._lock:
            sockets = list(self._rooms.get(message["room"], ()))
        if not sockets or loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        coro = self._send(sockets, message)
        if running is loop:
            loop.create_task(coro)
        else:
            asyncio.run_coroutine_threadsafe(coro, loop)

    async def _send(self, sockets: list[WebSocket], message: Dict[str, Any]) -> None:
        for ws in sockets:
            try:
                await ws.send_json(message)
            except Exception:
                self.drop(ws)

    def _on_remote(self, event: Dict[str, Any]) -> None:
        payload = event.get("payload") or {}
        if payload.get("node") == self.node_id or not payload.get("room"):
            return
        self._deliver({"event": event.get("type"), "room": payload["room"], "data": payload.get("data") or {}})

    def start_relay(self) -> None:
        if self._publisher is None or not self._publisher.enabled or self._relay is not None:
            return
        self._stopping = False
        self._relay = threading.Thread(
            target=self._publisher.subscribe,
            args=("orders", self._on_remote, lambda: self._stopping),
            name="orders-event-relay",
            daemon=True,
        )
        self._relay.start()
        _log.info("event relay started", extra={"node": self.node_id})

    def stop_relay(self) -> None:
        self._stopping = True
        if self._relay is not None:
            self._relay.join(timeout=2.0)
            self._relay = None


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier
