from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from apps.orders.app.notify import RoomHub

_log = logging.getLogger("cafe.events")

router = APIRouter()


@router.websocket("/ws")
async def ws_rooms(ws: WebSocket):
    """
    Clients subscribe with `?rooms=a,b` and/or by sending
    `{"action": "join"|"leave", "room": "..."}`. Every event is delivered as
    `{"event", "room", "data"}`.
    """
    hub: RoomHub = ws.app.state.notifier
    await ws.accept()
    for room in (ws.query_params.get("rooms") or "").split(","):
        if room.strip():
            hub.join(ws, room.strip())
    try:
        while True:
            msg = await ws.receive_json()
            if not isinstance(msg, dict):
                continue
            action = str(msg.get("action") or "").lower()
            room = str(msg.get("room") or "").strip()
            if not room:
                continue
            if action == "join":
                hub.join(ws, room)
                await ws.send_json({"event": "joined", "room": room})
            elif action == "leave":
                hub.leave(ws, room)
                await ws.send_json({"event": "left", "room": room})
    except WebSocketDisconnect:
        pass
    except ValueError:
        _log.info("websocket closed after malformed message")
        await ws.close(code=1003)
    finally:
        hub.drop(ws)
