"""WebSocket stream of room events for dashboards and agent consoles."""

from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from ..platform import Platform, get_platform
from ..realtime.broadcaster import GLOBAL_ROOM, AsyncQueueSubscriber

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/realtime", tags=["realtime"])

KEEPALIVE_SECONDS = 30.0


def _parse_rooms(raw: str | None) -> list[str]:
    rooms = [name.strip() for name in (raw or "").split(",") if name.strip()]
    return list(dict.fromkeys(rooms)) or [GLOBAL_ROOM]


async def _read_until_disconnect(websocket: WebSocket) -> None:
    # Client messages carry nothing; reading only detects the disconnect.
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def _send(websocket: WebSocket, payload: dict) -> None:
    await websocket.send_text(json.dumps(payload, default=str))


@router.websocket("/ws")
async def realtime_websocket(
    websocket: WebSocket,
    rooms: str | None = Query(None, description="Comma separated room names"),
    platform: Platform = Depends(get_platform),
) -> None:
    """Stream events for the requested rooms.

    Messages are ``{"room", "seq", "type", "data"}`` objects; ``seq`` is
    per room so clients can spot gaps. A client that falls too far behind
    is disconnected and should reload its state before reconnecting.
    """
    names = _parse_rooms(rooms)
    await websocket.accept()
    subscriber = AsyncQueueSubscriber(asyncio.get_running_loop())
    platform.broadcaster.subscribe(subscriber, names)
    reader = asyncio.create_task(_read_until_disconnect(websocket))
    logger.debug("Realtime client joined %s", ",".join(names))

    try:
        await _send(websocket, {"type": "subscribed", "rooms": names})
        while True:
            getter = asyncio.ensure_future(subscriber.queue.get())
            done, _ = await asyncio.wait(
                {getter, reader},
                timeout=KEEPALIVE_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if reader in done:
                getter.cancel()
                break
            if getter in done:
                await _send(websocket, getter.result().to_dict())
                continue
            getter.cancel()
            if subscriber.closed and subscriber.queue.empty():
                await websocket.close(code=1013)
                break
            await _send(websocket, {"type": "keepalive"})
    except WebSocketDisconnect:
        pass
    finally:
        subscriber.close()
        platform.broadcaster.unsubscribe(subscriber, names)
        reader.cancel()
        logger.debug("Realtime client left %s", ",".join(names))
