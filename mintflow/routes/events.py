import asyncio

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from mintflow.events import PipelineEvent

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["events"])

# Connected clients: websocket -> subject filter (None = everything)
_sockets: dict[WebSocket, str | None] = {}
_pending: set[asyncio.Task] = set()


def broadcast(events: list[PipelineEvent]) -> None:
    """EventSink that forwards pipeline events to connected websockets.

    Called synchronously from state transitions on the event loop, so sending
    is scheduled as a task instead of awaited.
    """
    if not _sockets:
        return
    task = asyncio.get_running_loop().create_task(_send_to_all(events))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


@router.websocket("/ws/events")
async def events_endpoint(websocket: WebSocket, subject: str | None = None) -> None:
    """Live stream of pipeline events, optionally for one capture/mint/subject."""
    await websocket.accept()
    _sockets[websocket] = subject
    await websocket.send_json({"type": "connected", "subject": subject})
    try:
        while True:
            await websocket.receive_text()  # keep-alive; client sends pings
    except WebSocketDisconnect:
        pass
    finally:
        _sockets.pop(websocket, None)


async def _send_to_all(events: list[PipelineEvent]) -> None:
    for ws, subject in list(_sockets.items()):
        for event in events:
            if subject is not None and event.subject != subject:
                continue
            try:
                await ws.send_json(event.to_dict())
            except (WebSocketDisconnect, RuntimeError) as e:
                # client went away between the check and the send
                logger.debug("websocket_send_failed", error=str(e))
                _sockets.pop(ws, None)
                break
