import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import QueueSubscriber, get_event_sink

router = APIRouter(tags=["events"])

logger = logging.getLogger(__name__)


@router.websocket("/ws/events")
async def stream_events(websocket: WebSocket):
    """
    Push every listing and pickup-request event to the connected client
    as JSON until it disconnects.
    """
    sink = get_event_sink()
    subscriber = QueueSubscriber(asyncio.get_running_loop())
    # listening before the client sees the handshake
    sink.subscribe(subscriber)
    try:
        await websocket.accept()
        while True:
            message = await subscriber.queue.get()
            await websocket.send_json(message)
    except WebSocketDisconnect:
        logger.debug("Event stream client disconnected")
    finally:
        sink.unsubscribe(subscriber)
