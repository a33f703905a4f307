"""
Realtime status updates over WebSocket

Clients connect to /ws/applications/{id} and receive a JSON message for
every status change committed on that application while they are connected:

    {"event": "status_updated",
     "data": {"applicationId": 42, "newStatus": "rejected",
              "updatedBy": "Anna Verdi", "timestamp": "..."}}

Right after the connection is accepted the server sends
{"event": "subscribed", "data": {"applicationId": 42}}; events published
before that message are not delivered.

Events are published from request worker threads. Each connection owns a
bounded queue on its event loop; when the queue is full the event is dropped
for that connection and a warning is logged.
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from config_manager import NotificationsConfig
from notifications import NotificationHub

logger = logging.getLogger(__name__)

router = APIRouter()


def _enqueue(queue: asyncio.Queue, message: Dict[str, Any], application_id: int) -> None:
    try:
        queue.put_nowait(message)
    except asyncio.QueueFull:
        logger.warning(
            "Subscriber queue full, dropping %s for application %d",
            message.get("event"),
            application_id,
        )


async def _pump(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _drain(websocket: WebSocket) -> None:
    # Client messages are ignored; receiving detects the disconnect
    while True:
        await websocket.receive_text()


@router.websocket("/ws/applications/{application_id}")
async def application_updates(websocket: WebSocket, application_id: int):
    """Stream status updates of one application."""
    hub: NotificationHub = websocket.app.state.hub
    queue_size = getattr(
        websocket.app.state, "notification_queue_size", NotificationsConfig().queue_size
    )

    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)

    def forward(message: Dict[str, Any]) -> None:
        loop.call_soon_threadsafe(_enqueue, queue, message, application_id)

    subscription = hub.subscribe(application_id, forward)
    logger.info("WebSocket subscribed to application %d", application_id)

    tasks = []
    try:
        await websocket.send_json({"event": "subscribed", "data": {"applicationId": application_id}})

        tasks = [
            asyncio.create_task(_pump(websocket, queue)),
            asyncio.create_task(_drain(websocket)),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("WebSocket for application %d failed: %s", application_id, exc)

    except WebSocketDisconnect:
        pass
    finally:
        for task in tasks:
            task.cancel()
        hub.unsubscribe(subscription)
        logger.info("WebSocket unsubscribed from application %d", application_id)
