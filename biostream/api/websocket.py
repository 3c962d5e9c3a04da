"""
WebSocket endpoints forwarding pipeline batches, events and widget outputs.

Pipeline callbacks run on whatever thread flushes or publishes; they hand
messages to the connection's event loop through a bounded queue. When a
client cannot keep up the oldest queued messages are dropped.
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from biostream.api.dependencies import get_pipeline
from biostream.core.logging import get_logger
from biostream.pipeline.channel_data import ChannelDataPipeline
from biostream.pipeline.fanout import Subscription
from biostream.pipeline.models import ControlEvent, Frame, SampleBatch

logger = get_logger(__name__)

router = APIRouter()

QUEUE_SIZE = 256


class MessageBridge:
    """Thread-safe hand-off of messages into one event loop's queue."""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = QUEUE_SIZE) -> None:
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def push(self, message: Dict[str, Any]) -> None:
        """Callable from any thread."""
        try:
            self.loop.call_soon_threadsafe(self._put, message)
        except RuntimeError:
            # Loop already closed: the connection is gone
            logger.debug("websocket_bridge_closed", message_type=message.get("type"))

    def _put(self, message: Dict[str, Any]) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(message)


class ConnectionManager:
    """
    Manages WebSocket connections for real-time streaming.
    """

    def __init__(self) -> None:
        self.active_connections: Dict[str, WebSocket] = {}
        self._ids = itertools.count(1)

    async def connect(self, websocket: WebSocket, kind: str) -> str:
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        connection_id = f"{kind}-{next(self._ids)}"
        self.active_connections[connection_id] = websocket
        logger.info("websocket_connected", connection_id=connection_id)
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        """Remove a WebSocket connection."""
        self.active_connections.pop(connection_id, None)
        logger.info("websocket_disconnected", connection_id=connection_id)

    async def send_message(self, connection_id: str, message: dict) -> bool:
        """
        Send message to a specific connection.

        Returns:
            True if sent successfully, False if connection doesn't exist
        """
        websocket = self.active_connections.get(connection_id)
        if websocket and websocket.client_state == WebSocketState.CONNECTED:
            await websocket.send_json(message)
            return True
        return False


# Global connection manager
manager = ConnectionManager()


async def _forward(connection_id: str, bridge: MessageBridge) -> None:
    while True:
        message = await bridge.queue.get()
        if bridge.dropped:
            message = {**message, "dropped": bridge.dropped}
            bridge.dropped = 0
        await manager.send_message(connection_id, message)


async def _serve(
    websocket: WebSocket,
    connection_id: str,
    bridge: MessageBridge,
    subscriptions: List[Subscription],
    pipeline: Optional[ChannelDataPipeline] = None
) -> None:
    """Forward queued messages while handling client messages until disconnect."""
    sender = asyncio.create_task(_forward(connection_id, bridge))
    try:
        while True:
            message = await websocket.receive_json()
            message_type = message.get("type")

            if message_type == "ping":
                bridge.push({"type": "pong"})

            elif message_type == "samples" and pipeline is not None:
                accepted = pipeline.add_samples(message.get("records") or [])
                if message.get("flush"):
                    pipeline.flush()
                bridge.push({"type": "ack", "accepted": accepted})

            else:
                bridge.push({
                    "type": "error",
                    "code": "UNKNOWN_MESSAGE_TYPE",
                    "message": f"Unknown message type: {message_type}"
                })

    except WebSocketDisconnect:
        logger.info("websocket_client_disconnected", connection_id=connection_id)

    except Exception as e:
        logger.exception("websocket_error", connection_id=connection_id, error=str(e))
        await manager.send_message(connection_id, {
            "type": "error",
            "code": "WEBSOCKET_ERROR",
            "message": str(e)
        })

    finally:
        for sub in subscriptions:
            sub.unsubscribe()
        sender.cancel()
        manager.disconnect(connection_id)


@router.websocket("/ws/stream")
async def stream_endpoint(
    websocket: WebSocket,
    pipeline: ChannelDataPipeline = Depends(get_pipeline)
):
    """
    Live sample batches and control events.

    Client sends:
    - ping: liveness check
    - samples: ``{"records": [...], "flush": bool}`` to ingest records

    Server sends:
    - batch: ``{"samples": [{ch0.., seq, counter?}, ...]}`` per flush
    - event: control event (filterChanged, samplesMissing, ...)
    - ack / pong / error
    """
    connection_id = await manager.connect(websocket, "stream")
    bridge = MessageBridge(asyncio.get_running_loop())

    def on_batch(batch: SampleBatch) -> None:
        bridge.push({"type": "batch", "samples": batch.to_dicts()})

    def on_event(event: ControlEvent) -> None:
        bridge.push({"type": "event", "event": event.to_dict()})

    subscriptions = [
        pipeline.subscribe_batches(on_batch),
        pipeline.subscribe_events(on_event),
    ]
    await _serve(websocket, connection_id, bridge, subscriptions, pipeline)


@router.websocket("/ws/outputs/{name}")
async def output_endpoint(
    websocket: WebSocket,
    name: str,
    pipeline: ChannelDataPipeline = Depends(get_pipeline)
):
    """
    One widget-output stream. The first message replays the current
    history; later messages carry each new frame.
    """
    connection_id = await manager.connect(websocket, f"output:{name}")
    bridge = MessageBridge(asyncio.get_running_loop())

    def on_frames(frames: List[Frame]) -> None:
        bridge.push({"type": "output", "name": name, "frames": frames})

    subscriptions = [pipeline.subscribe_widget_outputs(name, on_frames)]
    await _serve(websocket, connection_id, bridge, subscriptions)
