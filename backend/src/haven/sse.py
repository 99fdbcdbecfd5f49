"""Server-Sent Events support for streamed responses."""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator, Awaitable, Protocol

from fastapi import Request
from fastapi.responses import StreamingResponse

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """SSE event types."""

    # Session lifecycle
    CONNECTED = "connected"
    MESSAGE_SAVED = "message-saved"
    AI_MESSAGE_STARTED = "ai-message-started"
    COMPLETE = "complete"
    ERROR = "error"
    HEARTBEAT = "heartbeat"

    # Content
    CHUNK = "chunk"
    CRISIS = "crisis"
    CRISIS_DETECTED = "crisis-detected"
    PROGRESS = "progress"


@dataclass
class SSEEvent:
    """An SSE event to send to clients."""

    event: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def encode(self) -> str:
        """Encode as SSE format."""
        event = self.event.value if isinstance(self.event, EventType) else self.event
        lines = [
            f"id: {self.id}",
            f"event: {event}",
            f"data: {json.dumps(self.data, default=str)}",
            "",  # Empty line to end the event
        ]
        return "\n".join(lines) + "\n"


class EventSink(Protocol):
    """Destination for one session's events. Pushing to a closed sink is a no-op."""

    closed: bool

    async def push(self, event: str, data: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class QueueEventSink:
    """Sink backed by an asyncio.Queue, drained by ``sink_stream``."""

    def __init__(self):
        self.queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()
        self.closed = False

    async def push(self, event: str, data: dict[str, Any]) -> None:
        if self.closed:
            return
        self.queue.put_nowait(SSEEvent(event=event, data=data))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(None)


# Strong references so producer tasks are not garbage collected mid-stream
_producers: set[asyncio.Task] = set()


async def sink_stream(
    sink: QueueEventSink,
    producer: Awaitable[None],
    request: Request,
    cancel: asyncio.Event,
    heartbeat_interval: float = 15,
) -> AsyncGenerator[str, None]:
    """Run ``producer`` in the background and relay what it pushes into ``sink``.

    Sends heartbeat pings while the producer is quiet. A client disconnect
    sets ``cancel`` so the producer stops between chunks.
    """
    task = asyncio.ensure_future(producer)
    _producers.add(task)
    task.add_done_callback(_producers.discard)

    try:
        while True:
            if await request.is_disconnected():
                logger.info("Client disconnected from stream")
                break

            try:
                event = await asyncio.wait_for(sink.queue.get(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                yield SSEEvent(
                    event=EventType.HEARTBEAT,
                    data={"timestamp": datetime.now(timezone.utc).isoformat()},
                ).encode()
                continue

            if event is None:
                break
            yield event.encode()
    finally:
        if not task.done():
            cancel.set()


def create_sse_response(generator: AsyncGenerator[str, None]) -> StreamingResponse:
    """Create an SSE StreamingResponse."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
