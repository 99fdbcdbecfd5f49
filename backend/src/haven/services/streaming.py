"""Streaming coordinator: one event-based delivery session per streamed reply.

Session lifecycle:
    connected -> message-saved -> ai-message-started -> chunk* -> crisis? -> complete | error

The session is registered on start and removed, and its sink closed, no
matter how the stream ends. Concurrent sessions on the same conversation are
not serialized: each counter increment is atomic in the store, but two
sessions can interleave their messages.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone

from haven.config import Settings, settings
from haven.db.base import Store
from haven.errors import ValidationError
from haven.services.orchestrator import Orchestrator, validate_user_message
from haven.services.session_registry import SessionRegistry, StreamSession
from haven.sse import EventSink, EventType
from haven_models import (
    Message,
    MessageMetadata,
    MessageRole,
    MessageStatus,
    RiskLevel,
    StreamingState,
)

logger = logging.getLogger(__name__)


class StreamingCoordinator:
    """Drives the orchestrator's streaming path into an event sink."""

    def __init__(
        self,
        store: Store,
        orchestrator: Orchestrator,
        registry: SessionRegistry,
        config: Settings = settings,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.registry = registry
        self.persist_every = config.stream_persist_every
        self.max_age = timedelta(minutes=config.stream_max_age_minutes)
        self.sweep_interval = config.stream_sweep_interval_seconds
        self._sinks: dict[str, EventSink] = {}

    async def stream_response(
        self,
        sink: EventSink,
        conversation_id: str,
        user_id: str,
        user_message: str,
        cancel: asyncio.Event | None = None,
    ) -> str:
        """Stream one assistant reply into ``sink``. Returns the session id."""
        session = StreamSession(
            id=f"{conversation_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}",
            conversation_id=conversation_id,
            user_id=user_id,
        )
        registered = False

        try:
            await self.registry.register(session)
            registered = True
            self._sinks[session.id] = sink
            logger.info(f"Stream session started: {session.id}")
            await sink.push(EventType.CONNECTED, {"session_id": session.id, "conversation_id": conversation_id})
            await self._run(session, sink, user_message, cancel)
        except Exception as e:
            logger.error(f"Stream session {session.id} failed: {e}")
            if registered:
                await self._fail(sink, conversation_id, "Streaming failed", retryable=True)
            else:
                await sink.push(EventType.ERROR, {"error": "Streaming failed", "retryable": True})
        finally:
            # The sink closes even when the registry is unreachable
            self._sinks.pop(session.id, None)
            await sink.close()
            if registered:
                try:
                    await self.registry.remove(session.id)
                except Exception as e:
                    logger.error(f"Failed to remove stream session {session.id}: {e}")
            logger.info(f"Stream session closed: {session.id}")
        return session.id

    async def _run(
        self,
        session: StreamSession,
        sink: EventSink,
        user_message: str,
        cancel: asyncio.Event | None,
    ) -> None:
        conversation_id = session.conversation_id
        conversation = await self.store.get_conversation(conversation_id)
        if not conversation or conversation.user_id != session.user_id:
            await sink.push(EventType.ERROR, {"error": "Conversation not found", "retryable": False})
            return

        try:
            message = validate_user_message(user_message)
        except ValidationError as e:
            await sink.push(EventType.ERROR, {"error": e.detail, "retryable": False})
            return

        user_msg = await self.store.create_message(
            Message(conversation_id=conversation_id, role=MessageRole.USER, content=message)
        )
        await sink.push(EventType.MESSAGE_SAVED, {"message_id": user_msg.id, "content": message})

        state = StreamingState()
        assistant = await self.store.create_message(
            Message(
                conversation_id=conversation_id,
                role=MessageRole.ASSISTANT,
                content="",
                status=MessageStatus.SENDING,
                streaming=state,
            )
        )
        await sink.push(EventType.AI_MESSAGE_STARTED, {"message_id": assistant.id})
        await self.registry.update(session.id, state="streaming")

        pieces: list[str] = []
        crisis_level: RiskLevel | None = None

        async for event in self.orchestrator.stream_chat_response(conversation_id, message, cancel):
            if event.type == "chunk":
                pieces.append(event.data["content"])
                await sink.push(
                    EventType.CHUNK,
                    {"content": event.data["content"], "index": event.data["index"], "message_id": assistant.id},
                )
                if len(pieces) % self.persist_every == 0:
                    state.chunks_received = len(pieces)
                    await self.store.update_message(assistant.id, content="".join(pieces), streaming=state)
                    await self.registry.update(session.id, chunk_count=len(pieces))

            elif event.type in ("crisis", "crisis-detected"):
                level = RiskLevel(event.data["level"])
                crisis_level = RiskLevel.max(crisis_level, level) if crisis_level else level
                await sink.push(EventType.CRISIS, {**event.data, "source": event.type, "message_id": assistant.id})
                await self.store.mark_crisis(conversation_id, level)

            elif event.type == "complete":
                accumulated = "".join(pieces)
                final = event.data.get("content")
                if final and final != accumulated:
                    logger.debug(f"Stream {session.id}: complete event overrides accumulated content")
                    content = final
                else:
                    content = accumulated

                metadata: MessageMetadata = event.data.get("metadata") or MessageMetadata()
                if crisis_level:
                    metadata.is_crisis = True
                    metadata.risk_level = (
                        RiskLevel.max(metadata.risk_level, crisis_level) if metadata.risk_level else crisis_level
                    )

                state.is_streaming = False
                state.complete = True
                state.chunks_received = len(pieces)
                state.completed_at = datetime.now(timezone.utc)
                await self.store.update_message(
                    assistant.id,
                    content=content,
                    status=MessageStatus.DELIVERED,
                    metadata=metadata,
                    streaming=state,
                )
                await sink.push(
                    EventType.COMPLETE,
                    {
                        "message_id": assistant.id,
                        "total_chunks": len(pieces),
                        "final_content": content,
                        "crisis_detected": crisis_level is not None,
                    },
                )
                await self.store.increment_message_count(conversation_id, by=2)
                await self.registry.update(session.id, chunk_count=len(pieces), state="complete")
                return

            elif event.type == "error":
                await self._fail(
                    sink,
                    conversation_id,
                    event.data.get("error", "Streaming failed"),
                    retryable=event.data.get("retryable", True),
                )
                return

        # The orchestrator only stops without a terminal event when cancelled
        logger.info(f"Stream {session.id} cancelled after {len(pieces)} chunk(s)")
        state.is_streaming = False
        state.chunks_received = len(pieces)
        await self.store.update_message(
            assistant.id,
            content="".join(pieces),
            status=MessageStatus.ERROR,
            error_message="Stream cancelled",
            streaming=state,
        )

    async def _fail(self, sink: EventSink, conversation_id: str, error: str, retryable: bool) -> None:
        await sink.push(EventType.ERROR, {"error": error, "retryable": retryable})
        try:
            message = await self.store.get_latest_sending_message(conversation_id)
            if message:
                await self.store.update_message(message.id, status=MessageStatus.ERROR, error_message=error)
        except Exception as e:
            logger.error(f"Failed to mark message as errored in {conversation_id}: {e}")

    async def stream_journal_analysis(self, sink: EventSink, journal_id: str, user_id: str) -> None:
        """Relay analysis progress for one journal entry."""
        try:
            await sink.push(EventType.CONNECTED, {"journal_id": journal_id})
            journal = await self.store.get_journal(journal_id)
            if not journal or journal.user_id != user_id:
                await sink.push(EventType.ERROR, {"error": "Journal not found", "retryable": False})
                return

            async for event in self.orchestrator.analysis_progress(journal_id):
                if event.type == "progress":
                    await sink.push(EventType.PROGRESS, event.data)
                elif event.type == "complete":
                    await sink.push(
                        EventType.COMPLETE,
                        {"journal_id": journal_id, "analysis": event.data["analysis"].model_dump(mode="json")},
                    )
                elif event.type == "error":
                    await sink.push(EventType.ERROR, event.data)
        except Exception as e:
            logger.error(f"Journal analysis stream failed for {journal_id}: {e}")
            await sink.push(EventType.ERROR, {"error": "Analysis failed", "retryable": True})
        finally:
            await sink.close()

    # ============= Session management =============

    async def active_stream_count(self) -> int:
        return await self.registry.count()

    async def user_active_streams(self, user_id: str) -> list[StreamSession]:
        return await self.registry.user_sessions(user_id)

    async def sweep_stale_sessions(self) -> list[str]:
        """Evict sessions older than the configured maximum age."""
        stale = await self.registry.sweep_stale(self.max_age)
        for session_id in stale:
            sink = self._sinks.pop(session_id, None)
            if sink:
                await sink.close()
        return stale

    async def run_sweeper(self, stop: asyncio.Event) -> None:
        """Sweep stale sessions periodically until ``stop`` is set."""
        while not stop.is_set():
            try:
                await self.sweep_stale_sessions()
            except Exception as e:
                logger.warning(f"Stale session sweep failed: {e}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                pass

    async def close_all_streams(self) -> int:
        """Close every open session; used on shutdown."""
        sessions = await self.registry.clear()
        sinks = list(self._sinks.values())
        self._sinks.clear()
        for sink in sinks:
            await sink.close()
        logger.info(f"Closed {len(sessions)} active stream(s)")
        return len(sessions)
