"""Tests for the streaming coordinator."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import Pipeline, RecordingSink, ScriptedProvider
from haven.services import streaming
from haven.services.session_registry import InMemorySessionRegistry, StreamSession
from haven.services.streaming import StreamingCoordinator
from haven_models import ConversationStatus, JournalEntry, MessageRole, MessageStatus, RiskLevel


class CancellingSink(RecordingSink):
    """Sets ``cancel`` once ``after`` chunks have been pushed."""

    def __init__(self, cancel: asyncio.Event, after: int):
        super().__init__()
        self.cancel = cancel
        self.after = after

    async def push(self, event, data):
        await super().push(event, data)
        if len(self.of("chunk")) == self.after:
            self.cancel.set()


class BrokenRegisterRegistry(InMemorySessionRegistry):
    async def register(self, session):
        raise ConnectionError("registry unreachable")


class BrokenRemoveRegistry(InMemorySessionRegistry):
    async def remove(self, session_id):
        raise ConnectionError("registry unreachable")


class GatedProvider(ScriptedProvider):
    """Holds every stream until ``gate`` is set."""

    def __init__(self, chunks: list[str], gate: asyncio.Event):
        super().__init__(chunks)
        self.gate = gate

    async def stream_complete(self, messages, options):
        await self.gate.wait()
        async for chunk in super().stream_complete(messages, options):
            yield chunk


def _record_updates(store, monkeypatch) -> list[dict]:
    updates: list[dict] = []
    original = store.update_message

    async def recording(message_id, **kwargs):
        updates.append(kwargs)
        await original(message_id, **kwargs)

    monkeypatch.setattr(store, "update_message", recording)
    return updates


class TestStreamResponse:
    @pytest.mark.asyncio
    async def test_event_order_and_persistence(self, store, conversation, sink):
        chunks = ["It ", "sounds ", "like ", "a ", "long ", "week."]
        pipeline = Pipeline(store, ScriptedProvider(chunks))

        session_id = await pipeline.coordinator.stream_response(sink, conversation.id, "student-1", "So tired of this")

        assert sink.names == ["connected", "message-saved", "ai-message-started"] + ["chunk"] * 6 + ["complete"]
        assert session_id.startswith(f"{conversation.id}-")
        assert [c["index"] for c in sink.of("chunk")] == list(range(6))

        complete = sink.of("complete")[0]
        assert complete["final_content"] == "".join(chunks)
        assert complete["total_chunks"] == 6
        assert complete["crisis_detected"] is False

        messages = await store.get_messages(conversation.id)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assistant = messages[1]
        assert assistant.id == complete["message_id"]
        assert assistant.content == "".join(chunks)
        assert assistant.status == MessageStatus.DELIVERED
        assert assistant.streaming.complete
        assert not assistant.streaming.is_streaming
        assert assistant.streaming.chunks_received == 6
        assert assistant.metadata.topic == "sleep"

        updated = await store.get_conversation(conversation.id)
        assert updated.message_count == 2

    @pytest.mark.asyncio
    async def test_partial_content_persisted_every_ten_chunks(self, store, conversation, sink, monkeypatch):
        chunks = [f"w{i} " for i in range(23)]
        pipeline = Pipeline(store, ScriptedProvider(chunks))
        updates = _record_updates(store, monkeypatch)

        await pipeline.coordinator.stream_response(sink, conversation.id, "student-1", "hi there")

        partial = [u["content"] for u in updates if "status" not in u]
        assert partial == ["".join(chunks[:10]), "".join(chunks[:20])]
        assert updates[-1]["status"] == MessageStatus.DELIVERED
        assert updates[-1]["content"] == "".join(chunks)

    @pytest.mark.asyncio
    async def test_session_is_released(self, pipeline, conversation, sink):
        await pipeline.coordinator.stream_response(sink, conversation.id, "student-1", "hello")

        assert sink.closed
        assert await pipeline.coordinator.active_stream_count() == 0
        assert await pipeline.coordinator.user_active_streams("student-1") == []

    @pytest.mark.asyncio
    async def test_foreign_conversation(self, pipeline, store, conversation, sink):
        await pipeline.coordinator.stream_response(sink, conversation.id, "student-2", "hello")

        assert sink.names == ["connected", "error"]
        assert sink.of("error")[0] == {"error": "Conversation not found", "retryable": False}
        assert await store.get_messages(conversation.id) == []
        assert sink.closed

    @pytest.mark.asyncio
    async def test_empty_message(self, pipeline, store, conversation, sink):
        await pipeline.coordinator.stream_response(sink, conversation.id, "student-1", "   ")

        assert sink.names == ["connected", "error"]
        assert sink.of("error")[0]["retryable"] is False
        assert await store.get_messages(conversation.id) == []

    @pytest.mark.asyncio
    async def test_crisis_message(self, pipeline, store, conversation, sink):
        await pipeline.coordinator.stream_response(sink, conversation.id, "student-1", "I want to kill myself")

        assert sink.names == ["connected", "message-saved", "ai-message-started", "crisis", "complete"]
        crisis = sink.of("crisis")[0]
        assert crisis["level"] == "high"
        assert crisis["source"] == "crisis"
        assert crisis["resources"]["hotlines"]["national"]["number"] == "988"

        # No chunks were streamed, so the crisis response from the complete event is stored
        complete = sink.of("complete")[0]
        assert complete["crisis_detected"] is True
        assert complete["total_chunks"] == 0
        assert "**Crisis Resources:**" in complete["final_content"]

        assistant = (await store.get_messages(conversation.id))[-1]
        assert assistant.content == complete["final_content"]
        assert assistant.metadata.is_crisis
        assert assistant.metadata.risk_level == RiskLevel.HIGH

        updated = await store.get_conversation(conversation.id)
        assert updated.status == ConversationStatus.CRISIS
        assert updated.crisis_level == RiskLevel.HIGH

    @pytest.mark.asyncio
    async def test_crisis_language_in_generated_text(self, store, conversation, sink):
        chunks = ["Some ", "days ", "feel ", "hopeless, ", "and ", "that ", "is ", "okay."]
        pipeline = Pipeline(store, ScriptedProvider(chunks))

        await pipeline.coordinator.stream_response(sink, conversation.id, "student-1", "tell me more")

        assert sink.names.count("crisis") == 1
        assert sink.of("crisis")[0]["source"] == "crisis-detected"
        assert sink.names[-1] == "complete"
        assert sink.of("complete")[0]["crisis_detected"] is True

        updated = await store.get_conversation(conversation.id)
        assert updated.crisis_level == RiskLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_generation_failure(self, failing_pipeline, store, conversation, sink):
        await failing_pipeline.coordinator.stream_response(sink, conversation.id, "student-1", "hello")

        assert sink.names == ["connected", "message-saved", "ai-message-started", "error"]
        assert sink.of("error")[0] == {"error": "Failed to generate response", "retryable": True}

        assistant = (await store.get_messages(conversation.id))[-1]
        assert assistant.status == MessageStatus.ERROR
        assert assistant.error_message == "Failed to generate response"

        updated = await store.get_conversation(conversation.id)
        assert updated.message_count == 0
        assert sink.closed

    @pytest.mark.asyncio
    async def test_cancel_marks_partial_message(self, store, conversation):
        chunks = ["one ", "two ", "three ", "four ", "five."]
        pipeline = Pipeline(store, ScriptedProvider(chunks))
        cancel = asyncio.Event()
        sink = CancellingSink(cancel, after=2)

        await pipeline.coordinator.stream_response(sink, conversation.id, "student-1", "hello", cancel)

        assert "complete" not in sink.names
        assert len(sink.of("chunk")) == 2
        assistant = (await store.get_messages(conversation.id))[-1]
        assert assistant.status == MessageStatus.ERROR
        assert assistant.error_message == "Stream cancelled"
        assert assistant.content == "one two "
        assert sink.closed
        assert await pipeline.registry.count() == 0

    @pytest.mark.asyncio
    async def test_registry_down_at_start(self, pipeline, store, conversation, sink):
        coordinator = StreamingCoordinator(store, pipeline.orchestrator, BrokenRegisterRegistry())

        await coordinator.stream_response(sink, conversation.id, "student-1", "hello")

        assert sink.names == ["error"]
        assert sink.of("error")[0] == {"error": "Streaming failed", "retryable": True}
        assert sink.closed
        assert coordinator._sinks == {}
        assert await store.get_messages(conversation.id) == []

    @pytest.mark.asyncio
    async def test_registry_down_at_release(self, pipeline, store, conversation, sink):
        coordinator = StreamingCoordinator(store, pipeline.orchestrator, BrokenRemoveRegistry())

        session_id = await coordinator.stream_response(sink, conversation.id, "student-1", "hello")

        assert session_id.startswith(f"{conversation.id}-")
        assert sink.names[-1] == "complete"
        assert sink.closed
        assert coordinator._sinks == {}

    @pytest.mark.asyncio
    async def test_concurrent_sessions_in_same_millisecond(self, store, conversation, monkeypatch):
        gate = asyncio.Event()
        pipeline = Pipeline(store, GatedProvider(["Take ", "a breath."], gate))
        monkeypatch.setattr(streaming.time, "time", lambda: 1_700_000_000.0)
        sinks = [RecordingSink(), RecordingSink()]

        tasks = [
            asyncio.create_task(pipeline.coordinator.stream_response(s, conversation.id, "student-1", "hello"))
            for s in sinks
        ]
        for _ in range(100):
            if await pipeline.registry.count() == 2:
                break
            await asyncio.sleep(0.01)
        assert await pipeline.registry.count() == 2

        gate.set()
        first, second = await asyncio.gather(*tasks)
        assert first != second
        assert [s.names[-1] for s in sinks] == ["complete", "complete"]
        assert await pipeline.registry.count() == 0


class TestJournalAnalysisStream:
    @pytest.mark.asyncio
    async def test_progress_then_complete(self, pipeline, journal, sink):
        await pipeline.coordinator.stream_journal_analysis(sink, journal.id, "student-1")

        assert sink.names == ["connected"] + ["progress"] * 4 + ["complete"]
        assert [p["progress"] for p in sink.of("progress")] == [0.25, 0.5, 0.75, 0.9]
        complete = sink.of("complete")[0]
        assert complete["journal_id"] == journal.id
        assert complete["analysis"]["summary"] == "The student reflected on their day."
        assert sink.closed

    @pytest.mark.asyncio
    async def test_other_users_journal(self, pipeline, store, sink):
        entry = JournalEntry(user_id="student-2", content="private")
        store.journals[entry.id] = entry

        await pipeline.coordinator.stream_journal_analysis(sink, entry.id, "student-1")

        assert sink.names == ["connected", "error"]
        assert sink.of("error")[0]["error"] == "Journal not found"
        assert sink.closed


class TestSessionManagement:
    @pytest.mark.asyncio
    async def test_sweep_closes_stale_sinks(self, pipeline):
        old = StreamSession(
            id="c1-1",
            conversation_id="c1",
            user_id="student-1",
            started_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        fresh = StreamSession(id="c2-2", conversation_id="c2", user_id="student-1")
        await pipeline.registry.register(old)
        await pipeline.registry.register(fresh)
        stale_sink, fresh_sink = RecordingSink(), RecordingSink()
        pipeline.coordinator._sinks.update({old.id: stale_sink, fresh.id: fresh_sink})

        assert await pipeline.coordinator.sweep_stale_sessions() == ["c1-1"]
        assert stale_sink.closed
        assert not fresh_sink.closed
        assert await pipeline.coordinator.active_stream_count() == 1

    @pytest.mark.asyncio
    async def test_close_all_streams(self, pipeline):
        sinks = []
        for i in range(2):
            session = StreamSession(id=f"c{i}-{i}", conversation_id=f"c{i}", user_id="student-1")
            await pipeline.registry.register(session)
            sink = RecordingSink()
            pipeline.coordinator._sinks[session.id] = sink
            sinks.append(sink)

        assert await pipeline.coordinator.close_all_streams() == 2
        assert all(s.closed for s in sinks)
        assert await pipeline.coordinator.active_stream_count() == 0

    @pytest.mark.asyncio
    async def test_sweeper_stops_when_signalled(self, pipeline):
        stop = asyncio.Event()
        task = asyncio.create_task(pipeline.coordinator.run_sweeper(stop))
        await asyncio.sleep(0)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert task.done()
