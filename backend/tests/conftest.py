"""Shared fixtures: in-memory store, scripted providers, recording sink."""

from typing import Any, AsyncIterator

import pytest

from haven.db.memory import InMemoryStore
from haven.errors import ProviderError
from haven.services.context_builder import ContextBuilder
from haven.services.crisis_detection import CrisisDetector
from haven.services.notifications import NotificationSink
from haven.services.orchestrator import Orchestrator
from haven.services.provider_mock import MockProvider
from haven.services.session_registry import InMemorySessionRegistry
from haven.services.streaming import StreamingCoordinator
from haven.services.text_generation import ChatMessage, GenerationOptions, TextGenerationClient
from haven_models import Conversation, ConversationType, JournalEntry, User


class FailingProvider:
    """Every attempt raises ``error``."""

    supports_streaming = False

    def __init__(self, error: Exception | None = None, model: str = "failing"):
        self.error = error or ProviderError("provider unavailable", retryable=True)
        self.model = model
        self.calls = 0

    async def complete(self, messages: list[ChatMessage], options: GenerationOptions) -> str:
        self.calls += 1
        raise self.error

    async def stream_complete(self, messages: list[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        self.calls += 1
        raise self.error
        yield  # pragma: no cover


class ScriptedProvider:
    """Answers every prompt with the same chunks, natively streamed."""

    supports_streaming = True

    def __init__(self, chunks: list[str], model: str = "scripted"):
        self.chunks = chunks
        self.model = model
        self.prompts: list[str] = []

    async def complete(self, messages: list[ChatMessage], options: GenerationOptions) -> str:
        self.prompts.append(messages[-1].content)
        return "".join(self.chunks)

    async def stream_complete(self, messages: list[ChatMessage], options: GenerationOptions) -> AsyncIterator[str]:
        self.prompts.append(messages[-1].content)
        for chunk in self.chunks:
            yield chunk


class RecordingSink:
    """Event sink that keeps everything pushed to it."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def push(self, event: str, data: dict[str, Any]) -> None:
        if self.closed:
            return
        self.events.append((str(getattr(event, "value", event)), data))

    async def close(self) -> None:
        self.closed = True

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, name: str) -> list[dict[str, Any]]:
        return [data for event, data in self.events if event == name]


class Sleeps:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_client(provider, sleeps: Sleeps | None = None, max_retries: int = 3) -> TextGenerationClient:
    return TextGenerationClient(
        provider,
        max_retries=max_retries,
        retry_base_delay=1.0,
        timeout=5.0,
        sleep=sleeps or Sleeps(),
    )


class Pipeline:
    """All pipeline components over one store and provider."""

    def __init__(self, store: InMemoryStore, provider):
        self.store = store
        self.provider = provider
        self.sleeps = Sleeps()
        self.client = make_client(provider, self.sleeps)
        self.detector = CrisisDetector(self.client, store, NotificationSink(store))
        self.context_builder = ContextBuilder(store)
        self.orchestrator = Orchestrator(store, self.client, self.detector, self.context_builder)
        self.registry = InMemorySessionRegistry()
        self.coordinator = StreamingCoordinator(store, self.orchestrator, self.registry)


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    for user in (
        User(id="student-1", name="Sam Student", email="sam@example.edu"),
        User(id="student-2", name="Alex Other", email="alex@example.edu"),
        User(id="admin-1", name="Dana Admin", email="dana@example.edu", role="admin"),
        User(id="admin-2", name="Lee Admin", email="lee@example.edu", role="admin"),
    ):
        store.users[user.id] = user
    return store


@pytest.fixture
def conversation(store: InMemoryStore) -> Conversation:
    conversation = Conversation(user_id="student-1", title="Chat")
    store.conversations[conversation.id] = conversation
    return conversation


@pytest.fixture
def journal(store: InMemoryStore) -> JournalEntry:
    entry = JournalEntry(
        user_id="student-1",
        content="Exams are piling up and I feel stressed, but my friends helped me study today.",
        mood=5,
    )
    store.journals[entry.id] = entry
    return entry


@pytest.fixture
def journal_conversation(store: InMemoryStore, journal: JournalEntry) -> Conversation:
    conversation = Conversation(
        user_id="student-1",
        type=ConversationType.JOURNAL_REFLECTION,
        journal_entry_id=journal.id,
    )
    store.conversations[conversation.id] = conversation
    return conversation


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def pipeline(store: InMemoryStore, mock_provider: MockProvider) -> Pipeline:
    return Pipeline(store, mock_provider)


@pytest.fixture
def failing_pipeline(store: InMemoryStore) -> Pipeline:
    return Pipeline(store, FailingProvider())


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
