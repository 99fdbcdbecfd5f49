"""FastAPI application for the crisis-aware support pipeline."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from haven.config import settings
from haven.db import db
from haven.db.base import Store
from haven.errors import ForbiddenError, HavenError, NotFoundError
from haven.models import (
    ChatRequest,
    ChatResponse,
    ConversationListResponse,
    ConversationResponse,
    CreateConversationRequest,
    ReflectionResponse,
    ReflectRequest,
)
from haven.services.context_builder import ContextBuilder
from haven.services.crisis_detection import CrisisDetector
from haven.services.notifications import NotificationSink
from haven.services.orchestrator import Orchestrator
from haven.services.session_registry import (
    InMemorySessionRegistry,
    RedisSessionRegistry,
    SessionRegistry,
)
from haven.services.streaming import StreamingCoordinator
from haven.services.text_generation import TextGenerationClient, create_text_generation_client
from haven.sse import QueueEventSink, create_sse_response, sink_stream
from haven_models import (
    Conversation,
    ConversationType,
    CrisisResources,
    JournalAnalysis,
    JournalEntry,
    RiskLevel,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Pipeline components wired together for one app instance."""

    store: Store
    client: TextGenerationClient
    detector: CrisisDetector
    context_builder: ContextBuilder
    orchestrator: Orchestrator
    registry: SessionRegistry
    coordinator: StreamingCoordinator


def build_services(
    store: Store,
    client: TextGenerationClient | None = None,
    registry: SessionRegistry | None = None,
) -> Services:
    """Wire the pipeline. Unset collaborators come from settings."""
    client = client or create_text_generation_client(settings)
    if registry is None:
        if settings.redis_url:
            registry = RedisSessionRegistry.from_url(
                settings.redis_url, timedelta(minutes=settings.stream_max_age_minutes)
            )
        else:
            registry = InMemorySessionRegistry()

    detector = CrisisDetector(client, store, NotificationSink(store))
    context_builder = ContextBuilder(store)
    orchestrator = Orchestrator(store, client, detector, context_builder)
    coordinator = StreamingCoordinator(store, orchestrator, registry)
    return Services(
        store=store,
        client=client,
        detector=detector,
        context_builder=context_builder,
        orchestrator=orchestrator,
        registry=registry,
        coordinator=coordinator,
    )


app = FastAPI(
    title="Haven API",
    description="Crisis-aware AI support for student journaling and chat",
    version="0.1.0",
)
app.state.services = build_services(db)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HavenError)
async def haven_error_handler(request: Request, exc: HavenError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
        payload = {"error": exc.error, "detail": "Failed to generate response", "status": exc.status_code}
    else:
        payload = exc.to_payload()
    return JSONResponse(status_code=exc.status_code, content=payload)


@app.on_event("startup")
async def startup_event():
    """Connect the store and start the stale stream sweeper."""
    services: Services = app.state.services
    await services.store.connect()
    await services.store.ensure_tables_exist()

    app.state.sweeper_stop = asyncio.Event()
    app.state.sweeper = asyncio.create_task(
        services.coordinator.run_sweeper(app.state.sweeper_stop)
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Close open streams, stop the sweeper and disconnect."""
    services: Services = app.state.services
    await services.coordinator.close_all_streams()

    app.state.sweeper_stop.set()
    await app.state.sweeper

    if isinstance(services.registry, RedisSessionRegistry):
        await services.registry.close()
    await services.store.disconnect()


def get_services() -> Services:
    return app.state.services


def resolve_user_id(user_id: str | None) -> str:
    """Identity comes from the X-User-ID header; local dev falls back to a fixed user."""
    return user_id or "local-dev-user"


async def get_owned_conversation(conversation_id: str, user_id: str) -> Conversation:
    conversation = await get_services().store.get_conversation(conversation_id)
    if not conversation:
        raise NotFoundError("Conversation not found")
    if conversation.user_id != user_id:
        raise ForbiddenError("Not your conversation")
    return conversation


async def get_owned_journal(journal_id: str, user_id: str) -> JournalEntry:
    journal = await get_services().store.get_journal(journal_id)
    if not journal or journal.deleted_at is not None:
        raise NotFoundError("Journal entry not found")
    if journal.user_id != user_id:
        raise ForbiddenError("Not your journal entry")
    return journal


# ============= Health & Info =============


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Haven API", "version": "0.1.0"}


@app.get("/health")
async def health():
    """Health check endpoint."""
    services = get_services()
    provider_ok = await services.client.health_check()
    return {
        "status": "healthy" if provider_ok else "degraded",
        "provider": {"model": services.client.model, "available": provider_ok},
        "active_streams": await services.coordinator.active_stream_count(),
    }


# ============= Conversation Endpoints =============


@app.post("/conversations", response_model=Conversation)
async def create_conversation(
    request: CreateConversationRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Start a conversation, optionally tied to a journal entry."""
    user_id = resolve_user_id(user_id)
    if request.journal_entry_id:
        await get_owned_journal(request.journal_entry_id, user_id)

    conversation_type = request.type or (
        ConversationType.JOURNAL_REFLECTION if request.journal_entry_id else ConversationType.GENERAL_CHAT
    )
    return await get_services().store.create_conversation(
        user_id,
        type=conversation_type,
        title=request.title,
        journal_entry_id=request.journal_entry_id,
    )


@app.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """List user's conversations."""
    conversations = await get_services().store.list_conversations(resolve_user_id(user_id))
    return ConversationListResponse(
        conversations=conversations,
        total=len(conversations),
    )


@app.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Get a conversation with its messages."""
    conversation = await get_owned_conversation(conversation_id, resolve_user_id(user_id))
    messages = await get_services().store.get_messages(conversation_id)
    return ConversationResponse(
        conversation=conversation,
        messages=messages,
    )


# ============= Chat Endpoints =============


@app.post("/conversations/{conversation_id}/messages", response_model=ChatResponse)
async def send_message(
    conversation_id: str,
    request: ChatRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Send a message and get the complete reply."""
    exchange = await get_services().orchestrator.process_chat_message(
        conversation_id, resolve_user_id(user_id), request.message
    )
    return ChatResponse(
        conversation_id=conversation_id,
        user_message=exchange.user_message,
        message=exchange.assistant_message,
    )


@app.get("/conversations/{conversation_id}/messages/stream")
async def stream_message(
    conversation_id: str,
    request: Request,
    message: str = Query(..., description="User message"),
    user_id: str | None = Query(None, description="EventSource cannot send headers"),
    x_user_id: str | None = Header(alias="X-User-ID", default=None),
):
    """Stream the reply as Server-Sent Events."""
    sink = QueueEventSink()
    cancel = asyncio.Event()
    producer = get_services().coordinator.stream_response(
        sink, conversation_id, resolve_user_id(user_id or x_user_id), message, cancel
    )
    return create_sse_response(
        sink_stream(sink, producer, request, cancel, settings.stream_heartbeat_seconds)
    )


# ============= Journal Endpoints =============


@app.post("/journals/{journal_id}/analyze", response_model=JournalAnalysis)
async def analyze_journal(
    journal_id: str,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Run the full journal analysis and return it."""
    await get_owned_journal(journal_id, resolve_user_id(user_id))
    return await get_services().orchestrator.analyze_journal(journal_id)


@app.get("/journals/{journal_id}/analyze/stream")
async def stream_journal_analysis(
    journal_id: str,
    request: Request,
    user_id: str | None = Query(None, description="EventSource cannot send headers"),
    x_user_id: str | None = Header(alias="X-User-ID", default=None),
):
    """Stream analysis progress as Server-Sent Events."""
    sink = QueueEventSink()
    cancel = asyncio.Event()
    producer = get_services().coordinator.stream_journal_analysis(
        sink, journal_id, resolve_user_id(user_id or x_user_id)
    )
    return create_sse_response(
        sink_stream(sink, producer, request, cancel, settings.stream_heartbeat_seconds)
    )


@app.post("/journals/{journal_id}/reflect", response_model=ReflectionResponse)
async def reflect_on_journal(
    journal_id: str,
    request: ReflectRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
):
    """Reply to a message written alongside a journal entry."""
    user_id = resolve_user_id(user_id)
    journal = await get_owned_journal(journal_id, user_id)
    reply = await get_services().orchestrator.generate_journal_reflection(
        request.message, journal.content, request.previous_messages, user_id=user_id
    )
    return ReflectionResponse(content=reply.content, metadata=reply.metadata)


# ============= Crisis Endpoints =============


@app.get("/crisis/resources/{level}", response_model=CrisisResources)
async def crisis_resources(level: RiskLevel):
    """Resource bundle for a risk level."""
    return get_services().detector.get_crisis_resources(level)


# ============= Run =============


def run():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "haven.api:app",
        host=settings.host,
        port=settings.port,
        reload=True,
    )


if __name__ == "__main__":
    run()
