"""Text generation client with bounded retries.

One external operation, ``generate(input, options) -> text``, over a pluggable
provider backend. Each attempt is classified into a tagged outcome
(success / retryable / fatal) and a small retry combinator drives the
exponential backoff, so no exception is used for loop control.
"""

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass, replace
from typing import AsyncIterator, Awaitable, Callable, Generic, Protocol, TypeVar, Union

import httpx

from haven.config import Settings, settings
from haven.errors import GenerationCancelled, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHARS_PER_TOKEN = 4

# Substrings of provider error text that mean "do not retry"
_FATAL_MARKERS = ("unauthorized", "invalid", "rate limit exceeded")


@dataclass
class ChatMessage:
    """One entry of a structured prompt."""

    role: str
    content: str


@dataclass
class GenerationOptions:
    """Per-call overrides; unset fields fall back to the client defaults."""

    temperature: float | None = None
    max_tokens: int | None = None
    system_role: str | None = None


PromptInput = Union[str, list[ChatMessage]]


# ============= Tagged retry outcome =============


@dataclass
class Success(Generic[T]):
    value: T


@dataclass
class Retryable:
    error: ProviderError


@dataclass
class Fatal:
    error: ProviderError


Outcome = Union[Success[T], Retryable, Fatal]


async def retry_with_backoff(
    attempt: Callable[[int], Awaitable[Outcome]],
    max_attempts: int,
    base_delay: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Outcome:
    """Run ``attempt`` until it succeeds, fails fatally, or attempts run out.

    ``attempt`` receives the 1-based attempt number. Delay before attempt
    n+1 is ``base_delay * 2 ** (n - 1)``. Returns the last outcome.
    """
    outcome: Outcome = Fatal(ProviderError("No attempts made"))
    for number in range(1, max_attempts + 1):
        outcome = await attempt(number)
        if not isinstance(outcome, Retryable):
            return outcome
        if number < max_attempts:
            delay = base_delay * 2 ** (number - 1)
            logger.warning(f"Attempt {number} failed ({outcome.error.detail}), retrying in {delay:.1f}s")
            await sleep(delay)
    return outcome


def is_retryable_status(status: int) -> bool:
    """Auth failures, malformed input and rate-limit-exceeded are final."""
    if status in (401, 403, 400, 422, 429):
        return False
    return status >= 500 or status == 408


def classify_error(error: BaseException) -> Retryable | Fatal:
    """Map any exception raised by a provider attempt to a tagged outcome."""
    if isinstance(error, ProviderError):
        return Retryable(error) if error.retryable else Fatal(error)
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        wrapped = ProviderError(
            f"HTTP {status}: {error.response.text[:200]}",
            retryable=is_retryable_status(status),
            status=status,
        )
        return Retryable(wrapped) if wrapped.retryable else Fatal(wrapped)
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return Retryable(ProviderError("Provider request timed out", retryable=True))
    if isinstance(error, httpx.TransportError):
        return Retryable(ProviderError(f"Request failed: {error}", retryable=True))

    message = str(error).lower()
    if any(marker in message for marker in _FATAL_MARKERS):
        return Fatal(ProviderError(str(error), retryable=False))
    return Retryable(ProviderError(str(error) or type(error).__name__, retryable=True))


# ============= Helpers =============


def to_messages(prompt: PromptInput, options: GenerationOptions) -> list[ChatMessage]:
    """Normalise a plain prompt or a message list into chat messages."""
    if isinstance(prompt, list):
        return [ChatMessage(role=m.role or "user", content=m.content) for m in prompt]
    messages = []
    if options.system_role:
        messages.append(ChatMessage(role="system", content=options.system_role))
    if prompt:
        messages.append(ChatMessage(role="user", content=prompt))
    return messages


def estimate_tokens(text: str) -> int:
    """Rough estimate: one token per four characters."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_to_token_limit(text: str, max_tokens: int) -> str:
    if estimate_tokens(text) <= max_tokens:
        return text
    return text[: max_tokens * CHARS_PER_TOKEN] + "..."


_SENTENCE_RE = re.compile(r".+?(?:[.!?]+\s+|\n+|$)", re.S)


def split_sentences(text: str) -> list[str]:
    """Split text on sentence boundaries; the pieces concatenate back to ``text``."""
    return [piece for piece in _SENTENCE_RE.findall(text) if piece]


async def race_cancel(aw: Awaitable[T], cancel: asyncio.Event | None) -> T:
    """Await ``aw`` unless ``cancel`` fires first.

    The in-flight work is cancelled, not abandoned, when the signal wins.

    Raises:
        GenerationCancelled: ``cancel`` was set before ``aw`` finished.
    """
    if cancel is None:
        return await aw
    if cancel.is_set():
        close = getattr(aw, "close", None)
        if close:
            close()
        raise GenerationCancelled("Cancelled before generation")

    work = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()
    if not work.done():
        work.cancel()
        await asyncio.wait({work})
        raise GenerationCancelled("Cancelled during generation")
    return work.result()


# ============= Providers =============


class TextGenerationProvider(Protocol):
    """A backend able to turn chat messages into text.

    ``complete`` performs exactly one attempt; retries belong to the client.
    Backends with native token streaming set ``supports_streaming``.
    """

    model: str
    supports_streaming: bool

    async def complete(self, messages: list[ChatMessage], options: GenerationOptions) -> str: ...

    def stream_complete(
        self, messages: list[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[str]: ...


class HttpChatProvider:
    """OpenAI-compatible chat-completions endpoint (e.g. the Hugging Face router)."""

    supports_streaming = True

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        return httpx.AsyncClient(
            timeout=self.timeout, headers=headers, transport=self._transport
        )

    def _payload(self, messages: list[ChatMessage], options: GenerationOptions, stream: bool) -> dict:
        return {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stream": stream,
        }

    async def complete(self, messages: list[ChatMessage], options: GenerationOptions) -> str:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json=self._payload(messages, options, stream=False),
            )
            response.raise_for_status()
            data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise ProviderError("No choices in response from model", retryable=True)
        return (choices[0].get("message") or {}).get("content") or ""

    async def stream_complete(
        self, messages: list[ChatMessage], options: GenerationOptions
    ) -> AsyncIterator[str]:
        async with self._client() as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=self._payload(messages, options, stream=True),
            ) as response:
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[6:]
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    for choice in event.get("choices") or []:
                        delta = (choice.get("delta") or {}).get("content")
                        if delta:
                            yield delta


# ============= Client =============


class TextGenerationClient:
    """Retrying front door to a text generation provider."""

    def __init__(
        self,
        provider: TextGenerationProvider,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        timeout: float = 30.0,
        temperature: float = 0.7,
        max_tokens: int = 500,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.timeout = timeout
        self.defaults = GenerationOptions(temperature=temperature, max_tokens=max_tokens)
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self.provider.model

    def _resolve(self, options: GenerationOptions | None) -> GenerationOptions:
        options = options or GenerationOptions()
        return replace(
            options,
            temperature=self.defaults.temperature if options.temperature is None else options.temperature,
            max_tokens=self.defaults.max_tokens if options.max_tokens is None else options.max_tokens,
        )

    async def generate(self, prompt: PromptInput, options: GenerationOptions | None = None) -> str:
        """Generate text, retrying transient failures with exponential backoff.

        Raises:
            ProviderError: after the last attempt, or immediately for
                non-retryable failures.
        """
        resolved = self._resolve(options)
        messages = to_messages(prompt, resolved)

        async def attempt(number: int) -> Outcome[str]:
            logger.debug(f"Generating text (attempt {number}/{self.max_retries})")
            try:
                text = await asyncio.wait_for(
                    self.provider.complete(messages, resolved), timeout=self.timeout
                )
            except Exception as e:
                return classify_error(e)
            if not text or not text.strip():
                return Retryable(ProviderError("No content in response from model", retryable=True))
            return Success(text.strip())

        outcome = await retry_with_backoff(
            attempt, self.max_retries, self.retry_base_delay, sleep=self._sleep
        )
        if isinstance(outcome, Success):
            return outcome.value
        if isinstance(outcome, Fatal):
            logger.error(f"Text generation failed (not retryable): {outcome.error.detail}")
            raise outcome.error
        logger.error(f"All {self.max_retries} generation attempts failed")
        raise ProviderError(
            f"Text generation failed after {self.max_retries} attempts: {outcome.error.detail}",
            retryable=True,
            status=outcome.error.status,
        )

    async def stream(
        self,
        prompt: PromptInput,
        options: GenerationOptions | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Yield the response incrementally.

        Native streaming backends are retried only until the first chunk
        arrives. Other backends generate the whole text and it is chunked on
        sentence boundaries. Stops quietly when ``cancel`` is set, including
        while a provider call is still in flight.
        """
        resolved = self._resolve(options)

        if not getattr(self.provider, "supports_streaming", False):
            try:
                text = await race_cancel(self.generate(prompt, resolved), cancel)
            except GenerationCancelled:
                return
            for piece in split_sentences(text):
                if cancel and cancel.is_set():
                    return
                yield piece
            return

        messages = to_messages(prompt, resolved)
        for number in range(1, self.max_retries + 1):
            emitted = 0
            pieces = self.provider.stream_complete(messages, resolved)
            try:
                while True:
                    try:
                        piece = await race_cancel(pieces.__anext__(), cancel)
                    except StopAsyncIteration:
                        break
                    except GenerationCancelled:
                        return
                    emitted += 1
                    yield piece
            except Exception as e:
                outcome = classify_error(e)
                if emitted or isinstance(outcome, Fatal) or number == self.max_retries:
                    if outcome.error is e:
                        raise
                    raise outcome.error from e
                delay = self.retry_base_delay * 2 ** (number - 1)
                logger.warning(f"Stream attempt {number} failed ({outcome.error.detail}), retrying in {delay:.1f}s")
                await self._sleep(delay)
                continue
            finally:
                await pieces.aclose()
            if emitted == 0:
                raise ProviderError("No content in streaming response", retryable=True)
            return

    async def health_check(self) -> bool:
        """Check if the provider answers a trivial prompt.

        A single attempt with no retries, so a down provider answers fast.
        """
        options = self._resolve(GenerationOptions(max_tokens=10, temperature=0.5))
        try:
            response = await asyncio.wait_for(
                self.provider.complete(to_messages("Hello", options), options), timeout=self.timeout
            )
            return bool(response and response.strip())
        except Exception as e:
            logger.warning(f"Provider health check failed: {e}")
            return False


def create_provider(config: Settings = settings) -> TextGenerationProvider:
    """Build the provider backend named in settings."""
    if config.provider_backend == "mock":
        from haven.services.provider_mock import MockProvider

        return MockProvider()
    if config.provider_backend == "claude":
        from haven.services.claude_agent import ClaudeAgentProvider

        return ClaudeAgentProvider(model=config.claude_model)
    return HttpChatProvider(
        base_url=config.provider_base_url,
        api_key=config.provider_api_key,
        model=config.provider_model,
        timeout=config.ai_timeout_seconds,
    )


def create_text_generation_client(config: Settings = settings) -> TextGenerationClient:
    return TextGenerationClient(
        create_provider(config),
        max_retries=config.ai_max_retries,
        retry_base_delay=config.ai_retry_base_delay,
        timeout=config.ai_timeout_seconds,
        temperature=config.ai_temperature,
        max_tokens=config.ai_max_tokens,
    )
