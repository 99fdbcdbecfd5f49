"""Tests for the text generation client, retry combinator and HTTP provider."""

import asyncio
import json

import httpx
import pytest

from conftest import FailingProvider, ScriptedProvider, Sleeps, make_client
from haven.errors import ProviderError
from haven.services.text_generation import (
    ChatMessage,
    Fatal,
    GenerationOptions,
    HttpChatProvider,
    Retryable,
    Success,
    classify_error,
    estimate_tokens,
    is_retryable_status,
    retry_with_backoff,
    split_sentences,
    to_messages,
    truncate_to_token_limit,
)


class FlakyProvider:
    """Returns the scripted answers in order; exceptions are raised."""

    supports_streaming = False
    model = "flaky"

    def __init__(self, answers):
        self.answers = list(answers)
        self.calls = 0

    async def complete(self, messages, options):
        self.calls += 1
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def stream_complete(self, messages, options):
        self.calls += 1
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        for piece in answer:
            yield piece


class SlowProvider:
    """Takes longer to answer than any test waits; records being cancelled."""

    model = "slow"

    def __init__(self, supports_streaming: bool):
        self.supports_streaming = supports_streaming
        self.cancelled = False

    async def _stall(self):
        try:
            await asyncio.sleep(2)
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    async def complete(self, messages, options):
        await self._stall()
        return "Too late."

    async def stream_complete(self, messages, options):
        await self._stall()
        yield "Too late."


def _status_error(status: int, body: str = "") -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://provider.test/v1/chat/completions")
    response = httpx.Response(status, text=body, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestRetryCombinator:
    """retry_with_backoff over tagged outcomes."""

    @pytest.mark.asyncio
    async def test_retries_until_success_with_exponential_delays(self):
        sleeps = Sleeps()
        outcomes = [Retryable(ProviderError("a")), Retryable(ProviderError("b")), Success("done")]

        async def attempt(number):
            return outcomes[number - 1]

        result = await retry_with_backoff(attempt, max_attempts=3, base_delay=0.5, sleep=sleeps)
        assert result == Success("done")
        assert sleeps.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_fatal_stops_immediately(self):
        sleeps = Sleeps()
        calls = []

        async def attempt(number):
            calls.append(number)
            return Fatal(ProviderError("unauthorized"))

        result = await retry_with_backoff(attempt, max_attempts=5, base_delay=1, sleep=sleeps)
        assert isinstance(result, Fatal)
        assert calls == [1]
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_returns_last_retryable_when_exhausted(self):
        sleeps = Sleeps()

        async def attempt(number):
            return Retryable(ProviderError(f"attempt {number}"))

        result = await retry_with_backoff(attempt, max_attempts=3, base_delay=1, sleep=sleeps)
        assert isinstance(result, Retryable)
        assert result.error.detail == "attempt 3"
        assert sleeps.delays == [1, 2]


class TestErrorClassification:
    @pytest.mark.parametrize(
        "status,retryable",
        [(400, False), (401, False), (403, False), (422, False), (429, False), (408, True), (500, True), (503, True)],
    )
    def test_status_codes(self, status, retryable):
        assert is_retryable_status(status) is retryable

    def test_http_status_error(self):
        assert isinstance(classify_error(_status_error(503)), Retryable)
        outcome = classify_error(_status_error(401, "bad token"))
        assert isinstance(outcome, Fatal)
        assert outcome.error.status == 401

    def test_timeouts_and_transport_errors_are_retryable(self):
        assert isinstance(classify_error(asyncio.TimeoutError()), Retryable)
        assert isinstance(classify_error(httpx.ConnectError("refused")), Retryable)

    def test_fatal_markers_in_message(self):
        assert isinstance(classify_error(RuntimeError("Unauthorized: bad key")), Fatal)
        assert isinstance(classify_error(RuntimeError("Rate limit exceeded for model")), Fatal)
        assert isinstance(classify_error(RuntimeError("connection reset")), Retryable)


class TestHelpers:
    def test_split_sentences_reassembles(self):
        text = "That sounds hard. Are you okay?\nI'm here!  Take a breath"
        pieces = split_sentences(text)
        assert "".join(pieces) == text
        assert pieces[0] == "That sounds hard. "
        assert len(pieces) == 4

    def test_token_estimate_and_truncation(self):
        assert estimate_tokens("abcd" * 10) == 10
        assert estimate_tokens("abc") == 1
        assert truncate_to_token_limit("short", 10) == "short"
        assert truncate_to_token_limit("x" * 100, 5) == "x" * 20 + "..."

    def test_to_messages(self):
        messages = to_messages("hi", GenerationOptions(system_role="be kind"))
        assert messages == [ChatMessage("system", "be kind"), ChatMessage("user", "hi")]
        listed = [ChatMessage("user", "a")]
        assert to_messages(listed, GenerationOptions(system_role="ignored")) == listed


class TestGenerate:
    """TextGenerationClient.generate"""

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        sleeps = Sleeps()
        provider = FlakyProvider([ProviderError("busy", retryable=True), "", "  Hello there  "])
        client = make_client(provider, sleeps)

        assert await client.generate("hi") == "Hello there"
        assert provider.calls == 3
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        provider = FailingProvider()
        client = make_client(provider)

        with pytest.raises(ProviderError, match="after 3 attempts") as exc_info:
            await client.generate("hi")
        assert exc_info.value.retryable
        assert provider.calls == 3

    @pytest.mark.asyncio
    async def test_non_retryable_fails_fast(self):
        provider = FailingProvider(_status_error(401, "invalid token"))
        client = make_client(provider)

        with pytest.raises(ProviderError) as exc_info:
            await client.generate("hi")
        assert exc_info.value.status == 401
        assert not exc_info.value.retryable
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_retryable(self):
        class SlowProvider(FlakyProvider):
            async def complete(self, messages, options):
                self.calls += 1
                if self.calls == 1:
                    await asyncio.sleep(1)
                return "finally"

        provider = SlowProvider([])
        client = make_client(provider)
        client.timeout = 0.01

        assert await client.generate("hi") == "finally"
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_options_fall_back_to_client_defaults(self):
        seen = []

        class Recording(FlakyProvider):
            async def complete(self, messages, options):
                seen.append(options)
                return "ok text"

        client = make_client(Recording([]))
        await client.generate("hi", GenerationOptions(temperature=0.3))
        assert seen[0].temperature == 0.3
        assert seen[0].max_tokens == client.defaults.max_tokens

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert await make_client(ScriptedProvider(["Hi!"])).health_check()
        assert not await make_client(FailingProvider()).health_check()

    @pytest.mark.asyncio
    async def test_health_check_is_a_single_attempt(self):
        provider = FailingProvider()
        sleeps = Sleeps()

        assert not await make_client(provider, sleeps).health_check()
        assert provider.calls == 1
        assert sleeps.delays == []


class TestStream:
    """TextGenerationClient.stream"""

    @pytest.mark.asyncio
    async def test_non_streaming_provider_is_chunked_by_sentence(self):
        provider = FlakyProvider(["First. Second! Third?"])
        client = make_client(provider)

        pieces = [p async for p in client.stream("hi")]
        assert pieces == ["First. ", "Second! ", "Third?"]

    @pytest.mark.asyncio
    async def test_native_stream_is_relayed(self):
        client = make_client(ScriptedProvider(["Hel", "lo", " there"]))
        assert [p async for p in client.stream("hi")] == ["Hel", "lo", " there"]

    @pytest.mark.asyncio
    async def test_retries_before_first_chunk(self):
        provider = FlakyProvider([httpx.ConnectError("refused"), ["ok", "!"]])
        provider.supports_streaming = True
        sleeps = Sleeps()
        client = make_client(provider, sleeps)

        assert [p async for p in client.stream("hi")] == ["ok", "!"]
        assert provider.calls == 2
        assert sleeps.delays == [1.0]

    @pytest.mark.asyncio
    async def test_no_retry_after_first_chunk(self):
        class Breaks(FlakyProvider):
            supports_streaming = True

            async def stream_complete(self, messages, options):
                self.calls += 1
                yield "partial"
                raise ProviderError("dropped", retryable=True)

        provider = Breaks([])
        client = make_client(provider)
        received = []
        with pytest.raises(ProviderError, match="dropped"):
            async for piece in client.stream("hi"):
                received.append(piece)
        assert received == ["partial"]
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_between_chunks(self):
        cancel = asyncio.Event()
        client = make_client(ScriptedProvider(["a", "b", "c", "d"]))

        received = []
        async for piece in client.stream("hi", cancel=cancel):
            received.append(piece)
            cancel.set()
        assert received == ["a"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("native", [True, False])
    async def test_cancel_interrupts_in_flight_call(self, native):
        provider = SlowProvider(native)
        client = make_client(provider)
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        async def drain():
            return [piece async for piece in client.stream("hi", cancel=cancel)]

        assert await asyncio.wait_for(drain(), timeout=1) == []
        assert provider.cancelled


class TestHttpChatProvider:
    """OpenAI-compatible HTTP backend over httpx.MockTransport."""

    @pytest.mark.asyncio
    async def test_complete(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"choices": [{"message": {"content": "I'm here for you."}}]})

        provider = HttpChatProvider(
            "https://provider.test/v1/", "secret", "test-model", transport=httpx.MockTransport(handler)
        )
        client = make_client(provider)
        text = await client.generate("hello", GenerationOptions(temperature=0.2, max_tokens=50))

        assert text == "I'm here for you."
        request = requests[0]
        assert str(request.url) == "https://provider.test/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body["model"] == "test-model"
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 50
        assert body["messages"] == [{"role": "user", "content": "hello"}]
        assert body["stream"] is False

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        responses = [
            httpx.Response(503, text="overloaded"),
            httpx.Response(200, json={"choices": [{"message": {"content": "Recovered"}}]}),
        ]

        def handler(request):
            return responses.pop(0)

        provider = HttpChatProvider("https://provider.test/v1", "", "m", transport=httpx.MockTransport(handler))
        sleeps = Sleeps()
        assert await make_client(provider, sleeps).generate("hi") == "Recovered"
        assert sleeps.delays == [1.0]

    @pytest.mark.asyncio
    async def test_unauthorized_is_fatal(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, text="Unauthorized")

        provider = HttpChatProvider("https://provider.test/v1", "bad", "m", transport=httpx.MockTransport(handler))
        with pytest.raises(ProviderError) as exc_info:
            await make_client(provider).generate("hi")
        assert exc_info.value.status == 401
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_streaming_parses_sse_deltas(self):
        def event(content):
            return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}) + "\n\n"

        body = event("It ") + ": keep-alive\n\n" + event("sounds ") + event("hard.") + "data: [DONE]\n\n"

        def handler(request):
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        provider = HttpChatProvider("https://provider.test/v1", "", "m", transport=httpx.MockTransport(handler))
        pieces = [p async for p in make_client(provider).stream("hi")]
        assert pieces == ["It ", "sounds ", "hard."]
