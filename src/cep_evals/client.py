"""Resilient HTTP client for the chat service under test.

Requests are retried with capped exponential backoff on throttling and
gateway statuses. Replies are decoded into one of three shapes (a
structured diagnosis, an event stream, or an error object) and then
flattened into a ChatResponse for the assertion layer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from cep_evals.errors import TransportError

if TYPE_CHECKING:
    from cep_evals.config import EvalConfig

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
SINGLE_TURN_SYSTEM_PROMPT = "You are the CEP troubleshooting assistant."

_TOOL_EVENT_TYPES = frozenset({"tool-input-start", "tool-input-available", "tool-call"})

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class ChatResponse:
    """Flattened reply used by the assertion layer."""

    text: str
    metadata: dict[str, Any] | None = None
    tool_calls: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StructuredReply:
    """JSON diagnosis object returned by the non-streaming endpoint."""

    diagnosis: str | None
    next_steps: list[str]
    payload: dict[str, Any]


@dataclass(frozen=True)
class StreamReply:
    """Server-sent event stream, reduced to its text and tool names."""

    text: str
    tool_calls: list[str]


@dataclass(frozen=True)
class ErrorReply:
    """JSON object carrying an ``error`` message."""

    message: str


Reply = StructuredReply | StreamReply | ErrorReply


def _string_list(value: Any) -> list[str]:
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    return []


def _decode_stream(body: str) -> StreamReply:
    deltas: list[str] = []
    tool_calls: list[str] = []
    for line in body.splitlines():
        if not line.startswith("data:"):
            continue
        chunk = line[len("data:") :].strip()
        if not chunk or chunk.upper() == "[DONE]":
            continue
        try:
            event = json.loads(chunk)
        except ValueError:
            continue
        if not isinstance(event, dict):
            continue
        event_type = event.get("type")
        if event_type == "text-delta" and isinstance(event.get("delta"), str):
            deltas.append(event["delta"])
        elif event_type in _TOOL_EVENT_TYPES:
            tool_name = event.get("toolName")
            if isinstance(tool_name, str) and tool_name not in tool_calls:
                tool_calls.append(tool_name)
    return StreamReply(text="".join(deltas) or body, tool_calls=tool_calls)


def decode_reply(body: str) -> Reply:
    """Classify a raw response body.

    Args:
        body: Response body text.

    Returns:
        ErrorReply for a JSON object with an ``error`` string,
        StructuredReply for any other JSON object, StreamReply otherwise.
    """
    try:
        data = json.loads(body)
    except ValueError:
        return _decode_stream(body)

    if not isinstance(data, dict):
        return _decode_stream(body)

    error = data.get("error")
    if isinstance(error, str) and error:
        return ErrorReply(message=error)

    diagnosis = data.get("diagnosis")
    return StructuredReply(
        diagnosis=diagnosis if isinstance(diagnosis, str) else None,
        next_steps=_string_list(data.get("nextSteps")),
        payload=data,
    )


def to_chat_response(reply: Reply) -> ChatResponse:
    """Flatten a decoded reply into text, metadata and tool calls."""
    if isinstance(reply, ErrorReply):
        return ChatResponse(text=f"error: {reply.message}")
    if isinstance(reply, StructuredReply):
        lines: list[str] = []
        if reply.diagnosis:
            lines.append(reply.diagnosis)
        if reply.next_steps:
            lines.append(f"Next: {'; '.join(reply.next_steps)}")
        return ChatResponse(text="\n".join(lines), metadata=reply.payload)
    if isinstance(reply, StreamReply):
        return ChatResponse(text=reply.text, tool_calls=list(reply.tool_calls))
    raise TypeError(f"Unsupported reply type: {type(reply).__name__}")


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff with additive jitter."""

    retries: int = 6
    initial_delay: float = 0.6
    max_delay: float = 5.0
    factor: float = 1.8
    jitter: float = 0.2

    @classmethod
    def from_config(cls, config: EvalConfig) -> RetryPolicy:
        return cls(
            retries=config.max_retries,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
            factor=config.retry_factor,
            jitter=config.retry_jitter,
        )

    def delays(self, rng: random.Random | None = None) -> Iterator[float]:
        """Yield one sleep duration per retry, never decreasing."""
        rng = rng or random.Random()
        delay = self.initial_delay
        previous = 0.0
        for _ in range(self.retries):
            sleep_for = max(previous, min(self.max_delay, delay + rng.uniform(0.0, self.jitter)))
            yield sleep_for
            previous = sleep_for
            delay = min(self.max_delay, delay * self.factor)


async def send_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    rng: random.Random | None = None,
) -> httpx.Response:
    """Call ``send`` until it yields a non-retryable response or retries run out.

    Connection failures are retried like retryable statuses; timeouts
    propagate immediately. After the last retry the final response is
    returned, or the final exception re-raised.
    """
    delays = policy.delays(rng)
    attempt = 0
    while True:
        try:
            response = await send()
        except httpx.TimeoutException:
            raise
        except httpx.TransportError as e:
            delay = next(delays, None)
            if delay is None:
                raise
            logger.debug(f"Connection failed ({e}), retry {attempt + 1} in {delay:.2f}s")
        else:
            if response.status_code not in RETRYABLE_STATUSES:
                return response
            delay = next(delays, None)
            if delay is None:
                return response
            logger.debug(f"HTTP {response.status_code}, retry {attempt + 1} in {delay:.2f}s")
        await sleep(delay)
        attempt += 1


def is_local_url(url: str) -> bool:
    """Whether the URL points at this machine."""
    return httpx.URL(url).host in LOCAL_HOSTS


class ReadinessProbe:
    """Waits for a local chat target to answer before the first request.

    Concurrent callers share one in-flight probe. Only a successful probe
    is remembered; a target that never came up is probed again next time.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        attempts: int = 8,
        delay: float = 0.25,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._http = http
        self.attempts = attempts
        self.delay = delay
        self._sleep = sleep
        self._ready = False
        self._inflight: asyncio.Task[bool] | None = None

    @property
    def ready(self) -> bool:
        return self._ready

    async def ensure(self, url: str) -> bool:
        """Probe the target once per client; remote targets are not probed."""
        if self._ready or not is_local_url(url):
            return True
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._wait(url))
        task = self._inflight
        try:
            ready = await task
        finally:
            if self._inflight is task and task.done():
                self._inflight = None
        if ready:
            self._ready = True
        else:
            logger.warning(f"Chat target {url} did not answer after {self.attempts} probes")
        return ready

    async def _wait(self, url: str) -> bool:
        for attempt in range(self.attempts):
            if await self.is_up(url):
                return True
            if attempt < self.attempts - 1:
                await self._sleep(self.delay)
        return False

    async def is_up(self, url: str) -> bool:
        """Any HTTP response, including an error status, counts as up."""
        try:
            await self._http.head(url)
        except httpx.HTTPError:
            return False
        return True


class ChatClient:
    """Async client for the chat endpoint.

    Args:
        url: Chat endpoint URL.
        test_header: Header name that marks requests as eval traffic.
        timeout: Per-request timeout in seconds.
        retry_policy: Backoff settings; defaults to RetryPolicy().
        http_client: Optional pre-built httpx client. The ChatClient only
            closes clients it created itself.
        readiness: Optional readiness probe; one is built on the HTTP client
            when omitted.
        sleep: Awaitable used for backoff sleeps.
        rng: Random source for jitter.
    """

    def __init__(
        self,
        url: str,
        test_header: str = "X-Test-Bypass",
        timeout: float = 120.0,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        readiness: ReadinessProbe | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.url = url
        self.test_header = test_header
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self.readiness = readiness or ReadinessProbe(self._http, sleep=sleep)
        self._sleep = sleep
        self._rng = rng

    @classmethod
    def from_config(
        cls,
        config: EvalConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> ChatClient:
        client = cls(
            url=config.chat_url,
            test_header=config.test_header,
            timeout=config.request_timeout,
            retry_policy=RetryPolicy.from_config(config),
            http_client=http_client,
        )
        client.readiness.attempts = config.readiness_attempts
        client.readiness.delay = config.readiness_delay
        return client

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def ask(self, prompt: str, fixtures: dict[str, Any] | None = None) -> ChatResponse:
        """Send a single-turn prompt behind the troubleshooting system prompt."""
        return await self.send(
            [
                {"role": "system", "content": SINGLE_TURN_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            fixtures=fixtures,
        )

    async def send(
        self,
        messages: list[dict[str, str]],
        fixtures: dict[str, Any] | None = None,
    ) -> ChatResponse:
        """Post a conversation and decode the reply.

        Args:
            messages: Chat messages with ``role`` and ``content``.
            fixtures: Optional fixture document sent alongside.

        Returns:
            The decoded ChatResponse.

        Raises:
            TransportError: On timeout, connection failure, or a 5xx status
                left after retries.
        """
        await self.readiness.ensure(self.url)

        payload: dict[str, Any] = {"messages": messages}
        if fixtures is not None:
            payload["fixtures"] = fixtures
        headers = {self.test_header: "1"}

        async def _post() -> httpx.Response:
            return await self._http.post(self.url, json=payload, headers=headers, timeout=self.timeout)

        try:
            response = await send_with_retry(_post, self.retry_policy, sleep=self._sleep, rng=self._rng)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request to {self.url} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {self.url} failed: {e}") from e

        if response.status_code >= 500:
            raise TransportError(
                f"Chat endpoint returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return to_chat_response(decode_reply(response.text))
