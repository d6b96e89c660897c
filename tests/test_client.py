"""Tests for the chat client, reply decoding and retry policy."""

from __future__ import annotations

import json
import random

import httpx
import pytest

from cep_evals.client import (
    SINGLE_TURN_SYSTEM_PROMPT,
    ChatClient,
    ErrorReply,
    ReadinessProbe,
    RetryPolicy,
    StreamReply,
    StructuredReply,
    decode_reply,
    is_local_url,
    send_with_retry,
    to_chat_response,
)
from cep_evals.errors import TransportError

REMOTE_URL = "http://chat.test/api/chat"


class SleepRecorder:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def _scripted_transport(statuses: list[int], seen: list[httpx.Request]) -> httpx.MockTransport:
    """Answer requests with the given statuses in order."""
    remaining = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status = remaining.pop(0)
        body = {"diagnosis": "Printer offline", "nextSteps": ["Restart spooler"]} if status == 200 else {}
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


class TestDecodeReply:
    """Tests for decode_reply and to_chat_response."""

    def test_structured_reply(self) -> None:
        body = json.dumps({"diagnosis": "Driver stale", "nextSteps": ["Update driver", "Reboot"]})

        reply = decode_reply(body)

        assert isinstance(reply, StructuredReply)
        response = to_chat_response(reply)
        assert response.text == "Driver stale\nNext: Update driver; Reboot"
        assert response.metadata == {"diagnosis": "Driver stale", "nextSteps": ["Update driver", "Reboot"]}

    def test_error_reply(self) -> None:
        reply = decode_reply(json.dumps({"error": "quota exceeded"}))

        assert reply == ErrorReply(message="quota exceeded")
        assert to_chat_response(reply).text == "error: quota exceeded"

    def test_stream_reply_collects_text_and_tools(self) -> None:
        body = "\n".join(
            [
                'data: {"type": "tool-input-start", "toolName": "getLogs"}',
                'data: {"type": "text-delta", "delta": "The printer "}',
                'data: {"type": "tool-call", "toolName": "getLogs"}',
                'data: {"type": "tool-input-available", "toolName": "getPolicy"}',
                'data: {"type": "text-delta", "delta": "is offline."}',
                "data: [DONE]",
            ]
        )

        reply = decode_reply(body)

        assert reply == StreamReply(text="The printer is offline.", tool_calls=["getLogs", "getPolicy"])
        assert to_chat_response(reply).tool_calls == ["getLogs", "getPolicy"]

    def test_plain_text_falls_back_to_body(self) -> None:
        reply = decode_reply("plain answer")

        assert isinstance(reply, StreamReply)
        assert reply.text == "plain answer"

    def test_unknown_reply_type_rejected(self) -> None:
        with pytest.raises(TypeError):
            to_chat_response("not a reply")  # type: ignore[arg-type]


class TestRetryPolicy:
    """Tests for RetryPolicy.delays."""

    def test_delays_are_capped_and_non_decreasing(self) -> None:
        policy = RetryPolicy(retries=8, initial_delay=0.6, max_delay=5.0, factor=1.8, jitter=0.2)

        delays = list(policy.delays(random.Random(7)))

        assert len(delays) == 8
        assert delays == sorted(delays)
        assert all(d <= 5.0 for d in delays)
        assert delays[0] >= 0.6

    def test_zero_retries_yields_nothing(self) -> None:
        assert list(RetryPolicy(retries=0).delays()) == []


class TestSendWithRetry:
    """Tests for send_with_retry."""

    async def test_retries_retryable_statuses(self) -> None:
        """503, 503, 200 sleeps twice and returns the 200."""
        statuses = [503, 503, 200]
        sleep = SleepRecorder()

        async def send() -> httpx.Response:
            return httpx.Response(statuses.pop(0))

        response = await send_with_retry(send, RetryPolicy(), sleep=sleep, rng=random.Random(1))

        assert response.status_code == 200
        assert len(sleep.calls) == 2
        assert sleep.calls[0] <= sleep.calls[1]

    async def test_non_retryable_status_returned_immediately(self) -> None:
        sleep = SleepRecorder()

        async def send() -> httpx.Response:
            return httpx.Response(404)

        response = await send_with_retry(send, RetryPolicy(), sleep=sleep)

        assert response.status_code == 404
        assert sleep.calls == []

    @pytest.mark.parametrize("status", [500, 501])
    async def test_non_gateway_server_errors_not_retried(self, status: int) -> None:
        statuses = [status, 200]
        sleep = SleepRecorder()

        async def send() -> httpx.Response:
            return httpx.Response(statuses.pop(0))

        response = await send_with_retry(send, RetryPolicy(), sleep=sleep)

        assert response.status_code == status
        assert sleep.calls == []

    async def test_exhausted_retries_return_last_response(self) -> None:
        sleep = SleepRecorder()

        async def send() -> httpx.Response:
            return httpx.Response(429)

        response = await send_with_retry(send, RetryPolicy(retries=2), sleep=sleep)

        assert response.status_code == 429
        assert len(sleep.calls) == 2

    async def test_connection_errors_are_retried(self) -> None:
        sleep = SleepRecorder()
        outcomes: list[httpx.Response | Exception] = [
            httpx.ConnectError("refused"),
            httpx.Response(200),
        ]

        async def send() -> httpx.Response:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        response = await send_with_retry(send, RetryPolicy(), sleep=sleep)

        assert response.status_code == 200
        assert len(sleep.calls) == 1

    async def test_timeouts_are_not_retried(self) -> None:
        sleep = SleepRecorder()

        async def send() -> httpx.Response:
            raise httpx.ReadTimeout("slow")

        with pytest.raises(httpx.ReadTimeout):
            await send_with_retry(send, RetryPolicy(), sleep=sleep)
        assert sleep.calls == []


class TestChatClient:
    """Tests for ChatClient.send and ask."""

    async def test_ask_posts_messages_with_bypass_header(self) -> None:
        seen: list[httpx.Request] = []
        http = httpx.AsyncClient(transport=_scripted_transport([200], seen))
        client = ChatClient(REMOTE_URL, http_client=http, sleep=SleepRecorder())

        response = await client.ask("Why is my printer offline?", fixtures={"devices": []})

        assert response.text == "Printer offline\nNext: Restart spooler"
        request = seen[0]
        assert request.headers["X-Test-Bypass"] == "1"
        payload = json.loads(request.content)
        assert payload["messages"] == [
            {"role": "system", "content": SINGLE_TURN_SYSTEM_PROMPT},
            {"role": "user", "content": "Why is my printer offline?"},
        ]
        assert payload["fixtures"] == {"devices": []}
        await http.aclose()

    async def test_fixtures_omitted_when_none(self) -> None:
        seen: list[httpx.Request] = []
        http = httpx.AsyncClient(transport=_scripted_transport([200], seen))
        client = ChatClient(REMOTE_URL, http_client=http, sleep=SleepRecorder())

        await client.send([{"role": "user", "content": "hi"}])

        assert "fixtures" not in json.loads(seen[0].content)
        await http.aclose()

    async def test_retries_then_succeeds(self) -> None:
        seen: list[httpx.Request] = []
        sleep = SleepRecorder()
        http = httpx.AsyncClient(transport=_scripted_transport([503, 503, 200], seen))
        client = ChatClient(REMOTE_URL, http_client=http, sleep=sleep)

        response = await client.send([{"role": "user", "content": "hi"}])

        assert response.metadata is not None
        assert len(seen) == 3
        assert len(sleep.calls) == 2
        await http.aclose()

    async def test_final_server_error_raises(self) -> None:
        seen: list[httpx.Request] = []
        http = httpx.AsyncClient(transport=_scripted_transport([503, 503], seen))
        client = ChatClient(REMOTE_URL, retry_policy=RetryPolicy(retries=1), http_client=http, sleep=SleepRecorder())

        with pytest.raises(TransportError) as exc_info:
            await client.send([{"role": "user", "content": "hi"}])

        assert exc_info.value.status_code == 503
        await http.aclose()

    @pytest.mark.parametrize("status", [500, 501])
    async def test_non_gateway_server_error_raises_without_retry(self, status: int) -> None:
        seen: list[httpx.Request] = []
        sleep = SleepRecorder()
        http = httpx.AsyncClient(transport=_scripted_transport([status, 200], seen))
        client = ChatClient(REMOTE_URL, http_client=http, sleep=sleep)

        with pytest.raises(TransportError) as exc_info:
            await client.send([{"role": "user", "content": "hi"}])

        assert exc_info.value.status_code == status
        assert len(seen) == 1
        assert sleep.calls == []
        await http.aclose()

    async def test_client_error_is_decoded_not_raised(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "bad request"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = ChatClient(REMOTE_URL, http_client=http, sleep=SleepRecorder())

        response = await client.send([{"role": "user", "content": "hi"}])

        assert response.text == "error: bad request"
        await http.aclose()

    async def test_timeout_becomes_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = ChatClient(REMOTE_URL, timeout=3.0, http_client=http, sleep=SleepRecorder())

        with pytest.raises(TransportError, match="timed out"):
            await client.send([{"role": "user", "content": "hi"}])
        await http.aclose()

    async def test_does_not_close_borrowed_client(self) -> None:
        http = httpx.AsyncClient(transport=_scripted_transport([], []))

        async with ChatClient(REMOTE_URL, http_client=http):
            pass

        assert not http.is_closed
        await http.aclose()


class TestReadinessProbe:
    """Tests for ReadinessProbe."""

    def test_is_local_url(self) -> None:
        assert is_local_url("http://localhost:3000/api/chat")
        assert is_local_url("http://127.0.0.1/api/chat")
        assert not is_local_url(REMOTE_URL)

    async def test_remote_targets_are_not_probed(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            probe = ReadinessProbe(http, sleep=SleepRecorder())

            assert await probe.ensure(REMOTE_URL)

        assert calls == []

    async def test_error_status_counts_as_up(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(405)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            probe = ReadinessProbe(http, sleep=SleepRecorder())

            assert await probe.ensure("http://localhost:3000/api/chat")
            assert probe.ready

    async def test_waits_until_target_answers_and_caches(self) -> None:
        attempts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request.method)
            if len(attempts) < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200)

        sleep = SleepRecorder()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            probe = ReadinessProbe(http, attempts=5, delay=0.1, sleep=sleep)

            assert await probe.ensure("http://localhost:3000/api/chat")
            assert await probe.ensure("http://localhost:3000/api/chat")

        assert attempts == ["HEAD", "HEAD", "HEAD"]
        assert sleep.calls == [0.1, 0.1]

    async def test_failure_is_not_cached(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        sleep = SleepRecorder()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            probe = ReadinessProbe(http, attempts=2, delay=0.1, sleep=sleep)

            assert not await probe.ensure("http://localhost:3000/api/chat")
            assert not probe.ready
            assert not await probe.ensure("http://localhost:3000/api/chat")

        assert sleep.calls == [0.1, 0.1]
