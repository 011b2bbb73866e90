import anyio
import httpx
import pytest
from inline_snapshot import snapshot

import carryon
from carryon import CancellationError, CancelToken, RetryLimits, StatusError, TransportError
from tests.conftest import InterruptedStream, RangeServer

URL = "https://example.com/file"
FAST = RetryLimits(budget=3, step=0)
TEXT = b"abcdefghijklmnopqrstuvwxyz" * 2


async def fetch(server, **kwargs):
    kwargs.setdefault("retry", FAST)
    return await carryon.request("GET", URL, transport=httpx.MockTransport(server), **kwargs)


@pytest.mark.anyio
async def test_uninterrupted_download():
    server = RangeServer(TEXT)

    response = await fetch(server)

    assert response.status_code == 200
    assert response.content == TEXT
    assert server.ranges == [None]


@pytest.mark.anyio
async def test_resumes_interrupted_text_body():
    server = RangeServer(TEXT, cuts=[10])

    response = await fetch(server)

    assert response.status_code == 200
    assert response.headers["content-length"] == "52"
    assert response.content == TEXT
    assert server.ranges == [None, "bytes=10-51"]
    assert [request.headers.get("if-match") for request in server.requests] == [None, '"v1"']


@pytest.mark.anyio
async def test_resumes_interrupted_binary_body():
    data = bytes(range(256))
    server = RangeServer(data, cuts=[100])

    response = await fetch(server)

    assert response.content == data
    assert server.ranges == [None, "bytes=100-255"]


@pytest.mark.anyio
async def test_resumes_several_times():
    server = RangeServer(TEXT, cuts=[10, 20])

    response = await fetch(server)

    assert response.content == TEXT
    assert server.ranges == [None, "bytes=10-51", "bytes=30-51"]


@pytest.mark.anyio
async def test_resume_range_with_known_end():
    data = bytes(range(20))
    server = RangeServer(data, cuts=[7])

    response = await fetch(server)

    assert response.content == data
    assert server.ranges == [None, "bytes=7-19"]


@pytest.mark.anyio
async def test_resume_range_with_unknown_end():
    data = bytes(range(20))
    server = RangeServer(data, cuts=[7], content_length=False)

    response = await fetch(server)

    assert response.content == data
    assert server.ranges == [None, "bytes=7-"]


@pytest.mark.anyio
async def test_resumes_partial_response():
    server = RangeServer(TEXT, cuts=[5])

    response = await fetch(server, headers={"Range": "bytes=10-29"})

    assert response.status_code == 206
    assert response.content == TEXT[10:30]
    assert server.ranges == ["bytes=10-29", "bytes=15-29"]


@pytest.mark.anyio
async def test_no_resume_without_etag():
    server = RangeServer(TEXT, etag=None, cuts=[10])

    with pytest.raises(TransportError) as exc_info:
        await fetch(server)

    assert exc_info.value.code == "ECONNRESET"
    assert len(server.requests) == 1


@pytest.mark.anyio
async def test_no_resume_with_weak_etag():
    server = RangeServer(TEXT, etag='W/"v1"', cuts=[10])

    with pytest.raises(TransportError):
        await fetch(server)

    assert len(server.requests) == 1


@pytest.mark.anyio
async def test_changed_etag_surfaces_original_error():
    server = RangeServer(TEXT, cuts=[10])

    def changing_server(request):
        response = server(request)
        if len(server.requests) > 1:
            response.headers["etag"] = '"v2"'
        return response

    with pytest.raises(TransportError) as exc_info:
        await fetch(changing_server)

    assert str(exc_info.value) == "peer closed connection without sending complete message body"
    assert len(server.requests) == 2


@pytest.mark.anyio
async def test_missing_content_range_surfaces_original_error():
    server = RangeServer(TEXT, cuts=[10], content_range=False)

    with pytest.raises(TransportError):
        await fetch(server)

    assert len(server.requests) == 2


@pytest.mark.anyio
@pytest.mark.parametrize("content_range", ["bytes 9-51/52", "bytes 10-60/61"])
async def test_misplaced_content_range_surfaces_original_error(content_range):
    server = RangeServer(TEXT, cuts=[10])

    def shifting_server(request):
        response = server(request)
        if len(server.requests) > 1:
            response.headers["content-range"] = content_range
        return response

    with pytest.raises(TransportError) as exc_info:
        await fetch(shifting_server)

    assert str(exc_info.value) == "peer closed connection without sending complete message body"
    assert len(server.requests) == 2


@pytest.mark.anyio
async def test_full_response_to_resume_surfaces_original_error():
    requests = []

    def ignores_ranges(request):
        requests.append(request)
        cut = 10 if len(requests) == 1 else None
        return httpx.Response(
            200,
            headers={"etag": '"v1"', "content-length": str(len(TEXT))},
            stream=InterruptedStream(TEXT, cut),
        )

    with pytest.raises(TransportError):
        await fetch(ignores_ranges)

    assert len(requests) == 2


@pytest.mark.anyio
async def test_interruptions_share_the_retry_budget():
    server = RangeServer(TEXT, cuts=[2, 2, 2, 2, 2])

    with pytest.raises(TransportError):
        await fetch(server)

    assert server.ranges == [None, "bytes=2-51", "bytes=4-51", "bytes=6-51"]


@pytest.mark.anyio
async def test_retries_connection_errors_before_headers():
    attempts = []

    def flaky(request):
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("[Errno 111] Connection refused")
        return httpx.Response(200, content=b"ok")

    response = await fetch(flaky)

    assert response.content == b"ok"
    assert len(attempts) == 3


@pytest.mark.anyio
@pytest.mark.parametrize("error_type", [ConnectionResetError, ConnectionRefusedError, BrokenPipeError])
async def test_retries_python_connection_errors(error_type):
    attempts = []

    def flaky(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise error_type("Connection lost")
        return httpx.Response(200, content=b"ok")

    response = await fetch(flaky)

    assert response.content == b"ok"
    assert len(attempts) == 2


@pytest.mark.anyio
async def test_retry_budget_for_unavailable_server():
    attempts = []

    def unavailable(request):
        attempts.append(request)
        return httpx.Response(503, json={"reason": "overloaded"})

    with pytest.raises(StatusError) as exc_info:
        await fetch(unavailable)

    assert len(attempts) == FAST.budget + 1
    assert exc_info.value.status_code == 503
    assert exc_info.value.body == {"reason": "overloaded"}
    assert exc_info.value.reason == "overloaded"


@pytest.mark.anyio
async def test_not_found_is_not_retried():
    attempts = []

    def missing(request):
        attempts.append(request)
        return httpx.Response(404, text="no such file")

    with pytest.raises(StatusError) as exc_info:
        await fetch(missing)

    assert exc_info.value.body == "no such file"
    assert len(attempts) == 1


@pytest.mark.anyio
async def test_non_idempotent_requests_are_not_retried():
    attempts = []

    def unavailable(request):
        attempts.append(request)
        return httpx.Response(503)

    with pytest.raises(StatusError):
        await carryon.request(
            "POST", URL, body=b"payload", transport=httpx.MockTransport(unavailable), retry=FAST
        )

    assert len(attempts) == 1


@pytest.mark.anyio
async def test_replayable_body_is_sent_on_every_attempt():
    bodies = []

    def unavailable(request):
        bodies.append(request.content)
        return httpx.Response(503)

    with pytest.raises(StatusError):
        await carryon.request(
            "PUT",
            URL,
            body=lambda: b"payload",
            idempotent=True,
            transport=httpx.MockTransport(unavailable),
            retry=FAST,
        )

    assert bodies == [b"payload"] * 4


@pytest.mark.anyio
async def test_streamed_body_is_not_sent_twice():
    bodies = []

    def unavailable(request):
        bodies.append(request.content)
        return httpx.Response(503)

    async def body():
        yield b"pay"
        yield b"load"

    with pytest.raises(StatusError):
        await carryon.request(
            "PUT",
            URL,
            body=body(),
            idempotent=True,
            transport=httpx.MockTransport(unavailable),
            retry=FAST,
        )

    assert bodies == [b"payload"]


@pytest.mark.anyio
async def test_retries_disabled():
    server = RangeServer(TEXT, cuts=[10])

    with pytest.raises(TransportError):
        await fetch(server, retry=False)

    assert len(server.requests) == 1


@pytest.mark.anyio
async def test_abort_during_backoff():
    signal = CancelToken()
    attempts = []

    def unavailable(request):
        attempts.append(request)
        return httpx.Response(503, headers={"retry-after": "60"})

    async def cancel_soon():
        await anyio.sleep(0.05)
        signal.cancel()

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(cancel_soon)
            with pytest.raises(CancellationError):
                await fetch(unavailable, signal=signal, retry=True)

    assert len(attempts) == 1


@pytest.mark.anyio
async def test_resume_logs(caplog: pytest.LogCaptureFixture) -> None:
    server = RangeServer(TEXT, cuts=[10])

    with caplog.at_level("DEBUG", logger="carryon"):
        await fetch(server)

    assert caplog.messages == snapshot(
        [
            "Sending GET https://example.com/file",
            "GET https://example.com/file failed: ReadError('peer closed connection without sending complete message body')",
            "Waiting 0.0s before retry 1",
            "Resuming response body with range bytes=10-51",
            "Sending GET https://example.com/file",
            "Resumed response body at byte 10",
        ]
    )
