import errno
import socket
from typing import Any, List, Optional, Tuple

import anyio
import httpx
import pytest
from inline_snapshot import snapshot

from carryon import CancellationError, Handler, Headers, HttpxDispatcher, RequestOptions, TransportError
from carryon._dispatcher import classify

URL = "https://example.com/data"


class RecordingHandler(Handler):
    def __init__(self) -> None:
        self.events: List[Tuple[Any, ...]] = []
        self.chunks: List[bytes] = []
        self.abort: Any = None
        self.resume: Any = None
        self.error: Optional[BaseException] = None

    def on_connect(self, abort):
        self.abort = abort
        self.events.append(("connect",))

    def on_upgrade(self, status_code, headers, stream):
        self.events.append(("upgrade", status_code, stream))

    def on_headers(self, status_code, headers, resume, status_message):
        self.resume = resume
        self.events.append(("headers", status_code, headers.to_dict(), status_message))
        return True

    def on_data(self, chunk):
        self.chunks.append(chunk)
        self.events.append(("data", chunk))
        return True

    def on_complete(self, trailers):
        self.events.append(("complete",))

    def on_error(self, error):
        self.error = error
        self.events.append(("error", type(error).__name__))


class SlowStream(httpx.AsyncByteStream):
    def __init__(self, chunks: List[bytes]) -> None:
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            await anyio.sleep(0)
            yield chunk


async def dispatch(app, handler: Handler, **kwargs) -> None:
    await HttpxDispatcher(httpx.MockTransport(app))(RequestOptions.from_url(URL, **kwargs), handler)


@pytest.mark.anyio
async def test_delivers_exchange_in_order():
    handler = RecordingHandler()

    await dispatch(lambda request: httpx.Response(200, headers={"etag": '"v1"'}, content=b"hello"), handler)

    assert handler.events == snapshot(
        [
            ("connect",),
            ("headers", 200, {"etag": '"v1"', "content-length": "5"}, "OK"),
            ("data", b"hello"),
            ("complete",),
        ]
    )


@pytest.mark.anyio
async def test_transfer_encoding_is_not_reported():
    handler = RecordingHandler()

    await dispatch(
        lambda request: httpx.Response(200, headers={"transfer-encoding": "chunked"}, stream=SlowStream([b"a"])),
        handler,
    )

    _, status_code, headers, _ = handler.events[1]
    assert status_code == 200
    assert "transfer-encoding" not in headers


@pytest.mark.anyio
async def test_paused_delivery_waits_for_resume():
    class PausingHandler(RecordingHandler):
        def on_data(self, chunk):
            super().on_data(chunk)
            return len(self.chunks) != 1

    handler = PausingHandler()

    async with anyio.create_task_group() as tg:
        tg.start_soon(dispatch, lambda request: httpx.Response(200, stream=SlowStream([b"a", b"b", b"c"])), handler)

        with anyio.fail_after(5):
            while not handler.chunks:
                await anyio.sleep(0.01)
        await anyio.sleep(0.05)

        assert handler.chunks == [b"a"]
        handler.resume()

    assert handler.chunks == [b"a", b"b", b"c"]
    assert handler.events[-1] == ("complete",)


@pytest.mark.anyio
async def test_abort_from_callback_reports_cancellation():
    class AbortingHandler(RecordingHandler):
        def on_headers(self, status_code, headers, resume, status_message):
            super().on_headers(status_code, headers, resume, status_message)
            self.abort("stop")
            return True

    handler = AbortingHandler()

    with anyio.fail_after(5):
        await dispatch(lambda request: httpx.Response(200, stream=SlowStream([b"a", b"b"])), handler)

    assert isinstance(handler.error, CancellationError)
    assert str(handler.error) == "stop"
    assert ("complete",) not in handler.events


@pytest.mark.anyio
async def test_abort_with_exception_reports_it():
    class AbortingHandler(RecordingHandler):
        def on_connect(self, abort):
            super().on_connect(abort)
            abort(ValueError("gave up"))

    handler = AbortingHandler()

    await dispatch(lambda request: httpx.Response(200), handler)

    assert isinstance(handler.error, ValueError)
    assert handler.events == [("connect",), ("error", "ValueError")]


@pytest.mark.anyio
async def test_callback_exception_is_reported():
    class FailingHandler(RecordingHandler):
        def on_headers(self, status_code, headers, resume, status_message):
            raise RuntimeError("bad headers")

    handler = FailingHandler()

    await dispatch(lambda request: httpx.Response(200, content=b"data"), handler)

    assert isinstance(handler.error, RuntimeError)
    assert handler.events == [("connect",), ("error", "RuntimeError")]


@pytest.mark.anyio
async def test_transport_error_is_classified(caplog: pytest.LogCaptureFixture):
    def refused(request):
        raise httpx.ConnectError("[Errno 111] Connection refused")

    handler = RecordingHandler()

    with caplog.at_level("DEBUG", logger="carryon.dispatcher"):
        await dispatch(refused, handler)

    assert isinstance(handler.error, TransportError)
    assert handler.error.code == "ECONNREFUSED"
    assert isinstance(handler.error.__cause__, httpx.ConnectError)
    assert caplog.messages == snapshot(
        [
            "Sending GET https://example.com/data",
            "GET https://example.com/data failed: ConnectError('[Errno 111] Connection refused')",
        ]
    )


@pytest.mark.anyio
async def test_upgrade_hands_over_the_stream():
    network_stream = object()
    handler = RecordingHandler()

    await dispatch(
        lambda request: httpx.Response(
            101, headers={"upgrade": "websocket"}, extensions={"network_stream": network_stream}
        ),
        handler,
        upgrade=True,
    )

    assert handler.events == [("connect",), ("upgrade", 101, network_stream)]


def test_build_request_encodes_text_bodies():
    dispatcher = HttpxDispatcher(httpx.MockTransport(lambda request: httpx.Response(200)))

    request = dispatcher.build_request(RequestOptions.from_url(URL, method="PUT", body="héllo"))

    assert request.method == "PUT"
    assert request.content == "héllo".encode("utf-8")


def test_build_request_calls_body_factory():
    dispatcher = HttpxDispatcher(httpx.MockTransport(lambda request: httpx.Response(200)))

    request = dispatcher.build_request(RequestOptions.from_url(URL, body=lambda: b"fresh"))

    assert request.method == "POST"
    assert request.content == b"fresh"


def test_build_request_keeps_repeated_headers():
    dispatcher = HttpxDispatcher(httpx.MockTransport(lambda request: httpx.Response(200)))

    request = dispatcher.build_request(
        RequestOptions.from_url(URL, headers=Headers({"accept": ["text/html", "text/plain"]}))
    )

    assert request.headers.get_list("accept") == ["text/html", "text/plain"]


def test_classify_name_resolution_failure():
    exc = httpx.ConnectError("[Errno -2] Name or service not known")
    exc.__cause__ = socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    assert classify(exc) == "ENOTFOUND"


def test_classify_os_error_in_context():
    exc = httpx.ReadError("read failed")
    exc.__context__ = ConnectionResetError(errno.ECONNRESET, "Connection reset by peer")

    assert classify(exc) == "ECONNRESET"


@pytest.mark.parametrize(
    "exc, code",
    [
        (httpx.ConnectError("[Errno 101] Network is unreachable"), "ENETUNREACH"),
        (httpx.ConnectError("[Errno 113] No route to host"), "EHOSTUNREACH"),
        (httpx.ConnectError("All connection attempts failed"), "ECONNREFUSED"),
        (httpx.ReadError(""), "ECONNRESET"),
        (httpx.WriteError("write failed"), "EPIPE"),
        (httpx.RemoteProtocolError("Server disconnected without sending a response."), "ECONNRESET"),
        (httpx.RemoteProtocolError("peer closed connection without sending complete message body"), "ECONNRESET"),
        (httpx.ConnectTimeout("timed out"), "ETIMEDOUT"),
        (httpx.ReadTimeout("timed out"), "ETIMEDOUT"),
        (httpx.RemoteProtocolError("illegal header"), None),
        (httpx.UnsupportedProtocol("Request URL has an unsupported protocol"), None),
    ],
)
def test_classify(exc, code):
    assert classify(exc) == code


def test_classify_connection_error_without_errno():
    exc = httpx.ReadError("read failed")
    exc.__cause__ = ConnectionResetError("Connection lost")

    assert classify(exc) == "ECONNRESET"
