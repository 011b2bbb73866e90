from __future__ import annotations

import logging
import typing as t

import anyio
import httpx

from carryon._core._handler import Handler
from carryon._core._headers import Headers
from carryon._core._retry import os_error_code
from carryon._core.models import RequestOptions, RequestStream
from carryon._exceptions import CancellationError, TransportError

logger = logging.getLogger("carryon.dispatcher")

# Headers describing the framing of the raw connection, meaningless once the body was de-chunked.
HOP_BY_HOP_HEADERS = ("transfer-encoding",)

_MESSAGE_CODES = (
    ("name or service not known", "ENOTFOUND"),
    ("nodename nor servname", "ENOTFOUND"),
    ("temporary failure in name resolution", "ENOTFOUND"),
    ("connection refused", "ECONNREFUSED"),
    ("connection reset", "ECONNRESET"),
    ("broken pipe", "EPIPE"),
    ("network is unreachable", "ENETUNREACH"),
    ("no route to host", "EHOSTUNREACH"),
)


def _causes(exc: BaseException) -> t.Iterator[BaseException]:
    seen: t.Set[int] = set()
    current: t.Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify(exc: httpx.TransportError) -> t.Optional[str]:
    """
    Find the connection error code behind an httpx transport error.

    The underlying OS error is looked up first, then well-known messages,
    then the kind of httpx error.
    """
    for cause in _causes(exc):
        code = os_error_code(cause)
        if code is not None:
            return code

    message = str(exc).lower()
    for needle, code in _MESSAGE_CODES:
        if needle in message:
            return code

    if isinstance(exc, httpx.ConnectError):
        return "ECONNREFUSED"
    if isinstance(exc, httpx.ReadError):
        return "ECONNRESET"
    if isinstance(exc, httpx.WriteError):
        return "EPIPE"
    if isinstance(exc, httpx.RemoteProtocolError) and ("disconnected" in message or "closed" in message):
        return "ECONNRESET"
    if isinstance(exc, httpx.TimeoutException):
        return "ETIMEDOUT"
    return None


def to_transport_error(exc: httpx.TransportError) -> TransportError:
    error = TransportError(str(exc) or type(exc).__name__, code=classify(exc))
    error.__cause__ = exc
    return error


class _Exchange:
    """Abort and flow-control state of a single attempt."""

    def __init__(self) -> None:
        self.scope = anyio.CancelScope()
        self.aborted = False
        self.reason: t.Any = None
        self._resumed: t.Optional[anyio.Event] = None

    def abort(self, reason: t.Any = None) -> None:
        if self.aborted:
            return
        self.aborted = True
        self.reason = reason
        self.scope.cancel()

    def error(self) -> BaseException:
        if isinstance(self.reason, BaseException):
            return self.reason
        return CancellationError(self.reason)

    def raise_if_aborted(self) -> None:
        if self.aborted:
            raise self.error()

    def arm(self) -> None:
        self._resumed = anyio.Event()

    def resume(self) -> None:
        if self._resumed is not None:
            self._resumed.set()

    async def wait_resumed(self) -> None:
        assert self._resumed is not None
        await self._resumed.wait()


async def _aiter(stream: RequestStream) -> t.AsyncIterator[bytes]:
    async for chunk in stream:
        yield chunk


async def _aiter_body(response: httpx.Response) -> t.AsyncIterator[bytes]:
    if response.is_stream_consumed:
        # responses built from `content=` are read on construction
        yield response.content
        return
    async for chunk in response.aiter_raw():
        yield chunk


class HttpxDispatcher:
    """
    Drive one exchange over an httpx transport and report it to a handler.

    Example:
    ```python
        dispatch = HttpxDispatcher(httpx.AsyncHTTPTransport())
        await dispatch(RequestOptions.from_url("https://example.com"), handler)
    ```
    """

    def __init__(self, transport: httpx.AsyncBaseTransport) -> None:
        self.transport = transport

    def build_request(self, opts: RequestOptions) -> httpx.Request:
        body = opts.body() if callable(opts.body) else opts.body
        content: t.Any
        if isinstance(body, RequestStream):
            content = _aiter(body)
        elif isinstance(body, str):
            content = body.encode("utf-8")
        else:
            content = body

        headers = [(name, value) for name in opts.headers for value in opts.headers.get_list(name) or []]
        return httpx.Request(
            opts.method,
            opts.url,
            headers=headers,
            content=content,
            extensions=dict(opts.extensions),
        )

    async def __call__(self, opts: RequestOptions, handler: Handler) -> None:
        exchange = _Exchange()
        try:
            handler.on_connect(exchange.abort)
        except Exception as exc:
            handler.on_error(exc)
            return

        response: t.Optional[httpx.Response] = None
        try:
            with exchange.scope:
                exchange.raise_if_aborted()
                logger.debug(f"Sending {opts.method} {opts.url}")
                response = await self.transport.handle_async_request(self.build_request(opts))

                headers = Headers.from_pairs(
                    (name, value)
                    for name, value in response.headers.multi_items()
                    if name.lower() not in HOP_BY_HOP_HEADERS
                )

                if response.status_code == 101:
                    # the upgraded stream now belongs to the handler
                    upgraded, response = response, None
                    handler.on_upgrade(upgraded.status_code, headers, upgraded.extensions.get("network_stream"))
                    return

                exchange.arm()
                if not handler.on_headers(response.status_code, headers, exchange.resume, response.reason_phrase):
                    await exchange.wait_resumed()

                async for chunk in _aiter_body(response):
                    if not chunk:
                        continue
                    exchange.arm()
                    if not handler.on_data(chunk):
                        await exchange.wait_resumed()

            exchange.raise_if_aborted()
        except httpx.TransportError as exc:
            logger.debug(f"{opts.method} {opts.url} failed: {exc!r}")
            handler.on_error(exchange.error() if exchange.aborted else to_transport_error(exc))
            return
        except Exception as exc:
            handler.on_error(exc)
            return
        finally:
            if response is not None:
                await self._close(response)

        handler.on_complete(None)

    async def _close(self, response: httpx.Response) -> None:
        with anyio.CancelScope(shield=True):
            try:
                await response.aclose()
            except httpx.TransportError as exc:
                logger.debug(f"Failed to close response: {exc!r}")
