from __future__ import annotations

import json
import sys
import typing as t
from collections import deque
from contextlib import asynccontextmanager

import anyio
import httpx
from anyio.abc import TaskGroup

from carryon._core._cache import cache_interceptor
from carryon._core._cancel import CancelToken
from carryon._core._handler import AbortFn, Dispatch, Handler, ResumeFn, compose
from carryon._core._headers import Headers, HeaderValue
from carryon._core._resume import resume_interceptor
from carryon._core._retry import RetrySetting
from carryon._core._storages._base import BaseCacheStore
from carryon._core._verify import VerifyOptions, verify_interceptor
from carryon._core.models import RequestBody, RequestOptions
from carryon._dispatcher import HttpxDispatcher
from carryon._exceptions import CancellationError, StatusError

if sys.version_info < (3, 11):
    from exceptiongroup import BaseExceptionGroup

# Delivery pauses once this many body bytes wait to be read by the application.
HIGH_WATER_MARK = 65536


def build_dispatch(transport: httpx.AsyncBaseTransport) -> Dispatch:
    """Cache lookups first, then retries and resumes, then body verification and the network."""
    return compose(HttpxDispatcher(transport), verify_interceptor, resume_interceptor, cache_interceptor)


def _parse_error_body(headers: Headers, body: bytes) -> t.Any:
    if not body:
        return None
    mime = (headers.get("content-type") or "").split(";")[0].strip().lower()
    if mime == "application/json":
        try:
            return json.loads(body)
        except ValueError:
            return body.decode("utf-8", errors="replace")
    if mime.startswith("text/"):
        return body.decode("utf-8", errors="replace")
    return body


class Response:
    """A response whose body is streamed from the dispatch as the application reads it."""

    def __init__(
        self,
        status_code: int,
        headers: Headers,
        status_message: str,
        handler: "_ResponseHandler",
    ) -> None:
        self.status_code = status_code
        self.headers = headers
        self.status_message = status_message
        self._handler = handler
        self._content: t.Optional[bytes] = None

    def __repr__(self) -> str:
        return f"<Response [{self.status_code} {self.status_message}]>"

    @property
    def content(self) -> bytes:
        if self._content is None:
            raise RuntimeError("Attempted to access the content of a response that was not read")
        return self._content

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def json(self) -> t.Any:
        return json.loads(self.content)

    async def aiter_bytes(self) -> t.AsyncIterator[bytes]:
        if self._content is not None:
            yield self._content
            return
        while True:
            chunk = await self._handler.next_chunk()
            if chunk is None:
                return
            yield chunk

    async def aread(self) -> bytes:
        if self._content is None:
            self._content = b"".join([chunk async for chunk in self.aiter_bytes()])
        return self._content

    def abort(self, reason: t.Any = None) -> None:
        self._handler.abort(reason)


class _ResponseHandler(Handler):
    def __init__(self) -> None:
        self.response: t.Optional[Response] = None
        self.error: t.Optional[BaseException] = None
        self._failed: t.Optional[t.Tuple[int, Headers, str]] = None
        self._error_body = bytearray()
        self._chunks: t.Deque[bytes] = deque()
        self._buffered = 0
        self._paused = False
        self._done = False
        self._abort: t.Optional[AbortFn] = None
        self._resume: t.Optional[ResumeFn] = None
        self._waiter: t.Optional[anyio.Event] = None

    def _wake(self) -> None:
        if self._waiter is not None:
            self._waiter.set()
            self._waiter = None

    async def _wait(self) -> None:
        self._waiter = anyio.Event()
        await self._waiter.wait()

    def abort(self, reason: t.Any = None) -> None:
        if not self._done and self._abort is not None:
            self._abort(reason if reason is not None else CancellationError())

    def on_connect(self, abort: AbortFn) -> None:
        self._abort = abort

    def on_headers(self, status_code: int, headers: Headers, resume: ResumeFn, status_message: str) -> bool:
        if status_code >= 400:
            self._failed = (status_code, headers, status_message)
            return True
        self._resume = resume
        self.response = Response(status_code, headers, status_message, self)
        self._wake()
        return True

    def on_data(self, chunk: bytes) -> bool:
        if self._failed is not None:
            self._error_body += chunk
            return True
        self._chunks.append(chunk)
        self._buffered += len(chunk)
        self._wake()
        if self._buffered >= HIGH_WATER_MARK:
            self._paused = True
            return False
        return True

    def on_complete(self, trailers: t.Optional[Headers]) -> None:
        if self._failed is not None:
            status_code, headers, status_message = self._failed
            self.error = StatusError(
                status_code,
                headers.to_dict(),
                body=_parse_error_body(headers, bytes(self._error_body)),
                message=status_message or None,
            )
        self._done = True
        self._wake()

    def on_error(self, error: BaseException) -> None:
        self.error = error
        self._done = True
        self._wake()

    async def wait_for_response(self) -> t.Optional[Response]:
        while self.response is None and not self._done:
            await self._wait()
        return self.response

    async def next_chunk(self) -> t.Optional[bytes]:
        while True:
            if self._chunks:
                chunk = self._chunks.popleft()
                self._buffered -= len(chunk)
                if self._paused and self._buffered < HIGH_WATER_MARK and self._resume is not None:
                    self._paused = False
                    self._resume()
                return chunk
            if self._done:
                if self.error is not None:
                    raise self.error
                return None
            await self._wait()


@asynccontextmanager
async def _task_group() -> t.AsyncIterator[TaskGroup]:
    try:
        async with anyio.create_task_group() as tg:
            yield tg
    except BaseExceptionGroup as group:
        if len(group.exceptions) == 1:
            raise group.exceptions[0] from None
        raise


@asynccontextmanager
async def stream(
    method: str,
    url: t.Union[str, httpx.URL],
    *,
    headers: t.Optional[t.Mapping[str, HeaderValue]] = None,
    body: RequestBody = None,
    dispatch: t.Optional[Dispatch] = None,
    transport: t.Optional[httpx.AsyncBaseTransport] = None,
    retry: RetrySetting = True,
    idempotent: t.Optional[bool] = None,
    cache: t.Union[BaseCacheStore, bool, None] = None,
    verify: t.Union[bool, VerifyOptions, None] = None,
    signal: t.Optional[CancelToken] = None,
    extensions: t.Optional[t.Mapping[str, t.Any]] = None,
) -> t.AsyncIterator[Response]:
    """
    Send a request and stream its response body.

    Transport failures and retryable status codes are retried, and a body
    interrupted mid-stream is resumed, so the application reads the body
    once, from the first byte to the last. Final status codes >= 400 raise
    StatusError.
    With `verify`, a body that does not match its Content-Length or
    Content-MD5 raises VerificationError instead of completing.

    Example:
    ```python
        async with carryon.stream("GET", "https://example.com/large.bin") as response:
            async for chunk in response.aiter_bytes():
                ...
    ```
    """
    opts = RequestOptions.from_url(
        url,
        method=method,
        headers=Headers(headers),
        body=body,
        retry=retry,
        idempotent=idempotent,
        cache=cache,
        verify=verify,
        signal=signal,
        extensions=dict(extensions or {}),
    )

    owned_transport: t.Optional[httpx.AsyncBaseTransport] = None
    if dispatch is None:
        if transport is None:
            transport = owned_transport = httpx.AsyncHTTPTransport()
        dispatch = build_dispatch(transport)

    handler = _ResponseHandler()
    if signal is not None:
        signal.add_callback(handler.abort)
    try:
        async with _task_group() as tg:
            tg.start_soon(dispatch, opts, handler)
            response = await handler.wait_for_response()
            if response is not None:
                try:
                    yield response
                finally:
                    handler.abort()
        if response is None:
            assert handler.error is not None
            raise handler.error
    finally:
        if signal is not None:
            signal.remove_callback(handler.abort)
        if owned_transport is not None:
            await owned_transport.aclose()


async def request(method: str, url: t.Union[str, httpx.URL], **kwargs: t.Any) -> Response:
    """
    Send a request and read the whole response body.

    Accepts the same keyword arguments as `stream`.
    """
    async with stream(method, url, **kwargs) as response:
        await response.aread()
    return response
