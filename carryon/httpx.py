from __future__ import annotations

import ssl
import typing as t

import httpx

from carryon._client import build_dispatch
from carryon._core._handler import AbortFn, Handler, ResumeFn
from carryon._core._headers import Headers
from carryon._core._retry import RetrySetting
from carryon._core._storages._base import BaseCacheStore
from carryon._core.models import RequestMetadata, RequestOptions, extract_metadata_from_headers, metadata_header_names
from carryon._exceptions import TransportError
from carryon._utils import filter_mapping


def _request_metadata(request: httpx.Request) -> RequestMetadata:
    metadata = extract_metadata_from_headers(request.headers)
    for key in RequestMetadata.__annotations__:
        if key in request.extensions:
            metadata[key] = request.extensions[key]  # type: ignore
    return metadata


def _httpx_to_options(
    request: httpx.Request,
    retry: RetrySetting,
    store: t.Optional[BaseCacheStore],
) -> RequestOptions:
    metadata = _request_metadata(request)

    if "carryon_retry" in metadata:
        retry = metadata["carryon_retry"]
    if metadata.get("carryon_cache") is False:
        store = None

    excluded = {name.lower() for name in metadata_header_names()}
    headers = Headers.from_pairs(
        (name, value) for name, value in request.headers.multi_items() if name.lower() not in excluded
    )
    extensions = filter_mapping(dict(request.extensions), RequestMetadata.__annotations__.keys())

    # A streaming request body can be sent once; a read body is re-sent on each attempt.
    body: t.Any = request.content if _is_read(request) else request.stream

    return RequestOptions.from_url(
        request.url,
        method=request.method,
        headers=headers,
        body=body if body != b"" else None,
        idempotent=metadata.get("carryon_idempotent"),
        retry=retry,
        cache=store,
        extensions=extensions,
    )


def _is_read(request: httpx.Request) -> bool:
    try:
        request.content
    except httpx.RequestNotRead:
        return False
    return True


class _BufferingHandler(Handler):
    """Collects the whole response, body included."""

    def __init__(self) -> None:
        self.status_code: t.Optional[int] = None
        self.headers = Headers()
        self.status_message = ""
        self.chunks: t.List[bytes] = []
        self.error: t.Optional[BaseException] = None

    def on_connect(self, abort: AbortFn) -> None:
        pass

    def on_headers(self, status_code: int, headers: Headers, resume: ResumeFn, status_message: str) -> bool:
        self.status_code = status_code
        self.headers = headers
        self.status_message = status_message
        return True

    def on_data(self, chunk: bytes) -> bool:
        self.chunks.append(chunk)
        return True

    def on_complete(self, trailers: t.Optional[Headers]) -> None:
        pass

    def on_error(self, error: BaseException) -> None:
        self.error = error

    def to_httpx(self, request: httpx.Request) -> httpx.Response:
        if self.error is not None:
            if isinstance(self.error, TransportError) and isinstance(self.error.__cause__, httpx.TransportError):
                raise self.error.__cause__
            raise self.error
        assert self.status_code is not None
        return httpx.Response(
            status_code=self.status_code,
            headers=[(name, value) for name in self.headers for value in self.headers.get_list(name) or []],
            stream=httpx.ByteStream(b"".join(self.chunks)),
            request=request,
            extensions={"reason_phrase": self.status_message.encode("ascii", errors="replace")},
        )


class AsyncResumeTransport(httpx.AsyncBaseTransport):
    """
    Transport that retries failed requests, resumes interrupted downloads
    and answers from the response cache before using `next_transport`.

    Responses are buffered completely before being returned to httpx.

    Example:
    ```python
        transport = AsyncResumeTransport(
            next_transport=httpx.AsyncHTTPTransport(),
            store=SqliteCacheStore(),
        )
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get("https://example.com/archive.tar")
    ```
    """

    def __init__(
        self,
        next_transport: t.Optional[httpx.AsyncBaseTransport] = None,
        store: t.Optional[BaseCacheStore] = None,
        retry: RetrySetting = True,
    ) -> None:
        self.next_transport = next_transport if next_transport is not None else httpx.AsyncHTTPTransport()
        self.store = store
        self.retry = retry
        self._dispatch = build_dispatch(self.next_transport)

    async def handle_async_request(
        self,
        request: httpx.Request,
    ) -> httpx.Response:
        opts = _httpx_to_options(request, self.retry, self.store)
        handler = _BufferingHandler()
        await self._dispatch(opts, handler)
        return handler.to_httpx(request)

    async def aclose(self) -> None:
        await self.next_transport.aclose()
        if self.store is not None:
            self.store.close()
        await super().aclose()


class AsyncResumeClient(httpx.AsyncClient):
    def __init__(self, *args: t.Any, **kwargs: t.Any) -> None:
        self.store: t.Optional[BaseCacheStore] = kwargs.pop("store", None)
        self.retry: RetrySetting = kwargs.pop("retry", True)
        super().__init__(*args, **kwargs)

    def _init_transport(
        self,
        verify: ssl.SSLContext | str | bool = True,
        cert: t.Union[str, t.Tuple[str, str], t.Tuple[str, str, str], None] = None,
        trust_env: bool = True,
        http1: bool = True,
        http2: bool = False,
        limits: httpx.Limits = httpx.Limits(max_connections=100, max_keepalive_connections=20),
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: t.Any,
    ) -> httpx.AsyncBaseTransport:
        if transport is None:
            transport = httpx.AsyncHTTPTransport(
                verify=verify,
                cert=cert,
                trust_env=trust_env,
                http1=http1,
                http2=http2,
                limits=limits,
            )

        return AsyncResumeTransport(next_transport=transport, store=self.store, retry=self.retry)

    def _init_proxy_transport(
        self,
        proxy: httpx.Proxy,
        verify: ssl.SSLContext | str | bool = True,
        cert: t.Union[str, t.Tuple[str, str], t.Tuple[str, str, str], None] = None,
        trust_env: bool = True,
        http1: bool = True,
        http2: bool = False,
        limits: httpx.Limits = httpx.Limits(max_connections=100, max_keepalive_connections=20),
        **kwargs: t.Any,
    ) -> httpx.AsyncBaseTransport:
        return AsyncResumeTransport(
            next_transport=httpx.AsyncHTTPTransport(
                verify=verify,
                cert=cert,
                trust_env=trust_env,
                http1=http1,
                http2=http2,
                limits=limits,
                proxy=proxy,
            ),
            store=self.store,
            retry=self.retry,
        )
