from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterable,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    TypedDict,
    Union,
)

import httpx

from carryon._core._cancel import CancelToken
from carryon._core._headers import Headers, HeaderValue
from carryon._utils import parse_bool, snake_to_header

if TYPE_CHECKING:
    from carryon._core._retry import RetrySetting
    from carryon._core._storages._base import BaseCacheStore
    from carryon._core._verify import VerifyOptions


class RequestStream:
    """
    A request body backed by a (sync or async) iterable of bytes.

    The stream becomes `disturbed` as soon as the first chunk is pulled, after
    which it can no longer be re-sent.
    """

    def __init__(self, iterable: Union[Iterable[bytes], AsyncIterable[bytes]]) -> None:
        self._iterable = iterable
        self.disturbed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        self.disturbed = True
        if isinstance(self._iterable, AsyncIterable):
            async for chunk in self._iterable:
                yield chunk
        else:
            for chunk in self._iterable:
                yield chunk

    def __iter__(self) -> Iterator[bytes]:
        if isinstance(self._iterable, AsyncIterable):
            raise TypeError("Request stream is not an Iterator")
        self.disturbed = True
        yield from self._iterable


RequestBody = Union[None, bytes, str, RequestStream, Callable[[], Any]]


def is_disturbed(body: Any) -> bool:
    if body is None or isinstance(body, (bytes, bytearray, memoryview, str)) or callable(body):
        return False
    if isinstance(body, RequestStream):
        return body.disturbed
    return True


def _normalize_body(body: Any) -> Any:
    if body is None or isinstance(body, (bytes, bytearray, memoryview, str, RequestStream)) or callable(body):
        return body
    if isinstance(body, (Iterable, AsyncIterable)):
        return RequestStream(body)
    raise TypeError(f"Unsupported request body type: {type(body).__name__}")


@dataclass
class RequestOptions:
    """
    Immutable description of one logical request.

    Attempts issued on behalf of the request are derived with
    `dataclasses.replace` / `with_headers`, never by mutation.
    """

    origin: str
    path: str
    method: str = ""
    headers: Headers = field(default_factory=Headers)
    body: RequestBody = None
    signal: Optional[CancelToken] = None
    idempotent: Optional[bool] = None
    retry: "RetrySetting" = True
    cache: Union["BaseCacheStore", bool, None] = None
    upgrade: bool = False
    verify: Union[bool, "VerifyOptions", None] = None
    extensions: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers)
        self.body = _normalize_body(self.body)
        if not self.method:
            self.method = "POST" if self.body is not None else "GET"
        self.method = self.method.upper()
        if self.idempotent is None:
            self.idempotent = self.method in ("GET", "HEAD")
        if self.origin.endswith("/"):
            self.origin = self.origin[:-1]
        if not self.path.startswith("/"):
            self.path = "/" + self.path

    @classmethod
    def from_url(cls, url: Union[str, httpx.URL], **kwargs: Any) -> "RequestOptions":
        url = httpx.URL(url)
        if url.scheme not in ("http", "https"):
            raise ValueError("Invalid URL protocol: the URL must start with `http:` or `https:`.")
        origin = f"{url.scheme}://{url.netloc.decode('ascii')}"
        return cls(origin=origin, path=url.raw_path.decode("ascii"), **kwargs)

    @property
    def url(self) -> str:
        return self.origin + self.path

    def with_headers(self, headers: Mapping[str, str]) -> "RequestOptions":
        merged = self.headers.copy()
        for key, value in headers.items():
            merged[key] = value
        return replace(self, headers=merged)


@dataclass
class CacheKey:
    """
    Identity of a cacheable request: (origin, path, method).

    `headers` only take part in lookups to satisfy a stored vary constraint
    and to read the requested byte range.
    """

    origin: str
    method: str
    path: str
    headers: Optional[Mapping[str, HeaderValue]] = None

    @classmethod
    def from_options(cls, opts: RequestOptions) -> "CacheKey":
        return cls(origin=opts.origin, method=opts.method, path=opts.path, headers=opts.headers.to_dict())

    @property
    def url(self) -> str:
        return self.origin + self.path


@dataclass
class CacheValue:
    status_code: int
    status_message: str
    cached_at: float
    stale_at: float
    delete_at: float
    headers: Optional[Mapping[str, HeaderValue]] = None
    cache_control_directives: Optional[Mapping[str, Any]] = None
    etag: Optional[str] = None
    vary: Optional[Mapping[str, HeaderValue]] = None
    body: Optional[bytes] = None
    start: int = 0
    end: int = 0


@dataclass
class CacheEntry:
    id: int
    url: str
    method: str
    status_code: int
    status_message: str
    cached_at: float
    stale_at: float
    delete_at: float
    start: int
    end: int
    headers: Dict[str, HeaderValue] = field(default_factory=dict)
    cache_control_directives: Dict[str, Any] = field(default_factory=dict)
    etag: Optional[str] = None
    vary: Dict[str, HeaderValue] = field(default_factory=dict)
    body: Optional[bytes] = None


@dataclass
class RetrySession:
    """Mutable state of one logical request inside the resume controller."""

    opts: RequestOptions
    pos: Optional[int] = None
    end: Optional[int] = None
    etag: Optional[str] = None
    attempt: int = 0
    aborted: bool = False
    abort_reason: Any = None
    # The failure that triggered the resume currently being validated.
    error: Optional[BaseException] = None
    headers_sent: bool = False
    tracking: bool = False


class RequestMetadata(TypedDict, total=False):
    # All the names here should be prefixed with "carryon_" to avoid collisions with user data
    carryon_retry: Union[bool, int, None]
    """Retry budget for the request; False or 0 disables retries and resumes."""

    carryon_idempotent: Optional[bool]
    """Overrides whether the request may be re-issued."""

    carryon_cache: Optional[bool]
    """When False, the response cache is bypassed for this request."""


def extract_metadata_from_headers(headers: Mapping[str, str]) -> RequestMetadata:
    metadata: RequestMetadata = {}
    if "X-Carryon-Retry" in headers:
        value = headers["X-Carryon-Retry"]
        flag = parse_bool(value)
        if flag is not None:
            metadata["carryon_retry"] = flag
        else:
            try:
                metadata["carryon_retry"] = int(value)
            except ValueError:
                pass
    if "X-Carryon-Idempotent" in headers:
        flag = parse_bool(headers["X-Carryon-Idempotent"])
        if flag is not None:
            metadata["carryon_idempotent"] = flag
    if "X-Carryon-Cache" in headers:
        flag = parse_bool(headers["X-Carryon-Cache"])
        if flag is not None:
            metadata["carryon_cache"] = flag
    return metadata


def metadata_header_names() -> List[str]:
    return [snake_to_header(key) for key in RequestMetadata.__annotations__]
