from __future__ import annotations

import logging
import time
import typing as tp
from dataclasses import replace

from carryon._core._handler import DecoratorHandler, Dispatch, Handler, ResumeFn
from carryon._core._headers import ByteRange, Headers, HeaderValue, Vary, parse_cache_control
from carryon._core._storages._base import BaseCacheStore
from carryon._core.models import CacheEntry, CacheKey, CacheValue, RequestOptions
from carryon._exceptions import CancellationError

logger = logging.getLogger("carryon.core.cache")

# 365.2425 days, the lifetime of responses marked immutable.
IMMUTABLE_TTL = 31556952

NOT_CACHEABLE_DIRECTIVES = (
    "private",
    "no_store",
    "no_cache",
    "must_understand",
    "must_revalidate",
    "proxy_revalidate",
)


def is_cacheable_request(opts: RequestOptions) -> bool:
    if opts.method not in ("GET", "HEAD") or opts.upgrade:
        return False
    if "cache-control" in opts.headers or "authorization" in opts.headers:
        return False
    range_headers = opts.headers.get_list("range")
    if range_headers is not None:
        # Only a single closed range can be stored and matched again.
        if len(range_headers) != 1:
            return False
        byte_range = ByteRange.from_header(range_headers[0])
        if byte_range is None or byte_range.end is None:
            return False
    return True


def make_cache_value(
    key: CacheKey,
    status_code: int,
    headers: Headers,
    status_message: str = "",
    *,
    now: tp.Optional[float] = None,
) -> tp.Optional[CacheValue]:
    """
    Decide from the response head whether the response may be stored.

    Only bodiless final responses marked `public` with a positive freshness
    lifetime are admitted. Returns the value to store, or None.

    Example:
    ```python
        key = CacheKey(origin="http://localhost", method="GET", path="/")
        make_cache_value(key, 204, Headers({"cache-control": "public, max-age=60"}), now=0)
        # CacheValue(status_code=204, ..., cached_at=0, stale_at=60, delete_at=60)
    ```
    """
    if status_code < 200 or status_code == 206:
        logger.debug(f"Not caching status code {status_code}")
        return None

    content_length = headers.get("content-length")
    if content_length is not None and content_length.strip() != "0":
        logger.debug("Not caching a response with a body")
        return None

    cache_control = parse_cache_control(", ".join(headers.get_list("cache-control") or []))
    if not cache_control.public:
        logger.debug("Not caching a response without the public directive")
        return None

    for directive in NOT_CACHEABLE_DIRECTIVES:
        if getattr(cache_control, directive):
            logger.debug(f"Not caching a response with the {directive.replace('_', '-')} directive")
            return None

    request_headers: tp.Dict[str, HeaderValue] = {name.lower(): value for name, value in (key.headers or {}).items()}

    vary: tp.Optional[tp.Dict[str, HeaderValue]] = None
    vary_values = headers.get_list("vary")
    if vary_values:
        parsed_vary = Vary.from_value(",".join(vary_values))
        if parsed_vary.is_wildcard:
            logger.debug("Not caching a response with Vary: *")
            return None
        vary = {}
        for name in parsed_vary.values:
            value = request_headers.get(name)
            if value is None:
                logger.debug(f"Not caching: request has no {name} header named by Vary")
                return None
            vary[name] = value

    if cache_control.immutable:
        ttl = IMMUTABLE_TTL
    else:
        ttl = cache_control.s_maxage if cache_control.s_maxage is not None else cache_control.max_age
    if ttl is None or ttl <= 0:
        logger.debug("Not caching a response without a positive freshness lifetime")
        return None

    start = end = 0
    range_header = request_headers.get("range")
    if isinstance(range_header, str):
        byte_range = ByteRange.from_header(range_header)
        if byte_range is not None and byte_range.end is not None:
            start, end = byte_range.start, byte_range.end

    cached_at = time.time() if now is None else now
    return CacheValue(
        status_code=status_code,
        status_message=status_message,
        cached_at=cached_at,
        stale_at=cached_at + ttl,
        delete_at=cached_at + ttl,
        headers=headers.to_dict(),
        cache_control_directives=cache_control.directives,
        etag=headers.get("etag"),
        vary=vary,
        body=None,
        start=start,
        end=end,
    )


class CacheHandler(DecoratorHandler):
    """Forwards the response and stores it once it completed without a body."""

    def __init__(self, key: CacheKey, handler: Handler, store: BaseCacheStore) -> None:
        super().__init__(handler)
        self.key = key
        self.store = store
        self.value: tp.Optional[CacheValue] = None

    def on_headers(self, status_code: int, headers: Headers, resume: ResumeFn, status_message: str) -> bool:
        self.value = make_cache_value(self.key, status_code, headers, status_message)
        return super().on_headers(status_code, headers, resume, status_message)

    def on_data(self, chunk: bytes) -> bool:
        if chunk and self.value is not None:
            logger.debug("Response carried a body, dropping it from the cache")
            self.value = None
        return super().on_data(chunk)

    def on_complete(self, trailers: tp.Optional[Headers]) -> None:
        if self.value is not None:
            self.store.set(self.key, self.value)
            logger.debug(f"Stored {self.key.method} {self.key.url}")
            self.value = None
        super().on_complete(trailers)

    def on_error(self, error: BaseException) -> None:
        self.value = None
        super().on_error(error)


def serve_from_cache(entry: CacheEntry, opts: RequestOptions, handler: Handler) -> None:
    aborted: tp.List[tp.Any] = []

    def abort(reason: tp.Any = None) -> None:
        if not aborted:
            aborted.append(reason if reason is not None else CancellationError())

    def check() -> None:
        if aborted:
            reason = aborted[0]
            raise reason if isinstance(reason, BaseException) else CancellationError(reason)

    try:
        handler.on_connect(abort)
        check()
        handler.on_headers(entry.status_code, Headers(entry.headers), lambda: None, entry.status_message)
        check()
        if opts.method != "HEAD" and entry.body:
            handler.on_data(entry.body)
            check()
    except Exception as exc:
        handler.on_error(exc)
        return
    handler.on_complete(None)


def cache_interceptor(dispatch: Dispatch) -> Dispatch:
    async def cache_dispatch(opts: RequestOptions, handler: Handler) -> None:
        store = opts.cache
        if not store or not is_cacheable_request(opts):
            await dispatch(opts, handler)
            return

        key = CacheKey.from_options(opts)
        entry = store.get(key)
        if entry is None and opts.method == "HEAD":
            entry = store.get(replace(key, method="GET"))

        if entry is not None:
            logger.debug(f"Serving {opts.method} {key.url} from cache")
            serve_from_cache(entry, opts, handler)
            return

        await dispatch(opts, CacheHandler(key, handler, store))

    return cache_dispatch
