from carryon._client import (
    Response as Response,
    build_dispatch as build_dispatch,
    request as request,
    stream as stream,
)
from carryon._core import (
    BaseCacheStore as BaseCacheStore,
    CacheEntry as CacheEntry,
    CacheHandler as CacheHandler,
    CacheKey as CacheKey,
    CacheValue as CacheValue,
    CancelToken as CancelToken,
    DecoratorHandler as DecoratorHandler,
    Dispatch as Dispatch,
    Handler as Handler,
    Headers as Headers,
    Interceptor as Interceptor,
    RequestMetadata as RequestMetadata,
    RequestOptions as RequestOptions,
    RequestStream as RequestStream,
    ResumeController as ResumeController,
    RetryDecision as RetryDecision,
    RetryLimits as RetryLimits,
    RetrySession as RetrySession,
    SqliteCacheStore as SqliteCacheStore,
    VerifyHandler as VerifyHandler,
    VerifyOptions as VerifyOptions,
    cache_interceptor as cache_interceptor,
    compose as compose,
    evaluate as evaluate,
    make_cache_value as make_cache_value,
    resume_interceptor as resume_interceptor,
    verify_interceptor as verify_interceptor,
)
from carryon._dispatcher import HttpxDispatcher as HttpxDispatcher
from carryon._exceptions import (
    CancellationError as CancellationError,
    CarryonError as CarryonError,
    ResumeValidationError as ResumeValidationError,
    StatusError as StatusError,
    StoreError as StoreError,
    TransportError as TransportError,
    VerificationError as VerificationError,
)

__all__ = (
    # Requests
    "request",
    "stream",
    "Response",
    "RequestOptions",
    "RequestStream",
    "RequestMetadata",
    "CancelToken",
    ## Handlers
    "Handler",
    "DecoratorHandler",
    "Dispatch",
    "Interceptor",
    "compose",
    "build_dispatch",
    "HttpxDispatcher",
    ## Retries
    "RetryLimits",
    "RetryDecision",
    "RetrySession",
    "ResumeController",
    "evaluate",
    "resume_interceptor",
    ## Cache
    "CacheKey",
    "CacheValue",
    "CacheEntry",
    "CacheHandler",
    "BaseCacheStore",
    "SqliteCacheStore",
    "cache_interceptor",
    "make_cache_value",
    ## Verification
    "VerifyOptions",
    "VerifyHandler",
    "verify_interceptor",
    ## Headers
    "Headers",
    # Errors
    "CarryonError",
    "TransportError",
    "StatusError",
    "ResumeValidationError",
    "StoreError",
    "VerificationError",
    "CancellationError",
)
