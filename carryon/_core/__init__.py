from carryon._core._cache import (
    CacheHandler as CacheHandler,
    cache_interceptor as cache_interceptor,
    make_cache_value as make_cache_value,
)
from carryon._core._cancel import CancelToken as CancelToken
from carryon._core._handler import (
    DecoratorHandler as DecoratorHandler,
    Dispatch as Dispatch,
    Handler as Handler,
    Interceptor as Interceptor,
    compose as compose,
)
from carryon._core._headers import Headers as Headers
from carryon._core._resume import (
    ResumeController as ResumeController,
    resume_interceptor as resume_interceptor,
)
from carryon._core._retry import (
    RetryDecision as RetryDecision,
    RetryLimits as RetryLimits,
    evaluate as evaluate,
)
from carryon._core._storages._base import BaseCacheStore as BaseCacheStore
from carryon._core._storages._sqlite import SqliteCacheStore as SqliteCacheStore
from carryon._core._verify import (
    VerifyHandler as VerifyHandler,
    VerifyOptions as VerifyOptions,
    verify_interceptor as verify_interceptor,
)
from carryon._core.models import (
    CacheEntry as CacheEntry,
    CacheKey as CacheKey,
    CacheValue as CacheValue,
    RequestMetadata as RequestMetadata,
    RequestOptions as RequestOptions,
    RequestStream as RequestStream,
    RetrySession as RetrySession,
)
