from __future__ import annotations

import errno
import logging
import math
import socket
import typing as tp
from dataclasses import dataclass

import anyio
import httpx

from carryon._core._cancel import CancelToken
from carryon._exceptions import StatusError, TransportError

if tp.TYPE_CHECKING:
    from carryon._core.models import RequestOptions

logger = logging.getLogger("carryon.core.retry")

DEFAULT_RETRY_BUDGET = 8

CONNECTION_ERROR_CODES = frozenset(
    {
        "ECONNRESET",
        "ECONNREFUSED",
        "ENOTFOUND",
        "ENETDOWN",
        "ENETUNREACH",
        "EHOSTDOWN",
        "EHOSTUNREACH",
        "EPIPE",
    }
)

RETRYABLE_STATUS_CODES = frozenset({420, 429, 502, 503, 504})

ERRNO_CODES = {
    getattr(errno, name): name
    for name in ("ECONNRESET", "ECONNREFUSED", "ENETDOWN", "ENETUNREACH", "EHOSTDOWN", "EHOSTUNREACH", "EPIPE")
    if hasattr(errno, name)
}


@dataclass
class RetryLimits:
    """
    Shape of the default retry policy.

    The n-th retry waits `min(max_delay, n * step)` seconds unless the server
    asks for a specific delay with `Retry-After`.
    """

    budget: int = DEFAULT_RETRY_BUDGET
    step: float = 1.0
    max_delay: float = 10.0


@dataclass(frozen=True)
class RetryDecision:
    delay: float = 0.0


DefaultPolicy = tp.Callable[[BaseException, int, "RequestOptions"], tp.Optional[RetryDecision]]
RetryFunction = tp.Callable[[BaseException, int, "RequestOptions", DefaultPolicy], tp.Any]
RetrySetting = tp.Union[bool, int, None, RetryLimits, RetryFunction]


# Raised without an errno by Python-level transports such as asyncio.
_OS_ERROR_TYPES = (
    (ConnectionResetError, "ECONNRESET"),
    (ConnectionRefusedError, "ECONNREFUSED"),
    (BrokenPipeError, "EPIPE"),
)


def os_error_code(error: BaseException) -> tp.Optional[str]:
    if isinstance(error, socket.gaierror):
        return "ENOTFOUND"
    if not isinstance(error, OSError):
        return None
    for error_type, code in _OS_ERROR_TYPES:
        if isinstance(error, error_type):
            return code
    return ERRNO_CODES.get(error.errno) if error.errno is not None else None


def error_code(error: BaseException) -> tp.Optional[str]:
    if isinstance(error, TransportError):
        return error.code
    return os_error_code(error)


def status_of(error: BaseException) -> tp.Optional[int]:
    if isinstance(error, StatusError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status_code = getattr(error, "status_code", None)
    return status_code if isinstance(status_code, int) else None


def is_connection_error(error: BaseException) -> bool:
    if str(error) == "other side closed":
        return True
    return error_code(error) in CONNECTION_ERROR_CODES


def parse_retry_after(value: tp.Union[str, tp.List[str], None]) -> tp.Optional[float]:
    """
    Interpret a `Retry-After` value as a number of seconds.

    HTTP-date values, negative and non-finite numbers are ignored.
    """
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds


def _retry_after(error: BaseException) -> tp.Optional[float]:
    if isinstance(error, StatusError):
        headers = {k.lower(): v for k, v in error.headers.items()}
        return parse_retry_after(headers.get("retry-after"))
    if isinstance(error, httpx.HTTPStatusError):
        return parse_retry_after(error.response.headers.get("retry-after"))
    return None


def evaluate(
    error: BaseException,
    attempt: int,
    limits: tp.Optional[RetryLimits] = None,
) -> tp.Optional[RetryDecision]:
    """
    Decide whether the failure should be retried, and after which delay.

    `attempt` counts retries already performed for the logical request,
    starting at 0. Returns None to give up, in which case the caller must
    surface `error` itself.

    Example:
    ```python
        evaluate(StatusError(503), attempt=2)
        # RetryDecision(delay=2.0)
        evaluate(StatusError(503, {"retry-after": "7"}), attempt=2)
        # RetryDecision(delay=7.0)
        evaluate(StatusError(404), attempt=0)
        # None
    ```
    """
    limits = limits if limits is not None else RetryLimits()

    if attempt >= limits.budget:
        logger.debug(f"Giving up after {attempt} retries")
        return None

    default_delay = float(min(limits.max_delay, attempt * limits.step))

    status_code = status_of(error)
    if status_code in RETRYABLE_STATUS_CODES:
        retry_after = _retry_after(error)
        return RetryDecision(delay=retry_after if retry_after is not None else default_delay)

    if is_connection_error(error):
        return RetryDecision(delay=default_delay)

    return None


def limits_for(opts: "RequestOptions") -> tp.Optional[RetryLimits]:
    retry = opts.retry
    if retry is None or retry is True:
        return RetryLimits()
    if retry is False:
        return None
    if isinstance(retry, RetryLimits):
        return retry
    if isinstance(retry, int):
        return RetryLimits(budget=retry) if retry > 0 else None
    return RetryLimits()


def retries_enabled(opts: "RequestOptions") -> bool:
    return callable(opts.retry) or limits_for(opts) is not None


def default_policy(error: BaseException, attempt: int, opts: "RequestOptions") -> tp.Optional[RetryDecision]:
    limits = limits_for(opts)
    if limits is None:
        return None
    return evaluate(error, attempt, limits)


def _coerce(result: tp.Any) -> tp.Optional[RetryDecision]:
    if result is None or result is False:
        return None
    if result is True:
        return RetryDecision()
    if isinstance(result, RetryDecision):
        return result
    if isinstance(result, (int, float)):
        return RetryDecision(delay=max(0.0, float(result)))
    raise TypeError(f"Retry function returned an unsupported value: {result!r}")


def resolve(error: BaseException, attempt: int, opts: "RequestOptions") -> tp.Optional[RetryDecision]:
    """Apply the request's retry setting, which may be a custom policy function."""
    if callable(opts.retry) and not isinstance(opts.retry, (bool, int, RetryLimits)):
        return _coerce(opts.retry(error, attempt, opts, default_policy))
    return default_policy(error, attempt, opts)


async def backoff(decision: RetryDecision, signal: tp.Optional[CancelToken] = None) -> None:
    """
    Wait `decision.delay` seconds.

    Raises CancellationError as soon as `signal` fires; the timer does not
    outlive the call.
    """
    if signal is None:
        await anyio.sleep(decision.delay)
        return

    signal.raise_if_cancelled()
    with anyio.move_on_after(decision.delay):
        await signal.wait()
    signal.raise_if_cancelled()
