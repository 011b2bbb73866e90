from __future__ import annotations

import abc
import numbers
import typing as tp

from carryon._core._headers import HeaderValue
from carryon._core.models import CacheEntry, CacheKey, CacheValue
from carryon._exceptions import StoreError


class BaseCacheStore(abc.ABC):
    @abc.abstractmethod
    def get(self, key: CacheKey) -> tp.Optional[CacheEntry]:
        raise NotImplementedError()

    @abc.abstractmethod
    def set(self, key: CacheKey, value: CacheValue) -> None:
        raise NotImplementedError()

    @abc.abstractmethod
    def delete(self, key: CacheKey) -> None:
        raise NotImplementedError()

    @property
    @abc.abstractmethod
    def size(self) -> int:
        raise NotImplementedError()

    def prune(self) -> int:
        """
        Remove expired entries.

        Returns:
            The number of removed entries.
        """
        return 0

    def close(self) -> None:
        pass


def _type_name(value: tp.Any) -> str:
    return type(value).__name__


def _is_number(value: tp.Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def assert_cache_key(key: tp.Any) -> None:
    if not isinstance(key, CacheKey):
        raise StoreError(f"expected key to be CacheKey, got {_type_name(key)}")

    for name in ("origin", "method", "path"):
        if not isinstance(getattr(key, name), str):
            raise StoreError(f"expected key.{name} to be str, got {_type_name(getattr(key, name))}")

    if key.headers is not None and not isinstance(key.headers, tp.Mapping):
        raise StoreError(f"expected key.headers to be a mapping, got {_type_name(key.headers)}")


def assert_cache_value(value: tp.Any) -> None:
    if not isinstance(value, CacheValue):
        raise StoreError(f"expected value to be CacheValue, got {_type_name(value)}")

    if not isinstance(value.status_code, int) or isinstance(value.status_code, bool):
        raise StoreError(f"expected value.status_code to be int, got {_type_name(value.status_code)}")

    for name in ("cached_at", "stale_at", "delete_at"):
        if not _is_number(getattr(value, name)):
            raise StoreError(f"expected value.{name} to be a number, got {_type_name(getattr(value, name))}")

    if not isinstance(value.status_message, str):
        raise StoreError(f"expected value.status_message to be str, got {_type_name(value.status_message)}")

    for name in ("headers", "vary", "cache_control_directives"):
        field_value = getattr(value, name)
        if field_value is not None and not isinstance(field_value, tp.Mapping):
            raise StoreError(f"expected value.{name} to be a mapping, got {_type_name(field_value)}")

    if value.etag is not None and not isinstance(value.etag, str):
        raise StoreError(f"expected value.etag to be str, got {_type_name(value.etag)}")

    if value.body is not None and not isinstance(value.body, (bytes, bytearray)):
        raise StoreError(f"expected value.body to be bytes, got {_type_name(value.body)}")

    for name in ("start", "end"):
        if not isinstance(getattr(value, name), int) or isinstance(getattr(value, name), bool):
            raise StoreError(f"expected value.{name} to be int, got {_type_name(getattr(value, name))}")

    if value.end < value.start:
        raise StoreError(f"expected value.end ({value.end}) not to precede value.start ({value.start})")

    if value.body is not None and len(value.body) != value.end - value.start:
        raise StoreError(
            f"expected value.body to be {value.end - value.start} bytes long, got {len(value.body)} bytes"
        )


def header_value_equals(lhs: tp.Optional[HeaderValue], rhs: tp.Optional[HeaderValue]) -> bool:
    if lhs is None or rhs is None:
        return lhs is None and rhs is None

    if isinstance(lhs, (list, tuple)) and isinstance(rhs, (list, tuple)):
        return list(lhs) == list(rhs)

    return lhs == rhs


def vary_matches(vary: tp.Mapping[str, HeaderValue], headers: tp.Mapping[str, HeaderValue]) -> bool:
    """
    Check every stored vary constraint against the incoming request headers.

    `headers` must have lower-cased names.
    """
    for name, expected in vary.items():
        if not header_value_equals(headers.get(name.lower()), expected):
            return False
    return True
