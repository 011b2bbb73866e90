"""
Header containers and the handful of header grammars the resume and cache
layers need: Cache-Control directives, Vary field lists, Range requests and
Content-Range responses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Tuple,
    Union,
)

HeaderValue = Union[str, List[str]]

# Caps numeric directive values at max int32.
MAX_DIRECTIVE_VALUE = 2147483647


def is_token(c: str) -> bool:
    """
    Check if character is valid in an HTTP token (RFC 9110 Section 5.6.2).

    tchar is any visible US-ASCII character except the separators.

    Examples:
        >>> is_token('a')
        True
        >>> is_token('-')
        True
        >>> is_token(',')
        False
        >>> is_token('=')
        False
    """
    if not c:
        return False
    b = ord(c)
    return 32 < b < 127 and c not in '()<>@,;:\\"/[]?={}'


def http_unquote(raw: str) -> Tuple[int, str]:
    r"""
    Unquote the leading HTTP quoted-string of `raw`.

    Returns a tuple of (characters consumed, unquoted value), or (-1, "")
    when `raw` does not start with a well-formed quoted-string.

    Examples:
        >>> http_unquote('"hello"')
        (7, 'hello')
        >>> http_unquote('"hello\\"world"')
        (14, 'hello"world')
        >>> http_unquote('"test')
        (-1, '')
    """
    if not raw or raw[0] != '"':
        return -1, ""

    buf: List[str] = []
    i = 1
    while i < len(raw):
        c = raw[i]
        if c == '"':
            return i + 1, "".join(buf)
        if c == "\\":
            if i + 1 >= len(raw):
                return -1, ""
            buf.append(raw[i + 1])
            i += 2
            continue
        buf.append(c)
        i += 1
    return -1, ""


class Headers(MutableMapping[str, str]):
    """
    Case-insensitive, multi-valued header mapping.

    Item access joins repeated values with ", "; `get_list` returns them
    as sent. Assignment replaces, `add` appends.
    """

    def __init__(self, headers: Optional[Mapping[str, HeaderValue]] = None) -> None:
        self._headers: Dict[str, List[str]] = {}
        if headers is not None:
            for k, v in headers.items():
                self._headers[k.lower()] = [v] if isinstance(v, str) else list(v)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, str]]) -> "Headers":
        headers = cls()
        for key, value in pairs:
            headers.add(key, value)
        return headers

    def get_list(self, key: str) -> Optional[List[str]]:
        return self._headers.get(key.lower(), None)

    def add(self, key: str, value: str) -> None:
        self._headers.setdefault(key.lower(), []).append(value)

    def copy(self) -> "Headers":
        return Headers(self._headers)

    def to_dict(self) -> Dict[str, HeaderValue]:
        """Single values as strings, repeated values as lists."""
        return {k: (v[0] if len(v) == 1 else v[:]) for k, v in self._headers.items()}

    def __getitem__(self, key: str) -> str:
        return ", ".join(self._headers[key.lower()])

    def __setitem__(self, key: str, value: str) -> None:
        self._headers[key.lower()] = [value]

    def __delitem__(self, key: str) -> None:
        del self._headers[key.lower()]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._headers

    def __iter__(self) -> Iterator[str]:
        return iter(self._headers)

    def __len__(self) -> int:
        return len(self._headers)

    def __repr__(self) -> str:
        return f"Headers({self._headers!r})"

    def __eq__(self, other_headers: Any) -> bool:
        return isinstance(other_headers, Headers) and self._headers == other_headers._headers


class CacheControl:
    """
    Response Cache-Control directives relevant to cache admission.

    no_cache and private can be:
        - False: directive not present
        - True: directive present without field names
        - List[str]: directive present with specific field names
    """

    def __init__(self) -> None:
        self.max_age: Optional[int] = None
        self.s_maxage: Optional[int] = None
        self.no_store: bool = False
        self.no_transform: bool = False
        self.must_revalidate: bool = False
        self.must_understand: bool = False
        self.proxy_revalidate: bool = False
        self.public: bool = False
        self.immutable: bool = False
        self.no_cache: Union[bool, List[str]] = False
        self.private: Union[bool, List[str]] = False
        self.stale_while_revalidate: Optional[int] = None
        self.stale_if_error: Optional[int] = None

        # Every directive as it appeared, for persisting alongside an entry.
        self.directives: Dict[str, Union[bool, int, str, List[str]]] = {}


def parse_int_value(value: str) -> Optional[int]:
    try:
        val = int(value)
    except (ValueError, OverflowError):
        return None
    return min(val, MAX_DIRECTIVE_VALUE) if val >= 0 else None


def parse_field_names(value: str) -> List[str]:
    return [field.strip().lower() for field in value.split(",") if field.strip()]


_INT_DIRECTIVES = {
    "max-age": "max_age",
    "s-maxage": "s_maxage",
    "stale-while-revalidate": "stale_while_revalidate",
    "stale-if-error": "stale_if_error",
}

_FLAG_DIRECTIVES = {
    "no-store": "no_store",
    "no-transform": "no_transform",
    "must-revalidate": "must_revalidate",
    "must-understand": "must_understand",
    "proxy-revalidate": "proxy_revalidate",
    "public": "public",
    "immutable": "immutable",
    "no-cache": "no_cache",
    "private": "private",
}


def _apply_directive(cc: CacheControl, token: str, value: Optional[str]) -> None:
    if value is None:
        if token in _FLAG_DIRECTIVES:
            setattr(cc, _FLAG_DIRECTIVES[token], True)
        cc.directives[token] = True
        return

    if token in _INT_DIRECTIVES:
        parsed = parse_int_value(value)
        setattr(cc, _INT_DIRECTIVES[token], parsed)
        if parsed is not None:
            cc.directives[token] = parsed
    elif token in ("no-cache", "private"):
        fields = parse_field_names(value)
        setattr(cc, _FLAG_DIRECTIVES[token], fields)
        cc.directives[token] = fields
    else:
        cc.directives[token] = value


def parse_cache_control(value: Optional[str]) -> CacheControl:
    """
    Parse a Cache-Control header value.

    Quoted values may contain commas; unknown directives are kept in
    `directives` but otherwise ignored.

    Examples:
        >>> cc = parse_cache_control("public, max-age=3600, must-revalidate")
        >>> cc.public, cc.max_age, cc.must_revalidate
        (True, 3600, True)
        >>> parse_cache_control('no-cache="Set-Cookie, Authorization"').no_cache
        ['set-cookie', 'authorization']
    """
    cc = CacheControl()
    if not value:
        return cc

    i = 0
    length = len(value)
    while i < length:
        while i < length and value[i] in (" ", "\t", ","):
            i += 1
        if i >= length:
            break

        j = i
        while j < length and is_token(value[j]):
            j += 1
        if j == i:
            i += 1
            continue

        token = value[i:j].lower()
        while j < length and value[j] in (" ", "\t"):
            j += 1

        if j < length and value[j] == "=":
            k = j + 1
            while k < length and value[k] in (" ", "\t"):
                k += 1
            if k >= length:
                break

            if value[k] == '"':
                eaten, result = http_unquote(value[k:])
                if eaten == -1:
                    i = k + 1
                    continue
                i = k + eaten
            else:
                z = k
                while z < length and value[z] not in (" ", "\t", ","):
                    z += 1
                result = value[k:z]
                i = z
            _apply_directive(cc, token, result)
        else:
            _apply_directive(cc, token, None)
            i = j

    return cc


class Vary:
    def __init__(self, values: List[str]) -> None:
        self.values = values

    @property
    def is_wildcard(self) -> bool:
        return "*" in self.values

    @classmethod
    def from_value(cls, vary_value: str) -> "Vary":
        return Vary([name.strip().lower() for name in vary_value.split(",") if name.strip()])


@dataclass
class ByteRange:
    """
    A single byte range, `end` exclusive.

    `end` is None for open-ended ranges such as "bytes=500-".
    """

    start: int
    end: Optional[int]

    @classmethod
    def from_header(cls, range_header: Optional[str]) -> Optional["ByteRange"]:
        """
        Parse a single-range `Range` request header.

        Multiple ranges, suffix ranges and other units are not supported and
        yield None.

        Examples:
            >>> ByteRange.from_header("bytes=0-99")
            ByteRange(start=0, end=100)
            >>> ByteRange.from_header("bytes=100-")
            ByteRange(start=100, end=None)
            >>> ByteRange.from_header("bytes=0-1,5-6") is None
            True
        """
        if not range_header:
            return None
        match = re.fullmatch(r"\s*bytes\s*=\s*(\d+)-(\d*)\s*", range_header)
        if match is None:
            return None
        start = int(match.group(1))
        end = int(match.group(2)) + 1 if match.group(2) else None
        return cls(start=start, end=end)

    def to_header(self) -> str:
        return f"bytes={self.start}-{'' if self.end is None else self.end - 1}"


_CONTENT_RANGE_RE = re.compile(r"bytes (\d+)-(\d+)?/(\d+|\*)")


@dataclass
class ContentRange:
    """A parsed `Content-Range` response header; `end` is exclusive."""

    start: int
    end: Optional[int]
    size: Optional[int]

    @classmethod
    def from_header(cls, value: Optional[str]) -> Optional["ContentRange"]:
        """
        Examples:
            >>> ContentRange.from_header("bytes 5-9/10")
            ContentRange(start=5, end=10, size=10)
            >>> ContentRange.from_header("bytes 5-9/*")
            ContentRange(start=5, end=10, size=None)
            >>> ContentRange.from_header("bytes */10") is None
            True
        """
        if not value:
            return None
        match = _CONTENT_RANGE_RE.fullmatch(value.strip())
        if match is None:
            return None
        return cls(
            start=int(match.group(1)),
            end=int(match.group(2)) + 1 if match.group(2) else None,
            size=None if match.group(3) == "*" else int(match.group(3)),
        )

    @property
    def effective_end(self) -> Optional[int]:
        return self.end if self.end is not None else self.size


def is_weak_etag(etag: str) -> bool:
    return etag.startswith("W/")
