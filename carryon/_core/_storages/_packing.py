from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, cast

import msgpack


def pack(value: Optional[Mapping[str, Any]], /) -> Optional[bytes]:
    """Serialise a header-like mapping column; empty mappings are stored as NULL."""
    if not value:
        return None
    return cast(bytes, msgpack.packb(dict(value), use_bin_type=True))


def unpack(value: Optional[bytes], /) -> Dict[str, Any]:
    if value is None:
        return {}
    unpacked = msgpack.unpackb(value, raw=False)
    if not isinstance(unpacked, dict):
        raise ValueError(f"Expected a packed mapping, got {type(unpacked).__name__}")
    return unpacked
