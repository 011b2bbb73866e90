import os
import re
import sqlite3
from datetime import date
from typing import Any, AsyncIterator, List, Optional

import httpx
import pytest


def format_value(value: Any, col_name: str, col_type: str) -> str:
    """Format a column value for database snapshots."""
    if value is None:
        return "NULL"

    if col_type.upper() == "BLOB" and isinstance(value, bytes):
        hex_str = value.hex()
        if len(hex_str) > 64:
            return f"(bytes) 0x{hex_str[:60]}... ({len(value)} bytes)"
        return f"(bytes) 0x{hex_str} ({len(value)} bytes)"

    # timestamps are shown as dates only
    if col_name.endswith("_at") and isinstance(value, (int, float)):
        return date.fromtimestamp(value).isoformat()

    if col_type.upper() == "TEXT":
        return f"'{value}'"

    return str(value)


def print_sqlite_state(conn: sqlite3.Connection) -> str:
    """Render every table and row of the database, for inline snapshots."""
    cursor = conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
    tables = [row[0] for row in cursor.fetchall()]

    output_lines = ["=" * 80, "DATABASE SNAPSHOT", "=" * 80]

    for table_name in tables:
        cursor.execute(f"PRAGMA table_info({table_name})")
        columns = [(col[1], col[2]) for col in cursor.fetchall()]

        cursor.execute(f"SELECT * FROM {table_name}")
        rows = cursor.fetchall()

        output_lines += ["", f"TABLE: {table_name}", "-" * 80, f"Rows: {len(rows)}", ""]

        if not rows:
            output_lines.append("  (empty)")
            continue

        for idx, row in enumerate(rows, 1):
            output_lines.append(f"  Row {idx}:")
            for (col_name, col_type), value in zip(columns, row):
                output_lines.append(f"    {col_name:15} = {format_value(value, col_name, col_type)}")
            if idx < len(rows):
                output_lines.append("")

    output_lines += ["", "=" * 80]
    return "\n".join(output_lines)


class InterruptedStream(httpx.AsyncByteStream):
    """Response body that drops the connection after `fail_after` bytes."""

    def __init__(self, data: bytes, fail_after: Optional[int] = None, chunk_size: int = 16) -> None:
        self.data = data
        self.fail_after = fail_after
        self.chunk_size = chunk_size

    async def __aiter__(self) -> AsyncIterator[bytes]:
        sent = 0
        for i in range(0, len(self.data), self.chunk_size):
            chunk = self.data[i : i + self.chunk_size]
            if self.fail_after is not None and sent + len(chunk) > self.fail_after:
                head = chunk[: self.fail_after - sent]
                if head:
                    yield head
                raise httpx.ReadError("peer closed connection without sending complete message body")
            sent += len(chunk)
            yield chunk


class RangeServer:
    """
    Serves one representation with range support.

    `cuts` lists, per request, after how many body bytes the connection
    drops (None for a complete response).
    """

    def __init__(
        self,
        data: bytes,
        etag: Optional[str] = '"v1"',
        cuts: Optional[List[Optional[int]]] = None,
        content_length: bool = True,
        content_range: bool = True,
    ) -> None:
        self.data = data
        self.etag = etag
        self.cuts = list(cuts or [])
        self.content_length = content_length
        self.content_range = content_range
        self.requests: List[httpx.Request] = []

    @property
    def ranges(self) -> List[Optional[str]]:
        return [request.headers.get("range") for request in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        cut = self.cuts.pop(0) if self.cuts else None

        headers = {}
        if self.etag is not None:
            headers["etag"] = self.etag

        range_header = request.headers.get("range")
        if range_header is None:
            if self.content_length:
                headers["content-length"] = str(len(self.data))
            return httpx.Response(200, headers=headers, stream=InterruptedStream(self.data, cut))

        match = re.fullmatch(r"bytes=(\d+)-(\d*)", range_header)
        assert match is not None
        start = int(match.group(1))
        end = int(match.group(2)) + 1 if match.group(2) else len(self.data)
        body = self.data[start:end]

        if self.content_range:
            headers["content-range"] = f"bytes {start}-{end - 1}/{len(self.data)}"
        headers["content-length"] = str(len(body))
        return httpx.Response(206, headers=headers, stream=InterruptedStream(body, cut))


@pytest.fixture()
def use_temp_dir(tmpdir):
    cur_dir = os.getcwd()
    os.chdir(tmpdir)
    yield
    os.chdir(cur_dir)
