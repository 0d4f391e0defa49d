import asyncio
import json
from typing import Any, AsyncIterator, List, Optional

# Shared constants and helpers for SSE framing on both sides of the relay

SSE_DATA_PREFIX = "data:"
SSE_DONE_MARKER = "[DONE]"
SSE_KEEPALIVE = ": keep-alive\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def extract_sse_data(line: str) -> Optional[str]:
    """
    Return the payload of a `data:` record, or None for any other record.

    One optional space after the colon is stripped; the rest is left as-is so
    JSON payloads and the literal `[DONE]` marker survive untouched.
    """
    if not isinstance(line, str) or not line.startswith(SSE_DATA_PREFIX):
        return None
    data = line[len(SSE_DATA_PREFIX):]
    if data.startswith(" "):
        data = data[1:]
    return data


class LineBuffer:
    """Accumulates text across partial reads and hands out complete lines only."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> List[str]:
        if not text:
            return []
        self._buffer += text
        parts = self._buffer.split("\n")
        self._buffer = parts.pop()
        return [part[:-1] if part.endswith("\r") else part for part in parts]

    def flush(self) -> List[str]:
        remainder, self._buffer = self._buffer, ""
        if remainder.endswith("\r"):
            remainder = remainder[:-1]
        return [remainder] if remainder else []

    @property
    def pending(self) -> str:
        return self._buffer


async def iter_lines(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    buffer = LineBuffer()
    async for chunk in chunks:
        for line in buffer.feed(chunk):
            yield line
    for line in buffer.flush():
        yield line


async def aiter_with_keepalive(it, *, timeout_seconds: float = 1.0) -> AsyncIterator[Optional[Any]]:  # noqa: ANN001
    """
    Yield items from an async iterator, yielding `None` periodically while waiting.

    This avoids asyncio.wait_for() because cancelling __anext__ can break some iterators.
    Callers can translate `None` into SSE keep-alives.
    """
    timeout = float(max(0.05, timeout_seconds))
    pending: Optional[asyncio.Task] = None
    try:
        while True:
            # The next read starts only once the consumer asks for another item.
            if pending is None:
                pending = asyncio.ensure_future(it.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=timeout)
            if pending not in done:
                yield None
                continue
            try:
                item = pending.result()
            except StopAsyncIteration:
                break
            pending = None
            yield item
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
