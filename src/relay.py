import json
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple, Union

import httpx

from streaming import (
    LineBuffer,
    SSE_DONE_MARKER,
    SSE_KEEPALIVE,
    aiter_with_keepalive,
    extract_sse_data,
    format_sse,
)


# Upstream event model. One event per `data:` frame.

@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class EndEvent:
    text: str = ""


@dataclass(frozen=True)
class AttachmentEvent:
    pass


@dataclass(frozen=True)
class FailureEvent:
    message: str


UpstreamEvent = Union[TokenEvent, EndEvent, AttachmentEvent, FailureEvent]


def content_chunk(text: str) -> dict:
    return {"content": text}


def done_chunk(text: str = "") -> dict:
    return {"content": text, "done": True} if text else {"done": True}


def error_chunk(message: str) -> dict:
    return {"error": str(message), "done": True}


def decode_upstream_event(data: str) -> Optional[UpstreamEvent]:
    """
    Decode one upstream JSON payload.

    Returns None for anything that is not a recognised event object; callers
    skip those frames and keep reading.
    """
    try:
        obj = json.loads(data)
    except (TypeError, ValueError):
        return None
    if not isinstance(obj, dict):
        return None

    kind = obj.get("event")
    if kind == "message":
        return TokenEvent(text=str(obj.get("answer") or ""))
    if kind == "message_end":
        return EndEvent(text=str(obj.get("answer") or ""))
    if kind == "message_file":
        return AttachmentEvent()
    if kind == "error":
        return FailureEvent(message=str(obj.get("message") or "Unknown error"))
    return None


def classify_event(event: UpstreamEvent) -> Tuple[Optional[dict], bool]:
    """Map an upstream event to (normalized chunk or None, is_terminal)."""
    if isinstance(event, TokenEvent):
        return (content_chunk(event.text) if event.text else None), False
    if isinstance(event, EndEvent):
        return done_chunk(event.text), True
    if isinstance(event, FailureEvent):
        return error_chunk(event.message), True
    # Attachment notices carry no text.
    return None, False


def relay_line(line: str) -> Tuple[Optional[str], bool]:
    """Translate one upstream record into (SSE frame or None, is_terminal)."""
    data = extract_sse_data(line)
    if data is None:
        return None, False
    if data.strip() == SSE_DONE_MARKER:
        return None, True

    event = decode_upstream_event(data)
    if event is None:
        return None, False

    chunk, terminal = classify_event(event)
    return (format_sse(chunk) if chunk is not None else None), terminal


async def relay_stream(
    core,  # noqa: ANN001
    chunks: AsyncIterator[str],
    *,
    keepalive_seconds: float = 0.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """
    Re-emit an upstream text stream as normalized SSE frames.

    Stops at the first terminal record without reading further upstream.
    Transport failures are logged and re-raised so the downstream response
    aborts instead of ending cleanly.
    """
    buffer = LineBuffer()
    source = chunks
    if keepalive_seconds and keepalive_seconds > 0:
        source = aiter_with_keepalive(chunks, timeout_seconds=keepalive_seconds)

    frames_sent = 0
    try:
        async for text in source:
            if text is None:
                yield SSE_KEEPALIVE
                continue

            if is_disconnected is not None and await is_disconnected():
                core.debug_print("🔌 Client disconnected, releasing upstream stream")
                return

            for line in buffer.feed(text):
                frame, terminal = relay_line(line)
                if frame is not None:
                    frames_sent += 1
                    yield frame
                if terminal:
                    core.debug_print(f"🏁 Upstream turn finished after {frames_sent} frame(s)")
                    return

        for line in buffer.flush():
            frame, terminal = relay_line(line)
            if frame is not None:
                frames_sent += 1
                yield frame
            if terminal:
                core.debug_print(f"🏁 Upstream turn finished after {frames_sent} frame(s)")
                return

        core.debug_print(f"⚠️  Upstream closed without a terminal event ({frames_sent} frame(s) relayed)")
    except httpx.TransportError as e:
        core.debug_print(f"❌ Upstream transport error mid-stream: {type(e).__name__}: {e}")
        raise
    finally:
        if source is not chunks:
            await source.aclose()
