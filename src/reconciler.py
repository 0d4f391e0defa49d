"""
Client-side reconstruction of one assistant turn from the relay's SSE stream.

The upstream does not say whether a content update is the full text so far or
only the newly generated part, so each update is classified on arrival by
`merge_content`. `Reconciler` owns the per-turn state and guarantees a single
assistant `Message` no matter how the turn ends: a `done` chunk with content,
a `done` chunk without it, the literal `[DONE]` marker, or a plain stream end.
"""

import asyncio
import enum
import json
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Union

import httpx

from streaming import SSE_DONE_MARKER, extract_sse_data, iter_lines


@dataclass
class Message:
    role: str
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content.strip())

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role="assistant", content=content)

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


class ChatClientError(Exception):
    pass


class ChatRequestError(ChatClientError):
    """The relay refused the turn before any streaming started."""

    def __init__(self, status_code: int, error: str, details: Optional[str] = None):
        self.status_code = int(status_code)
        self.error = error
        self.details = details
        super().__init__(error)

    def __str__(self) -> str:
        if self.details:
            return f"{self.error}\n\nDetails: {self.details}"
        return self.error

    @classmethod
    def from_response(cls, status_code: int, text: str) -> "ChatRequestError":
        try:
            error_data = json.loads(text) if text else None
        except ValueError:
            error_data = None

        if isinstance(error_data, dict):
            error = error_data.get("error") or error_data.get("message") or error_data.get("details")
            details = error_data.get("details")
            if details is not None and not isinstance(details, str):
                details = json.dumps(details)
            return cls(status_code, str(error or "Failed to send message"), details or None)

        return cls(status_code, (text or "").strip() or f"HTTP {status_code}")


class UpstreamTurnError(ChatClientError):
    """The upstream signalled a failure in the middle of the turn."""


class TurnState(enum.Enum):
    ACTIVE = "active"
    FINALIZED = "finalized"
    FAILED = "failed"
    CANCELLED = "cancelled"


def merge_content(accumulated: str, content: str) -> str:
    """
    Fold one content update into the running text.

    An update that is at least as long as what we have, or that extends it,
    replaces it outright. A shorter update that does not extend the current
    text cannot be a full replacement, so it is appended as a delta.
    """
    if len(content) >= len(accumulated) or content.startswith(accumulated):
        return content
    return accumulated + content


class Reconciler:
    def __init__(self) -> None:
        self.accumulated_text = ""
        self.state = TurnState.ACTIVE
        self.message: Optional[Message] = None
        self.error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.state is not TurnState.ACTIVE

    def feed_line(self, line: str) -> Optional[Message]:
        data = extract_sse_data(line)
        if data is None:
            return None
        if data.strip() == SSE_DONE_MARKER:
            return self.finish()
        try:
            chunk = json.loads(data)
        except ValueError:
            return None
        return self.feed_chunk(chunk)

    def feed_chunk(self, chunk: object) -> Optional[Message]:
        if self.state is not TurnState.ACTIVE or not isinstance(chunk, dict):
            return None

        if "error" in chunk:
            self.error = str(chunk.get("error") or "Unknown error")
            self.accumulated_text = ""
            self.state = TurnState.FAILED
            raise UpstreamTurnError(self.error)

        content = chunk.get("content")
        if content is not None and not isinstance(content, str):
            content = str(content)

        if chunk.get("done"):
            # Content riding on the terminal chunk wins over the merge so far.
            final_text = content if content else self.accumulated_text
            return self._finalize(final_text)

        if content is not None:
            self.accumulated_text = merge_content(self.accumulated_text, content)
        return None

    def finish(self) -> Optional[Message]:
        if self.state is not TurnState.ACTIVE:
            return None
        return self._finalize(self.accumulated_text)

    def cancel(self) -> None:
        if self.state is TurnState.ACTIVE:
            self.state = TurnState.CANCELLED
            self.accumulated_text = ""

    def _finalize(self, text: str) -> Optional[Message]:
        self.state = TurnState.FINALIZED
        final_text = (text or "").strip()
        if not final_text:
            return None
        self.message = Message.assistant(final_text)
        return self.message


async def stream_chat(
    url: str,
    messages: Iterable[Union[Message, dict]],
    *,
    user: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    on_update: Optional[Callable[[str], None]] = None,
    timeout: float = 120.0,
) -> Optional[Message]:
    """
    Send one turn to the relay and return the reconciled assistant message.

    Returns None when the turn completed without any text. Raises
    `ChatRequestError` for a rejected request, `UpstreamTurnError` for an
    error chunk, and lets httpx transport errors propagate.
    """
    payload = {"messages": [m.to_dict() if isinstance(m, Message) else dict(m) for m in messages]}
    if user:
        payload["user"] = user

    reconciler = Reconciler()

    def _feed(line: str) -> Optional[Message]:
        before = reconciler.accumulated_text
        message = reconciler.feed_line(line)
        if on_update is not None and not reconciler.finished and reconciler.accumulated_text != before:
            on_update(reconciler.accumulated_text)
        return message

    async with AsyncExitStack() as stack:
        if client is None:
            client = await stack.enter_async_context(httpx.AsyncClient(timeout=timeout))
        response = await stack.enter_async_context(client.stream("POST", url, json=payload))

        if not 200 <= response.status_code < 300:
            raw = await response.aread()
            raise ChatRequestError.from_response(response.status_code, raw.decode("utf-8", errors="replace"))

        try:
            async for line in iter_lines(response.aiter_text()):
                message = _feed(line)
                if reconciler.finished:
                    return message
        except (asyncio.CancelledError, httpx.TransportError):
            reconciler.cancel()
            raise

        return reconciler.finish()
