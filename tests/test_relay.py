import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

import httpx

from tests._stream_test_utils import parse_sse_payloads, upstream_event

import relay
from relay import (
    AttachmentEvent,
    EndEvent,
    FailureEvent,
    TokenEvent,
    classify_event,
    decode_upstream_event,
    relay_line,
    relay_stream,
)


class TestUpstreamEventDecoding(unittest.TestCase):
    def test_decodes_each_event_kind(self):
        self.assertEqual(decode_upstream_event('{"event": "message", "answer": "Hi"}'), TokenEvent("Hi"))
        self.assertEqual(decode_upstream_event('{"event": "message_end", "answer": "Done"}'), EndEvent("Done"))
        self.assertEqual(decode_upstream_event('{"event": "message_end"}'), EndEvent(""))
        self.assertEqual(decode_upstream_event('{"event": "message_file", "id": "f"}'), AttachmentEvent())
        self.assertEqual(decode_upstream_event('{"event": "error", "message": "bad"}'), FailureEvent("bad"))

    def test_error_without_message_gets_default(self):
        self.assertEqual(decode_upstream_event('{"event": "error"}'), FailureEvent("Unknown error"))

    def test_null_answer_is_empty_token(self):
        self.assertEqual(decode_upstream_event('{"event": "message", "answer": null}'), TokenEvent(""))

    def test_undecodable_payloads_return_none(self):
        for data in ("", "{", "null", "42", '"text"', "[]", '{"event": "ping"}', '{"answer": "x"}'):
            with self.subTest(data=data):
                self.assertIsNone(decode_upstream_event(data))


class TestClassification(unittest.TestCase):
    def test_token_with_text(self):
        self.assertEqual(classify_event(TokenEvent("a")), ({"content": "a"}, False))

    def test_empty_token_dropped(self):
        self.assertEqual(classify_event(TokenEvent("")), (None, False))

    def test_end_with_and_without_content(self):
        self.assertEqual(classify_event(EndEvent("x")), ({"content": "x", "done": True}, True))
        self.assertEqual(classify_event(EndEvent()), ({"done": True}, True))

    def test_attachment_dropped(self):
        self.assertEqual(classify_event(AttachmentEvent()), (None, False))

    def test_failure_is_terminal_error_chunk(self):
        self.assertEqual(classify_event(FailureEvent("nope")), ({"error": "nope", "done": True}, True))


class TestRelayLine(unittest.TestCase):
    def test_non_data_records_are_ignored(self):
        for line in ("", "event: message", ": keep-alive", "id: 1", "retry: 10"):
            with self.subTest(line=line):
                self.assertEqual(relay_line(line), (None, False))

    def test_done_marker_is_terminal_without_frame(self):
        self.assertEqual(relay_line("data: [DONE]"), (None, True))
        self.assertEqual(relay_line("data:[DONE]"), (None, True))

    def test_data_prefix_without_space(self):
        frame, terminal = relay_line('data:{"event": "message", "answer": "x"}')
        self.assertFalse(terminal)
        self.assertEqual(parse_sse_payloads(frame), [{"content": "x"}])


async def _aiter(pieces, *, error=None, delay=0.0):
    for piece in pieces:
        if delay:
            await asyncio.sleep(delay)
        yield piece
    if error is not None:
        raise error


class TestRelayStream(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.core = MagicMock()

    async def _collect(self, chunks, **kwargs):
        return [frame async for frame in relay_stream(self.core, chunks, **kwargs)]

    async def test_transport_error_is_reraised_not_chunked(self):
        error = httpx.ReadError("connection reset")
        frames = []
        with self.assertRaises(httpx.ReadError):
            async for frame in relay_stream(
                self.core, _aiter([upstream_event("message", answer="Hi")], error=error)
            ):
                frames.append(frame)

        self.assertEqual(parse_sse_payloads("".join(frames)), [{"content": "Hi"}])
        self.assertFalse(any('"error"' in f for f in frames))
        logged = " ".join(str(c.args[0]) for c in self.core.debug_print.call_args_list)
        self.assertIn("ReadError", logged)

    async def test_disconnected_client_stops_reading(self):
        consumed = []

        async def chunks():
            for i in range(5):
                consumed.append(i)
                yield upstream_event("message", answer="x" * (i + 1))

        is_disconnected = AsyncMock(side_effect=[False, True, True, True, True])
        frames = await self._collect(chunks(), is_disconnected=is_disconnected)

        self.assertEqual(parse_sse_payloads("".join(frames)), [{"content": "x"}])
        self.assertEqual(consumed, [0, 1])

    async def test_keepalive_emitted_while_upstream_is_silent(self):
        chunks = _aiter([upstream_event("message_end", answer="ok")], delay=0.3)
        frames = await self._collect(chunks, keepalive_seconds=0.05)

        self.assertIn(relay.SSE_KEEPALIVE, frames)
        self.assertEqual(frames[-1], relay.format_sse({"content": "ok", "done": True}))

    async def test_keepalive_does_not_read_ahead_of_consumer(self):
        consumed = []

        async def chunks():
            for i, piece in enumerate(
                [upstream_event("message", answer="a"), upstream_event("message_end", answer="ab")]
                + [upstream_event("message", answer="late")] * 3
            ):
                consumed.append(i)
                yield piece

        stream = relay_stream(self.core, chunks(), keepalive_seconds=5)
        first = await stream.__anext__()
        await asyncio.sleep(0.05)
        self.assertEqual(parse_sse_payloads(first), [{"content": "a"}])
        self.assertEqual(consumed, [0])

        rest = [frame async for frame in stream]
        await asyncio.sleep(0.05)
        self.assertEqual(parse_sse_payloads("".join(rest)), [{"content": "ab", "done": True}])
        self.assertEqual(consumed, [0, 1])

    async def test_keepalive_disabled_by_default(self):
        chunks = _aiter([upstream_event("message_end")], delay=0.1)
        frames = await self._collect(chunks)
        self.assertNotIn(relay.SSE_KEEPALIVE, frames)

    async def test_trailing_record_without_newline_is_flushed(self):
        frames = await self._collect(_aiter(['data: {"event": "message", "answer": "tail"}']))
        self.assertEqual(parse_sse_payloads("".join(frames)), [{"content": "tail"}])

    async def test_at_most_one_terminal_chunk(self):
        pieces = [
            upstream_event("error", message="first"),
            upstream_event("message_end", answer="second"),
            "data: [DONE]\n",
        ]
        frames = await self._collect(_aiter(pieces))
        self.assertEqual(parse_sse_payloads("".join(frames)), [{"error": "first", "done": True}])


if __name__ == "__main__":
    unittest.main()
