"""
Usage:
    python client.py                 # interactive REPL
    python client.py "hello"         # single prompt

The relay URL defaults to http://localhost:8000/api/chat and can be changed
with the CHAT_RELAY_URL environment variable.
"""
import asyncio
import os
import sys
from typing import List, Optional

import httpx

from reconciler import ChatClientError, Message, stream_chat

SERVER = os.environ.get("CHAT_RELAY_URL", "http://localhost:8000/api/chat")
USER_ID = os.environ.get("CHAT_RELAY_USER", "user-123")


class ChatSession:
    """In-memory transcript for one terminal session."""

    def __init__(self, url: str = SERVER, user: str = USER_ID, client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = url
        self.user = user
        self.client = client
        self.messages: List[Message] = []

    def _show_progress(self, text: str) -> None:
        print(f"\r… {len(text)} chars", end="", flush=True)

    async def send(self, prompt: str) -> Optional[Message]:
        """
        Send one prompt and record the reply.

        The user message stays in the transcript even when the turn fails, so
        a retry posts consecutive user entries. The relay only forwards the
        last one upstream.
        """
        user_message = Message.user(prompt)
        self.messages.append(user_message)
        try:
            reply = await stream_chat(
                self.url,
                self.messages,
                user=self.user,
                client=self.client,
                on_update=self._show_progress,
            )
        finally:
            print("\r", end="", flush=True)

        if reply is not None:
            self.messages.append(reply)
        return reply


async def run_once(session: ChatSession, prompt: str) -> int:
    try:
        reply = await session.send(prompt)
    except ChatClientError as e:
        print(f"Error: {e}")
        return 1
    except httpx.HTTPError as e:
        print(f"Error: connection to relay failed ({type(e).__name__}: {e})")
        return 1

    print(f"Assistant: {reply.content}" if reply else "Assistant: (no response)")
    return 0


async def repl(session: ChatSession) -> None:
    loop = asyncio.get_running_loop()
    while True:
        prompt = (await loop.run_in_executor(None, input, "You: ")).strip()
        if prompt.lower() in {"exit", "quit"}:
            break
        if not prompt:
            continue
        await run_once(session, prompt)


def main() -> int:
    session = ChatSession()
    if len(sys.argv) > 1:
        return asyncio.run(run_once(session, " ".join(sys.argv[1:])))

    try:
        asyncio.run(repl(session))
    except (KeyboardInterrupt, EOFError):
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
