import json
from contextlib import AsyncExitStack
from typing import Optional, Tuple

import httpx
from starlette.responses import JSONResponse, StreamingResponse

from relay import relay_stream
from streaming import SSE_HEADERS


def error_response(error: str, status_code: int, details: Optional[str] = None, **extra) -> JSONResponse:
    body = {"error": error}
    if details:
        body["details"] = details
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def parse_chat_request(body: object, default_user: str) -> Tuple[str, str]:
    """
    Pull the upstream query and user id out of an inbound chat request.

    Only the most recent turn is forwarded; it must come from the user.
    Raises ValueError with a client-facing message for any malformed shape.
    """
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")

    messages = body.get("messages")
    if not messages or not isinstance(messages, list):
        raise ValueError("Messages are required")

    last_message = messages[-1]
    if not isinstance(last_message, dict):
        raise ValueError("Each message must be an object with role and content")
    if last_message.get("role") != "user":
        raise ValueError("Last message must be from user")

    content = last_message.get("content")
    query = content if isinstance(content, str) else ("" if content is None else str(content))

    user = body.get("user")
    if not isinstance(user, str) or not user.strip():
        user = default_user
    return query, user


def describe_upstream_error(status_code: int, text: str) -> str:
    try:
        error_json = json.loads(text) if text else None
    except ValueError:
        error_json = None
    if isinstance(error_json, dict):
        message = error_json.get("message") or error_json.get("error")
        if message:
            return message if isinstance(message, str) else json.dumps(message)
    text = (text or "").strip()
    if text:
        return text[:800]
    return f"HTTP {status_code}"


async def api_chat(core, request):  # noqa: ANN001
    debug_print = core.debug_print
    debug_print("\n" + "=" * 80)
    debug_print("🔵 NEW CHAT REQUEST RECEIVED")
    debug_print("=" * 80)

    try:
        try:
            body = await request.json()
        except ValueError as e:
            debug_print(f"❌ Invalid JSON in request body: {e}")
            return error_response("Invalid JSON in request body", 400, str(e))

        config = core.get_config()

        try:
            query, user = parse_chat_request(body, default_user=config["default_user"])
        except ValueError as e:
            debug_print(f"❌ Rejected chat request: {e}")
            return error_response(str(e), 400)

        api_key = config.get("api_key")
        if not api_key:
            debug_print(f"❌ Upstream API key missing (set '{core.API_KEY_ENV}' or 'api_key' in {core.CONFIG_FILE})")
            return error_response("Upstream API key is not configured", 500)

        upstream_url = config["upstream_url"]
        payload = {
            "inputs": {},
            "query": query,
            "response_mode": "streaming",
            "user": user,
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        debug_print(f"📡 Sending POST {upstream_url}")
        debug_print(f"   user={user} query_chars={len(query)} api_key={core.redact_secret(api_key)}")

        stack = AsyncExitStack()
        try:
            client = await stack.enter_async_context(
                httpx.AsyncClient(timeout=config["request_timeout_seconds"])
            )
            response = await stack.enter_async_context(
                client.stream("POST", upstream_url, json=payload, headers=headers)
            )
        except httpx.HTTPError as e:
            await stack.aclose()
            debug_print(f"❌ Failed to reach upstream API: {type(e).__name__}: {e}")
            return error_response("Failed to reach upstream API", 502, str(e) or type(e).__name__)
        except Exception:
            await stack.aclose()
            raise

        core.log_http_status(response.status_code, "Upstream API")

        if not 200 <= response.status_code < 300:
            try:
                raw = await response.aread()
                error_text = raw.decode("utf-8", errors="replace")
            except httpx.HTTPError as e:
                error_text = f"Failed to read error response: {e}"
            finally:
                await stack.aclose()

            details = describe_upstream_error(response.status_code, error_text)
            debug_print(f"❌ Upstream rejected request: {details[:200]}")
            return error_response(
                "Failed to fetch from upstream API",
                response.status_code,
                details,
                status=response.status_code,
            )

        keepalive_seconds = config["stream_keepalive_seconds"]

        async def generate_stream():
            try:
                async for frame in relay_stream(
                    core,
                    response.aiter_text(),
                    keepalive_seconds=keepalive_seconds,
                    is_disconnected=request.is_disconnected,
                ):
                    yield frame
            finally:
                await stack.aclose()

        return StreamingResponse(generate_stream(), media_type="text/event-stream", headers=SSE_HEADERS)

    except Exception as e:
        debug_print(f"\n❌ TOP-LEVEL EXCEPTION")
        debug_print(f"📛 Error type: {type(e).__name__}")
        debug_print(f"📛 Error message: {str(e)}")
        debug_print("=" * 80 + "\n")
        return error_response("Internal server error", 500, str(e) or type(e).__name__)
