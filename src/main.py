import json
import os
import sys
from datetime import datetime, timezone
from http import HTTPStatus

import uvicorn
from fastapi import FastAPI

from api_server import build_router

# ============================================================
# CONFIGURATION
# ============================================================
# Set to True for detailed logging, False for minimal logging
DEBUG = True

# Port to run the server on
PORT = 8000

CONFIG_FILE = "config.json"

DEFAULT_UPSTREAM_URL = "https://api.dify.ai/v1/chat-messages"
DEFAULT_USER = "user-123"

# Environment variable that overrides `api_key` from config.json
API_KEY_ENV = "UPSTREAM_API_KEY"


def get_status_emoji(status_code: int) -> str:
    """Get emoji for status code"""
    if 200 <= status_code < 300:
        return "✅"
    elif 300 <= status_code < 400:
        return "↪️"
    elif 400 <= status_code < 500:
        if status_code == 401:
            return "🔒"
        elif status_code == 403:
            return "🚫"
        elif status_code == 404:
            return "❓"
        elif status_code == 429:
            return "⏱️"
        return "⚠️"
    elif 500 <= status_code < 600:
        return "❌"
    return "ℹ️"


def describe_status(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return f"Unknown Status {status_code}"


def log_http_status(status_code: int, context: str = ""):
    """Log HTTP status with readable message"""
    emoji = get_status_emoji(status_code)
    message = describe_status(status_code)
    if context:
        debug_print(f"{emoji} HTTP {status_code}: {message} ({context})")
    else:
        debug_print(f"{emoji} HTTP {status_code}: {message}")


def debug_print(*args, **kwargs):
    """Print debug messages only if DEBUG is True"""
    if DEBUG:
        try:
            print(*args, **kwargs)
        except UnicodeEncodeError:
            # Some Windows consoles (e.g. GBK codepages) can't print emoji. Avoid
            # crashing the server just because logging contains unicode.
            encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
            end = kwargs.get("end", "\n")
            sep = kwargs.get("sep", " ")
            message = sep.join(str(a) for a in args) + end
            try:
                sys.stdout.buffer.write(message.encode(encoding, errors="replace"))
            except Exception:
                safe = message.encode("ascii", errors="backslashreplace").decode("ascii")
                print(safe, end="")


def redact_secret(value: str, keep: int = 6) -> str:
    value = str(value or "")
    if not value:
        return "none"
    return value[:keep] + "..."


def _clamp_number(value, default: float, low: float, high: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = default
    return max(low, min(number, high))


def get_config():
    try:
        with open(CONFIG_FILE, "r", encoding="utf-8") as f:
            config = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError) as e:
        debug_print(f"⚠️  Config file error: {e}, using defaults")
        config = {}
    except Exception as e:
        debug_print(f"⚠️  Unexpected error reading config: {e}, using defaults")
        config = {}

    if not isinstance(config, dict):
        debug_print("⚠️  Config file is not a JSON object, using defaults")
        config = {}

    # Ensure default keys exist
    config.setdefault("upstream_url", DEFAULT_UPSTREAM_URL)
    config.setdefault("api_key", "")
    config.setdefault("default_user", DEFAULT_USER)
    config.setdefault("request_timeout_seconds", 120)
    config.setdefault("stream_keepalive_seconds", 15)

    upstream_url = config.get("upstream_url")
    if not isinstance(upstream_url, str) or not upstream_url.strip():
        upstream_url = DEFAULT_UPSTREAM_URL
    config["upstream_url"] = upstream_url.strip()

    default_user = config.get("default_user")
    if not isinstance(default_user, str) or not default_user.strip():
        default_user = DEFAULT_USER
    config["default_user"] = default_user.strip()

    env_key = os.environ.get(API_KEY_ENV, "").strip()
    api_key = env_key or config.get("api_key") or ""
    config["api_key"] = api_key.strip() if isinstance(api_key, str) else ""

    config["request_timeout_seconds"] = _clamp_number(config.get("request_timeout_seconds"), 120.0, 5.0, 600.0)
    config["stream_keepalive_seconds"] = _clamp_number(config.get("stream_keepalive_seconds"), 15.0, 0.0, 300.0)

    return config


app = FastAPI()
app.include_router(build_router(sys.modules[__name__]))


@app.get("/api/health")
async def health_check():
    """Health check endpoint for monitoring"""
    try:
        config = get_config()
        has_api_key = bool(config.get("api_key"))
        return {
            "status": "healthy" if has_api_key else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "api_key_configured": has_api_key,
                "upstream_url": config.get("upstream_url"),
            },
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error": str(e),
        }


if __name__ == "__main__":
    print("=" * 60)
    print("🚀 Chat Relay Bridge Starting...")
    print("=" * 60)
    print(f"📚 Chat endpoint: http://localhost:{PORT}/api/chat")
    print(f"🩺 Health: http://localhost:{PORT}/api/health")
    print("=" * 60)
    uvicorn.run(app, host="0.0.0.0", port=PORT)
