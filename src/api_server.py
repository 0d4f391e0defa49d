from fastapi import APIRouter, Request

from chat_relay import api_chat


def build_router(core) -> APIRouter:  # noqa: ANN001
    router = APIRouter()

    # --- Chat relay ---

    @router.post("/api/chat")
    async def chat(request: Request):
        return await api_chat(core, request)

    return router
