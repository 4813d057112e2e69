"""FastAPI application routing chat requests to per-conversation actors."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from . import history as hist
from .actor import ActorRegistry, ConversationActor
from .config import load_config
from .errors import InvalidRequestError, ProviderError
from .provider import Provider, create_from_config, generation_from_config
from .store import Store, create_from_config as create_store

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION = "default"


# -----------------------------
# Pydantic request/response
# -----------------------------
class ReplaceEntry(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: Optional[str] = None
    replaceHistory: Optional[List[ReplaceEntry]] = Field(
        default=None, description="Full transcript substituted before this turn."
    )


class ChatResponse(BaseModel):
    response: str
    conversationId: str


class ClearRequest(BaseModel):
    conversationId: Optional[str] = None


class HistoryMessage(BaseModel):
    role: str
    content: str
    timestamp: int


class HistoryResponse(BaseModel):
    history: List[HistoryMessage]


class ClearResponse(BaseModel):
    success: bool


# -----------------------------
# Utilities
# -----------------------------
def _conversation(value: Optional[str]) -> str:
    return value or DEFAULT_CONVERSATION


async def _dispatch(registry: ActorRegistry, conversation_id: str, op: Callable[..., Any], *args: Any) -> Any:
    """Run a blocking actor operation without holding a worker thread while queued.

    Requests for the same id wait on the actor's asyncio lock, so at most one
    threadpool worker per conversation is busy at a time.
    """
    actor = registry.get(conversation_id)
    async with actor.queue:
        return await run_in_threadpool(op, actor, *args)


def _make_registry(cfg: Dict[str, Any], provider: Provider, store: Store) -> ActorRegistry:
    conv_cfg = cfg.get("conversation", {})
    return ActorRegistry(
        store,
        provider,
        generation=generation_from_config(cfg),
        system_prompt=str(conv_cfg.get("system_prompt") or hist.DEFAULT_SYSTEM_PROMPT).strip(),
        window_size=int(conv_cfg.get("window_size", hist.DEFAULT_WINDOW)),
    )


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    provider: Optional[Provider] = None,
    store: Optional[Store] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    server_cfg = cfg.get("server", {})

    # Services
    owns_provider = provider is None
    provider = provider or create_from_config(cfg)
    store = store or create_store(cfg)
    registry = _make_registry(cfg, provider, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_provider and hasattr(provider, "close"):
            provider.close()

    app = FastAPI(title="Chat Proxy", version="0.1.0", lifespan=lifespan)
    app.state.registry = registry
    app.state.provider = provider
    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_cfg.get("cors_origins") or ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(ProviderError)
    async def provider_error(request: Request, exc: ProviderError) -> JSONResponse:
        return JSONResponse(
            status_code=503,
            content={"response": exc.user_message, "error": exc.detail, "kind": exc.kind.value},
        )

    @app.exception_handler(InvalidRequestError)
    async def invalid_request(request: Request, exc: InvalidRequestError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "provider": type(provider).__name__,
            "model": getattr(provider, "model", None),
            "store": type(store).__name__,
        }

    @app.post("/chat", response_model=ChatResponse)
    async def chat(req: ChatRequest, conversation: Optional[str] = Query(default=None)):
        if not (req.message or "").strip():
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        conversation_id = _conversation(conversation)
        replace = None
        if req.replaceHistory is not None:
            replace = [entry.model_dump() for entry in req.replaceHistory]
            logger.info("replaceHistory provided with %d messages", len(replace))

        start = time.perf_counter()
        result = await _dispatch(registry, conversation_id, ConversationActor.chat, req.message, replace)
        logger.info("[%s] chat took %.0fms", conversation_id, (time.perf_counter() - start) * 1000)
        return result

    @app.get("/history", response_model=HistoryResponse)
    async def history(conversation: Optional[str] = Query(default=None)):
        return await _dispatch(registry, _conversation(conversation), ConversationActor.get_history)

    @app.post("/clear", response_model=ClearResponse)
    async def clear(req: Optional[ClearRequest] = None):
        conversation_id = _conversation(req.conversationId if req else None)
        return await _dispatch(registry, conversation_id, ConversationActor.clear)

    # Static UI last so API routes win.
    static_dir = server_cfg.get("static_dir")
    if static_dir and Path(static_dir).is_dir():
        app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
    elif static_dir:
        logger.warning("Static dir not found: %s", static_dir)

    return app
