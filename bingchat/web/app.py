"""FastAPI web application for bingchat.

Key properties:
- Sessions are addressed by (bot_id, page) and created on first access
- Sends run as background tasks; the UI polls the view or follows the SSE feed
- SQLite persistence: history snapshots on completed answers + uploaded image blobs
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Literal

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field

from bingchat.providers.base import BotTransport, SendOptions
from bingchat.providers.litellm_provider import LiteLLMBot
from bingchat.session.controller import SessionController
from bingchat.session.models import Attachment, SessionKey
from bingchat.session.speech import SpeechRelay
from bingchat.session.store import ResetSignal, SessionRegistry
from bingchat.web.database import Database
from bingchat.web.events import EventHub, stream_views
from bingchat.web.settings import ChatSettings


APP_VERSION = "0.1.0"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SendOptionsRequest(BaseModel):
    conversation_style: Literal["creative", "balanced", "precise"] | None = None
    extended_persona: bool | None = None
    image_only: bool | None = None


class MessageCreateRequest(BaseModel):
    text: str = ""
    options: SendOptionsRequest | None = None


class UploadRequest(BaseModel):
    url: str = Field(min_length=1)


class AttachmentPutRequest(BaseModel):
    url: str = Field(min_length=1)
    status: Literal["loading", "loaded", "error"]


class InputPutRequest(BaseModel):
    text: str = ""


class HashPutRequest(BaseModel):
    hash: str = ""


class VoicePutRequest(BaseModel):
    enabled: bool


def create_app(
    settings: ChatSettings | None = None,
    bot_factory: Callable[[str], BotTransport] | None = None,
) -> FastAPI:
    settings = settings or ChatSettings()

    settings.resolved_data_dir().mkdir(parents=True, exist_ok=True)
    db = Database(settings.resolved_db_path())
    hub = EventHub()
    reset_signal = ResetSignal()

    def _default_bot(_bot_id: str) -> BotTransport:
        return LiteLLMBot(
            api_key=settings.api_key,
            api_base=settings.api_base,
            default_model=settings.model,
            blobs=db,
        )

    registry = SessionRegistry(bot_factory or _default_bot)
    controllers: dict[SessionKey, SessionController] = {}
    running_tasks: dict[SessionKey, asyncio.Task[None]] = {}

    def _channel(key: SessionKey) -> str:
        return f"{key.bot_id}/{key.page}"

    def _controller(bot_id: str, page: str) -> SessionController:
        key = SessionKey(bot_id=bot_id, page=page)
        ctrl = controllers.get(key)
        if ctrl is None:
            ctrl = SessionController(
                store=registry.get(key),
                settings=settings,
                history=db,
                speech=SpeechRelay(),
                reset_signal=reset_signal,
            )
            ctrl.subscribe(lambda: hub.publish_nowait(_channel(key), ctrl.view().to_dict()))
            controllers[key] = ctrl
        ctrl.check_reset_signal()
        return ctrl

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        for key, task in list(running_tasks.items()):
            if not task.done():
                logger.info("cancelling send for {}", key)
                task.cancel()

    app = FastAPI(title="bingchat web api", version=APP_VERSION, lifespan=lifespan)
    app.state.db = db
    app.state.registry = registry
    app.state.reset_signal = reset_signal
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    async def healthz() -> dict[str, Any]:
        return {
            "ok": True,
            "time": _now_iso(),
            "version": APP_VERSION,
            "sessions": len(controllers),
        }

    # ── Session view ─────────────────────────────────────────────

    @app.get("/api/sessions/{bot_id}/{page}")
    async def get_session(bot_id: str, page: str) -> dict[str, Any]:
        return _controller(bot_id, page).view().to_dict()

    # ── Send / stop / reset ──────────────────────────────────────

    @app.post("/api/sessions/{bot_id}/{page}/messages")
    async def send_message(bot_id: str, page: str, payload: MessageCreateRequest) -> dict[str, Any]:
        ctrl = _controller(bot_id, page)
        key = SessionKey(bot_id=bot_id, page=page)
        options = SendOptions(**payload.options.model_dump()) if payload.options else None

        async def send_task() -> None:
            try:
                await ctrl.send_message(payload.text, options)
            finally:
                if running_tasks.get(key) is task:
                    running_tasks.pop(key, None)

        task = asyncio.create_task(send_task())
        running_tasks[key] = task
        # Let the task append the message pair before answering.
        await asyncio.sleep(0)
        return {
            "accepted": True,
            "generating_message_id": ctrl.state.generating_message_id,
            "view": ctrl.view().to_dict(),
        }

    @app.post("/api/sessions/{bot_id}/{page}/stop")
    async def stop_generating(bot_id: str, page: str) -> dict[str, Any]:
        ctrl = _controller(bot_id, page)
        ctrl.stop_generating()
        return ctrl.view().to_dict()

    @app.post("/api/sessions/{bot_id}/{page}/reset")
    async def reset_conversation(bot_id: str, page: str) -> dict[str, Any]:
        ctrl = _controller(bot_id, page)
        ctrl.reset_conversation()
        return ctrl.view().to_dict()

    @app.put("/api/sessions/{bot_id}/{page}/hash")
    async def put_hash(bot_id: str, page: str, payload: HashPutRequest) -> dict[str, Any]:
        reset_signal.set(payload.hash)
        ctrl = _controller(bot_id, page)
        return {"hash": reset_signal.value, "view": ctrl.view().to_dict()}

    # ── Input / attachment ───────────────────────────────────────

    @app.put("/api/sessions/{bot_id}/{page}/input")
    async def put_input(bot_id: str, page: str, payload: InputPutRequest) -> dict[str, Any]:
        ctrl = _controller(bot_id, page)
        ctrl.set_input(payload.text)
        return ctrl.view().to_dict()

    @app.put("/api/sessions/{bot_id}/{page}/voice")
    async def put_voice(bot_id: str, page: str, payload: VoicePutRequest) -> dict[str, Any]:
        ctrl = _controller(bot_id, page)
        ctrl.set_voice(payload.enabled)
        return ctrl.view().to_dict()

    @app.post("/api/sessions/{bot_id}/{page}/attachment")
    async def upload_attachment(bot_id: str, page: str, payload: UploadRequest) -> dict[str, Any]:
        ctrl = _controller(bot_id, page)
        attachment = await ctrl.upload_image(payload.url)
        return attachment.to_dict()

    @app.put("/api/sessions/{bot_id}/{page}/attachment")
    async def put_attachment(bot_id: str, page: str, payload: AttachmentPutRequest) -> dict[str, Any]:
        ctrl = _controller(bot_id, page)
        ctrl.set_attachment(Attachment(url=payload.url, status=payload.status))
        return ctrl.view().to_dict()

    @app.delete("/api/sessions/{bot_id}/{page}/attachment")
    async def delete_attachment(bot_id: str, page: str) -> dict[str, Any]:
        ctrl = _controller(bot_id, page)
        ctrl.set_attachment(None)
        return ctrl.view().to_dict()

    # ── Blobs / history ──────────────────────────────────────────

    @app.get("/api/blob.jpg")
    async def get_blob(bcid: str) -> Response:
        found = db.get_blob(bcid)
        if found is None:
            raise HTTPException(status_code=404, detail="blob not found")
        data, content_type = found
        return Response(content=data, media_type=content_type)

    @app.get("/api/history")
    async def list_history(limit: int = 50) -> list[dict[str, Any]]:
        return db.list_history(limit=limit)

    # ── SSE view feed ────────────────────────────────────────────

    @app.get("/api/sessions/{bot_id}/{page}/events")
    async def stream_session(bot_id: str, page: str, request: Request):
        ctrl = _controller(bot_id, page)
        channel = _channel(SessionKey(bot_id=bot_id, page=page))

        return StreamingResponse(
            stream_views(
                hub,
                channel,
                lambda: ctrl.view().to_dict(),
                is_disconnected=request.is_disconnected,
                wait_timeout_s=settings.sse_wait_timeout_s,
                heartbeat_s=settings.sse_heartbeat_s,
            ),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache, no-transform",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app
