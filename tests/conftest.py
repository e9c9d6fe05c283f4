"""Shared fixtures: a scripted bot transport and a controller wired to it."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from bingchat.providers.base import BotTransport, SendRequest, UploadResult
from bingchat.session.controller import SessionController
from bingchat.session.models import SessionKey
from bingchat.session.speech import SpeechRelay
from bingchat.session.store import ResetSignal, SessionRegistry
from bingchat.web.protocol import BotEvent
from bingchat.web.settings import ChatSettings


class ScriptedBot(BotTransport):
    """Replays a fixed event script for every send.

    If `gate` is set, each send waits on it before emitting, which lets a test
    act while the exchange is in flight.
    """

    def __init__(self, script: list[BotEvent] | None = None):
        self.script: list[BotEvent] = list(script or [])
        self.gate: asyncio.Event | None = None
        self.raise_after: Exception | None = None
        self.requests: list[SendRequest] = []
        self.upload_results: dict[str, UploadResult | None] = {}
        self.upload_gates: dict[str, asyncio.Event] = {}
        self.upload_calls: list[tuple[str, str]] = []
        self.reset_calls = 0

    async def send_message(self, request: SendRequest) -> None:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        for event in self.script:
            if request.signal.aborted:
                return
            request.on_event(event)
        if self.raise_after is not None:
            raise self.raise_after

    async def upload_image(self, url: str, style: str) -> UploadResult | None:
        self.upload_calls.append((url, style))
        gate = self.upload_gates.get(url)
        if gate is not None:
            await gate.wait()
        return self.upload_results.get(url)

    def reset_conversation(self) -> None:
        self.reset_calls += 1


class RecordingHistory:
    def __init__(self) -> None:
        self.snapshots: list[dict[str, Any]] = []

    def save(self, snapshot: dict[str, Any]) -> None:
        self.snapshots.append(snapshot)


class RecordingEngine:
    def __init__(self) -> None:
        self.spoken: list[str] = []

    async def synthesize(self, text: str) -> None:
        self.spoken.append(text)


@pytest.fixture
def settings(tmp_path) -> ChatSettings:
    return ChatSettings(
        data_dir=str(tmp_path),
        public_base_url="http://testserver",
        conversation_style="balanced",
        enable_tts=False,
        extended_persona=False,
        image_only=False,
    )


@pytest.fixture
def bot() -> ScriptedBot:
    return ScriptedBot()


@pytest.fixture
def history() -> RecordingHistory:
    return RecordingHistory()


@pytest.fixture
def engine() -> RecordingEngine:
    return RecordingEngine()


@pytest.fixture
def reset_signal() -> ResetSignal:
    return ResetSignal()


@pytest.fixture
def controller(settings, bot, history, engine, reset_signal) -> SessionController:
    registry = SessionRegistry(lambda _bot_id: bot)
    return SessionController(
        store=registry.get(SessionKey(bot_id="bing")),
        settings=settings,
        history=history,
        speech=SpeechRelay(engine),
        reset_signal=reset_signal,
    )
