"""Speech relay: feeds growing partial answers to a speech engine."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Protocol

from loguru import logger


class SpeechEngine(Protocol):
    async def synthesize(self, text: str) -> None: ...


class LoggingSpeechEngine:
    """Default engine; records what would be spoken."""

    async def synthesize(self, text: str) -> None:
        logger.debug("tts: {!r}", text)


class SpeechRelay:
    """Stateful forwarder in front of a SpeechEngine.

    `speak` takes the cumulative answer text and queues only the part past the
    cursor, so it can be called on every partial update. Segments are spoken in
    order by a single worker task.
    """

    def __init__(self, engine: SpeechEngine | None = None):
        self._engine: SpeechEngine = engine or LoggingSpeechEngine()
        self._cursor = 0
        self._pending: deque[str] = deque()
        self._worker: asyncio.Task[None] | None = None
        self._speaking = False
        self._listeners: list[Callable[[], None]] = []

    @property
    def is_speaking(self) -> bool:
        return self._speaking or bool(self._pending)

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Call `listener` whenever `is_speaking` flips."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _set_speaking(self, speaking: bool) -> None:
        if speaking == self._speaking:
            return
        self._speaking = speaking
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("speech listener failed")

    def reset(self) -> None:
        self._cursor = 0

    def speak(self, full_text: str) -> None:
        if len(full_text) <= self._cursor:
            return
        suffix = full_text[self._cursor :]
        self._cursor = len(full_text)
        if not suffix.strip():
            return
        self._pending.append(suffix)
        self._ensure_worker()

    def abort(self) -> None:
        self._pending.clear()
        self._cursor = 0
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._worker = None
        self._set_speaking(False)

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; segments stay queued until the next speak() inside one.
            return
        self._worker = loop.create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._pending:
                segment = self._pending.popleft()
                self._set_speaking(True)
                try:
                    await self._engine.synthesize(segment)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("speech synthesis failed")
        finally:
            self._set_speaking(False)
