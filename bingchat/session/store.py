"""Session state store, registry and the external reset signal."""

from __future__ import annotations

import asyncio
from typing import Callable

from loguru import logger

from bingchat.providers.base import BotTransport
from bingchat.session import ledger
from bingchat.session.models import Session, SessionKey


Transition = Callable[[Session], Session]
Listener = Callable[[Session], None]


class SessionStore:
    """Holds the current Session snapshot.

    `apply` never awaits, so on a single event loop each transition reads the
    latest snapshot and installs its result before any other coroutine runs.
    """

    def __init__(self, key: SessionKey, initial: Session):
        self.key = key
        self._state = initial
        self._listeners: list[Listener] = []

    @property
    def state(self) -> Session:
        return self._state

    def apply(self, transition: Transition) -> Session:
        new_state = transition(self._state)
        if new_state is self._state:
            return new_state
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                logger.exception("session listener failed for {}", self.key)
        return new_state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe


class SessionRegistry:
    """Create-on-first-use sessions keyed by (bot_id, page)."""

    def __init__(self, bot_factory: Callable[[str], BotTransport]):
        self._bot_factory = bot_factory
        self._stores: dict[SessionKey, SessionStore] = {}

    def get(self, key: SessionKey) -> SessionStore:
        store = self._stores.get(key)
        if store is None:
            bot = self._bot_factory(key.bot_id)
            store = SessionStore(key, Session(bot=bot, messages=(ledger.greeting(),)))
            self._stores[key] = store
            logger.info("created session bot_id={} page={}", key.bot_id, key.page)
        return store


class ResetSignal:
    """Process-wide "hash" value written by navigation.

    The value "reset" asks every watching controller to reset. Consumers clear
    the value as they act on it, so one request triggers one reset.
    """

    RESET = "reset"

    def __init__(self) -> None:
        self._value = ""
        self._changed = asyncio.Event()

    @property
    def value(self) -> str:
        return self._value

    def set(self, value: str) -> None:
        self._value = value
        if value:
            self._changed.set()

    def consume(self) -> bool:
        if self._value != self.RESET:
            return False
        self._value = ""
        self._changed.clear()
        return True

    async def wait(self) -> None:
        await self._changed.wait()
        self._changed.clear()
