"""Cooperative cancellation handle for a single generation."""

from __future__ import annotations

import asyncio


class AbortSignal:
    """Read side of an AbortController, handed to the transport."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class AbortController:
    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: str = "aborted") -> None:
        # Triggers once; later calls keep the first reason.
        if self.signal.aborted:
            return
        self.signal.reason = reason
        self.signal._event.set()
