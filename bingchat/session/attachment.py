"""Single-slot image attachment pipeline (idle -> loading -> loaded | error)."""

from __future__ import annotations

from typing import Callable

from loguru import logger

from bingchat.providers.base import BotTransport, ConversationStyle
from bingchat.session.models import Attachment


class AttachmentPipeline:
    """Tracks the one pending image for the next send.

    Every write replaces the slot, so when uploads race the last one to
    complete decides the final state.
    """

    def __init__(
        self,
        *,
        proxy_url: Callable[[str], str],
        on_change: Callable[[Attachment | None], None] | None = None,
    ):
        self._proxy_url = proxy_url
        self._on_change = on_change
        self._slot: Attachment | None = None

    @property
    def pending(self) -> Attachment | None:
        return self._slot

    def set(self, attachment: Attachment | None) -> None:
        self._slot = attachment
        if self._on_change is not None:
            self._on_change(attachment)

    def clear(self) -> None:
        self.set(None)

    def loaded_url(self) -> str | None:
        if self._slot is not None and self._slot.status == "loaded":
            return self._slot.url
        return None

    async def upload(self, bot: BotTransport, url: str, style: ConversationStyle) -> Attachment:
        self.set(Attachment(url=url, status="loading"))
        try:
            result = await bot.upload_image(url, style)
        except Exception:
            logger.exception("image upload failed for {}", url)
            result = None

        if result is not None and result.blob_id:
            attachment = Attachment(url=self._proxy_url(result.blob_id), status="loaded")
        else:
            logger.warning("image upload returned no blob id for {}", url)
            attachment = Attachment(url=url, status="error")
        self.set(attachment)
        return attachment
