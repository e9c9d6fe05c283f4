"""Immutable session data model.

Every record here is a frozen dataclass. State changes go through
`dataclasses.replace` inside a transition function applied by the store.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from bingchat.providers.base import BotTransport
    from bingchat.session.abort import AbortController


Author = Literal["user", "bot"]
AttachmentStatus = Literal["loading", "loaded", "error"]

CANCELLED_TEXT = "Cancelled"

GREET_MESSAGES: tuple[str, ...] = (
    "Thanks for clearing my head! What can I help you with now?",
    "Sorry about that! What else can I help with?",
    "Sure, I'm always up for a fresh start. What would you like to talk about?",
    "Alright, new topic. How can I help?",
)


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ChatError:
    code: str
    message: str


@dataclass(frozen=True)
class Throttling:
    max_num_user_messages_in_conversation: int
    num_user_messages_in_conversation: int


@dataclass(frozen=True)
class SourceAttribution:
    provider_display_name: str
    see_more_url: str
    image_url: str | None = None


@dataclass(frozen=True)
class Message:
    """One transcript entry."""
    id: str
    author: Author
    text: str
    progress: tuple[str, ...] | None = None
    throttling: Throttling | None = None
    source_attributions: tuple[SourceAttribution, ...] | None = None
    suggested_responses: tuple[str, ...] | None = None
    error: ChatError | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "author": self.author, "text": self.text}
        if self.progress is not None:
            data["progress"] = list(self.progress)
        if self.throttling is not None:
            data["throttling"] = {
                "max_num_user_messages_in_conversation": self.throttling.max_num_user_messages_in_conversation,
                "num_user_messages_in_conversation": self.throttling.num_user_messages_in_conversation,
            }
        if self.source_attributions is not None:
            data["source_attributions"] = [
                {
                    "provider_display_name": s.provider_display_name,
                    "see_more_url": s.see_more_url,
                    "image_url": s.image_url,
                }
                for s in self.source_attributions
            ]
        if self.suggested_responses is not None:
            data["suggested_responses"] = list(self.suggested_responses)
        if self.error is not None:
            data["error"] = {"code": self.error.code, "message": self.error.message}
        return data


@dataclass(frozen=True)
class Attachment:
    url: str
    status: AttachmentStatus

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "status": self.status}


@dataclass(frozen=True)
class SessionKey:
    bot_id: str
    page: str = "singleton"


@dataclass(frozen=True)
class Session:
    """Snapshot of one chat session.

    `generating_message_id` is non-empty exactly when `abort_controller` is set,
    which is exactly when a streamed exchange is active.
    """
    bot: "BotTransport"
    conversation: dict[str, Any] = field(default_factory=dict)
    messages: tuple[Message, ...] = ()
    generating_message_id: str = ""
    abort_controller: "AbortController | None" = None

    @property
    def generating(self) -> bool:
        return bool(self.generating_message_id)


@dataclass(frozen=True)
class SessionView:
    """Read view handed to the UI layer."""
    bot_id: str
    bot: "BotTransport"
    is_speaking: bool
    voice: bool
    messages: tuple[Message, ...]
    input: str
    generating: bool
    pending_attachment: Attachment | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "is_speaking": self.is_speaking,
            "voice": self.voice,
            "messages": [m.to_dict() for m in self.messages],
            "input": self.input,
            "generating": self.generating,
            "pending_attachment": self.pending_attachment.to_dict() if self.pending_attachment else None,
        }
