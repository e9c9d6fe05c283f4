"""Base bot transport interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Literal

from bingchat.session.abort import AbortSignal
from bingchat.web.protocol import BotEvent


ConversationStyle = Literal["creative", "balanced", "precise"]


@dataclass(frozen=True)
class SendOptions:
    """Recognized per-send options. `None` fields fall back to settings."""
    conversation_style: ConversationStyle | None = None
    extended_persona: bool | None = None
    image_only: bool | None = None

    def merged_over(self, defaults: "SendOptions") -> "SendOptions":
        return SendOptions(
            conversation_style=self.conversation_style or defaults.conversation_style,
            extended_persona=(
                defaults.extended_persona if self.extended_persona is None else self.extended_persona
            ),
            image_only=defaults.image_only if self.image_only is None else self.image_only,
        )


@dataclass
class SendRequest:
    """One streamed exchange with the remote agent."""
    prompt: str
    options: SendOptions
    signal: AbortSignal
    on_event: Callable[[BotEvent], None]
    image_url: str | None = None
    context: str = ""


@dataclass(frozen=True)
class UploadResult:
    blob_id: str | None = None


class BotTransport(ABC):
    """
    Abstract base class for bot transports.

    Implementations talk to the remote agent and report each generation
    through `request.on_event`, following the event protocol in
    `bingchat.web.protocol`.
    """

    @abstractmethod
    async def send_message(self, request: SendRequest) -> None:
        """
        Run one streamed exchange.

        Must call `request.on_event` zero or more times with UPDATE_ANSWER
        events followed by a single ERROR or DONE, and must stop emitting once
        `request.signal.aborted` is true.
        """
        pass

    @abstractmethod
    async def upload_image(self, url: str, style: ConversationStyle) -> UploadResult | None:
        """Upload an image by url. Returns the blob id on success."""
        pass

    @abstractmethod
    def reset_conversation(self) -> None:
        """Forget the remote conversation context."""
        pass


@dataclass
class ConversationTurn:
    role: Literal["user", "assistant"]
    content: str
    image_url: str | None = None
