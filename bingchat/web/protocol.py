"""Streamed event protocol between a bot transport and the session controller.

A transport reports one generation as a sequence of tagged events:
  UPDATE_ANSWER*  then exactly one of  ERROR | DONE
UPDATE_ANSWER carries the cumulative answer text, not a delta.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from bingchat.session.models import ChatError, SourceAttribution, Throttling


class EventType(str, Enum):
    UPDATE_ANSWER = "UPDATE_ANSWER"
    ERROR = "ERROR"
    DONE = "DONE"


class ErrorCode(str, Enum):
    PROVIDER_ERROR = "PROVIDER_ERROR"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    STREAM_INTERRUPTED = "STREAM_INTERRUPTED"
    THROTTLE_LIMIT = "THROTTLE_LIMIT"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class AnswerUpdate:
    text: str
    progress_text: str | None = None
    throttling: Throttling | None = None
    source_attributions: tuple[SourceAttribution, ...] | None = None
    suggested_responses: tuple[str, ...] | None = None


@dataclass(frozen=True)
class BotEvent:
    type: EventType
    data: AnswerUpdate | None = None
    error: ChatError | None = None


# ── Factory helpers ──────────────────────────────────────────────

def evt_update_answer(
    text: str,
    *,
    progress_text: str | None = None,
    throttling: Throttling | None = None,
    source_attributions: tuple[SourceAttribution, ...] | None = None,
    suggested_responses: tuple[str, ...] | None = None,
) -> BotEvent:
    return BotEvent(
        type=EventType.UPDATE_ANSWER,
        data=AnswerUpdate(
            text=text,
            progress_text=progress_text,
            throttling=throttling,
            source_attributions=source_attributions,
            suggested_responses=suggested_responses,
        ),
    )


def evt_error(code: ErrorCode | str, message: str) -> BotEvent:
    code_value = code.value if isinstance(code, ErrorCode) else code
    return BotEvent(type=EventType.ERROR, error=ChatError(code=code_value, message=message))


def evt_done() -> BotEvent:
    return BotEvent(type=EventType.DONE)
