"""Pure transitions over the message transcript."""

from __future__ import annotations

import random
from typing import Callable

from bingchat.session.models import GREET_MESSAGES, Message, new_message_id


def append(messages: tuple[Message, ...], *new: Message) -> tuple[Message, ...]:
    return messages + tuple(new)


def find(messages: tuple[Message, ...], message_id: str) -> Message | None:
    for message in messages:
        if message.id == message_id:
            return message
    return None


def patch(
    messages: tuple[Message, ...],
    message_id: str,
    updater: Callable[[Message], Message],
) -> tuple[Message, ...]:
    """Replace the message with `message_id` by `updater(message)`.

    Unknown ids leave the transcript untouched.
    """
    out: list[Message] = []
    changed = False
    for message in messages:
        if not changed and message.id == message_id:
            out.append(updater(message))
            changed = True
        else:
            out.append(message)
    return tuple(out) if changed else messages


def greeting() -> Message:
    return Message(id=new_message_id(), author="bot", text=random.choice(GREET_MESSAGES))
