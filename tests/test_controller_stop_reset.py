from __future__ import annotations

import asyncio

import pytest

from bingchat.session.models import GREET_MESSAGES
from bingchat.web.protocol import evt_done, evt_update_answer


async def _start_gated_send(controller, bot, text: str = "hi") -> tuple[asyncio.Task, asyncio.Event]:
    gate = asyncio.Event()
    bot.gate = gate
    task = asyncio.create_task(controller.send_message(text))
    await asyncio.sleep(0)
    return task, gate


@pytest.mark.asyncio
async def test_stop_before_any_event_marks_cancelled(controller, bot) -> None:
    bot.script = [evt_update_answer("too late"), evt_done()]
    task, gate = await _start_gated_send(controller, bot)
    request = bot.requests[-1]

    controller.stop_generating()

    assert request.signal.aborted is True
    assert controller.state.messages[-1].text == "Cancelled"
    assert controller.state.generating_message_id == ""
    assert controller.state.abort_controller is None

    gate.set()
    await task
    assert controller.state.messages[-1].text == "Cancelled"
    assert controller.state.messages[-1].error is None


@pytest.mark.asyncio
async def test_stop_keeps_partial_text(controller, bot) -> None:
    task, gate = await _start_gated_send(controller, bot)
    bot.requests[-1].on_event(evt_update_answer("partial"))

    controller.stop_generating()

    assert controller.state.messages[-1].text == "partial"
    gate.set()
    await task


@pytest.mark.asyncio
async def test_stop_twice_equals_stop_once(controller, bot) -> None:
    task, gate = await _start_gated_send(controller, bot)

    controller.stop_generating()
    once = controller.state
    controller.stop_generating()

    assert controller.state is once
    gate.set()
    await task


def test_stop_without_generation_is_noop(controller) -> None:
    before = controller.state
    controller.stop_generating()
    assert controller.state is before


@pytest.mark.asyncio
async def test_reset_leaves_single_greeting(controller, bot) -> None:
    bot.script = [evt_update_answer("answer"), evt_done()]
    await controller.send_message("hi")
    task, gate = await _start_gated_send(controller, bot, "again")
    request = bot.requests[-1]

    controller.reset_conversation()

    state = controller.state
    assert len(state.messages) == 1
    assert state.messages[0].author == "bot"
    assert state.messages[0].text in GREET_MESSAGES
    assert state.generating_message_id == ""
    assert state.abort_controller is None
    assert state.conversation == {}
    assert bot.reset_calls == 1
    assert request.signal.aborted is True

    gate.set()
    await task
    assert len(controller.state.messages) == 1


def test_reset_survives_transport_failure(controller, bot) -> None:
    def broken() -> None:
        raise RuntimeError("no connection")

    bot.reset_conversation = broken
    controller.reset_conversation()

    assert len(controller.state.messages) == 1


def test_reset_signal_triggers_one_reset(controller, bot, reset_signal) -> None:
    reset_signal.set("reset")

    assert controller.check_reset_signal() is True
    assert bot.reset_calls == 1
    assert reset_signal.value == ""
    assert controller.check_reset_signal() is False
    assert bot.reset_calls == 1


@pytest.mark.asyncio
async def test_watch_reset_signal_resets_on_request(controller, bot, reset_signal) -> None:
    watcher = asyncio.create_task(controller.watch_reset_signal())
    await asyncio.sleep(0)

    reset_signal.set("reset")
    for _ in range(3):
        await asyncio.sleep(0)

    assert bot.reset_calls == 1
    assert reset_signal.value == ""

    watcher.cancel()
    with pytest.raises(asyncio.CancelledError):
        await watcher
