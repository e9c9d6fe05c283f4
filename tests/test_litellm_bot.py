from __future__ import annotations

import base64
from types import SimpleNamespace
from typing import Any

import pytest

import bingchat.providers.litellm_provider as litellm_provider
from bingchat.providers.base import SendOptions, SendRequest
from bingchat.providers.litellm_provider import LiteLLMBot
from bingchat.session.abort import AbortController
from bingchat.session.controller import SessionController
from bingchat.session.models import SessionKey
from bingchat.session.store import SessionRegistry
from bingchat.web.database import Database
from bingchat.web.protocol import BotEvent, EventType


def _chunk(text: str | None, finish: str | None = None) -> Any:
    delta = SimpleNamespace(content=text)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish)])


def _fake_acompletion(chunks: list[Any], captured: list[dict[str, Any]]):
    async def _stream():
        for c in chunks:
            yield c

    async def fake(**kwargs: Any):
        captured.append(kwargs)
        return _stream()

    return fake


def _request(prompt: str, events: list[BotEvent], **kwargs: Any) -> tuple[SendRequest, AbortController]:
    abort = AbortController()
    request = SendRequest(
        prompt=prompt,
        options=SendOptions(conversation_style=kwargs.pop("style", "balanced")),
        signal=abort.signal,
        on_event=events.append,
        **kwargs,
    )
    return request, abort


@pytest.mark.asyncio
async def test_stream_emits_cumulative_updates_then_done(monkeypatch) -> None:
    captured: list[dict[str, Any]] = []
    monkeypatch.setattr(
        litellm_provider,
        "acompletion",
        _fake_acompletion([_chunk("Hel"), _chunk(None), _chunk("lo"), _chunk(None, "stop")], captured),
    )
    bot = LiteLLMBot(default_model="openai/gpt-4o-mini")
    events: list[BotEvent] = []
    request, _ = _request("hi", events, style="precise", context="[system] be brief")

    await bot.send_message(request)

    assert [e.type for e in events] == [EventType.UPDATE_ANSWER, EventType.UPDATE_ANSWER, EventType.DONE]
    assert [e.data.text for e in events[:2]] == ["Hel", "Hello"]
    assert events[0].data.throttling.num_user_messages_in_conversation == 1
    kwargs = captured[0]
    assert kwargs["stream"] is True
    assert kwargs["temperature"] == 0.2
    assert kwargs["messages"][0] == {"role": "system", "content": "[system] be brief"}
    assert kwargs["messages"][-1] == {"role": "user", "content": "hi"}
    assert [t.role for t in bot.turns] == ["user", "assistant"]
    assert bot.turns[1].content == "Hello"


@pytest.mark.asyncio
async def test_history_and_image_are_sent(monkeypatch) -> None:
    captured: list[dict[str, Any]] = []
    monkeypatch.setattr(litellm_provider, "acompletion", _fake_acompletion([_chunk("ok")], captured))
    bot = LiteLLMBot()

    await bot.send_message(_request("first", [])[0])
    await bot.send_message(_request("second", [], image_url="https://img.example/x.png")[0])

    messages = captured[1]["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant", "user"]
    assert messages[-1]["content"][1] == {"type": "image_url", "image_url": {"url": "https://img.example/x.png"}}

    bot.reset_conversation()
    assert bot.turns == []


@pytest.mark.asyncio
async def test_abort_stops_emitting(monkeypatch) -> None:
    monkeypatch.setattr(
        litellm_provider, "acompletion", _fake_acompletion([_chunk("a"), _chunk("b"), _chunk("c")], [])
    )
    bot = LiteLLMBot()
    events: list[BotEvent] = []
    abort = AbortController()

    def on_event(event: BotEvent) -> None:
        events.append(event)
        abort.abort("stopped")

    request = SendRequest(prompt="hi", options=SendOptions(), signal=abort.signal, on_event=on_event)

    await bot.send_message(request)

    assert len(events) == 1
    assert events[0].data.text == "a"
    assert bot.turns == []


@pytest.mark.asyncio
async def test_provider_failure_becomes_error_event(monkeypatch) -> None:
    async def broken(**kwargs: Any):
        raise RuntimeError("rate limited")

    monkeypatch.setattr(litellm_provider, "acompletion", broken)
    bot = LiteLLMBot()
    events: list[BotEvent] = []

    await bot.send_message(_request("hi", events)[0])

    assert len(events) == 1
    assert events[0].type == EventType.ERROR
    assert events[0].error.code == "PROVIDER_ERROR"
    assert "rate limited" in events[0].error.message


@pytest.mark.asyncio
async def test_turn_limit_reports_throttle_error(monkeypatch) -> None:
    monkeypatch.setattr(litellm_provider, "acompletion", _fake_acompletion([_chunk("ok")], []))
    bot = LiteLLMBot(max_turns=1)
    await bot.send_message(_request("one", [])[0])

    events: list[BotEvent] = []
    await bot.send_message(_request("two", events)[0])

    assert [e.type for e in events] == [EventType.ERROR]
    assert events[0].error.code == "THROTTLE_LIMIT"


@pytest.mark.asyncio
async def test_upload_data_url_is_stored_as_blob(tmp_path) -> None:
    db = Database(tmp_path / "bingchat.db")
    bot = LiteLLMBot(blobs=db)
    payload = b"\x89PNG fake image"
    url = "data:image/png;base64," + base64.b64encode(payload).decode("ascii")

    result = await bot.upload_image(url, "balanced")

    assert result is not None and result.blob_id
    assert db.get_blob(result.blob_id) == (payload, "image/png")


@pytest.mark.asyncio
async def test_upload_rejects_non_images_and_bad_data(tmp_path) -> None:
    bot = LiteLLMBot(blobs=Database(tmp_path / "bingchat.db"))

    text_url = "data:text/plain;base64," + base64.b64encode(b"hello").decode("ascii")
    assert (await bot.upload_image(text_url, "balanced")).blob_id is None
    assert (await bot.upload_image("data:image/png,notbase64", "balanced")).blob_id is None


@pytest.mark.asyncio
async def test_upload_without_blob_store_returns_none() -> None:
    assert await LiteLLMBot().upload_image("https://img.example/x.png", "balanced") is None


@pytest.mark.asyncio
async def test_uploaded_image_reaches_the_model_inline(monkeypatch, settings, tmp_path) -> None:
    captured: list[dict[str, Any]] = []
    monkeypatch.setattr(litellm_provider, "acompletion", _fake_acompletion([_chunk("a cat")], captured))
    db = Database(tmp_path / "bingchat.db")
    bot = LiteLLMBot(blobs=db)
    controller = SessionController(
        store=SessionRegistry(lambda _bot_id: bot).get(SessionKey(bot_id="bing")),
        settings=settings,
        history=db,
    )
    data_url = "data:image/png;base64," + base64.b64encode(b"\x89PNG fake image").decode("ascii")

    attachment = await controller.upload_image(data_url)
    assert attachment.status == "loaded"
    await controller.send_message("what is this")

    image_part = captured[0]["messages"][-1]["content"][1]
    assert image_part["image_url"]["url"] == data_url
    assert controller.state.messages[-1].text == "a cat"
    assert db.latest_history() is not None
