"""LiteLLM-backed bot transport."""

import base64
import binascii
import os
import re
from typing import Any

import httpx
import litellm
from litellm import acompletion
from loguru import logger

from bingchat.providers.base import (
    BotTransport,
    ConversationStyle,
    ConversationTurn,
    SendRequest,
    UploadResult,
)
from bingchat.session.models import Throttling
from bingchat.web.database import Database
from bingchat.web.protocol import ErrorCode, evt_done, evt_error, evt_update_answer


STYLE_TEMPERATURE: dict[str, float] = {
    "creative": 1.0,
    "balanced": 0.7,
    "precise": 0.2,
}

_BCID_RE = re.compile(r"[?&]bcid=([^&]+)")


class LiteLLMBot(BotTransport):
    """
    Bot transport using LiteLLM for multi-provider support.

    Keeps the conversation turns locally so each send carries the previous
    context, streams the answer as cumulative UPDATE_ANSWER events and stores
    uploaded images in the blob table.
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "openai/gpt-4o-mini",
        blobs: Database | None = None,
        max_turns: int = 30,
        max_tokens: int = 4096,
    ):
        self.api_key = api_key
        self.api_base = api_base
        self.default_model = default_model
        self._blobs = blobs
        self._max_turns = max_turns
        self._max_tokens = max_tokens
        self._turns: list[ConversationTurn] = []

        self.is_openrouter = bool(
            (api_key and api_key.startswith("sk-or-")) or
            (api_base and "openrouter" in api_base)
        )
        self.is_vllm = bool(api_base) and not self.is_openrouter

        if api_key:
            if self.is_openrouter:
                os.environ["OPENROUTER_API_KEY"] = api_key
            elif self.is_vllm:
                os.environ["OPENAI_API_KEY"] = api_key
            elif "anthropic" in default_model:
                os.environ.setdefault("ANTHROPIC_API_KEY", api_key)
            elif "openai" in default_model or "gpt" in default_model:
                os.environ.setdefault("OPENAI_API_KEY", api_key)
            elif "gemini" in default_model.lower():
                os.environ.setdefault("GEMINI_API_KEY", api_key)

        litellm.suppress_debug_info = True

    @property
    def turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    def _resolve_model(self, model: str | None = None) -> str:
        model = model or self.default_model
        if self.is_openrouter and not model.startswith("openrouter/"):
            model = f"openrouter/{model}"
        if "gemini" in model.lower() and not model.startswith(("gemini/", "openrouter/")):
            model = f"gemini/{model}"
        if self.is_vllm:
            model = f"hosted_vllm/{model}"
        return model

    def _user_count(self) -> int:
        return len([t for t in self._turns if t.role == "user"])

    def _throttling(self) -> Throttling:
        return Throttling(
            max_num_user_messages_in_conversation=self._max_turns,
            num_user_messages_in_conversation=self._user_count() + 1,
        )

    def _build_messages(self, request: SendRequest) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if request.context:
            messages.append({"role": "system", "content": request.context})
        for turn in self._turns:
            messages.append(self._turn_message(turn))
        messages.append(
            self._turn_message(
                ConversationTurn(role="user", content=request.prompt, image_url=request.image_url)
            )
        )
        return messages

    def _inline_image(self, url: str) -> str:
        """Replace a url naming one of our own blobs with a data: url.

        Blob ids only exist in the local table, so the provider could never
        fetch them by url.
        """
        if self._blobs is None:
            return url
        m = _BCID_RE.search(url)
        if not m:
            return url
        found = self._blobs.get_blob(m.group(1))
        if found is None:
            return url
        data, content_type = found
        return f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"

    def _turn_message(self, turn: ConversationTurn) -> dict[str, Any]:
        if not turn.image_url:
            return {"role": turn.role, "content": turn.content}
        return {
            "role": turn.role,
            "content": [
                {"type": "text", "text": turn.content},
                {"type": "image_url", "image_url": {"url": self._inline_image(turn.image_url)}},
            ],
        }

    def _build_kwargs(self, messages: list[dict[str, Any]], style: ConversationStyle | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._resolve_model(),
            "messages": messages,
            "max_tokens": self._max_tokens,
            "temperature": STYLE_TEMPERATURE.get(style or "balanced", 0.7),
            "stream": True,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        return kwargs

    async def send_message(self, request: SendRequest) -> None:
        """Stream one answer through LiteLLM and report it as protocol events."""
        signal = request.signal
        if signal.aborted:
            return

        if self._user_count() >= self._max_turns:
            request.on_event(
                evt_error(
                    ErrorCode.THROTTLE_LIMIT,
                    "This conversation has reached its limit. Start a new topic to continue.",
                )
            )
            return

        kwargs = self._build_kwargs(self._build_messages(request), request.options.conversation_style)
        throttling = self._throttling()
        text = ""

        try:
            response = await acompletion(**kwargs)
            async for chunk in response:
                if signal.aborted:
                    logger.info("generation aborted ({})", signal.reason)
                    return
                delta = chunk.choices[0].delta if chunk.choices else None
                text_delta = getattr(delta, "content", None) if delta is not None else None
                if text_delta:
                    text += text_delta
                    request.on_event(evt_update_answer(text, throttling=throttling))
        except Exception as e:
            if signal.aborted:
                return
            logger.warning(f"LiteLLM streaming failed: {e}")
            request.on_event(evt_error(ErrorCode.PROVIDER_ERROR, f"Error calling LLM: {e}"))
            return

        if signal.aborted:
            return

        self._turns.append(ConversationTurn(role="user", content=request.prompt, image_url=request.image_url))
        self._turns.append(ConversationTurn(role="assistant", content=text))
        request.on_event(evt_done())

    async def upload_image(self, url: str, style: ConversationStyle) -> UploadResult | None:
        """Fetch the image (http(s) or data: url) and store it as a blob."""
        if self._blobs is None:
            return None

        try:
            data, content_type = await self._fetch_image(url)
        except (httpx.HTTPError, ValueError, binascii.Error) as e:
            logger.warning(f"Image fetch failed for {url[:80]}: {e}")
            return UploadResult()

        if not content_type.startswith("image/"):
            logger.warning(f"Rejected upload with content type {content_type}")
            return UploadResult()

        blob_id = self._blobs.put_blob(data, content_type=content_type, source_url=url[:2048])
        return UploadResult(blob_id=blob_id)

    async def _fetch_image(self, url: str) -> tuple[bytes, str]:
        if url.startswith("data:"):
            header, _, payload = url.partition(",")
            if ";base64" not in header:
                raise ValueError("only base64 data urls are supported")
            content_type = header[len("data:"):].split(";", 1)[0] or "image/jpeg"
            return base64.b64decode(payload, validate=True), content_type

        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            content_type = resp.headers.get("content-type", "image/jpeg").split(";", 1)[0].strip()
            return resp.content, content_type

    def reset_conversation(self) -> None:
        self._turns.clear()
