"""Runtime settings for bingchat.

Values come from environment variables (prefix BINGCHAT_) or a local .env file.
Session defaults here (conversation style, voice, persona, image-only) are the
baseline each send merges its own SendOptions over.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from bingchat.providers.base import SendOptions


def repo_root() -> Path:
    # bingchat/web/settings.py -> bingchat/web -> bingchat -> repo root
    return Path(__file__).resolve().parents[2]


Style = Literal["creative", "balanced", "precise"]


class ChatSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BINGCHAT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 3000

    # Data / DB
    data_dir: str = "data"
    db_path: str | None = None

    # Blob proxy: uploaded images are served from {public_base_url}/api/blob.jpg?bcid=<id>
    public_base_url: str = "http://localhost:3000"
    external_image_url: str = "https://www.bing.com/images/blob?bcid={bcid}"

    # Session defaults
    conversation_style: Style = "balanced"
    enable_tts: bool = False
    extended_persona: bool = False
    image_only: bool = False

    # Provider (LiteLLM)
    model: str = "openai/gpt-4o-mini"
    api_key: str | None = None
    api_base: str | None = None

    # SSE
    sse_heartbeat_s: float = 15.0
    sse_wait_timeout_s: float = 15.0

    def resolved_data_dir(self) -> Path:
        p = Path(self.data_dir)
        return p if p.is_absolute() else repo_root() / p

    def resolved_db_path(self) -> Path:
        if self.db_path:
            p = Path(self.db_path)
            return p if p.is_absolute() else repo_root() / p
        return self.resolved_data_dir() / "bingchat.db"

    def proxy_blob_url(self, blob_id: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/blob.jpg?bcid={blob_id}"

    def default_send_options(self) -> SendOptions:
        return SendOptions(
            conversation_style=self.conversation_style,
            extended_persona=self.extended_persona,
            image_only=self.image_only,
        )
