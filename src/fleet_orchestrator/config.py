"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BLACKBOX_URL = "https://cloud.blackbox.ai"


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".fleet_orchestrator" / "fo.db")
    blackbox_api_key: str | None = None
    blackbox_api_url: str = DEFAULT_BLACKBOX_URL
    blackbox_timeout: float = 30.0
    webhook_secret: str | None = None
    webhook_dedup: bool = False
    default_agent: str = "claude"
    default_model: str | None = None
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8787

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("FO_DB_PATH"):
            config.db_path = Path(db)

        config.blackbox_api_key = os.environ.get("BLACKBOX_API_KEY") or None
        config.webhook_secret = os.environ.get("BLACKBOX_WEBHOOK_SECRET") or None

        if url := os.environ.get("BLACKBOX_API_URL"):
            config.blackbox_api_url = url.rstrip("/")

        if timeout := os.environ.get("FO_BLACKBOX_TIMEOUT"):
            config.blackbox_timeout = float(timeout)

        if dedup := os.environ.get("FO_WEBHOOK_DEDUP"):
            config.webhook_dedup = _flag(dedup)

        if agent := os.environ.get("FO_DEFAULT_AGENT"):
            config.default_agent = agent

        if model := os.environ.get("FO_DEFAULT_MODEL"):
            config.default_model = model

        if level := os.environ.get("FO_LOG_LEVEL"):
            config.log_level = level.upper()

        if host := os.environ.get("FO_HOST"):
            config.host = host

        if port := os.environ.get("FO_PORT"):
            config.port = int(port)

        return config


def get_config() -> Config:
    return Config.from_env()
