"""Configuration management for Kisan Mitra."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel
from pydantic_settings import BaseSettings

DAY_MS = 24 * 60 * 60 * 1000


class RetentionSettings(BaseModel):
    """Default expiry applied to metric points, by metric family."""

    weather_days: int = 365
    market_days: int = 730
    default_days: int = 365

    def retention_ms(self, metric_id: str) -> int:
        """Retention window for a metric id, chosen by its leading segment."""
        family = metric_id.split(":", 1)[0]
        days = {
            "weather": self.weather_days,
            "market": self.market_days,
        }.get(family, self.default_days)
        return days * DAY_MS


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Storage
    storage_backend: Literal["memory", "postgres"] = "memory"
    database_url: str = "postgresql://localhost/kisanmitra"

    # Redis (embedding cache, disabled when empty)
    redis_url: str = ""

    # Embeddings
    openai_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    mock_embeddings: bool = False

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Scan deadlines
    search_timeout_seconds: float = 10.0

    # Daemon
    sweep_interval_minutes: int = 60
    freshness_interval_minutes: int = 60
    tracked_districts: list[str] = []
    tracked_crops: list[str] = []

    retention: RetentionSettings = RetentionSettings()

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_nested_delimiter = "__"


def load_knowledge_file(path: Path) -> dict[str, Any]:
    """Load a knowledge bundle (nodes, edges, documents, series) from YAML."""
    with open(path) as f:
        data = yaml.safe_load(f)
    return data or {}
