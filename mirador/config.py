"""App configuration loading helpers."""

from __future__ import annotations

from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .models import PoolOptions
from .registry import DEFAULT_DATA_DIR, ConnectionRegistry

CONFIG_FILE = Path.home() / ".config" / "mirador" / "config.toml"


class PoolSettings(BaseModel):
    """Default pool sizing applied to every new backend."""

    max_size: int = Field(default=10, gt=0)
    idle_timeout: float = Field(default=30.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    close_timeout: float = Field(default=5.0, gt=0)


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    data_dir: Path = DEFAULT_DATA_DIR
    page_size: int = Field(default=50, gt=0)
    history_limit: int = Field(default=100, gt=0)
    pool: PoolSettings = Field(default_factory=PoolSettings)

    def pool_options(self) -> PoolOptions:
        return PoolOptions(
            max_size=self.pool.max_size,
            idle_timeout=self.pool.idle_timeout,
            connect_timeout=self.pool.connect_timeout,
            close_timeout=self.pool.close_timeout,
        )

    def registry(self) -> ConnectionRegistry:
        """Registry rooted at the configured data directory."""

        return ConnectionRegistry(self.data_dir)

    def with_pool(self, **updates: object) -> AppConfig:
        """Return a copy with pool settings changes applied."""

        pool = self.pool.model_copy(update=updates)
        return self.model_copy(update={"pool": pool})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()
    try:
        return AppConfig(**data)
    except ValidationError:
        return AppConfig()


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f'data_dir = "{config.data_dir.as_posix()}"',
        f"page_size = {config.page_size}",
        f"history_limit = {config.history_limit}",
        "",
        "[pool]",
        f"max_size = {config.pool.max_size}",
        f"idle_timeout = {config.pool.idle_timeout}",
        f"connect_timeout = {config.pool.connect_timeout}",
        f"close_timeout = {config.pool.close_timeout}",
    ]
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    data_dir = raw.get("data_dir")
    if isinstance(data_dir, str) and data_dir.strip():
        data["data_dir"] = Path(data_dir).expanduser()
    for key in ("page_size", "history_limit"):
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            data[key] = value
    pool = raw.get("pool")
    if isinstance(pool, dict):
        settings: dict[str, object] = {}
        for key in PoolSettings.model_fields:
            value = pool.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                settings[key] = value
        data["pool"] = settings
    return data


__all__ = ["AppConfig", "CONFIG_FILE", "PoolSettings", "load_config", "save_config"]
