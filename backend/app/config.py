from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DATA_DIR = ".music-stream"
DEFAULT_INVIDIOUS_INSTANCES: tuple[str, ...] = (
    "https://invidious.f5.si",
    "https://invidious.privacyredirect.com",
    "https://inv.tux.pizza",
    "https://invidious.projectsegfau.lt",
    "https://yewtu.be",
    "https://vid.puffyan.us",
    "https://inv.nadeko.net",
    "https://invidious.nerdvpn.de",
    "https://inv.perditum.com",
    "https://invidious.privacydev.net",
)
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (("log_dir", Path("logs")),)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _split_list_value(value: Any, *, env_name: str) -> list[str]:
    """Accept a JSON array or a comma-separated string."""
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            try:
                value = json.loads(stripped)
            except json.JSONDecodeError as exc:
                raise ValueError(f"{env_name} is not a valid JSON list.") from exc
        else:
            value = stripped.split(",")
    if not isinstance(value, list | tuple):
        raise ValueError(f"{env_name} must be a list of strings.")

    items: list[str] = []
    for raw_item in value:
        if not isinstance(raw_item, str):
            raise ValueError(f"{env_name} must only contain strings.")
        item = raw_item.strip()
        if item:
            items.append(item)
    return items


def _normalize_instance_url(raw_url: str) -> str:
    normalized = raw_url.rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"MUSIC_STREAM_INVIDIOUS_INSTANCES entries must be http(s) URLs: {raw_url}"
        )
    return normalized


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from `MUSIC_STREAM_*` environment variables (or `.env`).
    """

    model_config = SettingsConfigDict(
        env_prefix="MUSIC_STREAM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )

    # Upstream instances and failover.
    invidious_instances: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_INVIDIOUS_INSTANCES),
        description=(
            "Ordered Invidious base URLs. Accepts a JSON array or a comma-separated list; "
            "order breaks ties between equally scored instances."
        ),
    )
    invidious_request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for a single attempt against one instance.",
    )
    invidious_user_agent: str = Field(
        default="music-stream-server/1.0",
        description="User-Agent sent to Invidious instances.",
    )
    stream_cache_ttl_seconds: int = Field(
        default=5 * 60 * 60,
        ge=0,
        description="TTL for resolved stream URLs in the in-process cache.",
    )
    circuit_breaker_failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failures that open an instance's circuit breaker.",
    )
    circuit_breaker_open_seconds: int = Field(
        default=300,
        ge=0,
        description="How long an open breaker keeps an instance out of rotation.",
    )

    # HTTP surface.
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["*"],
        description="Origins allowed by CORS. Accepts a JSON array or a comma-separated list.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description="Directory for backend log files. Defaults to `${MUSIC_STREAM_DATA_DIR}/logs`.",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description="Telemetry sink backend. `log` emits structured events; `none` disables output.",
    )

    @field_validator("invidious_instances", mode="before")
    @classmethod
    def _normalize_instances(cls, value: Any) -> list[str]:
        urls = _split_list_value(value, env_name="MUSIC_STREAM_INVIDIOUS_INSTANCES")
        normalized: list[str] = []
        for url in urls:
            instance = _normalize_instance_url(url)
            if instance not in normalized:
                normalized.append(instance)
        if not normalized:
            raise ValueError("MUSIC_STREAM_INVIDIOUS_INSTANCES must not be empty.")
        return normalized

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _normalize_cors_origins(cls, value: Any) -> list[str]:
        return _split_list_value(value, env_name="MUSIC_STREAM_CORS_ALLOW_ORIGINS")

    @field_validator("invidious_user_agent", mode="before")
    @classmethod
    def _normalize_user_agent(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("MUSIC_STREAM_INVIDIOUS_USER_AGENT must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("MUSIC_STREAM_INVIDIOUS_USER_AGENT must not be empty.")
        return normalized

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("MUSIC_STREAM_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("MUSIC_STREAM_TELEMETRY_SINK must be set to: none, log.")

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator("telemetry_enabled", mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name)) for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
