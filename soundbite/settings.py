"""Service settings.

Settings are loaded from the environment once at process start via
``get_settings()`` and handed to ``create_app``; nothing in the package reads a
module-level settings object.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, List, Literal, Set

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from soundbite.idempotency.store import DEFAULT_TTL_MS

CacheType = Literal["memory", "redis"]

_DEFAULT_METHODS = ("POST", "PUT", "PATCH")
_DEFAULT_REQUIRED_PATHS = ("/soundbite",)
_DEFAULT_REDIS_URL = "redis://localhost:6379"
_DEFAULT_REDIS_PREFIX = "soundbite:idempotency:"


def _csv_to_list(value: str) -> List[str]:
    items = [part.strip() for part in value.split(",")]
    return [item for item in items if item]


def _json_or_csv_to_list(value: str) -> List[str]:
    text = value.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            decoded = json.loads(text)
        except (json.JSONDecodeError, TypeError, ValueError):
            return _csv_to_list(text)
        if isinstance(decoded, str):
            return _csv_to_list(decoded)
        if isinstance(decoded, (list, tuple, set)):
            result: List[str] = []
            for item in decoded:
                piece = str(item).strip()
                if piece:
                    result.append(piece)
            return result
        return []
    return _csv_to_list(text)


class IdempotencySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)

    cache_type: CacheType = Field(
        "memory",
        validation_alias=AliasChoices("CACHE_TYPE"),
    )
    redis_url: str = Field(
        _DEFAULT_REDIS_URL,
        validation_alias=AliasChoices("REDIS_URL"),
    )
    redis_key_prefix: str = Field(
        _DEFAULT_REDIS_PREFIX,
        min_length=1,
        validation_alias=AliasChoices("IDEMPOTENCY_REDIS_PREFIX"),
    )
    redis_max_retries: int = Field(
        3,
        ge=1,
        le=10,
        validation_alias=AliasChoices("IDEMPOTENCY_REDIS_MAX_RETRIES"),
    )
    redis_retry_delay_ms: int = Field(
        1000,
        ge=0,
        le=10000,
        validation_alias=AliasChoices("IDEMPOTENCY_REDIS_RETRY_DELAY_MS"),
    )
    redis_socket_timeout_s: float = Field(
        2.5,
        gt=0,
        validation_alias=AliasChoices("REDIS_SOCKET_TIMEOUT_S"),
    )
    redis_socket_connect_timeout_s: float = Field(
        2.0,
        gt=0,
        validation_alias=AliasChoices("REDIS_SOCKET_CONNECT_TIMEOUT_S"),
    )
    default_ttl_ms: int = Field(
        DEFAULT_TTL_MS,
        ge=1,
        validation_alias=AliasChoices("IDEMPOTENCY_TTL_MS"),
    )
    memory_max_entries: int = Field(
        10_000,
        ge=1,
        validation_alias=AliasChoices("IDEMPOTENCY_MEMORY_MAX_ENTRIES"),
    )
    memory_sweep_interval_s: float = Field(
        300.0,
        gt=0,
        validation_alias=AliasChoices("IDEMPOTENCY_SWEEP_INTERVAL_S"),
    )
    max_body_bytes: int = Field(
        1024 * 1024,
        ge=1,
        validation_alias=AliasChoices("IDEMPOTENCY_MAX_BODY_BYTES"),
    )
    methods: Annotated[Set[str], NoDecode] = Field(
        default_factory=lambda: set(_DEFAULT_METHODS),
        validation_alias=AliasChoices("IDEMPOTENCY_METHODS"),
    )
    required_paths: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(_DEFAULT_REQUIRED_PATHS),
        validation_alias=AliasChoices("IDEMPOTENCY_REQUIRED_PATHS"),
    )
    mask_prefix_len: int = Field(
        8,
        ge=4,
        le=16,
        validation_alias=AliasChoices("IDEMPOTENCY_MASK_PREFIX_LEN"),
    )

    @field_validator("cache_type", mode="before")
    @classmethod
    def _normalize_cache_type(cls, value: object) -> object:
        # Unknown backends fall back to the in-process cache.
        if isinstance(value, str):
            text = value.strip().lower()
            return text if text in {"memory", "redis"} else "memory"
        return value

    @field_validator("methods", mode="before")
    @classmethod
    def _parse_methods_csv(cls, value: object) -> object:
        if isinstance(value, str):
            return {item.upper() for item in _json_or_csv_to_list(value)}
        if isinstance(value, (list, set, tuple)):
            return {str(item).strip().upper() for item in value if str(item).strip()}
        return value

    @field_validator("required_paths", mode="before")
    @classmethod
    def _parse_paths_csv(cls, value: object) -> object:
        if isinstance(value, str):
            return _json_or_csv_to_list(value)
        if isinstance(value, (list, set, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        return value

    @property
    def redis_retry_delay_s(self) -> float:
        return self.redis_retry_delay_ms / 1000.0


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)

    app_name: str = Field("SoundBite API", validation_alias=AliasChoices("APP_NAME"))
    env: Literal["dev", "stage", "prod", "test"] = Field(
        "dev",
        validation_alias=AliasChoices("APP_ENV"),
    )
    log_level: str = Field("INFO", validation_alias=AliasChoices("LOG_LEVEL"))
    log_json: bool = Field(True, validation_alias=AliasChoices("LOG_JSON"))
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)


def get_settings(**overrides: Any) -> Settings:
    """Load settings from the environment; keyword overrides win."""
    return Settings(**overrides)
