from __future__ import annotations

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    sessions: str = ""
    sessions_path: str | None = None
    rate_limit_cooldown_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices(
            "RATE_LIMIT_COOLDOWN_SECONDS", "RATE_LIMIT_COOLDOWN"
        ),
    )
    retry_count: int | None = None
    api_keys: str = Field(
        default="",
        validation_alias=AliasChoices("API_KEYS", "APIKEY"),
    )
    upstream_base_url: str = "https://www.perplexity.ai"
    upstream_proxy: str | None = Field(
        default=None,
        validation_alias=AliasChoices("UPSTREAM_PROXY", "PROXY"),
    )
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float = 120.0
    is_incognito: bool = True
    no_role_prefix: bool = False
    ignore_search_result: bool = False
    search_result_compatible: bool = False
    max_chat_history_length: int = 0
    audit_log_enabled: bool = True
    audit_log_path: str = "logs/gateway_events.jsonl"
    host: str = "0.0.0.0"
    port: int = 8080

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def sessions_list(self) -> list[str]:
        return _dedupe_preserving_order(_split_csv(self.sessions))

    @property
    def api_keys_list(self) -> list[str]:
        return _split_csv(self.api_keys)

    @property
    def auth_required(self) -> bool:
        return bool(self.api_keys_list)

    @property
    def default_cooldown_seconds(self) -> float:
        return max(0.0, float(self.rate_limit_cooldown_seconds))


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _dedupe_preserving_order(values: list[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        output.append(value)
    return output


@lru_cache
def get_settings() -> Settings:
    return Settings()
