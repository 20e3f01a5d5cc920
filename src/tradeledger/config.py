from __future__ import annotations

import json
from datetime import UTC, date, datetime
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

SUPPORTED_CATEGORIES = ("linear", "inverse", "spot", "option")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    bybit_api_key: SecretStr | None = Field(default=None, alias="BYBIT_API_KEY")
    bybit_api_secret: SecretStr | None = Field(default=None, alias="BYBIT_API_SECRET")
    bybit_base_url: str = Field(default="https://api.bybit.com", alias="BYBIT_BASE_URL")
    bybit_recv_window_ms: int = Field(default=5000, alias="BYBIT_RECV_WINDOW_MS")
    bybit_account_type: str = Field(default="UNIFIED", alias="BYBIT_ACCOUNT_TYPE")

    sync_categories: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(SUPPORTED_CATEGORIES), alias="SYNC_CATEGORIES"
    )
    sync_window_days: int = Field(default=7, alias="SYNC_WINDOW_DAYS")
    sync_page_limit: int = Field(default=100, alias="SYNC_PAGE_LIMIT")
    page_size: int = Field(default=100, alias="PAGE_SIZE")
    registration_date: date | None = Field(default=None, alias="REGISTRATION_DATE")

    state_db_path: str = Field(default="tradeledger_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    observability_otlp_endpoint: str | None = Field(
        default=None, alias="OBSERVABILITY_OTLP_ENDPOINT"
    )

    @field_validator("sync_categories", mode="before")
    def parse_sync_categories(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return list(SUPPORTED_CATEGORIES)
            if raw.startswith("["):
                try:
                    parsed = json.loads(raw)
                except json.JSONDecodeError as exc:
                    raise ValueError("SYNC_CATEGORIES JSON value must be a list") from exc
                if not isinstance(parsed, list):
                    raise ValueError("SYNC_CATEGORIES JSON value must be a list")
                items = [str(item) for item in parsed]
            else:
                items = raw.split(",")
        else:
            items = [str(item) for item in value]

        categories: list[str] = []
        for item in items:
            category = item.strip().lower()
            if not category or category in categories:
                continue
            if category not in SUPPORTED_CATEGORIES:
                raise ValueError(
                    f"SYNC_CATEGORIES contains unsupported category {category!r}; "
                    f"expected a subset of {', '.join(SUPPORTED_CATEGORIES)}"
                )
            categories.append(category)
        if not categories:
            raise ValueError("SYNC_CATEGORIES must not be empty")
        return categories

    @field_validator("bybit_recv_window_ms")
    def validate_recv_window(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("BYBIT_RECV_WINDOW_MS must be > 0")
        return value

    @field_validator("sync_window_days")
    def validate_sync_window_days(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("SYNC_WINDOW_DAYS must be > 0")
        return value

    @field_validator("sync_page_limit")
    def validate_sync_page_limit(cls, value: int) -> int:
        if value < 1 or value > 100:
            raise ValueError("SYNC_PAGE_LIMIT must be between 1 and 100")
        return value

    @field_validator("page_size")
    def validate_page_size(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("PAGE_SIZE must be > 0")
        return value

    @field_validator("observability_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp"}:
            raise ValueError("OBSERVABILITY_METRICS_EXPORTER must be one of: none, otlp")
        return normalized

    def registration_time_ms(self) -> int | None:
        if self.registration_date is None:
            return None
        start = datetime(
            self.registration_date.year,
            self.registration_date.month,
            self.registration_date.day,
            tzinfo=UTC,
        )
        return int(start.timestamp() * 1000)
