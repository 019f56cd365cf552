"""
backend/config.py

Application configuration via Pydantic Settings.
All values can be overridden with environment variables or a .env file.

Quick start - create a .env file in your project root:
    DB_PATH=/var/lib/shieldgate/shieldgate.db
    ALERT_WEBHOOK_URL=https://hooks.example.com/security
    ALLOWLIST_IPS=10.0.0.5,10.0.0.6
"""

from __future__ import annotations

import json
from typing import Annotated

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list(v):
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("["):
            try:
                return json.loads(v)
            except ValueError:
                pass
        return [item.strip() for item in v.split(",") if item.strip()]
    return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage
    DB_PATH: str = "data/shieldgate.db"
    STORAGE_TIMEOUT_SECONDS: float = 2.0

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Caches - bounded staleness per instance
    RULE_CACHE_TTL_SECONDS: int = 60
    BLOCK_CACHE_TTL_SECONDS: int = 10

    # Sliding-window counters
    HIT_RETENTION_SECONDS: int = 120
    IP_COUNTER_MAX_KEYS: int = 10_000
    FINGERPRINT_MAX_KEYS: int = 500
    FINGERPRINT_UA_LENGTH: int = 64
    FINGERPRINT_IPV4_PREFIX: int = 24
    FINGERPRINT_IPV6_PREFIX: int = 48
    FINGERPRINT_FLOOD_WINDOW_SECONDS: int = 5
    FINGERPRINT_FLOOD_THRESHOLD: int = 15

    # Durable fallback is consulted once the in-memory count passes this
    # fraction of a rule's threshold
    DURABLE_CHECK_RATIO: float = 0.5

    # Escalation
    ESCALATION_LOOKBACK_HOURS: int = 24
    ESCALATION_FLAT_AFTER: int = 3
    MAX_BLOCK_MINUTES: int = 1440

    # Request log sampling (1-in-N)
    LOG_SAMPLE_EVERY: int = 5
    LOG_SAMPLE_EVERY_BLOCKED: int = 3

    # Alerts
    ALERT_WEBHOOK_URL: str = ""
    ALERT_TIMEOUT_SECONDS: float = 5.0
    ALERT_QUEUE_SIZE: int = 200

    # Retention
    REQUEST_LOG_RETENTION_DAYS: int = 7
    AUDIT_LOG_RETENTION_DAYS: int = 30
    BLOCK_RETENTION_DAYS: int = 30
    CLEANUP_INTERVAL_SECONDS: int = 3600

    # Never blocked by the system (admins can still block them manually)
    ALLOWLIST_IPS: Annotated[list[str], NoDecode] = []

    # Substring match against the request endpoint
    SENSITIVE_ENDPOINTS: Annotated[list[str], NoDecode] = [
        "/auth",
        "/login",
        "/admin",
        "/security",
        "/leads",
        "/api-keys",
    ]

    SEED_DEFAULT_RULES: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"

    @field_validator("ALLOWLIST_IPS", "SENSITIVE_ENDPOINTS", mode="before")
    @classmethod
    def parse_list(cls, v):
        return _parse_list(v)


settings = Settings()
