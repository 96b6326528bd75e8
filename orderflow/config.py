"""orderflow configuration.

Loaded once at startup (``load_settings()``) and passed explicitly into
every component constructor. Nothing in the package reads the environment
after that point.
"""

from __future__ import annotations

import re

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the orderflow service."""

    # WhatsApp Cloud API
    whatsapp_number_id: str = ""
    whatsapp_token: str = ""
    whatsapp_api_version: str = "v20.0"
    whatsapp_template_language: str = "en"
    verify_token_meta: str = "shopify123"
    # When set, inbound WhatsApp webhooks must carry a valid X-Hub-Signature-256
    meta_app_secret: str = ""

    # Phone normalization
    default_country_code: str = "92"

    # Storage
    redis_url: str = "redis://localhost:6379/0"
    store_backend: str = "redis"  # redis, memory
    store_key_prefix: str = "orderflow:"
    lock_backend: str = "local"  # local, redis
    # Must outlast the longest effect chain run under one lock (note retries,
    # courier booking, notification)
    lock_timeout_seconds: float = 180.0
    lock_blocking_timeout_seconds: float = 30.0

    # External APIs
    shopify_api_version: str = "2024-01"
    courier_api_url: str = "https://api.courier.example.com/v1"
    http_timeout_seconds: float = 15.0

    # Reconciliation poller
    poll_interval_seconds: int = 300
    poller_enabled: bool = True

    default_shop_name: str = "My Store"
    log_level: str = "INFO"
    port: int = 3000

    model_config = {"env_file": ".env", "extra": "ignore"}

    @field_validator("default_country_code")
    @classmethod
    def country_code_digits(cls, v: str) -> str:
        digits = re.sub(r"[^0-9]", "", v)
        if not digits:
            raise ValueError("default_country_code must contain digits")
        return digits

    def missing_required(self) -> list[str]:
        """Names of settings the service cannot start without."""
        missing = []
        if not self.whatsapp_number_id:
            missing.append("WHATSAPP_NUMBER_ID")
        if not self.whatsapp_token:
            missing.append("WHATSAPP_TOKEN")
        return missing


def load_settings(**overrides) -> Settings:
    """Build the process settings from env vars, ``.env`` and overrides."""
    return Settings(**overrides)
