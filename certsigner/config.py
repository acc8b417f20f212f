"""
certsigner — Configuration System

All configuration is Pydantic-validated and loaded from:
1. A YAML file (optional)
2. Deployment environment variables (injected by load_config)
3. CERTSIGNER_-prefixed environment variables (pydantic-settings)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# The acknowledgement topic is part of the contract with the upload tracker
# and is never renamed per deployment.
ACK_TOPIC = "certify_ack"

_TRUTHY = ("true", "1", "yes")


# ─── Sub-configs ──────────────────────────────────────────────────


class RedisConfig(BaseModel):
    url: str = "redis://localhost:6379/0"
    password: str = ""
    socket_timeout_s: float | None = None

    @property
    def full_url(self) -> str:
        """Build URL with password injected."""
        clean_pw = self.password.strip() if self.password else ""
        if clean_pw and "://" in self.url and "@" not in self.url:
            scheme, rest = self.url.split("://", 1)
            return f"{scheme}://:{clean_pw}@{rest}"
        return self.url


class TopicsConfig(BaseModel):
    certify: str = "certify"
    certified: str = "certified"


class ConsumerConfig(BaseModel):
    group: str = "certificate_signer"
    block_ms: int = Field(default=1000, ge=0)
    batch_size: int = Field(default=10, ge=1)
    prefetch: int = Field(default=50, ge=1)
    # Pending entries idle this long are assumed orphaned and reclaimed.
    claim_idle_ms: int = Field(default=60_000, ge=0)
    max_deliveries: int = Field(default=5, ge=1)
    reclaim_interval_s: float = Field(default=30.0, gt=0)
    # Backoff between in-place retries of a message whose publish failed.
    redrive_backoff_s: float = Field(default=1.0, ge=0)
    redrive_backoff_max_s: float = Field(default=30.0, ge=0)


class ProducerConfig(BaseModel):
    publish_retries: int = Field(default=2, ge=0, le=10)
    retry_backoff_s: float = Field(default=0.2, ge=0)
    max_stream_length: int | None = None  # approximate MAXLEN on produced streams


class SignerConfig(BaseModel):
    url: str = "http://localhost:8081/api/v1/certify"
    timeout_s: float = Field(default=30.0, gt=0)
    auth_token: str = ""

    @model_validator(mode="after")
    def _strip_token(self) -> SignerConfig:
        # Secret managers can inject trailing \r\n into env vars
        if self.auth_token:
            object.__setattr__(self, "auth_token", self.auth_token.strip())
        return self


class AcknowledgementConfig(BaseModel):
    enabled: bool = False


class MetricsConfig(BaseModel):
    flush_interval_s: float = Field(default=60.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class RelayConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="CERTSIGNER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = "divoc-cert"

    redis: RedisConfig = Field(default_factory=RedisConfig)
    topics: TopicsConfig = Field(default_factory=TopicsConfig)
    consumer: ConsumerConfig = Field(default_factory=ConsumerConfig)
    broker: ProducerConfig = Field(default_factory=ProducerConfig)
    signer: SignerConfig = Field(default_factory=SignerConfig)
    acknowledgement: AcknowledgementConfig = Field(default_factory=AcknowledgementConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> RelayConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    if redis_url := os.environ.get("CERTSIGNER_REDIS__URL"):
        raw.setdefault("redis", {})["url"] = redis_url
    if redis_pw := os.environ.get("CERTSIGNER_REDIS_PASSWORD"):
        raw.setdefault("redis", {})["password"] = redis_pw
    if certify_topic := os.environ.get("CERTIFY_TOPIC"):
        raw.setdefault("topics", {})["certify"] = certify_topic
    if certified_topic := os.environ.get("CERTIFIED_TOPIC"):
        raw.setdefault("topics", {})["certified"] = certified_topic
    if ack_enabled := os.environ.get("ENABLE_CERTIFY_ACKNOWLEDGEMENT"):
        raw.setdefault("acknowledgement", {})["enabled"] = ack_enabled.strip().lower() in _TRUTHY
    if signer_url := os.environ.get("CERTSIGNER_SIGNER__URL"):
        raw.setdefault("signer", {})["url"] = signer_url
    if signer_token := os.environ.get("CERTSIGNER_SIGNER_TOKEN"):
        raw.setdefault("signer", {})["auth_token"] = signer_token
    if instance_id := os.environ.get("CERTSIGNER_INSTANCE_ID"):
        raw["instance_id"] = instance_id

    if overrides:
        raw = _deep_merge(raw, overrides)

    return RelayConfig(**raw)
