"""
Configuration loading and validation.

Loads taskdesk configuration from a YAML file. Secrets (store API key,
account password) are resolved from environment variables and are never
stored in config files.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from taskdesk_shared.schemas.common import Role


class StoreConfig(BaseModel):
    backend: Literal["rest", "sql"] = "rest"
    url: str = "http://localhost:54321"
    api_key_env: str = "TASKDESK_STORE_KEY"
    verify_tls: bool = True
    request_timeout_seconds: int = 30
    database_url: str = "sqlite+aiosqlite:///./data/taskdesk.db"

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)


class AuthConfig(BaseModel):
    url: Optional[str] = None  # defaults to the store url
    email: Optional[str] = None
    password_env: str = "TASKDESK_PASSWORD"

    @property
    def password(self) -> str | None:
        return os.environ.get(self.password_env)


class RetryPolicy(BaseModel):
    """Bounded exponential backoff."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=0.5, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=10.0, ge=0)

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryPolicy":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self

    def delays(self) -> list[float]:
        """Sleep before each retry; one entry fewer than max_attempts."""
        result = []
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            result.append(min(delay, self.max_delay))
            delay *= self.backoff_multiplier
        return result


class OrganizationsConfig(BaseModel):
    # None = a membership without a role is a data-integrity error
    missing_role_fallback: Optional[Role] = None


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class TaskdeskConfig(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    profile_retry: RetryPolicy = Field(default_factory=RetryPolicy)
    organizations: OrganizationsConfig = Field(default_factory=OrganizationsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def auth_url(self) -> str:
        return self.auth.url or self.store.url


def load_config(path: str | Path) -> TaskdeskConfig:
    """Load and validate taskdesk configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return TaskdeskConfig.model_validate(raw)
