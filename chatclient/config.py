"""
Client configuration.

Values come from constructor arguments or, via `Settings.from_env`, from
CHAT_* environment variables.
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel, field_validator

from chatcrypto.vault import MIN_ITERATIONS

ENV_PREFIX = "CHAT_"


class Settings(BaseModel):
    """Runtime settings for the chat client core"""
    backend_url: str = "http://localhost:8090"
    database_url: str = "sqlite+aiosqlite:///./chat_client.db"
    history_ttl_days: int = 7
    history_page_size: int = 50
    max_attachment_bytes: int = 10 * 1024 * 1024
    pbkdf2_iterations: int = MIN_ITERATIONS
    request_timeout: float = 30.0

    @field_validator("pbkdf2_iterations")
    @classmethod
    def check_iterations(cls, value: int) -> int:
        if value < MIN_ITERATIONS:
            raise ValueError(f"must be at least {MIN_ITERATIONS}")
        return value

    @field_validator("history_ttl_days", "history_page_size", "max_attachment_bytes")
    @classmethod
    def check_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from CHAT_* environment variables.

        Unset variables keep their defaults; invalid ones raise ValidationError.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            env_name = ENV_PREFIX + name.upper()
            if env_name in environ:
                values[name] = environ[env_name]
        return cls(**values)
