"""Service configuration loaded from TREECHAT_* environment variables."""

from __future__ import annotations

import secrets
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class TreeChatSettings(BaseSettings):
    """Data runtime settings.

    Every field maps to an environment variable with the ``TREECHAT_`` prefix,
    e.g. ``TREECHAT_DOCUMENT_STORE=dynamodb`` sets ``document_store``.
    """

    model_config = SettingsConfigDict(
        env_prefix="TREECHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"

    # -- Document store --------------------------------------------------------
    document_store: Literal["memory", "dynamodb"] = "memory"
    """``memory`` keeps everything in-process and is lost on restart."""

    # DynamoDB (only when document_store = "dynamodb")
    dynamodb_table: str = "TreeChatData"
    dynamodb_region: str | None = None
    dynamodb_endpoint: str | None = None
    """Override for DynamoDB Local or LocalStack."""
    dynamodb_access_key: SecretStr | None = None
    dynamodb_secret_key: SecretStr | None = None

    # -- Limits ----------------------------------------------------------------
    max_tree_items: int = 1000
    max_value_bytes: int = 350 * 1024

    # -- Retry -----------------------------------------------------------------
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.1
    retry_max_delay: float = 2.0
    attempt_timeout: float = 10.0
    """Seconds allowed for a single store call before it counts as failed."""

    # -- Cache -----------------------------------------------------------------
    cache_ttl: float = 300.0
    cache_max_size: int = 1000

    # -- Auth ------------------------------------------------------------------
    auth_token: str | None = None
    """Bearer token shared with the upstream session provider.  Generated at startup if empty."""

    # -- Server ----------------------------------------------------------------
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8000

    # -- Helpers ---------------------------------------------------------------

    def resolve_auth_token(self) -> str:
        """Return the configured token or generate a random one."""
        if self.auth_token:
            return self.auth_token
        return secrets.token_urlsafe(32)


def get_settings() -> TreeChatSettings:
    """Return the cached settings instance.

    Tests call ``_get_settings_cached.cache_clear()`` after changing env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> TreeChatSettings:
    return TreeChatSettings()


from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
