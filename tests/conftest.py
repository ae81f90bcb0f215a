"""Shared test fixtures.

Settings are cached process-wide; every test starts from a clean cache and
without stray ``TREECHAT_*`` overrides from the developer's shell.  The
``TREECHAT_DYNAMODB_*`` variables are kept since they gate the DynamoDB tests.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from treechat.data_runtime.settings import _get_settings_cached


def _set_env(monkeypatch: pytest.MonkeyPatch, key: str, value: str) -> None:
    """Set an env var and invalidate the settings cache."""
    monkeypatch.setenv(key, value)
    _get_settings_cached.cache_clear()


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in list(os.environ):
        if key.startswith("TREECHAT_") and not key.startswith("TREECHAT_DYNAMODB_"):
            monkeypatch.delenv(key)
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


@pytest.fixture
def set_env(monkeypatch: pytest.MonkeyPatch):
    """Return a setter that overrides an env var for the current test."""
    return lambda key, value: _set_env(monkeypatch, key, value)
