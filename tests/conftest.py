"""Shared fixtures for live API tests.

Live tests talk to a real OpenAI-compatible server. They are skipped unless
``OPENAI_API_KEY`` (or ``RELAY_BASE_URL`` for a local server such as
Ollama) is set.
"""

from __future__ import annotations

import os

import pytest

from relay_llm import Client, OpenAICompatAdapter, ProviderConfig, RetryPolicy

# ------------------------------------------------------------------ #
# Endpoint detection
# ------------------------------------------------------------------ #

API_KEY = os.environ.get("OPENAI_API_KEY", "")
BASE_URL = os.environ.get("RELAY_BASE_URL") or None

# ------------------------------------------------------------------ #
# Client fixtures
# ------------------------------------------------------------------ #

_TIMEOUT = 60.0
_RETRY = RetryPolicy(max_retries=1)


@pytest.fixture
def live_client() -> Client:
    """Client with only the OpenAI-compatible adapter registered."""
    c = Client(retry_policy=_RETRY)
    c.register_adapter(
        "openai-compat",
        OpenAICompatAdapter(
            ProviderConfig(api_key=API_KEY or "local", base_url=BASE_URL, timeout=_TIMEOUT)
        ),
    )
    return c
