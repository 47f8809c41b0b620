"""Pytest configuration and fixtures for testing."""

from typing import Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from chat_relay.core.config import PROVIDER_PROFILES, RelayConfig
from chat_relay.main import create_app

RELAY_KEY = "rly_test_key"
UPSTREAM_KEY = "sk-upstream-secret"
UPSTREAM_BASE = "https://upstream.test"


def _make_config(provider: str = "deepseek", **overrides) -> RelayConfig:
    profile = PROVIDER_PROFILES[provider]
    values = dict(
        profile=profile,
        base_url=UPSTREAM_BASE,
        upstream_api_key=UPSTREAM_KEY,
        upstream_model=profile.default_model,
        model_aliases=("gpt-4o",),
        allowed_relay_keys=(RELAY_KEY,),
    )
    values.update(overrides)
    return RelayConfig(**values)


@pytest.fixture
def make_config() -> Callable[..., RelayConfig]:
    """Factory for RelayConfig values pointing at a fake upstream."""
    return _make_config


@pytest.fixture
def relay_config() -> RelayConfig:
    return _make_config()


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {RELAY_KEY}"}


@pytest.fixture
def relay_client_factory():
    """
    Builds a TestClient for the relay whose upstream is an httpx.MockTransport.

    Usage: `with relay_client_factory(handler) as client: ...`
    """
    def factory(handler, relay_config: RelayConfig = None) -> TestClient:
        upstream = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        app = create_app(relay_config or _make_config(), client=upstream)
        return TestClient(app)

    return factory
