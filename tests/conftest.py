"""
Global test configuration with support for different test types.
"""

from collections.abc import Callable
from contextlib import suppress
import logging
import os

import httpx
import pytest

from attio_core.config import FrozenConfig


# --- Environment Isolation (Autouse) ---
@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Prevent python-dotenv from loading project .env files during tests.

    Tests should only see environment that they explicitly set.

    Opt-in escape hatch: mark a test with @pytest.mark.allow_dotenv
    to permit .env loading for that specific test.
    """
    if request.node.get_closest_marker("allow_dotenv"):
        return
    with suppress(Exception):
        monkeypatch.setattr(
            "dotenv.load_dotenv", lambda *_args, **_kwargs: False, raising=False
        )


@pytest.fixture(autouse=True)
def isolate_attio_env(request, monkeypatch):
    """Ensure a clean ATTIO_* environment for each test.

    - Removes all ATTIO_* variables and the DEBUG toggle before each test
    - Leaves other variables intact for stability

    Escape hatch: @pytest.mark.allow_env_pollution keeps the env unchanged.
    """
    if request.node.get_closest_marker("allow_env_pollution"):
        return

    for key in list(os.environ.keys()):
        if key.startswith("ATTIO_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("DEBUG", raising=False)


# --- Logging Fixtures ---
@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    """Sets the log level for noisy external libraries to WARNING."""
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# --- Test Environment Markers ---
def pytest_configure(config):
    """Configure custom markers for test organization."""
    markers = [
        "unit: Fast, isolated unit tests",
        "allow_dotenv: Permit python-dotenv to load .env files",
        "allow_env_pollution: Keep ATTIO_* variables from the real environment",
    ]
    for marker in markers:
        config.addinivalue_line("markers", marker)


# --- Core Fixtures ---


@pytest.fixture
def mock_api_key():
    """Provide a consistent, fake API key for tests."""
    return "test_api_key_12345_67890_abcdef"


@pytest.fixture
def frozen_config(mock_api_key) -> FrozenConfig:
    """Config with a key, no timeout, and instant retries."""
    return FrozenConfig(
        api_key=mock_api_key,
        base_url="https://api.attio.test",
        timeout_seconds=None,
        initial_delay=0.0,
        max_delay=0.0,
    )


@pytest.fixture
def mock_transport() -> Callable[..., httpx.MockTransport]:
    """Build an httpx.MockTransport that records every request it serves.

    Usage:
        transport = mock_transport(lambda request: httpx.Response(200, json={}))
        ...
        assert len(transport.calls) == 1
    """

    def _build(
        handler: Callable[[httpx.Request], httpx.Response],
    ) -> httpx.MockTransport:
        calls: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return handler(request)

        transport = httpx.MockTransport(_record)
        transport.calls = calls  # type: ignore[attr-defined]
        return transport

    return _build
