"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest

from sri_shield.core.collection import HashCollection
from sri_shield.core.hashing import generate_sri_hash


@pytest.fixture(autouse=True)
def _mock_settings(monkeypatch, tmp_path):
    """Isolate every test from the developer's environment and working dir."""
    for key in list(os.environ):
        if key.startswith("SRI_SHIELD_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SRI_SHIELD_LOG_LEVEL", "debug")
    monkeypatch.setenv("SRI_SHIELD_UPSTREAM_URL", "http://mock-upstream:3000")
    # Keeps a stray .env in the repo root from leaking in
    monkeypatch.chdir(tmp_path)

    # Reset cached settings
    import sri_shield.config.loader as loader
    loader._settings = None
    yield
    loader._settings = None


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch):
    """Keep structlog on its default (uncached) config so capture_logs works."""
    monkeypatch.setattr("sri_shield.main.setup_logging", lambda **kwargs: None)
    monkeypatch.setattr("sri_shield.__main__.setup_logging", lambda **kwargs: None)


class FakeLoader:
    """In-memory stand-in for ResourceLoader that counts loads per source."""

    def __init__(self, resources: dict[str, bytes]):
        self.resources = resources
        self.calls: list[str] = []

    async def load(self, src: str) -> bytes:
        self.calls.append(src)
        return self.resources[src]


@pytest.fixture
def fake_loader():
    def _make(resources: dict[str, bytes]) -> FakeLoader:
        return FakeLoader(resources)
    return _make


@pytest.fixture
def hashes():
    return HashCollection()


@pytest.fixture
def sri():
    return generate_sri_hash
