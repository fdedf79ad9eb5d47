"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from agentloop.services.settings import Settings
from tests.helpers import RecordingView


@pytest.fixture
def settings() -> Settings:
    return Settings(api_key="test-key", system_prompt="You are a test assistant.")


@pytest.fixture
def view() -> RecordingView:
    return RecordingView()
