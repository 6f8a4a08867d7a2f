"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Iterator, List

import pytest
from loguru import logger

from fakes import FakeConnection, FakeFS


@pytest.fixture
def log_messages() -> Iterator[List[str]]:
    """Collect fleetrun log records emitted during a test."""
    messages: List[str] = []
    logger.enable("fleetrun")
    handler_id = logger.add(lambda m: messages.append(m.record["message"]),
                            level="DEBUG", filter="fleetrun")
    yield messages
    logger.remove(handler_id)
    logger.disable("fleetrun")


@pytest.fixture
def conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fs() -> FakeFS:
    return FakeFS()
