"""Shared fixtures for the task tests."""

from __future__ import annotations

import logging
from typing import List

import pytest

from aws_tasks import config


@pytest.fixture
def echoed():
    """Capture report lines (uncoloured) and restore the defaults afterwards."""
    lines: List[str] = []
    config.setup(logger=logging.getLogger("aws_ops.test"), echo=lines.append, colour=False)
    yield lines
    config.setup()


@pytest.fixture
def no_sleep(monkeypatch):
    """Make retry backoff instantaneous."""
    monkeypatch.setattr("core.retry.time.sleep", lambda _s: None)
