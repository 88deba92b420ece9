"""Pytest hooks and fixtures."""

import shutil

import pytest

from remedybot.queue.streams import StreamStore


def pytest_configure(config):
    """Register custom markers (also in pyproject.toml)."""
    config.addinivalue_line("markers", "docker: needs a reachable docker daemon")


def pytest_collection_modifyitems(config, items):
    """Skip docker tests when the docker CLI is not installed."""
    if shutil.which("docker"):
        return
    skip = pytest.mark.skip(reason="Docker CLI not installed")
    for item in items:
        if "docker" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def streams(tmp_path):
    """Fresh sqlite-backed stream store under tmp_path."""
    return StreamStore(tmp_path / "queue.db")
