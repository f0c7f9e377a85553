"""Pytest configuration and fixtures for tmbackup tests."""

import logging
from pathlib import Path
from typing import Iterable, Optional

import pytest
from hypothesis import settings, Phase

# Configure hypothesis to use fewer examples for faster test runs
# Disable shrinking phase to speed up tests further
settings.register_profile(
    "fast",
    max_examples=2,
    deadline=10000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate]
)
settings.register_profile("ci", max_examples=50, deadline=10000)
settings.register_profile("dev", max_examples=2, deadline=10000)

# Use the fast profile by default
settings.load_profile("fast")


@pytest.fixture
def reset_tmbackup_logger():
    """Drop handlers installed by setup_logging so they do not outlive a test."""
    yield
    logger = logging.getLogger("tmbackup")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()


@pytest.fixture
def make_destination(tmp_path):
    """
    Factory for a destination folder laid out like a real backup drive.

    Usage:
        root = make_destination(
            snapshots=["2022-04-19-202210"],
            latest="2022-04-19-202210",
            in_progress=True,
        )
    """

    def _make(
        name: str = "target",
        snapshots: Iterable[str] = (),
        latest: Optional[str] = None,
        in_progress: bool = False,
        marker: bool = True,
    ) -> Path:
        root = tmp_path / name
        root.mkdir(parents=True)
        if marker:
            (root / "backup.marker").touch()
        for snapshot in snapshots:
            (root / snapshot).mkdir()
        if latest is not None:
            (root / "latest").symlink_to(latest)
        if in_progress:
            (root / "backup.inprogress").touch()
        return root

    return _make
