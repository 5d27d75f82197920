"""Shared fixtures for unit tests."""

import logging
from pathlib import Path

import pytest

from tests.utils.sites import make_site
from user_sites.domain.sandbox import HomeRoot


@pytest.fixture(autouse=True)
def enable_log_propagation():
    """Ensure logs propagate to root so caplog can catch them."""
    logger = logging.getLogger("user_sites")
    old_propagate = logger.propagate
    logger.propagate = True
    yield
    logger.propagate = old_propagate


@pytest.fixture(name="home_root")
def home_root_fixture(tmp_path: Path) -> Path:
    """Directory holding one home per test user."""
    root = tmp_path / "home"
    root.mkdir()
    return root


@pytest.fixture(name="homes")
def homes_fixture(home_root: Path) -> HomeRoot:
    """Home lookup rooted at the test home directory."""
    return HomeRoot(home_root)


@pytest.fixture(name="site_root")
def site_root_fixture(home_root: Path) -> Path:
    """The ``www`` directory of user ``alice``."""
    return make_site(home_root, "alice")
