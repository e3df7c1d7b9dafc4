"""Shared pytest fixtures for fleet-driver tests."""

import shutil
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from fakes import FakeBackend, FakeDeadline, make_config  # noqa: E402


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with requires_openssl when the binary is missing."""
    if shutil.which('openssl'):
        return
    skip_marker = pytest.mark.skip(reason="requires the openssl binary")
    for item in items:
        if "requires_openssl" in item.keywords:
            item.add_marker(skip_marker)


def pytest_configure(config):
    config.addinivalue_line("markers", "requires_openssl: test shells out to openssl")


@pytest.fixture
def deadline():
    """Unbounded deadline on a virtual clock; sleeps return immediately."""
    return FakeDeadline()


@pytest.fixture
def fleet_config(tmp_path):
    """Valid GCE configuration with the authority under tmp_path."""
    return make_config(tmp_path)


@pytest.fixture
def fake_backend(fleet_config):
    return FakeBackend(fleet_config)
