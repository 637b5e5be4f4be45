"""Shared fixtures for hub/spoke socket tests."""

import os
import tempfile

import pytest


@pytest.fixture
def socket_path():
    """A short unix socket path in a fresh temp dir (AF_UNIX paths are length-limited)."""
    with tempfile.TemporaryDirectory(prefix="hs", dir="/tmp" if os.path.isdir("/tmp") else None) as tmp:
        yield os.path.join(tmp, "hub.sock")
