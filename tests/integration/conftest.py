"""Fixtures for tests that talk to a real cluster.

Markers are registered in pyproject.toml.
"""

from __future__ import annotations

import os
import shutil
import subprocess

import pytest


@pytest.fixture(scope="session")
def kubernetes_available() -> bool:
    """Whether kubectl is installed and can list namespaces."""
    if shutil.which("kubectl") is None:
        return False
    try:
        probe = subprocess.run(
            ["kubectl", "get", "namespaces", "-o", "name"],
            capture_output=True,
            timeout=10,
        )
    except (subprocess.TimeoutExpired, OSError):
        return False
    return probe.returncode == 0


@pytest.fixture
def require_kubernetes(kubernetes_available: bool) -> None:
    """Skip unless a cluster is reachable."""
    if not kubernetes_available:
        pytest.skip("no reachable kubernetes cluster")


@pytest.fixture
def sshpod_host() -> str:
    """Target from SSHPOD_TEST_HOST, e.g. pod--web.namespace--default.sshpod."""
    host = os.environ.get("SSHPOD_TEST_HOST")
    if not host:
        pytest.skip("SSHPOD_TEST_HOST not set")
    return host
