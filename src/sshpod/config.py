"""Runtime configuration for sshpod."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def default_cache_dir() -> Path:
    """Return the per-user cache directory (~/.cache/sshpod)."""
    return Path.home() / ".cache" / "sshpod"


@dataclass
class SshpodConfig:
    """Configuration for a proxy invocation.

    Attributes:
        cache_dir: Directory holding the client key pair and lock files.
        kubectl: kubectl-compatible binary to spawn (e.g. "kubectl", "oc").
        bundle_dir: Extra directory searched first for sshd bundles.
        kubectl_timeout: Timeout in seconds for ordinary kubectl calls.
        upload_timeout: Timeout in seconds for streaming the bundle.
        daemon_timeout: Timeout in seconds for starting the remote sshd.
        forward_timeout: Timeout in seconds for port-forward to report a port.
    """

    cache_dir: Path = field(default_factory=default_cache_dir)
    kubectl: str = "kubectl"
    bundle_dir: Path | None = None
    kubectl_timeout: int = 30
    upload_timeout: int = 120
    daemon_timeout: int = 40
    forward_timeout: int = 10

    @property
    def client_key_path(self) -> Path:
        """Path of the local client private key."""
        return self.cache_dir / "id_ed25519"

    @property
    def lock_dir(self) -> Path:
        """Directory for per-endpoint lock files."""
        return self.cache_dir / "locks"

    @classmethod
    def from_env(cls) -> SshpodConfig:
        """Build a config, honouring SSHPOD_* environment overrides.

        Returns:
            SshpodConfig with environment values applied.
        """
        config = cls()

        cache_dir = os.environ.get("SSHPOD_CACHE_DIR")
        if cache_dir:
            config.cache_dir = Path(cache_dir).expanduser()

        kubectl = os.environ.get("SSHPOD_KUBECTL")
        if kubectl:
            config.kubectl = kubectl

        bundle_dir = os.environ.get("SSHPOD_BUNDLE_DIR")
        if bundle_dir:
            config.bundle_dir = Path(bundle_dir).expanduser()

        timeout = os.environ.get("SSHPOD_KUBECTL_TIMEOUT")
        if timeout:
            try:
                config.kubectl_timeout = int(timeout)
            except ValueError:
                pass  # Keep the default on garbage input

        return config
