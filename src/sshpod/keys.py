"""Client key pair and container host keys.

The client key pair is generated once per user and reused for every Pod.
Each container gets its own host key, generated fresh when the bundle is
(re)deployed and kept for as long as the scratch directory survives, so the
ssh client sees the same host identity on every reconnect.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

from sshpod.cluster.base import ClusterControl
from sshpod.exceptions import ClusterError, IdentityError
from sshpod.locks import FileLock
from sshpod.resolver import ResolvedEndpoint

logger = logging.getLogger(__name__)

HOST_KEY_NAME = "ssh_host_ed25519_key"

# Private key arrives on stdin; public key and authorized key as arguments.
# An existing host key is only replaced when FRESH=1.
INSTALL_HOST_KEY_SCRIPT = f"""\
set -eu
B="$1"
FRESH="$2"
PUB="$3"
AUTH="$4"
umask 077
mkdir -p "$B/hostkeys" "$B/logs"
chmod 700 "$B" "$B/hostkeys" "$B/logs"
K="$B/hostkeys/{HOST_KEY_NAME}"
if [ "$FRESH" = 1 ] || [ ! -s "$K" ] || [ ! -s "$K.pub" ]; then
  cat > "$K.tmp"
  printf '%s\\n' "$PUB" > "$K.pub.tmp"
  chmod 600 "$K.tmp" "$K.pub.tmp"
  mv -f "$K.tmp" "$K"
  mv -f "$K.pub.tmp" "$K.pub"
  echo installed
else
  cat > /dev/null
  echo kept
fi
printf '%s\\n' "$AUTH" > "$B/authorized_keys.tmp"
chmod 600 "$B/authorized_keys.tmp"
mv -f "$B/authorized_keys.tmp" "$B/authorized_keys"
"""


@dataclass(frozen=True)
class KeyPair:
    """An OpenSSH key pair.

    Attributes:
        private: Private key in OpenSSH format.
        public: Public key line ("ssh-ed25519 AAAA... comment").
    """

    private: str
    public: str


@dataclass(frozen=True)
class ClientKey:
    """The local client identity.

    Attributes:
        path: Private key path (public key is path + ".pub").
        public: Public key line.
    """

    path: Path
    public: str


def generate_keypair(directory: Path, name: str, comment: str) -> tuple[Path, Path]:
    """Generate an ed25519 key pair with ssh-keygen.

    Args:
        directory: Directory to write the key files into.
        name: Private key file name.
        comment: Key comment.

    Returns:
        Tuple of (private key path, public key path).

    Raises:
        IdentityError: If ssh-keygen is missing or fails.
    """
    private_path = directory / name
    try:
        result = subprocess.run(
            [
                "ssh-keygen", "-q",
                "-t", "ed25519",
                "-N", "",
                "-C", comment,
                "-f", str(private_path),
            ],
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
            timeout=30,
        )
    except FileNotFoundError as e:
        raise IdentityError("ssh-keygen not found; install OpenSSH client") from e
    except subprocess.TimeoutExpired:
        raise IdentityError("ssh-keygen timed out") from None

    if result.returncode != 0:
        raise IdentityError(f"ssh-keygen failed: {result.stderr.strip()}")

    return private_path, directory / f"{name}.pub"


def ensure_client_key(private_path: Path) -> ClientKey:
    """Make sure the local client key pair exists.

    Generation happens in a temporary directory next to the key and the
    files are renamed into place, so a reader never sees a torn key. A lock
    file keeps two first-time invocations from pairing one's private key with
    the other's public key.

    Args:
        private_path: Where the private key lives.

    Returns:
        ClientKey with the public key line.

    Raises:
        IdentityError: If the key cannot be created or read.
    """
    public_path = Path(f"{private_path}.pub")
    cache_dir = private_path.parent

    try:
        cache_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        if not (private_path.exists() and public_path.exists()):
            with FileLock(cache_dir / f"{private_path.name}.lock"):
                if not (private_path.exists() and public_path.exists()):
                    _create_client_key(private_path, public_path)
        public = public_path.read_text().strip()
    except OSError as e:
        raise IdentityError(f"failed to prepare client key {private_path}: {e}") from e

    if not public:
        raise IdentityError(f"client public key {public_path} is empty")
    return ClientKey(path=private_path, public=public)


def _create_client_key(private_path: Path, public_path: Path) -> None:
    logger.info("generating client key %s", private_path)
    tmp_dir = Path(tempfile.mkdtemp(prefix=".keygen-", dir=private_path.parent))
    try:
        tmp_private, tmp_public = generate_keypair(
            tmp_dir, private_path.name, "sshpod"
        )
        os.chmod(tmp_private, 0o600)
        os.chmod(tmp_public, 0o600)
        os.replace(tmp_public, public_path)
        os.replace(tmp_private, private_path)
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)


def generate_host_key(comment: str) -> KeyPair:
    """Generate a brand-new host key pair, keeping nothing on disk.

    Args:
        comment: Key comment.

    Returns:
        KeyPair with both halves as text.
    """
    with tempfile.TemporaryDirectory(prefix="sshpod-hostkey-") as tmp:
        private_path, public_path = generate_keypair(Path(tmp), HOST_KEY_NAME, comment)
        return KeyPair(
            private=private_path.read_text(),
            public=public_path.read_text().strip(),
        )


class IdentityManager:
    """Installs host keys and the authorized client key in a container."""

    def __init__(self, cluster: ClusterControl) -> None:
        """Initialize the identity manager.

        Args:
            cluster: Cluster-control implementation.
        """
        self._cluster = cluster

    def install(
        self,
        endpoint: ResolvedEndpoint,
        client_key: ClientKey,
        fresh: bool,
    ) -> bool:
        """Install the host key and authorize the client key.

        A host key already present in the container is kept unless the
        bundle was freshly deployed; a missing one is always created.
        The caller must hold the endpoint lock.

        Args:
            endpoint: Target container.
            client_key: Local client identity.
            fresh: Whether the bundle was just (re)deployed.

        Returns:
            True if a new host key was installed, False if the old one was kept.

        Raises:
            IdentityError: If key generation or installation fails.
        """
        # Cheap to generate; discarded by the script when the old key stays
        host_key = generate_host_key(f"sshpod@{endpoint.pod_name}")

        try:
            result = self._cluster.exec(
                endpoint.ref,
                [
                    "sh", "-c", INSTALL_HOST_KEY_SCRIPT, "sh",
                    endpoint.base_dir,
                    "1" if fresh else "0",
                    host_key.public,
                    client_key.public,
                ],
                input_data=host_key.private.encode(),
            )
        except ClusterError as e:
            raise IdentityError(str(e)) from e

        if not result.ok:
            raise IdentityError(
                f"failed to install host keys into {endpoint.base_dir}: "
                f"{result.stderr or f'exit {result.returncode}'}"
            )

        installed = result.text.splitlines()[-1:] == ["installed"]
        logger.info("host key %s", "installed" if installed else "reused")
        return installed
