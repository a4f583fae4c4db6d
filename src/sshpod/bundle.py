"""Deployment of the sshd bundle into a container.

The bundle lives at ``/tmp/sshpod/<podUID>/<container>/bundle/``. A marker
file written after the executable records which bundle version and
architecture are installed; its presence is the only cache signal, and it
is re-probed on every connection.
"""

from __future__ import annotations

import gzip
import logging
import lzma
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from sshpod import __version__
from sshpod.cluster.base import ClusterControl, ExecResult
from sshpod.exceptions import ClusterError, DeployFailedError
from sshpod.resolver import REMOTE_BASE, ResolvedEndpoint

logger = logging.getLogger(__name__)

BUNDLE_VERSION = f"{__version__}+sshd1"

MARKER_NAME = ".sshpod-bundle"

PROBE_SCRIPT = """\
M="$1/bundle/.sshpod-bundle"
if [ ! -f "$M" ]; then echo absent; exit 0; fi
if [ -x "$1/bundle/sshd" ]; then echo present; else echo noexe; fi
cat "$M"
"""

ENCODING_SCRIPT = """\
if command -v xz >/dev/null 2>&1; then echo xz
elif command -v gzip >/dev/null 2>&1; then echo gzip
else echo plain
fi
"""

# Marker goes away first and comes back last, so an interrupted upload
# can never look like a cache hit.
INSTALL_SCRIPT = f"""\
set -eu
B="$1"
umask 077
mkdir -p "$B/bundle"
chmod 711 "{REMOTE_BASE}" "$(dirname "$B")" 2>/dev/null || true
chmod 700 "$B" "$B/bundle"
rm -f "$B/bundle/{MARKER_NAME}"
TMP="$B/bundle/.sshd.partial"
case "$2" in
  xz) xz -dc > "$TMP" ;;
  gzip) gzip -dc > "$TMP" ;;
  *) cat > "$TMP" ;;
esac
chmod 700 "$TMP"
mv -f "$TMP" "$B/bundle/sshd"
printf '%s %s\\n' "$3" "$4" > "$B/bundle/{MARKER_NAME}.tmp"
mv -f "$B/bundle/{MARKER_NAME}.tmp" "$B/bundle/{MARKER_NAME}"
"""


class BundleState(str, Enum):
    """Cache state of a bundle in one container."""

    VERIFIED = "verified"
    STALE = "stale"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DeployResult:
    """Outcome of ensure_bundle.

    Attributes:
        state: State observed before any upload.
        fresh: Whether a new bundle was uploaded during this call.
        encoding: Transfer encoding used for the upload, if any.
    """

    state: BundleState
    fresh: bool
    encoding: str | None = None


def bundle_filename(arch: str) -> str:
    """Return the artifact file name for an architecture."""
    return f"sshd_{arch}.xz"


def locate_bundle(arch: str, bundle_dir: Path | None = None) -> Path:
    """Find the pre-built bundle for an architecture.

    Search order: the configured bundle directory, the package's bundles
    directory, ./bundles, then next to the running executable.

    Args:
        arch: Normalized architecture ("amd64" or "arm64").
        bundle_dir: Optional directory searched first.

    Returns:
        Path to the xz-compressed sshd bundle.

    Raises:
        DeployFailedError: If no candidate exists.
    """
    filename = bundle_filename(arch)
    exe_dir = Path(sys.argv[0]).resolve().parent
    candidates: list[Path] = []
    if bundle_dir is not None:
        candidates.append(bundle_dir / filename)
    candidates.extend([
        Path(__file__).parent / "bundles" / filename,
        Path.cwd() / "bundles" / filename,
        exe_dir / filename,
        exe_dir / "bundles" / filename,
        exe_dir.parent / "bundles" / filename,
    ])

    seen: set[Path] = set()
    for candidate in candidates:
        if candidate in seen:
            continue
        seen.add(candidate)
        if candidate.is_file():
            return candidate

    raise DeployFailedError(
        f"bundle file {filename} not found; place it in SSHPOD_BUNDLE_DIR, "
        "alongside the sshpod executable, or in ./bundles"
    )


def encode_payload(xz_data: bytes, encoding: str) -> bytes:
    """Re-encode an xz bundle for the chosen transfer encoding.

    Args:
        xz_data: Bundle as shipped (xz-compressed).
        encoding: "xz", "gzip", or "plain".

    Returns:
        Bytes to stream into the container.

    Raises:
        DeployFailedError: If the bundle cannot be decompressed.
    """
    if encoding == "xz":
        return xz_data
    try:
        raw = lzma.decompress(xz_data)
    except lzma.LZMAError as e:
        raise DeployFailedError(f"failed to decompress bundle: {e}") from e
    if encoding == "gzip":
        return gzip.compress(raw)
    return raw


class BundleManager:
    """Keeps an architecture-matched sshd bundle in the container."""

    def __init__(
        self,
        cluster: ClusterControl,
        bundle_dir: Path | None = None,
        upload_timeout: int = 120,
    ) -> None:
        """Initialize the bundle manager.

        Args:
            cluster: Cluster-control implementation.
            bundle_dir: Optional directory searched first for bundles.
            upload_timeout: Seconds allowed for streaming the bundle.
        """
        self._cluster = cluster
        self._bundle_dir = bundle_dir
        self._upload_timeout = upload_timeout

    def probe(self, endpoint: ResolvedEndpoint) -> BundleState:
        """Check the marker and executable inside the container.

        Args:
            endpoint: Target container.

        Returns:
            BundleState for this client's version and the endpoint's arch.

        Raises:
            DeployFailedError: If the probe itself cannot run.
        """
        result = self._exec(
            endpoint, ["sh", "-c", PROBE_SCRIPT, "sh", endpoint.base_dir]
        )
        if not result.ok:
            raise DeployFailedError(
                f"failed to probe bundle in {endpoint.base_dir}: {result.stderr}"
            )

        lines = result.text.splitlines()
        status = lines[0].strip() if lines else "absent"
        if status == "absent":
            return BundleState.UNKNOWN
        marker = lines[1].strip() if len(lines) > 1 else ""
        if status == "present" and marker == f"{BUNDLE_VERSION} {endpoint.arch}":
            return BundleState.VERIFIED
        logger.info("bundle marker is stale (%s)", marker or status)
        return BundleState.STALE

    def negotiate_encoding(self, endpoint: ResolvedEndpoint) -> str:
        """Pick xz, gzip, or plain depending on the container's tools."""
        result = self._exec(endpoint, ["sh", "-c", ENCODING_SCRIPT])
        if not result.ok:
            raise DeployFailedError(
                f"failed to probe decompressors in pod {endpoint.pod_name}: "
                f"{result.stderr}"
            )
        encoding = result.text.strip()
        return encoding if encoding in ("xz", "gzip") else "plain"

    def ensure_bundle(self, endpoint: ResolvedEndpoint) -> DeployResult:
        """Make sure the bundle is installed, uploading it if needed.

        The caller must hold the endpoint lock (sshpod.locks.endpoint_lock).

        Args:
            endpoint: Target container.

        Returns:
            DeployResult describing what happened.

        Raises:
            DeployFailedError: If probing or uploading fails.
        """
        state = self.probe(endpoint)
        logger.info(
            "bundle state %s (expected %s %s)", state.value, BUNDLE_VERSION, endpoint.arch
        )
        if state is BundleState.VERIFIED:
            return DeployResult(state=state, fresh=False)

        bundle_path = locate_bundle(endpoint.arch, self._bundle_dir)
        logger.info("using bundle file %s", bundle_path)
        try:
            xz_data = bundle_path.read_bytes()
        except OSError as e:
            raise DeployFailedError(f"failed to read bundle {bundle_path}: {e}") from e

        encoding = self.negotiate_encoding(endpoint)
        payload = encode_payload(xz_data, encoding)
        logger.info("installing bundle via %s (%d bytes)", encoding, len(payload))

        result = self._exec(
            endpoint,
            [
                "sh", "-c", INSTALL_SCRIPT, "sh",
                endpoint.base_dir, encoding, BUNDLE_VERSION, endpoint.arch,
            ],
            input_data=payload,
            timeout=self._upload_timeout,
        )
        if not result.ok:
            raise DeployFailedError(
                f"failed to install bundle into {endpoint.base_dir} "
                f"(via {encoding}): {result.stderr or f'exit {result.returncode}'}"
            )

        logger.info("bundle install completed")
        return DeployResult(state=state, fresh=True, encoding=encoding)

    def _exec(
        self,
        endpoint: ResolvedEndpoint,
        command: list[str],
        input_data: bytes | None = None,
        timeout: int | None = None,
    ) -> ExecResult:
        try:
            return self._cluster.exec(
                endpoint.ref, command, input_data=input_data, timeout=timeout
            )
        except ClusterError as e:
            raise DeployFailedError(str(e)) from e
