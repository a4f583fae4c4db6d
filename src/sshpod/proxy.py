"""The ProxyCommand flow: hostname in, raw byte stream out."""

from __future__ import annotations

import getpass
import logging
import socket
import sys

from sshpod.bridge import bridge
from sshpod.bundle import BundleManager
from sshpod.cluster.base import ClusterControl
from sshpod.cluster.kubectl import KubectlCluster
from sshpod.config import SshpodConfig
from sshpod.daemon import DaemonSupervisor
from sshpod.exceptions import TunnelFailedError
from sshpod.hostspec import parse_host
from sshpod.keys import IdentityManager, ensure_client_key
from sshpod.locks import endpoint_lock
from sshpod.resolver import WorkloadResolver

logger = logging.getLogger(__name__)


def default_user() -> str:
    """Return the local login name."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "root"


def run(
    host: str,
    user: str | None = None,
    port: int | None = None,
    config: SshpodConfig | None = None,
    cluster: ClusterControl | None = None,
    stdin_fd: int | None = None,
    stdout_fd: int | None = None,
) -> int:
    """Resolve, deploy, start sshd, and bridge stdio to it.

    Nothing is written to stdout until the tunnel is connected, so every
    failure leaves the ssh client with an empty stream and a non-zero exit.

    Args:
        host: sshpod hostname (%h).
        user: SSH login user (%r); defaults to the local user.
        port: SSH port (%p); accepted for compatibility.
        config: Runtime configuration (defaults to SshpodConfig.from_env()).
        cluster: Cluster-control implementation (defaults to kubectl).
        stdin_fd: Descriptor to read client bytes from (default stdin).
        stdout_fd: Descriptor to write remote bytes to (default stdout).

    Returns:
        Exit code, 0 when the stream closed cleanly.

    Raises:
        TunnelFailedError: If sshd never answered or the forward died.
        SshpodError: On any other failure before or during bridging.
    """
    config = config or SshpodConfig.from_env()
    login_user = user or default_user()
    target = parse_host(host, user=login_user, ssh_port=port)

    if cluster is None:
        cluster = KubectlCluster(
            binary=config.kubectl,
            timeout=config.kubectl_timeout,
            forward_timeout=config.forward_timeout,
        )

    endpoint = WorkloadResolver(cluster).resolve(target)
    client_key = ensure_client_key(config.client_key_path)

    with endpoint_lock(config.lock_dir, endpoint.pod_uid, endpoint.container):
        deploy = BundleManager(
            cluster,
            bundle_dir=config.bundle_dir,
            upload_timeout=config.upload_timeout,
        ).ensure_bundle(endpoint)
        logger.info("sshd bundle ready for pod %s", endpoint.pod_name)

        IdentityManager(cluster).install(endpoint, client_key, fresh=deploy.fresh)

        remote_port = DaemonSupervisor(
            cluster, timeout=config.daemon_timeout
        ).ensure_running(endpoint, restart=deploy.fresh)

    logger.info("starting port-forward to %s:%d", endpoint.pod_name, remote_port)
    with cluster.port_forward(
        endpoint.context, endpoint.namespace, endpoint.pod_name, remote_port
    ) as forward:
        local_port = forward.local_port
        logger.info(
            "port-forward established: 127.0.0.1:%d -> %s:%d",
            local_port, endpoint.pod_name, remote_port,
        )
        try:
            sock = socket.create_connection(
                ("127.0.0.1", local_port), timeout=config.forward_timeout
            )
        except OSError as e:
            raise TunnelFailedError(
                f"failed to connect to forwarded sshd port {local_port}: {e}"
            ) from e

        with sock:
            sock.settimeout(None)
            stats = bridge(
                sock,
                sys.stdin.fileno() if stdin_fd is None else stdin_fd,
                sys.stdout.fileno() if stdout_fd is None else stdout_fd,
            )

        # sshd speaks first, so a silent close means the channel never came up
        if stats.from_remote == 0:
            raise TunnelFailedError(
                f"channel to {endpoint.pod_name}:{remote_port} closed before "
                "sshd sent any data"
            )
        if not forward.alive:
            raise TunnelFailedError(
                f"port-forward to {endpoint.pod_name} exited during the session"
            )

    return 0
