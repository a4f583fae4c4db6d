"""End-to-end tests for the proxy flow against a fake cluster."""

from __future__ import annotations

import os
import socket
import threading
from typing import Iterator
from unittest.mock import MagicMock

import pytest

from sshpod.config import SshpodConfig
from sshpod.exceptions import (
    MalformedTargetError,
    NoReadyPodsError,
    NotFoundError,
    TunnelFailedError,
)
from sshpod.keys import HOST_KEY_NAME
from sshpod.locks import lock_path
from sshpod.proxy import run
from tests.fakes import FakeCluster, make_pod

BANNER = b"SSH-2.0-OpenSSH_9.6\r\n"
CLIENT_HELLO = b"SSH-2.0-OpenSSH_9.7 client\r\n"


class FakeSshd:
    """Loopback listener standing in for the forwarded sshd."""

    def __init__(self) -> None:
        self.server = socket.create_server(("127.0.0.1", 0))
        self.port = self.server.getsockname()[1]
        self.received: list[bytes] = []
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while True:
            try:
                conn, _ = self.server.accept()
            except OSError:
                return
            with conn:
                conn.sendall(BANNER)
                chunks = []
                while data := conn.recv(65536):
                    chunks.append(data)
                self.received.append(b"".join(chunks))

    def close(self) -> None:
        self.server.close()


@pytest.fixture
def sshd() -> Iterator[FakeSshd]:
    server = FakeSshd()
    yield server
    server.close()


def connect(
    host: str,
    cluster: FakeCluster,
    config: SshpodConfig,
    client_bytes: bytes = CLIENT_HELLO,
) -> tuple[int, bytes]:
    """Run one proxy invocation with pipes standing in for ssh's stdio."""
    in_r, in_w = os.pipe()
    out_r, out_w = os.pipe()
    try:
        os.write(in_w, client_bytes)
        os.close(in_w)
        try:
            code = run(
                host, user="root", port=22, config=config, cluster=cluster,
                stdin_fd=in_r, stdout_fd=out_w,
            )
        finally:
            os.close(out_w)
        output = b""
        while chunk := os.read(out_r, 65536):
            output += chunk
        return code, output
    finally:
        os.close(in_r)
        os.close(out_r)


def pod_cluster(sshd: FakeSshd) -> FakeCluster:
    cluster = FakeCluster(pods=[make_pod("api-0")])
    cluster.forward_port = sshd.port
    return cluster


class TestProxyFlow:
    """Tests for run."""

    def test_first_connection_deploys_and_relays(
        self, config: SshpodConfig, sshd: FakeSshd, fake_keygen: MagicMock
    ) -> None:
        """A cold container gets a bundle, keys and sshd, then bytes flow."""
        cluster = pod_cluster(sshd)

        code, output = connect(
            "pod--api-0.namespace--default.context--prod.sshpod", cluster, config
        )

        assert code == 0
        assert output == BANNER
        assert sshd.received == [CLIENT_HELLO]
        box = cluster.container("api-0")
        assert box.uploads == 1
        assert box.daemon_starts == 1
        assert cluster.forwards == [("api-0", 22022)]
        assert config.client_key_path.exists()
        assert lock_path(config.lock_dir, "uid-api-0", "app").exists()

    def test_second_connection_reuses_everything(
        self, config: SshpodConfig, sshd: FakeSshd, fake_keygen: MagicMock
    ) -> None:
        """A warm container is not redeployed and keeps its host key."""
        cluster = pod_cluster(sshd)

        connect("pod--api-0.sshpod", cluster, config)
        host_key = cluster.container("api-0").files[
            f"/tmp/sshpod/uid-api-0/app/hostkeys/{HOST_KEY_NAME}"
        ]
        code, output = connect("pod--api-0.sshpod", cluster, config)

        box = cluster.container("api-0")
        assert code == 0
        assert output == BANNER
        assert box.uploads == 1
        assert box.daemon_starts == 1
        assert box.files[f"/tmp/sshpod/uid-api-0/app/hostkeys/{HOST_KEY_NAME}"] == host_key
        assert cluster.forwards == [("api-0", 22022), ("api-0", 22022)]

    def test_deployment_target(
        self, config: SshpodConfig, sshd: FakeSshd, fake_keygen: MagicMock
    ) -> None:
        cluster = FakeCluster(
            pods=[
                make_pod("shop-b", labels={"app": "shop"}),
                make_pod("shop-a", labels={"app": "shop"}),
            ],
            workloads={
                ("deployment", "shop"): {
                    "spec": {"selector": {"matchLabels": {"app": "shop"}}}
                }
            },
        )
        cluster.forward_port = sshd.port

        code, _ = connect("deployment--shop.namespace--app.sshpod", cluster, config)

        assert code == 0
        assert cluster.forwards[0][0] == "shop-a"

    def test_malformed_host_touches_nothing(
        self, config: SshpodConfig, fake_keygen: MagicMock
    ) -> None:
        cluster = FakeCluster(pods=[make_pod("api-0")])

        with pytest.raises(MalformedTargetError):
            connect("api-0.example.com", cluster, config)

        assert cluster.exec_calls == []
        assert not config.client_key_path.exists()

    def test_missing_pod_writes_nothing(
        self, config: SshpodConfig, fake_keygen: MagicMock
    ) -> None:
        cluster = FakeCluster(pods=[make_pod("api-0")])

        with pytest.raises(NotFoundError):
            connect("pod--api-9.sshpod", cluster, config)

        assert cluster.forwards == []

    def test_no_ready_replicas(self, config: SshpodConfig, fake_keygen: MagicMock) -> None:
        cluster = FakeCluster(
            pods=[make_pod("shop-a", labels={"app": "shop"}, ready=False)],
            workloads={
                ("deployment", "shop"): {
                    "spec": {"selector": {"matchLabels": {"app": "shop"}}}
                }
            },
        )

        with pytest.raises(NoReadyPodsError):
            connect("deployment--shop.sshpod", cluster, config)

    def test_unreachable_forward(self, config: SshpodConfig, fake_keygen: MagicMock) -> None:
        """A forward that accepts nothing is a tunnel failure."""
        probe = socket.create_server(("127.0.0.1", 0))
        free_port = probe.getsockname()[1]
        probe.close()
        cluster = FakeCluster(pods=[make_pod("api-0")])
        cluster.forward_port = free_port

        with pytest.raises(TunnelFailedError, match="failed to connect"):
            connect("pod--api-0.sshpod", cluster, config)

    def test_channel_closed_before_banner(
        self, config: SshpodConfig, fake_keygen: MagicMock
    ) -> None:
        """A forward that accepts and hangs up at once is not a clean exit."""
        server = socket.create_server(("127.0.0.1", 0))

        def hang_up() -> None:
            conn, _ = server.accept()
            conn.close()

        thread = threading.Thread(target=hang_up, daemon=True)
        thread.start()
        cluster = FakeCluster(pods=[make_pod("api-0")])
        cluster.forward_port = server.getsockname()[1]

        try:
            with pytest.raises(TunnelFailedError, match="closed"):
                connect("pod--api-0.sshpod", cluster, config)
        finally:
            thread.join(timeout=5)
            server.close()

    def test_forward_died_during_session(
        self, config: SshpodConfig, sshd: FakeSshd, fake_keygen: MagicMock
    ) -> None:
        cluster = pod_cluster(sshd)
        cluster.forward_dies = True

        with pytest.raises(TunnelFailedError, match="port-forward .* exited"):
            connect("pod--api-0.sshpod", cluster, config)
