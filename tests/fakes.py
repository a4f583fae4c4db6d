"""Fake cluster that simulates container state for the scripts sshpod runs."""

from __future__ import annotations

import gzip
import itertools
import lzma
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator

from sshpod.bundle import ENCODING_SCRIPT, INSTALL_SCRIPT, PROBE_SCRIPT
from sshpod.cluster.base import ContainerRef, ExecResult
from sshpod.daemon import START_SSHD_SCRIPT
from sshpod.keys import HOST_KEY_NAME, INSTALL_HOST_KEY_SCRIPT

SSHD_BYTES = b"\x7fELF fake sshd binary"


def make_pod(
    name: str,
    uid: str | None = None,
    containers: tuple[str, ...] = ("app",),
    phase: str = "Running",
    ready: bool = True,
    labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Build a minimal Pod document."""
    return {
        "metadata": {
            "name": name,
            "uid": uid or f"uid-{name}",
            "labels": labels or {},
        },
        "spec": {"containers": [{"name": c} for c in containers]},
        "status": {
            "phase": phase,
            "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
            "containerStatuses": [{"name": c, "ready": ready} for c in containers],
        },
    }


class FakeForward:
    """Handle yielded by FakeCluster.port_forward."""

    def __init__(self, local_port: int, alive: bool = True) -> None:
        self.local_port = local_port
        self.alive = alive


class FakeContainer:
    """In-memory stand-in for a container's /tmp/sshpod tree and sshd."""

    def __init__(
        self,
        machine: str = "x86_64",
        tools: tuple[str, ...] = ("xz", "gzip"),
        uid: int = 0,
        user: str = "root",
    ) -> None:
        self.machine = machine
        self.tools = tools
        self.uid = uid
        self.user = user
        self.files: dict[str, bytes] = {}
        self.daemon_port: int | None = None
        self.daemon_starts = 0
        self.uploads = 0
        self.upload_delay = 0.0
        self._active_uploads = 0
        self.overlapping_uploads = 0
        self._guard = threading.Lock()


class FakeCluster:
    """ClusterControl implementation backed by dictionaries."""

    def __init__(
        self,
        pods: list[dict[str, Any]] | None = None,
        workloads: dict[tuple[str, str], dict[str, Any]] | None = None,
        contexts: tuple[str, ...] = ("prod",),
        default_namespace: str | None = "default",
    ) -> None:
        self.pods = {p["metadata"]["name"]: p for p in pods or []}
        self.workloads = workloads or {}
        self._contexts = list(contexts)
        self.default_namespace = default_namespace
        self.containers: dict[tuple[str, str], FakeContainer] = {}
        self.exec_calls: list[tuple[ContainerRef, list[str], bytes | None]] = []
        self.list_calls: list[tuple[str | None, str | None, str | None]] = []
        self.forwards: list[tuple[str, int]] = []
        self.forward_port = 40000
        self.forward_dies = False
        self._ports = itertools.count(22022)

    def container(self, pod: str, container: str = "app") -> FakeContainer:
        key = (pod, container)
        if key not in self.containers:
            self.containers[key] = FakeContainer()
        return self.containers[key]

    def contexts(self) -> list[str]:
        return list(self._contexts)

    def context_namespace(self, context: str | None) -> str | None:
        return self.default_namespace

    def get(self, kind, name, context, namespace):
        if kind == "pod":
            return self.pods.get(name)
        return self.workloads.get((kind, name))

    def list_pods(self, context, namespace, selector=None):
        self.list_calls.append((context, namespace, selector))
        if selector is None:
            return list(self.pods.values())
        wanted = dict(part.split("=", 1) for part in selector.split(","))
        return [
            p for p in self.pods.values()
            if all(p["metadata"]["labels"].get(k) == v for k, v in wanted.items())
        ]

    def exec(self, target, command, input_data=None, timeout=None):
        self.exec_calls.append((target, command, input_data))
        box = self.container(target.pod, target.container)

        if command == ["sh", "-c", "uname -m; id -u; id -un"]:
            return self._ok(f"{box.machine}\n{box.uid}\n{box.user}\n")

        script, args = command[2], command[4:]
        if script == PROBE_SCRIPT:
            return self._probe(box, args[0])
        if script == ENCODING_SCRIPT:
            for tool in ("xz", "gzip"):
                if tool in box.tools:
                    return self._ok(f"{tool}\n")
            return self._ok("plain\n")
        if script == INSTALL_SCRIPT:
            return self._install(box, args, input_data)
        if script == INSTALL_HOST_KEY_SCRIPT:
            return self._install_host_key(box, args, input_data)
        if script == START_SSHD_SCRIPT:
            return self._start(box, args)
        raise AssertionError(f"unexpected exec: {command}")

    @contextmanager
    def port_forward(self, context, namespace, pod, remote_port) -> Iterator[FakeForward]:
        self.forwards.append((pod, remote_port))
        yield FakeForward(self.forward_port, alive=not self.forward_dies)

    def upload_count(self) -> int:
        return sum(c.uploads for c in self.containers.values())

    def _ok(self, out: str) -> ExecResult:
        return ExecResult(returncode=0, stdout=out.encode(), stderr="")

    def _probe(self, box: FakeContainer, base: str) -> ExecResult:
        marker = box.files.get(f"{base}/bundle/.sshpod-bundle")
        if marker is None:
            return self._ok("absent\n")
        status = "present" if f"{base}/bundle/sshd" in box.files else "noexe"
        return self._ok(f"{status}\n{marker.decode()}")

    def _install(self, box, args, payload) -> ExecResult:
        base, encoding, version, arch = args
        with box._guard:
            box._active_uploads += 1
            if box._active_uploads > 1:
                box.overlapping_uploads += 1
        try:
            time.sleep(box.upload_delay)
            box.files.pop(f"{base}/bundle/.sshpod-bundle", None)
            if encoding == "xz":
                data = lzma.decompress(payload)
            elif encoding == "gzip":
                data = gzip.decompress(payload)
            else:
                data = payload
            box.files[f"{base}/bundle/sshd"] = data
            box.files[f"{base}/bundle/.sshpod-bundle"] = f"{version} {arch}\n".encode()
            box.uploads += 1
        finally:
            with box._guard:
                box._active_uploads -= 1
        return self._ok("")

    def _install_host_key(self, box, args, private) -> ExecResult:
        base, fresh, public, authorized = args
        key = f"{base}/hostkeys/{HOST_KEY_NAME}"
        if fresh == "1" or key not in box.files:
            box.files[key] = private
            box.files[f"{key}.pub"] = public.encode()
            out = "installed\n"
        else:
            out = "kept\n"
        box.files[f"{base}/authorized_keys"] = f"{authorized}\n".encode()
        return self._ok(out)

    def _start(self, box, args) -> ExecResult:
        base, restart = args
        if restart == "1":
            box.daemon_port = None
        if box.daemon_port is not None:
            return self._ok(f"{box.daemon_port}\n")
        if f"{base}/hostkeys/{HOST_KEY_NAME}" not in box.files:
            return ExecResult(returncode=1, stdout=b"", stderr="host key missing")
        box.daemon_port = next(self._ports)
        box.daemon_starts += 1
        return self._ok(f"{box.daemon_port}\n")
