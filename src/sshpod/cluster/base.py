"""Capability protocol for talking to a Kubernetes cluster."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ContextManager, Protocol


@dataclass(frozen=True)
class ContainerRef:
    """Address of one container in one Pod.

    Attributes:
        context: Kubeconfig context (None for current context).
        namespace: Namespace (None to let the client decide).
        pod: Pod name.
        container: Container name.
    """

    context: str | None
    namespace: str | None
    pod: str
    container: str


@dataclass
class ExecResult:
    """Outcome of a command executed inside a container.

    Attributes:
        returncode: Exit status of the remote command.
        stdout: Raw standard output.
        stderr: Standard error, decoded.
    """

    returncode: int
    stdout: bytes
    stderr: str

    @property
    def ok(self) -> bool:
        """Whether the command exited with status 0."""
        return self.returncode == 0

    @property
    def text(self) -> str:
        """Standard output decoded and stripped."""
        return self.stdout.decode(errors="replace").strip()


class ForwardedPort(Protocol):
    """A running port-forward, as yielded by ClusterControl.port_forward."""

    local_port: int | None

    @property
    def alive(self) -> bool:
        """Whether the forward is still running."""
        ...


class ClusterControl(Protocol):
    """Cluster-control interface.

    The core only needs read access to Pod and workload metadata, exec with
    streamed stdin/stdout, and port-forwarding. KubectlCluster implements it
    by spawning kubectl; a native client library could replace it without
    touching the rest of sshpod.
    """

    def contexts(self) -> list[str]:
        """List the contexts defined in kubeconfig."""
        ...

    def context_namespace(self, context: str | None) -> str | None:
        """Return the namespace configured for a context.

        Args:
            context: Context name, or None for the current context.

        Returns:
            Namespace name or None if the context sets none.
        """
        ...

    def get(
        self,
        kind: str,
        name: str,
        context: str | None,
        namespace: str | None,
    ) -> dict[str, Any] | None:
        """Fetch one resource as a JSON document.

        Returns:
            Parsed resource or None if it does not exist.
        """
        ...

    def list_pods(
        self,
        context: str | None,
        namespace: str | None,
        selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List Pods, optionally filtered by a label selector."""
        ...

    def exec(
        self,
        target: ContainerRef,
        command: list[str],
        input_data: bytes | None = None,
        timeout: int | None = None,
    ) -> ExecResult:
        """Run a command inside a container.

        Args:
            target: Container to run in.
            command: Command and arguments.
            input_data: Bytes streamed to the command's stdin.
            timeout: Timeout in seconds (None for the client default).

        Returns:
            ExecResult with the remote exit status and output.
        """
        ...

    def port_forward(
        self,
        context: str | None,
        namespace: str | None,
        pod: str,
        remote_port: int,
    ) -> ContextManager[ForwardedPort]:
        """Forward a local ephemeral port to a Pod port.

        Returns:
            Context manager yielding the running forward (its local port
            and liveness); leaving it tears the forward down.
        """
        ...
