"""kubectl-backed implementation of the cluster-control interface."""

from __future__ import annotations

import json
import logging
import subprocess
from contextlib import contextmanager
from typing import Any, Iterator

from sshpod.cluster.base import ContainerRef, ExecResult
from sshpod.exceptions import (
    ClusterError,
    KubectlNotInstalledError,
    KubectlTimeoutError,
)
from sshpod.port_forward import PortForward

logger = logging.getLogger(__name__)


class KubectlCluster:
    """Cluster access by spawning kubectl (or a compatible CLI such as oc).

    Every call is a separate subprocess with a bounded timeout, so a hung
    API server fails the connection attempt instead of hanging ssh.
    """

    # Default timeout for kubectl commands (seconds)
    KUBECTL_DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        binary: str = "kubectl",
        timeout: int | None = None,
        forward_timeout: int = 10,
    ) -> None:
        """Initialize the kubectl cluster client.

        Args:
            binary: kubectl-compatible executable to spawn.
            timeout: Default timeout in seconds for kubectl calls.
            forward_timeout: Seconds to wait for port-forward to report a port.
        """
        self._binary = binary
        self._timeout = timeout or self.KUBECTL_DEFAULT_TIMEOUT
        self._forward_timeout = forward_timeout

    def _base_cmd(self, context: str | None) -> list[str]:
        cmd = [self._binary]
        if context:
            cmd.extend(["--context", context])
        return cmd

    def _timeout_value(self, timeout: int | None) -> float | None:
        if timeout is None:
            return self._timeout
        if timeout == 0:
            return None  # No timeout
        return timeout

    def _run_kubectl(
        self,
        *args: str,
        context: str | None = None,
        check: bool = True,
        timeout: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a kubectl command and capture its output as text.

        Args:
            *args: Command arguments (without 'kubectl').
            context: Kubeconfig context to pass with --context.
            check: Raise on non-zero exit (default True).
            timeout: Timeout in seconds (None for the default, 0 for none).

        Returns:
            CompletedProcess result.

        Raises:
            KubectlNotInstalledError: If kubectl is not installed.
            KubectlTimeoutError: If the command times out.
            ClusterError: If the command fails and check=True.
        """
        cmd = self._base_cmd(context)
        cmd.extend(args)
        timeout_value = self._timeout_value(timeout)

        logger.debug("running %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                timeout=timeout_value,
            )
        except subprocess.TimeoutExpired:
            cmd_str = " ".join(cmd)
            raise KubectlTimeoutError(
                f"{self._binary} command timed out after {timeout_value}s: "
                f"{cmd_str}. Check your cluster connectivity."
            ) from None
        except FileNotFoundError as e:
            raise KubectlNotInstalledError(
                f"{self._binary} not found in PATH. Install it or set "
                "SSHPOD_KUBECTL to a compatible binary."
            ) from e

        if check and result.returncode != 0:
            raise ClusterError(
                f"{self._binary} {' '.join(args)} failed: {result.stderr.strip()}"
            )

        return result

    def contexts(self) -> list[str]:
        """List the contexts defined in kubeconfig.

        Returns:
            Context names in kubeconfig order.
        """
        result = self._run_kubectl("config", "get-contexts", "-o", "name")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def context_namespace(self, context: str | None) -> str | None:
        """Return the namespace configured for a context.

        Args:
            context: Context name, or None for the current context.

        Returns:
            Namespace name or None if the context sets none.
        """
        if context:
            jsonpath = (
                f'jsonpath={{.contexts[?(@.name=="{context}")].context.namespace}}'
            )
            result = self._run_kubectl("config", "view", "-o", jsonpath)
        else:
            result = self._run_kubectl(
                "config", "view", "--minify", "-o",
                "jsonpath={.contexts[0].context.namespace}",
                check=False,
            )
            if result.returncode != 0:
                return None
        ns = result.stdout.strip()
        return ns or None

    def _namespace_args(self, namespace: str | None) -> list[str]:
        return ["-n", namespace] if namespace else []

    def get(
        self,
        kind: str,
        name: str,
        context: str | None,
        namespace: str | None,
    ) -> dict[str, Any] | None:
        """Fetch one resource as JSON.

        Args:
            kind: Resource kind (pod, deployment, job).
            name: Resource name.
            context: Kubeconfig context.
            namespace: Namespace.

        Returns:
            Parsed resource, or None if it does not exist.

        Raises:
            ClusterError: On any failure other than NotFound.
        """
        result = self._run_kubectl(
            "get", kind, name,
            *self._namespace_args(namespace),
            "-o", "json",
            context=context,
            check=False,
        )

        if result.returncode != 0:
            if "NotFound" in result.stderr or "not found" in result.stderr:
                return None
            raise ClusterError(
                f"{self._binary} get {kind} {name} failed: {result.stderr.strip()}"
            )

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ClusterError(
                f"could not parse {self._binary} get {kind} {name} output: {e}"
            ) from e

    def list_pods(
        self,
        context: str | None,
        namespace: str | None,
        selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List Pods as JSON items.

        Args:
            context: Kubeconfig context.
            namespace: Namespace.
            selector: Optional label selector.

        Returns:
            List of Pod documents.
        """
        args = ["get", "pods", *self._namespace_args(namespace)]
        if selector:
            args.extend(["-l", selector])
        args.extend(["-o", "json"])

        result = self._run_kubectl(*args, context=context)
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ClusterError(
                f"could not parse {self._binary} get pods output: {e}"
            ) from e
        return data.get("items", []) or []

    def exec(
        self,
        target: ContainerRef,
        command: list[str],
        input_data: bytes | None = None,
        timeout: int | None = None,
    ) -> ExecResult:
        """Run a command inside a container via kubectl exec.

        Standard output is always captured, never inherited, so nothing
        reaches the ssh client before the tunnel is up.

        Args:
            target: Container to run in.
            command: Command and arguments.
            input_data: Bytes to stream to stdin (adds -i).
            timeout: Timeout in seconds (None for the default, 0 for none).

        Returns:
            ExecResult with the remote exit status.

        Raises:
            KubectlNotInstalledError: If kubectl is not installed.
            KubectlTimeoutError: If the command times out.
        """
        cmd = self._base_cmd(target.context)
        cmd.append("exec")
        if input_data is not None:
            cmd.append("-i")
        cmd.extend(self._namespace_args(target.namespace))
        cmd.extend([target.pod, "-c", target.container, "--"])
        cmd.extend(command)
        timeout_value = self._timeout_value(timeout)

        logger.debug(
            "exec in %s/%s: %s", target.pod, target.container, " ".join(command)
        )
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                input=input_data,
                stdin=None if input_data is not None else subprocess.DEVNULL,
                timeout=timeout_value,
            )
        except subprocess.TimeoutExpired:
            raise KubectlTimeoutError(
                f"{self._binary} exec timed out after {timeout_value}s "
                f"in pod {target.pod} (container {target.container})"
            ) from None
        except FileNotFoundError as e:
            raise KubectlNotInstalledError(
                f"{self._binary} not found in PATH. Install it or set "
                "SSHPOD_KUBECTL to a compatible binary."
            ) from e

        return ExecResult(
            returncode=result.returncode,
            stdout=result.stdout or b"",
            stderr=(result.stderr or b"").decode(errors="replace").strip(),
        )

    @contextmanager
    def port_forward(
        self,
        context: str | None,
        namespace: str | None,
        pod: str,
        remote_port: int,
    ) -> Iterator[PortForward]:
        """Forward an ephemeral local port to a Pod port.

        Args:
            context: Kubeconfig context.
            namespace: Namespace.
            pod: Pod name.
            remote_port: Port inside the Pod.

        Yields:
            The running PortForward; its local_port is bound on 127.0.0.1.
        """
        cmd = self._base_cmd(context)
        cmd.extend(["port-forward", "--address", "127.0.0.1"])
        cmd.extend(self._namespace_args(namespace))
        cmd.extend([f"pod/{pod}", f":{remote_port}"])

        with PortForward(cmd, timeout=self._forward_timeout) as forward:
            yield forward
