"""Resolution of a TargetDescriptor to one ready container."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from sshpod.cluster.base import ClusterControl, ContainerRef
from sshpod.exceptions import (
    AmbiguousContainerError,
    ClusterError,
    ContextNotFoundError,
    NoReadyPodsError,
    NotFoundError,
    NotReadyError,
    UnsupportedArchitectureError,
)
from sshpod.hostspec import TargetDescriptor, WorkloadKind

logger = logging.getLogger(__name__)

REMOTE_BASE = "/tmp/sshpod"

ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


@dataclass(frozen=True)
class ResolvedEndpoint:
    """One concrete container that an ssh session will land in.

    Attributes:
        context: Kubeconfig context (None for current context).
        namespace: Namespace (None when kubeconfig decides).
        pod_name: Pod name.
        pod_uid: Pod UID, the cache key for deployed state.
        container: Container name.
        arch: Normalized CPU architecture ("amd64" or "arm64").
        remote_uid: Numeric uid the container runs as.
        remote_user: User name the container runs as.
    """

    context: str | None
    namespace: str | None
    pod_name: str
    pod_uid: str
    container: str
    arch: str
    remote_uid: int | None = None
    remote_user: str | None = None

    @property
    def ref(self) -> ContainerRef:
        """Container address for exec calls."""
        return ContainerRef(
            context=self.context,
            namespace=self.namespace,
            pod=self.pod_name,
            container=self.container,
        )

    @property
    def base_dir(self) -> str:
        """In-container scratch directory for this Pod and container."""
        return f"{REMOTE_BASE}/{self.pod_uid}/{self.container}"


def normalize_arch(machine: str) -> str:
    """Map `uname -m` output to a bundle architecture.

    Args:
        machine: Raw machine string.

    Returns:
        "amd64" or "arm64".

    Raises:
        UnsupportedArchitectureError: For any other architecture.
    """
    arch = ARCH_ALIASES.get(machine.strip().lower())
    if arch is None:
        raise UnsupportedArchitectureError(
            f"unsupported remote architecture: {machine.strip() or '<empty>'}"
        )
    return arch


def selector_from_label_selector(selector: dict[str, Any]) -> str:
    """Render a Kubernetes LabelSelector as a kubectl -l string.

    Args:
        selector: Object with matchLabels and/or matchExpressions.

    Returns:
        Comma-separated selector string.

    Raises:
        ClusterError: If the selector is empty or uses an unknown operator.
    """
    parts = [f"{k}={v}" for k, v in sorted((selector.get("matchLabels") or {}).items())]

    for expr in selector.get("matchExpressions") or []:
        key = expr.get("key", "")
        operator = expr.get("operator", "")
        values = expr.get("values") or []
        if operator in ("In", "NotIn"):
            if not values:
                raise ClusterError(f"matchExpressions {operator} requires values")
            word = "in" if operator == "In" else "notin"
            parts.append(f"{key} {word} ({','.join(values)})")
        elif operator == "Exists":
            parts.append(key)
        elif operator == "DoesNotExist":
            parts.append(f"!{key}")
        else:
            raise ClusterError(f"unsupported matchExpressions operator: {operator}")

    if not parts:
        raise ClusterError("label selector is empty")
    return ",".join(parts)


def is_pod_ready(pod: dict[str, Any]) -> bool:
    """Whether a Pod is Running and has a Ready=True condition."""
    status = pod.get("status") or {}
    if status.get("phase") != "Running":
        return False
    return any(
        c.get("type") == "Ready" and c.get("status") == "True"
        for c in status.get("conditions") or []
    )


def _has_ready_container(pod: dict[str, Any]) -> bool:
    statuses = (pod.get("status") or {}).get("containerStatuses") or []
    return any(s.get("ready") for s in statuses)


def pick_ready_pod(pods: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Choose one ready Pod deterministically.

    The lexicographically smallest name wins, so repeated connections land
    on the same replica until the rollout changes the ready set.

    Args:
        pods: Pod documents.

    Returns:
        Chosen Pod, or None if none are ready.
    """
    ready = [p for p in pods if is_pod_ready(p)]
    if not ready:
        return None
    return min(ready, key=lambda p: p["metadata"]["name"])


def _container_names(pod: dict[str, Any]) -> list[str]:
    return [c["name"] for c in (pod.get("spec") or {}).get("containers") or []]


class WorkloadResolver:
    """Resolves hostnames to a ready container, one kubectl call at a time."""

    def __init__(self, cluster: ClusterControl) -> None:
        """Initialize the resolver.

        Args:
            cluster: Cluster-control implementation.
        """
        self._cluster = cluster

    def resolve(self, target: TargetDescriptor) -> ResolvedEndpoint:
        """Resolve a target to exactly one ResolvedEndpoint.

        Args:
            target: Parsed hostname.

        Returns:
            ResolvedEndpoint for the chosen container.

        Raises:
            ContextNotFoundError: If the context is not in kubeconfig.
            NotFoundError: If the Pod, workload, or container is missing.
            NotReadyError: If a named Pod is not ready.
            NoReadyPodsError: If a workload has no ready Pods.
            AmbiguousContainerError: If a container must be named.
            UnsupportedArchitectureError: If no bundle fits the container.
        """
        context = target.context
        if context is not None:
            self._ensure_context(context)

        namespace = target.namespace or self._cluster.context_namespace(context)

        if target.kind is WorkloadKind.POD:
            pod = self._get_pod(target.name, context, namespace)
        else:
            pod = self._pick_workload_pod(target, context, namespace)

        pod_name = pod["metadata"]["name"]
        pod_uid = pod["metadata"].get("uid")
        if not pod_uid:
            raise NotFoundError(f"pod {pod_name} has no uid")
        logger.info(
            "resolved pod: %s (namespace=%s, context=%s)",
            pod_name, namespace or "<kubeconfig>", context or "<current>",
        )

        container = self._select_container(pod, target.container)
        logger.info("resolved container: %s", container)

        endpoint = ResolvedEndpoint(
            context=context,
            namespace=namespace,
            pod_name=pod_name,
            pod_uid=pod_uid,
            container=container,
            arch="",
        )
        return self._probe(endpoint, target.user)

    def _ensure_context(self, context: str) -> None:
        contexts = self._cluster.contexts()
        if context not in contexts:
            raise ContextNotFoundError(
                f"context '{context}' not found. "
                f"Available contexts: {', '.join(contexts) or '<none>'}"
            )

    def _ready_pod_names(self, context: str | None, namespace: str | None) -> list[str]:
        try:
            pods = self._cluster.list_pods(context, namespace)
        except ClusterError:
            return []
        return sorted(p["metadata"]["name"] for p in pods if is_pod_ready(p))

    def _get_pod(
        self,
        name: str,
        context: str | None,
        namespace: str | None,
    ) -> dict[str, Any]:
        pod = self._cluster.get("pod", name, context, namespace)
        if pod is None:
            msg = f"pod '{name}' not found in namespace {namespace or '<kubeconfig>'}"
            ready = self._ready_pod_names(context, namespace)
            if ready:
                msg += f". Ready pods: {', '.join(ready)}"
            raise NotFoundError(msg)

        phase = (pod.get("status") or {}).get("phase")
        if phase != "Running":
            raise NotReadyError(f"pod '{name}' is not running (phase: {phase})")
        if not _has_ready_container(pod):
            raise NotReadyError(f"pod '{name}' has no ready containers")
        return pod

    def _workload_selector(self, kind: WorkloadKind, name: str, doc: dict[str, Any]) -> str:
        spec = doc.get("spec") or {}
        if kind is WorkloadKind.DEPLOYMENT:
            return selector_from_label_selector(spec.get("selector") or {})

        # Jobs may omit the selector; fall back to template labels
        if spec.get("selector"):
            return selector_from_label_selector(spec["selector"])
        labels = ((spec.get("template") or {}).get("metadata") or {}).get("labels")
        if labels:
            return selector_from_label_selector({"matchLabels": labels})
        return f"job-name={name}"

    def _pick_workload_pod(
        self,
        target: TargetDescriptor,
        context: str | None,
        namespace: str | None,
    ) -> dict[str, Any]:
        kind = target.kind.value
        doc = self._cluster.get(kind, target.name, context, namespace)
        if doc is None:
            raise NotFoundError(
                f"{kind} '{target.name}' not found in namespace "
                f"{namespace or '<kubeconfig>'}"
            )

        selector = self._workload_selector(target.kind, target.name, doc)
        pods = self._cluster.list_pods(context, namespace, selector)
        pod = pick_ready_pod(pods)
        if pod is None:
            raise NoReadyPodsError(
                f"no ready pods for {kind} '{target.name}' "
                f"(selector '{selector}', {len(pods)} pod(s) total)"
            )
        return pod

    def _select_container(self, pod: dict[str, Any], wanted: str | None) -> str:
        names = _container_names(pod)
        pod_name = pod["metadata"]["name"]
        if wanted is not None:
            if wanted not in names:
                raise NotFoundError(
                    f"container '{wanted}' not found in pod {pod_name}. "
                    f"Containers: {', '.join(names)}"
                )
            return wanted
        if len(names) == 1:
            return names[0]
        raise AmbiguousContainerError(
            f"pod {pod_name} has multiple containers ({', '.join(names)}). Use "
            "container--<container>.pod--<pod>[.namespace--<ns>]"
            "[.context--<ctx>].sshpod to pick one."
        )

    def _probe(self, endpoint: ResolvedEndpoint, login_user: str | None) -> ResolvedEndpoint:
        """Read architecture and effective user from inside the container."""
        result = self._cluster.exec(
            endpoint.ref, ["sh", "-c", "uname -m; id -u; id -un"]
        )
        if not result.ok:
            raise ClusterError(
                f"exec into pod {endpoint.pod_name} failed: {result.stderr}"
            )

        lines = result.text.splitlines()
        arch = normalize_arch(lines[0] if lines else "")
        remote_uid: int | None = None
        if len(lines) > 1 and lines[1].strip().isdigit():
            remote_uid = int(lines[1].strip())
        remote_user = lines[2].strip() if len(lines) > 2 else None
        logger.info("remote architecture: %s", arch)

        if remote_uid not in (None, 0) and login_user and remote_user != login_user:
            logger.warning(
                "pod runs as non-root user '%s' but ssh user is '%s'; "
                "log in as the container user",
                remote_user, login_user,
            )

        return replace(
            endpoint,
            arch=arch,
            remote_uid=remote_uid,
            remote_user=remote_user,
        )
