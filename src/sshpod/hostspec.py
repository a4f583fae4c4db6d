"""Parsing of sshpod hostnames.

Grammar::

    <kind>--<name>[.<tag>--<value>]*.sshpod

where kind is one of pod, deployment, job and tag is one of container,
namespace, context. Tokens may appear in any order; each tag at most once.

The .sshpod suffix and the kind and tag keywords are matched without regard
to case, since OpenSSH lowercases %h before handing it to the ProxyCommand.
Values (names, namespaces, contexts) are kept exactly as written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from sshpod.exceptions import MalformedTargetError

HOST_SUFFIX = ".sshpod"
SEPARATOR = "--"

DEFAULT_SSH_PORT = 22


class WorkloadKind(str, Enum):
    """Kinds of Kubernetes resources a hostname can target."""

    POD = "pod"
    DEPLOYMENT = "deployment"
    JOB = "job"


OPTIONAL_TAGS = ("container", "namespace", "context")


@dataclass(frozen=True)
class TargetDescriptor:
    """Structured workload reference parsed from a hostname.

    Attributes:
        kind: Workload kind (pod, deployment, job).
        name: Workload name.
        container: Container name, if given.
        namespace: Namespace, if given (None defers to kubeconfig).
        context: Kubeconfig context, if given (None defers to kubeconfig).
        ssh_port: Port requested by the ssh client.
        user: Login user requested by the ssh client.
        tokens: Hostname tokens in the order they were written.
    """

    kind: WorkloadKind
    name: str
    container: str | None = None
    namespace: str | None = None
    context: str | None = None
    ssh_port: int = DEFAULT_SSH_PORT
    user: str | None = None
    tokens: tuple[str, ...] = field(default=(), compare=False)


def _malformed(
    host: str, reason: str, tokens: list[str] | None = None
) -> MalformedTargetError:
    msg = f"invalid sshpod hostname '{host}': {reason}"
    if tokens:
        msg += f" (tokens: {', '.join(tokens)})"
    msg += (
        f". Expected <pod|deployment|job>--<name>"
        f"[.container--<c>][.namespace--<ns>][.context--<ctx>]{HOST_SUFFIX}"
    )
    return MalformedTargetError(msg)


def parse_host(
    host: str,
    user: str | None = None,
    ssh_port: int | None = None,
) -> TargetDescriptor:
    """Parse an sshpod hostname into a TargetDescriptor.

    Args:
        host: Hostname as passed by ssh (%h).
        user: Login user as passed by ssh (%r).
        ssh_port: Port as passed by ssh (%p).

    Returns:
        Parsed TargetDescriptor.

    Raises:
        MalformedTargetError: If the hostname does not follow the grammar.
    """
    trimmed = host.strip()
    if trimmed.endswith("."):
        trimmed = trimmed[:-1]

    if not trimmed.lower().endswith(HOST_SUFFIX):
        raise _malformed(host, f"hostname must end with {HOST_SUFFIX}")

    body = trimmed[: -len(HOST_SUFFIX)]
    # Doubled dots leave empty segments; they carry no meaning
    tokens = [t for t in body.split(".") if t]

    kind: WorkloadKind | None = None
    name: str | None = None
    tags: dict[str, str] = {}

    for token in tokens:
        tag, sep, value = token.partition(SEPARATOR)
        if not sep:
            raise _malformed(host, f"segment '{token}' is missing \"--\"", tokens)

        tag = tag.lower()
        if not value:
            raise _malformed(host, f"segment '{token}' has an empty value", tokens)

        if tag in {k.value for k in WorkloadKind}:
            if kind is not None:
                raise _malformed(
                    host, f"more than one workload given ('{token}')", tokens
                )
            kind = WorkloadKind(tag)
            name = value
        elif tag in OPTIONAL_TAGS:
            if tag in tags:
                raise _malformed(host, f"'{tag}' given more than once", tokens)
            tags[tag] = value
        else:
            raise _malformed(host, f"unknown tag '{tag}' in '{token}'", tokens)

    if kind is None or name is None:
        raise _malformed(host, "one of pod--, deployment--, job-- is required", tokens)

    return TargetDescriptor(
        kind=kind,
        name=name,
        container=tags.get("container"),
        namespace=tags.get("namespace"),
        context=tags.get("context"),
        ssh_port=ssh_port if ssh_port is not None else DEFAULT_SSH_PORT,
        user=user or None,
        tokens=tuple(tokens),
    )
