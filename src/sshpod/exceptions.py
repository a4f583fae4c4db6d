"""Exceptions for sshpod.

Every error carries the name of the stage that failed so the CLI can
print a one-line diagnostic before exiting. None of them are retried:
the outer ssh client owns retry policy.
"""

from __future__ import annotations


class SshpodError(Exception):
    """Base exception for sshpod errors."""

    stage = "sshpod"


class MalformedTargetError(SshpodError):
    """The hostname does not follow the sshpod grammar."""

    stage = "parse"


class ClusterError(SshpodError):
    """A kubectl invocation failed."""

    stage = "cluster"


class KubectlNotInstalledError(ClusterError):
    """The kubectl CLI is not installed."""

    pass


class KubectlTimeoutError(ClusterError):
    """The kubectl CLI command timed out."""

    pass


class ContextNotFoundError(ClusterError):
    """The requested kubeconfig context does not exist."""

    pass


class ResolveError(SshpodError):
    """Base class for workload resolution failures."""

    stage = "resolve"


class NotFoundError(ResolveError):
    """Pod, workload, or container not found."""

    pass


class NotReadyError(ResolveError):
    """Pod is not running or has no ready containers."""

    pass


class NoReadyPodsError(ResolveError):
    """Workload has no ready Pods."""

    pass


class AmbiguousContainerError(ResolveError):
    """Pod has several containers and none was selected."""

    pass


class UnsupportedArchitectureError(ResolveError):
    """Container reports a CPU architecture we ship no bundle for."""

    pass


class DeployFailedError(SshpodError):
    """Uploading the sshd bundle failed."""

    stage = "deploy"


class IdentityError(SshpodError):
    """Generating or installing key material failed."""

    stage = "identity"


class DaemonStartFailedError(SshpodError):
    """The remote sshd could not be started."""

    stage = "daemon"


class TunnelFailedError(SshpodError):
    """The port-forward channel failed or closed abnormally."""

    stage = "tunnel"
