"""Cluster-control abstraction for sshpod."""

from sshpod.cluster.base import (
    ClusterControl,
    ContainerRef,
    ExecResult,
    ForwardedPort,
)
from sshpod.cluster.kubectl import KubectlCluster

__all__ = [
    "ClusterControl",
    "ContainerRef",
    "ExecResult",
    "ForwardedPort",
    "KubectlCluster",
]
