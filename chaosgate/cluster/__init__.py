"""Cluster control-plane access for chaosgate."""

from chaosgate.cluster.client import ApplyOutcome, ClusterClient
from chaosgate.cluster.resources import encode

__all__ = ["ApplyOutcome", "ClusterClient", "encode"]
