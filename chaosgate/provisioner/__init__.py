"""Provisioning: repository checkout, cluster, workload and chaos framework."""

from chaosgate.provisioner.cluster import KindCluster
from chaosgate.provisioner.deployer import ManifestDeployer
from chaosgate.provisioner.repository import clone_repository
from chaosgate.provisioner.setup import LitmusInstaller
from chaosgate.provisioner.target import TargetSelector

__all__ = [
    "KindCluster",
    "LitmusInstaller",
    "ManifestDeployer",
    "TargetSelector",
    "clone_repository",
]
