"""Bundled sample workload used when a repository has nothing to deploy."""

from typing import List, Union

from chaosgate.cluster.resources import Container, Deployment, Service
from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError, Stage
from chaosgate.models import TargetWorkload

FALLBACK_NAME = "nginx-chaos-test"
FALLBACK_NAMESPACE = "default"
FALLBACK_IMAGE = "nginx:latest"
FALLBACK_REPLICAS = 2
FALLBACK_LABELS = {"app": FALLBACK_NAME}


def fallback_resources(namespace: str = FALLBACK_NAMESPACE) -> List[Union[Deployment, Service]]:
    """Builders for the fallback Deployment and its Service."""
    return [
        Deployment(
            name=FALLBACK_NAME,
            namespace=namespace,
            labels=dict(FALLBACK_LABELS),
            replicas=FALLBACK_REPLICAS,
            containers=[Container(name="nginx", image=FALLBACK_IMAGE, ports=[80])],
        ),
        Service(
            name=FALLBACK_NAME,
            namespace=namespace,
            selector=dict(FALLBACK_LABELS),
            port=80,
        ),
    ]


def deploy_fallback(cluster, settings: Settings, namespace: str = FALLBACK_NAMESPACE) -> TargetWorkload:
    """Apply the fallback workload and wait for it to become available.

    Args:
        cluster: Cluster client.
        settings: Runtime settings.
        namespace: Namespace to deploy into.

    Returns:
        The fallback deployment as a target workload.

    Raises:
        FatalSetupError: If the workload cannot be applied.
    """
    if not settings.quiet:
        print(f"    Deploying fallback workload {FALLBACK_NAME} in {namespace}")

    outcome = cluster.apply(fallback_resources(namespace), namespace=namespace)
    if not outcome.ok:
        raise FatalSetupError(
            f"Failed to deploy fallback workload: {outcome.error}",
            Stage.DEPLOYMENT,
        )

    if not cluster.wait(
        "available", namespace, target=f"deployment/{FALLBACK_NAME}", timeout=60
    ):
        if not settings.quiet:
            print(f"    Warning: {FALLBACK_NAME} not available after 60s")

    return TargetWorkload(
        name=FALLBACK_NAME,
        namespace=namespace,
        selector=dict(FALLBACK_LABELS),
    )
