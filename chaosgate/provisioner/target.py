"""Selection of the workload a chaos experiment is aimed at."""

from typing import List, Optional

from chaosgate.cluster.decode import Unparseable, WorkloadRecord, decode_workload
from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError, Stage
from chaosgate.models import TargetWorkload
from chaosgate.provisioner.fallback import deploy_fallback


def resolve_selector(record: WorkloadRecord) -> dict:
    """The workload's own label selector.

    ``spec.selector.matchLabels`` wins; the pod template labels are used
    only when the selector declares no match labels.

    Raises:
        FatalSetupError: If the workload declares neither.
    """
    selector = record.effective_selector
    if selector:
        return selector
    raise FatalSetupError(
        f"Failed to find target deployment labels for {record.namespace}/{record.name}",
        Stage.TARGET_DETECTION,
    )


class TargetSelector:
    """Picks the workload to attack, deploying a fallback when there is none."""

    def __init__(self, cluster, settings: Settings):
        self.cluster = cluster
        self.settings = settings
        self.skipped: List[Unparseable] = []

    def _eligible(self, record: WorkloadRecord) -> bool:
        if record.namespace == self.settings.litmus_namespace:
            return False
        return record.namespace not in self.settings.excluded_namespaces

    def list_workloads(self, namespace: Optional[str] = None) -> List[WorkloadRecord]:
        """Eligible deployments in listing order. Unparseable ones are skipped."""
        records = []
        for raw in self.cluster.list("deployment", namespace):
            decoded = decode_workload(raw)
            if isinstance(decoded, Unparseable):
                self.skipped.append(decoded)
                if self.settings.verbose:
                    print(f"    Skipping {decoded.kind} {decoded.name}: {decoded.reason}")
                continue
            if self._eligible(decoded):
                records.append(decoded)
        return records

    def select_target(
        self,
        deployment: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> TargetWorkload:
        """Select the target workload.

        Args:
            deployment: Explicit workload name.
            namespace: Explicit namespace to search.

        Returns:
            The target workload with its true selector.

        Raises:
            FatalSetupError: If an explicit workload or namespace yields no
                match (stage target-detection).
        """
        if deployment:
            ns = namespace or self.settings.namespace
            raw = self.cluster.get("deployment", deployment, ns)
            if raw is None:
                raise FatalSetupError(
                    f"Failed to find target deployment {ns}/{deployment}",
                    Stage.TARGET_DETECTION,
                )
            decoded = decode_workload(raw)
            if isinstance(decoded, Unparseable):
                raise FatalSetupError(
                    f"Failed to find target deployment {ns}/{deployment}: {decoded.reason}",
                    Stage.TARGET_DETECTION,
                )
            return self._to_target(decoded)

        records = self.list_workloads(namespace)
        if records:
            return self._to_target(records[0])

        if namespace:
            raise FatalSetupError(
                f"No deployments found in namespace {namespace}",
                Stage.TARGET_DETECTION,
            )

        if not self.settings.quiet:
            print("    No deployments found, deploying fallback workload")
        return deploy_fallback(self.cluster, self.settings)

    def _to_target(self, record: WorkloadRecord) -> TargetWorkload:
        target = TargetWorkload(
            name=record.name,
            namespace=record.namespace,
            selector=resolve_selector(record),
        )
        if not self.settings.quiet:
            print(f"    Target: {target.namespace}/{target.name} ({target.label_selector})")
        return target
