"""Core data model shared by the deployer, installer, orchestrator and recovery."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from chaosgate.errors import Diagnostic


CHAOS_TYPES = (
    "pod-delete",
    "container-kill",
    "disk-fill",
    "node-io-stress",
    "network-latency",
    "network-loss",
    "network-corruption",
)

# Experiments that stress the node rather than a pod need more time to report.
NODE_CHAOS_TYPES = {"disk-fill", "node-io-stress"}

NETWORK_CHAOS_TYPES = {"network-latency", "network-loss", "network-corruption"}


class Verdict(str, Enum):
    """Outcome of one chaos run."""

    PASS = "Pass"
    FAIL = "Fail"
    AWAITED = "Awaited"

    @classmethod
    def parse(cls, value: Any) -> "Verdict":
        """Read a verdict reported by the framework.

        Anything that is not a definitive pass or fail (``Stopped``, empty,
        missing) stays ``Awaited``.
        """
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "pass":
                return cls.PASS
            if normalized == "fail":
                return cls.FAIL
        return cls.AWAITED


class ResultSource(str, Enum):
    """Where a ``ChaosResult`` was resolved from, in precedence order."""

    RESULT_OBJECT = "result-object"
    NAMESPACE_SCAN = "namespace-scan"
    ENGINE_STATUS = "engine-status"
    DIAGNOSTIC_ONLY = "diagnostic-only"


class ApplyStrategy(str, Enum):
    """How plain manifest files are applied."""

    NORMAL = "normal"
    STRICT_ORDER = "strict-order"
    PARALLEL = "parallel"


class ApplicationType(str, Enum):
    """Deployment mechanism detected for a repository."""

    MANIFEST_DIRECTORY = "manifest-directory"
    HELM = "helm"
    KUSTOMIZE = "kustomize"
    STANDARD = "standard"


@dataclass(frozen=True)
class TargetWorkload:
    """The workload a chaos experiment is aimed at."""

    name: str
    namespace: str
    selector: Dict[str, str] = field(default_factory=dict)
    kind: str = "deployment"

    @property
    def label_selector(self) -> str:
        """Selector in ``key=value,key=value`` form."""
        return ",".join(f"{k}={v}" for k, v in self.selector.items())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "kind": self.kind,
            "selector": self.label_selector,
        }


@dataclass
class ManifestEntry:
    """One manifest file and the kinds it declares."""

    path: str
    kinds: List[str] = field(default_factory=list)
    rank: int = 999

    @property
    def resource_count(self) -> int:
        return max(len(self.kinds), 1)


@dataclass
class DeploymentPlan:
    """Ordered manifest files for one deploy attempt."""

    application_type: ApplicationType
    strategy: ApplyStrategy
    entries: List[ManifestEntry] = field(default_factory=list)

    @property
    def total_resources(self) -> int:
        return sum(entry.resource_count for entry in self.entries)


@dataclass
class DeploymentOutcome:
    """Result of deploying a repository."""

    success: bool
    applied: int
    total: int
    namespace: str
    application_type: ApplicationType = ApplicationType.STANDARD
    errors: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    applied_files: List[str] = field(default_factory=list)
    used_fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "applied": self.applied,
            "total": self.total,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "appliedFiles": list(self.applied_files),
            "namespace": self.namespace,
            "applicationType": self.application_type.value,
            "usedFallback": self.used_fallback,
        }


@dataclass
class ChaosFrameworkState:
    """Snapshot of the chaos framework in the cluster. Never cached."""

    crds_present: bool = False
    operator_running: bool = False
    service_account_present: bool = False
    experiment_definition_present: bool = False
    message: str = ""

    @property
    def ready(self) -> bool:
        return all([
            self.crds_present,
            self.operator_running,
            self.service_account_present,
            self.experiment_definition_present,
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "crdsPresent": self.crds_present,
            "operatorRunning": self.operator_running,
            "serviceAccountPresent": self.service_account_present,
            "experimentDefinitionPresent": self.experiment_definition_present,
            "ready": self.ready,
            "message": self.message,
        }


@dataclass(frozen=True)
class ChaosExperimentSpec:
    """What to attack, how, and for how long."""

    chaos_type: str
    target: TargetWorkload
    duration: int = 30
    params: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.chaos_type not in CHAOS_TYPES:
            raise ValueError(
                f"Unknown chaos type '{self.chaos_type}'. Valid: {', '.join(CHAOS_TYPES)}"
            )
        if self.duration <= 0:
            raise ValueError(f"Duration must be positive, got {self.duration}")


@dataclass
class ChaosResult:
    """Verdict of one run plus everything observed while resolving it."""

    verdict: Verdict
    phase: str
    fail_step: str
    source: ResultSource
    engine_name: str
    namespace: str
    chaos_type: str
    stuck: bool = False
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    observations: List[Diagnostic] = field(default_factory=list)

    @property
    def is_definitive(self) -> bool:
        return self.verdict in (Verdict.PASS, Verdict.FAIL)

    def note(self, source: str, message: str, **details: Any) -> None:
        """Record an observation gap."""
        self.observations.append(Diagnostic(source, message, dict(details)))

    def to_dict(self) -> Dict[str, Any]:
        diagnostics = dict(self.diagnostics)
        diagnostics["observations"] = [o.to_dict() for o in self.observations]
        return {
            "verdict": self.verdict.value,
            "failStep": self.fail_step,
            "experimentStatus": self.phase,
            "source": self.source.value,
            "engineName": self.engine_name,
            "namespace": self.namespace,
            "chaosType": self.chaos_type,
            "stuck": self.stuck,
            "diagnostics": diagnostics,
        }


@dataclass
class StuckExperimentRecord:
    """An engine detected as stuck in its initial phase."""

    engine_name: str
    namespace: str
    chaos_type: str
    created_at: datetime
    detected_at: datetime
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @property
    def stuck_minutes(self) -> float:
        return (self.detected_at - self.created_at).total_seconds() / 60

    @property
    def key(self) -> str:
        """``namespace/engine``, unique across namespaces."""
        return f"{self.namespace}/{self.engine_name}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engineName": self.engine_name,
            "targetNamespace": self.namespace,
            "chaosType": self.chaos_type,
            "stuckSince": self.created_at.isoformat(),
            "detectedAt": self.detected_at.isoformat(),
            "diagnostics": self.diagnostics,
        }


@dataclass
class RecoveryOutcome:
    """What recovery did for one stuck engine."""

    success: bool
    message: str
    actions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "actions": list(self.actions)}


@dataclass
class AutoRecoveryReport:
    """Detection results and, unless dry-run, the recovery of each engine.

    ``recovery_results`` is keyed by ``StuckExperimentRecord.key``.
    """

    stuck_experiments: List[StuckExperimentRecord] = field(default_factory=list)
    recovery_results: Dict[str, RecoveryOutcome] = field(default_factory=dict)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stuckExperiments": [r.to_dict() for r in self.stuck_experiments],
            "recoveryResults": {k: v.to_dict() for k, v in self.recovery_results.items()},
            "dryRun": self.dry_run,
        }


def engine_timestamp(name: str) -> Optional[int]:
    """Extract the unix-millis suffix from ``<workload>-chaos-<millis>``."""
    head, sep, tail = name.rpartition("-chaos-")
    if not sep or not head or not tail.isdigit():
        return None
    return int(tail)
