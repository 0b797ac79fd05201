"""Error taxonomy for chaosgate.

Three kinds of failure are kept apart:

- ``FatalSetupError``: nothing was attacked. Carries the user-facing
  ``Stage`` and the HTTP status code the outer surfaces answer with.
- ``RecoverableInstallError``: one installation attempt was rejected. The
  installer catches it and moves on to its next fallback; once every
  fallback is exhausted it is escalated to a ``FatalSetupError``.
- ``Diagnostic``: an observation gap (no result object, no execution pod,
  partial recovery). Never raised, only attached to results.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Stage(str, Enum):
    """User-facing stage a fatal failure belongs to."""

    MANIFEST_DETECTION = "manifest-detection"
    TARGET_DETECTION = "target-detection"
    REPOSITORY_CLONING = "repository-cloning"
    CLUSTER_SETUP = "cluster-setup"
    DEPLOYMENT = "deployment"
    CHAOS_EXECUTION = "chaos-execution"

    @property
    def status_code(self) -> int:
        """HTTP status for failures in this stage."""
        if self in (Stage.MANIFEST_DETECTION, Stage.TARGET_DETECTION):
            return 400
        return 500

    def headline(self) -> str:
        """Short user-facing summary of the stage failure."""
        headlines = {
            Stage.MANIFEST_DETECTION: "No deployable manifests found",
            Stage.TARGET_DETECTION: "No target workload found",
            Stage.REPOSITORY_CLONING: "Failed to clone repository",
            Stage.CLUSTER_SETUP: "Failed to set up cluster",
            Stage.DEPLOYMENT: "Failed to deploy application",
            Stage.CHAOS_EXECUTION: "Error during chaos testing",
        }
        return headlines[self]


class ChaosGateError(Exception):
    """Base class for chaosgate errors."""


class FatalSetupError(ChaosGateError):
    """A setup failure that aborts the run before any chaos was injected."""

    def __init__(self, message: str, stage: Stage, details: Optional[str] = None):
        super().__init__(message)
        self.stage = stage
        self.details = details or message

    @property
    def status_code(self) -> int:
        return self.stage.status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.stage.headline(),
            "stage": self.stage.value,
            "details": self.details,
        }


class RecoverableInstallError(ChaosGateError):
    """An installation attempt that failed but may succeed through a fallback."""

    def __init__(self, component: str, message: str, attempts: Optional[List[str]] = None):
        super().__init__(message)
        self.component = component
        self.attempts = attempts or []

    def escalate(self, stage: Stage = Stage.CLUSTER_SETUP) -> FatalSetupError:
        """Turn an exhausted recoverable failure into a fatal one."""
        details = "; ".join(self.attempts) if self.attempts else str(self)
        return FatalSetupError(f"{self.component}: {self}", stage, details=details)


@dataclass
class Diagnostic:
    """A non-fatal observation recorded on a result."""

    source: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"source": self.source, "message": self.message}
        if self.details:
            entry["details"] = self.details
        return entry


# Substrings of collaborator error text, checked in order.
_STAGE_MARKERS = [
    ("No Kubernetes manifest files", Stage.MANIFEST_DETECTION),
    ("Could not locate valid", Stage.MANIFEST_DETECTION),
    ("No deployments found", Stage.TARGET_DETECTION),
    ("Failed to find target deployment", Stage.TARGET_DETECTION),
    ("Failed to clone repository", Stage.REPOSITORY_CLONING),
    ("docker.sock", Stage.CLUSTER_SETUP),
    ("Failed to setup Kubernetes cluster", Stage.CLUSTER_SETUP),
    ("Failed to deploy", Stage.DEPLOYMENT),
    ("Failed to apply", Stage.DEPLOYMENT),
]


def classify_failure(exc: BaseException, default: Stage) -> Stage:
    """Map a failure to the stage it should be reported under.

    Args:
        exc: The exception raised by a collaborator.
        default: Stage of the step that was running.

    Returns:
        The stage carried by a ``FatalSetupError``, the stage matched by the
        error text, or ``default``.
    """
    if isinstance(exc, FatalSetupError):
        return exc.stage
    text = str(exc)
    for marker, stage in _STAGE_MARKERS:
        if marker in text:
            return stage
    return default
