"""End-to-end chaos test: clone, cluster, deploy, install, select, run.

Every step's failure is reported as a ``FatalSetupError`` tagged with the
stage it belongs to, so callers can tell "nothing was attacked" apart from
"the attack ran and reporting is incomplete".
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from chaosgate.chaos import ExperimentOrchestrator
from chaosgate.cluster import ClusterClient
from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError, Stage, classify_failure
from chaosgate.models import (
    ChaosExperimentSpec,
    ChaosFrameworkState,
    ChaosResult,
    DeploymentOutcome,
    TargetWorkload,
    Verdict,
)
from chaosgate.provisioner import (
    KindCluster,
    LitmusInstaller,
    ManifestDeployer,
    TargetSelector,
    clone_repository,
)

TOTAL_STEPS = 6


@dataclass
class PipelineReport:
    """Everything one chaos test produced."""

    repository: str
    chaos_type: str
    duration: int
    deployment: DeploymentOutcome
    framework: ChaosFrameworkState
    target: TargetWorkload
    result: ChaosResult

    @property
    def message(self) -> str:
        if self.result.verdict == Verdict.AWAITED:
            return "Chaos test completed with partial results (no definitive verdict)"
        return "Chaos test completed"

    def to_response(self) -> Dict[str, Any]:
        """Response body for a completed run. Always ``success: true``."""
        result = self.result.to_dict()
        result["deployment"] = self.deployment.to_dict()
        result["framework"] = self.framework.to_dict()
        return {
            "success": True,
            "message": self.message,
            "chaosType": self.chaos_type,
            "duration": self.duration,
            "targetDeployment": self.target.name,
            "targetNamespace": self.target.namespace,
            "repository": self.repository,
            "verdict": self.result.verdict.value,
            "failStep": self.result.fail_step,
            "experimentStatus": self.result.phase,
            "result": result,
        }


class ChaosTestPipeline:
    """Runs a complete chaos test against a repository."""

    def __init__(
        self,
        settings: Settings,
        cluster=None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.cluster = cluster if cluster is not None else ClusterClient(settings)
        self.installer = LitmusInstaller(self.cluster, settings)
        self.deployer = ManifestDeployer(self.cluster, settings)
        self.selector = TargetSelector(self.cluster, settings)
        self.orchestrator = ExperimentOrchestrator(
            self.cluster, self.installer, settings, sleep=sleep, clock=clock
        )

    def _phase(self, step: int, message: str):
        if not self.settings.quiet:
            print(f"[{step}/{TOTAL_STEPS}] {message}")

    @staticmethod
    def _step(stage: Stage, action: Callable[[], Any]) -> Any:
        """Run one step, tagging any failure with its stage."""
        try:
            return action()
        except FatalSetupError:
            raise
        except Exception as e:
            raise FatalSetupError(str(e), classify_failure(e, stage)) from e

    def run(
        self,
        github_url: Optional[str] = None,
        repo_dir: Optional[str] = None,
        chaos_type: Optional[str] = None,
        duration: Optional[int] = None,
        target_namespace: Optional[str] = None,
        target_deployment: Optional[str] = None,
    ) -> PipelineReport:
        """Run the full chaos test.

        Args:
            github_url: Repository to clone. Ignored when ``repo_dir`` is given.
            repo_dir: Existing checkout to deploy.
            chaos_type: Experiment type, defaults to ``settings.default_chaos_type``.
            duration: Chaos duration in seconds.
            target_namespace: Explicit namespace of the target workload.
            target_deployment: Explicit target workload name.

        Returns:
            The report of the completed run.

        Raises:
            FatalSetupError: If any step before the attack fails.
        """
        chaos_type = chaos_type or self.settings.default_chaos_type
        duration = duration or self.settings.default_duration

        self._phase(1, "Fetching repository...")
        if repo_dir:
            checkout = Path(repo_dir)
            repository = str(checkout)
        elif github_url:
            checkout = self._step(
                Stage.REPOSITORY_CLONING, lambda: clone_repository(github_url, self.settings)
            )
            repository = github_url
        else:
            raise FatalSetupError("No repository given", Stage.REPOSITORY_CLONING)

        self._phase(2, "Preparing cluster...")
        if self.settings.provision_cluster:
            self._step(Stage.CLUSTER_SETUP, lambda: KindCluster(self.settings).ensure())

        self._phase(3, "Deploying manifests...")
        deployment = self._step(
            Stage.DEPLOYMENT,
            lambda: self.deployer.deploy(str(checkout), namespace=target_namespace),
        )
        if not deployment.success:
            details = "; ".join(f"{e['file']}: {e['error']}" for e in deployment.errors)
            raise FatalSetupError(
                f"Failed to deploy application ({deployment.applied}/{deployment.total} applied)",
                Stage.DEPLOYMENT,
                details=details or None,
            )

        self._phase(4, "Installing chaos framework...")
        framework = self._step(Stage.CLUSTER_SETUP, self.installer.ensure_installed)

        self._phase(5, "Selecting target workload...")
        target = self._step(
            Stage.TARGET_DETECTION,
            lambda: self.selector.select_target(target_deployment, target_namespace),
        )

        self._phase(6, f"Running {chaos_type} for {duration}s...")
        spec = self._step(
            Stage.CHAOS_EXECUTION,
            lambda: ChaosExperimentSpec(chaos_type=chaos_type, target=target, duration=duration),
        )
        result = self._step(Stage.CHAOS_EXECUTION, lambda: self.orchestrator.run(spec))

        return PipelineReport(
            repository=repository,
            chaos_type=chaos_type,
            duration=duration,
            deployment=deployment,
            framework=framework,
            target=target,
            result=result,
        )
