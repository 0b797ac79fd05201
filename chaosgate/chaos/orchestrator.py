"""Execution of one chaos experiment against one workload.

``ExperimentOrchestrator.run`` prepares the framework, applies a uniquely
named ChaosEngine, watches for its execution pod, waits out the
experiment, resolves a verdict and checks that the target recovered.

Setup failures before the engine is applied raise ``FatalSetupError``.
Once the engine is applied, ``run`` always returns a ``ChaosResult``:
anything that goes wrong afterwards is recorded on the result instead.
"""

import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from chaosgate.chaos.engine import ChaosEngineBuilder, execution_pod_selectors
from chaosgate.cluster.decode import EngineRecord, WorkloadRecord, decode_engine, decode_workload
from chaosgate.collector.result_collector import RESULT_RETRIEVAL_STEP, ResultResolver
from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError, Stage
from chaosgate.models import (
    NODE_CHAOS_TYPES,
    ChaosExperimentSpec,
    ChaosResult,
    ResultSource,
    TargetWorkload,
    Verdict,
)


class ExperimentOrchestrator:
    """Runs chaos experiments end to end."""

    def __init__(
        self,
        cluster,
        installer,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the orchestrator.

        Args:
            cluster: Cluster client.
            installer: Framework installer used for definitions and the
                service account.
            settings: Runtime settings.
            sleep: Blocking sleep, injectable for tests.
            clock: Wall clock in seconds, injectable for tests.
        """
        self.cluster = cluster
        self.installer = installer
        self.settings = settings
        self.sleep = sleep
        self.clock = clock
        self.builder = ChaosEngineBuilder(cluster, settings, clock=clock)
        self.resolver = ResultResolver(cluster, settings)

    def _log(self, message: str):
        if not self.settings.quiet:
            print(f"    {message}")

    def wait_seconds(self, spec: ChaosExperimentSpec) -> int:
        """Experiment duration plus the reporting buffer for its type."""
        if spec.chaos_type in NODE_CHAOS_TYPES:
            return spec.duration + self.settings.long_result_buffer
        return spec.duration + self.settings.result_buffer

    def run(self, spec: ChaosExperimentSpec) -> ChaosResult:
        """Run one experiment.

        Args:
            spec: What to attack, how, and for how long.

        Returns:
            The resolved result. Never raises once the engine is applied.

        Raises:
            FatalSetupError: If the definition, service account, selector or
                engine apply fails (nothing was attacked).
        """
        target = spec.target
        ns = target.namespace

        # 1-2. Framework prerequisites
        definition_source = self.installer.ensure_experiment_definition(spec.chaos_type, ns)
        self.installer.ensure_service_account(ns, spec.chaos_type)

        # 3. True selector
        target = self.resolve_target(target)
        spec = replace(spec, target=target)

        # 4-5. Engine
        engine = self.builder.build(spec)
        self._log(f"Applying ChaosEngine {engine.name} ({spec.chaos_type}, {spec.duration}s)")
        self._apply_engine(engine, ns)

        result_diagnostics: Dict[str, Any] = {
            "selector": target.label_selector,
            "target": target.to_dict(),
            "placement": engine.placement.value,
            "definitionSource": definition_source,
            "duration": spec.duration,
        }
        observations: List[tuple] = []

        # 6. Execution pod
        pods = self._guarded(observations, "pod-discovery", lambda: self.discover_pods(engine.name, spec))
        if pods is not None:
            selectors = pods.pop("selectors")
            result_diagnostics.update(pods)
            if not pods["executionPods"]:
                observations.append((
                    "pod-discovery",
                    f"No execution pod found after {pods['podDiscoveryAttempts']} attempts",
                    {"selectors": selectors},
                ))

        # 7. Experiment window
        wait = self.wait_seconds(spec)
        result_diagnostics["waitSeconds"] = wait
        self._log(f"Waiting {wait}s for the experiment to finish")
        self.sleep(wait)

        # 8. Verdict
        result = self._guarded(
            observations,
            "result",
            lambda: self.resolver.resolve(engine.name, target.name, spec.chaos_type, ns),
        )
        if result is None:
            result = self.resolver_fallback(engine.name, spec)
        result.diagnostics.update(result_diagnostics)
        for source, message, details in observations:
            result.note(source, message, **details)

        if result.verdict == Verdict.AWAITED:
            self._guarded_note(result, "stuck", lambda: self._tag_stuck(result, engine.name, ns))

        # 9. Target recovery
        self._guarded_note(result, "recovery", lambda: self._check_recovery(result, target))

        self._log(
            f"Verdict: {result.verdict.value} "
            f"(source: {result.source.value}{', stuck' if result.stuck else ''})"
        )
        return result

    # ── Steps ───────────────────────────────────────────────────

    def resolve_target(self, target: TargetWorkload) -> TargetWorkload:
        """Re-read the workload and take its selector from its own spec.

        Raises:
            FatalSetupError: If no selector is known at all.
        """
        raw = self.cluster.get("deployment", target.name, target.namespace)
        record = decode_workload(raw) if raw is not None else None
        if isinstance(record, WorkloadRecord) and record.effective_selector:
            return replace(target, selector=record.effective_selector)
        if target.selector:
            return target
        raise FatalSetupError(
            f"Failed to find target deployment labels for {target.namespace}/{target.name}",
            Stage.TARGET_DETECTION,
        )

    def _apply_engine(self, engine, namespace: str):
        outcome = self.cluster.apply([engine], namespace=namespace)
        if outcome.ok:
            return
        self._log(f"Strict apply rejected ({outcome.error}), retrying with --validate=false")
        relaxed = self.cluster.apply([engine], namespace=namespace, validate=False)
        if not relaxed.ok:
            raise FatalSetupError(
                f"Failed to apply ChaosEngine {engine.name}: {relaxed.error}",
                Stage.CHAOS_EXECUTION,
            )

    def discover_pods(self, engine_name: str, spec: ChaosExperimentSpec) -> Dict[str, Any]:
        """Poll for the execution pod with each candidate selector.

        Bounded by ``pod_discovery_retries`` rounds with
        ``pod_discovery_interval`` seconds between rounds.

        Returns:
            ``executionPods`` (empty when nothing was found), the matching
            ``podSelector``, ``podDiscoveryAttempts`` and the ``selectors``
            tried.
        """
        ns = spec.target.namespace
        uid = ""
        if spec.chaos_type == "node-io-stress":
            raw = self.cluster.get("chaosengine", engine_name, ns)
            record = decode_engine(raw) if raw is not None else None
            if isinstance(record, EngineRecord):
                uid = record.uid

        selectors = execution_pod_selectors(engine_name, spec.target.name, spec.chaos_type, uid)
        retries = self.settings.pod_discovery_retries
        for attempt in range(1, retries + 1):
            for selector in selectors:
                pods = self.cluster.list("pod", ns, label_selector=selector)
                if pods:
                    names = [p.get("metadata", {}).get("name", "") for p in pods]
                    self._log(f"Found execution pod(s) {', '.join(names)} via {selector}")
                    return {
                        "podSelector": selector,
                        "executionPods": names,
                        "podDiscoveryAttempts": attempt,
                        "selectors": selectors,
                    }
            if attempt < retries:
                self.sleep(self.settings.pod_discovery_interval)

        self._log(f"No execution pod found after {retries} attempts")
        return {"executionPods": [], "podDiscoveryAttempts": retries, "selectors": selectors}

    def resolver_fallback(self, engine_name: str, spec: ChaosExperimentSpec) -> ChaosResult:
        """Minimal result used when resolution itself failed."""
        return ChaosResult(
            verdict=Verdict.AWAITED,
            phase=Verdict.AWAITED.value,
            fail_step=RESULT_RETRIEVAL_STEP,
            source=ResultSource.DIAGNOSTIC_ONLY,
            engine_name=engine_name,
            namespace=spec.target.namespace,
            chaos_type=spec.chaos_type,
        )

    def _tag_stuck(self, result: ChaosResult, engine_name: str, namespace: str):
        """Mark an awaited result whose engine never left ``initialized``."""
        raw = self.cluster.get("chaosengine", engine_name, namespace)
        if raw is None:
            return
        record = decode_engine(raw)
        if not isinstance(record, EngineRecord):
            result.note("stuck", "Unparseable engine", reason=record.reason)
            return
        result.diagnostics["engineStatus"] = record.engine_status
        if record.is_initialized:
            result.stuck = True
            now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
            age = record.age(now)
            result.note(
                "stuck",
                "Engine still initialized after the experiment window",
                ageSeconds=int(age.total_seconds()) if age is not None else None,
            )

    def _check_recovery(self, result: ChaosResult, target: TargetWorkload):
        timeout = self.settings.recovery_wait_timeout
        recovered = self.cluster.wait(
            "Ready", target.namespace, target="pods",
            selector=target.label_selector, timeout=timeout,
        )
        result.diagnostics["recoveryStatus"] = "Complete" if recovered else "Incomplete"
        if not recovered:
            result.note("recovery", f"Target pods not ready within {timeout}s")

    # ── Failure absorption ──────────────────────────────────────

    def _guarded(self, observations: List[tuple], source: str, step: Callable[[], Any]) -> Any:
        """Run a post-apply step, turning any failure into an observation."""
        try:
            return step()
        except Exception as e:
            observations.append((source, f"{type(e).__name__}: {e}", {}))
            return None

    def _guarded_note(self, result: ChaosResult, source: str, step: Callable[[], Any]):
        try:
            step()
        except Exception as e:
            result.note(source, f"{type(e).__name__}: {e}")

