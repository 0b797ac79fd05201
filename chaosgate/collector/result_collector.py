"""Resolution of a chaos run's verdict from the cluster.

Result objects are not reliably named, may not exist yet, and may be left
over from earlier runs. Resolution walks four sources in strict precedence
and returns the first one that yields anything:

1. a ChaosResult under one of the plausible derived names,
2. a namespace-wide scan of ChaosResults filtered by name,
3. the ChaosEngine's own experiment status,
4. a diagnostic-only result.
"""

from datetime import datetime, timezone
from typing import List, Optional

from kubernetes.client.rest import ApiException

from chaosgate.cluster.decode import (
    EngineRecord,
    ResultRecord,
    Unparseable,
    decode_engine,
    decode_result,
)
from chaosgate.config import Settings
from chaosgate.models import ChaosResult, ResultSource, Verdict, engine_timestamp

RESULT_RETRIEVAL_STEP = "Result retrieval"


def candidate_result_names(engine_name: str, workload_name: str, chaos_type: str) -> List[str]:
    """Plausible ChaosResult names for one run, most likely first."""
    names = [
        f"{engine_name}-{chaos_type}",
        f"{workload_name}-chaos-{chaos_type}",
        engine_name,
        f"{workload_name}-{chaos_type}",
    ]
    timestamp = engine_timestamp(engine_name)
    if timestamp is not None:
        names.append(f"{workload_name}-{timestamp}")
    names.append(f"{workload_name}-runner")
    if chaos_type == "node-io-stress":
        names += [
            f"{engine_name}-io-stress",
            f"{workload_name}-io-stress",
            f"chaos-{chaos_type}",
            f"{workload_name}-chaos-runner-{chaos_type}",
        ]

    unique = []
    for name in names:
        if name not in unique:
            unique.append(name)
    return unique


class ResultResolver:
    """Finds the verdict of one chaos run."""

    def __init__(self, cluster, settings: Settings):
        self.cluster = cluster
        self.settings = settings

    def resolve(
        self,
        engine_name: str,
        workload_name: str,
        chaos_type: str,
        namespace: str,
    ) -> ChaosResult:
        """Resolve the verdict of a run. Never raises for lookup failures.

        Args:
            engine_name: Name of the applied ChaosEngine.
            workload_name: Name of the attacked workload.
            chaos_type: Experiment type.
            namespace: Namespace of the engine.

        Returns:
            The result from the highest-precedence source that yielded one.
        """
        result = ChaosResult(
            verdict=Verdict.AWAITED,
            phase="",
            fail_step="",
            source=ResultSource.DIAGNOSTIC_ONLY,
            engine_name=engine_name,
            namespace=namespace,
            chaos_type=chaos_type,
        )

        record = self._from_named(result, engine_name, workload_name, chaos_type, namespace)
        if record is not None:
            return self._apply_record(result, record, ResultSource.RESULT_OBJECT)

        record = self._from_scan(result, engine_name, workload_name, chaos_type, namespace)
        if record is not None:
            return self._apply_record(result, record, ResultSource.NAMESPACE_SCAN)

        engine = self._from_engine(result, engine_name, namespace)
        if engine is not None:
            result.source = ResultSource.ENGINE_STATUS
            self._set_verdict(result, engine.verdict)
            result.phase = engine.experiment_status or engine.engine_status
            result.fail_step = engine.fail_step
            result.diagnostics["engineStatus"] = engine.engine_status
            return result

        result.phase = Verdict.AWAITED.value
        result.fail_step = RESULT_RETRIEVAL_STEP
        result.note("result", "No result object or engine status could be read")
        return result

    # ── Sources ─────────────────────────────────────────────────

    def _from_named(
        self,
        result: ChaosResult,
        engine_name: str,
        workload_name: str,
        chaos_type: str,
        namespace: str,
    ) -> Optional[ResultRecord]:
        names = candidate_result_names(engine_name, workload_name, chaos_type)
        for name in names:
            try:
                raw = self.cluster.get("chaosresult", name, namespace)
            except ApiException as e:
                result.note("result-object", f"Lookup of {name} failed", status=e.status)
                continue
            if raw is None:
                continue
            decoded = decode_result(raw)
            if isinstance(decoded, Unparseable):
                result.note("result-object", f"Unparseable result {name}", reason=decoded.reason)
                continue
            return decoded
        result.diagnostics["candidateResultNames"] = names
        return None

    def _from_scan(
        self,
        result: ChaosResult,
        engine_name: str,
        workload_name: str,
        chaos_type: str,
        namespace: str,
    ) -> Optional[ResultRecord]:
        try:
            items = self.cluster.list("chaosresult", namespace)
        except ApiException as e:
            result.note("namespace-scan", "Listing results failed", status=e.status)
            return None

        started = None
        timestamp = engine_timestamp(engine_name)
        if timestamp is not None:
            started = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)

        matches = []
        for raw in items:
            decoded = decode_result(raw)
            if isinstance(decoded, Unparseable):
                result.note("namespace-scan", f"Unparseable result {decoded.name}", reason=decoded.reason)
                continue
            if not any(token in decoded.name for token in (workload_name, chaos_type, "chaos")):
                continue
            # Results created before this run belong to an earlier engine.
            if started and decoded.created_at and decoded.created_at < started.replace(microsecond=0):
                continue
            matches.append(decoded)

        if not matches:
            return None

        minimum = datetime.min.replace(tzinfo=timezone.utc)
        matches.sort(
            key=lambda r: (r.engine_name == engine_name, r.created_at or minimum),
            reverse=True,
        )
        return matches[0]

    def _from_engine(self, result: ChaosResult, engine_name: str, namespace: str) -> Optional[EngineRecord]:
        try:
            raw = self.cluster.get("chaosengine", engine_name, namespace)
        except ApiException as e:
            result.note("engine-status", "Engine lookup failed", status=e.status)
            return None
        if raw is None:
            result.note("engine-status", f"Engine {engine_name} not found")
            return None
        decoded = decode_engine(raw)
        if isinstance(decoded, Unparseable):
            result.note("engine-status", "Unparseable engine", reason=decoded.reason)
            return None
        return decoded

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _set_verdict(result: ChaosResult, raw_verdict: str):
        result.verdict = Verdict.parse(raw_verdict)
        if raw_verdict and raw_verdict != result.verdict.value:
            result.diagnostics["rawVerdict"] = raw_verdict

    def _apply_record(self, result: ChaosResult, record: ResultRecord, source: ResultSource) -> ChaosResult:
        result.source = source
        self._set_verdict(result, record.verdict)
        result.phase = record.phase
        result.fail_step = record.fail_step
        result.diagnostics["resultName"] = record.name
        if record.probe_success_percentage is not None:
            result.diagnostics["probeSuccessPercentage"] = record.probe_success_percentage
        return result
