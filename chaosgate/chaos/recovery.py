"""Detection and remediation of chaos engines stuck in ``initialized``."""

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from chaosgate.cluster.decode import EngineRecord, Unparseable, decode_engine
from chaosgate.config import Settings
from chaosgate.models import AutoRecoveryReport, RecoveryOutcome, StuckExperimentRecord


class StuckExperimentRecovery:
    """Finds wedged engines, diagnoses them and cleans them up."""

    def __init__(
        self,
        cluster,
        installer,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.cluster = cluster
        self.installer = installer
        self.settings = settings
        self.clock = clock

    def _log(self, message: str):
        if not self.settings.quiet:
            print(f"    {message}")

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def is_stuck(self, engine: EngineRecord, now: datetime) -> bool:
        """Initialized and older than the stuck threshold."""
        if not engine.is_initialized:
            return False
        age = engine.age(now)
        if age is None:
            return False
        return age > timedelta(minutes=self.settings.stuck_threshold_minutes)

    def detect_stuck(self, namespace: Optional[str] = None) -> List[StuckExperimentRecord]:
        """List stuck engines with a diagnostics snapshot for each.

        Args:
            namespace: Namespace to scan, or None for all namespaces.

        Returns:
            One record per stuck engine.
        """
        now = self._now()
        records = []
        for raw in self.cluster.list("chaosengine", namespace):
            engine = decode_engine(raw)
            if isinstance(engine, Unparseable):
                if self.settings.verbose:
                    print(f"    Skipping engine {engine.name}: {engine.reason}")
                continue
            if not self.is_stuck(engine, now):
                continue

            ns = engine.namespace or namespace or self.settings.namespace
            record = StuckExperimentRecord(
                engine_name=engine.name,
                namespace=ns,
                chaos_type=engine.chaos_type,
                created_at=engine.created_at,
                detected_at=now,
            )
            record.diagnostics = {
                "engineStatus": engine.engine_status,
                "stuckTimeMinutes": round(record.stuck_minutes, 1),
                "creationTime": engine.created_at.isoformat(),
                "engineSpec": engine.spec,
            }
            try:
                record.diagnostics["serviceAccount"] = self.installer.service_account_permissions(ns)
            except Exception as e:
                record.diagnostics["serviceAccount"] = {
                    "name": self.settings.service_account,
                    "error": str(e),
                }
            self._log(
                f"Stuck engine {ns}/{engine.name} ({engine.chaos_type}), "
                f"initialized for {record.stuck_minutes:.1f} min"
            )
            records.append(record)
        return records

    def recover(self, record: StuckExperimentRecord) -> RecoveryOutcome:
        """Remediate one stuck engine.

        Steps run independently: a failure in one is recorded and the next
        still runs. ``success`` reflects only the engine delete.
        """
        ns = record.namespace
        actions = []

        # Service account
        try:
            account = self.installer.service_account_permissions(ns)
            perms = account["permissions"]
            if not account["exists"] or not perms["canCreatePods"] or not perms["canAccessNodes"]:
                self.installer.ensure_service_account(ns, record.chaos_type)
                actions.append(f"Recreated service account {account['name']}")
            else:
                actions.append(f"Service account {account['name']} is healthy")
        except Exception as e:
            actions.append(f"Service account repair failed: {e}")

        # Engine
        success = True
        try:
            if self.cluster.delete("chaosengine", record.engine_name, ns, force=True):
                actions.append(f"Force-deleted engine {record.engine_name}")
            else:
                actions.append(f"Engine {record.engine_name} not found (already deleted)")
        except Exception as e:
            success = False
            actions.append(f"Engine delete failed: {e}")

        # Orphans
        selector = f"chaosengine={record.engine_name}"
        for kind in ("pod", "chaosresult"):
            try:
                count = self.cluster.delete_matching(kind, selector, ns)
                actions.append(f"Deleted {count} orphaned {kind}(s)")
            except Exception as e:
                actions.append(f"Cleanup of {kind}s failed: {e}")

        for action in actions:
            self._log(action)
        message = (
            f"Recovered stuck engine {record.engine_name}"
            if success
            else f"Could not delete stuck engine {record.engine_name}"
        )
        return RecoveryOutcome(success=success, message=message, actions=actions)

    def auto_recover(self, namespace: Optional[str] = None, enabled: bool = True) -> AutoRecoveryReport:
        """Detect stuck engines and, when enabled, recover each one."""
        report = AutoRecoveryReport(
            stuck_experiments=self.detect_stuck(namespace),
            dry_run=not enabled,
        )
        if enabled:
            for record in report.stuck_experiments:
                report.recovery_results[record.key] = self.recover(record)
        return report
