"""Tests for stuck experiment detection and recovery."""

from datetime import timedelta

import pytest

from chaosgate.chaos import StuckExperimentRecovery
from chaosgate.cluster.decode import decode_engine
from chaosgate.provisioner import LitmusInstaller

from conftest import NOW, engine_manifest, pod_manifest, result_manifest


@pytest.fixture
def recovery(cluster, settings, clock):
    return StuckExperimentRecovery(cluster, LitmusInstaller(cluster, settings), settings, clock=clock)


class TestIsStuck:
    """Tests for the stuck threshold."""

    def test_older_than_threshold(self, recovery):
        engine = decode_engine(engine_manifest("e", created=NOW - timedelta(minutes=6)))

        assert recovery.is_stuck(engine, NOW)

    def test_exactly_threshold_is_not_stuck(self, recovery):
        engine = decode_engine(engine_manifest("e", created=NOW - timedelta(minutes=5)))

        assert not recovery.is_stuck(engine, NOW)

    def test_not_initialized(self, recovery):
        engine = decode_engine(engine_manifest("e", status="completed", created=NOW - timedelta(hours=1)))

        assert not recovery.is_stuck(engine, NOW)

    def test_unknown_age(self, recovery):
        raw = engine_manifest("e")
        del raw["metadata"]["creationTimestamp"]

        assert not recovery.is_stuck(decode_engine(raw), NOW)


class TestDetectStuck:
    def test_detects_only_stuck_engines(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("cart-chaos-1", "shop", created=old_engine_time))
        cluster.add(engine_manifest("cart-chaos-2", "shop"))
        cluster.add(engine_manifest("cart-chaos-3", "shop", status="completed", created=old_engine_time))

        records = recovery.detect_stuck()

        assert [r.engine_name for r in records] == ["cart-chaos-1"]
        record = records[0]
        assert record.namespace == "shop"
        assert record.stuck_minutes == 12
        assert record.diagnostics["engineStatus"] == "initialized"
        assert record.diagnostics["stuckTimeMinutes"] == 12.0
        assert record.diagnostics["serviceAccount"]["exists"] is False

    def test_namespace_filter(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("a", "shop", created=old_engine_time))
        cluster.add(engine_manifest("b", "billing", created=old_engine_time))

        assert [r.engine_name for r in recovery.detect_stuck("billing")] == ["b"]

    def test_unparseable_engines_are_skipped(self, recovery, cluster, old_engine_time):
        broken = engine_manifest("broken", "shop", created=old_engine_time)
        broken["status"] = "initialized"
        cluster.add(broken)

        assert recovery.detect_stuck() == []

    def test_permission_check_failure_keeps_scanning(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("a", "shop", created=old_engine_time))
        cluster.add(engine_manifest("b", "billing", created=old_engine_time))

        def unreachable(verb, resource, as_user, namespace):
            raise RuntimeError("connection refused")

        cluster.can_i = unreachable

        records = recovery.detect_stuck()

        assert sorted(r.engine_name for r in records) == ["a", "b"]
        account = records[0].diagnostics["serviceAccount"]
        assert account["name"] == "litmus-admin"
        assert account["error"] == "connection refused"


class TestRecover:
    """Tests for remediating one stuck engine."""

    def test_full_recovery(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("cart-chaos-1", "shop", created=old_engine_time))
        cluster.add(pod_manifest("runner", "shop", {"chaosengine": "cart-chaos-1"}))
        cluster.add(pod_manifest("cart-abc", "shop", {"app": "cart"}))
        orphan = result_manifest("cart-chaos-1-pod-delete", "shop")
        orphan["metadata"]["labels"] = {"chaosengine": "cart-chaos-1"}
        cluster.add(orphan)
        record = recovery.detect_stuck()[0]

        outcome = recovery.recover(record)

        assert outcome.success
        assert outcome.actions == [
            "Recreated service account litmus-admin",
            "Force-deleted engine cart-chaos-1",
            "Deleted 1 orphaned pod(s)",
            "Deleted 1 orphaned chaosresult(s)",
        ]
        assert cluster.get("chaosengine", "cart-chaos-1", "shop") is None
        assert cluster.get("pod", "cart-abc", "shop") is not None
        assert ("chaosengine", "shop", "cart-chaos-1", True) in cluster.deleted

    def test_recover_is_idempotent(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("cart-chaos-1", "shop", created=old_engine_time))
        record = recovery.detect_stuck()[0]

        recovery.recover(record)
        second = recovery.recover(record)

        assert second.success
        assert "Engine cart-chaos-1 not found (already deleted)" in second.actions
        assert "Service account litmus-admin is healthy" in second.actions

    def test_account_without_node_access_is_repaired(self, recovery, cluster, old_engine_time):
        recovery.installer.ensure_service_account("shop")
        cluster.add(engine_manifest("cart-chaos-1", "shop", created=old_engine_time))
        cluster.permissions[("get", "nodes")] = False
        record = recovery.detect_stuck()[0]

        outcome = recovery.recover(record)

        account = record.diagnostics["serviceAccount"]
        assert account["exists"] is True
        assert account["permissions"]["canAccessNodes"] is False
        assert outcome.actions[0] == "Recreated service account litmus-admin"

    def test_steps_are_independent(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("cart-chaos-1", "shop", created=old_engine_time))
        cluster.reject("ServiceAccount", "forbidden")
        record = recovery.detect_stuck()[0]

        outcome = recovery.recover(record)

        assert outcome.success
        assert outcome.actions[0].startswith("Service account repair failed")
        assert outcome.actions[1] == "Force-deleted engine cart-chaos-1"

    def test_engine_delete_failure(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("cart-chaos-1", "shop", created=old_engine_time))
        record = recovery.detect_stuck()[0]

        def refuse(kind, name, namespace=None, force=False):
            raise RuntimeError("finalizer stuck")

        cluster.delete = refuse

        outcome = recovery.recover(record)

        assert not outcome.success
        assert "Engine delete failed: finalizer stuck" in outcome.actions
        assert len(outcome.actions) == 4


class TestAutoRecover:
    def test_dry_run(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("cart-chaos-1", "shop", created=old_engine_time))

        report = recovery.auto_recover(enabled=False)

        assert report.dry_run
        assert len(report.stuck_experiments) == 1
        assert report.recovery_results == {}
        assert cluster.get("chaosengine", "cart-chaos-1", "shop") is not None

    def test_recovers_each_engine(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("cart-chaos-1", "shop", created=old_engine_time))
        cluster.add(engine_manifest("web-chaos-2", "shop", created=old_engine_time))

        report = recovery.auto_recover("shop")

        assert not report.dry_run
        assert set(report.recovery_results) == {"shop/cart-chaos-1", "shop/web-chaos-2"}
        assert all(o.success for o in report.recovery_results.values())
        assert cluster.list("chaosengine", "shop") == []

    def test_same_engine_name_in_two_namespaces(self, recovery, cluster, old_engine_time):
        cluster.add(engine_manifest("cart-chaos-1", "shop", created=old_engine_time))
        cluster.add(engine_manifest("cart-chaos-1", "billing", created=old_engine_time))

        report = recovery.auto_recover()

        assert set(report.recovery_results) == {"shop/cart-chaos-1", "billing/cart-chaos-1"}
        assert cluster.list("chaosengine") == []

    def test_nothing_stuck(self, recovery):
        report = recovery.auto_recover()

        assert report.stuck_experiments == []
        assert report.to_dict()["recoveryResults"] == {}
