"""Tests for target workload selection."""

import pytest

from chaosgate.cluster.decode import decode_workload
from chaosgate.errors import FatalSetupError, Stage
from chaosgate.provisioner.fallback import FALLBACK_NAME, fallback_resources
from chaosgate.provisioner.target import TargetSelector, resolve_selector

from conftest import deployment_manifest


class TestResolveSelector:
    def test_match_labels(self):
        record = decode_workload(deployment_manifest("cart", labels={"app": "cart", "v": "1"},
                                                     selector={"app": "cart"}))

        assert resolve_selector(record) == {"app": "cart"}

    def test_no_labels(self):
        raw = deployment_manifest("cart", selector=False)
        raw["spec"]["template"]["metadata"] = {}

        with pytest.raises(FatalSetupError, match="Failed to find target deployment labels") as exc:
            resolve_selector(decode_workload(raw))

        assert exc.value.stage == Stage.TARGET_DETECTION


class TestTargetSelector:
    """Tests for choosing the workload to attack."""

    def test_explicit_deployment(self, cluster, settings):
        cluster.add(deployment_manifest("cart", "shop", labels={"app.kubernetes.io/name": "cart"}))

        target = TargetSelector(cluster, settings).select_target("cart", "shop")

        assert target.name == "cart"
        assert target.namespace == "shop"
        assert target.label_selector == "app.kubernetes.io/name=cart"

    def test_explicit_deployment_missing(self, cluster, settings):
        with pytest.raises(FatalSetupError, match="Failed to find target deployment shop/cart") as exc:
            TargetSelector(cluster, settings).select_target("cart", "shop")

        assert exc.value.status_code == 400

    def test_first_eligible_workload(self, cluster, settings):
        cluster.add(deployment_manifest("coredns", "kube-system"))
        cluster.add(deployment_manifest("chaos-operator-ce", "litmus"))
        cluster.add(deployment_manifest("cart", "shop"))
        cluster.add(deployment_manifest("web", "shop"))

        target = TargetSelector(cluster, settings).select_target()

        assert target.name == "cart"

    def test_namespace_override(self, cluster, settings):
        cluster.add(deployment_manifest("cart", "shop"))
        cluster.add(deployment_manifest("api", "backend"))

        target = TargetSelector(cluster, settings).select_target(namespace="backend")

        assert target.name == "api"

    def test_namespace_override_without_workloads(self, cluster, settings):
        cluster.add(deployment_manifest("cart", "shop"))

        with pytest.raises(FatalSetupError, match="No deployments found in namespace empty"):
            TargetSelector(cluster, settings).select_target(namespace="empty")

        assert cluster.get("deployment", FALLBACK_NAME, "default") is None

    def test_excluded_namespace_never_chosen(self, cluster, settings):
        cluster.add(deployment_manifest("coredns", "kube-system"))

        with pytest.raises(FatalSetupError, match="No deployments found"):
            TargetSelector(cluster, settings).select_target(namespace="kube-system")

    def test_fallback_when_cluster_empty(self, cluster, settings):
        target = TargetSelector(cluster, settings).select_target()

        assert target.name == FALLBACK_NAME
        assert target.namespace == "default"
        assert target.selector == {"app": FALLBACK_NAME}
        assert cluster.waits[0]["target"] == f"deployment/{FALLBACK_NAME}"

    def test_deployed_fallback_is_selected(self, cluster, settings):
        """A fallback deployed earlier is found like any other workload."""
        cluster.apply(fallback_resources())

        target = TargetSelector(cluster, settings).select_target()

        assert target.name == FALLBACK_NAME
        assert cluster.waits == []

    def test_unparseable_workloads_are_skipped(self, cluster, settings):
        broken = deployment_manifest("broken", "shop")
        broken["spec"]["replicas"] = "three"
        cluster.add(broken)
        cluster.add(deployment_manifest("cart", "shop"))

        selector = TargetSelector(cluster, settings)
        target = selector.select_target()

        assert target.name == "cart"
        assert [s.name for s in selector.skipped] == ["broken"]
