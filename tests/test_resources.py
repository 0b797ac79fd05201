"""Tests for resource builders and the manifest encoder."""

import yaml

from chaosgate.cluster.resources import (
    ChaosEngine,
    ChaosExperiment,
    ClusterRoleBinding,
    CustomResourceDefinition,
    Deployment,
    Container,
    EnginePlacement,
    EnvVar,
    Namespace,
    PermissionShape,
    PolicyRule,
    encode,
    env_list,
)


RULES = [PolicyRule(api_groups=[""], resources=["pods"], verbs=["get"])]


def _engine(placement):
    return ChaosEngine(
        name="cart-chaos-1",
        namespace="shop",
        chaos_type="pod-delete",
        workload_name="cart",
        app_label="app=cart",
        service_account="litmus-admin",
        env=env_list({"TOTAL_CHAOS_DURATION": 30, "FORCE": "true"}),
        placement=placement,
    )


class TestEncode:
    """Tests for the single YAML encoder."""

    def test_mixes_builders_dicts_and_lists(self):
        text = encode(
            Namespace("shop"),
            {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "cfg"}},
            [Namespace("a"), Namespace("b")],
        )

        docs = list(yaml.safe_load_all(text))
        assert [d["kind"] for d in docs] == ["Namespace", "ConfigMap", "Namespace", "Namespace"]
        assert docs[3]["metadata"]["name"] == "b"

    def test_keeps_field_order(self):
        text = encode(Namespace("shop"))

        assert text.index("apiVersion") < text.index("kind") < text.index("metadata")


class TestEnvVar:
    def test_values_are_strings(self):
        assert EnvVar("TOTAL_CHAOS_DURATION", 30).to_manifest() == {
            "name": "TOTAL_CHAOS_DURATION",
            "value": "30",
        }

    def test_field_ref(self):
        manifest = EnvVar("POD_NAME", field_path="metadata.name").to_manifest()

        assert manifest["valueFrom"] == {"fieldRef": {"fieldPath": "metadata.name"}}

    def test_env_list_keeps_order(self):
        names = [e.name for e in env_list({"B": 1, "A": 2, "C": 3})]

        assert names == ["B", "A", "C"]


class TestChaosEngine:
    """Tests for the engine builder's two target placements."""

    def test_appinfo_placement(self):
        spec = _engine(EnginePlacement.APPINFO).to_manifest()["spec"]

        assert spec["appinfo"] == {"appns": "shop", "applabel": "app=cart", "appkind": "deployment"}
        assert "selectors" not in spec
        assert spec["chaosServiceAccount"] == "litmus-admin"
        assert spec["annotationCheck"] == "false"

    def test_selectors_placement(self):
        spec = _engine(EnginePlacement.SELECTORS).to_manifest()["spec"]

        assert "appinfo" not in spec
        assert spec["selectors"]["workloads"] == [
            {"kind": "deployment", "namespace": "shop", "labels": "app=cart"}
        ]

    def test_labels_and_env(self):
        manifest = _engine(EnginePlacement.APPINFO).to_manifest()

        assert manifest["metadata"]["labels"]["chaostype"] == "pod-delete"
        assert manifest["metadata"]["labels"]["managed-by"] == "chaosgate"
        env = manifest["spec"]["experiments"][0]["spec"]["components"]["env"]
        assert env[0] == {"name": "TOTAL_CHAOS_DURATION", "value": "30"}


class TestChaosExperiment:
    """Tests for the three permission shapes."""

    def test_nested_shape(self):
        definition = ChaosExperiment(
            "pod-delete", "shop", PermissionShape.NESTED, rules=RULES
        ).to_manifest()["spec"]["definition"]

        assert definition["rbac"]["rules"][0]["resources"] == ["pods"]
        assert "permissions" not in definition

    def test_inline_shape(self):
        definition = ChaosExperiment(
            "pod-delete", "shop", PermissionShape.INLINE, rules=RULES
        ).to_manifest()["spec"]["definition"]

        assert definition["permissions"][0]["verbs"] == ["get"]
        assert "rbac" not in definition

    def test_absent_shape(self):
        definition = ChaosExperiment(
            "pod-delete", "shop", PermissionShape.ABSENT, rules=RULES
        ).to_manifest()["spec"]["definition"]

        assert "rbac" not in definition
        assert "permissions" not in definition
        assert definition["image"] == "litmuschaos/go-runner:latest"
        assert definition["args"] == ["-c", "./experiments -name pod-delete"]


class TestWorkloadBuilders:
    def test_deployment_selector_matches_template(self):
        manifest = Deployment(
            "web", "shop", {"app": "web"}, [Container("web", "nginx", ports=[80])], replicas=2
        ).to_manifest()

        assert manifest["spec"]["selector"]["matchLabels"] == {"app": "web"}
        assert manifest["spec"]["template"]["metadata"]["labels"] == {"app": "web"}
        assert manifest["spec"]["template"]["spec"]["containers"][0]["ports"] == [{"containerPort": 80}]

    def test_binding_subject(self):
        manifest = ClusterRoleBinding("r-binding", "r", "litmus-admin", "shop").to_manifest()

        assert manifest["roleRef"]["name"] == "r"
        assert manifest["subjects"] == [
            {"kind": "ServiceAccount", "name": "litmus-admin", "namespace": "shop"}
        ]

    def test_crd_preserves_unknown_fields(self):
        crd = CustomResourceDefinition(
            "chaosengines", "ChaosEngine", {"engineState": {"type": "string"}}
        )
        manifest = crd.to_manifest()

        assert crd.name == "chaosengines.litmuschaos.io"
        spec_schema = manifest["spec"]["versions"][0]["schema"]["openAPIV3Schema"]["properties"]["spec"]
        assert spec_schema["x-kubernetes-preserve-unknown-fields"] is True
        assert manifest["spec"]["names"]["singular"] == "chaosengine"
