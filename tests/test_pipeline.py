"""End-to-end tests of the chaos test pipeline against a fake cluster."""

from dataclasses import replace

import pytest

from chaosgate.errors import FatalSetupError, Stage
from chaosgate.models import Verdict
from chaosgate.pipeline import ChaosTestPipeline
from chaosgate.provisioner.fallback import FALLBACK_NAME

from conftest import pod_manifest, result_manifest


DEPLOYMENT_YAML = """
apiVersion: apps/v1
kind: Deployment
metadata:
  name: cart
  namespace: shop
spec:
  replicas: 2
  selector:
    matchLabels:
      app: cart
  template:
    metadata:
      labels:
        app: cart
        version: v1
    spec:
      containers:
        - name: cart
          image: nginx:1.25
"""


SERVICE_YAML = """
apiVersion: v1
kind: Service
metadata:
  name: cart
  namespace: shop
spec:
  selector:
    app: cart
  ports:
    - port: 80
      targetPort: 80
"""


def _install_operator(cluster):
    """Make the fake cluster behave like an installed, reacting operator."""
    def start_operator(deployment):
        if deployment["metadata"]["name"] == "chaos-operator-ce":
            cluster.add(pod_manifest("chaos-operator-ce-0", "litmus", {"name": "chaos-operator"}))

    def react(engine):
        name = engine["metadata"]["name"]
        ns = engine["metadata"]["namespace"]
        cluster.add(pod_manifest(f"{name}-runner", ns, {"chaosengine": name}))
        cluster.add(result_manifest(f"{name}-pod-delete", ns, verdict="Pass", engine=name))

    cluster.on_apply("Deployment", start_operator)
    cluster.on_apply("ChaosEngine", react)


@pytest.fixture
def pipeline(cluster, settings, sleeps, clock):
    settings = replace(settings, pod_discovery_retries=2)
    _install_operator(cluster)
    return ChaosTestPipeline(settings, cluster=cluster, sleep=sleeps, clock=clock)


class TestChaosTestPipeline:
    """Tests for the complete clone-deploy-install-attack flow."""

    def test_repository_with_manifests(self, pipeline, cluster, tmp_path):
        (tmp_path / "k8s").mkdir()
        (tmp_path / "k8s" / "cart.yaml").write_text(DEPLOYMENT_YAML)
        (tmp_path / "k8s" / "svc.yaml").write_text(SERVICE_YAML)

        report = pipeline.run(repo_dir=str(tmp_path), chaos_type="pod-delete", duration=10)

        assert report.deployment.applied == report.deployment.total == 2
        assert cluster.get("service", "cart", "shop") is not None
        assert report.target.name == "cart"
        assert report.target.namespace == "shop"
        assert report.target.selector == {"app": "cart"}
        assert report.result.verdict == Verdict.PASS
        assert report.result.diagnostics["selector"] == "app=cart"
        response = report.to_response()
        assert response["success"] is True
        assert response["message"] == "Chaos test completed"
        assert response["targetDeployment"] == "cart"
        assert response["verdict"] == "Pass"

    def test_empty_repository_uses_fallback(self, pipeline, cluster, tmp_path):
        """A repository without manifests still gets a complete run."""
        report = pipeline.run(repo_dir=str(tmp_path))

        assert report.deployment.applied == report.deployment.total == 2
        assert report.target.name == FALLBACK_NAME
        assert report.result.verdict in (Verdict.PASS, Verdict.FAIL, Verdict.AWAITED)
        assert report.chaos_type == "pod-delete"
        assert report.duration == 30

    def test_framework_installed_from_scratch(self, pipeline, cluster, tmp_path):
        pipeline.run(repo_dir=str(tmp_path))

        assert cluster.get("customresourcedefinition", "chaosengines.litmuschaos.io") is not None
        assert cluster.get("deployment", "chaos-operator-ce", "litmus") is not None

    def test_partial_results_message(self, cluster, settings, sleeps, clock, tmp_path):
        pipeline = ChaosTestPipeline(replace(settings, pod_discovery_retries=1),
                                     cluster=cluster, sleep=sleeps, clock=clock)

        report = pipeline.run(repo_dir=str(tmp_path))

        assert report.result.verdict == Verdict.AWAITED
        assert report.to_response()["message"].startswith("Chaos test completed with partial results")

    def test_unknown_chaos_type(self, pipeline, tmp_path):
        with pytest.raises(FatalSetupError, match="Unknown chaos type") as exc:
            pipeline.run(repo_dir=str(tmp_path), chaos_type="cpu-hog")

        assert exc.value.stage == Stage.CHAOS_EXECUTION

    def test_missing_target_deployment(self, pipeline, tmp_path):
        with pytest.raises(FatalSetupError) as exc:
            pipeline.run(repo_dir=str(tmp_path), target_deployment="ghost", target_namespace="shop")

        assert exc.value.stage == Stage.TARGET_DETECTION
        assert exc.value.status_code == 400

    def test_deployment_failure(self, pipeline, cluster, tmp_path):
        (tmp_path / "cart.yaml").write_text(DEPLOYMENT_YAML)
        cluster.rejected_files["cart.yaml"] = "forbidden"

        with pytest.raises(FatalSetupError, match="Failed to deploy application") as exc:
            pipeline.run(repo_dir=str(tmp_path))

        assert exc.value.stage == Stage.DEPLOYMENT
        assert "forbidden" in exc.value.details

    def test_no_repository(self, pipeline):
        with pytest.raises(FatalSetupError) as exc:
            pipeline.run()

        assert exc.value.stage == Stage.REPOSITORY_CLONING

    def test_clone_failure(self, pipeline, monkeypatch):
        def fail_clone(url, settings):
            raise FatalSetupError("Failed to clone repository: " + url, Stage.REPOSITORY_CLONING)

        monkeypatch.setattr("chaosgate.pipeline.clone_repository", fail_clone)

        with pytest.raises(FatalSetupError) as exc:
            pipeline.run(github_url="https://github.com/org/missing")

        assert exc.value.stage == Stage.REPOSITORY_CLONING

    def test_unexpected_error_is_classified(self, pipeline, tmp_path, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("No deployments found anywhere")

        monkeypatch.setattr(pipeline.selector, "select_target", explode)

        with pytest.raises(FatalSetupError) as exc:
            pipeline.run(repo_dir=str(tmp_path))

        assert exc.value.stage == Stage.TARGET_DETECTION
