"""Installation and verification of the LitmusChaos framework.

Every component is installed idempotently, from the published source first
and a hand-authored equivalent second. Experiment definitions are installed
against each known permission shape in turn and verified by reading them
back, because some framework releases silently prune fields they do not
know.
"""

from typing import Any, Dict, List, Optional

from chaosgate.chaos.engine import build_experiment_definition
from chaosgate.cluster.decode import ExperimentRecord, decode_experiment
from chaosgate.cluster.resources import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    PERMISSION_SHAPE_ORDER,
    ClusterRole,
    ClusterRoleBinding,
    Container,
    CustomResourceDefinition,
    Deployment,
    EnvVar,
    Namespace,
    PermissionShape,
    PolicyRule,
    ServiceAccount,
)
from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError, RecoverableInstallError, Stage
from chaosgate.models import ChaosFrameworkState


CRUD_VERBS = ["create", "list", "get", "patch", "update", "delete", "deletecollection"]

LITMUS_RESOURCES = ["chaosengines", "chaosexperiments", "chaosresults"]

# kind -> (plural, CRD file stem)
FRAMEWORK_CRDS = {
    "ChaosEngine": ("chaosengines", "chaosengine"),
    "ChaosExperiment": ("chaosexperiments", "chaosexperiment"),
    "ChaosResult": ("chaosresults", "chaosresult"),
}

# Fields the hand-authored CRDs document. Unknown fields are preserved.
CRD_SPEC_PROPERTIES = {
    "ChaosEngine": {
        "engineState": {"type": "string"},
        "appinfo": {"type": "object", "x-kubernetes-preserve-unknown-fields": True},
        "chaosServiceAccount": {"type": "string"},
        "experiments": {
            "type": "array",
            "items": {"type": "object", "x-kubernetes-preserve-unknown-fields": True},
        },
    },
    "ChaosExperiment": {
        "definition": {"type": "object", "x-kubernetes-preserve-unknown-fields": True},
    },
    "ChaosResult": {
        "engine": {"type": "string"},
        "experiment": {"type": "string"},
    },
}

OPERATOR_NAME = "chaos-operator"
OPERATOR_DEPLOYMENT = "chaos-operator-ce"
OPERATOR_IMAGE = "litmuschaos/chaos-operator:latest"
OPERATOR_SELECTOR = "name=chaos-operator"

NODE_IO_ROLE = "node-io-stress-cluster-role"


def service_account_rules() -> List[PolicyRule]:
    """CRUD on pods, jobs and framework resources; read on workload controllers."""
    return [
        PolicyRule(
            api_groups=[""],
            resources=[
                "pods", "events", "pods/log", "pods/exec", "jobs",
                "configmaps", "secrets", "services", "nodes",
            ],
            verbs=list(CRUD_VERBS),
        ),
        PolicyRule(api_groups=["batch"], resources=["jobs"], verbs=list(CRUD_VERBS)),
        PolicyRule(
            api_groups=["litmuschaos.io"],
            resources=list(LITMUS_RESOURCES),
            verbs=list(CRUD_VERBS),
        ),
        PolicyRule(
            api_groups=["apps"],
            resources=["deployments", "statefulsets", "replicasets", "daemonsets"],
            verbs=["list", "get"],
        ),
    ]


def node_io_rules() -> List[PolicyRule]:
    """Extra node-level rights the node-io-stress experiment needs."""
    return [
        PolicyRule(
            api_groups=[""],
            resources=["pods", "pods/exec", "pods/log", "events", "nodes"],
            verbs=list(CRUD_VERBS),
        ),
        PolicyRule(api_groups=["batch"], resources=["jobs"], verbs=list(CRUD_VERBS)),
        PolicyRule(
            api_groups=["litmuschaos.io"],
            resources=list(LITMUS_RESOURCES),
            verbs=["create", "list", "get", "patch", "update"],
        ),
    ]


def operator_resources(namespace: str) -> List[Any]:
    """Hand-authored chaos operator: identity, full rights, one replica."""
    labels = {"name": OPERATOR_NAME, MANAGED_BY_LABEL: MANAGED_BY_VALUE}
    return [
        ServiceAccount(OPERATOR_NAME, namespace, labels=labels),
        ClusterRole(
            OPERATOR_NAME,
            rules=[PolicyRule(api_groups=["*"], resources=["*"], verbs=["*"])],
            labels=labels,
        ),
        ClusterRoleBinding(
            OPERATOR_NAME,
            role_name=OPERATOR_NAME,
            service_account=OPERATOR_NAME,
            namespace=namespace,
            labels=labels,
        ),
        Deployment(
            name=OPERATOR_DEPLOYMENT,
            namespace=namespace,
            labels={"name": OPERATOR_NAME},
            service_account_name=OPERATOR_NAME,
            containers=[
                Container(
                    name=OPERATOR_NAME,
                    image=OPERATOR_IMAGE,
                    command=[OPERATOR_NAME],
                    image_pull_policy="Always",
                    env=[
                        EnvVar("WATCH_NAMESPACE", ""),
                        EnvVar("POD_NAME", field_path="metadata.name"),
                        EnvVar("OPERATOR_NAME", OPERATOR_NAME),
                    ],
                )
            ],
        ),
    ]


class LitmusInstaller:
    """Ensures CRDs, operator, experiment definitions and service account exist."""

    def __init__(self, cluster, settings: Settings):
        self.cluster = cluster
        self.settings = settings
        self.definition_attempts: List[str] = []

    def _log(self, message: str):
        if not self.settings.quiet:
            print(f"    {message}")

    # ── State ───────────────────────────────────────────────────

    def crds_present(self) -> bool:
        return all(
            self.cluster.get("customresourcedefinition", f"{plural}.litmuschaos.io") is not None
            for plural, _ in FRAMEWORK_CRDS.values()
        )

    def operator_running(self) -> bool:
        pods = self.cluster.list(
            "pod", self.settings.litmus_namespace, label_selector=OPERATOR_SELECTOR
        )
        return any(
            isinstance(pod.get("status"), dict) and pod["status"].get("phase") == "Running"
            for pod in pods
        )

    def service_account_present(self, namespace: str) -> bool:
        return self.cluster.get("serviceaccount", self.settings.service_account, namespace) is not None

    def definition_present(self, chaos_type: str, namespace: str) -> bool:
        """An existing definition counts only when it names an image."""
        raw = self.cluster.get("chaosexperiment", chaos_type, namespace)
        if raw is None:
            return False
        record = decode_experiment(raw)
        return isinstance(record, ExperimentRecord) and bool(record.image)

    def validate(
        self,
        namespace: Optional[str] = None,
        chaos_type: Optional[str] = None,
    ) -> ChaosFrameworkState:
        """Probe the cluster for every framework component.

        Args:
            namespace: Namespace experiments run in.
            chaos_type: Experiment type whose definition is checked.

        Returns:
            A fresh state snapshot with a summary message.
        """
        namespace = namespace or self.settings.namespace
        chaos_type = chaos_type or self.settings.default_chaos_type
        state = ChaosFrameworkState(
            crds_present=self.crds_present(),
            operator_running=self.operator_running(),
            service_account_present=self.service_account_present(namespace),
            experiment_definition_present=self.definition_present(chaos_type, namespace),
        )

        missing = []
        if not state.crds_present:
            missing.append("CRDs")
        if not state.operator_running:
            missing.append("chaos operator")
        if not state.service_account_present:
            missing.append(f"service account {self.settings.service_account}")
        if not state.experiment_definition_present:
            missing.append(f"experiment definition {chaos_type}")
        state.message = (
            "All framework components are ready"
            if not missing
            else f"Missing: {', '.join(missing)}"
        )
        return state

    # ── Installation ────────────────────────────────────────────

    def ensure_installed(self) -> ChaosFrameworkState:
        """Install CRDs and operator where missing.

        Raises:
            FatalSetupError: If every source for a component was rejected.
        """
        if not self.crds_present():
            self.install_crds()
        else:
            self._log("LitmusChaos CRDs already installed")

        if not self.operator_running():
            self.install_operator()
        else:
            self._log("Chaos operator already running")

        return self.validate()

    def install_crds(self) -> Dict[str, str]:
        """Install missing framework CRDs.

        Returns:
            Map of CRD name to the source it was installed from.
        """
        sources = {}
        for kind, (plural, stem) in FRAMEWORK_CRDS.items():
            name = f"{plural}.litmuschaos.io"
            if self.cluster.get("customresourcedefinition", name) is not None:
                sources[name] = "existing"
                continue

            url = f"{self.settings.crd_base_url}/{stem}_crd.yaml"
            self._log(f"Installing CRD {name}")
            published = self.cluster.apply_url(url)
            if published.ok:
                sources[name] = "published"
                continue

            crd = CustomResourceDefinition(
                plural=plural, kind=kind, spec_properties=CRD_SPEC_PROPERTIES[kind]
            )
            authored = self.cluster.apply([crd])
            if not authored.ok:
                raise RecoverableInstallError(
                    "CRDs",
                    f"Could not install {name}",
                    [f"{url}: {published.error}", f"hand-authored: {authored.error}"],
                ).escalate(Stage.CLUSTER_SETUP)
            sources[name] = "hand-authored"
        return sources

    def install_operator(self) -> str:
        """Install the chaos operator and wait for it.

        Returns:
            The manifest URL used, or ``hand-authored``.
        """
        ns = self.settings.litmus_namespace
        namespace_result = self.cluster.apply([Namespace(ns)])
        if not namespace_result.ok:
            raise FatalSetupError(
                f"Failed to setup Kubernetes cluster: cannot create namespace {ns}: "
                f"{namespace_result.error}",
                Stage.CLUSTER_SETUP,
            )

        attempts = []
        source = None
        for url in self.settings.operator_manifest_urls:
            self._log(f"Installing chaos operator from {url}")
            result = self.cluster.apply_url(url)
            if result.ok:
                source = url
                break
            attempts.append(f"{url}: {result.error}")

        if source is None:
            self._log("Published operator manifests rejected, installing hand-authored operator")
            result = self.cluster.apply(operator_resources(ns), namespace=ns)
            if not result.ok:
                attempts.append(f"hand-authored: {result.error}")
                raise RecoverableInstallError(
                    "chaos operator", "Every operator manifest was rejected", attempts
                ).escalate(Stage.CLUSTER_SETUP)
            source = "hand-authored"

        timeout = self.settings.operator_ready_timeout
        if not self.cluster.wait("Ready", ns, target="pods", selector=OPERATOR_SELECTOR, timeout=timeout):
            self._log(f"Warning: chaos operator not ready after {timeout}s")
        return source

    def ensure_experiment_definition(self, chaos_type: str, namespace: str) -> str:
        """Make sure a usable experiment definition exists.

        Tries, in order: an existing definition with an image, the published
        hub definition, then the hand-authored definition in each permission
        shape. Stops at the first attempt that reads back correctly.

        Returns:
            ``existing``, ``hub``, or the accepted ``PermissionShape`` value.

        Raises:
            FatalSetupError: If every attempt was rejected (stage chaos-execution).
        """
        self.definition_attempts = []
        if self.definition_present(chaos_type, namespace):
            self._log(f"Experiment definition {chaos_type} already installed")
            return "existing"

        url = f"{self.settings.experiment_hub_url}/{chaos_type}/{chaos_type}.yaml"
        result = self.cluster.apply_url(url, namespace=namespace)
        self.definition_attempts.append("hub")
        if result.ok and self.definition_present(chaos_type, namespace):
            self._log(f"Installed experiment definition {chaos_type} from hub")
            return "hub"

        errors = [f"hub: {result.error or 'not readable after apply'}"]
        for shape in PERMISSION_SHAPE_ORDER:
            self.definition_attempts.append(shape.value)
            definition = build_experiment_definition(chaos_type, namespace, shape)
            result = self.cluster.apply([definition], namespace=namespace)
            if not result.ok:
                errors.append(f"{shape.value}: {result.error}")
                continue
            if self._verify_shape(chaos_type, namespace, shape):
                self._log(f"Installed experiment definition {chaos_type} ({shape.value} permissions)")
                return shape.value
            errors.append(f"{shape.value}: accepted but not readable as written")

        raise RecoverableInstallError(
            "experiment definition",
            f"No definition shape accepted for {chaos_type}",
            errors,
        ).escalate(Stage.CHAOS_EXECUTION)

    def _verify_shape(self, chaos_type: str, namespace: str, shape: PermissionShape) -> bool:
        raw = self.cluster.get("chaosexperiment", chaos_type, namespace)
        if raw is None:
            return False
        record = decode_experiment(raw)
        if not isinstance(record, ExperimentRecord) or not record.image:
            return False
        if shape == PermissionShape.NESTED:
            return record.has_nested_rbac
        if shape == PermissionShape.INLINE:
            return record.has_inline_permissions
        return True

    def ensure_service_account(self, namespace: str, chaos_type: Optional[str] = None):
        """Create or refresh the experiment service account and its bindings.

        Raises:
            FatalSetupError: If the cluster rejects the resources.
        """
        sa = self.settings.service_account
        role = f"{sa}-{namespace}"
        labels = {MANAGED_BY_LABEL: MANAGED_BY_VALUE}
        result = self.cluster.apply([
            ServiceAccount(sa, namespace, labels=labels),
            ClusterRole(role, rules=service_account_rules(), labels=labels),
            ClusterRoleBinding(
                f"{role}-binding",
                role_name=role,
                service_account=sa,
                namespace=namespace,
                labels=labels,
            ),
        ])
        if not result.ok:
            raise FatalSetupError(
                f"Failed to create service account {namespace}/{sa}: {result.error}",
                Stage.CHAOS_EXECUTION,
            )
        self._log(f"Service account {namespace}/{sa} ready")

        if chaos_type == "node-io-stress":
            self.ensure_node_io_permissions(namespace)

    def ensure_node_io_permissions(self, namespace: str) -> bool:
        """Best-effort extra cluster role for node-io-stress."""
        labels = {MANAGED_BY_LABEL: MANAGED_BY_VALUE}
        result = self.cluster.apply([
            ClusterRole(NODE_IO_ROLE, rules=node_io_rules(), labels=labels),
            ClusterRoleBinding(
                f"{NODE_IO_ROLE}-binding",
                role_name=NODE_IO_ROLE,
                service_account=self.settings.service_account,
                namespace=namespace,
                labels=labels,
            ),
        ])
        if not result.ok:
            self._log(f"Warning: could not grant node-io-stress permissions: {result.error}")
        return result.ok

    def service_account_permissions(self, namespace: str) -> Dict[str, Any]:
        """Existence and effective rights of the experiment service account."""
        sa = self.settings.service_account
        user = f"system:serviceaccount:{namespace}:{sa}"
        return {
            "exists": self.service_account_present(namespace),
            "name": sa,
            "permissions": {
                "canCreatePods": self.cluster.can_i("create", "pods", user, namespace),
                "canAccessNodes": self.cluster.can_i("get", "nodes", user, namespace),
            },
        }
