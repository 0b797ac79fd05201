"""Cluster control-plane client.

Writes go through ``kubectl`` so that manifests from every source (repository
files, published URLs, encoded builders) take the same path and get the same
server-side validation. Reads and deletes use the kubernetes python client and
come back as plain JSON dicts for the decoders in ``chaosgate.cluster.decode``.
"""

import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from chaosgate.cluster.resources import LITMUS_GROUP, LITMUS_VERSION, encode
from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError, Stage


# Custom resource kinds and their plurals
CUSTOM_PLURALS = {
    "chaosengine": "chaosengines",
    "chaosexperiment": "chaosexperiments",
    "chaosresult": "chaosresults",
}


@dataclass
class ApplyOutcome:
    """Result of one apply call."""

    ok: bool
    output: str = ""
    error: str = ""


class ClusterClient:
    """Create/get/list/wait/delete against the cluster's resource API."""

    def __init__(self, settings: Settings):
        """Initialize the client.

        The kubernetes configuration is loaded on first read, so the client
        can be built before the cluster exists.

        Args:
            settings: Runtime settings (binaries, kube context, dry-run).
        """
        self.settings = settings
        self._k8s_initialized = False

    # ── Kubernetes API ──────────────────────────────────────────

    def _init_k8s_client(self):
        """Load kube configuration and build the typed API clients."""
        if self._k8s_initialized:
            return
        try:
            config.load_incluster_config()
        except config.ConfigException:
            try:
                config.load_kube_config(context=self.settings.context)
            except config.ConfigException as e:
                raise FatalSetupError(
                    f"Cluster unreachable: {e}", Stage.CLUSTER_SETUP
                )

        self.api_client = client.ApiClient()
        self.core_api = client.CoreV1Api(self.api_client)
        self.apps_api = client.AppsV1Api(self.api_client)
        self.custom_api = client.CustomObjectsApi(self.api_client)
        self.apiext_api = client.ApiextensionsV1Api(self.api_client)
        self.rbac_api = client.RbacAuthorizationV1Api(self.api_client)
        self._k8s_initialized = True

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    def get(self, kind: str, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Read one object.

        Args:
            kind: Lowercase kind, e.g. ``deployment`` or ``chaosengine``.
            name: Object name.
            namespace: Namespace for namespaced kinds.

        Returns:
            The object as a JSON dict, or None if it does not exist.

        Raises:
            ValueError: If the kind is not supported.
            ApiException: For API errors other than 404.
        """
        self._init_k8s_client()
        kind = kind.lower()
        namespace = namespace or self.settings.namespace

        if kind in CUSTOM_PLURALS:
            reader = lambda: self.custom_api.get_namespaced_custom_object(
                group=LITMUS_GROUP,
                version=LITMUS_VERSION,
                namespace=namespace,
                plural=CUSTOM_PLURALS[kind],
                name=name,
            )
        else:
            readers = {
                "deployment": lambda: self.apps_api.read_namespaced_deployment(name, namespace),
                "pod": lambda: self.core_api.read_namespaced_pod(name, namespace),
                "service": lambda: self.core_api.read_namespaced_service(name, namespace),
                "serviceaccount": lambda: self.core_api.read_namespaced_service_account(name, namespace),
                "namespace": lambda: self.core_api.read_namespace(name),
                "clusterrole": lambda: self.rbac_api.read_cluster_role(name),
                "clusterrolebinding": lambda: self.rbac_api.read_cluster_role_binding(name),
                "customresourcedefinition": lambda: self.apiext_api.read_custom_resource_definition(name),
            }
            if kind not in readers:
                raise ValueError(f"Unsupported kind: {kind}")
            reader = readers[kind]

        try:
            return self._to_dict(reader())
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """List objects of a kind.

        Args:
            kind: Lowercase kind.
            namespace: Namespace to list, or None for all namespaces.
            label_selector: Optional label selector.

        Returns:
            List of objects as JSON dicts.
        """
        self._init_k8s_client()
        kind = kind.lower()
        kwargs: Dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector

        if kind in CUSTOM_PLURALS:
            plural = CUSTOM_PLURALS[kind]
            if namespace:
                response = self.custom_api.list_namespaced_custom_object(
                    LITMUS_GROUP, LITMUS_VERSION, namespace, plural, **kwargs
                )
            else:
                response = self.custom_api.list_cluster_custom_object(
                    LITMUS_GROUP, LITMUS_VERSION, plural, **kwargs
                )
            return list(response.get("items", []))

        if kind == "deployment":
            if namespace:
                response = self.apps_api.list_namespaced_deployment(namespace, **kwargs)
            else:
                response = self.apps_api.list_deployment_for_all_namespaces(**kwargs)
        elif kind == "pod":
            if namespace:
                response = self.core_api.list_namespaced_pod(namespace, **kwargs)
            else:
                response = self.core_api.list_pod_for_all_namespaces(**kwargs)
        elif kind == "customresourcedefinition":
            response = self.apiext_api.list_custom_resource_definition(**kwargs)
        else:
            raise ValueError(f"Unsupported kind for list: {kind}")

        return [self._to_dict(item) for item in response.items]

    def delete(self, kind: str, name: str, namespace: Optional[str] = None, force: bool = False) -> bool:
        """Delete one object.

        A forced delete uses a zero grace period and, for chaos resources,
        clears finalizers so the object cannot linger.

        Returns:
            True if the object was deleted, False if it was not found.
        """
        self._init_k8s_client()
        kind = kind.lower()
        namespace = namespace or self.settings.namespace
        options = client.V1DeleteOptions(grace_period_seconds=0) if force else None

        try:
            if kind in CUSTOM_PLURALS:
                self.custom_api.delete_namespaced_custom_object(
                    group=LITMUS_GROUP,
                    version=LITMUS_VERSION,
                    namespace=namespace,
                    plural=CUSTOM_PLURALS[kind],
                    name=name,
                    body=options,
                )
                if force:
                    self._clear_finalizers(kind, name, namespace)
            elif kind == "pod":
                self.core_api.delete_namespaced_pod(name, namespace, body=options)
            elif kind == "deployment":
                self.apps_api.delete_namespaced_deployment(name, namespace, body=options)
            elif kind == "serviceaccount":
                self.core_api.delete_namespaced_service_account(name, namespace, body=options)
            else:
                raise ValueError(f"Unsupported kind for delete: {kind}")
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True

    def _clear_finalizers(self, kind: str, name: str, namespace: str):
        """Remove finalizers from a custom object being deleted."""
        try:
            self.custom_api.patch_namespaced_custom_object(
                group=LITMUS_GROUP,
                version=LITMUS_VERSION,
                namespace=namespace,
                plural=CUSTOM_PLURALS[kind],
                name=name,
                body={"metadata": {"finalizers": []}},
            )
        except ApiException as e:
            if e.status != 404:
                raise

    def delete_matching(self, kind: str, label_selector: str, namespace: str) -> int:
        """Force-delete every object of a kind matching a label selector.

        Returns:
            Number of objects deleted.
        """
        deleted = 0
        for item in self.list(kind, namespace, label_selector=label_selector):
            name = item.get("metadata", {}).get("name")
            if name and self.delete(kind, name, namespace, force=True):
                deleted += 1
        return deleted

    # ── kubectl ─────────────────────────────────────────────────

    def _kubectl(self, args: List[str], input_data: Optional[str] = None) -> subprocess.CompletedProcess:
        cmd = [self.settings.kubectl] + args
        if self.settings.context:
            cmd += ["--context", self.settings.context]
        if self.settings.verbose:
            print(f"    $ {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                input=input_data,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            raise FatalSetupError(
                f"kubectl not found: {self.settings.kubectl}", Stage.CLUSTER_SETUP
            )

    def _apply_args(
        self,
        namespace: Optional[str],
        validate: bool,
        extra_args: Optional[List[str]],
    ) -> List[str]:
        args: List[str] = []
        if namespace:
            args += ["--namespace", namespace]
        if not validate:
            args.append("--validate=false")
        if self.settings.dry_run:
            args.append("--dry-run=client")
        if extra_args:
            args += list(extra_args)
        return args

    @staticmethod
    def _outcome(proc: subprocess.CompletedProcess) -> ApplyOutcome:
        if proc.returncode == 0:
            return ApplyOutcome(ok=True, output=proc.stdout or "")
        error = (proc.stderr or proc.stdout or "").strip()
        return ApplyOutcome(ok=False, output=proc.stdout or "", error=error or f"exit code {proc.returncode}")

    def apply(
        self,
        resources: Union[str, Any],
        namespace: Optional[str] = None,
        validate: bool = True,
        extra_args: Optional[List[str]] = None,
    ) -> ApplyOutcome:
        """Apply builders, manifest dicts, or YAML text through kubectl stdin."""
        text = resources if isinstance(resources, str) else encode(resources)
        args = ["apply", "-f", "-"] + self._apply_args(namespace, validate, extra_args)
        return self._outcome(self._kubectl(args, input_data=text))

    def apply_file(
        self,
        path: str,
        namespace: Optional[str] = None,
        extra_args: Optional[List[str]] = None,
    ) -> ApplyOutcome:
        """Apply a manifest file from disk."""
        args = ["apply", "-f", path] + self._apply_args(namespace, True, extra_args)
        return self._outcome(self._kubectl(args))

    def apply_url(self, url: str, namespace: Optional[str] = None) -> ApplyOutcome:
        """Apply a published manifest by URL."""
        args = ["apply", "-f", url] + self._apply_args(namespace, True, None)
        return self._outcome(self._kubectl(args))

    def wait(
        self,
        condition: str,
        namespace: str,
        target: str = "pods",
        selector: Optional[str] = None,
        timeout: int = 60,
    ) -> bool:
        """Wait for a condition with kubectl wait.

        Args:
            condition: Condition name, e.g. ``Ready`` or ``available``.
            namespace: Namespace of the target.
            target: Resource or ``kind/name`` to wait on.
            selector: Label selector; when omitted and ``target`` is a bare
                resource type, every object of that type is waited on.
            timeout: Upper bound in seconds.

        Returns:
            True if the condition was met, False on timeout or error.
        """
        args = ["wait", f"--for=condition={condition}", target, "-n", namespace]
        if selector:
            args += ["--selector", selector]
        elif "/" not in target:
            args.append("--all")
        args.append(f"--timeout={timeout}s")
        return self._kubectl(args).returncode == 0

    def can_i(self, verb: str, resource: str, as_user: str, namespace: str) -> bool:
        """Ask the API server whether ``as_user`` may perform ``verb``."""
        proc = self._kubectl(
            ["auth", "can-i", verb, resource, f"--as={as_user}", "-n", namespace]
        )
        return proc.stdout.strip().lower() == "yes"

    # ── Packaging tools ─────────────────────────────────────────

    def helm_install(
        self,
        release: str,
        chart_path: str,
        namespace: str,
        timeout: Optional[int] = None,
        extra_args: Optional[List[str]] = None,
    ) -> ApplyOutcome:
        """Install or upgrade a chart with helm."""
        cmd = [self.settings.helm, "upgrade", "--install", release, chart_path,
               "--namespace", namespace]
        if timeout:
            cmd += ["--timeout", f"{timeout}s"]
        if self.settings.context:
            cmd += ["--kube-context", self.settings.context]
        if self.settings.dry_run:
            cmd.append("--dry-run")
        if extra_args:
            cmd += list(extra_args)
        if self.settings.verbose:
            print(f"    $ {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            return ApplyOutcome(ok=False, error=f"helm not found: {self.settings.helm}")
        return self._outcome(proc)

    def kustomize_apply(
        self,
        path: str,
        namespace: str,
        extra_args: Optional[List[str]] = None,
    ) -> ApplyOutcome:
        """Build an overlay with kustomize and pipe the stream to apply."""
        cmd = [self.settings.kustomize, "build", path]
        if self.settings.verbose:
            print(f"    $ {' '.join(cmd)} | kubectl apply -f -")
        try:
            built = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError:
            return ApplyOutcome(ok=False, error=f"kustomize not found: {self.settings.kustomize}")
        if built.returncode != 0:
            return self._outcome(built)
        return self.apply(built.stdout, namespace=namespace, extra_args=extra_args)
