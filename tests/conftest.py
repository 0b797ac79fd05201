"""Pytest configuration and fixtures."""

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest
import yaml

from chaosgate.cluster.client import ApplyOutcome
from chaosgate.cluster.resources import encode
from chaosgate.config import Settings

# Fixed wall clock shared by the fake cluster and injected clocks.
NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

CLUSTER_SCOPED = {"namespace", "clusterrole", "clusterrolebinding", "customresourcedefinition"}


def _matches(labels: Dict[str, str], selector: Optional[str]) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeCluster:
    """In-memory stand-in for ``ClusterClient``.

    Objects are stored as manifest dicts keyed by (kind, namespace, name).
    Rejections and apply hooks are scripted per test.
    """

    def __init__(self, now: datetime = NOW):
        self.now = now
        self.objects: Dict[tuple, Dict[str, Any]] = {}
        self.applied: List[Dict[str, Any]] = []
        self.apply_calls: List[Dict[str, Any]] = []
        self.applied_files: List[str] = []
        self.applied_urls: List[str] = []
        self.url_manifests: Dict[str, List[Dict[str, Any]]] = {}
        self.rejections: List[Callable[[Dict[str, Any], bool], Optional[str]]] = []
        self.rejected_files: Dict[str, str] = {}
        self.hooks: Dict[str, List[Callable[[Dict[str, Any]], None]]] = {}
        self.waits: List[Dict[str, Any]] = []
        self.wait_result = True
        self.permissions: Dict[tuple, bool] = {}
        self.helm_calls: List[tuple] = []
        self.helm_result = ApplyOutcome(ok=True, output="Release installed")
        self.kustomize_calls: List[str] = []
        self.kustomize_output = ""
        self.deleted: List[tuple] = []
        self._uid = 0
        self._lock = threading.Lock()

    # ── Scripting ───────────────────────────────────────────────

    def reject(self, kind: str, message: str = "rejected", strict_only: bool = False,
               when: Optional[Callable[[Dict[str, Any]], bool]] = None):
        """Reject applies of ``kind`` (optionally only with validation on)."""
        def rule(doc, validate):
            if doc.get("kind") != kind:
                return None
            if strict_only and not validate:
                return None
            if when is not None and not when(doc):
                return None
            return message
        self.rejections.append(rule)

    def on_apply(self, kind: str, hook: Callable[[Dict[str, Any]], None]):
        self.hooks.setdefault(kind, []).append(hook)

    def add(self, doc: Dict[str, Any], namespace: Optional[str] = None) -> Dict[str, Any]:
        """Store an object directly, bypassing rejections and hooks."""
        doc = yaml.safe_load(yaml.safe_dump(doc))
        kind = doc["kind"].lower()
        meta = doc.setdefault("metadata", {})
        ns = "" if kind in CLUSTER_SCOPED else (meta.get("namespace") or namespace or "default")
        if ns:
            meta["namespace"] = ns
        if "creationTimestamp" not in meta:
            meta["creationTimestamp"] = self.now.strftime("%Y-%m-%dT%H:%M:%SZ")
        if "uid" not in meta:
            self._uid += 1
            meta["uid"] = f"uid-{self._uid}"
        self.objects[(kind, ns, meta["name"])] = doc
        return doc

    # ── ClusterClient surface ───────────────────────────────────

    def apply(self, resources, namespace=None, validate=True, extra_args=None) -> ApplyOutcome:
        text = resources if isinstance(resources, str) else encode(resources)
        docs = [d for d in yaml.safe_load_all(text) if d]
        with self._lock:
            self.apply_calls.append({"docs": docs, "namespace": namespace, "validate": validate})
            for doc in docs:
                for rule in self.rejections:
                    error = rule(doc, validate)
                    if error:
                        return ApplyOutcome(ok=False, error=error)
            lines = []
            for doc in docs:
                stored = self.add(doc, namespace)
                self.applied.append(stored)
                lines.append(f"{doc['kind'].lower()}/{doc['metadata']['name']} created")
        for doc in docs:
            for hook in self.hooks.get(doc["kind"], []):
                hook(doc)
        return ApplyOutcome(ok=True, output="\n".join(lines))

    def apply_file(self, path, namespace=None, extra_args=None) -> ApplyOutcome:
        with self._lock:
            self.applied_files.append(path)
        for name, error in self.rejected_files.items():
            if path.endswith(name):
                return ApplyOutcome(ok=False, error=error)
        with open(path) as f:
            return self.apply(f.read(), namespace=namespace)

    def apply_url(self, url, namespace=None) -> ApplyOutcome:
        self.applied_urls.append(url)
        if url not in self.url_manifests:
            return ApplyOutcome(ok=False, error=f"error: unable to read URL {url}, status code=404")
        return self.apply(self.url_manifests[url], namespace=namespace)

    def get(self, kind, name, namespace=None):
        kind = kind.lower()
        ns = "" if kind in CLUSTER_SCOPED else (namespace or "default")
        doc = self.objects.get((kind, ns, name))
        return yaml.safe_load(yaml.safe_dump(doc)) if doc is not None else None

    def list(self, kind, namespace=None, label_selector=None):
        kind = kind.lower()
        items = []
        for (k, ns, _), doc in self.objects.items():
            if k != kind or (namespace and ns != namespace):
                continue
            if _matches(doc["metadata"].get("labels") or {}, label_selector):
                items.append(yaml.safe_load(yaml.safe_dump(doc)))
        return items

    def delete(self, kind, name, namespace=None, force=False) -> bool:
        kind = kind.lower()
        ns = "" if kind in CLUSTER_SCOPED else (namespace or "default")
        self.deleted.append((kind, ns, name, force))
        return self.objects.pop((kind, ns, name), None) is not None

    def delete_matching(self, kind, label_selector, namespace) -> int:
        count = 0
        for item in self.list(kind, namespace, label_selector=label_selector):
            if self.delete(kind, item["metadata"]["name"], namespace, force=True):
                count += 1
        return count

    def wait(self, condition, namespace, target="pods", selector=None, timeout=60) -> bool:
        self.waits.append({
            "condition": condition,
            "namespace": namespace,
            "target": target,
            "selector": selector,
            "timeout": timeout,
        })
        return self.wait_result

    def can_i(self, verb, resource, as_user, namespace) -> bool:
        return self.permissions.get((verb, resource), True)

    def helm_install(self, release, chart_path, namespace, timeout=None, extra_args=None):
        self.helm_calls.append((release, chart_path, namespace))
        return self.helm_result

    def kustomize_apply(self, path, namespace, extra_args=None):
        self.kustomize_calls.append(path)
        return ApplyOutcome(ok=True, output=self.kustomize_output)


# ── Manifest factories ─────────────────────────────────────────


def deployment_manifest(name, namespace="default", labels=None, replicas=1, selector=None):
    labels = labels or {"app": name}
    spec = {
        "replicas": replicas,
        "template": {
            "metadata": {"labels": dict(labels)},
            "spec": {"containers": [{"name": name, "image": "nginx:1.25"}]},
        },
    }
    if selector is not False:
        spec["selector"] = {"matchLabels": dict(selector or labels)}
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels)},
        "spec": spec,
    }


def engine_manifest(name, namespace="default", status="initialized", created=None,
                    chaos_type="pod-delete", verdict=None, experiment_status=None):
    created = created or NOW
    status_block: Dict[str, Any] = {"engineStatus": status}
    if verdict or experiment_status:
        status_block["experiments"] = [{
            "name": chaos_type,
            "status": experiment_status or "Completed",
            "verdict": verdict or "Awaited",
        }]
    return {
        "apiVersion": "litmuschaos.io/v1alpha1",
        "kind": "ChaosEngine",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {"chaostype": chaos_type},
            "creationTimestamp": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
        },
        "spec": {
            "engineState": "active",
            "chaosServiceAccount": "litmus-admin",
            "experiments": [{"name": chaos_type}],
        },
        "status": status_block,
    }


def result_manifest(name, namespace="default", verdict="Pass", phase="Completed",
                    engine="", created=None, fail_step="N/A"):
    created = created or NOW
    return {
        "apiVersion": "litmuschaos.io/v1alpha1",
        "kind": "ChaosResult",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "creationTimestamp": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
        },
        "spec": {"engine": engine, "experiment": "pod-delete"},
        "status": {"experimentStatus": {"phase": phase, "verdict": verdict, "failStep": fail_step}},
    }


def pod_manifest(name, namespace="default", labels=None, phase="Running"):
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
        "status": {"phase": phase},
    }


# ── Fixtures ───────────────────────────────────────────────────


@pytest.fixture
def settings():
    """Settings with cluster provisioning off and progress output silenced."""
    return Settings(provision_cluster=False, log_level="silent")


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def clock():
    """Wall clock frozen at ``NOW``."""
    return lambda: NOW.timestamp()


@pytest.fixture
def sleeps():
    """Recording sleep: the list of requested delays, callable as a sleep."""

    class Recorder(list):
        def __call__(self, seconds):
            self.append(seconds)

    return Recorder()


@pytest.fixture
def framework_cluster(cluster):
    """Cluster with framework CRDs and a running chaos operator."""
    for plural, kind in (
        ("chaosengines", "ChaosEngine"),
        ("chaosexperiments", "ChaosExperiment"),
        ("chaosresults", "ChaosResult"),
    ):
        cluster.add({
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": {"name": f"{plural}.litmuschaos.io"},
            "spec": {"group": "litmuschaos.io", "names": {"kind": kind, "plural": plural}},
        })
    cluster.add(pod_manifest("chaos-operator-ce-abc", "litmus", {"name": "chaos-operator"}))
    return cluster


@pytest.fixture
def old_engine_time():
    """Creation time well past the stuck threshold."""
    return NOW - timedelta(minutes=12)
