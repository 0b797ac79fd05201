"""Typed builders for every resource chaosgate submits to the cluster.

Builders are plain dataclasses with a ``to_manifest()`` method. ``encode``
is the single serializer: it turns any mix of builders and raw manifest
dicts into a multi-document YAML stream for ``kubectl apply -f -``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import yaml


LITMUS_GROUP = "litmuschaos.io"
LITMUS_VERSION = "v1alpha1"
LITMUS_API_VERSION = f"{LITMUS_GROUP}/{LITMUS_VERSION}"

MANAGED_BY_LABEL = "managed-by"
MANAGED_BY_VALUE = "chaosgate"


class PermissionShape(str, Enum):
    """Where an experiment definition declares its permissions.

    Framework releases disagree: some want a nested ``rbac.rules`` block,
    some an inline ``permissions`` list, some accept neither.
    """

    NESTED = "rbac"
    INLINE = "permissions"
    ABSENT = "none"


# Fixed preference order for schema-adaptive installs.
PERMISSION_SHAPE_ORDER = [
    PermissionShape.NESTED,
    PermissionShape.INLINE,
    PermissionShape.ABSENT,
]


class EnginePlacement(str, Enum):
    """Where a chaos engine carries its target-workload reference."""

    APPINFO = "appinfo"
    SELECTORS = "selectors"


def _metadata(
    name: str,
    namespace: Optional[str] = None,
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"name": name}
    if namespace:
        meta["namespace"] = namespace
    if labels:
        meta["labels"] = dict(labels)
    return meta


@dataclass
class EnvVar:
    """A container environment variable."""

    name: str
    value: Any = ""
    field_path: Optional[str] = None

    def to_manifest(self) -> Dict[str, Any]:
        if self.field_path:
            return {"name": self.name, "valueFrom": {"fieldRef": {"fieldPath": self.field_path}}}
        return {"name": self.name, "value": str(self.value)}


def env_list(values: Dict[str, Any]) -> List[EnvVar]:
    """Build env vars from a mapping, keeping insertion order."""
    return [EnvVar(k, v) for k, v in values.items()]


@dataclass
class PolicyRule:
    """One RBAC rule."""

    api_groups: List[str]
    resources: List[str]
    verbs: List[str]

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "apiGroups": list(self.api_groups),
            "resources": list(self.resources),
            "verbs": list(self.verbs),
        }


@dataclass
class Namespace:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": _metadata(self.name, labels=self.labels),
        }


@dataclass
class Container:
    name: str
    image: str
    ports: List[int] = field(default_factory=list)
    env: List[EnvVar] = field(default_factory=list)
    command: List[str] = field(default_factory=list)
    image_pull_policy: Optional[str] = None

    def to_manifest(self) -> Dict[str, Any]:
        container: Dict[str, Any] = {"name": self.name, "image": self.image}
        if self.command:
            container["command"] = list(self.command)
        if self.image_pull_policy:
            container["imagePullPolicy"] = self.image_pull_policy
        if self.ports:
            container["ports"] = [{"containerPort": p} for p in self.ports]
        if self.env:
            container["env"] = [e.to_manifest() for e in self.env]
        return container


@dataclass
class Deployment:
    """A Deployment whose selector and pod labels are the same set."""

    name: str
    namespace: str
    labels: Dict[str, str]
    containers: List[Container]
    replicas: int = 1
    service_account_name: Optional[str] = None

    def to_manifest(self) -> Dict[str, Any]:
        pod_spec: Dict[str, Any] = {}
        if self.service_account_name:
            pod_spec["serviceAccountName"] = self.service_account_name
        pod_spec["containers"] = [c.to_manifest() for c in self.containers]
        return {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": _metadata(self.name, self.namespace, self.labels),
            "spec": {
                "replicas": self.replicas,
                "selector": {"matchLabels": dict(self.labels)},
                "template": {
                    "metadata": {"labels": dict(self.labels)},
                    "spec": pod_spec,
                },
            },
        }


@dataclass
class Service:
    name: str
    namespace: str
    selector: Dict[str, str]
    port: int
    target_port: Optional[int] = None
    service_type: str = "ClusterIP"

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": _metadata(self.name, self.namespace),
            "spec": {
                "selector": dict(self.selector),
                "ports": [{"port": self.port, "targetPort": self.target_port or self.port}],
                "type": self.service_type,
            },
        }


@dataclass
class ServiceAccount:
    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": _metadata(self.name, self.namespace, self.labels),
        }


@dataclass
class ClusterRole:
    name: str
    rules: List[PolicyRule]
    labels: Dict[str, str] = field(default_factory=dict)

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": _metadata(self.name, labels=self.labels),
            "rules": [r.to_manifest() for r in self.rules],
        }


@dataclass
class ClusterRoleBinding:
    """Binds a cluster role to one service account."""

    name: str
    role_name: str
    service_account: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)

    def to_manifest(self) -> Dict[str, Any]:
        return {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRoleBinding",
            "metadata": _metadata(self.name, labels=self.labels),
            "roleRef": {
                "apiGroup": "rbac.authorization.k8s.io",
                "kind": "ClusterRole",
                "name": self.role_name,
            },
            "subjects": [
                {
                    "kind": "ServiceAccount",
                    "name": self.service_account,
                    "namespace": self.namespace,
                }
            ],
        }


@dataclass
class CustomResourceDefinition:
    """A namespaced CRD whose spec keeps unknown fields.

    ``spec_properties`` documents the fields chaosgate relies on; unknown
    fields are preserved so every engine placement and permission shape
    is accepted.
    """

    plural: str
    kind: str
    spec_properties: Dict[str, Any] = field(default_factory=dict)
    group: str = LITMUS_GROUP
    version: str = LITMUS_VERSION

    @property
    def name(self) -> str:
        return f"{self.plural}.{self.group}"

    def to_manifest(self) -> Dict[str, Any]:
        spec_schema: Dict[str, Any] = {
            "type": "object",
            "x-kubernetes-preserve-unknown-fields": True,
        }
        if self.spec_properties:
            spec_schema["properties"] = self.spec_properties
        return {
            "apiVersion": "apiextensions.k8s.io/v1",
            "kind": "CustomResourceDefinition",
            "metadata": _metadata(self.name),
            "spec": {
                "group": self.group,
                "names": {
                    "kind": self.kind,
                    "listKind": f"{self.kind}List",
                    "plural": self.plural,
                    "singular": self.plural[:-1],
                },
                "scope": "Namespaced",
                "versions": [
                    {
                        "name": self.version,
                        "served": True,
                        "storage": True,
                        "schema": {
                            "openAPIV3Schema": {
                                "type": "object",
                                "properties": {
                                    "apiVersion": {"type": "string"},
                                    "kind": {"type": "string"},
                                    "metadata": {"type": "object"},
                                    "spec": spec_schema,
                                    "status": {
                                        "type": "object",
                                        "x-kubernetes-preserve-unknown-fields": True,
                                    },
                                },
                            }
                        },
                    }
                ],
            },
        }


@dataclass
class ChaosExperiment:
    """Experiment definition for one chaos type."""

    chaos_type: str
    namespace: str
    shape: PermissionShape
    rules: List[PolicyRule] = field(default_factory=list)
    env: List[EnvVar] = field(default_factory=list)
    image: str = "litmuschaos/go-runner:latest"

    def to_manifest(self) -> Dict[str, Any]:
        definition: Dict[str, Any] = {"scope": "Namespaced"}
        if self.shape == PermissionShape.NESTED:
            definition["rbac"] = {"rules": [r.to_manifest() for r in self.rules]}
        elif self.shape == PermissionShape.INLINE:
            definition["permissions"] = [r.to_manifest() for r in self.rules]
        definition.update({
            "image": self.image,
            "imagePullPolicy": "Always",
            "args": ["-c", f"./experiments -name {self.chaos_type}"],
            "command": ["/bin/bash"],
            "env": [e.to_manifest() for e in self.env],
            "labels": {
                "name": self.chaos_type,
                "app.kubernetes.io/part-of": "litmus",
                "app.kubernetes.io/component": "experiment-job",
                "app.kubernetes.io/version": "latest",
            },
        })
        return {
            "apiVersion": LITMUS_API_VERSION,
            "kind": "ChaosExperiment",
            "metadata": _metadata(
                self.chaos_type,
                self.namespace,
                {
                    "name": self.chaos_type,
                    "app.kubernetes.io/part-of": "litmus",
                    "app.kubernetes.io/component": "chaosexperiment",
                    "app.kubernetes.io/version": "latest",
                    MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                },
            ),
            "spec": {"definition": definition},
        }


@dataclass
class ChaosEngine:
    """One fault-injection run against one workload."""

    name: str
    namespace: str
    chaos_type: str
    workload_name: str
    app_label: str
    service_account: str
    env: List[EnvVar]
    placement: EnginePlacement = EnginePlacement.APPINFO
    app_kind: str = "deployment"
    labels: Dict[str, str] = field(default_factory=dict)
    runner_image: str = "litmuschaos/chaos-runner:latest"
    job_cleanup_policy: str = "delete"

    def to_manifest(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {"engineState": "active"}
        if self.placement == EnginePlacement.APPINFO:
            spec["appinfo"] = {
                "appns": self.namespace,
                "applabel": self.app_label,
                "appkind": self.app_kind,
            }
        else:
            spec["selectors"] = {
                "workloads": [
                    {
                        "kind": self.app_kind,
                        "namespace": self.namespace,
                        "labels": self.app_label,
                    }
                ]
            }
        spec.update({
            "annotationCheck": "false",
            "chaosServiceAccount": self.service_account,
            "jobCleanUpPolicy": self.job_cleanup_policy,
            "components": {
                "runner": {"image": self.runner_image, "imagePullPolicy": "Always"},
            },
            "experiments": [
                {
                    "name": self.chaos_type,
                    "spec": {
                        "components": {
                            "statusCheckTimeouts": {"delay": 2, "timeout": 180},
                            "env": [e.to_manifest() for e in self.env],
                        }
                    },
                }
            ],
        })
        labels = {
            "app": self.workload_name,
            "chaostype": self.chaos_type,
            MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        }
        labels.update(self.labels)
        return {
            "apiVersion": LITMUS_API_VERSION,
            "kind": "ChaosEngine",
            "metadata": _metadata(self.name, self.namespace, labels),
            "spec": spec,
        }


def _flatten(resources: Iterable[Any]) -> List[Dict[str, Any]]:
    docs: List[Dict[str, Any]] = []
    for resource in resources:
        if isinstance(resource, (list, tuple)):
            docs.extend(_flatten(resource))
        elif isinstance(resource, dict):
            docs.append(resource)
        else:
            docs.append(resource.to_manifest())
    return docs


def encode(*resources: Any) -> str:
    """Serialize builders and manifest dicts into one YAML stream.

    Args:
        *resources: Builders, manifest dicts, or lists of either.

    Returns:
        Multi-document YAML text.
    """
    return yaml.safe_dump_all(
        _flatten(resources), sort_keys=False, default_flow_style=False
    )
