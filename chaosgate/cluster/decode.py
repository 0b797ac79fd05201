"""Decoding of control-plane JSON into typed records.

Each decoder returns either its record type or ``Unparseable``. Decoders
fail closed: a field that is present but has the wrong shape makes the
whole object unparseable instead of being read as empty.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, List, Optional, Union


@dataclass(frozen=True)
class Unparseable:
    """An object that could not be decoded, and why."""

    kind: str
    name: str
    reason: str
    raw: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class EngineRecord:
    name: str
    namespace: str
    created_at: Optional[datetime]
    engine_status: str
    chaos_type: str
    experiment_status: str = ""
    verdict: str = ""
    fail_step: str = ""
    service_account: str = ""
    app_label: str = ""
    uid: str = ""
    spec: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_initialized(self) -> bool:
        return self.engine_status.lower() == "initialized"

    def age(self, now: datetime) -> Optional[timedelta]:
        if self.created_at is None:
            return None
        return now - self.created_at


@dataclass(frozen=True)
class ResultRecord:
    name: str
    namespace: str
    created_at: Optional[datetime]
    engine_name: str
    experiment_name: str
    phase: str
    verdict: str
    fail_step: str
    probe_success_percentage: Optional[str] = None


@dataclass(frozen=True)
class WorkloadRecord:
    name: str
    namespace: str
    selector: Dict[str, str]
    template_labels: Dict[str, str]
    replicas: int = 1
    ready_replicas: int = 0

    @property
    def effective_selector(self) -> Dict[str, str]:
        """matchLabels, or the pod template labels when no matchLabels are declared."""
        return dict(self.selector or self.template_labels)


@dataclass(frozen=True)
class ExperimentRecord:
    name: str
    namespace: str
    image: str
    has_nested_rbac: bool
    has_inline_permissions: bool


@dataclass(frozen=True)
class CrdRecord:
    """A CRD and the top-level spec fields its schema declares.

    ``spec_fields`` is None when the schema keeps unknown fields or
    declares no properties, meaning any field is accepted.
    """

    name: str
    spec_fields: Optional[FrozenSet[str]]


EngineDecode = Union[EngineRecord, Unparseable]
ResultDecode = Union[ResultRecord, Unparseable]
WorkloadDecode = Union[WorkloadRecord, Unparseable]
ExperimentDecode = Union[ExperimentRecord, Unparseable]
CrdDecode = Union[CrdRecord, Unparseable]


class _DecodeError(Exception):
    pass


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a creation timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _mapping(value: Any, where: str, required: bool = False) -> Dict[str, Any]:
    if value is None:
        if required:
            raise _DecodeError(f"{where} is missing")
        return {}
    if not isinstance(value, dict):
        raise _DecodeError(f"{where} is not an object")
    return value


def _sequence(value: Any, where: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise _DecodeError(f"{where} is not a list")
    return value


def _text(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise _DecodeError(f"{where} is not a string")
    return value


def _string_map(value: Any, where: str) -> Dict[str, str]:
    return {str(k): _text(v, f"{where}.{k}") for k, v in _mapping(value, where).items()}


def _header(raw: Any, kind: str):
    """Validate the envelope and return (name, namespace, metadata)."""
    if not isinstance(raw, dict):
        raise _DecodeError("object is not a mapping")
    raw_kind = raw.get("kind")
    if raw_kind is not None and raw_kind != kind:
        raise _DecodeError(f"expected kind {kind}, got {raw_kind}")
    metadata = _mapping(raw.get("metadata"), "metadata", required=True)
    name = metadata.get("name")
    if not isinstance(name, str) or not name:
        raise _DecodeError("metadata.name is missing")
    namespace = _text(metadata.get("namespace"), "metadata.namespace")
    return name, namespace, metadata


def _unparseable(kind: str, raw: Any, reason: str) -> Unparseable:
    name = ""
    if isinstance(raw, dict) and isinstance(raw.get("metadata"), dict):
        name = str(raw["metadata"].get("name") or "")
    return Unparseable(kind=kind, name=name, reason=reason, raw=raw)


def decode_engine(raw: Any) -> EngineDecode:
    """Decode a ChaosEngine object."""
    try:
        name, namespace, metadata = _header(raw, "ChaosEngine")
        labels = _string_map(metadata.get("labels"), "metadata.labels")
        spec = _mapping(raw.get("spec"), "spec")
        status = _mapping(raw.get("status"), "status")
        spec_experiments = _sequence(spec.get("experiments"), "spec.experiments")
        status_experiments = _sequence(status.get("experiments"), "status.experiments")

        chaos_type = labels.get("chaostype", "")
        if not chaos_type and spec_experiments:
            first = _mapping(spec_experiments[0], "spec.experiments[0]")
            chaos_type = _text(first.get("name"), "spec.experiments[0].name")

        experiment: Dict[str, Any] = {}
        if status_experiments:
            experiment = _mapping(status_experiments[0], "status.experiments[0]")

        appinfo = _mapping(spec.get("appinfo"), "spec.appinfo")
        return EngineRecord(
            name=name,
            namespace=namespace,
            created_at=parse_timestamp(metadata.get("creationTimestamp")),
            engine_status=_text(status.get("engineStatus"), "status.engineStatus"),
            chaos_type=chaos_type or "unknown",
            experiment_status=_text(experiment.get("status"), "status.experiments[0].status"),
            verdict=_text(experiment.get("verdict"), "status.experiments[0].verdict"),
            fail_step=_text(experiment.get("failStep"), "status.experiments[0].failStep"),
            service_account=_text(spec.get("chaosServiceAccount"), "spec.chaosServiceAccount"),
            app_label=_text(appinfo.get("applabel"), "spec.appinfo.applabel"),
            uid=_text(metadata.get("uid"), "metadata.uid"),
            spec=spec,
        )
    except _DecodeError as e:
        return _unparseable("ChaosEngine", raw, str(e))


def decode_result(raw: Any) -> ResultDecode:
    """Decode a ChaosResult object."""
    try:
        name, namespace, metadata = _header(raw, "ChaosResult")
        spec = _mapping(raw.get("spec"), "spec")
        status = _mapping(raw.get("status"), "status")
        experiment_status = _mapping(status.get("experimentStatus"), "status.experimentStatus")
        probe = experiment_status.get("probeSuccessPercentage")
        return ResultRecord(
            name=name,
            namespace=namespace,
            created_at=parse_timestamp(metadata.get("creationTimestamp")),
            engine_name=_text(spec.get("engine"), "spec.engine"),
            experiment_name=_text(spec.get("experiment"), "spec.experiment"),
            phase=_text(experiment_status.get("phase"), "status.experimentStatus.phase"),
            verdict=_text(experiment_status.get("verdict"), "status.experimentStatus.verdict"),
            fail_step=_text(experiment_status.get("failStep"), "status.experimentStatus.failStep"),
            probe_success_percentage=None if probe is None else str(probe),
        )
    except _DecodeError as e:
        return _unparseable("ChaosResult", raw, str(e))


def decode_workload(raw: Any) -> WorkloadDecode:
    """Decode a Deployment object, keeping its own label selector."""
    try:
        name, namespace, _ = _header(raw, "Deployment")
        spec = _mapping(raw.get("spec"), "spec", required=True)
        selector = _mapping(spec.get("selector"), "spec.selector")
        match_labels = _string_map(selector.get("matchLabels"), "spec.selector.matchLabels")
        template = _mapping(spec.get("template"), "spec.template")
        template_meta = _mapping(template.get("metadata"), "spec.template.metadata")
        template_labels = _string_map(template_meta.get("labels"), "spec.template.metadata.labels")
        status = _mapping(raw.get("status"), "status")

        replicas = spec.get("replicas", 1)
        ready = status.get("readyReplicas") or 0
        if not isinstance(replicas, int) or not isinstance(ready, int):
            raise _DecodeError("replica counts are not integers")

        return WorkloadRecord(
            name=name,
            namespace=namespace or "default",
            selector=match_labels,
            template_labels=template_labels,
            replicas=replicas,
            ready_replicas=ready,
        )
    except _DecodeError as e:
        return _unparseable("Deployment", raw, str(e))


def decode_experiment(raw: Any) -> ExperimentDecode:
    """Decode a ChaosExperiment definition."""
    try:
        name, namespace, _ = _header(raw, "ChaosExperiment")
        spec = _mapping(raw.get("spec"), "spec", required=True)
        definition = _mapping(spec.get("definition"), "spec.definition", required=True)
        rbac = _mapping(definition.get("rbac"), "spec.definition.rbac")
        permissions = _sequence(definition.get("permissions"), "spec.definition.permissions")
        return ExperimentRecord(
            name=name,
            namespace=namespace,
            image=_text(definition.get("image"), "spec.definition.image"),
            has_nested_rbac=bool(_sequence(rbac.get("rules"), "spec.definition.rbac.rules")),
            has_inline_permissions=bool(permissions),
        )
    except _DecodeError as e:
        return _unparseable("ChaosExperiment", raw, str(e))


def decode_crd(raw: Any) -> CrdDecode:
    """Decode a CRD and the spec fields its stored version declares."""
    try:
        name, _, _ = _header(raw, "CustomResourceDefinition")
        spec = _mapping(raw.get("spec"), "spec", required=True)
        versions = _sequence(spec.get("versions"), "spec.versions")
        chosen: Dict[str, Any] = {}
        for version in versions:
            version = _mapping(version, "spec.versions[]")
            if version.get("storage") or not chosen:
                chosen = version
        schema = _mapping(chosen.get("schema"), "schema")
        root = _mapping(schema.get("openAPIV3Schema"), "schema.openAPIV3Schema")
        properties = _mapping(root.get("properties"), "openAPIV3Schema.properties")
        spec_schema = _mapping(properties.get("spec"), "properties.spec")
        spec_props = _mapping(spec_schema.get("properties"), "properties.spec.properties")

        if spec_schema.get("x-kubernetes-preserve-unknown-fields") or not spec_props:
            return CrdRecord(name=name, spec_fields=None)
        return CrdRecord(name=name, spec_fields=frozenset(spec_props))
    except _DecodeError as e:
        return _unparseable("CustomResourceDefinition", raw, str(e))
