"""Runtime settings for chaosgate.

``Settings`` is an explicit value handed to every component constructor.
It is built from defaults, an optional YAML file, and the ``PORT``
environment variable, in that order.
"""

import os
import re
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from chaosgate.config.validator import ValidationError, validate_settings


DEFAULT_OPERATOR_MANIFEST_URLS = [
    "https://litmuschaos.github.io/litmus/litmus-operator-latest.yaml",
    "https://litmuschaos.github.io/litmus/litmus-operator-v2.0.0.yaml",
    "https://litmuschaos.github.io/litmus/litmus-operator-v1.13.8.yaml",
]

DEFAULT_CRD_BASE_URL = (
    "https://raw.githubusercontent.com/litmuschaos/litmus/master/"
    "litmus-portal/manifests/litmus/crds"
)

DEFAULT_EXPERIMENT_HUB_URL = "https://hub.litmuschaos.io/api/chaos/2.0.0/experiments"

DEFAULT_EXCLUDED_NAMESPACES = [
    "kube-system",
    "kube-public",
    "kube-node-lease",
    "local-path-storage",
]


@dataclass(frozen=True)
class Settings:
    """Configuration for one chaosgate process."""

    # Tool binaries
    kubectl: str = "kubectl"
    helm: str = "helm"
    kustomize: str = "kustomize"
    git: str = "git"
    kind: str = "kind"
    context: Optional[str] = None

    # Manifest deployment
    namespace: str = "default"
    apply_strategy: str = "strict-order"
    dry_run: bool = False
    wait_for_readiness: bool = True
    deploy_timeout: int = 60
    additional_args: List[str] = field(default_factory=list)
    log_level: str = "normal"

    # Cluster
    provision_cluster: bool = True
    cluster_name: str = "chaos-test"

    # Chaos framework
    litmus_namespace: str = "litmus"
    service_account: str = "litmus-admin"
    operator_manifest_urls: List[str] = field(
        default_factory=lambda: list(DEFAULT_OPERATOR_MANIFEST_URLS)
    )
    crd_base_url: str = DEFAULT_CRD_BASE_URL
    experiment_hub_url: str = DEFAULT_EXPERIMENT_HUB_URL
    operator_ready_timeout: int = 120

    # Target selection
    excluded_namespaces: List[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_NAMESPACES)
    )

    # Experiment orchestration
    default_chaos_type: str = "pod-delete"
    default_duration: int = 30
    pod_discovery_retries: int = 10
    pod_discovery_interval: float = 2
    result_buffer: int = 20
    long_result_buffer: int = 40
    recovery_wait_timeout: int = 60

    # Recovery
    stuck_threshold_minutes: float = 5

    # HTTP surface
    host: str = "0.0.0.0"
    port: int = 3000
    workdir: Optional[str] = None

    @property
    def verbose(self) -> bool:
        return self.log_level == "verbose"

    @property
    def quiet(self) -> bool:
        return self.log_level == "silent"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Build settings from a validated snake_case mapping."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from an optional YAML file and the environment.

    Args:
        path: Path to a YAML settings file. Keys may be snake_case or
            camelCase.
        environ: Environment mapping, defaults to ``os.environ``. Only
            ``PORT`` is read.

    Returns:
        Validated settings.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValidationError: If the file or environment holds invalid values.
    """
    data: Dict[str, Any] = {}

    if path:
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
        loaded = yaml.safe_load(file_path.read_text())
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ValidationError(
                f"Settings file must contain a mapping: {path}",
                [f"got {type(loaded).__name__}"],
            )
        data = {_snake_case(k): v for k, v in loaded.items()}

    env = os.environ if environ is None else environ
    port = env.get("PORT")
    if port:
        try:
            data["port"] = int(port)
        except ValueError:
            raise ValidationError(f"PORT must be an integer, got {port!r}", [port])

    validate_settings(data)
    return Settings.from_dict(data)


def _snake_case(key: str) -> str:
    """Convert a camelCase or kebab-case key to snake_case."""
    key = key.replace("-", "_")
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()
