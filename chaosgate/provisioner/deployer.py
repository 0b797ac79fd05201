"""Deployment of an arbitrary repository's workload manifests.

A repository is classified into one of four layouts (a dedicated
``kubernetes-manifests/`` directory, a Helm chart, a kustomize overlay, or
plain manifest files anywhere in the tree) and deployed with the matching
mechanism. Plain files can be applied as found, in dependency order, or
concurrently.
"""

import os
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from chaosgate.cluster.resources import Namespace
from chaosgate.config import Settings
from chaosgate.errors import FatalSetupError, Stage
from chaosgate.models import (
    ApplicationType,
    ApplyStrategy,
    DeploymentOutcome,
    DeploymentPlan,
    ManifestEntry,
)
from chaosgate.provisioner.fallback import FALLBACK_NAMESPACE, deploy_fallback


# Lower ranks are applied first. Kinds not listed go last.
KIND_PRECEDENCE: Dict[str, int] = {
    "Namespace": 0,
    "NetworkPolicy": 1,
    "ResourceQuota": 2,
    "LimitRange": 3,
    "PodSecurityPolicy": 4,
    "Secret": 5,
    "ConfigMap": 6,
    "StorageClass": 7,
    "PersistentVolume": 8,
    "PersistentVolumeClaim": 9,
    "ServiceAccount": 10,
    "CustomResourceDefinition": 11,
    "ClusterRole": 12,
    "ClusterRoleBinding": 13,
    "Role": 14,
    "RoleBinding": 15,
    "Service": 16,
    "StatefulSet": 17,
    "Deployment": 18,
    "DaemonSet": 19,
    "Job": 20,
    "CronJob": 21,
    "Ingress": 22,
    "HorizontalPodAutoscaler": 23,
}
UNKNOWN_KIND_RANK = 999

MANIFEST_DIRECTORY = "kubernetes-manifests"
KUSTOMIZATION_FILES = ("kustomization.yaml", "kustomization.yml")
KUSTOMIZE_CANDIDATES = ("", "base", os.path.join("overlays", "dev"), os.path.join("overlays", "prod"))
SEARCH_DEPTH = 3
MAX_PARALLEL_APPLIES = 8

_APPLIED_LINE = re.compile(r"\b(created|configured|unchanged)\b")


def kind_rank(kind: str) -> int:
    """Dependency rank of a resource kind."""
    return KIND_PRECEDENCE.get(kind, UNKNOWN_KIND_RANK)


# ── Repository classification ──────────────────────────────────


def _depth(root: Path, path: Path) -> int:
    return len(path.relative_to(root).parts)


def _search(root: Path, filenames: Tuple[str, ...], max_depth: int = SEARCH_DEPTH) -> Optional[Path]:
    """Return the shallowest directory holding one of ``filenames``."""
    matches: List[Path] = []
    for dirpath, dirnames, files in os.walk(root):
        current = Path(dirpath)
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        if current != root and _depth(root, current) >= max_depth:
            dirnames[:] = []
        if any(name in files for name in filenames):
            matches.append(current)
    if not matches:
        return None
    return min(matches, key=lambda p: (_depth(root, p), str(p)))


def find_chart(repo_dir: Path) -> Optional[Path]:
    """Locate a Helm chart: root, then ``charts/*``, then any up to depth 3."""
    if (repo_dir / "Chart.yaml").is_file():
        return repo_dir
    charts = repo_dir / "charts"
    if charts.is_dir():
        for candidate in sorted(charts.iterdir()):
            if (candidate / "Chart.yaml").is_file():
                return candidate
    return _search(repo_dir, ("Chart.yaml",))


def find_kustomization(repo_dir: Path) -> Optional[Path]:
    """Locate a kustomize directory: root, base, overlays/dev, overlays/prod, then search."""
    for candidate in KUSTOMIZE_CANDIDATES:
        directory = repo_dir / candidate if candidate else repo_dir
        if any((directory / name).is_file() for name in KUSTOMIZATION_FILES):
            return directory
    return _search(repo_dir, KUSTOMIZATION_FILES)


def _has_root_kustomization(repo_dir: Path) -> bool:
    for directory in (repo_dir, repo_dir / "base", repo_dir / "overlays"):
        if any((directory / name).is_file() for name in KUSTOMIZATION_FILES):
            return True
    overlays = repo_dir / "overlays"
    if overlays.is_dir():
        for child in overlays.iterdir():
            if any((child / name).is_file() for name in KUSTOMIZATION_FILES):
                return True
    return False


def detect_application_type(repo_dir: Path) -> Tuple[ApplicationType, Path]:
    """Classify a repository's deployment mechanism.

    Returns:
        The application type and the directory to deploy from.
    """
    manifests = repo_dir / MANIFEST_DIRECTORY
    if manifests.is_dir():
        return ApplicationType.MANIFEST_DIRECTORY, manifests

    if (repo_dir / "Chart.yaml").is_file() or any(
        (p / "Chart.yaml").is_file() for p in (repo_dir / "charts").glob("*")
    ):
        return ApplicationType.HELM, find_chart(repo_dir)

    if _has_root_kustomization(repo_dir):
        return ApplicationType.KUSTOMIZE, find_kustomization(repo_dir)

    return ApplicationType.STANDARD, repo_dir


def release_name(chart_dir: Path) -> str:
    """Helm release name derived from the chart directory."""
    name = re.sub(r"[^a-z0-9-]", "-", chart_dir.resolve().name.lower()).strip("-")
    return name or "release"


# ── Manifest discovery ─────────────────────────────────────────


def read_manifest_kinds(path: Path) -> List[str]:
    """Kinds of the resource documents in a YAML file.

    Only documents carrying both ``apiVersion`` and ``kind`` count.
    Unreadable files yield no kinds.
    """
    try:
        with open(path) as f:
            docs = list(yaml.safe_load_all(f))
    except (OSError, UnicodeDecodeError, yaml.YAMLError):
        return []

    kinds = []
    for doc in docs:
        if isinstance(doc, dict) and doc.get("apiVersion") and isinstance(doc.get("kind"), str):
            kinds.append(doc["kind"])
    return kinds


def find_manifest_files(root: Path) -> List[ManifestEntry]:
    """Find every YAML file under ``root`` that declares at least one resource."""
    entries = []
    for dirpath, dirnames, files in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for filename in sorted(files):
            if not filename.endswith((".yaml", ".yml")):
                continue
            path = Path(dirpath) / filename
            kinds = read_manifest_kinds(path)
            if not kinds:
                continue
            entries.append(ManifestEntry(
                path=str(path),
                kinds=kinds,
                rank=min(kind_rank(k) for k in kinds),
            ))
    return entries


def build_plan(
    application_type: ApplicationType,
    entries: List[ManifestEntry],
    strategy: ApplyStrategy,
) -> DeploymentPlan:
    """Order manifest files for one deploy attempt.

    Strict order sorts by kind rank; ties keep discovery order.
    """
    ordered = list(entries)
    if strategy == ApplyStrategy.STRICT_ORDER:
        ordered.sort(key=lambda e: e.rank)
    return DeploymentPlan(application_type=application_type, strategy=strategy, entries=ordered)


# ── Deployer ───────────────────────────────────────────────────


class ManifestDeployer:
    """Deploys a checked-out repository into the cluster."""

    def __init__(self, cluster, settings: Settings):
        self.cluster = cluster
        self.settings = settings

    def _log(self, message: str):
        if not self.settings.quiet:
            print(f"    {message}")

    def deploy(
        self,
        repo_dir: str,
        namespace: Optional[str] = None,
        allow_fallback: bool = True,
    ) -> DeploymentOutcome:
        """Deploy a repository.

        Per-file failures are collected, never raised.

        Args:
            repo_dir: Path to the repository checkout.
            namespace: Target namespace, defaults to ``settings.namespace``.
            allow_fallback: Deploy the bundled sample workload when the
                repository holds no manifests.

        Returns:
            Counts of applied and total resources, errors and warnings.

        Raises:
            FatalSetupError: If the directory does not exist, or it holds no
                manifests and the fallback is disabled.
        """
        root = Path(repo_dir)
        if not root.is_dir():
            raise FatalSetupError(
                f"Could not locate valid repository directory: {repo_dir}",
                Stage.MANIFEST_DETECTION,
            )

        namespace = namespace or self.settings.namespace
        app_type, source = detect_application_type(root)
        self._log(f"Detected application type: {app_type.value} ({source})")

        if app_type == ApplicationType.HELM:
            self._ensure_namespace(namespace)
            outcome = self._deploy_helm(source, namespace)
        elif app_type == ApplicationType.KUSTOMIZE:
            self._ensure_namespace(namespace)
            outcome = self._deploy_kustomize(source, namespace)
        else:
            entries = find_manifest_files(source)
            if not entries:
                if not allow_fallback:
                    raise FatalSetupError(
                        f"No Kubernetes manifest files found in {repo_dir}",
                        Stage.MANIFEST_DETECTION,
                    )
                return self._deploy_fallback()
            self._ensure_namespace(namespace)
            plan = build_plan(app_type, entries, ApplyStrategy(self.settings.apply_strategy))
            outcome = self._deploy_files(plan, namespace)

        if outcome.applied > 0:
            self._wait_for_readiness(outcome)
        return outcome

    def _ensure_namespace(self, namespace: str):
        """Create the target namespace if it does not exist."""
        if self.settings.dry_run or self.cluster.get("namespace", namespace) is not None:
            return
        self._log(f"Creating namespace {namespace}")
        result = self.cluster.apply([Namespace(namespace)])
        if not result.ok:
            raise FatalSetupError(
                f"Failed to deploy namespace {namespace}: {result.error}",
                Stage.DEPLOYMENT,
            )

    def _deploy_fallback(self) -> DeploymentOutcome:
        self._log("No manifest files found, using fallback workload")
        deploy_fallback(self.cluster, self.settings)
        return DeploymentOutcome(
            success=True,
            applied=2,
            total=2,
            namespace=FALLBACK_NAMESPACE,
            application_type=ApplicationType.STANDARD,
            warnings=["No Kubernetes manifest files found; deployed fallback workload"],
            used_fallback=True,
        )

    def _apply_entry(self, entry: ManifestEntry, namespace: str) -> Tuple[ManifestEntry, bool, str]:
        result = self.cluster.apply_file(
            entry.path, namespace=namespace, extra_args=self.settings.additional_args
        )
        return entry, result.ok, result.error

    def _deploy_files(self, plan: DeploymentPlan, namespace: str) -> DeploymentOutcome:
        outcome = DeploymentOutcome(
            success=False,
            applied=0,
            total=plan.total_resources,
            namespace=namespace,
            application_type=plan.application_type,
        )
        self._log(
            f"Applying {len(plan.entries)} manifest file(s) "
            f"({plan.strategy.value}, {plan.total_resources} resources)"
        )

        if plan.strategy == ApplyStrategy.PARALLEL:
            workers = min(MAX_PARALLEL_APPLIES, len(plan.entries))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                results = list(executor.map(
                    lambda e: self._apply_entry(e, namespace), plan.entries
                ))
        else:
            results = [self._apply_entry(e, namespace) for e in plan.entries]

        for entry, ok, error in results:
            if ok:
                outcome.applied += entry.resource_count
                outcome.applied_files.append(entry.path)
                self._log(f"Applied {entry.path} ({', '.join(entry.kinds)})")
            else:
                outcome.errors.append({"file": entry.path, "error": error})
                self._log(f"Failed to apply {entry.path}: {error}")

        outcome.success = outcome.applied > 0
        return outcome

    def _deploy_helm(self, chart_dir: Path, namespace: str) -> DeploymentOutcome:
        release = release_name(chart_dir)
        self._log(f"Installing Helm chart {chart_dir} as release {release}")
        result = self.cluster.helm_install(
            release,
            str(chart_dir),
            namespace,
            timeout=self.settings.deploy_timeout,
            extra_args=self.settings.additional_args,
        )
        outcome = DeploymentOutcome(
            success=result.ok,
            applied=1 if result.ok else 0,
            total=1,
            namespace=namespace,
            application_type=ApplicationType.HELM,
        )
        if result.ok:
            outcome.applied_files.append(str(chart_dir))
        else:
            outcome.errors.append({"file": str(chart_dir), "error": result.error})
        return outcome

    def _deploy_kustomize(self, overlay_dir: Path, namespace: str) -> DeploymentOutcome:
        self._log(f"Building kustomize overlay {overlay_dir}")
        result = self.cluster.kustomize_apply(
            str(overlay_dir), namespace, extra_args=self.settings.additional_args
        )
        outcome = DeploymentOutcome(
            success=False,
            applied=0,
            total=0,
            namespace=namespace,
            application_type=ApplicationType.KUSTOMIZE,
        )
        if not result.ok:
            outcome.total = 1
            outcome.errors.append({"file": str(overlay_dir), "error": result.error})
            return outcome

        lines = [line for line in result.output.splitlines() if line.strip()]
        outcome.applied = sum(1 for line in lines if _APPLIED_LINE.search(line))
        outcome.total = max(len(lines), outcome.applied)
        outcome.applied_files.append(str(overlay_dir))
        outcome.success = outcome.applied > 0
        return outcome

    def _wait_for_readiness(self, outcome: DeploymentOutcome):
        """Wait for the deployed pods, recording a timeout as a warning."""
        if not self.settings.wait_for_readiness or self.settings.dry_run:
            return
        timeout = self.settings.deploy_timeout
        self._log(f"Waiting up to {timeout}s for pods in {outcome.namespace} to be ready")
        if not self.cluster.wait("Ready", outcome.namespace, target="pods", timeout=timeout):
            outcome.warnings.append(f"Some pods not ready within {timeout}s")
