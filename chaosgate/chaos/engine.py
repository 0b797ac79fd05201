"""Chaos engine and experiment-definition synthesis.

The engine carries a fixed set of tuning parameters; the experiment
definition carries the type-specific defaults the experiment image reads.
Where the engine places its target reference depends on the installed
chaosengines CRD and is detected at build time.
"""

import time
from typing import Callable, Dict, List, Optional

from chaosgate.cluster.decode import CrdRecord, decode_crd
from chaosgate.cluster.resources import (
    ChaosEngine,
    ChaosExperiment,
    EnginePlacement,
    EnvVar,
    PermissionShape,
    PolicyRule,
    env_list,
)
from chaosgate.config import Settings
from chaosgate.models import NETWORK_CHAOS_TYPES, ChaosExperimentSpec

ENGINE_CRD_NAME = "chaosengines.litmuschaos.io"

# Fixed tuning applied to every engine: half the matching pods, 10s between
# actions, forced termination.
TUNING_ENV = {
    "CHAOS_INTERVAL": "10",
    "FORCE": "true",
    "PODS_AFFECTED_PERC": "50",
    "TARGET_PODS": "",
    "SEQUENCE": "parallel",
}

DEFINITION_ENV = {
    "TOTAL_CHAOS_DURATION": "30",
    "RAMP_TIME": "0",
    "FORCE": "true",
    "CHAOS_INTERVAL": "10",
    "PODS_AFFECTED_PERC": "50",
    "LIB": "litmus",
    "TARGET_PODS": "",
    "SEQUENCE": "parallel",
}

NETWORK_ENV = {
    "CONTAINER_RUNTIME": "containerd",
    "NETWORK_INTERFACE": "eth0",
    "LIB": "pumba",
}

EXPERIMENT_ENV: Dict[str, Dict[str, str]] = {
    "network-latency": {"NETWORK_LATENCY": "2000"},
    "network-loss": {"NETWORK_PACKET_LOSS_PERCENTAGE": "100"},
    "network-corruption": {"NETWORK_PACKET_CORRUPTION_PERCENTAGE": "100"},
    "disk-fill": {"FILL_PERCENTAGE": "80"},
    "node-io-stress": {
        "FILESYSTEM_UTILIZATION_PERCENTAGE": "10",
        "CPU_CORES": "1",
        "NUMBER_OF_WORKERS": "4",
    },
}

DEFINITION_RULES = [
    PolicyRule(
        api_groups=["", "apps", "batch", "litmuschaos.io"],
        resources=[
            "deployments", "jobs", "pods", "pods/log", "events", "configmaps",
            "chaosengines", "chaosexperiments", "chaosresults",
        ],
        verbs=["create", "list", "get", "patch", "update", "delete", "deletecollection"],
    ),
]


def definition_env(chaos_type: str) -> Dict[str, str]:
    """Default environment of an experiment definition."""
    env = dict(DEFINITION_ENV)
    if chaos_type in NETWORK_CHAOS_TYPES:
        env.update(NETWORK_ENV)
    env.update(EXPERIMENT_ENV.get(chaos_type, {}))
    return env


def build_experiment_definition(
    chaos_type: str,
    namespace: str,
    shape: PermissionShape,
) -> ChaosExperiment:
    """Experiment definition declaring its permissions in ``shape``."""
    return ChaosExperiment(
        chaos_type=chaos_type,
        namespace=namespace,
        shape=shape,
        rules=list(DEFINITION_RULES),
        env=env_list(definition_env(chaos_type)),
    )


def execution_pod_selectors(
    engine_name: str,
    workload_name: str,
    chaos_type: str,
    engine_uid: str = "",
) -> List[str]:
    """Candidate selectors for the pods that execute an experiment, in order.

    Pod labelling differs across framework releases, so no single selector
    is reliable.
    """
    selectors = [
        f"chaosengine={engine_name}",
        f"app={workload_name},chaosengine={engine_name}",
        f"chaosName={chaos_type}",
        "name=chaos-runner",
        "app.kubernetes.io/component=experiment-job",
        f"name={chaos_type}",
    ]
    if chaos_type == "node-io-stress":
        selectors += [
            "name=node-io-stress",
            "app=node-io-stress",
            "app.kubernetes.io/name=node-io-stress",
        ]
        if engine_uid:
            selectors.append(f"chaosUID={engine_uid}")
    return selectors


class ChaosEngineBuilder:
    """Builds uniquely named chaos engines for the installed schema."""

    def __init__(self, cluster, settings: Settings, clock: Callable[[], float] = time.time):
        self.cluster = cluster
        self.settings = settings
        self.clock = clock

    def detect_placement(self) -> EnginePlacement:
        """Where the installed engine CRD expects the target reference.

        Falls back to ``appinfo`` when the CRD is missing, unreadable, or
        accepts any field.
        """
        raw = self.cluster.get("customresourcedefinition", ENGINE_CRD_NAME)
        if raw is None:
            return EnginePlacement.APPINFO
        crd = decode_crd(raw)
        if not isinstance(crd, CrdRecord) or crd.spec_fields is None:
            return EnginePlacement.APPINFO
        if "appinfo" in crd.spec_fields:
            return EnginePlacement.APPINFO
        if "selectors" in crd.spec_fields:
            return EnginePlacement.SELECTORS
        return EnginePlacement.APPINFO

    def engine_name(self, workload_name: str) -> str:
        """``<workload>-chaos-<unixMillis>``."""
        return f"{workload_name}-chaos-{int(self.clock() * 1000)}"

    def engine_env(self, spec: ChaosExperimentSpec) -> List[EnvVar]:
        """Engine environment: duration first, then tuning, then caller params."""
        values = {"TOTAL_CHAOS_DURATION": str(spec.duration)}
        values.update(TUNING_ENV)
        for key, value in spec.params.items():
            if key != "TOTAL_CHAOS_DURATION":
                values[key] = str(value)
        return env_list(values)

    def build(
        self,
        spec: ChaosExperimentSpec,
        placement: Optional[EnginePlacement] = None,
    ) -> ChaosEngine:
        """Synthesize the engine for one run."""
        target = spec.target
        return ChaosEngine(
            name=self.engine_name(target.name),
            namespace=target.namespace,
            chaos_type=spec.chaos_type,
            workload_name=target.name,
            app_label=target.label_selector,
            service_account=self.settings.service_account,
            env=self.engine_env(spec),
            placement=placement or self.detect_placement(),
            app_kind=target.kind,
        )
