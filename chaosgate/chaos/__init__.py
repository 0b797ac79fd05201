"""Chaos engine synthesis, experiment orchestration and stuck-engine recovery."""

from chaosgate.chaos.engine import ChaosEngineBuilder
from chaosgate.chaos.orchestrator import ExperimentOrchestrator
from chaosgate.chaos.recovery import StuckExperimentRecovery

__all__ = ["ChaosEngineBuilder", "ExperimentOrchestrator", "StuckExperimentRecovery"]
