"""Verdict resolution for chaos runs."""

from chaosgate.collector.result_collector import ResultResolver, candidate_result_names

__all__ = ["ResultResolver", "candidate_result_names"]
