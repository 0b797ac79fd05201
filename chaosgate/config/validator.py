"""Schema validation for chaosgate settings."""

from typing import Any, Dict, List

import jsonschema

from chaosgate.models import CHAOS_TYPES

_DNS_LABEL = "^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"

# JSON Schema for settings, keys in snake_case after normalisation
SETTINGS_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "kubectl": {"type": "string", "minLength": 1},
        "helm": {"type": "string", "minLength": 1},
        "kustomize": {"type": "string", "minLength": 1},
        "git": {"type": "string", "minLength": 1},
        "kind": {"type": "string", "minLength": 1},
        "context": {"type": ["string", "null"]},
        "namespace": {"type": "string", "pattern": _DNS_LABEL},
        "apply_strategy": {
            "type": "string",
            "enum": ["normal", "strict-order", "parallel"]
        },
        "dry_run": {"type": "boolean"},
        "wait_for_readiness": {"type": "boolean"},
        "deploy_timeout": {"type": "integer", "minimum": 1},
        "additional_args": {
            "type": "array",
            "items": {"type": "string"}
        },
        "log_level": {
            "type": "string",
            "enum": ["silent", "normal", "verbose"]
        },
        "provision_cluster": {"type": "boolean"},
        "cluster_name": {"type": "string", "pattern": _DNS_LABEL},
        "litmus_namespace": {"type": "string", "pattern": _DNS_LABEL},
        "service_account": {"type": "string", "minLength": 1},
        "operator_manifest_urls": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
            "minItems": 1
        },
        "crd_base_url": {"type": "string", "minLength": 1},
        "experiment_hub_url": {"type": "string", "minLength": 1},
        "excluded_namespaces": {
            "type": "array",
            "items": {"type": "string"}
        },
        "pod_discovery_retries": {"type": "integer", "minimum": 1},
        "pod_discovery_interval": {"type": "number", "minimum": 0},
        "result_buffer": {"type": "integer", "minimum": 0},
        "long_result_buffer": {"type": "integer", "minimum": 0},
        "recovery_wait_timeout": {"type": "integer", "minimum": 1},
        "operator_ready_timeout": {"type": "integer", "minimum": 1},
        "stuck_threshold_minutes": {"type": "number", "exclusiveMinimum": 0},
        "default_chaos_type": {"type": "string", "enum": list(CHAOS_TYPES)},
        "default_duration": {"type": "integer", "minimum": 1},
        "host": {"type": "string", "minLength": 1},
        "port": {"type": "integer", "minimum": 1, "maximum": 65535},
        "workdir": {"type": ["string", "null"]}
    }
}


class ValidationError(Exception):
    """Exception raised when settings validation fails."""

    def __init__(self, message: str, errors: List[str] = None):
        super().__init__(message)
        self.errors = errors or []


def validate_settings(data: Dict[str, Any]) -> bool:
    """Validate a settings mapping against the schema.

    Args:
        data: Settings keyed by snake_case field name. Missing keys keep
            their defaults, so a partial mapping is valid.

    Returns:
        True if validation passes.

    Raises:
        ValidationError: If validation fails.
    """
    try:
        jsonschema.validate(instance=data, schema=SETTINGS_SCHEMA)
    except jsonschema.ValidationError as e:
        raise ValidationError(f"Schema validation failed: {e.message}", [str(e)])

    errors = _semantic_validation(data)
    if errors:
        raise ValidationError("Semantic validation failed", errors)

    return True


def _semantic_validation(data: Dict[str, Any]) -> List[str]:
    """Checks that span more than one field."""
    errors = []

    short = data.get("result_buffer")
    long = data.get("long_result_buffer")
    if short is not None and long is not None and long < short:
        errors.append(
            f"long_result_buffer ({long}) must not be shorter than result_buffer ({short})"
        )

    litmus_ns = data.get("litmus_namespace")
    if litmus_ns and litmus_ns == data.get("namespace"):
        errors.append(
            f"namespace '{litmus_ns}' is reserved for the chaos operator"
        )

    return errors
