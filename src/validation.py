"""
Schema Validation - OpenAPI v3 schema validation for cluster and plugin specs.

Structural checks use JSON Schema (Draft 7, the dialect OpenAPI 3.0 uses);
cross-field rules that a schema cannot express are checked by hand.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator

from errors import ValidationError

logger = logging.getLogger(__name__)

STRING_MAP = {"type": "object", "additionalProperties": {"type": "string"}}

ENV_VAR_SCHEMA = {
    "type": "object",
    "required": ["name"],
    "properties": {"name": {"type": "string", "minLength": 1}},
}

SERVICE_PORT_SCHEMA = {
    "type": "object",
    "required": ["port"],
    "properties": {
        "name": {"type": "string"},
        "port": {"type": "integer"},
        "targetPort": {"type": ["integer", "string"]},
        "protocol": {"type": "string"},
    },
}

CLAIM_TEMPLATE_SCHEMA = {
    "type": "object",
    "required": ["metadata", "spec"],
    "properties": {
        "metadata": {
            "type": "object",
            "required": ["name"],
            "properties": {"name": {"type": "string", "minLength": 1}},
        },
        "spec": {"type": "object"},
        "mountPath": {"type": "string"},
    },
}

CLUSTER_SPEC_SCHEMA = {
    "type": "object",
    "properties": {
        "replicas": {"type": "integer"},
        "image": {"type": "string"},
        "ephemeral": {"type": "boolean"},
        "storageClassName": {"type": "string"},
        "volumeClaimTemplates": {"type": "array", "items": CLAIM_TEMPLATE_SCHEMA},
        "persistent": {"type": "object"},
        "license": {
            "type": "object",
            "properties": {"secretName": {"type": "string"}},
        },
        "plugins": {"type": "array", "items": {"type": "string"}},
        "template": {
            "type": "object",
            "properties": {
                "image": {"type": "string"},
                "labels": STRING_MAP,
                "annotations": STRING_MAP,
                "nodeSelector": STRING_MAP,
                "env": {"type": "array", "items": ENV_VAR_SCHEMA},
                "resources": {"type": "object"},
            },
        },
        "serviceTemplate": {
            "type": "object",
            "properties": {
                "type": {"type": "string"},
                "annotations": STRING_MAP,
                "ports": {"type": "array", "items": SERVICE_PORT_SCHEMA},
            },
        },
    },
}

PLUGIN_SPEC_SCHEMA = {
    "type": "object",
    "required": ["pluginName"],
    "properties": {
        "pluginName": {"type": "string", "minLength": 1},
        "selector": STRING_MAP,
        "config": STRING_MAP,
    },
}


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a resource spec against an OpenAPI v3 schema.

    Args:
        spec: The resource specification to validate
        schema: The OpenAPI v3 JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors = list(validator.iter_errors(spec))

    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    return False, "; ".join(error_messages)


def validate_cluster_spec(spec: Dict[str, Any]) -> None:
    """
    Validate a raw cluster spec.

    Raises:
        ValidationError: If the spec is malformed or self-contradictory
    """
    is_valid, error = validate_spec_against_schema(spec, CLUSTER_SPEC_SCHEMA)
    if not is_valid:
        raise ValidationError(error)

    replicas = spec.get("replicas")
    if replicas is not None and replicas < 0:
        raise ValidationError(f"replicas: must not be negative, got {replicas}")

    templates = spec.get("volumeClaimTemplates") or []
    persistent = spec.get("persistent")
    if templates and persistent:
        raise ValidationError(
            "volumeClaimTemplates and persistent are mutually exclusive"
        )

    if spec.get("ephemeral"):
        if spec.get("storageClassName"):
            raise ValidationError(
                "storageClassName cannot be set when ephemeral is true"
            )
        if templates or persistent:
            raise ValidationError(
                "ephemeral storage cannot be combined with storage templates"
            )


def validate_plugin_spec(spec: Dict[str, Any]) -> None:
    """
    Validate a raw plugin spec.

    Raises:
        ValidationError: If the spec is malformed
    """
    is_valid, error = validate_spec_against_schema(spec, PLUGIN_SPEC_SCHEMA)
    if not is_valid:
        raise ValidationError(error)
