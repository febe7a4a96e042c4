"""
Manifest Validation - JSON Schema validation of applied manifests.

``cpctl apply`` accepts Kubernetes-style documents (apiVersion, kind,
metadata, spec). Each supported kind has a schema; infrastructure
templates are recognised by their ``Template`` kind suffix.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

from models import CLUSTER_NAME_LABEL, CONTROL_PLANE_KIND

logger = logging.getLogger(__name__)

_METADATA_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {
            "type": "string",
            "minLength": 1,
            "maxLength": 253,
            "pattern": "^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$",
        },
        "namespace": {"type": "string", "minLength": 1, "maxLength": 253},
        "labels": {"type": "object", "additionalProperties": {"type": "string"}},
        "annotations": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
    },
}

_OBJECT_REFERENCE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["apiVersion", "kind", "name"],
    "properties": {
        "apiVersion": {"type": "string", "minLength": 1},
        "kind": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "namespace": {"type": "string"},
    },
}

CLUSTER_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["apiVersion", "kind", "metadata"],
    "properties": {
        "apiVersion": {"type": "string"},
        "kind": {"const": "Cluster"},
        "metadata": _METADATA_SCHEMA,
        "spec": {
            "type": "object",
            "properties": {
                "paused": {"type": "boolean"},
                "infrastructureReady": {"type": "boolean"},
                "failureDomains": {"type": "array", "items": {"type": "string"}},
                "controlPlaneEndpoint": {
                    "type": "object",
                    "properties": {
                        "host": {"type": "string"},
                        "port": {"type": "integer", "minimum": 0, "maximum": 65535},
                    },
                },
            },
        },
    },
}

CONTROL_PLANE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["apiVersion", "kind", "metadata", "spec"],
    "properties": {
        "apiVersion": {"type": "string"},
        "kind": {"const": CONTROL_PLANE_KIND},
        "metadata": {
            "allOf": [
                _METADATA_SCHEMA,
                {
                    "type": "object",
                    "required": ["labels"],
                    "properties": {
                        "labels": {
                            "type": "object",
                            "required": [CLUSTER_NAME_LABEL],
                        }
                    },
                },
            ]
        },
        "spec": {
            "type": "object",
            "required": ["machineTemplate"],
            "properties": {
                "replicas": {"type": "integer", "minimum": 0},
                "machineTemplate": {
                    "type": "object",
                    "required": ["infrastructureRef"],
                    "properties": {"infrastructureRef": _OBJECT_REFERENCE_SCHEMA},
                },
                "controlPlaneConfig": {"type": "object"},
            },
        },
    },
}

TEMPLATE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["apiVersion", "kind", "metadata", "spec"],
    "properties": {
        "apiVersion": {"type": "string", "pattern": "^[^/]+/[^/]+$"},
        "kind": {"type": "string", "pattern": "Template$"},
        "metadata": _METADATA_SCHEMA,
        "spec": {
            "type": "object",
            "required": ["template"],
            "properties": {
                "template": {
                    "type": "object",
                    "properties": {
                        "metadata": {
                            "type": "object",
                            "properties": {
                                "labels": {"type": "object"},
                                "annotations": {"type": "object"},
                            },
                        },
                        "spec": {"type": "object"},
                    },
                }
            },
        },
    },
}


def schema_for_kind(kind: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the schema for a manifest kind, or None if it is unsupported."""
    if kind == "Cluster":
        return CLUSTER_SCHEMA
    if kind == CONTROL_PLANE_KIND:
        return CONTROL_PLANE_SCHEMA
    if kind and kind.endswith("Template"):
        return TEMPLATE_SCHEMA
    return None


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a document against a JSON Schema.

    Args:
        spec: The document to validate
        schema: The JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
        errors = sorted(validator.iter_errors(spec), key=lambda e: list(e.absolute_path))

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def validate_manifest(document: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate one manifest document.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(document, dict):
        return False, "(root): manifest must be a mapping"

    kind = document.get("kind")
    schema = schema_for_kind(kind)
    if schema is None:
        return False, f"kind: unsupported kind {kind!r}"

    return validate_spec_against_schema(document, schema)
