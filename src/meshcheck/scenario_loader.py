"""
Scenario file loading.

Scenario files are YAML documents with a top-level ``scenarios`` list:

    scenarios:
      - name: public-routing
        endpoints:
          - name: news listing
            target: public-gateway
            path: /api/news
            required_fields: [data, pagination]
            required_headers: [X-Correlation-ID]

Targets name a gateway (``public-gateway``, ``admin-gateway``), a direct
service (``service:content``), a service reached through the mesh
(``mesh:content``) or an absolute base URL.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .config import Config
from .scenarios import ROUTE_NOT_FOUND, EndpointExpectation, Scenario, ScenarioPhase
from .validation import SchemaValidationError, SchemaValidator

logger = logging.getLogger(__name__)

MAX_SCENARIO_FILE_SIZE = 1024 * 1024

HTTP_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

_string_list = {"type": "array", "items": {"type": "string", "minLength": 1}}

SCENARIO_FILE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["scenarios"],
    "properties": {
        "scenarios": {"type": "array", "minItems": 1, "items": {"$ref": "#/$defs/scenario"}},
    },
    "additionalProperties": False,
    "$defs": {
        "scenario": {
            "type": "object",
            "required": ["name", "endpoints"],
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "description": {"type": "string"},
                "phase": {"enum": ["active", "pending"]},
                "critical_containers": {**_string_list, "minItems": 1},
                "endpoints": {"type": "array", "minItems": 1, "items": {"$ref": "#/$defs/endpoint"}},
            },
            "additionalProperties": False,
        },
        "endpoint": {
            "type": "object",
            "required": ["name", "target", "path"],
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "description": {"type": "string"},
                "target": {"type": "string", "minLength": 1},
                "method": {"type": "string", "enum": HTTP_METHODS + [m.lower() for m in HTTP_METHODS]},
                "path": {"type": "string", "pattern": "^/"},
                "critical": {"type": "boolean"},
                "phase": {"enum": ["active", "pending"]},
                "expected_status": {
                    "oneOf": [
                        {"type": "integer", "minimum": 100, "maximum": 599},
                        {
                            "type": "array",
                            "minItems": 1,
                            "items": {"type": "integer", "minimum": 100, "maximum": 599},
                        },
                    ]
                },
                "required_fields": _string_list,
                "required_headers": _string_list,
                "content_type": {"type": "string", "minLength": 1},
                "forbidden_substrings": _string_list,
                "count_field": {"type": "string", "minLength": 1},
                "array_field": {"type": "string", "minLength": 1},
                "response_schema": {"type": "object"},
                "headers": {"type": "object", "additionalProperties": {"type": "string"}},
                "body": {},
            },
            "additionalProperties": False,
        },
    },
}


class ScenarioLoadError(Exception):
    """Raised when a scenario file cannot be read or parsed."""

    pass


class ScenarioValidationError(Exception):
    """Raised when scenario file content is structurally invalid."""

    pass


class ScenarioLoader:
    """
    Loads and validates scenario definitions from YAML files.

    Args:
        config: Supplies gateway, service and mesh addresses for targets
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config.load_runtime_config()
        self._validator = SchemaValidator()

    def load_file(self, path: str) -> List[Scenario]:
        """
        Load every scenario in one file.

        Raises:
            ScenarioLoadError: If the file cannot be read or is not YAML
            ScenarioValidationError: If the content does not describe scenarios
        """
        data = self._read_yaml(path)
        try:
            self._validator.validate(data, SCENARIO_FILE_SCHEMA, f"Scenario file {path}")
        except SchemaValidationError as e:
            raise ScenarioValidationError(str(e))

        scenarios = [self._build_scenario(raw) for raw in data["scenarios"]]
        names = [s.name for s in scenarios]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ScenarioValidationError(
                f"Scenario file {path} has duplicate scenario names: {', '.join(duplicates)}"
            )

        logger.info(f"Loaded {len(scenarios)} scenario(s) from {path}")
        return scenarios

    def load_files(self, paths: List[str]) -> List[Scenario]:
        scenarios = []
        for path in paths:
            scenarios.extend(self.load_file(path))
        return scenarios

    def _read_yaml(self, path: str) -> Dict[str, Any]:
        try:
            if os.path.getsize(path) > MAX_SCENARIO_FILE_SIZE:
                raise ScenarioLoadError(f"Scenario file {path} exceeds maximum size limit")
            with open(path, encoding="utf-8") as f:
                parsed = yaml.safe_load(f)
        except OSError as e:
            raise ScenarioLoadError(f"Cannot read scenario file {path}: {e}")
        except yaml.YAMLError as e:
            raise ScenarioLoadError(f"Scenario file {path} contains invalid YAML syntax: {e}")

        if parsed is None:
            raise ScenarioLoadError(f"Scenario file {path} is empty")
        if not isinstance(parsed, dict):
            raise ScenarioLoadError(f"Scenario file {path} must contain a YAML object")
        return parsed

    def _build_scenario(self, raw: Dict[str, Any]) -> Scenario:
        default_phase = raw.get("phase", "active")
        endpoints = [self._build_endpoint(raw["name"], e, default_phase) for e in raw["endpoints"]]
        return Scenario(
            name=raw["name"],
            endpoints=endpoints,
            description=raw.get("description", ""),
            critical_containers=raw.get("critical_containers"),
        )

    def _build_endpoint(self, scenario_name: str, raw: Dict[str, Any], default_phase: str) -> EndpointExpectation:
        base_url, mesh_service = self.resolve_target(raw["target"], scenario_name)

        expected_status = raw.get("expected_status")
        if isinstance(expected_status, int):
            expected_status = [expected_status]

        return EndpointExpectation(
            name=raw["name"],
            method=raw.get("method", "GET"),
            path=raw["path"],
            base_url=base_url,
            mesh_service=mesh_service,
            critical=raw.get("critical", True),
            expected_status=expected_status,
            required_fields=raw.get("required_fields", ()),
            array_field=raw.get("array_field", "data"),
            count_field=raw.get("count_field"),
            required_headers=raw.get("required_headers", ()),
            content_type=raw.get("content_type"),
            forbidden_substrings=raw.get("forbidden_substrings", (ROUTE_NOT_FOUND,)),
            response_schema=raw.get("response_schema"),
            body=raw.get("body"),
            headers=raw.get("headers", {}),
            description=raw.get("description", ""),
            phase=ScenarioPhase(raw.get("phase", default_phase)),
        )

    def resolve_target(self, target: str, scenario_name: str = "") -> Tuple[Optional[str], Optional[str]]:
        """Map a target string to ``(base_url, mesh_service)``."""
        if target.startswith(("http://", "https://")):
            return target, None

        gateways = self.config.gateways()
        if target in gateways:
            return gateways[target], None

        kind, _, name = target.partition(":")
        if kind in ("service", "mesh") and name:
            try:
                descriptor = self.config.service(name)
            except KeyError:
                if kind == "mesh":
                    return None, name
                raise ScenarioValidationError(
                    f"Scenario '{scenario_name}' references unknown service '{name}'"
                )
            if kind == "service":
                return descriptor.direct_url, None
            return None, descriptor.mesh_app_id

        raise ScenarioValidationError(f"Scenario '{scenario_name}' has unknown target '{target}'")
