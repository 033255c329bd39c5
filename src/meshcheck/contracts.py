"""
OpenAPI contract compliance.

OpenAPIDocument loads a YAML or JSON OpenAPI 3.x document, checks its
structure and $ref integrity, and answers operation lookups for concrete
request paths. ContractComplianceChecker probes documented endpoints through
the scenario runner and validates live responses against the document.

A document that fails to parse or validate raises; contract checks are never
silently skipped because their OpenAPI document is broken.
"""

import copy
import logging
import os
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import unquote, urlparse

import yaml

from .scenarios import (
    ROUTE_NOT_FOUND,
    ComplianceReport,
    EndpointExpectation,
    Outcome,
    ProbeOutcome,
    Scenario,
    ScenarioRunner,
)
from .validation import SchemaValidationError, SchemaValidator

logger = logging.getLogger(__name__)

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")
CORRELATION_HEADER = "X-Correlation-ID"

DRAFT4_URI = "http://json-schema.org/draft-04/schema#"
DRAFT2020_URI = "https://json-schema.org/draft/2020-12/schema"

OPENAPI_STRUCTURE_SCHEMA: Dict[str, Any] = {
    "$schema": DRAFT2020_URI,
    "type": "object",
    "required": ["openapi", "info", "paths"],
    "properties": {
        "openapi": {"type": "string", "pattern": r"^3\.\d+(\.\d+)?$"},
        "info": {
            "type": "object",
            "required": ["title", "version"],
            "properties": {
                "title": {"type": "string", "minLength": 1},
                "version": {"type": "string", "minLength": 1},
            },
        },
        "servers": {"type": "array", "items": {"type": "object", "required": ["url"]}},
        "paths": {
            "type": "object",
            "propertyNames": {"pattern": "^/"},
            "additionalProperties": {"$ref": "#/$defs/pathItem"},
        },
        "components": {"type": "object"},
    },
    "$defs": {
        "pathItem": {
            "type": "object",
            "properties": {method: {"$ref": "#/$defs/operation"} for method in HTTP_METHODS},
        },
        "operation": {
            "type": "object",
            "required": ["responses"],
            "properties": {"responses": {"type": "object", "minProperties": 1}},
        },
    },
}


class ContractLoadError(Exception):
    """Raised when an OpenAPI document cannot be read or parsed."""

    pass


class ContractValidationError(Exception):
    """Raised when an OpenAPI document is structurally invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


@dataclass
class Operation:
    """A documented operation matched against a concrete request path."""

    method: str
    path_template: str
    spec: Dict[str, Any]
    path_params: Dict[str, str]

    @property
    def operation_id(self) -> Optional[str]:
        return self.spec.get("operationId")


def _template_regex(template: str) -> "re.Pattern[str]":
    parts = re.split(r"(\{[^}/]+\})", template)
    pattern = ""
    for part in parts:
        if part.startswith("{") and part.endswith("}"):
            pattern += f"(?P<{_group_name(part[1:-1])}>[^/]+)"
        else:
            pattern += re.escape(part)
    return re.compile(f"^{pattern}$")


def _group_name(param: str) -> str:
    return re.sub(r"\W", "_", param) or "param"


def _normalize_path(path: str) -> str:
    path = urlparse(path).path or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def _resolve_pointer(document: Any, pointer: str) -> Any:
    """Resolve a JSON pointer fragment (without the leading '#')."""
    if pointer in ("", "/"):
        return document
    node = document
    for token in pointer.lstrip("/").split("/"):
        token = unquote(token).replace("~1", "/").replace("~0", "~")
        if isinstance(node, dict) and token in node:
            node = node[token]
        elif isinstance(node, list) and token.isdigit() and int(token) < len(node):
            node = node[int(token)]
        else:
            raise KeyError(pointer)
    return node


def _translate_nullable(node: Any) -> Any:
    """Rewrite OpenAPI 3.0 ``nullable: true`` into JSON Schema type unions."""
    if isinstance(node, list):
        return [_translate_nullable(item) for item in node]
    if not isinstance(node, dict):
        return node
    translated = {key: _translate_nullable(value) for key, value in node.items() if key != "nullable"}
    if node.get("nullable") is True:
        if isinstance(translated.get("type"), str):
            translated["type"] = [translated["type"], "null"]
        elif "type" not in translated and "$ref" in translated:
            translated = {"anyOf": [translated, {"type": "null"}]}
    return translated


def _load_structured_file(path: str) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f)
    except OSError as e:
        raise ContractLoadError(f"Cannot read OpenAPI document {path}: {e}")
    except yaml.YAMLError as e:
        raise ContractLoadError(f"OpenAPI document {path} is not valid YAML: {e}")


class OpenAPIDocument:
    """A parsed OpenAPI 3.x document."""

    def __init__(self, data: Dict[str, Any], path: Optional[str] = None):
        self.data = data
        self.path = path
        self._external: Dict[str, Any] = {}

    @classmethod
    def load(cls, path: str, validate: bool = True) -> "OpenAPIDocument":
        """
        Parse (and by default validate) a document.

        Raises:
            ContractLoadError: If the file is missing or not YAML/JSON
            ContractValidationError: If the structure or references are invalid
        """
        data = _load_structured_file(path)
        if not isinstance(data, dict):
            raise ContractLoadError(f"OpenAPI document {path} must contain a mapping at the top level")

        document = cls(data, path=os.path.abspath(path))
        if validate:
            document.validate()
        logger.info(f"Loaded OpenAPI document {path}: {document.title} {document.version}")
        return document

    @property
    def title(self) -> str:
        return self.data.get("info", {}).get("title", "")

    @property
    def version(self) -> str:
        return self.data.get("info", {}).get("version", "")

    @property
    def openapi_version(self) -> str:
        return str(self.data.get("openapi", ""))

    @property
    def paths(self) -> Dict[str, Dict[str, Any]]:
        return self.data.get("paths") or {}

    @property
    def base_dir(self) -> str:
        return os.path.dirname(self.path) if self.path else os.getcwd()

    def validate(self) -> None:
        """Check structure and reference integrity.

        Raises:
            ContractValidationError: listing every structural problem and unresolved $ref
        """
        errors = SchemaValidator().get_schema_errors(self.data, OPENAPI_STRUCTURE_SCHEMA)
        errors.extend(self.unresolved_refs())
        if errors:
            name = self.path or self.title or "OpenAPI document"
            raise ContractValidationError(f"{name} is invalid: {'; '.join(errors)}", errors)

    def unresolved_refs(self) -> List[str]:
        errors: List[str] = []
        self._check_refs(self.data, self.path, errors, set())
        return errors

    def _check_refs(self, node: Any, base_path: Optional[str], errors: List[str], visited: set) -> None:
        if isinstance(node, list):
            for item in node:
                self._check_refs(item, base_path, errors, visited)
            return
        if not isinstance(node, dict):
            return

        ref = node.get("$ref")
        if isinstance(ref, str):
            try:
                target, target_path = self._resolve_ref(ref, base_path)
            except (KeyError, ContractLoadError) as e:
                errors.append(f"Unresolved reference '{ref}': {e}")
            else:
                key = (target_path, ref.partition("#")[2])
                if target_path != base_path and key not in visited:
                    visited.add(key)
                    self._check_refs(target, target_path, errors, visited)

        for key, value in node.items():
            if key != "$ref":
                self._check_refs(value, base_path, errors, visited)

    def _resolve_ref(self, ref: str, base_path: Optional[str]) -> Tuple[Any, Optional[str]]:
        """Resolve a local ('#/...') or relative file reference to ``(node, file)``."""
        file_part, _, fragment = ref.partition("#")
        if not file_part:
            root = self.data if base_path == self.path else self._external[base_path]
            return _resolve_pointer(root, fragment), base_path

        if urlparse(file_part).scheme:
            raise KeyError("remote references are not supported")

        base_dir = os.path.dirname(base_path) if base_path else self.base_dir
        target_path = os.path.abspath(os.path.join(base_dir, file_part))
        if target_path not in self._external:
            self._external[target_path] = _load_structured_file(target_path)
        return _resolve_pointer(self._external[target_path], fragment), target_path

    def _deref(self, node: Any, base_path: Optional[str] = None, depth: int = 0) -> Any:
        """Follow a chain of $ref objects to the referenced node."""
        base_path = base_path or self.path
        while isinstance(node, dict) and isinstance(node.get("$ref"), str) and depth < 20:
            node, base_path = self._resolve_ref(node["$ref"], base_path)
            depth += 1
        return node

    def _inline_external(self, node: Any, base_path: Optional[str], depth: int = 0) -> Any:
        """Replace file references with their targets so a validator only sees local refs."""
        if depth > 30:
            return node
        if isinstance(node, list):
            return [self._inline_external(item, base_path, depth + 1) for item in node]
        if not isinstance(node, dict):
            return node
        ref = node.get("$ref")
        if isinstance(ref, str) and not ref.startswith("#"):
            target, target_path = self._resolve_ref(ref, base_path)
            return self._inline_external(target, target_path, depth + 1)
        return {key: self._inline_external(value, base_path, depth + 1) for key, value in node.items()}

    def find_operation(self, method: str, path: str) -> Optional[Operation]:
        """
        Find the documented operation for a concrete request.

        Literal templates win over parameterised ones; among parameterised
        templates the one with fewest parameters wins.
        """
        method = method.lower()
        concrete = _normalize_path(path)
        candidates = []

        for template, item in self.paths.items():
            item = self._deref(item)
            if not isinstance(item, dict) or method not in item:
                continue
            match = _template_regex(_normalize_path(template)).match(concrete)
            if match:
                names = re.findall(r"\{([^}/]+)\}", template)
                params = dict(zip(names, match.groups()))
                candidates.append((len(names), template, item[method], params))

        if not candidates:
            return None
        candidates.sort(key=lambda c: c[0])
        _, template, spec, params = candidates[0]
        return Operation(method=method.upper(), path_template=template, spec=spec, path_params=params)

    def has_path(self, path: str) -> bool:
        concrete = _normalize_path(path)
        return any(_template_regex(_normalize_path(t)).match(concrete) for t in self.paths)

    def documented_statuses(self, operation: Operation) -> List[str]:
        return [str(code) for code in operation.spec.get("responses", {})]

    def success_statuses(self, operation: Operation) -> List[int]:
        return sorted(int(code) for code in self.documented_statuses(operation) if code.isdigit() and code.startswith("2"))

    def response_schema(self, method: str, path: str, status: int) -> Optional[Dict[str, Any]]:
        """
        JSON Schema for the documented JSON response, ready for a validator.

        Returns None when the operation, the status or a JSON body is undocumented.
        """
        operation = self.find_operation(method, path)
        if operation is None:
            return None

        responses = operation.spec.get("responses", {})
        response = None
        for key in (str(status), f"{str(status)[0]}XX", f"{str(status)[0]}xx", "default"):
            if key in responses:
                response = responses[key]
                break
        if response is None:
            # YAML may parse bare status keys as integers
            response = responses.get(status)
        response = self._deref(response)
        if not isinstance(response, dict):
            return None

        content = response.get("content") or {}
        media = content.get("application/json")
        if media is None:
            media = next((v for k, v in content.items() if "json" in k), None)
        if not isinstance(media, dict) or "schema" not in media:
            return None

        return self._prepare_schema(media["schema"])

    def _prepare_schema(self, schema: Dict[str, Any]) -> Dict[str, Any]:
        schema = self._inline_external(copy.deepcopy(schema), self.path)
        components = self._inline_external(copy.deepcopy(self.data.get("components", {})), self.path)

        if self.openapi_version.startswith("3.0"):
            return {
                "$schema": DRAFT4_URI,
                "components": _translate_nullable(components),
                "allOf": [_translate_nullable(schema)],
            }
        return {"$schema": DRAFT2020_URI, "components": components, "allOf": [schema]}


def validate_specification(path: str) -> OpenAPIDocument:
    """Load and validate one document; raises instead of returning a broken document."""
    return OpenAPIDocument.load(path, validate=True)


def load_contract_dir(directory: str) -> Dict[str, OpenAPIDocument]:
    """
    Load every ``.yaml``, ``.yml`` and ``.json`` document in a directory.

    Raises:
        ContractLoadError: If the directory does not exist or a document is unreadable
        ContractValidationError: If any document is invalid
    """
    if not os.path.isdir(directory):
        raise ContractLoadError(f"OpenAPI directory not found: {directory}")

    documents = {}
    for name in sorted(os.listdir(directory)):
        if name.endswith((".yaml", ".yml", ".json")):
            documents[name] = OpenAPIDocument.load(os.path.join(directory, name))
    return documents


@dataclass(frozen=True)
class ContractEndpoint:
    """
    A live endpoint to check against the document.

    ``requires_auth`` endpoints are probed without credentials and must
    refuse the request with 401 or 403.
    """

    method: str
    path: str
    critical: bool = True
    paginated: bool = False
    requires_auth: bool = False
    body: Any = None
    expected_status: Optional[Tuple[int, ...]] = None


class ContractComplianceChecker:
    """Cross-checks live gateway behavior against an OpenAPI document."""

    def __init__(self, document: OpenAPIDocument, runner: ScenarioRunner):
        self.document = document
        self.runner = runner

    def expectation_for(self, base_url: str, endpoint: ContractEndpoint, operation: Operation) -> EndpointExpectation:
        name = f"{endpoint.method.upper()} {endpoint.path}"
        common = dict(
            name=name,
            method=endpoint.method,
            path=endpoint.path,
            base_url=base_url,
            critical=endpoint.critical,
            body=endpoint.body,
            forbidden_substrings=(ROUTE_NOT_FOUND,),
            description=operation.spec.get("summary", ""),
        )

        if endpoint.requires_auth:
            return EndpointExpectation(expected_status=endpoint.expected_status or (401, 403), **common)

        statuses = endpoint.expected_status or tuple(self.document.success_statuses(operation)) or None
        schema = None
        if statuses:
            schema = self.document.response_schema(endpoint.method, endpoint.path, statuses[0])

        fields = ("data", "pagination") if endpoint.paginated else ("data",)
        return EndpointExpectation(
            expected_status=statuses,
            required_fields=fields,
            required_headers=(CORRELATION_HEADER,),
            content_type="application/json",
            response_schema=schema,
            **common,
        )

    def _undocumented_problem(self, endpoint: ContractEndpoint) -> str:
        method = endpoint.method.upper()
        if self.document.has_path(endpoint.path):
            return f"{method} is not documented for {endpoint.path} in '{self.document.title}'"
        return f"{method} {endpoint.path} is not defined in '{self.document.title}'"

    def check(self, base_url: str, endpoints: Sequence[ContractEndpoint],
              critical: bool = True) -> ComplianceReport:
        """
        Probe every documented endpoint and report compliance.

        Endpoints missing from the document fail without being probed.
        ``critical=False`` downgrades every endpoint to non-critical, so
        violations are reported as gaps.

        Raises:
            EnvironmentNotReady: from the runner's readiness gate
        """
        expectations = []
        undocumented = []

        for endpoint in endpoints:
            if not critical:
                endpoint = replace(endpoint, critical=False)
            operation = self.document.find_operation(endpoint.method, endpoint.path)
            if operation is None:
                expectation = EndpointExpectation(
                    name=f"{endpoint.method.upper()} {endpoint.path}",
                    method=endpoint.method,
                    path=endpoint.path,
                    base_url=base_url,
                    critical=endpoint.critical,
                )
                undocumented.append(
                    ProbeOutcome(
                        expectation=expectation,
                        outcome=Outcome.FAILED if endpoint.critical else Outcome.GAP,
                        problems=[self._undocumented_problem(endpoint)],
                    )
                )
                continue
            expectations.append(self.expectation_for(base_url, endpoint, operation))

        report = self.runner.run(Scenario(name=f"contract: {self.document.title}", endpoints=expectations))
        for outcome in undocumented:
            log = logger.error if outcome.outcome is Outcome.FAILED else logger.warning
            log(outcome.error)
            report.add(outcome)
        return report


def check_schema(document: OpenAPIDocument, method: str, path: str, status: int, body: Any) -> List[str]:
    """Validate a response body against the document without probing; returns problems."""
    schema = document.response_schema(method, path, status)
    if schema is None:
        return [f"No JSON response schema documented for {method.upper()} {path} {status}"]
    try:
        SchemaValidator().validate(body, schema, f"{method.upper()} {path} response")
    except SchemaValidationError as e:
        return e.errors or [str(e)]
    return []
