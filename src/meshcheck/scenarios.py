"""
Scenario runner and assertion layer.

A Scenario is a named list of EndpointExpectations. The runner passes the
readiness gate, probes each endpoint once (no retries) and classifies every
probe:

- PASSED            the endpoint met its expectation
- FAILED            a critical endpoint did not (fails the enclosing test)
- GAP               a non-critical endpoint did not (logged only)
- EXPECTED_FAILURE  a pending endpoint did not, as anticipated (logged only)
- UNEXPECTED_PASS   a pending endpoint did; fails only in strict mode

Outcomes are collected in a ComplianceReport.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .mesh import MeshClient
from .probe import ProbeClient, ProbeResult
from .readiness import ReadinessGate
from .validation import SchemaValidationError, SchemaValidator

logger = logging.getLogger(__name__)

ROUTE_NOT_FOUND = "route not found"

_schema_validator = SchemaValidator()


class ScenarioPhase(Enum):
    """Whether an expectation describes implemented behavior yet."""

    ACTIVE = "active"
    PENDING = "pending"


class Outcome(Enum):
    PASSED = "passed"
    FAILED = "failed"
    GAP = "gap"
    EXPECTED_FAILURE = "expected_failure"
    UNEXPECTED_PASS = "unexpected_pass"


class ScenarioFailure(AssertionError):
    """Raised when a scenario has at least one hard failure."""

    def __init__(self, message: str, report: "ComplianceReport"):
        super().__init__(message)
        self.report = report


@dataclass
class EndpointExpectation:
    """
    What one endpoint must do.

    Exactly one of ``base_url`` (gateway or direct service) and
    ``mesh_service`` (invoked through the sidecar) must be set.
    ``expected_status`` of None accepts any 2xx or 3xx status.
    """

    name: str
    method: str = "GET"
    path: str = "/"
    base_url: Optional[str] = None
    mesh_service: Optional[str] = None
    critical: bool = True
    expected_status: Optional[Sequence[int]] = None
    required_fields: Sequence[str] = ()
    array_field: str = "data"
    count_field: Optional[str] = None
    required_headers: Sequence[str] = ()
    content_type: Optional[str] = None
    forbidden_substrings: Sequence[str] = ()
    response_schema: Optional[Dict[str, Any]] = None
    body: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)
    description: str = ""
    phase: ScenarioPhase = ScenarioPhase.ACTIVE

    def __post_init__(self):
        if (self.base_url is None) == (self.mesh_service is None):
            raise ValueError(
                f"Endpoint '{self.name}' needs exactly one of base_url or mesh_service"
            )
        self.method = self.method.upper()
        if self.expected_status is not None:
            self.expected_status = tuple(self.expected_status)
        self.required_fields = tuple(self.required_fields)
        self.required_headers = tuple(self.required_headers)
        self.forbidden_substrings = tuple(self.forbidden_substrings)
        if isinstance(self.phase, str):
            self.phase = ScenarioPhase(self.phase)

    @property
    def url(self) -> str:
        if self.base_url is None:
            return f"mesh://{self.mesh_service}/{self.path.lstrip('/')}"
        return f"{self.base_url.rstrip('/')}/{self.path.lstrip('/')}"

    @property
    def target(self) -> str:
        return f"{self.method} {self.url}"

    def status_matches(self, status_code: int) -> bool:
        if self.expected_status is None:
            return 200 <= status_code < 400
        return status_code in self.expected_status

    def describe_expected_status(self) -> str:
        if self.expected_status is None:
            return "2xx/3xx"
        return " or ".join(str(code) for code in self.expected_status)


@dataclass
class ProbeOutcome:
    """Classification of one probe against its expectation."""

    expectation: EndpointExpectation
    outcome: Outcome
    result: Optional[ProbeResult] = None
    problems: List[str] = field(default_factory=list)
    missing_fields: List[str] = field(default_factory=list)

    @property
    def met(self) -> bool:
        """True when the endpoint behaved as expected."""
        return not self.problems

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.problems) if self.problems else None

    def describe(self) -> str:
        exp = self.expectation
        lines = [f"[{self.outcome.value}] {exp.name}: {exp.target}"]
        if self.problems:
            actual = "no response"
            if self.result is not None and self.result.reachable:
                actual = str(self.result.status_code)
            lines.append(f"  expected status {exp.describe_expected_status()}, actual {actual}")
            for problem in self.problems:
                lines.append(f"  - {problem}")
            if self.result is not None and self.result.body:
                lines.append(f"  body: {self.result.excerpt()}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.expectation.name,
            "target": self.expectation.target,
            "outcome": self.outcome.value,
            "critical": self.expectation.critical,
            "status_code": self.result.status_code if self.result else None,
            "problems": list(self.problems),
            "missing_fields": list(self.missing_fields),
        }


def check_result(expectation: EndpointExpectation, result: ProbeResult) -> List[str]:
    """Every way ``result`` falls short of ``expectation``; empty when it meets it."""
    if not result.reachable:
        return [f"transport error: {result.error}"]

    problems = []
    status_ok = expectation.status_matches(result.status_code)
    if not status_ok:
        problems.append(
            f"expected status {expectation.describe_expected_status()}, got {result.status_code}"
        )

    body_text = result.text.lower()
    for marker in expectation.forbidden_substrings:
        if marker.lower() in body_text:
            problems.append(f"response contains forbidden marker '{marker}'")

    # Shape checks only make sense on a successful answer
    if not (status_ok and result.is_success):
        return problems

    if expectation.content_type:
        actual_type = result.header("Content-Type") or ""
        if not actual_type.lower().startswith(expectation.content_type.lower()):
            problems.append(
                f"expected Content-Type {expectation.content_type}, got {actual_type or 'none'}"
            )

    needs_json = expectation.required_fields or expectation.count_field or expectation.response_schema
    if needs_json and result.json_error:
        problems.append(f"response body is not JSON: {result.json_error}")
        return problems

    missing = result.missing_fields(expectation.required_fields)
    if missing:
        problems.append(f"missing required fields: {', '.join(missing)}")

    for header in expectation.required_headers:
        value = result.header(header)
        if value is None or not value.strip():
            problems.append(f"missing required header {header}")

    if expectation.count_field:
        items = result.json_array(expectation.array_field)
        if items is None:
            problems.append(f"field '{expectation.array_field}' is not an array")
        else:
            count = result.json.get(expectation.count_field)
            if count != len(items):
                problems.append(
                    f"'{expectation.count_field}' is {count!r} but "
                    f"'{expectation.array_field}' has {len(items)} items"
                )

    if expectation.response_schema is not None:
        try:
            _schema_validator.validate(result.json, expectation.response_schema, "response body")
        except SchemaValidationError as e:
            problems.extend(e.errors or [str(e)])

    return problems


def evaluate(expectation: EndpointExpectation, result: ProbeResult) -> ProbeOutcome:
    """Classify ``result`` according to the expectation's criticality and phase."""
    problems = check_result(expectation, result)
    missing = []
    if result.is_success and expectation.required_fields and not result.json_error:
        missing = result.missing_fields(expectation.required_fields)

    met = not problems
    if expectation.phase is ScenarioPhase.PENDING:
        outcome = Outcome.UNEXPECTED_PASS if met else Outcome.EXPECTED_FAILURE
    elif met:
        outcome = Outcome.PASSED
    elif expectation.critical:
        outcome = Outcome.FAILED
    else:
        outcome = Outcome.GAP

    return ProbeOutcome(
        expectation=expectation,
        outcome=outcome,
        result=result,
        problems=problems,
        missing_fields=missing,
    )


@dataclass
class ComplianceReport:
    """
    Outcomes of one scenario run.

    ``passing`` and ``failing`` partition ``outcomes`` by whether each
    endpoint met its expectation, so len(passing) + len(failing) == total.
    ``hard_failures`` is the subset that fails the enclosing test.
    """

    name: str
    outcomes: List[ProbeOutcome] = field(default_factory=list)
    strict_pending: bool = False

    def add(self, outcome: ProbeOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def passing(self) -> List[ProbeOutcome]:
        return [o for o in self.outcomes if o.met]

    @property
    def failing(self) -> List[ProbeOutcome]:
        return [o for o in self.outcomes if not o.met]

    @property
    def hard_failures(self) -> List[ProbeOutcome]:
        hard = [Outcome.FAILED]
        if self.strict_pending:
            hard.append(Outcome.UNEXPECTED_PASS)
        return [o for o in self.outcomes if o.outcome in hard]

    @property
    def gaps(self) -> List[ProbeOutcome]:
        return self._with(Outcome.GAP)

    @property
    def expected_failures(self) -> List[ProbeOutcome]:
        return self._with(Outcome.EXPECTED_FAILURE)

    @property
    def unexpected_passes(self) -> List[ProbeOutcome]:
        return self._with(Outcome.UNEXPECTED_PASS)

    def _with(self, outcome: Outcome) -> List[ProbeOutcome]:
        return [o for o in self.outcomes if o.outcome is outcome]

    @property
    def compliance_percentage(self) -> float:
        if not self.outcomes:
            return 100.0
        return len(self.passing) * 100.0 / self.total

    @property
    def ok(self) -> bool:
        return not self.hard_failures

    def summary(self) -> str:
        return (
            f"{self.name}: {len(self.passing)}/{self.total} endpoints compliant "
            f"({self.compliance_percentage:.1f}%), {len(self.hard_failures)} failure(s), "
            f"{len(self.gaps)} gap(s), {len(self.expected_failures)} expected failure(s), "
            f"{len(self.unexpected_passes)} unexpected pass(es)"
        )

    def details(self) -> str:
        lines = [self.summary()]
        lines.extend(o.describe() for o in self.outcomes if not o.met or o.outcome is Outcome.UNEXPECTED_PASS)
        return "\n".join(lines)

    def raise_for_failures(self) -> None:
        """Raise ScenarioFailure listing expected vs actual for every hard failure."""
        if self.ok:
            return
        lines = [self.summary()]
        lines.extend(o.describe() for o in self.hard_failures)
        raise ScenarioFailure("\n".join(lines), self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "total": self.total,
            "passing": [o.expectation.name for o in self.passing],
            "failing": [
                {"name": o.expectation.name, "error": o.error, "missing_fields": o.missing_fields}
                for o in self.failing
            ],
            "compliance_percentage": round(self.compliance_percentage, 2),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class Scenario:
    """A named group of endpoint expectations run behind one readiness check."""

    name: str
    endpoints: List[EndpointExpectation] = field(default_factory=list)
    description: str = ""
    critical_containers: Optional[Sequence[str]] = None


class ScenarioRunner:
    """
    Runs scenarios through the readiness gate and the probe clients.

    Args:
        gate: Readiness gate consulted before the first probe of every run
        probe_client: Client for gateway and direct service endpoints
        mesh_client: Client for endpoints addressed by mesh service name
        audit_logger: Optional ProbeAuditLogger receiving every outcome
        strict_pending: Treat unexpected passes of pending endpoints as failures
    """

    def __init__(
        self,
        gate: ReadinessGate,
        probe_client: ProbeClient,
        mesh_client: Optional[MeshClient] = None,
        audit_logger=None,
        strict_pending: bool = False,
    ):
        if gate is None:
            raise ValueError("ScenarioRunner requires a readiness gate")
        self.gate = gate
        self.probe_client = probe_client
        self.mesh_client = mesh_client
        self.audit_logger = audit_logger
        self.strict_pending = strict_pending

    def run(self, scenario: Scenario) -> ComplianceReport:
        """
        Run every endpoint of ``scenario`` once, in order.

        Raises:
            EnvironmentNotReady: before any probe when a critical container is down
        """
        self.gate.ensure_ready(scenario.critical_containers)

        logger.info(f"Running scenario '{scenario.name}' ({len(scenario.endpoints)} endpoint(s))")
        report = ComplianceReport(scenario.name, strict_pending=self.strict_pending)
        for expectation in scenario.endpoints:
            report.add(self._run_endpoint(scenario.name, expectation))

        log = logger.error if report.hard_failures else logger.info
        log(report.summary())
        return report

    def run_and_assert(self, scenario: Scenario) -> ComplianceReport:
        report = self.run(scenario)
        report.raise_for_failures()
        return report

    def _probe(self, expectation: EndpointExpectation) -> ProbeResult:
        if expectation.mesh_service is not None:
            if self.mesh_client is None:
                raise ValueError(
                    f"Endpoint '{expectation.name}' targets the mesh but no mesh client is configured"
                )
            return self.mesh_client.invoke(
                expectation.mesh_service,
                expectation.method,
                expectation.path,
                body=expectation.body,
                headers=expectation.headers,
            )
        return self.probe_client.request(
            expectation.method, expectation.url, body=expectation.body, headers=expectation.headers
        )

    def _run_endpoint(self, scenario_name: str, expectation: EndpointExpectation) -> ProbeOutcome:
        result = self._probe(expectation)
        outcome = evaluate(expectation, result)
        _log_outcome(outcome)
        if self.audit_logger is not None:
            self.audit_logger.log_probe(scenario_name, outcome)
        return outcome


def _log_outcome(outcome: ProbeOutcome) -> None:
    name = outcome.expectation.name
    if outcome.outcome is Outcome.PASSED:
        logger.info(f"{name}: passed ({outcome.result.describe()})")
    elif outcome.outcome is Outcome.FAILED:
        logger.error(f"{name}: FAILED - {outcome.error}")
    elif outcome.outcome is Outcome.GAP:
        logger.warning(f"{name}: non-critical gap - {outcome.error}")
    elif outcome.outcome is Outcome.EXPECTED_FAILURE:
        logger.warning(f"{name}: pending, still failing as expected - {outcome.error}")
    else:
        logger.warning(f"{name}: pending endpoint now passes; mark it active")
