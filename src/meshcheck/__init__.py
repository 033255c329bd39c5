"""
meshcheck - acceptance testing for sidecar-mesh microservice platforms.

The package is organised leaves first:

- process_inspector: container runtime queries
- readiness: the preflight gate that skips suites on a half-up environment
- probe: single-shot HTTP probes
- mesh: sidecar URL conventions (invoke, state, pub/sub, secrets)
- scenarios: endpoint expectations and compliance reporting
- contracts: OpenAPI loading and contract compliance
- stack_outputs: infrastructure stack output validation
"""

__version__ = "0.1.0"

from .config import Config, ServiceDescriptor
from .mesh import MeshClient, MeshError
from .probe import ProbeClient, ProbeRequest, ProbeResult
from .process_inspector import (
    CliProcessInspector,
    ContainerState,
    ContainerStatus,
    ProcessInspector,
    RuntimeUnavailableError,
    StaticProcessInspector,
)
from .readiness import EnvironmentNotReady, ReadinessGate, ReadinessReport
from .scenarios import (
    ComplianceReport,
    EndpointExpectation,
    Outcome,
    Scenario,
    ScenarioFailure,
    ScenarioPhase,
    ScenarioRunner,
)
from .stack_outputs import (
    BoolEquals,
    Contains,
    Exact,
    NonEmpty,
    StackOutputMismatch,
    StackOutputValidator,
)

__all__ = [
    "BoolEquals",
    "CliProcessInspector",
    "ComplianceReport",
    "Config",
    "ContainerState",
    "ContainerStatus",
    "Contains",
    "EndpointExpectation",
    "EnvironmentNotReady",
    "Exact",
    "MeshClient",
    "MeshError",
    "NonEmpty",
    "Outcome",
    "ProbeClient",
    "ProbeRequest",
    "ProbeResult",
    "ProcessInspector",
    "ReadinessGate",
    "ReadinessReport",
    "RuntimeUnavailableError",
    "Scenario",
    "ScenarioFailure",
    "ScenarioPhase",
    "ScenarioRunner",
    "ServiceDescriptor",
    "StackOutputMismatch",
    "StackOutputValidator",
    "StaticProcessInspector",
]
