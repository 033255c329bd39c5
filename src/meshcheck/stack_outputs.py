"""
Infrastructure stack output validation.

A StackHarness produces the named outputs of a deployed stack (URLs,
endpoints, feature flags). StackOutputValidator checks them against matchers
keyed by output name, with per-environment conventions: development serves
from localhost without CDN or TLS, staging and production serve from the
hosted container-app domain with both enabled.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from .config import ENVIRONMENTS
from .execution import execute_with_timeout

logger = logging.getLogger(__name__)

HOSTED_DOMAIN = "azurecontainerapps.io"


class StackHarnessError(Exception):
    """Raised when the infrastructure harness cannot produce outputs."""

    pass


class StackOutputMismatch(AssertionError):
    """Raised when deployed outputs do not meet expectations."""

    def __init__(self, environment: str, problems: List[str]):
        self.environment = environment
        self.problems = list(problems)
        lines = [f"Stack outputs for {environment} do not match expectations:"]
        lines.extend(f"  - {problem}" for problem in problems)
        super().__init__("\n".join(lines))


class Matcher(ABC):
    """A predicate over one output value."""

    @abstractmethod
    def matches(self, value: Any) -> bool:
        ...

    @abstractmethod
    def describe(self) -> str:
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.describe()})"


class NonEmpty(Matcher):
    def matches(self, value: Any) -> bool:
        if value is None:
            return False
        if isinstance(value, (str, list, dict)):
            return len(value) > 0
        return True

    def describe(self) -> str:
        return "non-empty value"


class Exact(Matcher):
    def __init__(self, expected: Any):
        self.expected = expected

    def matches(self, value: Any) -> bool:
        return value == self.expected

    def describe(self) -> str:
        return f"exactly {self.expected!r}"


class Contains(Matcher):
    def __init__(self, substring: str):
        self.substring = substring

    def matches(self, value: Any) -> bool:
        return isinstance(value, str) and self.substring in value

    def describe(self) -> str:
        return f"string containing {self.substring!r}"


class BoolEquals(Matcher):
    """Boolean equality; accepts the "true"/"false" strings some harnesses emit."""

    def __init__(self, expected: bool):
        self.expected = expected

    def matches(self, value: Any) -> bool:
        if isinstance(value, str) and value.lower() in ("true", "false"):
            value = value.lower() == "true"
        return isinstance(value, bool) and value is self.expected

    def describe(self) -> str:
        return f"boolean {self.expected}"


class StackOutputs(Mapping[str, Any]):
    """Read-only view of one harness invocation's outputs."""

    def __init__(self, environment: str, values: Mapping[str, Any]):
        self.environment = environment
        self._values = dict(values)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"StackOutputs({self.environment}, keys={sorted(self._values)})"


class StackHarness(ABC):
    """Source of deployed stack outputs."""

    @abstractmethod
    def outputs(self, environment: str) -> StackOutputs:
        """Inspect an existing deployment."""

    def up(self, environment: str) -> StackOutputs:
        """Deploy, then inspect. Harnesses that cannot deploy only inspect."""
        return self.outputs(environment)


class PulumiCliHarness(StackHarness):
    """
    Harness backed by the ``pulumi`` CLI.

    Args:
        work_dir: Directory holding the Pulumi project
        stack_template: Stack name pattern, formatted with ``environment``
        binary: Pulumi executable
        timeout: Per-command timeout in seconds
    """

    def __init__(self, work_dir: str, stack_template: str = "{environment}",
                 binary: str = "pulumi", timeout: float = 300):
        self.work_dir = work_dir
        self.stack_template = stack_template
        self.binary = binary
        self.timeout = timeout

    def stack_name(self, environment: str) -> str:
        return self.stack_template.format(environment=environment)

    def _run(self, args: List[str]) -> str:
        if not os.path.isdir(self.work_dir):
            raise StackHarnessError(f"Pulumi work directory not found: {self.work_dir}")

        env = dict(os.environ)
        env.setdefault("PULUMI_SKIP_UPDATE_CHECK", "true")
        result = execute_with_timeout(
            [self.binary, *args, "--non-interactive"],
            timeout_seconds=self.timeout,
            cwd=self.work_dir,
            env=env,
        )
        if not result.success:
            raise StackHarnessError(result.describe())
        return result.stdout

    def outputs(self, environment: str) -> StackOutputs:
        stack = self.stack_name(environment)
        stdout = self._run(["stack", "output", "--json", "--show-secrets", "--stack", stack])
        try:
            values = json.loads(stdout or "{}")
        except json.JSONDecodeError as e:
            raise StackHarnessError(f"Stack {stack} outputs are not JSON: {e}")
        if not isinstance(values, dict):
            raise StackHarnessError(f"Stack {stack} outputs must be a JSON object")
        logger.info(f"Read {len(values)} output(s) from stack {stack}")
        return StackOutputs(environment, values)

    def up(self, environment: str) -> StackOutputs:
        stack = self.stack_name(environment)
        logger.info(f"Deploying stack {stack}")
        self._run(["up", "--yes", "--skip-preview", "--stack", stack])
        return self.outputs(environment)


class StaticStackHarness(StackHarness):
    """Harness answering from fixed per-environment outputs."""

    def __init__(self, outputs_by_environment: Mapping[str, Mapping[str, Any]]):
        self.outputs_by_environment = {env: dict(v) for env, v in outputs_by_environment.items()}
        self.invocations: List[str] = []

    def outputs(self, environment: str) -> StackOutputs:
        self.invocations.append(environment)
        if environment not in self.outputs_by_environment:
            raise StackHarnessError(f"No stack for environment {environment}")
        return StackOutputs(environment, self.outputs_by_environment[environment])


def check_environment(environment: str) -> None:
    if environment not in ENVIRONMENTS:
        raise ValueError(
            f"Unknown environment {environment!r}; expected one of {', '.join(ENVIRONMENTS)}"
        )


def environment_conventions(environment: str, url_output: str = "website_url") -> Dict[str, Matcher]:
    """Deployment conventions every stack of ``environment`` must follow."""
    check_environment(environment)
    if environment == "development":
        return {
            url_output: Contains("localhost"),
            "cdn_enabled": BoolEquals(False),
            "ssl_enabled": BoolEquals(False),
        }
    return {
        url_output: Contains(HOSTED_DOMAIN),
        "cdn_enabled": BoolEquals(True),
        "ssl_enabled": BoolEquals(True),
    }


def endpoint_key_variants(name: str) -> List[str]:
    return [f"{name}_endpoint", f"{name}_url", f"{name}Endpoint", f"{name}URL", name]


class StackOutputValidator:
    """Checks stack outputs against matchers."""

    def __init__(self, harness: StackHarness):
        self.harness = harness

    def _outputs(self, environment: str, deploy: bool) -> StackOutputs:
        check_environment(environment)
        return self.harness.up(environment) if deploy else self.harness.outputs(environment)

    def validate_deployment(
        self,
        environment: str,
        expected_outputs: Mapping[str, Matcher],
        deploy: bool = False,
    ) -> StackOutputs:
        """
        Check every expected output.

        Raises:
            ValueError: If ``environment`` is not a known environment
            StackHarnessError: If the harness cannot produce outputs
            StackOutputMismatch: listing every missing or mismatched output
        """
        outputs = self._outputs(environment, deploy)
        problems = []
        for key, matcher in expected_outputs.items():
            if key not in outputs:
                problems.append(f"{key}: missing (expected {matcher.describe()})")
            elif not matcher.matches(outputs[key]):
                problems.append(f"{key}: expected {matcher.describe()}, actual {outputs[key]!r}")

        if problems:
            for problem in problems:
                logger.error(f"[{environment}] {problem}")
            raise StackOutputMismatch(environment, problems)

        logger.info(f"[{environment}] {len(expected_outputs)} stack output(s) match")
        return outputs

    def validate_conventions(self, environment: str, url_output: str = "website_url",
                             deploy: bool = False) -> StackOutputs:
        return self.validate_deployment(environment, environment_conventions(environment, url_output), deploy)

    def validate_endpoints_present(
        self,
        environment: str,
        endpoints: Sequence[str],
        outputs: Optional[StackOutputs] = None,
    ) -> Dict[str, str]:
        """
        Find a non-empty output for each named endpoint under any naming variant.

        Returns:
            Mapping of endpoint name to the output key that satisfied it
        """
        outputs = outputs if outputs is not None else self._outputs(environment, deploy=False)
        found = {}
        problems = []
        for endpoint in endpoints:
            key = next(
                (k for k in endpoint_key_variants(endpoint) if NonEmpty().matches(outputs.get(k))),
                None,
            )
            if key is None:
                problems.append(
                    f"{endpoint}: no non-empty output among {', '.join(endpoint_key_variants(endpoint))}"
                )
            else:
                found[endpoint] = key

        if problems:
            raise StackOutputMismatch(environment, problems)
        return found
