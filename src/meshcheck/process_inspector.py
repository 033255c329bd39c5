"""
Container runtime inspection.

ProcessInspector is the capability the readiness gate and the deployment
diagnostics depend on. CliProcessInspector shells out to a Podman-compatible
CLI; StaticProcessInspector answers from a fixed table and is used to test
the layers above without a runtime.

Inspectors never decide pass/fail. They return ContainerStatus values and
raise RuntimeUnavailableError only when the runtime itself cannot be queried.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .execution import ExecutionResult, execute_with_timeout

logger = logging.getLogger(__name__)

LISTING_FORMAT = "{{.Names}}\t{{.Status}}"
MOUNTS_FORMAT = "{{range .Mounts}}{{.Source}}:{{.Destination}}:{{.Type}}\n{{end}}"
COMMAND_FORMAT = "{{.Config.Cmd}}"


class RuntimeUnavailableError(Exception):
    """Raised when the container runtime cannot be invoked or queried."""

    pass


class ContainerState(Enum):
    UP = "up"
    EXITED = "exited"
    ABSENT = "absent"


@dataclass(frozen=True)
class ContainerStatus:
    """State of one named container as reported by the runtime."""

    name: str
    state: ContainerState
    status_text: str = ""

    @property
    def running(self) -> bool:
        return self.state is ContainerState.UP

    @classmethod
    def from_status_text(cls, name: str, status_text: str) -> "ContainerStatus":
        """Map a runtime status string ("Up 3 minutes", "Exited (1) ...") to a state."""
        text = status_text.strip()
        state = ContainerState.UP if text.lower().startswith("up") else ContainerState.EXITED
        return cls(name=name, state=state, status_text=text)

    @classmethod
    def absent(cls, name: str) -> "ContainerStatus":
        return cls(name=name, state=ContainerState.ABSENT, status_text="")


def parse_container_listing(output: str) -> List[ContainerStatus]:
    """Parse tab separated ``name<TAB>status`` lines into statuses.

    Blank lines are ignored. A line without a status column is treated as an
    exited container so it never satisfies a readiness check.
    """
    statuses = []
    for line in output.splitlines():
        if not line.strip():
            continue
        name, _, status_text = line.partition("\t")
        statuses.append(ContainerStatus.from_status_text(name.strip(), status_text))
    return statuses


class ProcessInspector(ABC):
    """Read-only view of the container runtime."""

    @abstractmethod
    def list_containers(self, name_filter: str, include_stopped: bool = True) -> List[ContainerStatus]:
        """Containers whose name matches ``name_filter``. Empty list when none match."""

    @abstractmethod
    def exec_in_container(self, container: str, command: Sequence[str]) -> ExecutionResult:
        """Run a command inside a container's namespace."""

    @abstractmethod
    def inspect_container(self, container: str, template: str) -> Optional[str]:
        """Render a Go template against the container; None if the container is unknown."""

    def check_port(self, container: str, host: str, port: int) -> bool:
        """True when ``host:port`` accepts TCP connections from inside ``container``."""
        result = self.exec_in_container(container, ["nc", "-z", host, str(port)])
        return result.success

    def container_mounts(self, container: str) -> List[str]:
        """Mounts as ``source:destination:type`` entries."""
        output = self.inspect_container(container, MOUNTS_FORMAT)
        if output is None:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def container_command(self, container: str) -> str:
        return (self.inspect_container(container, COMMAND_FORMAT) or "").strip()


class CliProcessInspector(ProcessInspector):
    """Inspector backed by a Podman-compatible command line."""

    def __init__(self, runtime: str = "podman", timeout: float = 10):
        self.runtime = runtime
        self.timeout = timeout

    def list_containers(self, name_filter: str, include_stopped: bool = True) -> List[ContainerStatus]:
        command = [self.runtime, "ps"]
        if include_stopped:
            command.append("--all")
        command += ["--filter", f"name={name_filter}", "--format", LISTING_FORMAT]

        result = execute_with_timeout(command, timeout_seconds=self.timeout)
        if not result.success:
            raise RuntimeUnavailableError(f"Cannot list containers: {result.describe()}")

        statuses = parse_container_listing(result.stdout)
        logger.debug(f"{len(statuses)} container(s) match filter '{name_filter}'")
        return statuses

    def exec_in_container(self, container: str, command: Sequence[str]) -> ExecutionResult:
        result = execute_with_timeout(
            [self.runtime, "exec", container, *command], timeout_seconds=self.timeout
        )
        if result.launch_failed:
            raise RuntimeUnavailableError(result.stderr)
        return result

    def inspect_container(self, container: str, template: str) -> Optional[str]:
        result = execute_with_timeout(
            [self.runtime, "inspect", container, "--format", template],
            timeout_seconds=self.timeout,
        )
        if result.launch_failed or result.timed_out:
            raise RuntimeUnavailableError(f"Cannot inspect {container}: {result.describe()}")
        if not result.success:
            logger.debug(f"Inspect of {container} failed: {result.describe()}")
            return None
        return result.stdout

    def __repr__(self) -> str:
        return f"CliProcessInspector(runtime={self.runtime!r}, timeout={self.timeout})"


class StaticProcessInspector(ProcessInspector):
    """
    Inspector answering from fixed tables.

    ``containers`` maps container names to runtime status text. Every call is
    appended to ``calls`` so tests can assert what was (or was not) queried.
    Setting ``available=False`` makes every query raise RuntimeUnavailableError.
    """

    def __init__(
        self,
        containers: Optional[Mapping[str, str]] = None,
        open_ports: Sequence[Tuple[str, str, int]] = (),
        mounts: Optional[Mapping[str, Sequence[str]]] = None,
        commands: Optional[Mapping[str, str]] = None,
        available: bool = True,
    ):
        self.containers: Dict[str, str] = dict(containers or {})
        self.open_ports = set(open_ports)
        self.mounts = {name: list(entries) for name, entries in (mounts or {}).items()}
        self.commands = dict(commands or {})
        self.available = available
        self.calls: List[Tuple[str, ...]] = []

    def _ensure_available(self) -> None:
        if not self.available:
            raise RuntimeUnavailableError("Container runtime is not available")

    def list_containers(self, name_filter: str, include_stopped: bool = True) -> List[ContainerStatus]:
        self.calls.append(("list", name_filter))
        self._ensure_available()
        statuses = [
            ContainerStatus.from_status_text(name, status_text)
            for name, status_text in self.containers.items()
            if name_filter in name
        ]
        if not include_stopped:
            statuses = [status for status in statuses if status.running]
        return statuses

    def exec_in_container(self, container: str, command: Sequence[str]) -> ExecutionResult:
        self.calls.append(("exec", container, *command))
        self._ensure_available()
        ok = False
        if list(command[:2]) == ["nc", "-z"] and len(command) == 4:
            ok = (container, command[2], int(command[3])) in self.open_ports
        return ExecutionResult(
            command=list(command),
            success=ok,
            exit_code=0 if ok else 1,
            stdout="",
            stderr="",
            elapsed_ms=0,
            timed_out=False,
        )

    def inspect_container(self, container: str, template: str) -> Optional[str]:
        self.calls.append(("inspect", container, template))
        self._ensure_available()
        if container not in self.containers:
            return None
        if template == MOUNTS_FORMAT:
            return "".join(f"{entry}\n" for entry in self.mounts.get(container, []))
        if template == COMMAND_FORMAT:
            return self.commands.get(container, "")
        return ""
