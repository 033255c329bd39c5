"""
Environment readiness gate.

A scenario is only meaningful when every critical container is up. The gate
queries the process inspector once per critical name and, when anything is
missing or stopped, raises EnvironmentNotReady. Test integrations turn that
into a skip, so an unavailable environment never shows up as a test failure.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .process_inspector import (
    ContainerStatus,
    ProcessInspector,
    RuntimeUnavailableError,
)

logger = logging.getLogger(__name__)

NOT_READY_SUFFIX = "environment not ready for integration testing"

DEFAULT_FORBIDDEN_MOUNT_PREFIXES = ("/tmp/dapr-config", "/tmp/dapr-minimal")
DEFAULT_REQUIRED_SIDECAR_FLAGS = ("--resources-path", "--config")


class EnvironmentNotReady(Exception):
    """Raised when prerequisite containers are not observably running."""

    def __init__(self, reason: str, missing: Sequence[str] = ()):
        super().__init__(reason)
        self.reason = reason
        self.missing = list(missing)


@dataclass
class ReadinessReport:
    """Result of one readiness check."""

    ready: bool
    statuses: Dict[str, ContainerStatus] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    reason: str = ""
    inspectable: bool = True


class ReadinessGate:
    """Preflight check over a fixed list of critical container names."""

    def __init__(self, inspector: ProcessInspector, critical_containers: Sequence[str]):
        if not critical_containers:
            raise ValueError("ReadinessGate needs at least one critical container")
        self.inspector = inspector
        self.critical_containers = tuple(critical_containers)

    def check(self, critical_names: Optional[Sequence[str]] = None) -> ReadinessReport:
        """Query every critical container without raising.

        A name is satisfied only by a container with exactly that name in the
        UP state. Runtime name filters match substrings, so ``content-api``
        would otherwise be satisfied by ``content-api-sidecar``.

        Raises:
            ValueError: If ``critical_names`` is given but empty
        """
        if critical_names is None:
            names = self.critical_containers
        else:
            names = tuple(critical_names)
            if not names:
                raise ValueError("Readiness check needs at least one critical container")
        statuses: Dict[str, ContainerStatus] = {}

        for name in names:
            try:
                matches = self.inspector.list_containers(name)
            except RuntimeUnavailableError as e:
                reason = f"container runtime not inspectable ({e}) - {NOT_READY_SUFFIX}"
                return ReadinessReport(
                    ready=False,
                    statuses=statuses,
                    missing=[n for n in names if n not in statuses or not statuses[n].running],
                    reason=reason,
                    inspectable=False,
                )

            exact = [status for status in matches if status.name == name]
            running = [status for status in exact if status.running]
            if running:
                statuses[name] = running[0]
            elif exact:
                statuses[name] = exact[0]
            else:
                statuses[name] = ContainerStatus.absent(name)

        missing = [name for name, status in statuses.items() if not status.running]
        if not missing:
            return ReadinessReport(ready=True, statuses=statuses)

        return ReadinessReport(
            ready=False,
            statuses=statuses,
            missing=missing,
            reason=_not_running_reason(missing, statuses),
        )

    def ensure_ready(self, critical_names: Optional[Sequence[str]] = None) -> ReadinessReport:
        """Return the report when every critical container is up.

        Raises:
            EnvironmentNotReady: naming every missing or stopped container, or
                when the runtime cannot be queried at all
        """
        report = self.check(critical_names)
        if not report.ready:
            logger.warning(report.reason)
            raise EnvironmentNotReady(report.reason, report.missing)

        logger.info(f"Readiness gate passed: {len(report.statuses)} critical container(s) up")
        return report


def _not_running_reason(missing: List[str], statuses: Dict[str, ContainerStatus]) -> str:
    details = []
    for name in missing:
        status = statuses[name]
        if status.status_text:
            details.append(f"{name} ({status.status_text})")
        else:
            details.append(name)

    if len(details) == 1:
        return f"critical container {details[0]} not running - {NOT_READY_SUFFIX}"
    return f"critical containers {', '.join(details)} not running - {NOT_READY_SUFFIX}"


def diagnose_sidecars(
    inspector: ProcessInspector,
    sidecars: Sequence[str],
    forbidden_mount_prefixes: Sequence[str] = DEFAULT_FORBIDDEN_MOUNT_PREFIXES,
    required_config_path: Optional[str] = None,
    required_flags: Sequence[str] = DEFAULT_REQUIRED_SIDECAR_FLAGS,
) -> List[str]:
    """
    Report deployment problems for sidecar containers.

    Checks, per sidecar: that it exists and is running, that it does not
    mount throwaway configuration from temporary directories, that it mounts
    the project configuration (when ``required_config_path`` is given), and
    that its command line passes the resource and config flags.

    Returns:
        List of human readable issues. Empty when every sidecar looks healthy.
    """
    issues = []

    for sidecar in sidecars:
        exact = [s for s in inspector.list_containers(sidecar) if s.name == sidecar]
        if not exact:
            issues.append(f"{sidecar}: sidecar container missing")
            continue

        status = exact[0]
        if not status.running:
            issues.append(f"{sidecar}: sidecar exists but is not running ({status.status_text})")

        mounts = inspector.container_mounts(sidecar)
        for mount in mounts:
            source = mount.split(":", 1)[0]
            if any(source.startswith(prefix) for prefix in forbidden_mount_prefixes):
                issues.append(f"{sidecar}: mounts temporary configuration directory {source}")

        if required_config_path and not any(
            mount.split(":", 1)[0].startswith(required_config_path) for mount in mounts
        ):
            issues.append(
                f"{sidecar}: does not mount project configuration from {required_config_path}"
            )

        command = inspector.container_command(sidecar)
        for flag in required_flags:
            if flag not in command:
                issues.append(f"{sidecar}: launched without {flag}")

    for issue in issues:
        logger.warning(issue)
    return issues
