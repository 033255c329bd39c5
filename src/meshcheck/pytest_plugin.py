"""
pytest integration.

Enable it from a conftest.py:

    pytest_plugins = ["meshcheck.pytest_plugin"]

It provides fixtures for the readiness gate, the probe and mesh clients, the
scenario runner and the stack output validator, and two markers:

- ``@pytest.mark.pending("reason")``: behavior expected to fail until it is
  implemented; runs as a non-strict xfail (strict when STRICT_PENDING is set)
- ``@pytest.mark.critical_containers("postgresql", ...)``: containers the
  readiness gate checks for this test instead of the configured list

EnvironmentNotReady raised anywhere in a test body is reported as a skip.
"""

import logging

import pytest

from .audit import get_audit_logger
from .config import Config
from .mesh import MeshClient
from .probe import ProbeClient
from .process_inspector import CliProcessInspector
from .readiness import EnvironmentNotReady, ReadinessGate
from .scenarios import ScenarioRunner
from .stack_outputs import PulumiCliHarness, StackOutputValidator

logger = logging.getLogger(__name__)


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "pending(reason): behavior that is expected to fail until implemented"
    )
    config.addinivalue_line(
        "markers", "critical_containers(*names): override the readiness gate container list"
    )


def pytest_collection_modifyitems(config, items):
    """Turn pending markers into xfail markers."""
    strict = None
    for item in items:
        marker = item.get_closest_marker("pending")
        if marker is None:
            continue
        if strict is None:
            strict = Config.load_runtime_config().strict_pending
        reason = marker.args[0] if marker.args else marker.kwargs.get("reason", "not implemented yet")
        item.add_marker(pytest.mark.xfail(reason=f"pending: {reason}", strict=strict))


@pytest.hookimpl(wrapper=True)
def pytest_runtest_call(item):
    try:
        return (yield)
    except EnvironmentNotReady as exc:
        pytest.skip(exc.reason)


@pytest.fixture(scope="session")
def meshcheck_config():
    """Configuration for this test session."""
    config = Config.load_runtime_config()
    errors = config.validate()
    if errors:
        pytest.fail("Invalid meshcheck configuration: " + "; ".join(errors))
    logger.debug(f"meshcheck configuration: {config.get_startup_summary()}")
    return config


@pytest.fixture(scope="session")
def process_inspector(meshcheck_config):
    return CliProcessInspector(
        runtime=meshcheck_config.container_runtime,
        timeout=meshcheck_config.runtime_timeout,
    )


@pytest.fixture
def readiness_gate(request, meshcheck_config, process_inspector):
    marker = request.node.get_closest_marker("critical_containers")
    names = marker.args if marker is not None and marker.args else meshcheck_config.critical_containers
    return ReadinessGate(process_inspector, names)


@pytest.fixture
def ready_environment(readiness_gate):
    """Skip the requesting test unless every critical container is up."""
    try:
        return readiness_gate.ensure_ready()
    except EnvironmentNotReady as exc:
        pytest.skip(exc.reason)


@pytest.fixture(scope="session")
def probe_client(meshcheck_config):
    client = ProbeClient(timeout=meshcheck_config.probe_timeout)
    yield client
    client.close()


@pytest.fixture(scope="session")
def mesh_client(meshcheck_config, probe_client):
    return MeshClient(
        meshcheck_config.mesh_app_id,
        host=meshcheck_config.mesh_host,
        port=meshcheck_config.mesh_http_port,
        probe_client=probe_client,
    )


@pytest.fixture(scope="session")
def probe_audit_logger(meshcheck_config):
    if not meshcheck_config.audit_enabled:
        return None
    return get_audit_logger(meshcheck_config.audit_log_path)


@pytest.fixture
def scenario_runner(meshcheck_config, readiness_gate, probe_client, mesh_client, probe_audit_logger):
    return ScenarioRunner(
        readiness_gate,
        probe_client,
        mesh_client=mesh_client,
        audit_logger=probe_audit_logger,
        strict_pending=meshcheck_config.strict_pending,
    )


@pytest.fixture(scope="session")
def stack_output_validator(meshcheck_config):
    harness = PulumiCliHarness(
        meshcheck_config.pulumi_work_dir,
        stack_template=meshcheck_config.pulumi_stack_template,
        timeout=meshcheck_config.pulumi_timeout,
    )
    return StackOutputValidator(harness)
