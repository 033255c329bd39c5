"""
Pytest configuration and shared fixtures for meshcheck tests.

This module provides common test fixtures and configuration for both
unit and integration tests.
"""

import tempfile
from pathlib import Path

import pytest

pytest_plugins = ["meshcheck.pytest_plugin", "pytester"]

PROJECT_ROOT = Path(__file__).parent.parent


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def project_root():
    return PROJECT_ROOT


@pytest.fixture(autouse=True)
def _stable_env(request, monkeypatch):
    """
    Automatically set stable environment variables for unit tests.

    Integration tests keep the caller's environment so they can point at a
    real deployment.
    """
    is_integration_test = any(
        mark.name == "integration" for mark in request.node.iter_markers()
    )
    if is_integration_test:
        return

    for name in (
        "CRITICAL_CONTAINERS",
        "STRICT_PENDING",
        "AUDIT_ENABLED",
        "AUDIT_SENSITIVE_HEADERS",
        "PUBLIC_GATEWAY_URL",
        "ADMIN_GATEWAY_URL",
        "CONTENT_URL",
        "CONTENT_APP_ID",
        "MESH_HOST",
        "MESH_HTTP_PORT",
        "PROBE_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MESHCHECK_ENVIRONMENT", "development")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")


@pytest.fixture(scope="session")
def mock_mesh_server():
    """One mock gateway plus sidecar server for the whole session."""
    from tests.mock_mesh_server import MockMeshServer

    server = MockMeshServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def mesh_server(mock_mesh_server):
    """The shared mock server with its recorded requests and state cleared."""
    mock_mesh_server.reset()
    return mock_mesh_server


@pytest.fixture
def all_up_inspector():
    """Process inspector reporting every default critical container as up."""
    from meshcheck.config import DEFAULT_CRITICAL_CONTAINERS
    from meshcheck.process_inspector import StaticProcessInspector

    return StaticProcessInspector(
        {name: "Up 5 minutes" for name in DEFAULT_CRITICAL_CONTAINERS}
    )


@pytest.fixture
def ready_gate(all_up_inspector):
    """Readiness gate that passes."""
    from meshcheck.config import DEFAULT_CRITICAL_CONTAINERS
    from meshcheck.readiness import ReadinessGate

    return ReadinessGate(all_up_inspector, DEFAULT_CRITICAL_CONTAINERS)


@pytest.fixture
def local_probe_client():
    from meshcheck.probe import ProbeClient

    client = ProbeClient(timeout=2)
    yield client
    client.close()


@pytest.fixture
def sample_scenario_yaml():
    """Provide a scenario file aimed at the public gateway."""
    return """
scenarios:
  - name: public-routing
    description: Public gateway routes
    endpoints:
      - name: news
        method: GET
        path: /api/news
        target: public-gateway
        required_fields: [data, pagination]
        required_headers: [X-Correlation-ID]
        count_field: count
      - name: unknown-route
        path: /api/does-not-exist
        target: public-gateway
        critical: false
        expected_status: 404
        forbidden_substrings: []
"""
