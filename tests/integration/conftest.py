"""
Integration test configuration and fixtures.

These tests run against a deployed platform. Every test requests
``ready_environment`` (directly or through a fixture below), so a stopped or
missing critical container skips the test instead of failing it.
"""

from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent.parent


def pytest_collection_modifyitems(config, items):
    """Automatically mark integration tests."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.live)


@pytest.fixture
def public_gateway(meshcheck_config, ready_environment):
    return meshcheck_config.public_gateway_url.rstrip("/")


@pytest.fixture
def admin_gateway(meshcheck_config, ready_environment):
    return meshcheck_config.admin_gateway_url.rstrip("/")


@pytest.fixture
def content_service(meshcheck_config, ready_environment):
    return meshcheck_config.service("content")


@pytest.fixture(scope="session")
def scenario_dir():
    return PROJECT_ROOT / "config" / "scenarios"


@pytest.fixture(scope="session")
def contract_dir(meshcheck_config):
    path = Path(meshcheck_config.openapi_dir)
    return path if path.is_absolute() else PROJECT_ROOT / path
