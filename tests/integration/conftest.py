"""
Fixtures for integration tests.

The RabbitMQ fixtures use the server at ``RABBITMQ_URL`` when that variable
is set, and otherwise start a container through testcontainers.
If neither is available, the RabbitMQ tests are skipped.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from typing import Any

import pytest

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for integration tests."""
    config.addinivalue_line(
        "markers", "integration: marks tests that run the producer and consumer together"
    )
    config.addinivalue_line("markers", "rabbitmq: marks tests that require RabbitMQ")


# ============================================================================
# Infrastructure Detection
# ============================================================================

RABBITMQ_URL = os.environ.get("RABBITMQ_URL")

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.core.container import DockerContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    DockerContainer = None  # type: ignore[assignment, misc]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    import subprocess

    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return False


DOCKER_AVAILABLE = RABBITMQ_URL is None and is_docker_available()

skip_if_no_rabbitmq_infra = pytest.mark.skipif(
    RABBITMQ_URL is None and not (TESTCONTAINERS_AVAILABLE and DOCKER_AVAILABLE),
    reason="RabbitMQ not available (set RABBITMQ_URL, or install testcontainers and run docker)",
)


# ============================================================================
# RabbitMQ Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def rabbitmq_container() -> Generator[Any, None, None]:
    """
    Start a RabbitMQ container shared by the whole session.

    Yields None when RABBITMQ_URL points at an existing server.
    """
    if RABBITMQ_URL is not None:
        yield None
        return
    if not TESTCONTAINERS_AVAILABLE or not DOCKER_AVAILABLE:
        pytest.skip("RabbitMQ testcontainer not available")

    from testcontainers.core.waiting_utils import wait_for_logs

    container = DockerContainer("rabbitmq:3-management")
    container.with_exposed_ports(5672)
    container.with_env("RABBITMQ_DEFAULT_USER", "guest")
    container.with_env("RABBITMQ_DEFAULT_PASS", "guest")
    container.start()

    wait_for_logs(container, "started TCP listener on", timeout=60)

    yield container

    container.stop()


@pytest.fixture(scope="session")
def rabbitmq_connection_url(rabbitmq_container: Any) -> str:
    """AMQP URL of the server under test."""
    if rabbitmq_container is None:
        assert RABBITMQ_URL is not None
        return RABBITMQ_URL
    host = rabbitmq_container.get_container_host_ip()
    port = rabbitmq_container.get_exposed_port(5672)
    return f"amqp://guest:guest@{host}:{port}/"
