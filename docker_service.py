"""
Docker Service Module - Main API Interface

Wires the default ContainerOrchestrator to the local Docker daemon and exposes
the public API used by the HTTP server.

Structure:
- models.py: container spec, handle, state and snapshot types
- runtime_client.py: RuntimeClient protocol and the docker-py implementation
- orchestrator.py: lifecycle, inspection and streaming operations
- streams.py: closeable log and stats streams
"""

import os
from functools import lru_cache

from models import ContainerSpec, ContainerSpecBuilder, ContainerState
from orchestrator import ContainerOrchestrator
from runtime_client import DockerRuntimeClient, RuntimeClient
from utils import logger


def docker_timeout():
    """Client-side deadline (seconds) for each daemon request, from DOCKER_TIMEOUT"""
    value = os.getenv("DOCKER_TIMEOUT")
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer DOCKER_TIMEOUT", value=value)
        return None


def create_orchestrator(runtime: RuntimeClient = None) -> ContainerOrchestrator:
    """Build an orchestrator, connecting to the daemon from the environment if needed"""
    if runtime is None:
        runtime = DockerRuntimeClient.from_env(timeout=docker_timeout())
        logger.info(
            "Connected to Docker daemon",
            docker_host=os.getenv("DOCKER_HOST", "default"),
            timeout=docker_timeout(),
        )
    return ContainerOrchestrator(runtime)


@lru_cache(maxsize=1)
def get_orchestrator() -> ContainerOrchestrator:
    """Process-wide orchestrator for the HTTP server; created on first use"""
    return create_orchestrator()


__all__ = [
    "ContainerOrchestrator",
    "ContainerSpec",
    "ContainerSpecBuilder",
    "ContainerState",
    "DockerRuntimeClient",
    "create_orchestrator",
    "get_orchestrator",
]
