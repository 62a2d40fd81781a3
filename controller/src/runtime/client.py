"""
Docker Engine client initialization and utilities.
"""

import docker
from docker.errors import DockerException
import logging

from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_docker_client = None

def init_docker_client() -> bool:
    """Initialize the Docker client and check the engine answers."""
    global _docker_client

    try:
        if settings.docker_base_url:
            _docker_client = docker.DockerClient(base_url=settings.docker_base_url)
            logger.info(f"Connecting to Docker Engine at {settings.docker_base_url}")
        else:
            # DOCKER_HOST / local socket
            _docker_client = docker.from_env()
            logger.info("Loaded Docker Engine config from environment")

        _docker_client.ping()
        version = _docker_client.version().get("Version", "unknown")
        logger.info(f"Docker client initialized successfully (engine {version})")

        return True
    except DockerException as e:
        logger.error(f"Failed to initialize Docker client: {e}")
        _docker_client = None
        return False

def get_docker_client() -> docker.DockerClient:
    """Get the shared Docker client."""
    global _docker_client
    if _docker_client is None:
        if not init_docker_client():
            raise RuntimeError("Docker Engine is not available")
    return _docker_client
