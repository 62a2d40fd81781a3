from controller.src.runtime.client import (
    init_docker_client,
    get_docker_client,
)

__all__ = [
    "init_docker_client",
    "get_docker_client",
]
