"""
Build stage executor - packages source and wraps it into a runtime image.

The build runs in two sequential, fail-fast phases inside an ephemeral
workspace:

    package  The package command runs in a throwaway builder container
             with the checkout mounted at /workspace.
    image    A fresh build context holding only the packaged artifact and
             a generated Dockerfile is built on top of the runtime image.

Build tooling and caches stay in the builder container and workspace, both
of which are discarded, so the runtime image only carries the artifact.
"""

import hashlib
import json
import logging
import os
import shutil
import time
from typing import Callable, Optional

import docker
from docker.errors import APIError, DockerException
from docker.errors import BuildError as DockerBuildError
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from controller.src.config import get_settings
from controller.src.errors import BuildError
from controller.src.models.artifact import Artifact
from controller.src.models.step import BuildSpec, SourceRef
from controller.src.runtime.client import get_docker_client
from controller.src.services.log_collector import StageLog
from controller.src.services.workspace import (
    CheckoutError,
    cleanup_workspace,
    clone_repository,
    create_workspace,
)

logger = logging.getLogger(__name__)
settings = get_settings()

CONTAINER_WORKSPACE = "/workspace"

def build_container_name(run_id: str, phase: str) -> str:
    """Generate a unique, docker-safe container name."""
    run_hash = hashlib.md5(run_id.encode()).hexdigest()[:8]
    return f"shipyard-{run_hash}-{phase}"

def render_dockerfile(spec: BuildSpec) -> str:
    """Runtime image definition referencing only the packaged artifact."""
    name = spec.artifact_name
    lines = [
        f"FROM {spec.runtime_image}",
        "WORKDIR /app",
        f"COPY {name} /app/{name}",
    ]
    if spec.entrypoint:
        lines.append(f"ENTRYPOINT {json.dumps(spec.entrypoint)}")
    return "\n".join(lines) + "\n"

class BuildStageExecutor:
    """Runs the build stage of a pipeline against a Docker Engine."""

    def __init__(
        self,
        docker_client: Optional[docker.DockerClient] = None,
        checkout: Callable[..., str] = clone_repository,
        default_timeout: Optional[int] = None,
    ):
        self._client = docker_client
        self._checkout = checkout
        self.default_timeout = default_timeout or settings.build_timeout

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = get_docker_client()
        return self._client

    def build(
        self,
        source: SourceRef,
        spec: BuildSpec,
        run_id: str,
        image_name: str,
        tag: str,
        log: StageLog,
        timeout: Optional[float] = None,
    ) -> Artifact:
        """
        Build an image for the given source.
        Raises BuildError when a phase fails; no artifact is produced then.
        """
        timeout = timeout or spec.timeout or self.default_timeout
        deadline = time.monotonic() + timeout
        workspace = create_workspace(run_id)

        logger.info(f"Building {image_name}:{tag} for run {run_id} ({source.commit_sha or source.branch})")

        try:
            try:
                repo_path = self._checkout(source, workspace, timeout=self._remaining(deadline))
            except CheckoutError as e:
                log.write(str(e))
                raise BuildError("checkout", e.exit_code, log.excerpt(), message=str(e))

            source_dir = os.path.normpath(os.path.join(repo_path, spec.source_path))
            artifact_path = self._package(source_dir, spec, run_id, log, deadline)
            digest = self._image(workspace, artifact_path, spec, source, image_name, tag, log, deadline)
        finally:
            cleanup_workspace(workspace)

        logger.info(f"Built {image_name}:{tag} as {digest}")
        return Artifact(digest=digest, image_name=image_name, source=source, tags=[tag])

    def _remaining(self, deadline: float) -> int:
        return max(1, int(deadline - time.monotonic()))

    def _package(self, source_dir: str, spec: BuildSpec, run_id: str, log: StageLog, deadline: float) -> str:
        """Run the package command in a builder container."""
        mark = log.mark()
        log.write(f">>> PACKAGE ({spec.builder_image}): {spec.package_command}")

        try:
            container = self.client.containers.run(
                image=spec.builder_image,
                command=["/bin/sh", "-c", spec.package_command],
                volumes={source_dir: {"bind": CONTAINER_WORKSPACE, "mode": "rw"}},
                working_dir=CONTAINER_WORKSPACE,
                environment={"CI": "true", "SHIPYARD_RUN_ID": run_id, **spec.env},
                name=build_container_name(run_id, "package"),
                labels={"app": "shipyard", "run-id": run_id, "phase": "package"},
                detach=True,
            )
        except DockerException as e:
            log.write(f"Failed to start builder container: {e}")
            raise BuildError("package", -1, log.excerpt(mark), message=f"Failed to start builder container: {e}")

        try:
            try:
                result = container.wait(timeout=self._remaining(deadline))
            except (ReadTimeout, RequestsConnectionError):
                logger.error(f"Package phase of run {run_id} timed out")
                self._kill(container)
                log.write(self._container_logs(container))
                raise BuildError("package", -1, log.excerpt(mark), timed_out=True)
            except DockerException as e:
                logger.error(f"Lost builder container for run {run_id}: {e}")
                log.write(f"Builder container failed: {e}")
                raise BuildError("package", -1, log.excerpt(mark), message=f"Builder container failed: {e}")

            log.write(self._container_logs(container))
            exit_code = result.get("StatusCode", -1)
            if exit_code != 0:
                raise BuildError("package", exit_code, log.excerpt(mark))
        finally:
            try:
                container.remove(force=True)
            except APIError as e:
                logger.warning(f"Failed to remove builder container for run {run_id}: {e}")

        artifact_path = os.path.join(source_dir, spec.artifact_path)
        if not os.path.exists(artifact_path):
            log.write(f"Artifact {spec.artifact_path} was not produced")
            raise BuildError(
                "package", 0, log.excerpt(mark),
                message=f"Package command succeeded but {spec.artifact_path} was not produced",
            )
        return artifact_path

    def _image(
        self,
        workspace: str,
        artifact_path: str,
        spec: BuildSpec,
        source: SourceRef,
        image_name: str,
        tag: str,
        log: StageLog,
        deadline: float,
    ) -> str:
        """Build the runtime image from a context holding only the artifact."""
        mark = log.mark()
        log.write(f">>> IMAGE ({spec.runtime_image})")

        context = os.path.join(workspace, "context")
        os.makedirs(context)
        target = os.path.join(context, spec.artifact_name)
        if os.path.isdir(artifact_path):
            shutil.copytree(artifact_path, target)
        else:
            shutil.copy2(artifact_path, target)
        with open(os.path.join(context, "Dockerfile"), "w") as f:
            f.write(render_dockerfile(spec))

        try:
            image, build_logs = self.client.images.build(
                path=context,
                tag=f"{image_name}:{tag}",
                rm=True,
                forcerm=True,
                pull=True,
                timeout=self._remaining(deadline),
                labels={
                    "org.opencontainers.image.source": source.clone_url,
                    "org.opencontainers.image.revision": source.commit_sha,
                },
            )
        except DockerBuildError as e:
            for chunk in e.build_log:
                self._write_chunk(log, chunk)
            raise BuildError("image", 1, log.excerpt(mark), message=f"Image build failed: {e.msg}")
        except (ReadTimeout, RequestsConnectionError):
            raise BuildError("image", -1, log.excerpt(mark), timed_out=True)
        except DockerException as e:
            log.write(str(e))
            raise BuildError("image", -1, log.excerpt(mark), message=f"Image build failed: {e}")

        for chunk in build_logs:
            self._write_chunk(log, chunk)
        return image.id

    def _write_chunk(self, log: StageLog, chunk: dict):
        text = chunk.get("stream") or chunk.get("error") or chunk.get("status")
        if text:
            log.write(text.rstrip("\n"))

    def _container_logs(self, container) -> str:
        try:
            return container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")
        except APIError as e:
            return f"Error collecting logs: {e}"

    def _kill(self, container):
        try:
            container.kill()
        except APIError as e:
            logger.warning(f"Failed to kill container {container.name}: {e}")
