"""
Registry publisher - pushes a built image under a tag, idempotently.

Before pushing, the registry manifest for the tag is inspected; if it
already points at the artifact's image config the publish is a no-op
success. Transient failures are retried with exponential backoff up to a
bounded number of retries; everything else surfaces immediately.
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

import docker
import httpx
from docker.errors import APIError, ImageNotFound
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from controller.src.config import get_settings
from controller.src.errors import PublishError, PublishErrorKind
from controller.src.models.artifact import Artifact, PublishReceipt
from controller.src.runtime.client import get_docker_client
from controller.src.services.credentials import Credential

logger = logging.getLogger(__name__)
settings = get_settings()

TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
REPOSITORY_PATTERN = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")

MANIFEST_ACCEPT = ", ".join([
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
])

AUTH_MARKERS = ("unauthorized", "authentication required", "denied", "forbidden")
FATAL_MARKERS = ("quota", "invalid reference", "invalid tag", "manifest invalid", "name invalid", "unsupported")
TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "broken pipe",
    "eof",
    "toomanyrequests",
    "too many requests",
    "service unavailable",
    "bad gateway",
    "temporarily unavailable",
    "internal server error",
)

def classify_status(status_code: int) -> Optional[PublishErrorKind]:
    if status_code in (401, 403):
        return PublishErrorKind.AUTH_REJECTED
    if status_code == 429 or status_code >= 500:
        return PublishErrorKind.TRANSIENT
    return None

def classify_message(message: str) -> PublishErrorKind:
    lowered = message.lower()
    if any(marker in lowered for marker in AUTH_MARKERS):
        return PublishErrorKind.AUTH_REJECTED
    if any(marker in lowered for marker in FATAL_MARKERS):
        return PublishErrorKind.FATAL
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return PublishErrorKind.TRANSIENT
    return PublishErrorKind.FATAL

class RegistryPublisher:
    """Publishes artifacts to the registry a credential points at. Stateless per call."""

    def __init__(
        self,
        docker_client: Optional[docker.DockerClient] = None,
        http_client: Optional[httpx.Client] = None,
        retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = docker_client
        self.http = http_client or httpx.Client(timeout=30.0)
        self.retries = retries if retries is not None else settings.publish_retries
        self.backoff_base = backoff_base if backoff_base is not None else settings.publish_backoff_base
        self.backoff_max = backoff_max if backoff_max is not None else settings.publish_backoff_max
        self.sleep = sleep

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = get_docker_client()
        return self._client

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    def publish(
        self,
        artifact: Artifact,
        credential: Credential,
        tag: str,
        repository: Optional[str] = None,
        retries: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> PublishReceipt:
        """
        Publish an artifact under a tag.

        `deadline` is a time.monotonic() value. It is checked before every
        attempt and while a push streams; once passed, the push is abandoned
        before the tag moves and a timeout PublishError is raised.
        Raises PublishError; its `attempts` records how many pushes were tried.
        """
        repository = repository or artifact.image_name
        retries = self.retries if retries is None else retries

        if not TAG_PATTERN.match(tag):
            raise PublishError(PublishErrorKind.FATAL, f"Malformed tag '{tag}'", attempts=0)
        if not REPOSITORY_PATTERN.match(repository):
            raise PublishError(PublishErrorKind.FATAL, f"Malformed repository '{repository}'", attempts=0)

        attempt = 0
        while True:
            attempt += 1
            try:
                self._check_deadline(deadline, f"before attempt {attempt}")
                receipt = self._attempt(artifact, credential, repository, tag, deadline)
            except PublishError as e:
                e.attempts = attempt
                if not e.retryable:
                    logger.error(f"Publish of {repository}:{tag} failed ({e.error_kind.value}): {e.message}")
                    raise
                if attempt > retries:
                    e.exhausted = True
                    logger.error(f"Publish of {repository}:{tag} failed after {attempt} attempts: {e.message}")
                    raise
                delay = self.backoff(attempt)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    logger.error(f"Publish of {repository}:{tag} out of time after {attempt} attempts: {e.message}")
                    raise PublishError(
                        PublishErrorKind.TIMEOUT,
                        f"Publish deadline reached before retry {attempt}: {e.message}",
                        status_code=e.status_code,
                        attempts=attempt,
                    )
                logger.warning(
                    f"Transient publish failure for {repository}:{tag} "
                    f"(attempt {attempt}/{retries + 1}), retrying in {delay:.1f}s: {e.message}"
                )
                self.sleep(delay)
                continue

            logger.info(
                f"Published {artifact.digest} as {credential.registry_host}/{repository}:{tag}"
                f"{' (already present)' if receipt.already_present else ''}"
            )
            return receipt

    def _check_deadline(self, deadline: Optional[float], where: str):
        if deadline is not None and time.monotonic() >= deadline:
            raise PublishError(PublishErrorKind.TIMEOUT, f"Publish deadline exceeded {where}")

    def _attempt(
        self,
        artifact: Artifact,
        credential: Credential,
        repository: str,
        tag: str,
        deadline: Optional[float] = None,
    ) -> PublishReceipt:
        if not credential.is_valid():
            raise PublishError(PublishErrorKind.AUTH_REJECTED, "Credential expired or invalidated")

        config_digest, manifest_digest = self._remote_manifest(credential, repository, tag)
        if config_digest == artifact.digest:
            return self._receipt(artifact, credential, repository, tag, manifest_digest, already_present=True)

        self._check_deadline(deadline, "before push")
        manifest_digest = self._push(artifact, credential, repository, tag, deadline)
        return self._receipt(artifact, credential, repository, tag, manifest_digest)

    def _receipt(
        self,
        artifact: Artifact,
        credential: Credential,
        repository: str,
        tag: str,
        manifest_digest: Optional[str],
        already_present: bool = False,
    ) -> PublishReceipt:
        return PublishReceipt(
            digest=artifact.digest,
            tag=tag,
            registry_url=credential.registry_url,
            repository=repository,
            timestamp=datetime.now(timezone.utc),
            manifest_digest=manifest_digest,
            already_present=already_present,
        )

    def _remote_manifest(self, credential: Credential, repository: str, tag: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Look up what the tag currently points at.
        Returns (config digest, manifest digest); (None, None) if the tag does not exist.
        """
        url = f"{credential.registry_url}/v2/{repository}/manifests/{tag}"
        headers = {"Accept": MANIFEST_ACCEPT, **credential.auth_header()}

        try:
            response = self.http.get(url, headers=headers)
        except httpx.TransportError as e:
            raise PublishError(PublishErrorKind.TRANSIENT, f"Manifest lookup failed: {e.__class__.__name__}")

        if response.status_code == 404:
            return None, None

        kind = classify_status(response.status_code)
        if kind is not None:
            raise PublishError(kind, f"Manifest lookup returned HTTP {response.status_code}", status_code=response.status_code)
        if response.status_code != 200:
            raise PublishError(
                PublishErrorKind.FATAL,
                f"Manifest lookup returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            manifest = response.json()
        except ValueError:
            raise PublishError(PublishErrorKind.FATAL, "Manifest lookup returned a body that is not JSON", status_code=200)
        if not isinstance(manifest, dict):
            raise PublishError(PublishErrorKind.FATAL, "Manifest lookup returned an unexpected document", status_code=200)
        config = manifest.get("config") or {}
        return config.get("digest"), response.headers.get("docker-content-digest")

    def _push(
        self,
        artifact: Artifact,
        credential: Credential,
        repository: str,
        tag: str,
        deadline: Optional[float] = None,
    ) -> Optional[str]:
        remote = f"{credential.registry_host}/{repository}"
        manifest_digest = None

        try:
            image = self.client.images.get(artifact.digest)
            image.tag(remote, tag=tag)

            stream = self.client.api.push(
                remote,
                tag=tag,
                stream=True,
                decode=True,
                auth_config=credential.docker_auth_config(),
            )
            # Closing the stream drops the engine connection, which aborts the push.
            # Once the engine reports the manifest digest the tag has moved.
            committed = False
            try:
                for line in stream:
                    if "error" in line or "errorDetail" in line:
                        message = line.get("error") or line["errorDetail"].get("message", "")
                        raise PublishError(classify_message(message), f"Push failed: {message}")
                    aux = line.get("aux") or {}
                    if aux.get("Digest"):
                        manifest_digest = aux["Digest"]
                    if manifest_digest or ": digest: " in line.get("status", ""):
                        committed = True
                    if not committed:
                        self._check_deadline(deadline, "while pushing")
            finally:
                stream.close()
        except ImageNotFound:
            raise PublishError(PublishErrorKind.FATAL, f"Artifact {artifact.digest} not found in the local engine")
        except APIError as e:
            status_code = e.status_code
            kind = classify_status(status_code) if status_code else None
            raise PublishError(kind or classify_message(str(e.explanation or e)), f"Push failed: {e.explanation or e}", status_code=status_code)
        except (ReadTimeout, RequestsConnectionError) as e:
            raise PublishError(PublishErrorKind.TRANSIENT, f"Push interrupted: {e.__class__.__name__}")

        return manifest_digest
