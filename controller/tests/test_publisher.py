"""Tests for the registry publisher."""

import time
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import SecretStr
from requests.exceptions import ConnectionError as RequestsConnectionError

from controller.src.errors import FailureKind, PublishError, PublishErrorKind
from controller.src.models.artifact import Artifact
from controller.src.models.step import SourceRef
from controller.src.services.credentials import Credential
from controller.src.services.publisher import RegistryPublisher, classify_message, classify_status

from controller.tests.fakes import IMAGE_ID, REGISTRY_URL

@pytest.fixture
def artifact():
    return Artifact(
        digest=IMAGE_ID,
        image_name="shop/orders",
        source=SourceRef(clone_url="https://github.com/shop/orders.git", commit_sha="abc1234", branch="main"),
        tags=["v1"],
    )

@pytest.fixture
def credential():
    return Credential(
        principal="AKIAEXAMPLE",
        scopes=["repository:shop/orders:push,pull"],
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        registry_url=REGISTRY_URL,
        username="AKIAEXAMPLE",
        password=SecretStr("s3cret-value"),
    )

@pytest.fixture
def publisher(docker_client, registry, delays):
    docker_client.tags[("registry.example.com/shop/orders", "v1")] = IMAGE_ID
    return RegistryPublisher(
        docker_client=docker_client,
        http_client=registry.client(),
        retries=3,
        backoff_base=0.5,
        backoff_max=4.0,
        sleep=delays.append,
    )

def test_pushes_when_tag_absent(publisher, artifact, credential, docker_client):
    receipt = publisher.publish(artifact, credential, "v1")

    assert receipt.digest == IMAGE_ID
    assert receipt.tag == "v1"
    assert receipt.registry_url == REGISTRY_URL
    assert receipt.repository == "shop/orders"
    assert receipt.manifest_digest == "sha256:" + "d" * 64
    assert receipt.already_present is False

    [push] = docker_client.api.pushes
    assert push["repository"] == "registry.example.com/shop/orders"
    assert push["auth_config"] == {
        "username": "AKIAEXAMPLE",
        "password": "s3cret-value",
        "serveraddress": "registry.example.com",
    }

def test_already_present_is_noop(publisher, artifact, credential, registry, docker_client):
    registry.manifests[("shop/orders", "v1")] = IMAGE_ID

    receipt = publisher.publish(artifact, credential, "v1")

    assert receipt.already_present is True
    assert receipt.digest == IMAGE_ID
    assert docker_client.api.pushes == []

def test_tag_pointing_elsewhere_is_overwritten(publisher, artifact, credential, registry, docker_client):
    registry.manifests[("shop/orders", "v1")] = "sha256:" + "e" * 64

    receipt = publisher.publish(artifact, credential, "v1")

    assert receipt.already_present is False
    assert len(docker_client.api.pushes) == 1
    assert registry.manifests[("shop/orders", "v1")] == IMAGE_ID

def test_transient_errors_are_retried_with_backoff(publisher, artifact, credential, docker_client, delays):
    docker_client.api.failures = ["toomanyrequests: rate limit", RequestsConnectionError("reset")]

    receipt = publisher.publish(artifact, credential, "v1")

    assert receipt.digest == IMAGE_ID
    assert len(docker_client.api.pushes) == 3
    assert delays == [0.5, 1.0]

def test_attempts_bounded_by_retries(publisher, artifact, credential, docker_client, delays):
    docker_client.api.failures = ["502 Bad Gateway"] * 10

    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "v1", retries=2)

    error = exc_info.value
    assert error.attempts == 3
    assert error.exhausted is True
    assert error.kind == FailureKind.PUBLISH_EXHAUSTED
    assert len(docker_client.api.pushes) == 3
    assert delays == [0.5, 1.0]

def test_zero_retries_means_single_attempt(publisher, artifact, credential, docker_client):
    docker_client.api.failures = ["502 Bad Gateway"]

    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "v1", retries=0)

    assert exc_info.value.attempts == 1
    assert len(docker_client.api.pushes) == 1

def test_auth_rejection_is_not_retried(publisher, artifact, credential, docker_client, delays):
    docker_client.api.failures = ["denied: requested access to the resource is denied"]

    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "v1")

    assert exc_info.value.error_kind == PublishErrorKind.AUTH_REJECTED
    assert exc_info.value.kind == FailureKind.AUTH
    assert exc_info.value.attempts == 1
    assert delays == []

def test_malformed_tag_fails_without_push(publisher, artifact, credential, docker_client):
    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "bad tag!")

    assert exc_info.value.kind == FailureKind.PUBLISH_FATAL
    assert exc_info.value.attempts == 0
    assert docker_client.api.pushes == []

def test_manifest_lookup_outage_is_transient(publisher, artifact, credential, registry, docker_client):
    registry.manifest_status = 503

    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "v1", retries=1)

    assert exc_info.value.attempts == 2
    assert exc_info.value.exhausted is True
    assert docker_client.api.pushes == []

def test_invalidated_credential_is_rejected(publisher, artifact, credential, docker_client):
    credential.invalidate()

    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "v1")

    assert exc_info.value.error_kind == PublishErrorKind.AUTH_REJECTED
    assert docker_client.api.pushes == []

def test_backoff_is_capped(publisher):
    assert publisher.backoff(1) == 0.5
    assert publisher.backoff(3) == 2.0
    assert publisher.backoff(10) == 4.0

@pytest.mark.parametrize("message,kind", [
    ("unauthorized: authentication required", PublishErrorKind.AUTH_REJECTED),
    ("denied: quota exceeded", PublishErrorKind.AUTH_REJECTED),
    ("manifest invalid: manifest invalid", PublishErrorKind.FATAL),
    ("net/http: TLS handshake timeout", PublishErrorKind.TRANSIENT),
    ("something unexpected", PublishErrorKind.FATAL),
])
def test_classify_message(message, kind):
    assert classify_message(message) == kind

def test_classify_status():
    assert classify_status(401) == PublishErrorKind.AUTH_REJECTED
    assert classify_status(429) == PublishErrorKind.TRANSIENT
    assert classify_status(503) == PublishErrorKind.TRANSIENT
    assert classify_status(400) is None

def test_passed_deadline_stops_before_push(publisher, artifact, credential, docker_client, registry):
    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "v1", deadline=time.monotonic() - 1)

    assert exc_info.value.kind == FailureKind.TIMEOUT
    assert docker_client.api.pushes == []
    assert registry.requests == []

def test_deadline_during_push_abandons_it(publisher, artifact, credential, docker_client, registry):
    docker_client.api.progress_steps = 20
    docker_client.api.progress_delay = 0.02

    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "v1", deadline=time.monotonic() + 0.1)

    assert exc_info.value.error_kind == PublishErrorKind.TIMEOUT
    assert exc_info.value.attempts == 1
    assert docker_client.api.aborted == [("registry.example.com/shop/orders", "v1")]
    assert registry.manifests == {}

def test_no_retry_when_backoff_would_pass_deadline(publisher, artifact, credential, docker_client, delays):
    docker_client.api.failures = ["502 Bad Gateway"] * 3

    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "v1", deadline=time.monotonic() + 0.25)

    assert exc_info.value.kind == FailureKind.TIMEOUT
    assert exc_info.value.attempts == 1
    assert len(docker_client.api.pushes) == 1
    assert delays == []

def test_completed_push_is_kept_despite_deadline(publisher, artifact, credential, registry):
    receipt = publisher.publish(artifact, credential, "v1", deadline=time.monotonic() + 30)

    assert receipt.already_present is False
    assert registry.manifests[("shop/orders", "v1")] == IMAGE_ID

def test_unparseable_manifest_is_fatal(publisher, artifact, credential, registry, docker_client):
    registry.manifest_status = 200
    registry.manifest_body = "<html>maintenance</html>"

    with pytest.raises(PublishError) as exc_info:
        publisher.publish(artifact, credential, "v1")

    assert exc_info.value.kind == FailureKind.PUBLISH_FATAL
    assert exc_info.value.attempts == 1
    assert docker_client.api.pushes == []
