"""Shared fixtures for controller tests."""

import pytest

from controller.src.services.builder import BuildStageExecutor
from controller.src.services.credentials import CredentialProvider, SecretStore
from controller.src.services.publisher import RegistryPublisher
from controller.src.services.runner import PipelineRunner
from controller.src.services.status_reporter import StatusReporter

from controller.tests.fakes import SECRETS, FakeDockerClient, FakeRegistry, RecordingSink, fake_checkout

@pytest.fixture
def registry():
    return FakeRegistry()

@pytest.fixture
def docker_client(registry):
    return FakeDockerClient(registry)

@pytest.fixture
def sink():
    return RecordingSink()

@pytest.fixture
def delays():
    return []

@pytest.fixture
def runner_factory(registry, docker_client, sink, delays, tmp_path):
    def factory(secrets=None, builder=None, build_timeout=None, publish_timeout=None, stage_grace=None):
        http = registry.client()
        return PipelineRunner(
            builder=builder or BuildStageExecutor(docker_client=docker_client, checkout=fake_checkout),
            credentials=CredentialProvider(
                store=SecretStore(environ=SECRETS if secrets is None else secrets, secrets_dir=""),
                http_client=http,
            ),
            publisher=RegistryPublisher(
                docker_client=docker_client,
                http_client=http,
                backoff_base=1.0,
                backoff_max=30.0,
                sleep=delays.append,
            ),
            reporter=StatusReporter([sink]),
            log_dir=str(tmp_path / "logs"),
            build_timeout=build_timeout,
            publish_timeout=publish_timeout,
            stage_grace=stage_grace,
        )
    return factory

