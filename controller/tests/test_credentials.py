"""Tests for registry credential resolution."""

from datetime import timedelta

import httpx
import pytest

from controller.src.errors import AuthError, FailureKind
from controller.src.services.credentials import (
    CredentialProvider,
    ScopeRequest,
    SecretStore,
    granted_actions,
    parse_challenge,
)

from controller.tests.fakes import SECRETS, FakeRegistry, fixed_clock, make_jwt

REQUEST = ScopeRequest(repository="shop/orders")

def provider_for(registry, secrets=None, estimated_publish_seconds=120):
    return CredentialProvider(
        store=SecretStore(environ=SECRETS if secrets is None else secrets, secrets_dir=""),
        http_client=registry.client(),
        clock=fixed_clock,
        estimated_publish_seconds=estimated_publish_seconds,
        basic_ttl=900,
    )

def resolve(provider):
    with provider.session("run-1") as session:
        return session.resolve(REQUEST)

def test_missing_secret_rejected_when_session_opens():
    registry = FakeRegistry()
    provider = provider_for(registry, secrets={"ACCESS_KEY_ID": "AKIAEXAMPLE", "REGION": "eu-west-1"})

    with pytest.raises(AuthError) as exc_info:
        provider.session("run-1")

    assert exc_info.value.reason == "missing_secret"
    assert exc_info.value.kind == FailureKind.AUTH
    assert "SECRET_ACCESS_KEY" in exc_info.value.message
    assert "REGISTRY_URL" in exc_info.value.message
    assert registry.requests == []

def test_expired_identity_rejected_when_session_opens():
    registry = FakeRegistry()
    expired = (fixed_clock() - timedelta(minutes=5)).isoformat()
    provider = provider_for(registry, secrets={**SECRETS, "IDENTITY_EXPIRES_AT": expired})

    with pytest.raises(AuthError) as exc_info:
        provider.session("run-1")

    assert exc_info.value.reason == "expired"
    assert registry.requests == []

def test_bearer_token_exchange():
    registry = FakeRegistry(auth="bearer")
    credential = resolve(provider_for(registry))

    assert credential.principal == "AKIAEXAMPLE"
    assert credential.registry_url == "https://registry.example.com"
    assert credential.scopes == ["repository:shop/orders:push,pull"]
    assert credential.expires_at == fixed_clock() + timedelta(seconds=300)
    assert credential.region == "eu-west-1"

    token_request = registry.requests[-1]
    assert token_request.url.host == "auth.example.com"
    assert token_request.url.params["scope"] == "repository:shop/orders:push,pull"
    assert token_request.url.params["service"] == "registry.example.com"

def test_bearer_credential_uses_token_for_docker():
    registry = FakeRegistry(auth="bearer")
    with provider_for(registry).session("run-1") as session:
        credential = session.resolve(REQUEST)
        config = credential.docker_auth_config()
        header = credential.auth_header()

    assert config["serveraddress"] == "registry.example.com"
    assert config["registrytoken"].count(".") == 2
    assert header["Authorization"].startswith("Bearer ")

def test_insufficient_scope():
    registry = FakeRegistry(auth="bearer")
    registry.token_actions = ["pull"]

    with pytest.raises(AuthError) as exc_info:
        resolve(provider_for(registry))

    assert exc_info.value.reason == "insufficient_scope"

def test_ttl_shorter_than_publish_window():
    registry = FakeRegistry(auth="bearer")
    registry.token_expires_in = 60

    with pytest.raises(AuthError) as exc_info:
        resolve(provider_for(registry, estimated_publish_seconds=120))

    assert exc_info.value.reason == "ttl_too_short"

def test_identity_expiry_caps_credential_lifetime():
    expiry = fixed_clock() + timedelta(seconds=200)
    provider = provider_for(FakeRegistry(auth="bearer"), secrets={**SECRETS, "IDENTITY_EXPIRES_AT": expiry.isoformat()})

    assert resolve(provider).expires_at == expiry

def test_token_endpoint_rejects_identity():
    registry = FakeRegistry(auth="bearer")
    registry.token_status = 401

    with pytest.raises(AuthError) as exc_info:
        resolve(provider_for(registry))

    assert exc_info.value.reason == "rejected"

def test_token_endpoint_reports_expired_identity():
    registry = FakeRegistry(auth="bearer")
    registry.token_status = 403
    registry.token_body = '{"errors": [{"message": "security token expired"}]}'

    with pytest.raises(AuthError) as exc_info:
        resolve(provider_for(registry))

    assert exc_info.value.reason == "expired"

def test_token_endpoint_returns_garbage():
    registry = FakeRegistry(auth="bearer")
    registry.token_response = httpx.Response(200, text="<html>gateway error</html>")

    with pytest.raises(AuthError) as exc_info:
        resolve(provider_for(registry))

    assert exc_info.value.reason == "rejected"

def test_unparseable_expires_in_uses_default():
    registry = FakeRegistry(auth="bearer")
    token = make_jwt([{"type": "repository", "name": "shop/orders", "actions": ["push", "pull"]}])
    registry.token_response = httpx.Response(200, json={"token": token, "expires_in": "soon"})

    credential = resolve(provider_for(registry, estimated_publish_seconds=30))

    assert credential.expires_at == fixed_clock() + timedelta(seconds=60)

def test_basic_auth_registry():
    credential = resolve(provider_for(FakeRegistry(auth="basic")))

    assert credential.token is None
    assert credential.expires_at == fixed_clock() + timedelta(seconds=900)

def test_registry_unreachable():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider = CredentialProvider(
        store=SecretStore(environ=SECRETS, secrets_dir=""),
        http_client=httpx.Client(transport=httpx.MockTransport(refuse)),
        clock=fixed_clock,
    )

    with pytest.raises(AuthError) as exc_info:
        resolve(provider)

    assert exc_info.value.reason == "unreachable"

def test_session_close_invalidates_credentials():
    provider = provider_for(FakeRegistry(auth="bearer"))

    with provider.session("run-1") as session:
        credential = session.resolve(REQUEST)
        assert credential.is_valid(fixed_clock())

    assert credential.invalidated is True
    assert credential.token is None
    assert not credential.is_valid(fixed_clock())
    with pytest.raises(AuthError) as exc_info:
        session.resolve(REQUEST)
    assert exc_info.value.reason == "expired"

def test_secrets_are_not_exposed():
    credential = resolve(provider_for(FakeRegistry(auth="basic")))
    assert "s3cret-value" not in repr(credential)

    with provider_for(FakeRegistry(auth="basic")).session("run-2") as session:
        credential = session.resolve(REQUEST)
        assert "s3cret-value" not in repr(credential)
        assert "s3cret-value" not in str(credential.model_dump())

def test_secret_files_take_precedence(tmp_path):
    (tmp_path / "ACCESS_KEY_ID").write_text("AKIAFROMFILE\n")
    store = SecretStore(environ=SECRETS, secrets_dir=str(tmp_path))

    assert store.get("ACCESS_KEY_ID") == "AKIAFROMFILE"
    assert store.get("REGION") == "eu-west-1"
    assert store.load()["ACCESS_KEY_ID"] == "AKIAFROMFILE"

def test_parse_challenge():
    scheme, params = parse_challenge('Bearer realm="https://auth.example.com/token",service="registry.example.com"')
    assert scheme == "bearer"
    assert params == {"realm": "https://auth.example.com/token", "service": "registry.example.com"}

def test_granted_actions():
    token = make_jwt([{"type": "repository", "name": "shop/orders", "actions": ["pull"]}])
    assert granted_actions(token, "shop/orders") == {"pull"}
    assert granted_actions(token, "shop/other") == set()
    assert granted_actions("opaque-token", "shop/orders") is None
