"""
Registry credential provider.

Long-lived identity secrets are read from a secret store when a run starts
and exchanged for a short-lived, push-scoped registry credential. Secrets
are wiped and issued credentials invalidated when the run ends.
"""

import base64
import json
import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, SecretStr

from controller.src.config import get_settings
from controller.src.errors import AuthError

logger = logging.getLogger(__name__)
settings = get_settings()

SECRET_KEYS = ("ACCESS_KEY_ID", "SECRET_ACCESS_KEY", "REGION", "REGISTRY_URL")
IDENTITY_EXPIRY_KEY = "IDENTITY_EXPIRES_AT"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def normalize_registry_url(registry_url: str) -> str:
    if "://" not in registry_url:
        registry_url = f"https://{registry_url}"
    return registry_url.rstrip("/")

def registry_host(registry_url: str) -> str:
    return urlparse(normalize_registry_url(registry_url)).netloc

class SecretStore:
    """
    Named secret lookups.

    Values come from files in secrets_dir (one file per key, as mounted by
    the platform) and fall back to the environment.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None, secrets_dir: Optional[str] = None):
        self.environ = os.environ if environ is None else environ
        self.secrets_dir = secrets_dir if secrets_dir is not None else settings.secrets_dir

    def get(self, key: str) -> Optional[str]:
        if self.secrets_dir:
            path = os.path.join(self.secrets_dir, key)
            if os.path.isfile(path):
                try:
                    with open(path, "r") as f:
                        return f.read().strip() or None
                except OSError as e:
                    raise AuthError("missing_secret", f"Secret {key} could not be read: {e.strerror}")
        value = self.environ.get(key)
        return value or None

    def load(self) -> Dict[str, str]:
        values = {}
        for key in SECRET_KEYS + (IDENTITY_EXPIRY_KEY,):
            value = self.get(key)
            if value is not None:
                values[key] = value
        return values

class ScopeRequest(BaseModel):
    repository: str
    actions: List[str] = ["push", "pull"]

    def scope(self) -> str:
        return f"repository:{self.repository}:{','.join(self.actions)}"

class Credential(BaseModel):
    principal: str
    scopes: List[str]
    expires_at: datetime
    registry_url: str
    region: str = ""
    username: str
    password: Optional[SecretStr] = None
    token: Optional[SecretStr] = None
    invalidated: bool = False

    def invalidate(self):
        self.invalidated = True
        self.password = None
        self.token = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.invalidated and (now or utcnow()) < self.expires_at

    @property
    def registry_host(self) -> str:
        return registry_host(self.registry_url)

    def auth_header(self) -> Dict[str, str]:
        if self.token is not None:
            return {"Authorization": f"Bearer {self.token.get_secret_value()}"}
        raw = f"{self.username}:{self.password.get_secret_value() if self.password else ''}"
        return {"Authorization": f"Basic {base64.b64encode(raw.encode()).decode()}"}

    def docker_auth_config(self) -> Dict[str, str]:
        """X-Registry-Auth payload for the Docker Engine."""
        if self.token is not None:
            return {"registrytoken": self.token.get_secret_value(), "serveraddress": self.registry_host}
        return {
            "username": self.username,
            "password": self.password.get_secret_value() if self.password else "",
            "serveraddress": self.registry_host,
        }

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')

def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """Parse a WWW-Authenticate header into (scheme, params)."""
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))

def granted_actions(token: str, repository: str) -> Optional[Set[str]]:
    """
    Actions a registry JWT grants on a repository.
    Returns None when the token carries no readable access claims.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        padded = parts[1] + "=" * (-len(parts[1]) % 4)
        claims = json.loads(base64.urlsafe_b64decode(padded))
    except ValueError:
        return None
    access = claims.get("access") if isinstance(claims, dict) else None
    if access is None:
        return None
    for entry in access:
        if entry.get("type") == "repository" and entry.get("name") == repository:
            return set(entry.get("actions", []))
    return set()

def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

class CredentialSession:
    """Secrets and credentials scoped to one run."""

    def __init__(self, provider: "CredentialProvider", run_id: str, secrets: Dict[str, str]):
        self.provider = provider
        self.run_id = run_id
        self._secrets = secrets
        self._issued: List[Credential] = []
        self.closed = False

    def resolve(self, request: ScopeRequest) -> Credential:
        """
        Resolve a short-lived credential for the requested scope.
        Raises AuthError; callers must not retry with the same secrets.
        """
        if self.closed:
            raise AuthError("expired", f"Credential session for run {self.run_id} is closed")

        credential = self.provider.exchange(self._secrets, request)
        self._issued.append(credential)
        logger.info(
            f"Resolved registry credential for run {self.run_id} "
            f"(principal={credential.principal}, scope={request.scope()}, expires_at={credential.expires_at.isoformat()})"
        )
        return credential

    def close(self):
        for credential in self._issued:
            credential.invalidate()
        self._issued.clear()
        self._secrets.clear()
        self.closed = True
        logger.debug(f"Closed credential session for run {self.run_id}")

    def __enter__(self) -> "CredentialSession":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

class CredentialProvider:
    """Exchanges identity secrets for registry credentials. Safe for concurrent use."""

    def __init__(
        self,
        store: Optional[SecretStore] = None,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], datetime] = utcnow,
        estimated_publish_seconds: Optional[int] = None,
        basic_ttl: Optional[int] = None,
    ):
        self.store = store or SecretStore()
        self.http = http_client or httpx.Client(timeout=30.0)
        self.clock = clock
        self.estimated_publish_seconds = (
            estimated_publish_seconds if estimated_publish_seconds is not None else settings.estimated_publish_seconds
        )
        self.basic_ttl = basic_ttl or settings.credential_ttl

    def session(self, run_id: str) -> CredentialSession:
        """
        Load secrets at run start; use as a context manager so they are wiped
        and credentials invalidated at run end.

        Missing secrets and an expired identity are rejected here, before any
        work is spent on the run. Raises AuthError.
        """
        secrets = self.store.load()
        try:
            self.check_identity(secrets, self.clock())
        except AuthError:
            secrets.clear()
            raise
        return CredentialSession(self, run_id, secrets)

    def check_identity(self, secrets: Dict[str, str], now: datetime) -> Optional[datetime]:
        """
        Offline checks on loaded secrets.
        Returns the identity expiry, if the secrets carry one.
        """
        missing = [key for key in SECRET_KEYS if key not in secrets]
        if missing:
            raise AuthError("missing_secret", f"Missing secrets: {', '.join(missing)}")

        if IDENTITY_EXPIRY_KEY not in secrets:
            return None
        try:
            identity_expiry = _parse_timestamp(secrets[IDENTITY_EXPIRY_KEY])
        except ValueError:
            raise AuthError("missing_secret", f"{IDENTITY_EXPIRY_KEY} is not an ISO-8601 timestamp")
        if identity_expiry <= now:
            raise AuthError("expired", "Registry identity has expired")
        return identity_expiry

    def exchange(self, secrets: Dict[str, str], request: ScopeRequest) -> Credential:
        now = self.clock()
        identity_expiry = self.check_identity(secrets, now)

        access_key_id = secrets["ACCESS_KEY_ID"]
        secret_access_key = secrets["SECRET_ACCESS_KEY"]
        base_url = normalize_registry_url(secrets["REGISTRY_URL"])

        try:
            ping = self.http.get(f"{base_url}/v2/")
        except httpx.HTTPError as e:
            raise AuthError("unreachable", f"Registry {base_url} unreachable: {e.__class__.__name__}")

        scheme, params = parse_challenge(ping.headers.get("www-authenticate", ""))

        if ping.status_code == 401 and scheme == "bearer":
            token, expires_at = self._fetch_token(params, access_key_id, secret_access_key, request, now)
            credential = Credential(
                principal=access_key_id,
                scopes=[request.scope()],
                expires_at=expires_at,
                registry_url=base_url,
                region=secrets["REGION"],
                username=access_key_id,
                token=SecretStr(token),
            )
        elif ping.status_code in (200, 401):
            if ping.status_code == 401:
                self._verify_basic(base_url, access_key_id, secret_access_key)
            credential = Credential(
                principal=access_key_id,
                scopes=[request.scope()],
                expires_at=now + timedelta(seconds=self.basic_ttl),
                registry_url=base_url,
                region=secrets["REGION"],
                username=access_key_id,
                password=SecretStr(secret_access_key),
            )
        else:
            raise AuthError("unreachable", f"Registry ping returned HTTP {ping.status_code}")

        if identity_expiry is not None and identity_expiry < credential.expires_at:
            credential.expires_at = identity_expiry

        if credential.expires_at <= now + timedelta(seconds=self.estimated_publish_seconds):
            raise AuthError(
                "ttl_too_short",
                f"Credential expires at {credential.expires_at.isoformat()}, "
                f"before the estimated publish window of {self.estimated_publish_seconds}s",
            )
        return credential

    def _fetch_token(
        self,
        challenge: Dict[str, str],
        username: str,
        password: str,
        request: ScopeRequest,
        now: datetime,
    ) -> Tuple[str, datetime]:
        realm = challenge.get("realm")
        if not realm:
            raise AuthError("unreachable", "Registry bearer challenge has no realm")

        query = {"scope": request.scope(), "account": username}
        if challenge.get("service"):
            query["service"] = challenge["service"]

        try:
            response = self.http.get(realm, params=query, auth=(username, password))
        except httpx.HTTPError as e:
            raise AuthError("unreachable", f"Token endpoint unreachable: {e.__class__.__name__}")

        if response.status_code in (401, 403):
            reason = "expired" if "expired" in response.text.lower() else "rejected"
            raise AuthError(reason, f"Token endpoint returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise AuthError("unreachable", f"Token endpoint returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise AuthError("rejected", "Token endpoint returned a body that is not JSON")
        if not isinstance(data, dict):
            raise AuthError("rejected", "Token endpoint returned an unexpected document")
        token = data.get("token") or data.get("access_token")
        if not token:
            raise AuthError("rejected", "Token endpoint returned no token")

        granted = granted_actions(token, request.repository)
        if granted is not None and not set(request.actions) <= granted:
            raise AuthError(
                "insufficient_scope",
                f"Token grants {sorted(granted)} on {request.repository}, need {request.actions}",
            )

        issued_at = now
        if data.get("issued_at"):
            try:
                issued_at = _parse_timestamp(data["issued_at"])
            except ValueError:
                logger.warning("Ignoring unparseable issued_at in token response")
        # Registries default to 60s when expires_in is omitted.
        try:
            expires_in = int(data.get("expires_in", 60))
        except (TypeError, ValueError):
            logger.warning("Ignoring unparseable expires_in in token response")
            expires_in = 60
        return token, issued_at + timedelta(seconds=expires_in)

    def _verify_basic(self, base_url: str, username: str, password: str):
        try:
            response = self.http.get(f"{base_url}/v2/", auth=(username, password))
        except httpx.HTTPError as e:
            raise AuthError("unreachable", f"Registry {base_url} unreachable: {e.__class__.__name__}")
        if response.status_code in (401, 403):
            raise AuthError("rejected", f"Registry rejected basic credentials (HTTP {response.status_code})")
