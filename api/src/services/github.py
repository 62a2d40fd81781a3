"""
GitHub service for webhook validation and repo operations.
"""

import hmac
import hashlib
import shutil
import tempfile
import subprocess
import os
from typing import Optional, Dict, Any

import yaml

from api.src.config import get_settings
from api.src.services.pipeline_parser import PipelineConfigError
from api.src.services.trigger import EventType, TriggerEvent

settings = get_settings()

class RepositoryError(Exception):
    """Raised when a repository cannot be cloned."""
    pass

def verify_signature(payload: bytes, signature: str) -> bool:
    """Verify GitHub webhook signature."""
    if not settings.github_webhook_secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        settings.github_webhook_secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature)

async def clone_repository(clone_url: str, commit_sha: str, branch: Optional[str] = None) -> str:
    """
    Clone repository to temporary directory.
    Returns path to cloned repo.
    """
    temp_dir = tempfile.mkdtemp(prefix="shipyard_")
    repo_path = os.path.join(temp_dir, "repo")

    try:
        # Clone the repository
        branch_args = ["--branch", branch] if branch else []
        subprocess.run(
            ["git", "clone", "--depth", "1", *branch_args, clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=120
        )

        # Checkout specific commit if provided
        if commit_sha:
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=repo_path,
                capture_output=True,
                timeout=60
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30
            )

        return repo_path
    except subprocess.TimeoutExpired:
        cleanup_repo(repo_path)
        raise RepositoryError("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        cleanup_repo(repo_path)
        raise RepositoryError(f"Failed to clone repository: {e.stderr.decode(errors='replace')}")

def resolve_head(repo_path: str) -> str:
    """Commit SHA checked out in a cloned repository."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=repo_path,
            check=True,
            capture_output=True,
            timeout=10
        )
    except subprocess.TimeoutExpired:
        raise RepositoryError("Resolving HEAD timed out")
    except subprocess.CalledProcessError as e:
        raise RepositoryError(f"Failed to resolve HEAD: {e.stderr.decode(errors='replace')}")
    return result.stdout.decode().strip()

async def fetch_pipeline_config(repo_path: str) -> Optional[Dict[str, Any]]:
    """
    Read the pipeline file from repository.
    Returns parsed config or None if not found.
    """
    for filename in settings.pipeline_files:
        config_path = os.path.join(repo_path, filename)
        if os.path.exists(config_path):
            try:
                with open(config_path, "r") as f:
                    return yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise PipelineConfigError(f"Invalid YAML in {filename}: {e}")
            except (OSError, UnicodeDecodeError) as e:
                raise PipelineConfigError(f"Cannot read {filename}: {e}")

    return None

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from GitHub webhook payload."""
    repo = payload.get("repository", {})
    head_commit = payload.get("head_commit") or {}

    # Get branch from ref (refs/heads/main -> main)
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": payload.get("pusher", {}).get("name", ""),
        "deleted": bool(payload.get("deleted", False)),
    }

def push_event(webhook_data: Dict[str, Any]) -> TriggerEvent:
    """Trigger event for a parsed push payload."""
    return TriggerEvent(
        type=EventType.PUSH,
        ref=webhook_data["branch"],
        actor=webhook_data["pusher"],
        repo_full_name=webhook_data["repo_full_name"],
        commit_sha=webhook_data["commit_sha"],
    )

def repo_full_name_from_url(clone_url: str) -> str:
    """https://github.com/owner/name.git -> owner/name"""
    path = clone_url.rstrip("/")
    if path.endswith(".git"):
        path = path[:-4]
    path = path.replace(":", "/")
    return "/".join(path.split("/")[-2:])

def cleanup_repo(repo_path: str):
    """Clean up cloned repository."""
    if repo_path:
        # Remove the parent temp directory
        shutil.rmtree(os.path.dirname(repo_path), ignore_errors=True)
