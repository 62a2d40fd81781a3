"""
Ephemeral source workspaces.
"""

import logging
import os
import shutil
import subprocess
import tempfile

from controller.src.models.step import SourceRef

logger = logging.getLogger(__name__)

class CheckoutError(Exception):
    """Raised when the source checkout fails."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code

def create_workspace(run_id: str) -> str:
    """Create a fresh temporary directory for a run."""
    return tempfile.mkdtemp(prefix=f"shipyard_{run_id[:8]}_")

def clone_repository(source: SourceRef, workspace: str, timeout: int = 120) -> str:
    """
    Shallow clone the source into <workspace>/repo.
    Returns path to cloned repo.
    """
    repo_path = os.path.join(workspace, "repo")

    try:
        subprocess.run(
            ["git", "clone", "--depth", "1", "--branch", source.branch, source.clone_url, repo_path]
            if source.branch
            else ["git", "clone", "--depth", "1", source.clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=timeout,
        )

        # Checkout specific commit if provided
        if source.commit_sha:
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", source.commit_sha],
                cwd=repo_path,
                capture_output=True,
                timeout=60,
            )
            subprocess.run(
                ["git", "checkout", source.commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30,
            )

        return repo_path
    except subprocess.TimeoutExpired:
        raise CheckoutError("Repository clone timed out", exit_code=124)
    except subprocess.CalledProcessError as e:
        raise CheckoutError(f"Failed to clone repository: {e.stderr.decode(errors='replace')}", exit_code=e.returncode)

def cleanup_workspace(workspace: str):
    """Remove a run workspace."""
    if workspace and os.path.exists(workspace):
        shutil.rmtree(workspace, ignore_errors=True)
        logger.debug(f"Removed workspace {workspace}")
