"""
Run admission - turns an admitted trigger event into a queued pipeline run.
"""

import logging
import uuid
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.src.config import get_settings
from api.src.models.pipeline import PipelineRun, Repository
from api.src.services.github import (
    RepositoryError,
    cleanup_repo,
    clone_repository,
    fetch_pipeline_config,
    resolve_head,
)
from api.src.services.pipeline_parser import PipelineConfigError, parse_pipeline_dict
from api.src.services.queue import enqueue_pipeline_run
from api.src.services.trigger import TriggerConfig, TriggerEvent, evaluate

logger = logging.getLogger(__name__)
settings = get_settings()

async def get_or_create_repository(db: AsyncSession, repo_info: Dict[str, Any]) -> Repository:
    result = await db.execute(
        select(Repository).where(Repository.full_name == repo_info["repo_full_name"])
    )
    repository = result.scalar_one_or_none()

    if not repository:
        repository = Repository(
            id=uuid.uuid4(),
            name=repo_info.get("repo_name") or repo_info["repo_full_name"].split("/")[-1],
            full_name=repo_info["repo_full_name"],
            clone_url=repo_info["clone_url"],
        )
        db.add(repository)
        await db.flush()

    return repository

async def admit_run(db: AsyncSession, event: TriggerEvent, repo_info: Dict[str, Any]) -> Dict[str, Any]:
    """
    Load the repository's pipeline file, evaluate the trigger and queue a run.
    Rejected events create nothing.
    """
    repo_path = None
    try:
        repo_path = await clone_repository(
            repo_info["clone_url"],
            repo_info.get("commit_sha", ""),
            branch=event.branch or None,
        )

        if not repo_info.get("commit_sha"):
            repo_info = {**repo_info, "commit_sha": resolve_head(repo_path)}

        pipeline_config = await fetch_pipeline_config(repo_path)

        if not pipeline_config:
            logger.info(f"No pipeline config found in {repo_info['repo_full_name']}")
            return {"status": "skipped", "reason": "No pipeline configuration found"}

        validated_config = parse_pipeline_dict(pipeline_config, settings.default_branches)

    except PipelineConfigError as e:
        logger.error(f"Invalid pipeline config: {e}")
        return {"status": "error", "reason": str(e)}
    except RepositoryError as e:
        logger.error(f"Failed to process repository: {e}")
        return {"status": "error", "reason": str(e)}
    finally:
        if repo_path:
            cleanup_repo(repo_path)

    decision = evaluate(event, TriggerConfig(**validated_config["trigger"]))
    if not decision.admit:
        logger.info(f"Event on {repo_info['repo_full_name']} not admitted: {decision.reason}")
        return {"status": "skipped", "reason": decision.reason}

    repository = await get_or_create_repository(db, repo_info)

    pipeline_run = PipelineRun(
        id=uuid.uuid4(),
        repository_id=repository.id,
        commit_sha=repo_info["commit_sha"],
        branch=event.branch,
        event_type=event.type.value,
        status="pending",
        triggered_by=event.actor,
        config=validated_config,
    )
    db.add(pipeline_run)
    await db.commit()

    # Enqueue for processing
    await enqueue_pipeline_run(
        run_id=str(pipeline_run.id),
        config=validated_config,
        repo_info={**repo_info, "branch": event.branch},
        params=decision.params,
    )

    logger.info(f"Pipeline run {pipeline_run.id} created and queued ({decision.reason})")

    return {
        "status": "queued",
        "run_id": str(pipeline_run.id),
        "reason": decision.reason,
    }
