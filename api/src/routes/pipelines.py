from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional
from uuid import UUID

from api.src.db.database import get_db
from api.src.models.pipeline import PipelineRun, PipelineStage, Repository
from api.src.models.run import (
    ArtifactReference,
    ManualTriggerRequest,
    PipelineRunResponse,
    RepositoryResponse,
)
from api.src.services.github import repo_full_name_from_url
from api.src.services.queue import get_run_status, request_cancellation
from api.src.services.runs import admit_run
from api.src.services.trigger import EventType, TriggerEvent

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

TERMINAL_STATUSES = ("succeeded", "failed")

async def _load_run(db: AsyncSession, run_id: UUID) -> PipelineRun:
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.stages))
        .where(PipelineRun.id == run_id)
    )
    result = await db.execute(query)
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return run

@router.post("/runs")
async def trigger_run(request: ManualTriggerRequest, db: AsyncSession = Depends(get_db)):
    """Manually dispatch a run; always admitted if the repository has a valid pipeline file."""
    full_name = repo_full_name_from_url(request.repository_url)
    event = TriggerEvent(
        type=EventType.MANUAL,
        ref=request.branch,
        actor=request.actor,
        repo_full_name=full_name,
        commit_sha=request.commit_sha or "",
    )
    repo_info = {
        "repo_name": full_name.split("/")[-1],
        "repo_full_name": full_name,
        "clone_url": request.repository_url,
        "commit_sha": request.commit_sha or "",
        "branch": request.branch,
        "pusher": request.actor,
    }
    return await admit_run(db, event, repo_info)

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List all pipeline runs."""
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.stages))
        .order_by(PipelineRun.created_at.desc())
    )

    if status:
        query = query.where(PipelineRun.status == status)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    return result.scalars().all()

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a specific pipeline run."""
    return await _load_run(db, run_id)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a pipeline run."""
    run = await _load_run(db, run_id)

    # Get live status from Redis
    live_status = await get_run_status(str(run_id))

    return {
        "run_id": str(run_id),
        "db_status": run.status,
        "live_status": live_status,
        "exit_code": run.exit_code,
        "failure_kind": run.failure_kind,
        "stages": [
            {
                "name": stage.name,
                "status": stage.status,
                "exit_code": stage.exit_code,
                "order": stage.stage_order,
            }
            for stage in run.stages
        ]
    }

@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get captured logs for all stages in a pipeline run."""
    await _load_run(db, run_id)

    query = (
        select(PipelineStage)
        .where(PipelineStage.run_id == run_id)
        .order_by(PipelineStage.stage_order)
    )
    result = await db.execute(query)
    stages = result.scalars().all()

    return {
        "run_id": str(run_id),
        "stages": [
            {
                "name": stage.name,
                "status": stage.status,
                "log_ref": stage.log_ref,
                "logs": stage.logs,
                "finished_at": stage.finished_at,
            }
            for stage in stages
        ]
    }

@router.get("/runs/{run_id}/artifact", response_model=ArtifactReference)
async def get_run_artifact(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Published image reference of a succeeded run."""
    run = await _load_run(db, run_id)

    if run.status != "succeeded" or not run.artifact_digest:
        raise HTTPException(status_code=404, detail="Run has no published artifact")

    return ArtifactReference(
        run_id=run.id,
        digest=run.artifact_digest,
        tag=run.image_tag,
        registry_url=run.registry_url,
        published_at=run.published_at,
    )

@router.post("/runs/{run_id}/cancel", status_code=202)
async def cancel_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Request cancellation; the run stops before its next stage."""
    run = await _load_run(db, run_id)

    if run.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Run already {run.status}")

    await request_cancellation(str(run_id))
    return {"run_id": str(run_id), "status": "cancel_requested"}

@router.get("/repositories", response_model=List[RepositoryResponse])
async def list_repositories(db: AsyncSession = Depends(get_db)):
    """List all registered repositories."""
    query = select(Repository).order_by(Repository.created_at.desc())
    result = await db.execute(query)
    return result.scalars().all()

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Get pipeline statistics."""
    # Count runs by status
    status_query = (
        select(PipelineRun.status, func.count(PipelineRun.id))
        .group_by(PipelineRun.status)
    )
    result = await db.execute(status_query)
    status_counts = {row[0]: row[1] for row in result.all()}

    # Count failures by kind
    kind_query = (
        select(PipelineRun.failure_kind, func.count(PipelineRun.id))
        .where(PipelineRun.failure_kind.is_not(None))
        .group_by(PipelineRun.failure_kind)
    )
    result = await db.execute(kind_query)
    failure_counts = {row[0]: row[1] for row in result.all()}

    # Count total repositories
    repo_count_query = select(func.count(Repository.id))
    result = await db.execute(repo_count_query)
    repo_count = result.scalar()

    return {
        "repositories": repo_count,
        "runs": status_counts,
        "failures": failure_counts,
        "total_runs": sum(status_counts.values()),
    }
