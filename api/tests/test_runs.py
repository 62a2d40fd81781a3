"""Tests for run admission."""

import pytest

from api.src.models.pipeline import PipelineRun, Repository
from api.src.services import github, runs
from api.src.services.trigger import EventType, TriggerEvent


PIPELINE = {
    "name": "orders-service",
    "trigger": {"branches": ["main"], "max_concurrent_per_ref": 1},
    "build": {
        "builder_image": "maven:3.9-eclipse-temurin-17",
        "package_command": "mvn -B package",
        "artifact_path": "target/app.jar",
        "runtime_image": "eclipse-temurin:17-jre",
    },
    "publish": {"repository": "shop/orders", "tag": "latest"},
}

REPO_INFO = {
    "repo_name": "orders",
    "repo_full_name": "shop/orders",
    "clone_url": "https://github.com/shop/orders.git",
    "commit_sha": "abc123",
    "branch": "main",
    "pusher": "dev",
}

@pytest.fixture
def repository_stub(monkeypatch, tmp_path):
    calls = {"enqueued": [], "cleaned": [], "cloned": []}
    config = {"value": PIPELINE}

    async def fake_clone(clone_url, commit_sha, branch=None):
        calls["cloned"].append((clone_url, commit_sha, branch))
        return str(tmp_path / "repo")

    async def fake_fetch(repo_path):
        return config["value"]

    async def fake_enqueue(run_id, config, repo_info, params=None):
        calls["enqueued"].append({"run_id": run_id, "config": config, "repo_info": repo_info, "params": params})

    monkeypatch.setattr(runs, "clone_repository", fake_clone)
    monkeypatch.setattr(runs, "fetch_pipeline_config", fake_fetch)
    monkeypatch.setattr(runs, "cleanup_repo", lambda path: calls["cleaned"].append(path))
    monkeypatch.setattr(runs, "resolve_head", lambda path: "f00dfeed")
    monkeypatch.setattr(runs, "enqueue_pipeline_run", fake_enqueue)
    calls["config"] = config
    return calls

@pytest.mark.asyncio
async def test_push_to_matching_branch_is_queued(repository_stub, fake_db):
    db = fake_db
    event = TriggerEvent(type=EventType.PUSH, ref="refs/heads/main", actor="dev", commit_sha="abc123")

    result = await runs.admit_run(db, event, dict(REPO_INFO))

    assert result["status"] == "queued"
    assert db.commits == 1
    assert [type(obj) for obj in db.added] == [Repository, PipelineRun]
    run = db.added[1]
    assert str(run.id) == result["run_id"]
    assert run.status == "pending"
    assert run.event_type == "push"

    [job] = repository_stub["enqueued"]
    assert job["run_id"] == result["run_id"]
    assert job["params"]["max_concurrent_per_ref"] == 1
    assert job["config"]["publish"]["retries"] == 3
    assert repository_stub["cleaned"]

@pytest.mark.asyncio
async def test_push_to_other_branch_creates_nothing(repository_stub, fake_db):
    db = fake_db
    event = TriggerEvent(type=EventType.PUSH, ref="refs/heads/feature-x", actor="dev", commit_sha="abc123")

    result = await runs.admit_run(db, event, {**REPO_INFO, "branch": "feature-x"})

    assert result["status"] == "skipped"
    assert "does not match" in result["reason"]
    assert db.added == []
    assert db.commits == 0
    assert repository_stub["enqueued"] == []

@pytest.mark.asyncio
async def test_manual_dispatch_resolves_head(repository_stub, fake_db):
    db = fake_db
    event = TriggerEvent(type=EventType.MANUAL, ref="feature-x", actor="ops")

    result = await runs.admit_run(db, event, {**REPO_INFO, "commit_sha": "", "branch": "feature-x"})

    assert result["status"] == "queued"
    run = db.added[-1]
    assert run.commit_sha == "f00dfeed"
    assert run.event_type == "manual"
    assert run.triggered_by == "ops"
    assert repository_stub["enqueued"][0]["repo_info"]["commit_sha"] == "f00dfeed"

@pytest.mark.asyncio
async def test_existing_repository_is_reused(repository_stub, fake_db):
    existing = Repository(name="orders", full_name="shop/orders", clone_url=REPO_INFO["clone_url"])
    fake_db.results = [existing]
    db = fake_db
    event = TriggerEvent(type=EventType.PUSH, ref="main", actor="dev", commit_sha="abc123")

    await runs.admit_run(db, event, dict(REPO_INFO))

    assert [type(obj) for obj in db.added] == [PipelineRun]

@pytest.mark.asyncio
async def test_invalid_pipeline_file(repository_stub, fake_db):
    repository_stub["config"]["value"] = {"name": "broken", "publish": {"repository": "shop/orders"}}
    db = fake_db
    event = TriggerEvent(type=EventType.PUSH, ref="main", actor="dev", commit_sha="abc123")

    result = await runs.admit_run(db, event, dict(REPO_INFO))

    assert result["status"] == "error"
    assert "build" in result["reason"]
    assert db.added == []

@pytest.mark.asyncio
async def test_missing_pipeline_file(repository_stub, fake_db):
    repository_stub["config"]["value"] = None
    db = fake_db
    event = TriggerEvent(type=EventType.PUSH, ref="main", actor="dev", commit_sha="abc123")

    result = await runs.admit_run(db, event, dict(REPO_INFO))

    assert result == {"status": "skipped", "reason": "No pipeline configuration found"}

@pytest.mark.asyncio
async def test_broken_pipeline_yaml_is_reported(repository_stub, fake_db, monkeypatch, tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / ".pipeline.yml").write_text("build: [unclosed\n  publish: {")
    monkeypatch.setattr(runs, "fetch_pipeline_config", github.fetch_pipeline_config)
    event = TriggerEvent(type=EventType.PUSH, ref="main", actor="dev", commit_sha="abc123")

    result = await runs.admit_run(fake_db, event, dict(REPO_INFO))

    assert result["status"] == "error"
    assert "Invalid YAML in .pipeline.yml" in result["reason"]
    assert fake_db.added == []
    assert repository_stub["cleaned"]

@pytest.mark.asyncio
async def test_unresolvable_head_is_reported(repository_stub, fake_db, monkeypatch):
    def broken_head(path):
        raise github.RepositoryError("Failed to resolve HEAD: not a git repository")

    monkeypatch.setattr(runs, "resolve_head", broken_head)
    event = TriggerEvent(type=EventType.MANUAL, ref="main", actor="ops")

    result = await runs.admit_run(fake_db, event, {**REPO_INFO, "commit_sha": ""})

    assert result == {"status": "error", "reason": "Failed to resolve HEAD: not a git repository"}
    assert repository_stub["enqueued"] == []
