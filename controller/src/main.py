"""
Shipyard Controller - Main entry point.

    python -m controller.src.main                 start the queue worker
    python -m controller.src.main run ...         run one pipeline locally
"""

import argparse
import asyncio
import logging
import sys
import uuid

import yaml
from pydantic import ValidationError

from controller.src.config import get_settings
from controller.src.models.step import PipelineJob
from controller.src.runtime.client import init_docker_client
from controller.src.services.executor import create_runner
from controller.src.services.status_reporter import CommitStatusSink, StatusReporter
from controller.src.worker import run_worker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipyard-controller")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("worker", help="Consume runs from the Redis queue (default)")

    run = subparsers.add_parser("run", help="Build and publish a single commit, exit with the run's exit code")
    run.add_argument("--config", required=True, help="Path to the pipeline file (.pipeline.yml)")
    run.add_argument("--clone-url", required=True)
    run.add_argument("--ref", default="main", help="Branch to build")
    run.add_argument("--sha", default="", help="Commit to build (default: branch head)")
    run.add_argument("--repo", default="", help="owner/name, used for commit statuses")
    run.add_argument("--actor", default="cli")

    return parser

def run_once(args: argparse.Namespace) -> int:
    with open(args.config, "r") as f:
        config = yaml.safe_load(f) or {}

    try:
        job = PipelineJob.from_queue({
            "run_id": str(uuid.uuid4()),
            "config": config,
            "event_type": "manual",
            "actor": args.actor,
            "repo_info": {
                "clone_url": args.clone_url,
                "commit_sha": args.sha,
                "branch": args.ref,
                "repo_full_name": args.repo,
            },
        })
    except (KeyError, ValidationError) as e:
        logger.error(f"Invalid pipeline configuration: {e}")
        return 2

    settings = get_settings()
    reporter = StatusReporter([CommitStatusSink()] if settings.github_token else [])
    run = asyncio.run(create_runner(reporter).run(job))
    print(yaml.safe_dump(run.summary(), sort_keys=False))
    return run.exit_code

def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logger.info("Starting Shipyard Controller")
    logger.info(f"Redis URL: {settings.redis_url}")

    # Initialize Docker client
    if not init_docker_client():
        logger.error("Failed to initialize Docker client")
        sys.exit(1)

    if args.command == "run":
        sys.exit(run_once(args))

    # Start worker
    logger.info("Starting worker...")
    run_worker()

if __name__ == "__main__":
    main()
