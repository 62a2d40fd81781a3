"""
Pipeline YAML parser and validator.

A pipeline file declares how a repository is packaged, wrapped into a
runtime image and published:

    name: orders-service
    trigger:
      branches: [main, "release/*"]
      max_concurrent_per_ref: 1
      cancel_in_progress: true
    build:
      builder_image: maven:3.9-eclipse-temurin-17
      package_command: mvn -B package -DskipTests
      artifact_path: target/app.jar
      runtime_image: eclipse-temurin:17-jre
      entrypoint: ["java", "-jar", "/app/app.jar"]
    publish:
      repository: shop/orders
      tag: latest
"""

import re
import yaml
from typing import List, Dict, Any, Optional

class PipelineConfigError(Exception):
    """Raised when pipeline configuration is invalid."""
    pass

DEFAULT_BUILD_TIMEOUT = 900
DEFAULT_PUBLISH_TIMEOUT = 300
DEFAULT_PUBLISH_RETRIES = 3

REPOSITORY_PATTERN = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
TAG_PLACEHOLDERS = {"branch", "sha", "short_sha"}

def parse_pipeline_config(yaml_content: str, default_branches: Optional[List[str]] = None) -> Dict[str, Any]:
    """Parse pipeline YAML configuration from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return validate_config(config, default_branches)

def parse_pipeline_dict(config: Dict[str, Any], default_branches: Optional[List[str]] = None) -> Dict[str, Any]:
    """Validate pipeline configuration from dict."""
    return validate_config(config, default_branches)

def validate_config(config: Optional[Dict[str, Any]], default_branches: Optional[List[str]] = None) -> Dict[str, Any]:
    """Validate pipeline configuration structure."""
    if not config:
        raise PipelineConfigError("Empty pipeline configuration")

    if not isinstance(config, dict):
        raise PipelineConfigError("Pipeline configuration must be a dictionary")

    # Validate name (optional but recommended)
    name = config.get("name", "Unnamed Pipeline")
    if not isinstance(name, str):
        raise PipelineConfigError("Pipeline 'name' must be a string")

    for section in ("build", "publish"):
        if section not in config:
            raise PipelineConfigError(f"Pipeline must have '{section}' defined")
        if not isinstance(config[section], dict):
            raise PipelineConfigError(f"Pipeline '{section}' must be a dictionary")

    return {
        "name": name,
        "trigger": validate_trigger(config.get("trigger") or {}, default_branches or ["main"]),
        "build": validate_build(config["build"]),
        "publish": validate_publish(config["publish"]),
    }

def _require_string(section: str, values: Dict[str, Any], key: str) -> str:
    if key not in values:
        raise PipelineConfigError(f"'{section}' missing '{key}'")
    if not isinstance(values[key], str) or not values[key].strip():
        raise PipelineConfigError(f"'{section}.{key}' must be a non-empty string")
    return values[key]

def _optional_positive_int(section: str, values: Dict[str, Any], key: str, default: int) -> int:
    value = values.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise PipelineConfigError(f"'{section}.{key}' must be a positive integer")
    return value

def validate_build(build: Dict[str, Any]) -> Dict[str, Any]:
    """Validate the build section."""
    builder_image = _require_string("build", build, "builder_image")
    package_command = _require_string("build", build, "package_command")
    artifact_path = _require_string("build", build, "artifact_path")
    runtime_image = _require_string("build", build, "runtime_image")

    source_path = build.get("source_path", ".")
    if not isinstance(source_path, str) or source_path.startswith("/") or ".." in source_path.split("/"):
        raise PipelineConfigError("'build.source_path' must be a relative path inside the repository")
    if artifact_path.startswith("/") or ".." in artifact_path.split("/"):
        raise PipelineConfigError("'build.artifact_path' must be a relative path inside the source path")

    entrypoint = build.get("entrypoint", [])
    if isinstance(entrypoint, str):
        entrypoint = [entrypoint]
    if not isinstance(entrypoint, list) or not all(isinstance(part, str) for part in entrypoint):
        raise PipelineConfigError("'build.entrypoint' must be a list of strings")

    env = build.get("env", {})
    if not isinstance(env, dict):
        raise PipelineConfigError("'build.env' must be a dictionary")

    return {
        "source_path": source_path,
        "builder_image": builder_image,
        "package_command": package_command,
        "artifact_path": artifact_path,
        "runtime_image": runtime_image,
        "entrypoint": entrypoint,
        "env": {str(k): str(v) for k, v in env.items()},
        "timeout": _optional_positive_int("build", build, "timeout", DEFAULT_BUILD_TIMEOUT),
    }

def validate_publish(publish: Dict[str, Any]) -> Dict[str, Any]:
    """Validate the publish section."""
    repository = _require_string("publish", publish, "repository")
    if not REPOSITORY_PATTERN.match(repository):
        raise PipelineConfigError(f"'publish.repository' is not a valid repository name: {repository}")

    tag = publish.get("tag", "latest")
    if not isinstance(tag, str) or not tag:
        raise PipelineConfigError("'publish.tag' must be a non-empty string")
    placeholders = set(re.findall(r"{(\w*)}", tag))
    unknown = placeholders - TAG_PLACEHOLDERS
    if unknown:
        raise PipelineConfigError(f"'publish.tag' uses unknown placeholders: {', '.join(sorted(unknown))}")

    retries = publish.get("retries", DEFAULT_PUBLISH_RETRIES)
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        raise PipelineConfigError("'publish.retries' must be a non-negative integer")

    return {
        "repository": repository,
        "tag": tag,
        "retries": retries,
        "timeout": _optional_positive_int("publish", publish, "timeout", DEFAULT_PUBLISH_TIMEOUT),
    }

def validate_trigger(trigger: Dict[str, Any], default_branches: List[str]) -> Dict[str, Any]:
    """Validate the trigger section."""
    if not isinstance(trigger, dict):
        raise PipelineConfigError("Pipeline 'trigger' must be a dictionary")

    branches = trigger.get("branches", default_branches)
    if isinstance(branches, str):
        branches = [branches]
    if not isinstance(branches, list) or not all(isinstance(b, str) for b in branches):
        raise PipelineConfigError("'trigger.branches' must be a list of branch patterns")

    limit = trigger.get("max_concurrent_per_ref")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise PipelineConfigError("'trigger.max_concurrent_per_ref' must be a positive integer")

    cancel_in_progress = trigger.get("cancel_in_progress", False)
    if not isinstance(cancel_in_progress, bool):
        raise PipelineConfigError("'trigger.cancel_in_progress' must be a boolean")

    return {
        "branches": branches,
        "max_concurrent_per_ref": limit,
        "cancel_in_progress": cancel_in_progress,
    }
