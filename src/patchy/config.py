"""Loading and validating ``.patchy/config.yaml``."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

__all__ = [
    "CONFIG_FILE_NAME",
    "CONFIG_ROOT_ENV",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_FETCH_TIMEOUT",
    "DEFAULT_CONFIG_TEMPLATE",
    "FailurePolicy",
    "PatchyConfig",
    "RerunPolicy",
    "config_dir",
    "config_path",
    "load_config",
    "write_default_config",
]

CONFIG_ROOT_ENV = "PATCHY_CONFIG_ROOT"
DEFAULT_CONFIG_DIR = ".patchy"
CONFIG_FILE_NAME = "config.yaml"
DEFAULT_FETCH_TIMEOUT = 120.0


class FailurePolicy(str, Enum):
    """What the merge pipeline does after a work item fails."""

    ABORT = "abort"
    CONTINUE = "continue"


class RerunPolicy(str, Enum):
    """How a run treats a working branch left behind by a previous run."""

    RESET = "reset"
    RESUME = "resume"


class PatchyConfig(BaseModel):
    """Declarative description of the branch patchy builds."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    repo: Optional[str] = None
    remote_branch: str = Field(alias="remote-branch")
    local_branch: str = Field(alias="local-branch")
    pull_requests: List[str] = Field(default_factory=list, alias="pull-requests")
    branches: List[str] = Field(default_factory=list)
    patches: List[str] = Field(default_factory=list)
    failure_policy: FailurePolicy = Field(FailurePolicy.ABORT, alias="failure-policy")
    rerun_policy: RerunPolicy = Field(RerunPolicy.RESET, alias="rerun-policy")
    fetch_timeout: Optional[float] = Field(DEFAULT_FETCH_TIMEOUT, alias="fetch-timeout", gt=0)
    use_gh_cli: bool = Field(False, alias="use-gh-cli")
    restore_config: bool = Field(True, alias="restore-config")

    @field_validator("repo", mode="before")
    @classmethod
    def _blank_repo_is_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("remote_branch", "local_branch")
    @classmethod
    def _require_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("pull_requests", "branches", "patches", mode="before")
    @classmethod
    def _stringify_entries(cls, value: Any) -> Any:
        # ``- 1234`` in YAML is an integer.
        if value is None:
            return []
        if isinstance(value, list):
            return [str(item) if isinstance(item, int) else item for item in value]
        return value

    @property
    def is_empty(self) -> bool:
        return not (self.pull_requests or self.branches or self.patches)


def config_dir(repo_root: Path) -> Path:
    """Directory holding the config file and patches, relative to ``repo_root``."""

    configured = os.environ.get(CONFIG_ROOT_ENV, "").strip() or DEFAULT_CONFIG_DIR
    path = Path(configured)
    if not path.is_absolute():
        path = repo_root / path
    return path


def config_path(repo_root: Path) -> Path:
    return config_dir(repo_root) / CONFIG_FILE_NAME


def load_config(path: Path) -> PatchyConfig:
    """Load YAML configuration from disk and validate it."""

    if not path.exists():
        raise ConfigError(f"Could not find configuration file at {path}. Create one with `patchy init`.")

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Could not parse {path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level.")

    try:
        return PatchyConfig.model_validate(data)
    except ValidationError as error:
        problems = []
        for item in error.errors():
            location = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
            problems.append(f"  - {location}: {item.get('msg', 'invalid value')}")
        raise ConfigError(f"Invalid configuration in {path}:\n" + "\n".join(problems)) from error


def write_default_config(path: Path, *, overwrite: bool = False) -> Path:
    """Write :data:`DEFAULT_CONFIG_TEMPLATE` to ``path``."""

    if path.exists() and not overwrite:
        raise ConfigError(f"Did not overwrite {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    return path


DEFAULT_CONFIG_TEMPLATE = """\
# Main GitHub repository to fetch from. This is the base into which pull
# requests, branches and patches are merged.
#
#   repo: helix-editor/helix
#
# Leave it empty to use a local branch as the base instead.
repo: ""

# Branch of `repo` (or local branch) to start from. Append " @ <commit>" to
# start from a specific commit instead of the latest one:
#
#   remote-branch: "master @ fccc58957eece10d0818dfa000bf5123e26ee32f"
remote-branch: main

# Branch patchy builds. It is reset on every run, so do not commit to it.
local-branch: patchy

# Pull requests of `repo` to merge, in order. Pin one to a commit with
# "<number> @ <commit>":
#
#   pull-requests:
#     - "12254"
#     - "10000 @ a556aeef3736a3b6b79bb9507d26224f5c0c3449"
pull-requests: []

# Branches of other repositories to merge, as "owner/repo/branch", optionally
# pinned with " @ <commit>":
#
#   branches:
#     - other-user/fork/feature-branch
branches: []

# Patches stored next to this file as `<name>.patch`. Generate them with
# `patchy gen-patch <commit>`.
#
#   patches:
#     - my-patch
patches: []

# abort: stop at the first item that fails and leave it for inspection.
# continue: undo the failing item and keep going.
failure-policy: abort

# reset: always rebuild the branch from scratch.
# resume: keep the items a previous run already merged and continue after them.
rerun-policy: reset

# Seconds before a network operation is abandoned.
fetch-timeout: 120

# Query GitHub through the `gh` CLI (uses its authentication).
use-gh-cli: false

# Commit the contents of this directory onto the built branch.
restore-config: true
"""
