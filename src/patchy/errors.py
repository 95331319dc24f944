"""Error taxonomy shared by the patchy components.

Configuration and structural errors are fatal and raised before the working
branch is touched.  Fetch and integration errors describe a single work item;
the merge pipeline records them in its run result instead of raising.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

__all__ = [
    "AmbiguousRevision",
    "BaseBranchNotFound",
    "BranchNameConflict",
    "ConfigError",
    "DirtyWorkingTree",
    "EmptyRangeError",
    "FetchError",
    "FetchErrorKind",
    "IntegrationError",
    "InvalidReferenceFormat",
    "NamingCollision",
    "PatchGenerationError",
    "PatchyError",
    "StructuralError",
]


class PatchyError(Exception):
    """Base class for every error patchy reports to the user."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class ConfigError(PatchyError):
    """Raised when the configuration is missing, malformed or incomplete."""


class InvalidReferenceFormat(ConfigError):
    """Raised when a PR, branch or patch spec cannot be parsed."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f"Invalid reference {raw!r}: {reason}", details={"raw": raw})
        self.raw = raw
        self.reason = reason


class StructuralError(PatchyError):
    """Raised when the repository is not in a state the pipeline can start from."""


class BaseBranchNotFound(StructuralError):
    """The configured base branch (or its pinned commit) does not exist."""


class BranchNameConflict(StructuralError):
    """The working branch name belongs to something patchy did not create."""


class DirtyWorkingTree(StructuralError):
    """Tracked files have uncommitted changes."""


class NamingCollision(StructuralError):
    """Two distinct references were assigned the same local names."""


class FetchErrorKind(str, Enum):
    """Classification of a failure to materialise a reference locally."""

    NETWORK = "network"
    AUTH = "auth"
    NOT_FOUND = "not-found"
    TIMEOUT = "timeout"
    PINNED_REVISION_NOT_FOUND = "pinned-revision-not-found"
    PATCH_FILE_NOT_FOUND = "patch-file-not-found"


class FetchError(PatchyError):
    """A reference could not be fetched or read."""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.kind = kind

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"


class IntegrationError(PatchyError):
    """Merging or applying a work item onto the working branch conflicted."""

    def __init__(self, message: str, *, paths: tuple[str, ...] = (), output: str = "") -> None:
        super().__init__(message, details={"paths": list(paths)})
        self.paths = paths
        self.output = output


class PatchGenerationError(PatchyError):
    """Base class for ``gen-patch`` failures."""


class EmptyRangeError(PatchGenerationError):
    """The requested commit range contains no commits."""


class AmbiguousRevision(PatchGenerationError):
    """A range endpoint does not resolve to exactly one commit."""
