"""External collaborators: the ``git`` executable and the GitHub API."""

from .github import GitHubSource, PullRequestHead, SourceResolver
from .vcs import ConflictInfo, GitCheckpoint, GitError, GitRepository, GitTimeout, MergeConflict

__all__ = [
    "ConflictInfo",
    "GitCheckpoint",
    "GitError",
    "GitHubSource",
    "GitRepository",
    "GitTimeout",
    "MergeConflict",
    "PullRequestHead",
    "SourceResolver",
]
