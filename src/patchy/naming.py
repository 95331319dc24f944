"""Deterministic remote and branch names for source references.

Names depend only on what identifies a reference (repository, PR number,
branch, patch name), never on its pinned commit, so re-pinning an entry
reuses the remote and local branch fetched by an earlier run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from .errors import NamingCollision
from .references import BranchRef, PatchRef, PullRequestRef, RepoSlug, SourceReference
from .utils.slug import ref_path, ref_segment

__all__ = [
    "NameRegistry",
    "REMOTE_PREFIX",
    "RefNames",
    "SOURCE_NAMESPACE",
    "name_for",
    "remote_name_for_repo",
]

REMOTE_PREFIX = "patchy"
# Local branches holding fetched sources live under this directory of refs/heads.
SOURCE_NAMESPACE = "patchy-src"


@dataclass(frozen=True, slots=True)
class RefNames:
    """Local names assigned to one reference.

    ``remote_name`` is ``None`` for patches; their ``local_branch_name`` is a
    reserved label and no branch is created for it.
    """

    remote_name: str | None
    local_branch_name: str

    @property
    def tracking_prefix(self) -> str | None:
        if self.remote_name is None:
            return None
        return f"refs/remotes/{self.remote_name}"


def _repo_segments(repo: RepoSlug) -> tuple[str, str]:
    return (
        ref_segment(repo.owner, lowercase=True, fallback="owner"),
        ref_segment(repo.repo, lowercase=True, fallback="repo"),
    )


def remote_name_for_repo(repo: RepoSlug) -> str:
    """Name of the remote shared by every branch fetched from ``repo``."""

    owner, name = _repo_segments(repo)
    return f"{REMOTE_PREFIX}-branch-{owner}.{name}"


def name_for(reference: SourceReference) -> RefNames:
    """Return the ``(remote_name, local_branch_name)`` pair for ``reference``."""

    if isinstance(reference, PullRequestRef):
        if reference.repo is None:
            raise ValueError(f"pull request #{reference.number} is not bound to a repository")
        owner, name = _repo_segments(reference.repo)
        return RefNames(
            remote_name=f"{REMOTE_PREFIX}-pr-{reference.number}-{owner}.{name}",
            local_branch_name=f"{SOURCE_NAMESPACE}/{owner}/{name}/pr-{reference.number}",
        )
    if isinstance(reference, BranchRef):
        owner, name = _repo_segments(reference.slug)
        return RefNames(
            remote_name=remote_name_for_repo(reference.slug),
            local_branch_name=f"{SOURCE_NAMESPACE}/{owner}/{name}/branch/{ref_path(reference.branch)}",
        )
    if isinstance(reference, PatchRef):
        return RefNames(
            remote_name=None,
            local_branch_name=f"{SOURCE_NAMESPACE}/patch/{ref_segment(reference.name, fallback='patch')}",
        )
    raise TypeError(f"Unsupported reference type: {type(reference).__name__}")


@dataclass
class NameRegistry:
    """Names handed out during one run, keyed by reference identity."""

    _by_identity: Dict[tuple[str, ...], RefNames] = field(default_factory=dict)
    _owners: Dict[str, tuple[str, ...]] = field(default_factory=dict)
    _remote_sources: Dict[str, tuple[str, ...]] = field(default_factory=dict)

    def assign(self, reference: SourceReference) -> RefNames:
        identity = reference.identity
        existing = self._by_identity.get(identity)
        if existing is not None:
            return existing

        names = name_for(reference)
        owner = self._owners.get(names.local_branch_name)
        if owner is not None and owner != identity:
            raise NamingCollision(
                f"{reference.label} and {'/'.join(owner)} both map to branch {names.local_branch_name}",
                details={"branch": names.local_branch_name},
            )
        if names.remote_name is not None:
            # Branches of one repository legitimately share a remote.
            source = identity[:3]
            remote_owner = self._remote_sources.get(names.remote_name)
            if remote_owner is not None and remote_owner != source:
                raise NamingCollision(
                    f"{reference.label} and {'/'.join(remote_owner[1:])} both map to remote {names.remote_name}",
                    details={"remote": names.remote_name},
                )
            self._remote_sources[names.remote_name] = source
        self._owners[names.local_branch_name] = identity
        self._by_identity[identity] = names
        return names

    def get(self, reference: SourceReference) -> RefNames | None:
        return self._by_identity.get(reference.identity)

    def __len__(self) -> int:
        return len(self._by_identity)
