"""Turn commits of the current repository into patch files for the ``patches`` list."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from .errors import AmbiguousRevision, EmptyRangeError, PatchGenerationError
from .references import PATCH_SUFFIX, parse_patch_spec
from .tools.vcs import GitRepository
from .utils.slug import normalize_subject

LOGGER = logging.getLogger(__name__)

__all__ = ["PatchFile", "PatchGenerator"]


@dataclass(frozen=True, slots=True)
class PatchFile:
    """A patch written to the patches directory."""

    name: str
    path: Path
    commits: Tuple[str, ...]
    content: bytes


class PatchGenerator:
    """Write ``git format-patch`` output for a revision or a range to disk.

    The file holds the exact bytes git produced (no signature line), so
    regenerating a patch from the same range yields an identical file and
    ``git am`` reproduces the original commits.
    """

    def __init__(self, repo: GitRepository, patches_dir: Path) -> None:
        self.repo = repo
        self.patches_dir = patches_dir

    def generate(self, commit_range: str, name: str | None = None) -> PatchFile:
        range_args, commits = self._resolve(commit_range.strip())
        content = self.repo.format_patch(range_args)
        if not content.strip():
            # format-patch skips merge commits.
            raise EmptyRangeError(f"{commit_range} contains no commits that can be written as a patch")

        stem = self._patch_name(name, commits[-1])
        self.patches_dir.mkdir(parents=True, exist_ok=True)
        path = self.patches_dir / f"{stem}{PATCH_SUFFIX}"
        if path.exists():
            LOGGER.info("Overwriting %s", path)
        path.write_bytes(content)
        LOGGER.info("Wrote %d commit(s) to %s", len(commits), path)
        return PatchFile(name=stem, path=path, commits=tuple(commits), content=content)

    def _resolve(self, commit_range: str) -> Tuple[List[str], List[str]]:
        if not commit_range:
            raise AmbiguousRevision("No revision given")
        if "..." in commit_range:
            raise PatchGenerationError(f"Symmetric ranges such as {commit_range!r} are not supported; use A..B")

        if ".." not in commit_range:
            commit = self._resolve_endpoint(commit_range)
            return ["-1", commit], [commit]

        start, _, end = commit_range.partition("..")
        start_id = self._resolve_endpoint(start or "HEAD")
        end_id = self._resolve_endpoint(end or "HEAD")
        commits = self.repo.commits_between(start_id, end_id)
        if not commits:
            raise EmptyRangeError(f"{commit_range} contains no commits")
        return [f"{start_id}..{end_id}"], commits

    def _resolve_endpoint(self, revision: str) -> str:
        if self.repo.is_ambiguous(revision):
            raise AmbiguousRevision(f"{revision!r} matches more than one object; use a longer id")
        commit = self.repo.resolve_commit(revision)
        if commit is None:
            raise AmbiguousRevision(f"{revision!r} does not name a commit")
        return commit

    def _patch_name(self, name: str | None, newest: str) -> str:
        if name:
            return parse_patch_spec(name).name
        return normalize_subject(self.repo.commit_message(newest)) or newest
