"""Materialise work items as local commits.

Pull requests and branches are fetched into ``refs/remotes/<remote>/...`` and
the item's local branch is pointed at the pinned commit (or the fetched tip).
Patches are read from a :class:`PatchLibrary` snapshot and written to a
temporary file that ``git am`` can consume.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Dict, Iterable, Mapping, Tuple

from .errors import FetchError, FetchErrorKind
from .naming import remote_name_for_repo
from .references import BranchRef, PatchRef, PinnedRevision, PullRequestRef, RepoSlug
from .schema import WorkItem
from .tools.github import PullRequestHead, SourceResolver
from .tools.vcs import GitError, GitRepository, GitTimeout

LOGGER = logging.getLogger(__name__)

__all__ = [
    "FetchExecutor",
    "MaterializedRef",
    "PatchLibrary",
    "classify_fetch_failure",
]

_AUTH_MARKERS: Tuple[str, ...] = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "permission denied",
)
_NOT_FOUND_MARKERS: Tuple[str, ...] = (
    "couldn't find remote ref",
    "repository not found",
    "does not appear to be a git repository",
)


def classify_fetch_failure(error: GitError) -> FetchErrorKind:
    """Map a failed ``git fetch`` to a :class:`FetchErrorKind`."""

    if isinstance(error, GitTimeout):
        return FetchErrorKind.TIMEOUT
    text = error.output.lower()
    if any(marker in text for marker in _AUTH_MARKERS):
        return FetchErrorKind.AUTH
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return FetchErrorKind.NOT_FOUND
    return FetchErrorKind.NETWORK


class PatchLibrary:
    """In-memory copy of the files in the configuration directory.

    The directory normally lives in the working tree, so it can disappear when
    the working branch is reset to an upstream base.  Taking a snapshot first
    keeps the patch files (and the configuration itself) available for the
    whole run.
    """

    def __init__(self, directory: Path, files: Mapping[str, bytes]) -> None:
        self.directory = directory
        self._files: Dict[str, bytes] = dict(files)

    @classmethod
    def snapshot(cls, directory: Path) -> "PatchLibrary":
        files: Dict[str, bytes] = {}
        if directory.is_dir():
            for path in sorted(directory.rglob("*")):
                if path.is_file():
                    files[path.relative_to(directory).as_posix()] = path.read_bytes()
        LOGGER.debug("Snapshot of %s holds %d file(s)", directory, len(files))
        return cls(directory, files)

    @property
    def files(self) -> Mapping[str, bytes]:
        return dict(self._files)

    def __contains__(self, name: object) -> bool:
        return name in self._files

    def read(self, name: str) -> bytes:
        try:
            return self._files[name]
        except KeyError:
            raise FetchError(
                FetchErrorKind.PATCH_FILE_NOT_FOUND,
                f"Patch file {self.directory / name} does not exist",
                details={"path": str(self.directory / name)},
            ) from None

    def restore(self, directory: Path | None = None, *, skip: Iterable[str] = ()) -> list[Path]:
        """Write the snapshot files back below ``directory``; return the paths written.

        Names in ``skip`` (relative to the directory) are left as they are.
        """

        target = directory or self.directory
        skipped = set(skip)
        written = []
        for name, content in self._files.items():
            if name in skipped:
                continue
            path = target / name
            if path.is_file() and path.read_bytes() == content:
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
            written.append(path)
        return written


@dataclass(frozen=True, slots=True)
class MaterializedRef:
    """A work item whose content is available locally."""

    item: WorkItem
    commit: str | None = None
    patch_path: Path | None = None
    pull_request: PullRequestHead | None = None

    @property
    def is_patch(self) -> bool:
        return self.patch_path is not None

    @property
    def description(self) -> str:
        if self.pull_request is not None:
            return f"{self.item.label}: {self.pull_request.title}"
        return self.item.label


class FetchExecutor:
    """Fetch sources one at a time.

    Use as a context manager; temporary patch files are removed on exit.
    """

    def __init__(
        self,
        repo: GitRepository,
        source: SourceResolver,
        patches: PatchLibrary,
        *,
        timeout: float | None = None,
    ) -> None:
        self.repo = repo
        self.source = source
        self.patches = patches
        self.timeout = timeout
        self._scratch: tempfile.TemporaryDirectory[str] | None = None

    def __enter__(self) -> "FetchExecutor":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        if self._scratch is not None:
            self._scratch.cleanup()
            self._scratch = None

    # ------------------------------------------------------------------ items
    def materialize(self, item: WorkItem) -> MaterializedRef:
        reference = item.reference
        if isinstance(reference, PatchRef):
            return self._materialize_patch(item, reference)
        if isinstance(reference, PullRequestRef):
            return self._materialize_pull_request(item, reference)
        if isinstance(reference, BranchRef):
            return self._materialize_branch(item, reference)
        raise TypeError(f"Unsupported reference type: {type(reference).__name__}")

    def _materialize_patch(self, item: WorkItem, reference: PatchRef) -> MaterializedRef:
        content = self.patches.read(reference.filename)
        if self._scratch is None:
            self._scratch = tempfile.TemporaryDirectory(prefix="patchy-")
        path = Path(self._scratch.name) / f"{item.index:04d}-{reference.filename}"
        path.write_bytes(content)
        return MaterializedRef(item=item, patch_path=path)

    def _materialize_pull_request(self, item: WorkItem, reference: PullRequestRef) -> MaterializedRef:
        if reference.repo is None:
            raise ValueError(f"{reference.label} is not bound to a repository")
        cached = self._already_fetched(item, reference.pin)
        if cached is not None:
            return MaterializedRef(item=item, commit=cached)

        head = self.source.resolve_pull_request(reference.repo, reference.number)
        LOGGER.info(
            "%s is %s/%s:%s (%s)", reference.label, head.head_owner, head.head_repo, head.head_branch, head.title
        )
        commit = self._fetch_and_pin(
            item,
            url=head.clone_url,
            source_ref=head.fetch_ref,
            tracking_branch=head.head_branch,
            pin=reference.pin,
        )
        return MaterializedRef(item=item, commit=commit, pull_request=head)

    def _materialize_branch(self, item: WorkItem, reference: BranchRef) -> MaterializedRef:
        cached = self._already_fetched(item, reference.pin)
        if cached is not None:
            return MaterializedRef(item=item, commit=cached)

        commit = self._fetch_and_pin(
            item,
            url=self.source.repository_url(reference.owner, reference.repo),
            source_ref=f"refs/heads/{reference.branch}",
            tracking_branch=reference.branch,
            pin=reference.pin,
        )
        return MaterializedRef(item=item, commit=commit)

    def _already_fetched(self, item: WorkItem, pin: PinnedRevision | None) -> str | None:
        # Only a pinned item can be reused; an unpinned one must pick up the latest tip.
        if pin is None:
            return None
        local = self.repo.resolve_commit(f"refs/heads/{item.names.local_branch_name}")
        if local == pin.commit:
            LOGGER.info("%s is already fetched at %s", item.label, pin.short)
            return local
        return None

    def _fetch_and_pin(
        self,
        item: WorkItem,
        *,
        url: str,
        source_ref: str,
        tracking_branch: str,
        pin: PinnedRevision | None,
    ) -> str:
        remote = item.names.remote_name
        if remote is None:
            raise ValueError(f"{item.label} has no remote")
        tip = self.fetch_ref(remote, url, source_ref, tracking_branch, subject=item.label)
        commit = self.verify_pin(pin, tip, subject=item.label) if pin is not None else tip
        self.repo.force_branch(item.names.local_branch_name, commit)
        LOGGER.debug("%s -> %s", item.names.local_branch_name, commit)
        return commit

    # ---------------------------------------------------------------- primitives
    def fetch_ref(self, remote: str, url: str, source_ref: str, tracking_branch: str, *, subject: str) -> str:
        """Fetch ``source_ref`` from ``url`` into ``refs/remotes/<remote>/<tracking_branch>``.

        Returns the fetched commit id.
        """

        tracking_ref = f"refs/remotes/{remote}/{tracking_branch}"
        LOGGER.info("Fetching %s from %s", subject, url)
        try:
            self.repo.ensure_remote(remote, url)
            self.repo.fetch(remote, f"+{source_ref}:{tracking_ref}", timeout=self.timeout)
        except GitError as error:
            kind = classify_fetch_failure(error)
            raise FetchError(
                kind,
                f"Could not fetch {subject} from {url}: {error.stderr.strip() or error}",
                details={"remote": remote, "ref": source_ref},
            ) from error

        tip = self.repo.resolve_commit(tracking_ref)
        if tip is None:
            raise FetchError(FetchErrorKind.NOT_FOUND, f"{source_ref} of {url} did not resolve to a commit")
        return tip

    def verify_pin(self, pin: PinnedRevision, tip: str, *, subject: str) -> str:
        """Check that ``pin`` exists and is reachable from ``tip``."""

        if self.repo.resolve_commit(pin.commit) is None or not self.repo.is_ancestor(pin.commit, tip):
            raise FetchError(
                FetchErrorKind.PINNED_REVISION_NOT_FOUND,
                f"Commit {pin.commit} is not part of {subject}",
                details={"pin": pin.commit, "tip": tip},
            )
        return pin.commit

    def fetch_base(self, repo: RepoSlug, branch: str, pin: PinnedRevision | None = None) -> str:
        """Fetch the base branch of the upstream repository and return the commit to build on."""

        subject = f"{repo}/{branch}"
        remote = remote_name_for_repo(repo)
        url = self.source.repository_url(repo.owner, repo.repo)
        tip = self.fetch_ref(remote, url, f"refs/heads/{branch}", branch, subject=subject)
        if pin is None:
            return tip
        return self.verify_pin(pin, tip, subject=subject)
