"""Build the patchy branch: reset it to the base, then integrate every source in order.

Work items are applied front to back.  Each item is fetched, then merged
(``git merge --squash`` plus one commit) or applied (``git am``), and its
outcome is recorded in a :class:`~patchy.schema.RunResult` once the step has
completed.  Structural problems are raised before the working branch is
touched; per-item problems are recorded and handled according to the
:class:`~patchy.config.FailurePolicy`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Pattern, Sequence, Tuple

from .config import FailurePolicy, PatchyConfig, RerunPolicy, config_dir
from .errors import (
    BaseBranchNotFound,
    BranchNameConflict,
    ConfigError,
    DirtyWorkingTree,
    FetchError,
    FetchErrorKind,
    IntegrationError,
)
from .fetch import FetchExecutor, MaterializedRef, PatchLibrary
from .naming import SOURCE_NAMESPACE, NameRegistry
from .references import (
    PinnedRevision,
    SourceReference,
    parse_branch_spec,
    parse_patch_spec,
    parse_pr_spec,
    parse_repo_slug,
    parse_revision_spec,
)
from .schema import FailureReason, Outcome, OutcomeStatus, RunResult, SkipReason, WorkItem
from .tools.github import SourceResolver
from .tools.vcs import GitCheckpoint, GitError, GitRepository, MergeConflict

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CONFIG_COMMIT_MESSAGE",
    "MergePipeline",
    "OWNERSHIP_KEY",
    "TRAILER_KEY",
    "build_work_items",
    "is_tool_owned",
    "trailer_value",
]

TRAILER_KEY = "Patchy-Item"
OWNERSHIP_KEY = "patchy-managed"
CONFIG_COMMIT_MESSAGE = "patchy: Restore configuration files"

_TRAILER_PATTERN: Pattern[str] = re.compile(rf"^{TRAILER_KEY}:[ \t]*(?P<value>.+?)[ \t]*$", re.MULTILINE)
_TRAILER_LINE: Pattern[str] = re.compile(r"^[A-Za-z0-9-]+: .+$")


def build_work_items(config: PatchyConfig, registry: NameRegistry | None = None) -> List[WorkItem]:
    """Parse the configured sources into ordered work items.

    Pull requests come first, then branches, then patches, each in file
    order.  Repeated entries are dropped with a warning; the same source
    listed with two different pins is a configuration error.
    """

    registry = registry if registry is not None else NameRegistry()
    upstream = parse_repo_slug(config.repo) if config.repo else None

    references: List[SourceReference] = []
    if config.pull_requests and upstream is None:
        raise ConfigError("`pull-requests` are listed but `repo` is not set; pull requests need an upstream repository.")
    for raw in config.pull_requests:
        references.append(parse_pr_spec(raw, repo=upstream))
    for raw in config.branches:
        references.append(parse_branch_spec(raw))
    for raw in config.patches:
        references.append(parse_patch_spec(raw))

    seen: dict[tuple[str, ...], SourceReference] = {}
    items: List[WorkItem] = []
    for reference in references:
        previous = seen.get(reference.identity)
        if previous is not None:
            if previous.pin != reference.pin:
                raise ConfigError(f"{reference.label} is listed twice with different pinned commits.")
            LOGGER.warning("Ignoring duplicate entry %s", reference.label)
            continue
        seen[reference.identity] = reference
        items.append(WorkItem(index=len(items), reference=reference, names=registry.assign(reference)))
    return items


def trailer_value(item: WorkItem) -> str:
    """Value of the ``Patchy-Item`` trailer recorded for ``item``."""

    pin = item.reference.pin
    if pin is None:
        return item.label
    return f"{item.label} @ {pin.commit}"


def with_trailer(message: str, value: str) -> str:
    body = message.rstrip()
    last_paragraph = body.rsplit("\n\n", 1)[-1]
    if body.count("\n\n") and all(_TRAILER_LINE.match(line) for line in last_paragraph.splitlines()):
        return f"{body}\n{TRAILER_KEY}: {value}\n"
    return f"{body}\n\n{TRAILER_KEY}: {value}\n"


def is_tool_owned(repo: GitRepository, branch: str) -> bool:
    return repo.get_config(f"branch.{branch}.{OWNERSHIP_KEY}") == "true"


def mark_tool_owned(repo: GitRepository, branch: str) -> None:
    repo.set_config(f"branch.{branch}.{OWNERSHIP_KEY}", "true")


@dataclass(frozen=True, slots=True)
class _ResumePoint:
    count: int
    commit: str


class MergePipeline:
    """Reset the working branch to its base and integrate every work item."""

    def __init__(
        self,
        repo: GitRepository,
        source: SourceResolver,
        *,
        patches_dir: Path | None = None,
    ) -> None:
        self.repo = repo
        self.source = source
        self.patches_dir = patches_dir if patches_dir is not None else config_dir(repo.root)

    def run(
        self,
        config: PatchyConfig,
        policy: FailurePolicy | None = None,
        *,
        rerun: RerunPolicy | None = None,
    ) -> RunResult:
        policy = policy or config.failure_policy
        rerun = rerun or config.rerun_policy
        working = config.local_branch

        items = build_work_items(config)
        library = PatchLibrary.snapshot(self.patches_dir)

        with FetchExecutor(self.repo, self.source, library, timeout=config.fetch_timeout) as executor:
            base = self._preflight(config, executor)
            result = RunResult(working_branch=working, base_commit=base)

            start = _ResumePoint(0, base)
            if rerun is RerunPolicy.RESUME:
                start = self._resume_point(items, working, base)

            self._discard_config_changes()
            stopped = False
            try:
                LOGGER.info("Resetting %s to %s", working, start.commit[:10])
                self.repo.create_or_reset_branch(working, start.commit)
                mark_tool_owned(self.repo, working)

                for item in items[: start.count]:
                    result.record(item, Outcome.skipped(SkipReason.ALREADY_APPLIED, "kept from the previous run"))

                for item in items[start.count :]:
                    if stopped:
                        result.record(item, Outcome.skipped(SkipReason.PREVIOUS_FAILURE))
                        continue
                    outcome = self._process(item, executor, policy)
                    result.record(item, outcome)
                    if outcome.status is OutcomeStatus.FAILED and policy is FailurePolicy.ABORT:
                        stopped = True
            finally:
                # The snapshot holds edits the reset discarded; write them back however the run ends.
                self._write_back_config(library)

            if not stopped:
                self._commit_config(config, library, result)
        return result

    # ------------------------------------------------------------- preflight
    def _preflight(self, config: PatchyConfig, executor: FetchExecutor) -> str:
        """Check the repository can be built on and return the base commit."""

        working = config.local_branch
        self._check_clean()

        if working == SOURCE_NAMESPACE or working.startswith(f"{SOURCE_NAMESPACE}/"):
            raise BranchNameConflict(
                f"Branch {working!r} is inside the {SOURCE_NAMESPACE}/ namespace patchy uses for fetched sources.",
                details={"branch": working},
            )
        if self.repo.branch_exists(working) and not is_tool_owned(self.repo, working):
            raise BranchNameConflict(
                f"Branch {working!r} already exists and was not created by patchy. "
                f"Pick another `local-branch`, delete the branch, or adopt it with "
                f"`git config branch.{working}.{OWNERSHIP_KEY} true`.",
                details={"branch": working},
            )

        branch, pin = parse_revision_spec(config.remote_branch)
        if config.repo:
            return self._fetch_base(config, executor, branch, pin)

        if branch == working:
            raise BranchNameConflict(
                f"`local-branch` and `remote-branch` are both {working!r}; the base would be overwritten.",
                details={"branch": working},
            )
        tip = self.repo.resolve_commit(branch)
        if tip is None:
            raise BaseBranchNotFound(f"Base branch {branch!r} does not exist.", details={"branch": branch})
        if pin is not None:
            return self._verify_base_pin(executor, pin, tip, branch)
        return tip

    def _check_clean(self) -> None:
        if self.repo.mailbox_in_progress():
            raise DirtyWorkingTree("A `git am` session is in progress. Finish it or run `git am --abort` first.")
        config_prefix = self._config_prefix()
        dirty = [
            path
            for path in self.repo.working_tree_changes(include_untracked=False)
            if config_prefix is None or not _is_within(path, config_prefix)
        ]
        if dirty:
            listing = ", ".join(path.as_posix() for path in dirty[:10])
            raise DirtyWorkingTree(
                f"Uncommitted changes to tracked files: {listing}. Commit or stash them first.",
                details={"paths": [path.as_posix() for path in dirty]},
            )

    def _fetch_base(
        self,
        config: PatchyConfig,
        executor: FetchExecutor,
        branch: str,
        pin: PinnedRevision | None,
    ) -> str:
        upstream = parse_repo_slug(config.repo or "")
        try:
            return executor.fetch_base(upstream, branch, pin)
        except FetchError as error:
            if error.kind in {FetchErrorKind.NOT_FOUND, FetchErrorKind.PINNED_REVISION_NOT_FOUND}:
                raise BaseBranchNotFound(
                    f"Base {upstream}/{branch} is not available: {error.message}",
                    details={"branch": branch, "repo": str(upstream)},
                ) from error
            raise

    def _verify_base_pin(self, executor: FetchExecutor, pin: PinnedRevision, tip: str, branch: str) -> str:
        try:
            return executor.verify_pin(pin, tip, subject=branch)
        except FetchError as error:
            raise BaseBranchNotFound(error.message, details={"branch": branch, "pin": pin.commit}) from error

    # --------------------------------------------------------------- resume
    def _resume_point(self, items: Sequence[WorkItem], working: str, base: str) -> _ResumePoint:
        tip = self.repo.resolve_commit(f"refs/heads/{working}")
        if tip is None:
            return _ResumePoint(0, base)
        if not self.repo.is_ancestor(base, tip):
            LOGGER.info("%s is not based on %s any more, rebuilding it", working, base[:10])
            return _ResumePoint(0, base)

        point = _ResumePoint(0, base)
        recorded = self._recorded_items(base, tip)
        for (value, commit), item in zip(recorded, items):
            if value != trailer_value(item):
                break
            point = _ResumePoint(point.count + 1, commit)
        LOGGER.info("Keeping %d of %d item(s) from the previous run", point.count, len(items))
        return point

    def _recorded_items(self, base: str, tip: str) -> List[Tuple[str, str]]:
        recorded = []
        for commit in self.repo.commits_between(base, tip):
            match = _TRAILER_PATTERN.search(self.repo.commit_message(commit))
            if match is not None:
                recorded.append((match.group("value"), commit))
        return recorded

    # ---------------------------------------------------------------- items
    def _process(self, item: WorkItem, executor: FetchExecutor, policy: FailurePolicy) -> Outcome:
        checkpoint = self.repo.create_checkpoint(item.label)
        try:
            try:
                materialized = executor.materialize(item)
            except FetchError as error:
                LOGGER.warning("Could not fetch %s: %s", item.label, error)
                return Outcome.failed(FailureReason.FETCH_FAILED, error.message, fetch_error=error.kind)
            except GitError as error:
                LOGGER.warning("Could not prepare %s: %s", item.label, error)
                return Outcome.failed(FailureReason.GIT_ERROR, str(error))

            try:
                commit = self._integrate(materialized)
            except IntegrationError as error:
                LOGGER.warning("%s", error.message)
                if policy is FailurePolicy.CONTINUE:
                    checkpoint.rollback()
                return Outcome.failed(FailureReason.CONFLICT_DURING_APPLY, error.message, paths=error.paths)
            except GitError as error:
                LOGGER.warning("Could not integrate %s: %s", item.label, error)
                checkpoint.rollback()
                return Outcome.failed(FailureReason.GIT_ERROR, str(error))
        except KeyboardInterrupt:
            LOGGER.warning("Interrupted while processing %s, rolling back", item.label)
            self._rollback(checkpoint)
            raise

        LOGGER.info("Applied %s as %s", item.label, commit[:10])
        return Outcome.applied(commit)

    def _integrate(self, materialized: MaterializedRef) -> str:
        item = materialized.item
        trailer = trailer_value(item)
        try:
            if materialized.patch_path is not None:
                self.repo.apply_mailbox(materialized.patch_path)
                message = with_trailer(self.repo.commit_message("HEAD"), trailer)
                return self.repo.commit(message, amend=True)

            if materialized.commit is None:
                raise GitError(f"{item.label} was not fetched")
            self.repo.merge_squash(materialized.commit)
        except MergeConflict as error:
            paths = error.conflict.paths
            summary = f"; conflicting paths: {', '.join(paths)}" if paths else ""
            raise IntegrationError(
                f"{item.kind.capitalize()} {item.label} conflicts with the branch{summary}",
                paths=paths,
                output=error.conflict.output,
            ) from error

        message = f"patchy: Merge {materialized.description}\n\n{TRAILER_KEY}: {trailer}\n"
        return self.repo.commit(message, allow_empty=True)

    def _rollback(self, checkpoint: GitCheckpoint) -> None:
        try:
            checkpoint.rollback()
        except GitError as error:
            LOGGER.error("Rolling back to %s failed: %s", checkpoint.head, error)

    # --------------------------------------------------------------- config
    def _config_prefix(self) -> Path | None:
        try:
            return self.patches_dir.resolve().relative_to(self.repo.root)
        except ValueError:
            return None

    def _discard_config_changes(self) -> None:
        # Tracked edits to the configuration directory are held by the snapshot.
        prefix = self._config_prefix()
        if prefix is None:
            return
        changed = [path for path in self.repo.working_tree_changes(include_untracked=False) if _is_within(path, prefix)]
        if changed:
            LOGGER.debug("Discarding tracked changes to %s before the reset", prefix)
            self.repo.reset_hard()

    def _write_back_config(self, library: PatchLibrary) -> None:
        if not library.files:
            return
        prefix = self._config_prefix()
        unmerged = []
        if prefix is not None:
            # A conflicted file belongs to the failed item and is left for inspection.
            for path in self.repo.conflicted_paths():
                relative = Path(path)
                if _is_within(relative, prefix):
                    unmerged.append(relative.relative_to(prefix).as_posix())
        written = library.restore(skip=unmerged)
        if written:
            LOGGER.debug("Restored %d configuration file(s)", len(written))

    def _commit_config(self, config: PatchyConfig, library: PatchLibrary, result: RunResult) -> None:
        if not library.files:
            return
        prefix = self._config_prefix()
        # Nothing was integrated: the branch stays identical to its base.
        if not config.restore_config or prefix is None or self.repo.head() == result.base_commit:
            return
        try:
            self.repo.add(prefix.as_posix())
            if not self.repo.has_staged_changes():
                return
            result.config_commit = self.repo.commit(CONFIG_COMMIT_MESSAGE)
        except GitError as error:
            LOGGER.warning("Could not commit the configuration files: %s", error)
            return
        LOGGER.info("Committed configuration files as %s", result.config_commit[:10])


def _is_within(path: Path, prefix: Path) -> bool:
    return path == prefix or prefix in path.parents
