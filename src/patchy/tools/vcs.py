"""Git helpers used by the fetch and merge stages.

Everything goes through the ``git`` executable.  Output is decoded leniently
except where byte fidelity matters (``format-patch``), and every call can be
bounded by a timeout.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Set

LOGGER = logging.getLogger(__name__)

# Never let git block on an interactive credential prompt.
_GIT_ENV_OVERRIDES = {"GIT_TERMINAL_PROMPT": "0", "LC_ALL": "C"}


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        stdout: str = "",
        stderr: str = "",
        returncode: int | None = None,
    ) -> None:
        super().__init__(message)
        self.command = tuple(command)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


class GitTimeout(GitError):
    """Raised when a git command exceeds its timeout."""


@dataclass(slots=True)
class ConflictInfo:
    """Paths left unmerged by a failed merge or patch application."""

    paths: tuple[str, ...]
    output: str


class MergeConflict(GitError):
    """Raised when a merge or ``git am`` stops on conflicts."""

    def __init__(self, message: str, conflict: ConflictInfo) -> None:
        super().__init__(message, stdout=conflict.output)
        self.conflict = conflict


@dataclass(slots=True)
class GitCheckpoint:
    """Snapshot of the working branch at a point in time.

    The checkpoint records the current ``HEAD`` and the set of pre-existing
    untracked paths.  Rolling back aborts any in-progress merge or ``am``
    session, hard-resets to the recorded commit and removes only the
    untracked files that appeared after the checkpoint was taken.
    """

    repo: "GitRepository"
    label: str
    head: str | None
    baseline_untracked: tuple[str, ...]
    created_at: float

    def rollback(self) -> None:
        """Restore the repository to the checkpoint."""

        self.repo.restore_checkpoint(self)


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str, *, timeout: float | None = None) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")
        self.timeout = timeout

    @classmethod
    def discover(cls, start: Path | str | None = None, *, timeout: float | None = None) -> "GitRepository":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate, timeout=timeout)
        raise GitError(f"Unable to locate a git repository from {path}")

    # ------------------------------------------------------------------ git IO
    def _spawn(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        command = ["git", *args]
        env = os.environ.copy()
        env.update(_GIT_ENV_OVERRIDES)
        LOGGER.debug("$ git %s", " ".join(args))
        try:
            return subprocess.run(
                command,
                cwd=self.root,
                env=env,
                capture_output=True,
                text=False,
                check=False,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise GitTimeout(
                f"git {' '.join(args)} timed out after {timeout:g}s",
                command=command,
            ) from error

    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        process = self._spawn(args, timeout=timeout)
        stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
        stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
        result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(
                f"git {' '.join(args)} failed: {message}",
                command=process.args,
                stdout=stdout,
                stderr=stderr,
                returncode=result.returncode,
            )
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    def git_bytes(self, *args: str) -> bytes:
        """Execute ``git`` and return its raw standard output."""

        process = self._spawn(list(args))
        if process.returncode != 0:
            stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
            raise GitError(
                f"git {' '.join(args)} failed: {stderr.strip() or 'unknown git error'}",
                command=process.args,
                stderr=stderr,
                returncode=process.returncode,
            )
        return process.stdout or b""

    # ---------------------------------------------------------------- objects
    def resolve_commit(self, revision: str) -> str | None:
        """Return the full id of the commit ``revision`` names, or ``None``."""

        result = self._run_git(["rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def is_ambiguous(self, revision: str) -> bool:
        """Return ``True`` when ``revision`` is a short id matching several objects."""

        result = self._run_git(["rev-parse", "--verify", revision], check=False)
        return "ambiguous" in result.stderr.lower()

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self._run_git(["merge-base", "--is-ancestor", ancestor, descendant], check=False)
        return result.returncode == 0

    def resolve_commit_range(self, commit_range: str) -> List[str]:
        """Return the commits of ``commit_range`` oldest first."""

        result = self._run_git(["rev-list", "--reverse", commit_range, "--"], check=True)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def commit_message(self, revision: str = "HEAD") -> str:
        result = self._run_git(["log", "-1", "--format=%B", revision], check=True)
        return result.stdout

    def tree_id(self, revision: str = "HEAD") -> str:
        result = self._run_git(["rev-parse", f"{revision}^{{tree}}"], check=True)
        return result.stdout.strip()

    # -------------------------------------------------------------- branches
    def head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def ref_exists(self, ref: str) -> bool:
        result = self._run_git(["show-ref", "--verify", "--quiet", ref], check=False)
        return result.returncode == 0

    def branch_exists(self, name: str) -> bool:
        return self.ref_exists(f"refs/heads/{name}")

    def create_or_reset_branch(self, name: str, start_point: str) -> None:
        """Check out ``name`` pointing at ``start_point``, creating it if needed."""

        self._run_git(["checkout", "--quiet", "-B", name, start_point], check=True)

    def force_branch(self, name: str, commit: str) -> None:
        """Point the (non checked-out) branch ``name`` at ``commit``."""

        self._run_git(["branch", "--force", name, commit], check=True)

    def checkout(self, name: str) -> None:
        self._run_git(["checkout", "--quiet", name], check=True)

    def commits_between(self, base: str, tip: str) -> List[str]:
        return self.resolve_commit_range(f"{base}..{tip}")

    # ---------------------------------------------------------------- config
    def get_config(self, key: str) -> str | None:
        result = self._run_git(["config", "--get", key], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def set_config(self, key: str, value: str) -> None:
        self._run_git(["config", key, value], check=True)

    # --------------------------------------------------------------- remotes
    def remote_url(self, name: str) -> str | None:
        result = self._run_git(["remote", "get-url", name], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def add_remote(self, name: str, url: str) -> None:
        self._run_git(["remote", "add", name, url], check=True)

    def ensure_remote(self, name: str, url: str) -> bool:
        """Make ``name`` point at ``url``.  Returns ``True`` when the remote was added."""

        existing = self.remote_url(name)
        if existing is None:
            self.add_remote(name, url)
            return True
        if existing != url:
            LOGGER.info("Updating URL of remote %s: %s -> %s", name, existing, url)
            self._run_git(["remote", "set-url", name, url], check=True)
        return False

    def fetch(self, remote: str, refspec: str, *, timeout: float | None = None) -> None:
        """Fetch ``refspec`` from ``remote`` without tags."""

        self._run_git(
            ["fetch", "--no-tags", "--quiet", remote, refspec],
            check=True,
            timeout=timeout if timeout is not None else self.timeout,
        )

    # ----------------------------------------------------------- integration
    def merge_squash(self, ref: str) -> None:
        """Stage the changes of ``ref`` relative to ``HEAD`` without committing.

        Raises :class:`MergeConflict` when git stops with unmerged paths.
        """

        result = self._run_git(["merge", "--squash", "--no-stat", ref], check=False)
        if result.returncode != 0:
            paths = self.conflicted_paths()
            output = f"{result.stdout}\n{result.stderr}".strip()
            if paths or "conflict" in output.lower():
                raise MergeConflict(f"Merging {ref} stopped on conflicts", ConflictInfo(paths, output))
            raise GitError(
                f"git merge --squash {ref} failed: {output or 'unknown git error'}",
                stdout=result.stdout,
                stderr=result.stderr,
                returncode=result.returncode,
            )

    def apply_mailbox(self, patch_path: Path) -> None:
        """Apply a ``format-patch`` mailbox as commits with ``git am``.

        On failure the ``am`` session is left in progress so the conflict can be
        inspected; :meth:`abort_mailbox` discards it.
        """

        result = self._run_git(["am", "--keep-cr", "--3way", str(patch_path)], check=False)
        if result.returncode != 0:
            output = f"{result.stdout}\n{result.stderr}".strip()
            raise MergeConflict(
                f"Applying {patch_path.name} failed",
                ConflictInfo(self.conflicted_paths(), output),
            )

    def mailbox_in_progress(self) -> bool:
        git_dir = self._git_dir()
        return (git_dir / "rebase-apply").exists()

    def abort_mailbox(self) -> None:
        if self.mailbox_in_progress():
            self._run_git(["am", "--abort"], check=True)

    def conflicted_paths(self) -> tuple[str, ...]:
        result = self._run_git(["diff", "--name-only", "--diff-filter=U"], check=False)
        return tuple(line.strip() for line in result.stdout.splitlines() if line.strip())

    def has_staged_changes(self) -> bool:
        result = self._run_git(["diff", "--cached", "--quiet"], check=False)
        return result.returncode != 0

    def commit(self, message: str, *, allow_empty: bool = False, amend: bool = False) -> str:
        """Commit the index with ``message`` and return the new commit id."""

        args: List[str] = ["commit", "--quiet", "--no-verify", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        if amend:
            args.append("--amend")
        self._run_git(args, check=True)
        head = self.head()
        if head is None:
            raise GitError("HEAD is missing after commit")
        return head

    def reset_hard(self, revision: str = "HEAD") -> None:
        self._run_git(["reset", "--quiet", "--hard", revision], check=True)

    def add(self, *paths: str) -> None:
        self._run_git(["add", "--all", "--", *paths], check=True)

    def format_patch(self, commit_range: Sequence[str]) -> bytes:
        """Return the ``format-patch`` mailbox for ``commit_range`` as raw bytes."""

        return self.git_bytes("format-patch", "--stdout", "--no-signature", *commit_range)

    # ------------------------------------------------------------- repo status
    def _git_dir(self) -> Path:
        result = self._run_git(["rev-parse", "--git-dir"], check=True)
        git_dir = Path(result.stdout.strip())
        if not git_dir.is_absolute():
            git_dir = self.root / git_dir
        return git_dir

    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip().strip('"'))))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        entries = self._status_entries()
        paths: Set[Path] = set()
        for status, path in entries:
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def untracked_files(self) -> List[Path]:
        """Return the list of untracked files/directories."""

        return [path for status, path in self._status_entries() if status == "??"]

    def is_clean(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when the working tree has no pending changes."""

        return not self.working_tree_changes(include_untracked=include_untracked)

    # ------------------------------------------------------------- checkpoints
    def create_checkpoint(self, label: str | None = None) -> GitCheckpoint:
        """Record the current ``HEAD`` and untracked files."""

        head = self.head()
        baseline_untracked = tuple(sorted(path.as_posix() for path in self.untracked_files()))
        checkpoint_label = label or head or "working-tree"
        return GitCheckpoint(
            repo=self,
            label=checkpoint_label,
            head=head,
            baseline_untracked=baseline_untracked,
            created_at=time.time(),
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Restore the repository to the state captured by ``checkpoint``."""

        if checkpoint.repo is not self:
            raise GitError("Checkpoint does not belong to this repository.")

        self.abort_mailbox()
        self._run_git(["merge", "--abort"], check=False)
        self.reset_hard(checkpoint.head or "HEAD")

        baseline = {Path(entry) for entry in checkpoint.baseline_untracked}
        current_untracked = set(self.untracked_files())
        extra = sorted(
            (path for path in current_untracked if path not in baseline),
            key=lambda item: len(item.parts),
            reverse=True,
        )

        for relative in extra:
            target = self.root / relative
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            elif target.exists() or target.is_symlink():
                target.unlink(missing_ok=True)


__all__ = [
    "ConflictInfo",
    "GitCheckpoint",
    "GitError",
    "GitRepository",
    "GitTimeout",
    "MergeConflict",
]
