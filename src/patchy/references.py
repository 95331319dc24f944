"""Parsers for the pull-request, branch and patch reference grammars.

Each grammar has its own parse function and the caller decides which one
applies (the configuration section or CLI command a string came from).
Parsing is pure: nothing here touches git or the network.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Pattern, Union

from .errors import InvalidReferenceFormat

__all__ = [
    "BranchRef",
    "PATCH_SUFFIX",
    "PatchRef",
    "PinnedRevision",
    "PullRequestRef",
    "RepoSlug",
    "SourceReference",
    "parse_branch_spec",
    "parse_patch_spec",
    "parse_pin",
    "parse_pr_spec",
    "parse_repo_slug",
    "parse_revision_spec",
]

PATCH_SUFFIX = ".patch"

_HEX_PATTERN: Pattern[str] = re.compile(r"[0-9a-fA-F]+")
_PR_PATTERN: Pattern[str] = re.compile(r"#?(?P<number>\d+)")
# SHA-1 and SHA-256 object ids.
_COMMIT_ID_LENGTHS = (40, 64)
_PIN_SEPARATOR: Pattern[str] = re.compile(r"^(?P<head>.*)(?:^|\s)@\s*(?P<pin>\S*)$")
_BARE_PIN: Pattern[str] = re.compile(r"^(?P<head>.+)@(?P<pin>[0-9a-fA-F]{40}|[0-9a-fA-F]{64})$")


@dataclass(frozen=True, slots=True)
class PinnedRevision:
    """A full commit id constraining which state of a reference is used."""

    commit: str

    def __str__(self) -> str:
        return self.commit

    @property
    def short(self) -> str:
        return self.commit[:10]


@dataclass(frozen=True, slots=True)
class RepoSlug:
    """``owner/repo`` pair identifying a hosted repository."""

    owner: str
    repo: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True, slots=True)
class PullRequestRef:
    number: int
    repo: RepoSlug | None = None
    pin: PinnedRevision | None = None

    @property
    def identity(self) -> tuple[str, ...]:
        repo = self.repo
        owner = repo.owner.lower() if repo else ""
        name = repo.repo.lower() if repo else ""
        return ("pr", owner, name, str(self.number))

    @property
    def label(self) -> str:
        prefix = str(self.repo) if self.repo else ""
        return f"{prefix}#{self.number}"


@dataclass(frozen=True, slots=True)
class BranchRef:
    owner: str
    repo: str
    branch: str
    pin: PinnedRevision | None = None

    @property
    def slug(self) -> RepoSlug:
        return RepoSlug(self.owner, self.repo)

    @property
    def identity(self) -> tuple[str, ...]:
        return ("branch", self.owner.lower(), self.repo.lower(), self.branch)

    @property
    def label(self) -> str:
        return f"{self.owner}/{self.repo}/{self.branch}"


@dataclass(frozen=True, slots=True)
class PatchRef:
    name: str

    pin = None

    @property
    def filename(self) -> str:
        return f"{self.name}{PATCH_SUFFIX}"

    @property
    def identity(self) -> tuple[str, ...]:
        return ("patch", self.name)

    @property
    def label(self) -> str:
        return f"patch:{self.name}"


SourceReference = Union[PullRequestRef, BranchRef, PatchRef]


def parse_pin(raw: str, *, source: str | None = None) -> PinnedRevision:
    """Validate ``raw`` as a full hexadecimal commit id."""

    value = raw.strip()
    context = source if source is not None else raw
    if not value:
        raise InvalidReferenceFormat(context, "pinned commit is empty")
    if not _HEX_PATTERN.fullmatch(value):
        raise InvalidReferenceFormat(context, f"pinned commit {value!r} is not hexadecimal")
    if len(value) not in _COMMIT_ID_LENGTHS:
        raise InvalidReferenceFormat(
            context,
            f"pinned commit {value!r} must be a full commit id "
            f"({' or '.join(str(length) for length in _COMMIT_ID_LENGTHS)} hex characters)",
        )
    return PinnedRevision(value.lower())


def _split_pin(raw: str) -> tuple[str, PinnedRevision | None]:
    # Git allows "@" in branch names; a bare "@" only separates a full commit id.
    match = _PIN_SEPARATOR.match(raw) or _BARE_PIN.match(raw)
    if match is None:
        return raw.strip(), None
    return match.group("head").strip(), parse_pin(match.group("pin"), source=raw)


def parse_pr_spec(raw: str, *, repo: RepoSlug | None = None) -> PullRequestRef:
    """Parse ``123``, ``#123`` or ``123 @ <commit>``."""

    head, pin = _split_pin(raw.strip())
    match = _PR_PATTERN.fullmatch(head)
    if match is None:
        raise InvalidReferenceFormat(raw, "expected a pull request number such as '1234' or '#1234'")
    number = int(match.group("number"))
    if number <= 0:
        raise InvalidReferenceFormat(raw, "pull request numbers start at 1")
    return PullRequestRef(number=number, repo=repo, pin=pin)


def parse_branch_spec(raw: str) -> BranchRef:
    """Parse ``owner/repo/branch`` with an optional ``@ <commit>`` suffix.

    The branch part may itself contain ``/``.
    """

    head, pin = _split_pin(raw.strip())
    parts = head.split("/")
    if len(parts) < 3:
        raise InvalidReferenceFormat(raw, "expected the form 'owner/repo/branch'")
    owner, repo = parts[0].strip(), parts[1].strip()
    branch = "/".join(parts[2:]).strip()
    if not owner:
        raise InvalidReferenceFormat(raw, "repository owner is empty")
    if not repo:
        raise InvalidReferenceFormat(raw, "repository name is empty")
    if not branch or any(not segment for segment in branch.split("/")):
        raise InvalidReferenceFormat(raw, "branch name is empty")
    return BranchRef(owner=owner, repo=repo, branch=branch, pin=pin)


def parse_patch_spec(raw: str) -> PatchRef:
    """Parse a bare patch name; ``name`` and ``name.patch`` are equivalent."""

    name = raw.strip()
    if name.endswith(PATCH_SUFFIX):
        name = name[: -len(PATCH_SUFFIX)]
    if not name:
        raise InvalidReferenceFormat(raw, "patch name is empty")
    if "/" in name or "\\" in name:
        raise InvalidReferenceFormat(raw, "patch names are file names inside the patches directory, not paths")
    if name in {".", ".."}:
        raise InvalidReferenceFormat(raw, "patch name is not a file name")
    return PatchRef(name=name)


def parse_repo_slug(raw: str) -> RepoSlug:
    """Parse ``owner/repo``."""

    value = raw.strip().removesuffix(".git")
    owner, separator, repo = value.partition("/")
    if not separator or not owner.strip() or not repo.strip() or "/" in repo:
        raise InvalidReferenceFormat(raw, "expected the form 'owner/repo'")
    return RepoSlug(owner.strip(), repo.strip())


def parse_revision_spec(raw: str) -> tuple[str, PinnedRevision | None]:
    """Parse a base branch setting such as ``main`` or ``main @ <commit>``."""

    head, pin = _split_pin(raw.strip())
    if not head:
        raise InvalidReferenceFormat(raw, "branch name is empty")
    return head, pin
