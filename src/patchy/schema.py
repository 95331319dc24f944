"""Typed records produced while building the patchy branch."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Tuple

from .errors import FetchErrorKind
from .naming import RefNames
from .references import BranchRef, PatchRef, PullRequestRef, SourceReference

__all__ = [
    "FailureReason",
    "Outcome",
    "OutcomeStatus",
    "RunResult",
    "SkipReason",
    "WorkItem",
]


@dataclass(frozen=True, slots=True)
class WorkItem:
    """One reference to fetch and integrate, at its position in the run."""

    index: int
    reference: SourceReference
    names: RefNames

    @property
    def label(self) -> str:
        return self.reference.label

    @property
    def kind(self) -> str:
        if isinstance(self.reference, PullRequestRef):
            return "pull request"
        if isinstance(self.reference, BranchRef):
            return "branch"
        if isinstance(self.reference, PatchRef):
            return "patch"
        return "reference"


class OutcomeStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    PREVIOUS_FAILURE = "previous-failure"
    ALREADY_APPLIED = "already-applied"


class FailureReason(str, Enum):
    FETCH_FAILED = "fetch-failed"
    CONFLICT_DURING_APPLY = "conflict-during-apply"
    GIT_ERROR = "git-error"


@dataclass(frozen=True, slots=True)
class Outcome:
    """Result of processing a single work item."""

    status: OutcomeStatus
    reason: SkipReason | FailureReason | None = None
    detail: str = ""
    commit: str | None = None
    fetch_error: FetchErrorKind | None = None
    paths: Tuple[str, ...] = ()

    @classmethod
    def applied(cls, commit: str, detail: str = "") -> "Outcome":
        return cls(OutcomeStatus.APPLIED, commit=commit, detail=detail)

    @classmethod
    def skipped(cls, reason: SkipReason, detail: str = "") -> "Outcome":
        return cls(OutcomeStatus.SKIPPED, reason=reason, detail=detail)

    @classmethod
    def failed(
        cls,
        reason: FailureReason,
        detail: str,
        *,
        fetch_error: FetchErrorKind | None = None,
        paths: Tuple[str, ...] = (),
    ) -> "Outcome":
        return cls(OutcomeStatus.FAILED, reason=reason, detail=detail, fetch_error=fetch_error, paths=paths)

    def describe(self) -> str:
        if self.status is OutcomeStatus.APPLIED:
            text = f"applied as {self.commit[:10]}" if self.commit else "applied"
        elif self.reason is not None:
            text = f"{self.status.value} ({self.reason.value})"
        else:
            text = self.status.value
        if self.detail:
            text = f"{text}: {self.detail}"
        return text


@dataclass
class RunResult:
    """Outcomes of a run, in application order.

    Entries are only appended once a step has completed, so an interrupted run
    never reports a half-applied item.
    """

    working_branch: str
    base_commit: str | None = None
    entries: List[Tuple[WorkItem, Outcome]] = field(default_factory=list)
    config_commit: str | None = None

    def record(self, item: WorkItem, outcome: Outcome) -> None:
        self.entries.append((item, outcome))

    def __iter__(self) -> Iterator[Tuple[WorkItem, Outcome]]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def _with_status(self, status: OutcomeStatus) -> List[WorkItem]:
        return [item for item, outcome in self.entries if outcome.status is status]

    @property
    def applied(self) -> List[WorkItem]:
        return self._with_status(OutcomeStatus.APPLIED)

    @property
    def skipped(self) -> List[WorkItem]:
        return self._with_status(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> List[WorkItem]:
        return self._with_status(OutcomeStatus.FAILED)

    @property
    def succeeded(self) -> bool:
        return not self.failed

    def outcome_for(self, item: WorkItem) -> Outcome | None:
        for candidate, outcome in self.entries:
            if candidate == item:
                return outcome
        return None

    def summary(self) -> List[str]:
        lines = []
        for item, outcome in self.entries:
            lines.append(f"{item.index + 1:>3}. {item.kind} {item.label}: {outcome.describe()}")
        return lines
