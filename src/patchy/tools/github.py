"""GitHub lookups needed to fetch pull requests and branches.

Only two questions are ever asked of the hosting service: where a repository
can be cloned from, and which repository/branch/commit a pull request's head
lives at.  Requests go through ``httpx`` or, when ``use_gh_cli`` is set,
through ``gh api`` so that authentication and rate limits are handled by the
GitHub CLI.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from ..errors import FetchError, FetchErrorKind
from ..references import RepoSlug

LOGGER = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_WEB_URL = "https://github.com"
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True, slots=True)
class PullRequestHead:
    """Where the head of a pull request can be fetched from."""

    number: int
    head_owner: str
    head_repo: str
    head_branch: str
    head_commit: str
    clone_url: str
    fetch_ref: str
    title: str
    html_url: str


class SourceResolver(Protocol):
    """Remote source collaborator used by the fetch executor."""

    def repository_url(self, owner: str, repo: str) -> str:
        ...

    def resolve_pull_request(self, repo: RepoSlug, number: int) -> PullRequestHead:
        ...


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _OwnerPayload(_Payload):
    login: str


class _RepoPayload(_Payload):
    name: str
    clone_url: str
    owner: _OwnerPayload


class _HeadPayload(_Payload):
    ref: str
    sha: str
    repo: Optional[_RepoPayload] = None


class _PullPayload(_Payload):
    number: int
    title: str
    html_url: str
    head: _HeadPayload
    base: _HeadPayload


class GitHubSource:
    """:class:`SourceResolver` backed by the GitHub REST API."""

    def __init__(
        self,
        *,
        token: str | None = None,
        api_url: str = GITHUB_API_URL,
        web_url: str = GITHUB_WEB_URL,
        timeout: float = DEFAULT_TIMEOUT,
        use_gh_cli: bool = False,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.token = token if token is not None else (os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN"))
        self.api_url = api_url.rstrip("/")
        self.web_url = web_url.rstrip("/")
        self.timeout = timeout
        self.use_gh_cli = use_gh_cli
        self._transport = transport

    def headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "patchy",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def repository_url(self, owner: str, repo: str) -> str:
        return f"{self.web_url}/{owner}/{repo}.git"

    def resolve_pull_request(self, repo: RepoSlug, number: int) -> PullRequestHead:
        payload = self._get_json(f"/repos/{repo.owner}/{repo.repo}/pulls/{number}", subject=f"{repo}#{number}")
        try:
            pull = _PullPayload.model_validate(payload)
        except ValidationError as error:
            raise FetchError(
                FetchErrorKind.NETWORK,
                f"Unexpected response for pull request {repo}#{number}: {error}",
            ) from error

        head_repo = pull.head.repo
        if head_repo is None:
            # The fork was deleted; GitHub still serves the head through the base repository.
            LOGGER.info("Head repository of %s#%d is gone, fetching refs/pull/%d/head", repo, number, number)
            base_repo = pull.base.repo
            clone_url = base_repo.clone_url if base_repo else self.repository_url(repo.owner, repo.repo)
            return PullRequestHead(
                number=number,
                head_owner=repo.owner,
                head_repo=repo.repo,
                head_branch=f"pull/{number}/head",
                head_commit=pull.head.sha,
                clone_url=clone_url,
                fetch_ref=f"refs/pull/{number}/head",
                title=pull.title,
                html_url=pull.html_url,
            )

        return PullRequestHead(
            number=number,
            head_owner=head_repo.owner.login,
            head_repo=head_repo.name,
            head_branch=pull.head.ref,
            head_commit=pull.head.sha,
            clone_url=head_repo.clone_url,
            fetch_ref=f"refs/heads/{pull.head.ref}",
            title=pull.title,
            html_url=pull.html_url,
        )

    # ------------------------------------------------------------------ IO
    def _get_json(self, path: str, *, subject: str) -> Any:
        if self.use_gh_cli:
            return self._gh_api(path, subject=subject)
        return self._http_get(path, subject=subject)

    def _http_get(self, path: str, *, subject: str) -> Any:
        url = f"{self.api_url}{path}"
        LOGGER.debug("GET %s", url)
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(url, headers=self.headers())
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as error:
            raise FetchError(FetchErrorKind.TIMEOUT, f"Timed out looking up {subject}") from error
        except httpx.HTTPStatusError as error:
            raise _status_error(error.response.status_code, subject, error.response.text) from error
        except httpx.RequestError as error:
            raise FetchError(FetchErrorKind.NETWORK, f"Could not reach {self.api_url} for {subject}: {error}") from error
        except ValueError as error:
            raise FetchError(FetchErrorKind.NETWORK, f"GitHub returned invalid JSON for {subject}") from error

    def _gh_api(self, path: str, *, subject: str) -> Any:
        command = ["gh", "api", path.lstrip("/")]
        LOGGER.debug("$ %s", " ".join(command))
        try:
            process = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as error:
            raise FetchError(FetchErrorKind.AUTH, "The GitHub CLI `gh` is not installed") from error
        except subprocess.TimeoutExpired as error:
            raise FetchError(FetchErrorKind.TIMEOUT, f"Timed out looking up {subject} with gh") from error

        if process.returncode != 0:
            stderr = process.stderr.strip()
            if "HTTP 404" in stderr:
                raise FetchError(FetchErrorKind.NOT_FOUND, f"{subject} does not exist")
            if "HTTP 401" in stderr or "HTTP 403" in stderr or "gh auth login" in stderr:
                raise FetchError(FetchErrorKind.AUTH, f"gh is not authorised to read {subject}: {stderr}")
            raise FetchError(FetchErrorKind.NETWORK, f"gh api failed for {subject}: {stderr}")
        try:
            return json.loads(process.stdout)
        except json.JSONDecodeError as error:
            raise FetchError(FetchErrorKind.NETWORK, f"gh returned invalid JSON for {subject}") from error


def _status_error(status: int, subject: str, body: str) -> FetchError:
    if status == 404:
        return FetchError(FetchErrorKind.NOT_FOUND, f"{subject} does not exist")
    if status in {401, 403}:
        hint = " (rate limited? set GITHUB_TOKEN or use --use-gh-cli)" if status == 403 else ""
        return FetchError(FetchErrorKind.AUTH, f"GitHub refused access to {subject}{hint}")
    return FetchError(
        FetchErrorKind.NETWORK,
        f"GitHub answered {status} for {subject}: {body[:200]}",
        details={"status": status},
    )


__all__ = [
    "GITHUB_API_URL",
    "GITHUB_WEB_URL",
    "GitHubSource",
    "PullRequestHead",
    "SourceResolver",
]
