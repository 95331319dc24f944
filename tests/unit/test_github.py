from __future__ import annotations

import json
import subprocess
from typing import Any, Dict, List

import httpx
import pytest

from patchy.errors import FetchError, FetchErrorKind
from patchy.references import RepoSlug
from patchy.tools import github as github_module
from patchy.tools.github import GitHubSource

HELIX = RepoSlug("helix-editor", "helix")


def _pull(head_repo: Dict[str, Any] | None) -> Dict[str, Any]:
    return {
        "number": 12254,
        "title": "Add a feature",
        "html_url": "https://github.com/helix-editor/helix/pull/12254",
        "head": {"ref": "feature", "sha": "a" * 40, "repo": head_repo},
        "base": {
            "ref": "master",
            "sha": "b" * 40,
            "repo": {
                "name": "helix",
                "clone_url": "https://github.com/helix-editor/helix.git",
                "owner": {"login": "helix-editor"},
            },
        },
        "state": "open",
    }


def _source(handler, **kwargs: Any) -> GitHubSource:
    return GitHubSource(transport=httpx.MockTransport(handler), **kwargs)


def test_resolve_pull_request_from_fork() -> None:
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        fork = {"name": "helix", "clone_url": "https://github.com/alice/helix.git", "owner": {"login": "alice"}}
        return httpx.Response(200, json=_pull(fork))

    head = _source(handler, token="secret").resolve_pull_request(HELIX, 12254)

    assert requests[0].url.path == "/repos/helix-editor/helix/pulls/12254"
    assert requests[0].headers["Authorization"] == "Bearer secret"
    assert head.head_owner == "alice"
    assert head.head_branch == "feature"
    assert head.head_commit == "a" * 40
    assert head.clone_url == "https://github.com/alice/helix.git"
    assert head.fetch_ref == "refs/heads/feature"
    assert head.title == "Add a feature"


def test_deleted_fork_falls_back_to_pull_ref() -> None:
    head = _source(lambda request: httpx.Response(200, json=_pull(None))).resolve_pull_request(HELIX, 12254)

    assert head.clone_url == "https://github.com/helix-editor/helix.git"
    assert head.fetch_ref == "refs/pull/12254/head"
    assert head.head_owner == "helix-editor"


def test_token_is_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GH_TOKEN", "from-env")

    assert GitHubSource().headers()["Authorization"] == "Bearer from-env"
    assert "Authorization" not in GitHubSource(token="").headers()


@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (404, FetchErrorKind.NOT_FOUND),
        (401, FetchErrorKind.AUTH),
        (403, FetchErrorKind.AUTH),
        (500, FetchErrorKind.NETWORK),
    ],
)
def test_http_errors_are_classified(status: int, kind: FetchErrorKind) -> None:
    source = _source(lambda request: httpx.Response(status, json={"message": "nope"}))

    with pytest.raises(FetchError) as excinfo:
        source.resolve_pull_request(HELIX, 1)

    assert excinfo.value.kind is kind


def test_timeout_is_classified() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(FetchError) as excinfo:
        _source(handler).resolve_pull_request(HELIX, 1)

    assert excinfo.value.kind is FetchErrorKind.TIMEOUT


def test_connection_error_is_network() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route", request=request)

    with pytest.raises(FetchError) as excinfo:
        _source(handler).resolve_pull_request(HELIX, 1)

    assert excinfo.value.kind is FetchErrorKind.NETWORK


def test_unexpected_payload_is_reported() -> None:
    source = _source(lambda request: httpx.Response(200, json={"number": 1}))

    with pytest.raises(FetchError, match="Unexpected response"):
        source.resolve_pull_request(HELIX, 1)


def test_repository_url() -> None:
    assert GitHubSource().repository_url("bob", "widget") == "https://github.com/bob/widget.git"
    assert GitHubSource(web_url="https://ghe.example.com/").repository_url("a", "b") == "https://ghe.example.com/a/b.git"


def test_gh_cli_is_used_when_requested(monkeypatch: pytest.MonkeyPatch) -> None:
    commands: List[List[str]] = []

    def fake_run(command: List[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        commands.append(command)
        fork = {"name": "helix", "clone_url": "https://github.com/alice/helix.git", "owner": {"login": "alice"}}
        return subprocess.CompletedProcess(command, 0, stdout=json.dumps(_pull(fork)), stderr="")

    monkeypatch.setattr(github_module.subprocess, "run", fake_run)

    head = GitHubSource(use_gh_cli=True).resolve_pull_request(HELIX, 12254)

    assert commands == [["gh", "api", "repos/helix-editor/helix/pulls/12254"]]
    assert head.head_owner == "alice"


@pytest.mark.parametrize(
    ("stderr", "kind"),
    [
        ("gh: Not Found (HTTP 404)", FetchErrorKind.NOT_FOUND),
        ("To get started with GitHub CLI, please run:  gh auth login", FetchErrorKind.AUTH),
        ("error connecting to api.github.com", FetchErrorKind.NETWORK),
    ],
)
def test_gh_cli_failures_are_classified(monkeypatch: pytest.MonkeyPatch, stderr: str, kind: FetchErrorKind) -> None:
    def fake_run(command: List[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(command, 1, stdout="", stderr=stderr)

    monkeypatch.setattr(github_module.subprocess, "run", fake_run)

    with pytest.raises(FetchError) as excinfo:
        GitHubSource(use_gh_cli=True).resolve_pull_request(HELIX, 1)

    assert excinfo.value.kind is kind


def test_missing_gh_binary(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(command: List[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError("gh")

    monkeypatch.setattr(github_module.subprocess, "run", fake_run)

    with pytest.raises(FetchError, match="not installed"):
        GitHubSource(use_gh_cli=True).resolve_pull_request(HELIX, 1)
