from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from patchy.config import PatchyConfig, config_path, load_config  # noqa: E402
from patchy.errors import FetchError, FetchErrorKind  # noqa: E402
from patchy.pipeline import MergePipeline  # noqa: E402
from patchy.references import RepoSlug  # noqa: E402
from patchy.tools.github import PullRequestHead  # noqa: E402
from patchy.tools.vcs import GitRepository  # noqa: E402


def run_git(cwd: Path, *args: str) -> str:
    process = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return process.stdout.strip()


def commit_file(root: Path, relative: str, content: str, message: str) -> str:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    run_git(root, "add", relative)
    run_git(root, "commit", "-q", "-m", message)
    return run_git(root, "rev-parse", "HEAD")


@pytest.fixture(autouse=True)
def isolated_git(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> None:
    """Give every test the same git identity and no user configuration."""

    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Patchy Tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Patchy Tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@example.com")
    monkeypatch.delenv("PATCHY_CONFIG_ROOT", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.delenv("GH_TOKEN", raising=False)


@dataclass(slots=True)
class Upstream:
    """A local repository standing in for ``github.com/<owner>/<name>``."""

    root: Path
    owner: str
    name: str

    @property
    def slug(self) -> RepoSlug:
        return RepoSlug(self.owner, self.name)

    def commit_file(self, relative: str, content: str, message: str) -> str:
        return commit_file(self.root, relative, content, message)

    def branch(self, name: str, start: str = "main") -> None:
        run_git(self.root, "checkout", "-q", "-B", name, start)

    def head(self, ref: str = "HEAD") -> str:
        return run_git(self.root, "rev-parse", ref)


@dataclass
class FakeGitHub:
    """:class:`~patchy.tools.github.SourceResolver` serving repositories from disk."""

    root: Path
    pulls: Dict[Tuple[str, str, int], Tuple[Upstream, str, str]] = field(default_factory=dict)
    calls: List[Tuple[str, Any]] = field(default_factory=list)

    def create_repo(self, owner: str, name: str) -> Upstream:
        path = self.root / owner / name
        path.mkdir(parents=True)
        run_git(path, "init", "-q")
        run_git(path, "symbolic-ref", "HEAD", "refs/heads/main")
        upstream = Upstream(path, owner, name)
        upstream.commit_file("README.md", "widget\n", "Initial commit")
        upstream.commit_file("src/app.txt", "one\ntwo\nthree\n", "Add app")
        return upstream

    def fork(self, upstream: Upstream, owner: str) -> Upstream:
        path = self.root / owner / upstream.name
        path.parent.mkdir(parents=True, exist_ok=True)
        run_git(self.root, "clone", "-q", str(upstream.root), str(path))
        return Upstream(path, owner, upstream.name)

    def open_pull_request(self, base: Upstream, number: int, head: Upstream, branch: str, title: str = "") -> None:
        self.pulls[(base.owner.lower(), base.name.lower(), number)] = (head, branch, title or f"Pull request {number}")

    def repository_url(self, owner: str, repo: str) -> str:
        self.calls.append(("repository_url", (owner, repo)))
        return str(self.root / owner / repo)

    def resolve_pull_request(self, repo: RepoSlug, number: int) -> PullRequestHead:
        self.calls.append(("resolve_pull_request", (str(repo), number)))
        entry = self.pulls.get((repo.owner.lower(), repo.repo.lower(), number))
        if entry is None:
            raise FetchError(FetchErrorKind.NOT_FOUND, f"{repo}#{number} does not exist")
        head, branch, title = entry
        return PullRequestHead(
            number=number,
            head_owner=head.owner,
            head_repo=head.name,
            head_branch=branch,
            head_commit=head.head(branch),
            clone_url=str(head.root),
            fetch_ref=f"refs/heads/{branch}",
            title=title,
            html_url=f"https://github.com/{repo}/pull/{number}",
        )


@dataclass
class Project:
    """A clone of ``acme/widget`` with a patchy configuration directory."""

    github: FakeGitHub
    upstream: Upstream
    repo: GitRepository

    @property
    def root(self) -> Path:
        return self.repo.root

    @property
    def patches_dir(self) -> Path:
        return self.root / ".patchy"

    def write_config(self, **values: Any) -> PatchyConfig:
        data: Dict[str, Any] = {
            "repo": "acme/widget",
            "remote-branch": "main",
            "local-branch": "patchy",
        }
        data.update({key.replace("_", "-"): value for key, value in values.items()})
        path = config_path(self.root)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return load_config(path)

    def pipeline(self) -> MergePipeline:
        return MergePipeline(self.repo, self.github)

    def fork_branch(self, owner: str, branch: str, files: Dict[str, str], message: str = "") -> Upstream:
        """Create ``owner/widget`` (once) with ``branch`` adding ``files`` on top of main."""

        fork_root = self.github.root / owner / self.upstream.name
        if fork_root.exists():
            fork = Upstream(fork_root, owner, self.upstream.name)
        else:
            fork = self.github.fork(self.upstream, owner)
        fork.branch(branch, "origin/main")
        for relative, content in files.items():
            fork.commit_file(relative, content, message or f"Change {relative} on {branch}")
        return fork

    def git(self, *args: str) -> str:
        return run_git(self.root, *args)

    def commit_file(self, relative: str, content: str, message: str) -> str:
        return commit_file(self.root, relative, content, message)

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")

    def refs(self) -> str:
        return run_git(self.root, "for-each-ref", "--format=%(refname) %(objectname)")


@pytest.fixture()
def github(tmp_path: Path) -> FakeGitHub:
    root = tmp_path / "github"
    root.mkdir()
    return FakeGitHub(root)


@pytest.fixture()
def project(tmp_path: Path, github: FakeGitHub) -> Project:
    upstream = github.create_repo("acme", "widget")
    workspace = tmp_path / "work"
    run_git(tmp_path, "clone", "-q", str(upstream.root), str(workspace))
    return Project(github=github, upstream=upstream, repo=GitRepository(workspace))
