from __future__ import annotations

from pathlib import Path

import pytest

from patchy.errors import FetchError, FetchErrorKind
from patchy.fetch import FetchExecutor, PatchLibrary, classify_fetch_failure
from patchy.naming import NameRegistry
from patchy.references import PatchRef, parse_branch_spec, parse_pr_spec
from patchy.schema import WorkItem
from patchy.tools.vcs import GitError, GitTimeout


def _item(reference, index: int = 0) -> WorkItem:
    return WorkItem(index=index, reference=reference, names=NameRegistry().assign(reference))


def _executor(project, library: PatchLibrary | None = None) -> FetchExecutor:
    return FetchExecutor(
        project.repo,
        project.github,
        library or PatchLibrary(project.patches_dir, {}),
        timeout=30,
    )


@pytest.mark.parametrize(
    ("stderr", "kind"),
    [
        ("fatal: unable to access 'https://github.com/a/b.git/': Could not resolve host: github.com", FetchErrorKind.NETWORK),
        ("fatal: Authentication failed for 'https://github.com/a/b.git/'", FetchErrorKind.AUTH),
        ("fatal: could not read Username for 'https://github.com': terminal prompts disabled", FetchErrorKind.AUTH),
        ("fatal: couldn't find remote ref refs/heads/nope", FetchErrorKind.NOT_FOUND),
        ("remote: Repository not found.", FetchErrorKind.NOT_FOUND),
        ("fatal: '/tmp/x' does not appear to be a git repository", FetchErrorKind.NOT_FOUND),
    ],
)
def test_classify_fetch_failure(stderr: str, kind: FetchErrorKind) -> None:
    assert classify_fetch_failure(GitError("fetch failed", stderr=stderr)) is kind


def test_classify_timeout() -> None:
    assert classify_fetch_failure(GitTimeout("git fetch timed out after 1s")) is FetchErrorKind.TIMEOUT


def test_branch_is_fetched_into_tracking_ref_and_local_branch(project) -> None:
    bob = project.fork_branch("bob", "topic/one", {"beta.txt": "beta\n"})
    item = _item(parse_branch_spec("bob/widget/topic/one"))

    with _executor(project) as executor:
        materialized = executor.materialize(item)

    tip = bob.head("topic/one")
    assert materialized.commit == tip
    assert project.repo.remote_url("patchy-branch-bob.widget") == str(project.github.root / "bob" / "widget")
    assert project.repo.resolve_commit("refs/remotes/patchy-branch-bob.widget/topic/one") == tip
    assert project.repo.resolve_commit("refs/heads/patchy-src/bob/widget/branch/topic/one") == tip
    # The working tree and current branch are untouched.
    assert project.git("rev-parse", "--abbrev-ref", "HEAD") == "main"
    assert not (project.root / "beta.txt").exists()


def test_remote_url_is_updated_when_it_changed(project) -> None:
    project.fork_branch("bob", "feature-b", {"beta.txt": "beta\n"})
    project.git("remote", "add", "patchy-branch-bob.widget", "https://example.invalid/old.git")

    with _executor(project) as executor:
        executor.materialize(_item(parse_branch_spec("bob/widget/feature-b")))

    assert project.repo.remote_url("patchy-branch-bob.widget") == str(project.github.root / "bob" / "widget")


def test_pull_request_is_fetched_from_head_repository(project) -> None:
    alice = project.fork_branch("alice", "fix", {"alpha.txt": "alpha\n"})
    project.github.open_pull_request(project.upstream, 12, alice, "fix", title="Fix things")
    item = _item(parse_pr_spec("#12", repo=project.upstream.slug))

    with _executor(project) as executor:
        materialized = executor.materialize(item)

    assert materialized.pull_request is not None
    assert materialized.description == "acme/widget#12: Fix things"
    assert materialized.commit == alice.head("fix")
    assert project.repo.resolve_commit("refs/remotes/patchy-pr-12-acme.widget/fix") == alice.head("fix")
    assert project.repo.branch_exists("patchy-src/acme/widget/pr-12")


def test_pinned_item_already_fetched_skips_the_network(project) -> None:
    alice = project.fork_branch("alice", "fix", {"alpha.txt": "alpha\n"})
    project.github.open_pull_request(project.upstream, 12, alice, "fix")
    pinned = alice.head("fix")
    item = _item(parse_pr_spec(f"12 @ {pinned}", repo=project.upstream.slug))

    with _executor(project) as executor:
        executor.materialize(item)
        calls = len(project.github.calls)
        again = executor.materialize(item)

    assert again.commit == pinned
    assert len(project.github.calls) == calls


def test_missing_branch_is_not_found(project) -> None:
    project.fork_branch("bob", "feature-b", {"beta.txt": "beta\n"})
    item = _item(parse_branch_spec("bob/widget/no-such-branch"))

    with _executor(project) as executor, pytest.raises(FetchError) as excinfo:
        executor.materialize(item)

    assert excinfo.value.kind is FetchErrorKind.NOT_FOUND
    assert not project.repo.branch_exists(item.names.local_branch_name)


def test_missing_repository_is_not_found(project) -> None:
    item = _item(parse_branch_spec("nobody/widget/main"))

    with _executor(project) as executor, pytest.raises(FetchError) as excinfo:
        executor.materialize(item)

    assert excinfo.value.kind is FetchErrorKind.NOT_FOUND


def test_fetch_timeout_is_reported(project, monkeypatch) -> None:
    project.fork_branch("bob", "feature-b", {"beta.txt": "beta\n"})

    def slow_fetch(remote: str, refspec: str, *, timeout: float | None = None) -> None:
        raise GitTimeout(f"git fetch {remote} timed out after {timeout:g}s")

    monkeypatch.setattr(project.repo, "fetch", slow_fetch)

    with _executor(project) as executor, pytest.raises(FetchError) as excinfo:
        executor.materialize(_item(parse_branch_spec("bob/widget/feature-b")))

    assert excinfo.value.kind is FetchErrorKind.TIMEOUT


def test_patch_is_materialised_from_snapshot(project) -> None:
    project.patches_dir.mkdir()
    (project.patches_dir / "fix.patch").write_bytes(b"From abc\r\nSubject: fix\r\n")
    library = PatchLibrary.snapshot(project.patches_dir)
    (project.patches_dir / "fix.patch").unlink()
    patch_item = _item(PatchRef("fix"), index=3)

    with _executor(project, library) as executor:
        materialized = executor.materialize(patch_item)
        assert materialized.is_patch
        assert materialized.patch_path.read_bytes() == b"From abc\r\nSubject: fix\r\n"
        scratch = materialized.patch_path.parent

    assert not scratch.exists()
    assert project.github.calls == []


def test_missing_patch_file(project) -> None:
    library = PatchLibrary.snapshot(project.patches_dir)

    with pytest.raises(FetchError) as excinfo:
        library.read("ghost.patch")

    assert excinfo.value.kind is FetchErrorKind.PATCH_FILE_NOT_FOUND


def test_patch_library_restore_writes_only_changed_files(tmp_path: Path) -> None:
    source = tmp_path / "config"
    (source / "nested").mkdir(parents=True)
    (source / "config.yaml").write_text("local-branch: patchy\n", encoding="utf-8")
    (source / "nested" / "a.patch").write_text("patch\n", encoding="utf-8")
    library = PatchLibrary.snapshot(source)

    target = tmp_path / "restored"
    written = library.restore(target)
    assert sorted(path.relative_to(target).as_posix() for path in written) == ["config.yaml", "nested/a.patch"]
    assert library.restore(target) == []

    (target / "config.yaml").write_text("changed\n", encoding="utf-8")
    assert library.restore(target, skip=["config.yaml"]) == []
    assert library.restore(target) == [target / "config.yaml"]
