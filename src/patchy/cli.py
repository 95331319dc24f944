"""Command line interface for patchy."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, NoReturn, Optional

import typer

from . import __version__
from .config import (
    DEFAULT_FETCH_TIMEOUT,
    FailurePolicy,
    PatchyConfig,
    RerunPolicy,
    config_dir,
    config_path,
    load_config,
    write_default_config,
)
from .errors import ConfigError, PatchyError
from .fetch import FetchExecutor, PatchLibrary
from .logging import configure_logging
from .naming import NameRegistry
from .patchgen import PatchGenerator
from .pipeline import MergePipeline
from .references import RepoSlug, SourceReference, parse_branch_spec, parse_pr_spec, parse_repo_slug
from .schema import OutcomeStatus, RunResult, WorkItem
from .tools.github import GitHubSource
from .tools.vcs import GitError, GitRepository

APP_HELP = "Maintain a branch built from upstream pull requests, fork branches and local patches."

# git@github.com:owner/repo.git, https://github.com/owner/repo(.git), ssh://git@github.com/owner/repo
_GITHUB_REMOTE = re.compile(r"github\.com[:/](?P<owner>[^/\s]+)/(?P<repo>[^/\s]+?)(?:\.git)?/?$")

app = typer.Typer(help=APP_HELP, no_args_is_help=True)


@dataclass(slots=True)
class CliState:
    verbosity: int = 0
    use_gh_cli: bool = False


def _state(ctx: typer.Context) -> CliState:
    if isinstance(ctx.obj, CliState):
        return ctx.obj
    return CliState()


def _fail(message: str) -> NoReturn:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _open_repository() -> GitRepository:
    try:
        return GitRepository.discover()
    except GitError as error:
        _fail(str(error))


def _load(repo: GitRepository) -> PatchyConfig:
    try:
        return load_config(config_path(repo.root))
    except ConfigError as error:
        _fail(error.message)


def _source(state: CliState, config: PatchyConfig | None = None, *, timeout: float | None = None) -> GitHubSource:
    use_gh_cli = state.use_gh_cli or bool(config and config.use_gh_cli)
    if timeout is None:
        return GitHubSource(use_gh_cli=use_gh_cli)
    return GitHubSource(use_gh_cli=use_gh_cli, timeout=timeout)


def repo_from_remote_url(url: str) -> RepoSlug | None:
    """Extract ``owner/repo`` from a GitHub remote URL."""

    match = _GITHUB_REMOTE.search(url.strip())
    if match is None:
        return None
    return RepoSlug(match.group("owner"), match.group("repo"))


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"patchy {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Log progress (-v) or every git command (-vv) to stderr.",
    ),
    use_gh_cli: bool = typer.Option(
        False,
        "--use-gh-cli",
        help="Query GitHub through the `gh` CLI instead of the REST API.",
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    configure_logging(verbose)
    ctx.obj = CliState(verbosity=verbose, use_gh_cli=use_gh_cli)


@app.command()
def init(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite an existing configuration file.",
    ),
) -> None:
    """Create a commented configuration file."""

    repo = _open_repository()
    path = config_path(repo.root)
    if path.exists() and not force:
        _fail(f"{path} already exists. Use --force to overwrite it.")
    write_default_config(path, overwrite=force)
    typer.echo(f"Created configuration at {path}.")
    typer.echo("Edit it, then run `patchy run`.")


def _print_result(result: RunResult, policy: FailurePolicy) -> None:
    colors = {
        OutcomeStatus.APPLIED: typer.colors.GREEN,
        OutcomeStatus.SKIPPED: typer.colors.YELLOW,
        OutcomeStatus.FAILED: typer.colors.RED,
    }
    if not len(result):
        typer.echo("Nothing to merge.")
    for (_, outcome), line in zip(result, result.summary()):
        typer.secho(line, fg=colors[outcome.status])
        for path in outcome.paths:
            typer.echo(f"       conflict: {path}")

    applied, failed, skipped = len(result.applied), len(result.failed), len(result.skipped)
    typer.echo(f"Branch {result.working_branch}: {applied} applied, {failed} failed, {skipped} skipped.")
    if result.config_commit:
        typer.echo(f"Configuration committed as {result.config_commit[:10]}.")
    if failed and policy is FailurePolicy.ABORT:
        typer.echo(
            "Stopped at the first failure. Inspect the branch, then run `git am --abort` or "
            "`git reset --hard` before the next run."
        )


@app.command()
def run(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Reset the working branch without asking.",
    ),
    continue_on_error: bool = typer.Option(
        False,
        "--continue-on-error",
        help="Skip items that fail instead of stopping at the first one.",
    ),
    resume: bool = typer.Option(
        False,
        "--resume",
        help="Keep the items a previous run already merged.",
    ),
) -> None:
    """Rebuild the working branch from the configuration."""

    state = _state(ctx)
    repo = _open_repository()
    config = _load(repo)
    policy = FailurePolicy.CONTINUE if continue_on_error else config.failure_policy
    rerun = RerunPolicy.RESUME if resume else config.rerun_policy

    repo.timeout = config.fetch_timeout
    if repo.branch_exists(config.local_branch) and not yes:
        if not typer.confirm(f"Branch {config.local_branch} will be reset. Continue?", default=False):
            typer.echo("Aborted.")
            raise typer.Exit()

    pipeline = MergePipeline(repo, _source(state, config, timeout=config.fetch_timeout))
    try:
        result = pipeline.run(config, policy, rerun=rerun)
    except PatchyError as error:
        _fail(error.message)
    except GitError as error:
        _fail(str(error))
    except KeyboardInterrupt:
        _fail("Interrupted; the working branch was rolled back to the last completed item.")

    _print_result(result, policy)
    if not result.succeeded:
        raise typer.Exit(code=1)


def _fetch_items(
    repo: GitRepository,
    source: GitHubSource,
    references: List[SourceReference],
) -> List[tuple[WorkItem, str]]:
    registry = NameRegistry()
    fetched = []
    library = PatchLibrary(config_dir(repo.root), {})
    with FetchExecutor(repo, source, library, timeout=DEFAULT_FETCH_TIMEOUT) as executor:
        for index, reference in enumerate(references):
            item = WorkItem(index=index, reference=reference, names=registry.assign(reference))
            materialized = executor.materialize(item)
            if materialized.commit is None:
                raise GitError(f"{item.label} did not resolve to a commit")
            fetched.append((item, materialized.commit))
    return fetched


def _finish_fetch(
    repo: GitRepository,
    fetched: List[tuple[WorkItem, str]],
    *,
    branch_names: List[str],
    checkout: bool,
) -> None:
    for item, commit in fetched:
        typer.echo(f"Fetched {item.label} ({commit[:10]}) into {item.names.local_branch_name}")
    # Custom names apply to the fetched items in order.
    for name, (_, commit) in zip(branch_names, fetched):
        repo.force_branch(name, commit)
        typer.echo(f"Created branch {name} at {commit[:10]}")
    target = branch_names[0] if branch_names else fetched[0][0].names.local_branch_name
    if checkout:
        repo.checkout(target)
        typer.echo(f"Checked out {target}")


@app.command("branch-fetch")
def branch_fetch(
    ctx: typer.Context,
    branches: List[str] = typer.Argument(..., help="Branches as owner/repo/branch, optionally '@ <commit>'."),
    branch_names: Optional[List[str]] = typer.Option(
        None,
        "--branch-name",
        "-b",
        help="Also point this local branch at a fetched branch. Repeat it to name the branches in order.",
    ),
    checkout: bool = typer.Option(
        False,
        "--checkout",
        "-c",
        help="Check out the first fetched branch.",
    ),
) -> None:
    """Fetch branches of GitHub repositories without merging them."""

    names = branch_names or []
    if len(names) > len(branches):
        raise typer.BadParameter("more --branch-name values than items to fetch", param_hint="--branch-name")
    state = _state(ctx)
    repo = _open_repository()
    try:
        references: List[SourceReference] = [parse_branch_spec(raw) for raw in branches]
        fetched = _fetch_items(repo, _source(state), references)
        _finish_fetch(repo, fetched, branch_names=names, checkout=checkout)
    except PatchyError as error:
        _fail(str(error))
    except GitError as error:
        _fail(str(error))


def _default_pr_repo(repo: GitRepository) -> RepoSlug:
    path = config_path(repo.root)
    if path.exists():
        try:
            config = load_config(path)
        except ConfigError:
            config = None
        if config is not None and config.repo:
            return parse_repo_slug(config.repo)
    origin = repo.remote_url("origin")
    slug = repo_from_remote_url(origin) if origin else None
    if slug is None:
        _fail("Could not tell which repository the pull requests belong to. Pass --repo owner/repo.")
    return slug


@app.command("pr-fetch")
def pr_fetch(
    ctx: typer.Context,
    pull_requests: List[str] = typer.Argument(..., help="Pull request numbers, optionally '@ <commit>'."),
    repo_name: Optional[str] = typer.Option(
        None,
        "--repo",
        "-r",
        help="Repository the pull requests belong to (owner/repo). Defaults to `repo` or the origin remote.",
    ),
    branch_names: Optional[List[str]] = typer.Option(
        None,
        "--branch-name",
        "-b",
        help="Also point this local branch at a fetched pull request. Repeat it to name the pull requests in order.",
    ),
    checkout: bool = typer.Option(
        False,
        "--checkout",
        "-c",
        help="Check out the first fetched pull request.",
    ),
) -> None:
    """Fetch pull requests without merging them."""

    names = branch_names or []
    if len(names) > len(pull_requests):
        raise typer.BadParameter("more --branch-name values than items to fetch", param_hint="--branch-name")
    state = _state(ctx)
    repo = _open_repository()
    try:
        upstream = parse_repo_slug(repo_name) if repo_name else _default_pr_repo(repo)
        references: List[SourceReference] = [parse_pr_spec(raw, repo=upstream) for raw in pull_requests]
        fetched = _fetch_items(repo, _source(state), references)
        _finish_fetch(repo, fetched, branch_names=names, checkout=checkout)
    except PatchyError as error:
        _fail(str(error))
    except GitError as error:
        _fail(str(error))


@app.command("gen-patch")
def gen_patch(
    revisions: List[str] = typer.Argument(..., help="Commits or A..B ranges; each becomes one patch file."),
    name: Optional[str] = typer.Option(
        None,
        "--name",
        "-n",
        help="File name (without .patch) for a single generated patch.",
    ),
) -> None:
    """Write commits as patch files into the configuration directory."""

    if name and len(revisions) > 1:
        raise typer.BadParameter("--name needs exactly one revision", param_hint="--name")
    repo = _open_repository()
    generator = PatchGenerator(repo, config_dir(repo.root))
    for revision in revisions:
        try:
            patch = generator.generate(revision, name=name)
        except PatchyError as error:
            _fail(error.message)
        except GitError as error:
            _fail(str(error))
        typer.echo(f"Wrote {patch.path} ({len(patch.commits)} commit(s))")
    typer.echo("Add the patch names to `patches` in the configuration to apply them.")


if __name__ == "__main__":
    app()
