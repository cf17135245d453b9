"""Command line interface for refsync.

Thin click commands over the repo manager, local store and sync client,
rendered with rich.
"""

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .config import Config
from .local_store import (
    CloneError,
    GitError,
    LocalRepoStore,
    RepoExistsError,
    RepoNotFoundError,
    get_commit_sha,
)
from .models import display_name
from .repo_manager import RepoManager
from .repo_source import RemoteRepoSource, RepoSourceError, parse_repo_input
from .sync_client import (
    AuthenticationError,
    ConflictError,
    PushNotAllowedError,
    RateLimitError,
    SyncClient,
    SyncError,
)


logger = logging.getLogger(__name__)
console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def install_cancel_handler(cancel_event: threading.Event) -> None:
    """First Ctrl+C stops batch loops after the current item, a second one aborts."""

    def handle_sigint(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        console.print("\n[yellow]Cancelling after the current repository (Ctrl+C again to abort)...[/yellow]")

    signal.signal(signal.SIGINT, handle_sigint)


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} GB"


def parse_source(text: str):
    try:
        return parse_repo_input(text)
    except RepoSourceError as e:
        raise click.ClickException(str(e))


def print_cancelled(cancelled: bool) -> None:
    if cancelled:
        console.print("[yellow]Cancelled; results are partial[/yellow]")


class Context:
    """Objects shared by every command."""

    def __init__(self, config: Config):
        self.config = config
        self.cancel_event = threading.Event()
        self.store = LocalRepoStore(config)
        self.manager = RepoManager(config, self.store, self.cancel_event)
        self.client = SyncClient(config)


pass_context = click.make_pass_decorator(Context)


@click.group()
@click.option("--config", "config_path", default="config/config.yaml", help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str, verbose: bool):
    """Manage a local cache of git repositories and their reference documents."""
    setup_logging(verbose)
    ctx.obj = Context(Config(config_path))
    install_cancel_handler(ctx.obj.cancel_event)


# ========== Local Cache ==========

@cli.command("clone")
@click.argument("repo")
@click.option("--shallow", is_flag=True, help="Clone with depth 1")
@click.option("--branch", "-b", help="Branch to check out")
@click.option("--sparse", is_flag=True, help="Blobless sparse clone of source directories")
@click.option("--force", "-f", is_flag=True, help="Replace an existing clone")
@pass_context
def clone_repo(obj: Context, repo: str, shallow: bool, branch: Optional[str], sparse: bool, force: bool):
    """Clone a repository into the cache.

    \b
    Examples:
        refsync clone tanstack/router
        refsync clone https://gitlab.com/owner/repo --shallow
    """
    source = parse_source(repo)
    try:
        path = obj.store.clone(source, shallow=shallow, branch=branch, sparse=sparse, force=force)
    except RepoExistsError as e:
        raise click.ClickException(f"{e}. Use --force to replace it.")
    except GitError as e:
        raise click.ClickException(e.message)
    except CloneError as e:
        raise click.ClickException(str(e))

    console.print(f"[green]✓[/green] Cloned {source.qualified_name} to {path}")


@cli.command("update")
@click.argument("repo")
@click.option("--unshallow", is_flag=True, help="Convert a shallow clone to a full one")
@pass_context
def update_repo(obj: Context, repo: str, unshallow: bool):
    """Fetch and fast-forward one cached repository."""
    source = parse_source(repo)
    try:
        result = obj.store.update(source.qualified_name, unshallow=unshallow)
    except RepoNotFoundError as e:
        raise click.ClickException(str(e))
    except GitError as e:
        raise click.ClickException(e.message)

    if result.updated:
        console.print(f"[green]✓[/green] {result.previous_sha[:7]} -> {result.current_sha[:7]}")
    else:
        console.print(f"Already up to date at {result.current_sha[:7]}")
    if result.unshallowed:
        console.print("Converted to a full clone")


@cli.command("rm")
@click.argument("repo")
@click.option("--reference-only", is_flag=True, help="Keep the working tree")
@click.option("--repo-only", is_flag=True, help="Keep the reference files")
@pass_context
def remove_repo(obj: Context, repo: str, reference_only: bool, repo_only: bool):
    """Remove a repository and/or its references."""
    if reference_only and repo_only:
        raise click.UsageError("--reference-only and --repo-only are mutually exclusive")

    source = parse_source(repo)
    if not obj.store.remove(source.qualified_name, reference_only=reference_only, repo_only=repo_only):
        raise click.ClickException(f"{source.qualified_name} is not in the index")
    console.print(f"[green]✓[/green] Removed {source.qualified_name}")


@cli.command("status")
@pass_context
def show_status(obj: Context):
    """Summarize the cache."""
    with console.status("Scanning repositories...") as spinner:
        summary = obj.manager.status(
            on_progress=lambda i, total, repo: spinner.update(f"[{i}/{total}] {repo}")
        )

    table = Table(title="Repository cache", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Repositories", str(summary.total))
    table.add_row("With reference", str(summary.with_reference))
    table.add_row("Stale", str(summary.stale))
    table.add_row("Missing on disk", str(summary.missing))
    table.add_row("Disk usage", format_bytes(summary.disk_bytes))
    console.print(table)
    print_cancelled(summary.cancelled)


@cli.command("update-all")
@click.option("--pattern", "-p", help="Glob matched against owner/repo or the cache key")
@click.option("--dry-run", is_flag=True, help="Show what would be updated")
@click.option("--unshallow", is_flag=True, help="Convert shallow clones to full ones")
@click.option("--stale-only", is_flag=True, help="Only update repos whose HEAD moved since the last recorded SHA")
@pass_context
def update_all(obj: Context, pattern: Optional[str], dry_run: bool, unshallow: bool, stale_only: bool):
    """Update every cached repository."""
    styles = {"updated": "green", "unshallowed": "green", "skipped": "dim", "error": "red"}

    def on_progress(repo: str, status: str, message: Optional[str]) -> None:
        if status == "updating":
            return
        style = styles.get(status, "white")
        suffix = f" ({message})" if message else ""
        console.print(f"[{style}]{status:>11}[/{style}] {display_name(repo)}{suffix}")

    result = obj.manager.update_all(
        pattern=pattern,
        dry_run=dry_run,
        unshallow=unshallow,
        on_progress=on_progress,
        stale_only=stale_only,
    )

    console.print(
        f"\n{len(result.updated)} updated, {len(result.unshallowed)} unshallowed, "
        f"{len(result.skipped)} skipped, {len(result.errors)} failed"
    )
    print_cancelled(result.cancelled)
    if result.errors:
        sys.exit(1)


@cli.command("prune")
@click.option("--dry-run", is_flag=True, help="Report without changing the index")
@pass_context
def prune(obj: Context, dry_run: bool):
    """Drop index entries whose clone is gone and report orphaned clones."""
    result = obj.manager.prune(dry_run=dry_run)

    verb = "Would remove" if dry_run else "Removed"
    for repo in result.removed_from_index:
        console.print(f"{verb} [cyan]{repo}[/cyan] from index (missing on disk)")
    for path in result.orphaned_dirs:
        console.print(f"[yellow]Orphaned clone:[/yellow] {path}")
    if not result.removed_from_index and not result.orphaned_dirs:
        console.print("[green]Index is consistent with disk[/green]")
    print_cancelled(result.cancelled)


@cli.command("gc")
@click.option("--older-than", "older_than_days", type=int, help="Remove repos not accessed in N days")
@click.option("--without-reference", is_flag=True, help="Remove repos without a reference")
@click.option("--dry-run", is_flag=True, help="Show what would be removed")
@pass_context
def gc(obj: Context, older_than_days: Optional[int], without_reference: bool, dry_run: bool):
    """Evict repositories from the cache."""
    if older_than_days is None and not without_reference:
        raise click.UsageError("Specify --older-than and/or --without-reference")

    result = obj.manager.gc(
        older_than_days=older_than_days,
        without_reference=without_reference,
        dry_run=dry_run,
    )

    if not result.removed:
        console.print("Nothing to collect")
    else:
        table = Table(title="Would remove" if dry_run else "Removed", show_header=True, header_style="bold magenta")
        table.add_column("Repository", style="cyan")
        table.add_column("Reason")
        table.add_column("Size", justify="right")
        for removal in result.removed:
            table.add_row(display_name(removal.repo), removal.reason, format_bytes(removal.size_bytes))
        console.print(table)
        console.print(f"{'Would free' if dry_run else 'Freed'} {format_bytes(result.freed_bytes)}")
    for failure in result.errors:
        console.print(f"[red]Failed to remove {display_name(failure.repo)}:[/red] {failure.error}")
    print_cancelled(result.cancelled)
    if result.errors:
        sys.exit(1)


@cli.command("discover")
@click.option("--repo-root", type=click.Path(file_okay=False, path_type=Path), help="Directory to scan")
@click.option("--dry-run", is_flag=True, help="Report without writing the index")
@pass_context
def discover(obj: Context, repo_root: Optional[Path], dry_run: bool):
    """Adopt clones under the repo root that are not indexed."""
    result = obj.manager.discover(repo_root=repo_root, dry_run=dry_run)

    for repo in result.discovered:
        console.print(f"[green]+[/green] {repo.qualified_name} ({repo.local_path})")
    console.print(f"{len(result.discovered)} discovered, {result.already_indexed} already indexed")
    print_cancelled(result.cancelled)


# ========== Registry Sync ==========

@cli.command("pull")
@click.argument("repo")
@click.option("--reference", "reference_name", help="Reference name (defaults to the first one)")
@pass_context
def pull(obj: Context, repo: str, reference_name: Optional[str]):
    """Download a reference from the registry and install it."""
    source = parse_source(repo)
    if not isinstance(source, RemoteRepoSource):
        raise click.ClickException("Only remote repositories have registry references")

    try:
        reference = obj.client.pull(source.full_name, reference_name)
    except SyncError as e:
        raise click.ClickException(str(e))
    if reference is None:
        raise click.ClickException(f"No reference for {source.full_name} in the registry")

    if not obj.store.is_cloned(source.qualified_name):
        try:
            obj.store.clone(source, shallow=True, force=True)
        except GitError as e:
            raise click.ClickException(e.message)

    path = obj.store.install_reference(source.qualified_name, reference)
    try:
        obj.client.record_pull(source.full_name, reference.reference_name)
    except SyncError as e:
        logger.warning(f"Could not record pull of {source.full_name}: {e}")

    console.print(f"[green]✓[/green] Installed {reference.reference_name} ({reference.commit_sha[:7]}) to {path}")


@cli.command("push")
@click.argument("repo")
@click.option("--token", envvar="REFSYNC_TOKEN", help="Registry token")
@pass_context
def push(obj: Context, repo: str, token: Optional[str]):
    """Publish the local reference of a repository to the registry."""
    source = parse_source(repo)
    try:
        obj.client.validate_push_allowed(source)
    except PushNotAllowedError as e:
        raise click.ClickException(str(e))

    reference = obj.store.read_reference(source.qualified_name)
    if reference is None:
        raise click.ClickException(f"No local reference installed for {source.qualified_name}")

    token = token or obj.config.auth_token
    if not token:
        raise click.ClickException(str(AuthenticationError()))

    try:
        obj.client.push(reference, token)
    except ConflictError as e:
        remote = f" (remote commit {e.remote_commit_sha[:7]})" if e.remote_commit_sha else ""
        raise click.ClickException(
            f"{e}{remote}\nRun `refsync pull {repo}` to fetch the newer reference before pushing again."
        )
    except (AuthenticationError, RateLimitError) as e:
        raise click.ClickException(str(e))
    except SyncError as e:
        raise click.ClickException(f"Push failed: {e}")

    console.print(f"[green]✓[/green] Pushed {reference.full_name} at {reference.commit_sha[:7]}")


@cli.command("check")
@click.argument("repo")
@pass_context
def check(obj: Context, repo: str):
    """Compare the local clone with the registry reference."""
    source = parse_source(repo)
    if not isinstance(source, RemoteRepoSource):
        raise click.ClickException("Only remote repositories have registry references")

    path = obj.store.get_local_path(source.qualified_name)
    try:
        if path is None:
            remote = obj.client.check_remote(source.full_name)
            if remote.exists:
                console.print(f"Registry has a reference at {remote.commit_sha[:7]} (analyzed {remote.analyzed_at})")
            else:
                console.print("No reference in the registry")
            return

        local_sha = get_commit_sha(path)
        result = obj.client.check_staleness(source.full_name, local_sha)
    except GitError as e:
        raise click.ClickException(e.message)
    except SyncError as e:
        raise click.ClickException(str(e))

    if result.remote_commit_sha is None:
        console.print("No reference in the registry")
    elif result.is_stale:
        console.print(
            f"[yellow]Stale:[/yellow] registry reference is at {result.remote_commit_sha[:7]}, "
            f"local clone is at {local_sha[:7]}"
        )
    else:
        console.print(f"[green]Up to date[/green] at {local_sha[:7]}")


def main():
    cli()


if __name__ == "__main__":
    main()
