"""
FORGELINE CLI — The Interface

Backlog:
  - forgeline add "<title>"       (new feature)
  - forgeline list / show <id>
  - forgeline delete <id>...      (batched; --force drops dirty worktrees)
  - forgeline reset <id>          (failed/cancelled -> backlog)

Execution:
  - forgeline run [ids...] [--auto]   (drive the runner pool until idle)
  - forgeline approve / reject <id>   (plan approval gate)
  - forgeline verify <id>             (manual verification)
  - forgeline merge <id>
  - forgeline resume / abort <id>

Plus utilities:
  - forgeline status        (config, credentials, providers)
  - forgeline models        (model catalog)
  - forgeline init <path>   (bootstrap .forgeline in a repo)
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from forgeline.audit_logger import AuditLogger
from forgeline.config_loader import ForgelineConfig, load_config, validate_api_keys
from forgeline.dependencies import resolve_dependencies
from forgeline.errors import ForgelineError
from forgeline.event_bus import EventBus, FeatureEvent
from forgeline.features import Feature, FeatureStore
from forgeline.identity import BANNER, __codename__, __tagline__, __version__
from forgeline.providers.registry import ProviderRegistry
from forgeline.scheduler import RunnerPool
from forgeline.state import FeatureStatus

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".forgeline" / ".env")

app = typer.Typer(
    name="forgeline",
    help=f"{__codename__} — {__tagline__}\nOrchestrates coding agents across a feature backlog.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_COLORS = {
    "backlog": "dim",
    "queued": "cyan",
    "planning": "cyan",
    "waiting_approval": "magenta",
    "in_progress": "yellow",
    "verification": "yellow",
    "verified": "green",
    "failed": "red",
    "cancelled": "dim",
}

RepoOption = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository")


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False, end=""),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}\n",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False, end=""),
            level="WARNING",
            format="{message}\n",
        )


def _exit_with(error: ForgelineError) -> None:
    console.print(f"[red]✗ {error.message}[/]")
    if error.hint:
        console.print(f"  [dim]{error.hint}[/]")
    raise typer.Exit(1)


def _repo(repo: Path) -> Path:
    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)
    return repo


def _store(repo: Path, config: ForgelineConfig | None = None) -> FeatureStore:
    config = config or load_config(repo)
    return FeatureStore(repo, config.workspace.features_dir, config.workspace.branch_prefix)


def _open_pool(repo: Path, admit: bool = True) -> tuple[RunnerPool, AuditLogger]:
    config = load_config(repo)
    bus = EventBus()
    audit = AuditLogger(repo / config.workspace.log_dir / "events.jsonl", bus)
    return RunnerPool(repo, config=config, bus=bus, admit=admit), audit


def _with_pool(repo: Path, action, admit: bool = False):
    """
    Run one async pool action to completion and return its result.

    One-shot commands don't admit work by default: the event loop ends
    with the command, so anything started here would be cut off.
    """
    pool, audit = _open_pool(_repo(repo), admit=admit)
    try:
        return asyncio.run(action(pool))
    except ForgelineError as e:
        _exit_with(e)
    finally:
        audit.close()


def _status_cell(feature: Feature) -> str:
    color = STATUS_COLORS.get(feature.status.value, "white")
    label = f"[{color}]{feature.status.value}[/]"
    if feature.interrupted:
        label += " [yellow](interrupted)[/]"
    return label


# ---------------------------------------------------------------------------
# Backlog commands
# ---------------------------------------------------------------------------

@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .forgeline directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    fl_dir = repo / ".forgeline"
    fl_dir.mkdir(exist_ok=True)
    (fl_dir / "features").mkdir(exist_ok=True)
    (fl_dir / "logs").mkdir(exist_ok=True)
    (fl_dir / "worktrees").mkdir(exist_ok=True)

    config_path = fl_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# FORGELINE repo-level config overrides
# These merge with the built-in defaults.

# How many agents may run at once:
# scheduler:
#   max_concurrency: 3

# Default model for features that don't set one:
# providers:
#   default_model: "claude-sonnet"

# Command that must pass before a feature is verified:
# verification:
#   test_command: "python -m pytest"

# Keep verified branches around instead of merging them:
# workspace:
#   auto_merge: false
""")

    gitignore = repo / ".gitignore"
    ignore_entries = [".forgeline/worktrees/", ".forgeline/logs/"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# FORGELINE\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# FORGELINE\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized FORGELINE in {fl_dir}[/]")
    console.print(f"  Config:   {config_path}")
    console.print(f"  Features: {fl_dir / 'features'}")


@app.command()
def add(
    title: str = typer.Argument(..., help="Feature title"),
    repo: Path = RepoOption,
    description: str = typer.Option("", "--description", "-d", help="What the agent should build"),
    category: str = typer.Option("general", "--category", help="Free-form grouping"),
    depends_on: list[str] = typer.Option([], "--depends-on", help="Feature id this one depends on (repeatable)"),
    priority: int = typer.Option(2, "--priority", "-p", help="1 (highest) to 4 (lowest)"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model id, e.g. claude-opus or codex-gpt-5"),
    planning: str = typer.Option("skip", "--planning", help="skip | lite | spec | full"),
    approve_plan: bool = typer.Option(False, "--approve-plan", help="Pause for plan approval before implementing"),
    skip_tests: bool = typer.Option(False, "--skip-tests", help="Skip the verification command; verify manually"),
):
    """Add a feature to the backlog."""
    repo = _repo(repo)
    try:
        feature = _store(repo).create(
            title,
            description=description,
            category=category,
            dependencies=depends_on,
            priority=priority,
            model=model,
            planning_mode=planning,
            require_plan_approval=approve_plan,
            skip_tests=skip_tests,
        )
    except ForgelineError as e:
        _exit_with(e)

    console.print(f"[green]✅ Added {feature.id}[/]")
    console.print(f"  Branch: {feature.branch_name}")


@app.command(name="list")
def list_features(
    repo: Path = RepoOption,
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Only show this status"),
):
    """List features in the backlog."""
    repo = _repo(repo)
    resolution = resolve_dependencies(_store(repo).list_features())
    features = resolution.ordered
    if status:
        features = [f for f in features if f.status.value == status]

    if not features:
        console.print("[dim]No features yet. Add one with `forgeline add`.[/]")
        return

    table = Table(title="Features", border_style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("P", style="dim")
    table.add_column("Depends on", style="dim")
    table.add_column("Model", style="dim")

    for f in features:
        table.add_row(
            f.id,
            f.title,
            _status_cell(f),
            str(f.priority),
            ", ".join(d[-9:] for d in f.dependencies),
            f.model or "",
        )

    console.print(table)
    for cycle in resolution.circular:
        console.print(f"[yellow]⚠ Dependency cycle: {' → '.join(cycle)}[/]")
    for fid, missing in resolution.missing.items():
        console.print(f"[yellow]⚠ {fid} depends on missing {', '.join(missing)}[/]")


@app.command()
def show(
    feature_id: str = typer.Argument(..., help="Feature id"),
    repo: Path = RepoOption,
    output: bool = typer.Option(False, "--output", "-o", help="Print the agent transcript"),
    raw: bool = typer.Option(False, "--raw", help="Include the raw error diagnostic"),
):
    """Show one feature in detail."""
    repo = _repo(repo)
    store = _store(repo)
    try:
        f = store.get(feature_id)
    except ForgelineError as e:
        _exit_with(e)

    table = Table(title=f.title, border_style="cyan", show_header=False)
    table.add_column("Field", style="dim")
    table.add_column("Value")
    table.add_row("ID", f.id)
    table.add_row("Status", _status_cell(f))
    table.add_row("Priority", str(f.priority))
    table.add_row("Model", f.model or "[dim]default[/]")
    table.add_row("Branch", f.branch_name or "")
    table.add_row("Worktree", f.worktree_path or "[dim]none[/]")
    table.add_row("Planning", f"{f.planning_mode} (plan {f.plan.status}, v{f.plan.version})")
    table.add_row("Depends on", ", ".join(f.dependencies) or "[dim]none[/]")
    table.add_row("Retries", str(f.retry_count))
    console.print(table)

    if f.description:
        console.print(Panel(f.description, title="Description", border_style="dim"))
    if f.plan.content:
        console.print(Panel(Markdown(f.plan.content), title=f"Plan v{f.plan.version}", border_style="magenta"))
    if f.summary:
        console.print(Panel(f.summary, title="Summary", border_style="green"))
    if f.last_error:
        body = f"{f.last_error.message}\n[dim]{f.last_error.hint}[/]"
        if raw and f.last_error.raw:
            body += f"\n\n{f.last_error.raw}"
        console.print(Panel(body, title=f"Last error ({f.last_error.category})", border_style="red"))

    if output:
        path = store.output_path(f.id)
        if path.exists():
            console.print(path.read_text(encoding="utf-8"))
        else:
            console.print("[dim]No agent output yet.[/]")


@app.command()
def delete(
    feature_ids: list[str] = typer.Argument(..., help="Feature ids to delete"),
    repo: Path = RepoOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
    force: bool = typer.Option(False, "--force", "-f", help="Delete even if a worktree has uncommitted changes"),
):
    """Delete features, their worktrees and their branches."""
    if not yes and not typer.confirm(f"Delete {len(feature_ids)} feature(s)?"):
        raise typer.Exit()

    results = _with_pool(repo, lambda pool: pool.bulk_delete(feature_ids, force=force))
    for r in results:
        if r["success"]:
            console.print(f"[green]✓ Deleted {r['feature_id']}[/]")
        else:
            console.print(f"[red]✗ {r['feature_id']}: {r['error']}[/]")
    if any(not r["success"] for r in results):
        raise typer.Exit(1)


@app.command()
def reset(
    feature_id: str = typer.Argument(..., help="Feature id"),
    repo: Path = RepoOption,
):
    """Send a failed or cancelled feature back to the backlog."""
    feature = _with_pool(repo, lambda pool: pool.reset_feature(feature_id))
    console.print(f"[green]✓ {feature.id} is back in the backlog[/]")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def _event_printer(event: FeatureEvent) -> None:
    fid = (event.feature_id or "")[-9:]
    p = event.payload
    if event.event_type == "feature_status_changed":
        color = STATUS_COLORS.get(p.get("to", ""), "white")
        console.print(f"  [dim]{fid}[/] {p.get('from')} → [{color}]{p.get('to')}[/]")
    elif event.event_type == "worktree_created":
        console.print(f"  [dim]{fid}[/] 🌿 {p.get('branch')}")
    elif event.event_type == "plan_approval_required":
        console.print(f"  [dim]{fid}[/] [magenta]📋 plan v{p.get('version')} waiting for approval[/]")
    elif event.event_type == "feature_retry":
        console.print(f"  [dim]{fid}[/] [yellow]↻ retry {p.get('attempt')}: {p.get('error')}[/]")
    elif event.event_type == "feature_error":
        console.print(f"  [dim]{fid}[/] [red]✗ {p.get('message')}[/]")
        if p.get("hint"):
            console.print(f"      [dim]{p['hint']}[/]")
    elif event.event_type == "stream_stalled":
        console.print(f"  [dim]{fid}[/] [yellow]⏳ no output for {p.get('idle_seconds')}s[/]")
    elif event.event_type == "auto_mode_paused":
        console.print(f"[bold yellow]⏸ Auto mode paused ({p.get('reason')})[/]")


def _review_plan(feature: Feature) -> tuple[str, str | None]:
    """Ask the user what to do with a generated plan. Returns (action, text)."""
    console.print(Panel(
        Markdown(feature.plan.content),
        title=f"📋 {feature.title} — plan v{feature.plan.version}",
        border_style="magenta",
    ))
    action = Prompt.ask(
        "Approve this plan?",
        choices=["approve", "edit", "reject", "skip"],
        default="approve",
        console=console,
    )
    if action == "edit":
        edited = typer.edit(feature.plan.content)
        return "approve", edited if edited is not None else feature.plan.content
    if action == "reject":
        feedback = Prompt.ask("Feedback for a revised plan (empty sends it back to backlog)", default="", console=console)
        return "reject", feedback or None
    return action, None


async def _drive(pool: RunnerPool, feature_ids: list[str], auto: bool, auto_approve: bool) -> None:
    """Run until idle, handling plan approvals between idle points."""
    reviewed: set[tuple[str, int]] = set()
    try:
        for fid in feature_ids:
            await pool.run_feature(fid)
        if auto:
            await pool.start_auto_mode()

        while True:
            await pool.wait_idle()
            pending = [
                f for f in pool.store.list_features()
                if f.status == FeatureStatus.WAITING_APPROVAL
                and f.plan.status == "generated"
                and (f.id, f.plan.version) not in reviewed
            ]
            if not pending:
                break

            for f in pending:
                reviewed.add((f.id, f.plan.version))
                if auto_approve:
                    action, text = "approve", None
                else:
                    action, text = _review_plan(f)
                if action == "approve":
                    await pool.approve_plan(f.id, edited_plan=text)
                elif action == "reject":
                    await pool.reject_plan(f.id, feedback=text)
    except asyncio.CancelledError:
        console.print("\n[yellow]Stopping... letting agents flush their last message.[/]")
        await pool.stop_all()
        raise
    finally:
        if pool.auto_mode:
            await pool.stop_auto_mode()


@app.command()
def run(
    feature_ids: Optional[list[str]] = typer.Argument(None, help="Features to run (default: none, use --auto)"),
    repo: Path = RepoOption,
    auto: bool = typer.Option(False, "--auto", "-a", help="Auto mode: keep admitting backlog features"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Override max concurrency"),
    auto_approve: bool = typer.Option(False, "--auto-approve", "-y", help="Approve generated plans without asking"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run features in isolated worktrees until nothing is left to do."""
    _print_banner()
    _configure_logging(verbose)

    feature_ids = feature_ids or []
    if not feature_ids and not auto:
        console.print("[red]Specify feature ids or --auto[/]")
        raise typer.Exit(1)

    pool, audit = _open_pool(_repo(repo))
    if concurrency is not None:
        if concurrency < 0:
            console.print("[red]--concurrency must be >= 0[/]")
            raise typer.Exit(1)
        pool.max_concurrency = concurrency

    failed: set[str] = set()

    def _track(event: FeatureEvent) -> None:
        if event.event_type == "feature_error" and event.feature_id:
            failed.add(event.feature_id)

    pool.bus.subscribe(_event_printer)
    pool.bus.subscribe(_track)
    console.print(f"[cyan]Running with max concurrency {pool.max_concurrency}[/]")

    try:
        asyncio.run(_drive(pool, feature_ids, auto, auto_approve))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/]")
        raise typer.Exit(130)
    except ForgelineError as e:
        _exit_with(e)
    finally:
        audit.close()

    counts = pool.status()["counts"]
    summary = ", ".join(f"{k}: {v}" for k, v in sorted(counts.items()))
    console.print(f"\n[bold]Done.[/] {summary}")
    if failed:
        raise typer.Exit(1)


@app.command()
def approve(
    feature_id: str = typer.Argument(..., help="Feature id"),
    repo: Path = RepoOption,
    edit: bool = typer.Option(False, "--edit", "-e", help="Edit the plan before approving"),
):
    """Approve a generated plan. The feature runs on the next `forgeline run`."""
    edited = None
    if edit:
        feature = _store(_repo(repo)).get(feature_id)
        edited = typer.edit(feature.plan.content)
    _with_pool(repo, lambda pool: pool.approve_plan(feature_id, edited_plan=edited))
    console.print(f"[green]✓ Plan approved for {feature_id}[/]")


@app.command()
def reject(
    feature_id: str = typer.Argument(..., help="Feature id"),
    repo: Path = RepoOption,
    feedback: Optional[str] = typer.Option(None, "--feedback", "-f", help="Ask for a revised plan"),
):
    """Reject a plan: with feedback it is regenerated, without it goes back to backlog."""
    feature = _with_pool(repo, lambda pool: pool.reject_plan(feature_id, feedback=feedback))
    console.print(f"[yellow]✓ Plan rejected; {feature_id} is now {feature.status.value}[/]")


@app.command()
def verify(
    feature_id: str = typer.Argument(..., help="Feature id"),
    repo: Path = RepoOption,
):
    """Mark a feature that skipped automated tests as verified."""
    _with_pool(repo, lambda pool: pool.verify_feature(feature_id))
    console.print(f"[green]✓ {feature_id} verified[/]")


@app.command()
def merge(
    feature_id: str = typer.Argument(..., help="Feature id"),
    repo: Path = RepoOption,
):
    """Merge a verified feature's branch back into trunk."""
    sha = _with_pool(repo, lambda pool: pool.merge_feature(feature_id))
    console.print(f"[green]✓ Merged {feature_id} at {sha[:8]}[/]")


@app.command()
def resume(
    feature_id: str = typer.Argument(..., help="Feature id"),
    repo: Path = RepoOption,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Resume a feature that was interrupted by a restart."""
    _configure_logging(verbose)

    async def _resume(pool: RunnerPool) -> None:
        pool.bus.subscribe(_event_printer)
        await pool.resume_feature(feature_id)
        await pool.wait_idle()

    _with_pool(repo, _resume, admit=True)


@app.command()
def abort(
    feature_id: str = typer.Argument(..., help="Feature id"),
    repo: Path = RepoOption,
):
    """Cancel a feature and discard its worktree."""
    async def _abort(pool: RunnerPool) -> bool:
        done = await pool.abort_feature(feature_id)
        await pool.wait_idle()
        return done

    if _with_pool(repo, _abort):
        console.print(f"[yellow]✓ {feature_id} cancelled[/]")
    else:
        console.print(f"[dim]{feature_id} is already finished.[/]")


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------

@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check FORGELINE configuration and provider readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    config = load_config(repo.resolve() if repo else None)
    registry = ProviderRegistry.from_config(config.providers)

    async def _probe():
        names = list(registry.providers)
        results = await asyncio.gather(*(registry.get(n).detect_installation() for n in names))
        return dict(zip(names, results))

    provider_table = Table(title="Providers", border_style="cyan")
    provider_table.add_column("Provider")
    provider_table.add_column("Installed")
    provider_table.add_column("Version", style="dim")
    provider_table.add_column("Auth")
    for name, info in asyncio.run(_probe()).items():
        installed = f"[green]✓ {info.path or info.method}[/]" if info.installed else f"[dim]✗ {info.error or 'Not found'}[/]"
        auth = "[green]✓[/]" if info.authenticated or info.has_api_key else "[yellow]?[/]"
        provider_table.add_row(name, installed, info.version or "", auth)
    console.print(provider_table)

    console.print("\n[bold]Scheduler:[/]")
    console.print(f"  Max concurrency: {config.scheduler.max_concurrency}")
    console.print(f"  Default model:   {config.providers.default_model}")
    console.print(f"  Test command:    {config.verification.test_command or '[dim]none[/]'}")
    console.print(f"  Auto merge:      {config.workspace.auto_merge}")

    if repo:
        features = _store(repo.resolve(), config).list_features()
        counts: dict[str, int] = {}
        for f in features:
            counts[f.status.value] = counts.get(f.status.value, 0) + 1
        if counts:
            console.print("\n[bold]Backlog:[/]")
            for name, cnt in sorted(counts.items()):
                color = STATUS_COLORS.get(name, "white")
                console.print(f"  [{color}]{name:<17}[/] {cnt}")
        interrupted = [f.id for f in features if f.interrupted]
        if interrupted:
            console.print(f"\n[yellow]Interrupted: {', '.join(interrupted)}[/]")
            console.print("  [dim]Resume with `forgeline resume <id>` or cancel with `forgeline abort <id>`.[/]")


@app.command()
def models(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """List the models every provider offers."""
    config = load_config(repo.resolve() if repo else None)
    registry = ProviderRegistry.from_config(config.providers)

    table = Table(title="Models", border_style="cyan")
    table.add_column("ID")
    table.add_column("Provider", style="dim")
    table.add_column("Name")
    table.add_column("Tier", style="dim")
    for provider, catalog in registry.all_models().items():
        for m in catalog:
            marker = " [green]★[/]" if m.default else ""
            table.add_row(m.id, provider, f"{m.name}{marker}", m.tier)
    console.print(table)


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
