"""zen CLI: all commands."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, NoReturn

import rich
import typer
from rich import print as rprint
from rich.markup import escape
from rich.table import Table

from zen.auth.manager import AuthManager
from zen.auth.providers import PROVIDERS
from zen.client import AssetClient
from zen.errors import AssetUnknown, AuthError, Cancelled, InvalidArgument, ZenError
from zen.fs import atomic_write, ensure_dir
from zen.logging import configure_logging, mask_secret
from zen.models import AssetFilter, GetOptions, SyncRequest
from zen.renderer import TaskRenderer, load_task_manifest, map_priority, map_status
from zen.settings import SECTIONS, ZenSettings, get_settings, set_config_value
from zen.templates.engine import TemplateEngine
from zen.trackers import get_tracker, save_snapshot

app = typer.Typer(help="zen: asset library, credentials and task scaffolding", no_args_is_help=True)
assets_app = typer.Typer(help="Browse, fetch and cache library assets.", no_args_is_help=True)
auth_app = typer.Typer(help="Manage provider credentials.", no_args_is_help=True)
task_app = typer.Typer(help="Work with the current task directory.", no_args_is_help=True)
config_app = typer.Typer(help="Show and edit configuration.", no_args_is_help=True)
app.add_typer(assets_app, name="assets")
app.add_typer(auth_app, name="auth")
app.add_typer(task_app, name="task")
app.add_typer(config_app, name="config")

EXIT_FAILURE = 1
EXIT_CANCELLED = 2
EXIT_AUTH = 4

NOT_SET = "[dim](not set)[/dim]"


# ---------------------------------------------------------------------------
# Output and error translation
# ---------------------------------------------------------------------------


def _ok(message: str) -> None:
    rprint(f"[green]✓[/green] {message}")


def _warn(message: str) -> None:
    rprint(f"[yellow]![/yellow] {message}")


def _hint(message: str) -> None:
    rprint(f"[cyan]→[/cyan] {message}")


def _exit_code(exc: ZenError) -> int:
    if isinstance(exc, AuthError):
        return EXIT_AUTH
    if isinstance(exc, Cancelled):
        return EXIT_CANCELLED
    return EXIT_FAILURE


def _fail(exc: ZenError) -> NoReturn:
    rprint(f"[red]✗[/red] {escape(exc.message)}")
    if exc.details:
        _hint(escape(exc.details))
    if isinstance(exc, AssetUnknown):
        for suggestion in exc.suggestions:
            _hint(f"did you mean: {escape(suggestion)}")
    raise typer.Exit(_exit_code(exc))


@contextmanager
def _handled() -> Iterator[None]:
    try:
        yield
    except ZenError as exc:
        _fail(exc)
    except (KeyboardInterrupt, typer.Abort):
        _warn("cancelled")
        raise typer.Exit(EXIT_CANCELLED) from None


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _settings() -> ZenSettings:
    with _handled():
        return get_settings()


def get_auth_manager(settings: ZenSettings) -> AuthManager:
    return AuthManager.from_config(settings.auth, prompt_disabled=settings.prompt_disabled)


def get_asset_client(settings: ZenSettings) -> AssetClient:
    return AssetClient.from_settings(settings, auth=get_auth_manager(settings))


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
) -> None:
    """zen: asset library, credentials and task scaffolding."""
    settings = _settings()
    configure_logging("debug" if verbose or settings.debug else settings.log_level)
    if settings.no_color:
        rich.reconfigure(no_color=True)


# ---------------------------------------------------------------------------
# assets
# ---------------------------------------------------------------------------


@assets_app.command("list")
def assets_list(
    type_: Annotated[str | None, typer.Option("--type", "-t", help="template, prompt, mcp or schema")] = None,
    category: Annotated[str | None, typer.Option("--category", "-c", help="Exact category")] = None,
    tag: Annotated[list[str] | None, typer.Option("--tag", help="Tag filter (repeatable)")] = None,
    stage: Annotated[str | None, typer.Option("--stage", help="Workflow stage, e.g. 04-design")] = None,
    limit: Annotated[int, typer.Option("--limit", min=0, help="Page size (0 for all)")] = 50,
    offset: Annotated[int, typer.Option("--offset", min=0)] = 0,
) -> None:
    """List assets in the library."""
    settings = _settings()
    with _handled(), get_asset_client(settings) as client:
        page = client.list_assets(
            AssetFilter(type=type_, category=category, tags=tag or [], stage=stage, limit=limit, offset=offset)
        )

    table = Table(title="Assets")
    table.add_column("Name", style="cyan")
    table.add_column("Command")
    table.add_column("Type")
    table.add_column("Category")
    table.add_column("Description", style="dim")
    for asset in page.results:
        table.add_row(asset.name, asset.command or "—", asset.type, asset.category or "—", asset.description)
    rprint(table)

    if page.results:
        rprint(f"Showing {page.offset + 1}-{page.offset + len(page.results)} of {page.total}")
    else:
        rprint(f"No assets match (total {page.total})")
    if page.has_more:
        _hint(f"next page: --offset {page.offset + len(page.results)}")


@assets_app.command("info")
def assets_info(name: Annotated[str, typer.Argument(help="Asset name or command")]) -> None:
    """Show metadata for an asset."""
    settings = _settings()
    with _handled(), get_asset_client(settings) as client:
        asset = client.lookup(name)

    table = Table(title=asset.name)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Command", asset.command or "—")
    table.add_row("Type", asset.type)
    table.add_row("Category", asset.category or "—")
    table.add_row("Description", asset.description or "—")
    table.add_row("Tags", ", ".join(asset.tags) if asset.tags else "none")
    table.add_row("Stages", ", ".join(asset.workflow_stages) if asset.workflow_stages else "none")
    table.add_row("Path", asset.path)
    table.add_row("Format", asset.format)
    table.add_row("Output file", asset.output_file or "—")
    table.add_row("Checksum", asset.checksum or "—")
    table.add_row("Updated", asset.updated_at or "—")
    if asset.variables:
        names = [f"{v.name}{'*' if v.required else ''} ({v.type})" for v in asset.variables]
        table.add_row("Variables", ", ".join(names))
    rprint(table)


@assets_app.command("get")
def assets_get(
    name: Annotated[str, typer.Argument(help="Asset name or command")],
    output: Annotated[Path | None, typer.Option("--output", "-o", help="Write to file instead of stdout")] = None,
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Bypass the local cache")] = False,
) -> None:
    """Print (or save) an asset's content."""
    settings = _settings()
    with _handled(), get_asset_client(settings) as client:
        content = client.get(name, GetOptions(use_cache=not no_cache))
        if output:
            ensure_dir(output.parent.resolve())
            atomic_write(output, content.body)

    if output:
        source = f"cache, {content.cache_age_seconds}s old" if content.cached else "network"
        _ok(f"Wrote {name} to {output} ({source})")
    else:
        typer.echo(content.text, nl=False)


@assets_app.command("sync")
def assets_sync(
    force: Annotated[bool, typer.Option("--force", "-f", help="Refresh even if the manifest is fresh")] = False,
    shallow: Annotated[bool, typer.Option("--shallow", help="Refresh only the manifest")] = False,
    branch: Annotated[str | None, typer.Option("--branch", "-b", help="Branch or ref to sync from")] = None,
) -> None:
    """Refresh the asset manifest from the remote repository."""
    settings = _settings()
    with _handled(), get_asset_client(settings) as client:
        result = client.sync(SyncRequest(force=force, shallow=shallow, branch=branch))

    counts = f"+{result.added} ~{result.updated} -{result.removed}"
    if result.status == "error":
        rprint(f"[red]✗[/red] Sync failed: {escape(result.error or 'unknown error')}")
        raise typer.Exit(EXIT_FAILURE)
    if result.status == "partial":
        _warn(f"Synced with errors ({counts}) in {result.duration_seconds:.2f}s")
        _hint(escape(result.error or ""))
        return
    if not result.manifest_refreshed:
        _ok("Manifest is up to date")
        return
    _ok(f"Synced {counts} in {result.duration_seconds:.2f}s ({result.cache_size_mb:.2f} MB cached)")


@assets_app.command("status")
def assets_status() -> None:
    """Show cache usage and API rate limits."""
    settings = _settings()
    with _handled(), get_asset_client(settings) as client:
        info = client.get_cache_info()
        rate = client.rate_limit

    table = Table(title="Asset Cache")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Repository", settings.assets.repository_url)
    table.add_row("Branch", settings.assets.branch)
    table.add_row("Cache path", info.cache_path)
    table.add_row("Entries", str(info.entry_count))
    table.add_row("Size", f"{info.total_size_mb:.2f} MB of {settings.assets.cache_size_mb} MB")
    table.add_row("Hit ratio", f"{info.hit_ratio:.0%}")
    table.add_row("Last sync", info.last_sync.isoformat() if info.last_sync else NOT_SET)
    if rate.remaining is not None:
        table.add_row("API requests left", f"{rate.remaining}/{rate.limit}")
    rprint(table)


@assets_app.command("clear")
def assets_clear(yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False) -> None:
    """Delete every cached asset and manifest."""
    settings = _settings()
    with _handled():
        if not yes and not typer.confirm(f"Clear the asset cache at {settings.assets.cache_path}?"):
            raise Cancelled("cache left untouched")
        with get_asset_client(settings) as client:
            removed = client.clear_cache()
    _ok(f"Cleared {removed} cache entr{'y' if removed == 1 else 'ies'}")


# ---------------------------------------------------------------------------
# auth
# ---------------------------------------------------------------------------

ProviderArg = Annotated[str, typer.Argument(help=f"One of: {', '.join(PROVIDERS)}")]


@auth_app.command("login")
def auth_login(
    provider: ProviderArg,
    token: Annotated[str | None, typer.Option("--token", help="Token value (avoid: ends up in shell history)")] = None,
    token_file: Annotated[Path | None, typer.Option("--token-file", help="Read the token from a file")] = None,
    email: Annotated[str | None, typer.Option("--email", help="Account email (Jira)")] = None,
) -> None:
    """Store a credential for a provider."""
    settings = _settings()
    with _handled():
        manager = get_auth_manager(settings)
        credential = manager.authenticate(provider, token=token, token_file=token_file, email=email)
    _ok(f"Authenticated with {PROVIDERS[credential.provider].name} ({settings.auth.storage_type} storage)")
    _hint(f"check it with: zen auth validate {credential.provider}")


@auth_app.command("status")
def auth_status(provider: Annotated[str | None, typer.Argument(help="Limit to one provider")] = None) -> None:
    """Show which providers have stored credentials."""
    settings = _settings()
    with _handled():
        manager = get_auth_manager(settings)
        statuses = [manager.provider_info(p) for p in ([provider] if provider else list(PROVIDERS))]

    table = Table(title="Credentials")
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Email")
    table.add_column("Stored", style="dim")
    table.add_column("Env vars", style="dim")
    for status in statuses:
        state = "[green]✓ authenticated[/green]" if status.authenticated else "[dim]not authenticated[/dim]"
        stored = status.created_at.strftime("%Y-%m-%d") if status.created_at else "—"
        table.add_row(status.name, state, status.email or "—", stored, ", ".join(status.env_vars))
    rprint(table)


@auth_app.command("logout")
def auth_logout(provider: ProviderArg) -> None:
    """Remove the stored credential for a provider."""
    settings = _settings()
    with _handled():
        get_auth_manager(settings).delete(provider)
    _ok(f"Removed {provider} credential")


@auth_app.command("validate")
def auth_validate(provider: ProviderArg) -> None:
    """Check the stored credential against the provider's API."""
    settings = _settings()
    with _handled():
        manager = get_auth_manager(settings)
        identity = manager.validate_credentials(provider)
    who = identity.get(PROVIDERS[provider].identity_key)
    if isinstance(who, dict):
        who = who.get("name") or who.get("email") or who.get("id")
    _ok(f"{PROVIDERS[provider].name} credential is valid ({escape(str(who))})")


# ---------------------------------------------------------------------------
# draft
# ---------------------------------------------------------------------------


def parse_vars(pairs: list[str] | None) -> dict[str, str]:
    variables: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise InvalidArgument(f"--var expects KEY=VALUE, got '{pair}'")
        variables[key.strip()] = value
    return variables


@app.command("draft")
def draft(
    command: Annotated[str, typer.Argument(help="Asset command, e.g. feature-spec")],
    output: Annotated[Path | None, typer.Option("--output", "-o", help="Output path (relative to the task)")] = None,
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite an existing file")] = False,
    preview: Annotated[bool, typer.Option("--preview", help="Print instead of writing")] = False,
    var: Annotated[list[str] | None, typer.Option("--var", help="Extra variable KEY=VALUE (repeatable)")] = None,
) -> None:
    """Render a library template into the current task directory."""
    settings = _settings()
    with _handled():
        overrides = parse_vars(var)
        with get_asset_client(settings) as client:
            engine = TemplateEngine(client, settings.templates)
            result = TaskRenderer(client, engine).render(
                command, output=output, force=force, preview=preview, overrides=overrides
            )

    if result.previewed:
        typer.echo(f"--- Preview of {Path(result.output_path).name} ---")
        typer.echo(result.content)
        typer.echo("--- End Preview ---")
        return
    _ok(f"Created {result.output_path} ({result.bytes_written} bytes)")


# ---------------------------------------------------------------------------
# task
# ---------------------------------------------------------------------------


@task_app.command("sync")
def task_sync(
    source: Annotated[str, typer.Argument(help="github, jira or linear")],
    external_id: Annotated[str, typer.Argument(help="Issue id, e.g. PROJ-123 or owner/repo#42")],
) -> None:
    """Fetch an external issue and store it as a snapshot in the current task."""
    settings = _settings()
    with _handled():
        task_dir, manifest = load_task_manifest()
        tracker = get_tracker(source, get_auth_manager(settings), timeout=settings.auth.validation_timeout_seconds)
        snapshot = tracker.fetch(external_id)
        path = save_snapshot(task_dir, snapshot)

    data = snapshot.task_data
    _ok(f"Synced {snapshot.external_id} into {manifest.task.id}")
    rprint(f"  {escape(data.title)}")
    rprint(f"  status {map_status(data.status) if data.status else '—'}, priority {map_priority(data.priority)}")
    rprint(f"  [dim]{path}[/dim]")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


def _display(key: str, value: object) -> str:
    if value is None or value == "":
        return NOT_SET
    if hasattr(value, "get_secret_value"):
        return mask_secret(value.get_secret_value())  # type: ignore[union-attr]
    if isinstance(value, list):
        return ", ".join(map(str, value)) or "[dim](empty)[/dim]"
    return escape(str(value))


@config_app.command("show")
def config_show() -> None:
    """Show resolved configuration (masks secrets)."""
    settings = _settings()

    table = Table(title="zen Configuration")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for name in ("log_level", "debug", "no_color", "prompt_disabled"):
        table.add_row(name, _display(name, getattr(settings, name)))
    for section in SECTIONS:
        model = getattr(settings, section)
        for name in type(model).model_fields:
            table.add_row(f"{section}.{name}", _display(name, getattr(model, name)))
    rprint(table)


@config_app.command("set")
def config_set(
    key: Annotated[str, typer.Argument(help="Dotted key, e.g. assets.branch")],
    value: Annotated[str, typer.Argument(help="New value")],
) -> None:
    """Write a value into ~/.zen/config.toml."""
    with _handled():
        path = set_config_value(key, value)
        get_settings()
    _ok(f"Set {key} = {escape(value)} in {path}")
