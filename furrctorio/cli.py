from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import typer
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from . import lockfile as lockfile_module
from . import manifest as manifest_module
from .cache import CacheStore
from .config import (
    DEFAULT_CONFIG_FILENAME,
    ConfigError,
    FurrConfig,
    USER_CONFIG_PATH,
    load_config,
    load_user_config,
    save_user_config,
)
from .errors import FurrctorioError, LockfileParseError
from .installed import is_applied, scan_installed
from .lockfile import Action, ActionKind, Lockfile
from .manifest import ManifestEntry, ModManifest
from .orchestrator import ApplyReport, UpdateOrchestrator
from .portal import PortalModSource
from .resolver import resolve
from .source import ModSource
from .versions import Version

app = typer.Typer(help="Factorio server mod manager (furrctorio)")
cache_app = typer.Typer(help="Inspect and trim the local archive cache")
user_config_app = typer.Typer(help="Manage user-level defaults")

app.add_typer(cache_app, name="cache")
app.add_typer(user_config_app, name="config")

_rich_console = Console()

_ACTION_STYLES = {
    ActionKind.INSTALL: "green",
    ActionKind.UPGRADE: "cyan",
    ActionKind.DOWNGRADE: "yellow",
    ActionKind.REMOVE: "red",
}


def _fail(message: str, code: int = 1) -> None:
    typer.secho(message, err=True, fg="red")
    raise typer.Exit(code=code)


def _fail_with(exc: FurrctorioError) -> None:
    _fail(str(exc), code=exc.exit_code)


def _load_or_exit(root: Path | None = None) -> FurrConfig:
    try:
        return load_config(root=root)
    except ConfigError as exc:
        _fail(str(exc), code=exc.exit_code)


def _get_config(ctx: typer.Context) -> FurrConfig:
    if ctx.obj is None:
        ctx.obj = {}
    cfg = ctx.obj.get("config")
    if cfg is None:
        cfg = _load_or_exit()
        ctx.obj["config"] = cfg
    return cfg


def _load_user_config_or_exit():
    try:
        return load_user_config()
    except ConfigError as exc:
        _fail(str(exc), code=exc.exit_code)


def _build_source(cfg: FurrConfig) -> ModSource:
    return PortalModSource(cfg.username, cfg.token, timeout=cfg.network.request_timeout)


def _build_orchestrator(cfg: FurrConfig, source: ModSource) -> UpdateOrchestrator:
    return UpdateOrchestrator(
        CacheStore(cfg.cache_dir),
        source,
        retries=cfg.network.fetch_retries,
        backoff=cfg.network.retry_backoff,
        max_workers=cfg.network.max_workers,
        network_budget=cfg.network.network_budget,
    )


def _configure_logging(verbose: bool) -> None:
    handler = RichHandler(console=Console(stderr=True), show_path=False, log_time_format="[%X]")
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger = logging.getLogger("furrctorio")
    package_logger.handlers = [handler]
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_fresh_lockfile(cfg: FurrConfig) -> Lockfile:
    manifest = manifest_module.load_manifest(cfg)
    lockfile = lockfile_module.load_lockfile(cfg.lockfile_file)
    lockfile_module.check_fresh(lockfile, manifest)
    return lockfile


def _previous_versions(cfg: FurrConfig) -> Optional[Dict[str, Version]]:
    if not cfg.lockfile_file.exists():
        return None
    try:
        return lockfile_module.load_lockfile(cfg.lockfile_file).versions()
    except LockfileParseError as exc:
        typer.secho(f"Ignoring unreadable lockfile: {exc}", err=True, fg="yellow")
        return None


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn Ctrl-C into a cancellation request instead of an exception."""
    cancel = threading.Event()

    def _handler(signum, frame):
        typer.secho("Cancelling; waiting for the current step to finish...", err=True, fg="yellow")
        cancel.set()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not on the main thread; leave the default handler alone.
        yield cancel
        return
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _actions_table(actions: List[Action], title: str) -> Table:
    table = Table(title=title, box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Action")
    table.add_column("Mod", style="cyan")
    table.add_column("From", style="dim")
    table.add_column("To")
    for action in actions:
        table.add_row(
            Text(action.kind.value, style=_ACTION_STYLES[action.kind]),
            action.name,
            str(action.previous) if action.previous else "-",
            str(action.version) if action.version else "-",
        )
    return table


@user_config_app.command("show")
def user_config_show():
    """Display the user-level defaults stored under ~/.config."""
    cfg = _load_user_config_or_exit()
    table = Table(title="User config", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Server root", str(cfg.server_root) if cfg.server_root else "(not set)")
    table.add_row("File", str(USER_CONFIG_PATH))
    _rich_console.print(table)


@user_config_app.command("set-root")
def user_config_set_root(
    path: Path = typer.Argument(..., help="Path to your Factorio server root (contains .furrctorio.json)"),
):
    resolved = path.expanduser().resolve()
    if not resolved.exists():
        _fail(f"{resolved} does not exist.")
    if not resolved.is_dir():
        _fail(f"{resolved} is not a directory.")
    config_file = resolved / DEFAULT_CONFIG_FILENAME
    if not config_file.exists():
        typer.secho(
            f"Warning: {config_file} does not exist yet. Defaults will be used until it's created.",
            fg="yellow",
        )
    cfg = _load_user_config_or_exit()
    cfg.server_root = resolved
    save_user_config(cfg)
    typer.secho(f"Default server root set to {resolved}", fg="green")
    typer.secho(f"Saved to {USER_CONFIG_PATH}", fg="cyan")


@user_config_app.command("clear-root")
def user_config_clear_root():
    cfg = _load_user_config_or_exit()
    cfg.server_root = None
    save_user_config(cfg)
    typer.secho("Cleared stored server root.", fg="yellow")


@app.callback()
def main(
    ctx: typer.Context,
    root: Path = typer.Option(None, "--root", help="Optional explicit server root directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output to stderr"),
):
    _configure_logging(verbose)
    ctx.obj = ctx.obj or {}
    if root is not None:
        ctx.obj["config"] = _load_or_exit(root=root)


@app.command("init")
def init_command(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing manifest"),
):
    """Create an empty mods manifest in the server root."""
    cfg = _get_config(ctx)
    try:
        manifest = manifest_module.init_manifest(cfg, force=force)
    except FurrctorioError as exc:
        _fail_with(exc)
    game = manifest.factorio_version or "any Factorio version"
    typer.secho(f"Initialized manifest for {game} at {manifest_module.manifest_path(cfg)}", fg="green")


@app.command("add")
def add_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Mod name as published on the mod portal"),
    version: str = typer.Option("*", "--version", help="Version constraint, e.g. '>= 1.2.0 < 2.0.0'"),
    disable: bool = typer.Option(False, "--disable", help="Add but mark disabled in mod-list.json"),
):
    """Add a mod to the manifest. Run 'resolve' afterwards to update the lockfile."""
    cfg = _get_config(ctx)
    try:
        entry = ManifestEntry(name=name, version=version, enabled=not disable)
    except ValidationError as exc:
        _fail(f"Invalid mod entry: {exc.errors()[0]['msg']}")
    try:
        manifest = manifest_module.load_manifest(cfg)
        manifest.add(entry)
        manifest_module.save_manifest(cfg, manifest)
    except FurrctorioError as exc:
        _fail_with(exc)
    state = "disabled" if disable else "enabled"
    typer.secho(f"Added mod {entry.name} {entry.constraint} ({state})", fg="green")


@app.command("remove")
def remove_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Mod name to drop from the manifest"),
):
    """Remove a mod from the manifest."""
    cfg = _get_config(ctx)
    try:
        manifest = manifest_module.load_manifest(cfg)
        manifest.remove(name)
        manifest_module.save_manifest(cfg, manifest)
    except FurrctorioError as exc:
        _fail_with(exc)
    typer.secho(f"Removed mod {name}", fg="yellow")


@app.command("resolve")
def resolve_command(
    ctx: typer.Context,
    allow_downgrade: bool = typer.Option(
        False, "--allow-downgrade", help="Let previously locked mods move to older versions"
    ),
):
    """Resolve the manifest against the mod portal and write the lockfile."""
    cfg = _get_config(ctx)
    try:
        manifest: ModManifest = manifest_module.load_manifest(cfg)
        previous = _previous_versions(cfg)
        result = resolve(
            manifest,
            _build_source(cfg),
            budget=cfg.resolver_budget,
            previous=previous,
            allow_downgrade=allow_downgrade,
        )
        lockfile = lockfile_module.write(result, manifest.checksum())
        lockfile_module.save_lockfile(cfg.lockfile_file, lockfile)
    except FurrctorioError as exc:
        _fail_with(exc)

    previous = previous or {}
    table = Table(title="Locked mods", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Mod", style="cyan")
    table.add_column("Version")
    table.add_column("Required by", style="dim")
    table.add_column("Enabled")
    for mod in lockfile.mods:
        before = previous.get(mod.name)
        version_cell = Text(mod.version)
        if before is None:
            version_cell.stylize("green")
        elif before != mod.parsed_version:
            version_cell = Text(f"{before} -> {mod.version}", style="yellow")
        table.add_row(mod.name, version_cell, mod.required_by, "yes" if mod.enabled else "no")
    _rich_console.print(table)
    typer.secho(f"Wrote {cfg.lockfile_file} ({len(lockfile.mods)} mod(s))", fg="green")


@app.command("diff")
def diff_command(ctx: typer.Context):
    """Show what 'apply' would change in the mods directory."""
    cfg = _get_config(ctx)
    try:
        lockfile = _load_fresh_lockfile(cfg)
        actions = lockfile_module.diff(lockfile, scan_installed(cfg.mods_dir))
    except FurrctorioError as exc:
        _fail_with(exc)
    if not actions:
        typer.secho("Mods directory already matches the lockfile.", fg="green")
        return
    _rich_console.print(_actions_table(actions, "Pending changes"))


@app.command("apply")
def apply_command(ctx: typer.Context):
    """Install exactly the locked mods into the mods directory."""
    cfg = _get_config(ctx)
    try:
        lockfile = _load_fresh_lockfile(cfg)
        orchestrator = _build_orchestrator(cfg, _build_source(cfg))
        with _cancel_on_interrupt() as cancel:
            report: ApplyReport = orchestrator.sync(lockfile, cfg.mods_dir, cancel=cancel)
    except FurrctorioError as exc:
        _fail_with(exc)

    if not report.changed:
        typer.secho("Mods directory already matches the lockfile.", fg="green")
        return
    table = Table(title="Applied", box=box.SIMPLE_HEAVY)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Installed", str(len(report.installed)))
    table.add_row("Upgraded", str(len(report.upgraded)))
    table.add_row("Downgraded", str(len(report.downgraded)))
    table.add_row("Removed", str(len(report.removed)))
    table.add_row("Downloaded", str(len(report.fetched)))
    table.add_row("From cache", str(len(report.cache_hits)))
    _rich_console.print(table)


@app.command("status")
def status_command(ctx: typer.Context):
    """Show manifest, lockfile and mods directory state."""
    cfg = _get_config(ctx)
    try:
        manifest = manifest_module.load_manifest(cfg)
    except FurrctorioError as exc:
        _fail_with(exc)

    lockfile: Optional[Lockfile] = None
    lock_state = Text("missing", style="red")
    if cfg.lockfile_file.exists():
        try:
            lockfile = lockfile_module.load_lockfile(cfg.lockfile_file)
        except LockfileParseError:
            lock_state = Text("unreadable", style="red")
        else:
            if lockfile_module.is_stale(lockfile, manifest):
                lock_state = Text("stale", style="yellow")
            else:
                lock_state = Text("fresh", style="green")

    installed = scan_installed(cfg.mods_dir)
    table = Table(title="furrctorio status", box=box.MINIMAL_DOUBLE_HEAD)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Name", Text(cfg.name, style="bold cyan"))
    table.add_row("Factorio", Text(manifest.factorio_version or "any", style="magenta"))
    table.add_row("Mods dir", Text(str(cfg.mods_dir), style="dim"))
    table.add_row("Manifest mods", str(len(manifest.mods)))
    table.add_row("Lockfile", lock_state)
    table.add_row("Installed archives", str(len(installed.mods)))
    if lockfile is not None:
        pending = lockfile_module.diff(lockfile, installed)
        applied = is_applied(cfg.mods_dir, lockfile) and not pending
        table.add_row("Applied", Text("yes", style="green") if applied else Text("no", style="yellow"))
        table.add_row("Pending changes", str(len(pending)))
    _rich_console.print(table)


@cache_app.command("list")
def cache_list(ctx: typer.Context):
    """List cached archives."""
    cfg = _get_config(ctx)
    entries = CacheStore(cfg.cache_dir).entries()
    if not entries:
        typer.secho(f"Cache at {cfg.cache_dir} is empty.", fg="bright_black")
        return
    table = Table(title=f"Cache ({cfg.cache_dir})", box=box.MINIMAL)
    table.add_column("Mod", style="cyan")
    table.add_column("Version")
    table.add_column("SHA1", style="dim")
    table.add_column("Size", justify="right")
    for entry in entries:
        table.add_row(entry.name, str(entry.version), entry.sha1, _human_size(entry.size))
    _rich_console.print(table)
    typer.echo(f"Total: {_human_size(sum(e.size for e in entries))}")


@cache_app.command("prune")
def cache_prune(
    ctx: typer.Context,
    max_mb: float = typer.Option(..., "--max-mb", min=0, help="Evict least recently used archives above this size"),
):
    """Evict least recently used archives until the cache fits."""
    cfg = _get_config(ctx)
    evicted = CacheStore(cfg.cache_dir).prune(int(max_mb * 1024 * 1024))
    freed = sum(entry.size for entry in evicted)
    typer.secho(f"Evicted {len(evicted)} archive(s), freed {_human_size(freed)}", fg="yellow")


@cache_app.command("clear")
def cache_clear(ctx: typer.Context):
    """Delete every cached archive."""
    cfg = _get_config(ctx)
    CacheStore(cfg.cache_dir).clear()
    typer.secho(f"Cleared {cfg.cache_dir}", fg="yellow")


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GiB"


if __name__ == "__main__":
    app()
