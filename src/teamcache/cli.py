"""teamcache command line interface.

Commands:
    status       Show cache state, staleness and lease for tracked teams
    refresh      Request a manual refresh (honours the 30 minute cooldown)
    run          Run the auto-refresh scheduler until interrupted
    lock         Inspect a team's refresh lease
    audit        List a team's manual refresh audit records
    audit-prune  Delete audit records past retention
    key          Generate or parse month snapshot keys
    config       Show or change configuration
    team         Add or remove tracked teams
    doctor       Check configuration and store connectivity
"""

import asyncio
import logging
import sys
from collections.abc import Coroutine
from datetime import datetime
from typing import Any, NoReturn, TypeVar

import click
from rich.console import Console
from rich.table import Table

from teamcache import __version__
from teamcache.audit import AuditLogWriter
from teamcache.clock import SystemClock
from teamcache.config_manager import BACKENDS, ConfigManager, TeamCacheConfig
from teamcache.errors import ConfigError, TeamCacheError, sanitize_error_message
from teamcache.fetcher import load_fetcher
from teamcache.identity import Identity
from teamcache.keys import CacheDataType, generate_key, parse_key, team_cache_key
from teamcache.lock import SoftLockManager
from teamcache.models import TeamCacheState, TeamProfile, format_datetime
from teamcache.scheduler import AUTO_INTERVAL, MANUAL_COOLDOWN, RefreshOutcome, TeamCacheCoordinator
from teamcache.staleness import StalenessLevel
from teamcache.store import ObjectStore, create_store

logger = logging.getLogger(__name__)
console = Console()

T = TypeVar("T")

STALENESS_STYLES = {
    StalenessLevel.GREEN: "green",
    StalenessLevel.YELLOW: "yellow",
    StalenessLevel.RED: "red",
}

OUTCOME_MESSAGES = {
    RefreshOutcome.REFRESHED: "[green]Refreshed[/green]",
    RefreshOutcome.FETCH_FAILED: "[red]Cost fetch failed[/red]",
    RefreshOutcome.LOCK_NOT_ACQUIRED: "[yellow]Another client is refreshing[/yellow]",
    RefreshOutcome.UP_TO_DATE: "[dim]Refreshed by another client[/dim]",
    RefreshOutcome.BUSY: "[yellow]Refresh already in progress[/yellow]",
    RefreshOutcome.STORE_ERROR: "[red]Store error[/red]",
}


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {message}")
    sys.exit(1)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _load_config(ctx: click.Context) -> TeamCacheConfig:
    try:
        return ConfigManager.load_config(ctx.obj.get("config_path"))
    except ConfigError as e:
        _fail(str(e))


def _require_store_config(config: TeamCacheConfig) -> None:
    if not config.is_valid:
        _fail(
            "Team cache is not configured. Enable it with:\n"
            "  teamcache config set enabled true\n"
            "  teamcache config set container_name <container>\n"
            "  teamcache config set account_url https://<account>.blob.core.windows.net"
        )


def _profiles(config: TeamCacheConfig, team_ids: tuple[str, ...]) -> list[TeamProfile]:
    selected = team_ids or tuple(sorted(config.teams))
    if not selected:
        _fail("No teams tracked. Add one with: teamcache team add TEAM_ID ACCOUNT_ID")
    unknown = [team_id for team_id in selected if team_id not in config.teams]
    if unknown:
        _fail(f"Unknown team(s): {', '.join(unknown)}")
    return [TeamProfile(team_id=team_id, account_id=config.teams[team_id]) for team_id in selected]


def _coordinator(config: TeamCacheConfig) -> TeamCacheCoordinator:
    if not config.fetcher:
        _fail(
            "No cost fetcher configured. Set one with:\n"
            "  teamcache config set fetcher package.module:callable"
        )
    try:
        fetcher = load_fetcher(config.fetcher)
        return TeamCacheCoordinator.from_config(config, fetcher)
    except ConfigError as e:
        _fail(str(e))


def _store(config: TeamCacheConfig) -> ObjectStore:
    try:
        return create_store(config)
    except ConfigError as e:
        _fail(str(e))


def _format_time(moment: datetime | None) -> str:
    if moment is None:
        return "never"
    return moment.strftime("%Y-%m-%d %H:%M UTC")


def _format_wait(seconds: float) -> str:
    if seconds <= 0:
        return "now"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs:02d}s" if minutes else f"{secs}s"


@click.group(context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """teamcache - shared cost cache coordination for teams.

    Clients in a team share one cost snapshot per team in an object store.
    A lease ensures at most one client refreshes a team at a time, automatic
    refreshes are jittered around every 6 hours, and manual refreshes are
    limited to one per 30 minutes.

    \b
    EXAMPLES:
        $ teamcache team add platform 123456789012
        $ teamcache status
        $ teamcache refresh platform
        $ teamcache run

    \b
    CONFIGURATION:
        Config file: ~/.teamcache/config.toml (override with TEAMCACHE_CONFIG)
        Storage secret: AZURE_STORAGE_CONNECTION_STRING (optional)
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format="%(message)s")
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ----------------------------------------------------------------------
# Cache state
# ----------------------------------------------------------------------


async def _collect_status(
    store: ObjectStore, profiles: list[TeamProfile]
) -> list[tuple[TeamProfile, TeamCacheState | None, Any, str | None]]:
    clock = SystemClock()
    locks = SoftLockManager(store, clock=clock)
    rows = []
    async with store:
        for profile in profiles:
            try:
                lookup = await store.get(team_cache_key(profile.team_id))
                state = TeamCacheState.from_lookup(
                    profile.team_id, lookup, clock.now(), AUTO_INTERVAL, MANUAL_COOLDOWN
                )
                lease = await locks.inspect(profile.team_id)
                last_error = lookup.entry.last_error if lookup.entry else None
                rows.append((profile, state, lease, last_error))
            except TeamCacheError as e:
                rows.append((profile, None, None, sanitize_error_message(e)))
    return rows


@main.command(name="status")
@click.argument("team_ids", nargs=-1)
@click.pass_context
def status_command(ctx: click.Context, team_ids: tuple[str, ...]) -> None:
    """Show cache freshness and lease state for teams.

    \b
    Examples:
        teamcache status
        teamcache status platform data
    """
    config = _load_config(ctx)
    _require_store_config(config)
    profiles = _profiles(config, team_ids)

    rows = _run(_collect_status(_store(config), profiles))
    now = SystemClock().now()

    table = Table(title="Team Cache Status", show_header=True, header_style="bold")
    table.add_column("Team", style="cyan", no_wrap=True)
    table.add_column("Last Refresh")
    table.add_column("By")
    table.add_column("Staleness")
    table.add_column("Version", justify="right")
    table.add_column("Manual In")
    table.add_column("Lease")

    for profile, state, lease, last_error in rows:
        if state is None:
            table.add_row(profile.team_id, "-", "-", "[red]unavailable[/red]", "-", "-", last_error or "")
            continue
        level = state.staleness(now)
        lease_text = "free"
        if lease is not None and not lease.is_expired(now):
            lease_text = f"{lease.holder} ({_format_wait(lease.remaining_seconds(now))})"
        table.add_row(
            profile.team_id,
            _format_time(state.last_refreshed_at),
            state.refreshed_by.display if state.refreshed_by else "-",
            f"[{STALENESS_STYLES[level]}]{level.label}[/{STALENESS_STYLES[level]}]",
            str(state.version),
            _format_wait(state.time_until_manual_refresh(now)),
            lease_text,
        )

    console.print(table)
    for profile, state, _, last_error in rows:
        if state is not None and last_error:
            console.print(f"[yellow]{profile.team_id}: last attempt failed: {last_error}[/yellow]")


@main.command(name="refresh")
@click.argument("team_id")
@click.pass_context
def refresh_command(ctx: click.Context, team_id: str) -> None:
    """Refresh a team's costs now.

    Rejected while the team's manual cooldown (30 minutes after the last
    successful refresh) is running.
    """
    config = _load_config(ctx)
    _require_store_config(config)
    (profile,) = _profiles(config, (team_id,))
    coordinator = _coordinator(config)

    async def refresh():
        try:
            await coordinator.track_team(profile)
            return await coordinator.request_manual_refresh(team_id)
        finally:
            await coordinator.close()

    decision = _run(refresh())
    if not decision.accepted:
        console.print(
            f"[yellow]Manual refresh available in {_format_wait(decision.seconds_remaining)}[/yellow]"
        )
        sys.exit(2)

    console.print(f"{team_id}: {OUTCOME_MESSAGES[decision.outcome]}")
    if decision.outcome in (RefreshOutcome.FETCH_FAILED, RefreshOutcome.STORE_ERROR):
        error = coordinator.last_error(team_id)
        if error:
            console.print(f"  {error}")
        sys.exit(1)


@main.command(name="run")
@click.argument("team_ids", nargs=-1)
@click.option("--once", is_flag=True, help="Run one check for each team and exit")
@click.pass_context
def run_command(ctx: click.Context, team_ids: tuple[str, ...], once: bool) -> None:
    """Run the auto-refresh scheduler until interrupted.

    \b
    Examples:
        teamcache run
        teamcache run platform --once
    """
    config = _load_config(ctx)
    _require_store_config(config)
    profiles = _profiles(config, team_ids)
    coordinator = _coordinator(config)

    async def run():
        try:
            for profile in profiles:
                await coordinator.track_team(profile)
            outcomes = await coordinator.check_all()
            for team_id, outcome in outcomes.items():
                message = OUTCOME_MESSAGES[outcome] if outcome else "[dim]Up to date[/dim]"
                console.print(f"{team_id}: {message}")
            if once:
                return
            coordinator.start()
            console.print(
                f"[bold]Scheduler running for {len(profiles)} team(s).[/bold] Press Ctrl+C to stop."
            )
            await asyncio.Event().wait()
        finally:
            await coordinator.close()

    try:
        _run(run())
    except KeyboardInterrupt:
        console.print("\nScheduler stopped")


# ----------------------------------------------------------------------
# Lease and audit inspection
# ----------------------------------------------------------------------


@main.command(name="lock")
@click.argument("team_id")
@click.pass_context
def lock_command(ctx: click.Context, team_id: str) -> None:
    """Show who holds a team's refresh lease."""
    config = _load_config(ctx)
    _require_store_config(config)
    store = _store(config)

    async def inspect():
        async with store:
            return await SoftLockManager(store).inspect(team_id)

    try:
        lease = _run(inspect())
    except TeamCacheError as e:
        _fail(sanitize_error_message(e))

    now = SystemClock().now()
    if lease is None:
        console.print(f"{team_id}: no lease")
    elif lease.is_expired(now):
        console.print(f"{team_id}: lease free (last held by {lease.holder})")
    else:
        console.print(
            f"{team_id}: held by [bold]{lease.holder}[/bold] "
            f"until {format_datetime(lease.expires_at)} ({_format_wait(lease.remaining_seconds(now))} left)"
        )


@main.command(name="audit")
@click.argument("team_id")
@click.option("--date", "day", type=click.DateTime(formats=["%Y-%m-%d"]), help="Only this day (YYYY-MM-DD)")
@click.pass_context
def audit_command(ctx: click.Context, team_id: str, day: datetime | None) -> None:
    """List manual refresh audit records for a team."""
    config = _load_config(ctx)
    _require_store_config(config)
    store = _store(config)

    async def list_entries():
        async with store:
            return await AuditLogWriter(store).list_entries(team_id, day.date() if day else None)

    try:
        entries = _run(list_entries())
    except TeamCacheError as e:
        _fail(sanitize_error_message(e))

    if not entries:
        console.print(f"[yellow]No audit records for {team_id}[/yellow]")
        return

    table = Table(title=f"Audit Log - {team_id}", show_header=True, header_style="bold")
    table.add_column("Timestamp", no_wrap=True)
    table.add_column("Actor", style="cyan")
    table.add_column("Reason")
    for entry in entries:
        table.add_row(format_datetime(entry.timestamp), entry.actor, entry.reason)
    console.print(table)


@main.command(name="audit-prune")
@click.argument("team_id")
@click.pass_context
def audit_prune_command(ctx: click.Context, team_id: str) -> None:
    """Delete a team's audit records older than their retention."""
    config = _load_config(ctx)
    _require_store_config(config)
    store = _store(config)

    async def prune():
        async with store:
            return await AuditLogWriter(store).prune_expired(team_id)

    try:
        removed = _run(prune())
    except TeamCacheError as e:
        _fail(sanitize_error_message(e))
    console.print(f"[green]Removed {removed} expired audit record(s)[/green]")


# ----------------------------------------------------------------------
# Keys
# ----------------------------------------------------------------------


@main.group(name="key")
def key_group() -> None:
    """Generate or parse month snapshot keys."""


@key_group.command(name="generate")
@click.argument("account_id")
@click.option("--year", type=click.IntRange(1, 9999), help="Year (default: current)")
@click.option("--month", type=click.IntRange(1, 12), help="Month (default: current)")
@click.option(
    "--type",
    "data_type",
    type=click.Choice([t.value for t in CacheDataType]),
    default=CacheDataType.FULL_DATA.value,
    show_default=True,
)
@click.option("--key-version", default="v1", show_default=True, help="Key scheme version")
def key_generate(account_id: str, year: int | None, month: int | None, data_type: str, key_version: str) -> None:
    """Print the snapshot key for an account's month."""
    now = SystemClock().now()
    click.echo(
        generate_key(account_id, year or now.year, month or now.month, CacheDataType(data_type), key_version)
    )


@key_group.command(name="parse")
@click.argument("key")
def key_parse(key: str) -> None:
    """Decode a snapshot key into its components."""
    parsed = parse_key(key)
    if parsed is None:
        _fail(f"Not a snapshot key: {key}")
    console.print(f"account:  {parsed.account_id}")
    console.print(f"period:   {parsed.year:04d}-{parsed.month:02d}")
    console.print(f"type:     {parsed.data_type.value}")
    console.print(f"version:  {parsed.version}")


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------

OPTIONAL_FLOAT_KEYS = {"ttl_override"}


def _coerce_config_value(key: str, raw: str) -> Any:
    """Convert a command-line string to the type of config field ``key``."""
    defaults = TeamCacheConfig()
    if key == "teams" or key.startswith("_") or not hasattr(defaults, key):
        raise ConfigError(f"Unknown config key: {key}")

    current = getattr(defaults, key)
    if raw.lower() in ("none", "") and (current is None or key in OPTIONAL_FLOAT_KEYS):
        return None
    try:
        if isinstance(current, bool):
            if raw.lower() in ("true", "yes", "1", "on"):
                return True
            if raw.lower() in ("false", "no", "0", "off"):
                return False
            raise ValueError(f"expected true or false, got '{raw}'")
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float) or key in OPTIONAL_FLOAT_KEYS:
            return float(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {key}: {e}") from e
    return raw


@main.group(name="config")
def config_group() -> None:
    """Show or change configuration."""


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration."""
    config = _load_config(ctx)
    for key, value in sorted(config.to_dict().items()):
        if key == "teams":
            continue
        console.print(f"{key} = {value!r}")
    console.print(f"\n[bold]Teams ({len(config.teams)}):[/bold]")
    for team_id, account_id in sorted(config.teams.items()):
        console.print(f"  {team_id} -> {account_id}")
    if config.enabled and not config.is_valid:
        console.print("\n[yellow]Warning: configuration is enabled but incomplete[/yellow]")


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a configuration value.

    \b
    Examples:
        teamcache config set enabled true
        teamcache config set backend local
        teamcache config set local_root /mnt/shared/teamcache
        teamcache config set ttl_override none
    """
    try:
        coerced = _coerce_config_value(key, value)
        if key == "backend" and coerced not in BACKENDS:
            raise ConfigError(f"Unknown backend '{coerced}'. Choose from: {', '.join(BACKENDS)}")
        ConfigManager.update_config(ctx.obj.get("config_path"), **{key: coerced})
    except ConfigError as e:
        _fail(str(e))
    console.print(f"[green]Set {key} = {coerced!r}[/green]")


@main.group(name="team")
def team_group() -> None:
    """Add or remove tracked teams."""


@team_group.command(name="add")
@click.argument("team_id")
@click.argument("account_id")
@click.pass_context
def team_add(ctx: click.Context, team_id: str, account_id: str) -> None:
    """Track TEAM_ID, mirroring billing account ACCOUNT_ID."""
    try:
        ConfigManager.add_team(team_id, account_id, ctx.obj.get("config_path"))
    except ConfigError as e:
        _fail(str(e))
    console.print(f"[green]Tracking team {team_id} (account {account_id})[/green]")


@team_group.command(name="remove")
@click.argument("team_id")
@click.pass_context
def team_remove(ctx: click.Context, team_id: str) -> None:
    """Stop tracking TEAM_ID."""
    try:
        removed = ConfigManager.remove_team(team_id, ctx.obj.get("config_path"))
    except ConfigError as e:
        _fail(str(e))
    if not removed:
        _fail(f"Team not tracked: {team_id}")
    console.print(f"[green]Stopped tracking {team_id}[/green]")


# ----------------------------------------------------------------------
# Diagnostics
# ----------------------------------------------------------------------


@main.command(name="doctor")
@click.pass_context
def doctor_command(ctx: click.Context) -> None:
    """Check configuration and object store connectivity."""
    config = _load_config(ctx)
    _require_store_config(config)
    console.print(f"Backend: {config.backend}")
    console.print(f"Prefix:  {config.cache_prefix}")
    console.print(f"Identity: {Identity.for_process(config.display_name).display_name}")

    store = _store(config)

    async def check():
        async with store:
            await store.check_connection()

    try:
        _run(check())
    except TeamCacheError as e:
        _fail(f"Store check failed: {sanitize_error_message(e)}")
    console.print("[green]Store reachable[/green]")

    if config.fetcher:
        try:
            load_fetcher(config.fetcher)
        except ConfigError as e:
            _fail(str(e))
        console.print(f"[green]Fetcher resolved:[/green] {config.fetcher}")
    else:
        console.print("[yellow]No cost fetcher configured; refresh and run are unavailable[/yellow]")


if __name__ == "__main__":
    main()
