"""CLI for keyrotor secret rotation."""
import sys
from typing import Optional

import click

from keyrotor.adapters.postgres.models import Base
from keyrotor.dependencies import build_manager, get_session_factory
from keyrotor.domain.manager import SecretManager
from keyrotor.domain.models import PoolStatus
from keyrotor.domain.pool import KeyPool
from keyrotor.domain.recipes import InitializableRecipe
from keyrotor.errors import KeyrotorError
from keyrotor.logging_hardening import setup_logging


def _manager(ctx: click.Context) -> SecretManager:
    obj = ctx.ensure_object(dict)
    if "manager" not in obj:
        db = get_session_factory()()
        ctx.call_on_close(db.close)
        obj["manager"] = build_manager(db, source="cli")
    return obj["manager"]


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """keyrotor: secret rotation with grace periods."""
    ctx.ensure_object(dict)
    setup_logging("DEBUG" if verbose else "WARNING")


@cli.command("install")
@click.pass_context
def install(ctx: click.Context):
    """Create the keyrotor tables in the configured database."""
    factory = ctx.obj.get("session_factory") or get_session_factory()
    Base.metadata.create_all(bind=factory.kw["bind"])
    click.echo("✓ Tables created")


@cli.command("status")
@click.pass_context
def status(ctx: click.Context):
    """Show every secret with its grace state and last rotation."""
    rows = _manager(ctx).status()
    if not rows:
        click.echo("No secrets found.")
        return

    click.echo(f"\n{'Key':<40} {'Status':<14} {'Last Rotation':<16} {'Rotated':<20}")
    click.echo("-" * 92)
    for row in rows:
        rotated = row.rotated_at.strftime("%Y-%m-%d %H:%M:%S") if row.rotated_at else "-"
        click.echo(f"{row.key:<40} {row.state:<14} {row.last_rotation:<16} {rotated:<20}")


@cli.command("rotate")
@click.argument("key")
@click.option("--recipe", "recipe_name", default=None, help="Registered recipe name (default: derived from the key)")
@click.option("--grace", type=click.IntRange(min=0), default=None, help="Grace period in minutes")
@click.option("--no-provider-cleanup", is_flag=True, help="Do not delete the old value at the provider")
@click.pass_context
def rotate(ctx: click.Context, key: str, recipe_name: Optional[str], grace: Optional[int], no_provider_cleanup: bool):
    """Rotate a secret using a registered recipe."""
    manager = _manager(ctx)
    if not manager.has(key):
        raise click.ClickException(f"Secret [{key}] not found.")
    recipe_name = recipe_name or manager.registry.name_for_key(key)
    if not recipe_name:
        raise click.ClickException("No recipe specified. Use --recipe.")

    recipe = manager.registry.resolve(recipe_name)
    if recipe is None:
        available = ", ".join(manager.registry.names()) or "none"
        raise click.ClickException(f"Unknown recipe [{recipe_name}]. Available: {available}")

    provider_cleanup = False if no_provider_cleanup else manager.registry.provider_cleanup(recipe_name)
    if provider_cleanup and manager.previous_value(key):
        click.echo(f"Discarding previous key for [{key}]...")

    click.echo(f"Rotating secret [{key}]...")
    log = manager.rotate(key, recipe, grace_period_minutes=grace, provider_cleanup=provider_cleanup)
    if log.is_success:
        click.echo(f"✓ Secret [{key}] rotated successfully.")
        return

    click.echo(f"Error: Failed to rotate secret [{key}].", err=True)
    if log.error_message:
        click.echo(f"Reason: {log.error_message}", err=True)
    sys.exit(1)


@cli.command("rollback")
@click.argument("key")
@click.pass_context
def rollback(ctx: click.Context, key: str):
    """Restore a secret's previous value."""
    manager = _manager(ctx)
    secret = manager.find(key)
    if secret is None:
        raise click.ClickException(f"Secret [{key}] not found.")
    if secret.previous_value is None:
        raise click.ClickException(f"Secret [{key}] has no previous value to rollback to.")

    if manager.rollback(key) is None:
        raise click.ClickException(f"Failed to rollback secret [{key}].")
    click.echo(f"✓ Secret [{key}] rolled back successfully.")


@cli.command("clear-expired")
@click.argument("key", required=False)
@click.pass_context
def clear_expired(ctx: click.Context, key: Optional[str]):
    """Clear expired grace periods (all secrets, or one KEY)."""
    count = _manager(ctx).clear_expired(key)
    if key:
        click.echo(f"Cleared expired grace period for [{key}]: {count}")
    else:
        click.echo(f"Cleared {count} expired grace periods.")


@cli.command("prune-logs")
@click.option("--days", type=click.IntRange(min=1), default=None, help="Days of logs to keep")
@click.option("--dry-run", is_flag=True, help="Only count the logs that would be pruned")
@click.pass_context
def prune_logs(ctx: click.Context, days: Optional[int], dry_run: bool):
    """Delete rotation logs older than the retention window."""
    count = _manager(ctx).prune_logs(days=days, dry_run=dry_run)
    if count == 0:
        click.echo("No logs to prune.")
    elif dry_run:
        click.echo(f"Would prune {count} rotation log(s).")
    else:
        click.echo(f"Pruned {count} rotation log(s).")


@cli.command("init")
@click.argument("key")
@click.option("--recipe", "recipe_name", default=None, help="Recipe used to bootstrap the value")
@click.option("--force", is_flag=True, help="Overwrite an existing secret without asking")
@click.pass_context
def init(ctx: click.Context, key: str, recipe_name: Optional[str], force: bool):
    """Initialize a secret value."""
    manager = _manager(ctx)
    if manager.has(key) and not force:
        if not click.confirm(f"Secret [{key}] already exists. Overwrite?", default=False):
            click.echo("Cancelled.")
            return

    name = recipe_name or manager.registry.name_for_key(key)
    recipe = manager.registry.resolve(name) if name else None
    value = None
    if isinstance(recipe, InitializableRecipe):
        click.echo(f"Initializing secret [{key}]...")
    else:
        value = click.prompt("Secret value", hide_input=True, default="", show_default=False)

    try:
        manager.initialize(key, recipe_name=recipe_name, value=value)
    except (KeyrotorError, ValueError) as e:
        raise click.ClickException(f"Failed to initialize secret [{key}]: {e}")
    click.echo(f"✓ Secret [{key}] initialized successfully.")


def _echo_pool_status(status: PoolStatus, threshold: int) -> None:
    click.echo(f"Pool Status: {status.secret_key}")
    click.echo(f"\n{'Metric':<12} {'Count':<8}")
    click.echo("-" * 20)
    for label, count in (
        ("Total Keys", status.total),
        ("Queued", status.queued),
        ("Active", status.active),
        ("Used", status.used),
        ("Expired", status.expired),
    ):
        click.echo(f"{label:<12} {count:<8}")

    if status.queued == 0 and status.active == 0:
        click.echo("Warning: Pool is empty! Add keys with --add", err=True)
    elif status.queued <= threshold:
        click.echo(f"Warning: Pool running low! Only {status.queued} keys remaining.", err=True)


@cli.command("pool")
@click.argument("key")
@click.option("--status", "action", flag_value="status", default=True, help="Show pool status")
@click.option("--add", "action", flag_value="add", help="Add keys read from stdin, one per line")
@click.option("--rotate", "action", flag_value="rotate", help="Rotate to the next key")
@click.option("--clear", "action", flag_value="clear", help="Delete every key in the pool")
@click.option("--prune", "action", flag_value="prune", help="Delete used and expired keys")
@click.option("--grace", type=click.IntRange(min=0), default=None, help="Grace period for --rotate")
@click.pass_context
def pool(ctx: click.Context, key: str, action: str, grace: Optional[int]):
    """Manage the key pool of a secret."""
    manager = _manager(ctx)
    key_pool: KeyPool = manager.pool(key)
    threshold = key_pool.settings.pool_notify_below

    if action == "add":
        values = [line.strip() for line in sys.stdin.read().splitlines()]
        added = key_pool.add([v for v in values if v])
        if not added:
            click.echo("No keys added.")
            return
        click.echo(f"✓ Added {added} keys to pool.")
    elif action == "rotate":
        click.echo(f"Rotating to next key in pool for '{key}'...")
        if key_pool.rotate_next(grace) is None:
            raise click.ClickException("No queued keys available for rotation!")
        minutes = key_pool.settings.grace_period_minutes if grace is None else grace
        click.echo(f"✓ Rotated to next key in pool for '{key}' (grace period: {minutes} minutes)")
    elif action == "clear":
        click.echo(f"Cleared {key_pool.clear()} keys from pool.")
        return
    elif action == "prune":
        click.echo(f"Pruned {key_pool.prune()} used/expired keys from pool.")
        return

    _echo_pool_status(key_pool.status(), threshold)


@cli.command("pool-rotate")
@click.pass_context
def pool_rotate(ctx: click.Context):
    """Rotate every pool configured under KEYROTOR_POOLS."""
    manager = _manager(ctx)
    pools = manager.engine.settings.pools
    if not pools:
        click.echo("No pools configured for scheduled rotation.")
        return

    rotated = 0
    for key, config in pools.items():
        if not isinstance(config, dict):
            continue
        key_pool = manager.pool(key)
        if key_pool.remaining() == 0:
            click.echo(f"Warning: Pool '{key}' has no queued keys. Skipping.", err=True)
            continue
        if key_pool.rotate_next(config.get("grace")):
            click.echo(f"Rotated '{key}' to next pool key.")
            rotated += 1
    click.echo(f"Rotated {rotated} pool secrets.")


if __name__ == "__main__":
    cli()
