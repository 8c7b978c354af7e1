import click
from rich.console import Console
from rich.table import Table

from .utils import get_runtime, handle_errors, print_json

console = Console()


@click.group(name='key')
def key_cli():
    """Signing key management commands."""
    pass


@key_cli.command()
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def status(ctx, json_output: bool) -> None:
    """Shows the active signing key."""
    active = get_runtime(ctx).keys.status()
    if json_output:
        print_json({"active": active})
        return
    if active is None:
        console.print("No active signing key; one is created on the first signed export or `ctxvault key rotate`")
        return
    console.print(f"[cyan]Key Id[/cyan]: {active['keyId']}")
    console.print(f"[cyan]Created At[/cyan]: {active['createdAt']}")


@key_cli.command()
@click.pass_context
@handle_errors
def rotate(ctx) -> None:
    """Archives the active key and installs a new one."""
    runtime = get_runtime(ctx)
    previous = runtime.keys.status()
    new_key_id = runtime.keys.rotate()
    runtime.broker.log_action("key.rotate", {"keyId": new_key_id})
    runtime.recorder.record(
        "key.rotate",
        {},
        {"previousKeyId": previous["keyId"] if previous else None, "keyId": new_key_id},
        True,
        exit_code=0,
        extras={"keyId": new_key_id},
    )
    console.print(f"[green]Key rotated successfully![/green] Active key: {new_key_id}")


@key_cli.command(name='list')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def list_keys(ctx, json_output: bool) -> None:
    """Lists the active key and archived keys."""
    listing = get_runtime(ctx).keys.list()
    if json_output:
        print_json(listing)
        return
    active = listing["active"]
    console.print(f"[cyan]Active[/cyan]: {active['keyId'] if active else 'none'}")
    if not listing["archived"]:
        console.print("No archived keys")
        return
    table = Table(title="Archived Keys")
    table.add_column("Key Id", style="cyan")
    table.add_column("Created At")
    table.add_column("Archived At")
    for entry in listing["archived"]:
        table.add_row(entry["keyId"] or "?", entry["createdAt"] or "?", entry["archivedAt"] or "?")
    console.print(table)


@key_cli.command()
@click.option('--days', type=click.FloatRange(min=0), required=True, help='Remove archived keys older than this.')
@click.pass_context
@handle_errors
def prune(ctx, days: float) -> None:
    """Deletes archived keys older than --days. Never touches the active key."""
    runtime = get_runtime(ctx)
    removed = runtime.keys.prune(days)
    runtime.broker.log_action("key.prune", {"days": days, "removed": removed})
    runtime.recorder.record("key.prune", {"days": days}, {"removed": removed}, True, exit_code=0)
    console.print(f"Removed {removed} archived key(s)")
