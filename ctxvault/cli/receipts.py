import click
import json
from rich.console import Console
from rich.markup import escape

from ctxvault.audit.receipts import clear_journal, find_receipt, list_receipt_files, order_receipt, read_journal
from ctxvault.errors import CtxVaultError
from .utils import get_runtime, handle_errors, print_json

console = Console()


@click.command(name='receipt-show')
@click.argument('receipt_id', required=False)
@click.option('--last', is_flag=True, help='Show the most recent receipt (default).')
@click.option('--limit', type=click.IntRange(min=1), default=1, show_default=True, help='Number of recent receipts to show.')
@click.pass_context
@handle_errors
def receipt_show(ctx, receipt_id, last: bool, limit: int) -> None:
    """Shows receipts, newest first."""
    paths = get_runtime(ctx).paths
    if receipt_id and not last:
        found = find_receipt(paths, receipt_id)
        if found is None:
            raise CtxVaultError(f"No receipt '{receipt_id}' under {paths.receipts}")
        files = [found]
    else:
        files = list_receipt_files(paths, limit=1 if last else limit)
    if not files:
        console.print("No receipts found")
        return
    for path in files:
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            console.print(f"[yellow]Skipping unreadable receipt {escape(path.name)}: {e}[/yellow]")
            continue
        print_json(order_receipt(doc))


@click.command(name='journal')
@click.option('--show', is_flag=True, help='Print journal lines (default).')
@click.option('--clear', is_flag=True, help='Empty the journal.')
@click.option('--limit', type=click.IntRange(min=1), default=100, show_default=True, help='Number of lines to show.')
@click.pass_context
@handle_errors
def journal(ctx, show: bool, clear: bool, limit: int) -> None:
    """Shows or clears the command journal."""
    paths = get_runtime(ctx).paths
    if clear:
        cleared = clear_journal(paths)
        console.print("Journal cleared" if cleared else "Journal is already empty")
        if not show:
            return
    lines = read_journal(paths, limit=limit)
    if not lines:
        console.print("Journal is empty")
        return
    for line in lines:
        click.echo(line)
