import click
from pathlib import Path
from rich.console import Console
from rich.markup import escape

from ctxvault.bundle.reader import BundleReader
from ctxvault.bundle.writer import BundleWriter
from .utils import get_runtime, handle_errors, print_json

console = Console()


@click.command(name='export-context')
@click.option('--out', 'out', type=click.Path(path_type=Path), required=True, help='Bundle directory (or .zip with --zip).')
@click.option('--type', 'record_type', default='code', show_default=True, help='Record type to export ("all" for every type).')
@click.option('--sign/--no-sign', default=None, help='Sign the bundle (policy may force signing).')
@click.option('--zip', 'zip_output', is_flag=True, help='Write a single zip archive.')
@click.option('--delta-from', type=click.Path(exists=True, path_type=Path), help='Skip records unchanged since this bundle.')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def export_context(ctx, out: Path, record_type: str, sign, zip_output: bool, delta_from, json_output: bool) -> None:
    """Exports stored records as a context bundle."""
    runtime = get_runtime(ctx)
    writer = BundleWriter(
        runtime.broker,
        runtime.keys,
        env_sign=runtime.settings.SIGN_EXPORTS,
        recorder=runtime.recorder,
    )
    result = writer.export(
        runtime.records.iter_records(record_type),
        out,
        record_type=record_type,
        sign=sign,
        zip_output=zip_output,
        delta_from=delta_from,
    )
    if json_output:
        print_json(result.model_dump(by_alias=True, exclude_none=True))
        return
    signing = f"signed, keyId {result.key_id}" if result.signed else "unsigned"
    console.print(
        f"[green]Exported {result.record_count} record(s) to {escape(result.out_path)}[/green] "
        f"({signing}; {result.signing_reason})",
        soft_wrap=True,
    )
    if result.delta is not None:
        console.print(f"Delta: {result.delta.unchanged_skipped} unchanged record(s) skipped")


@click.command(name='import-context')
@click.argument('bundle', type=click.Path(path_type=Path))
@click.option('--allow-unsigned', is_flag=True, help='Accept an unsigned bundle (needs a live import-context trust token).')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def import_context(ctx, bundle: Path, allow_unsigned: bool, json_output: bool) -> None:
    """
    Verifies and imports a context bundle.

    Exit codes: 0 imported, 2 unsigned bundle blocked by policy, 3 invalid
    signature, 4 checksum mismatch, 5 malformed bundle.
    """
    runtime = get_runtime(ctx)
    reader = BundleReader(runtime.broker, keys=runtime.keys, sink=runtime.records, recorder=runtime.recorder)
    result = reader.import_bundle(bundle, allow_unsigned=allow_unsigned)
    if json_output:
        print_json(result.model_dump(by_alias=True, exclude_none=True))
        return
    signature = f"signature ok, keyId {result.key_id}" if result.signed else "unsigned"
    console.print(
        f"[green]Verified bundle[/green]: {result.count} record(s), schemaVersion {result.schema_version} ({signature})",
        soft_wrap=True,
    )
    if result.bypass_used:
        console.print("[yellow]Unsigned bundle accepted under an import-context trust token[/yellow]")
    console.print(f"Ingested {result.ingested} record(s)")
