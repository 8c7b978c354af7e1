import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ctxvault.policy.broker import Explanation
from ctxvault.utils.timeparse import parse_minutes
from .utils import get_runtime, handle_errors, print_json

console = Console()


@click.group(name='policy')
def policy_cli():
    """Policy inspection and management commands."""
    pass


def _print_explanation(subject: str, explanation: Explanation) -> None:
    verdict = "[green]allowed[/green]" if explanation.allowed else "[red]denied[/red]"
    console.print(f"{escape(subject)}: {verdict}")
    console.print(f"[cyan]Reason[/cyan]: {explanation.reason}")
    if explanation.rule:
        console.print(f"[cyan]Rule[/cyan]: {explanation.rule}")
    if explanation.matched:
        console.print(f"[cyan]Matched[/cyan]: {escape(explanation.matched)}")
    if explanation.remedy:
        console.print(f"[cyan]Remedy[/cyan]: {escape(explanation.remedy)}", soft_wrap=True)


@policy_cli.command()
@click.pass_context
@handle_errors
def show(ctx) -> None:
    """Prints the effective policy document."""
    runtime = get_runtime(ctx)
    print_json(runtime.broker.policy.to_document())


@policy_cli.command(name='allow-command')
@click.argument('cmd')
@click.pass_context
@handle_errors
def allow_command(ctx, cmd: str) -> None:
    """Adds CMD to allowedCommands."""
    runtime = get_runtime(ctx)
    changed = runtime.broker.allow_command(cmd)
    runtime.recorder.record("policy.allow-command", {"command": cmd}, {"changed": changed}, True, exit_code=0)
    if changed:
        console.print(f"[green]Allowed command '{escape(cmd)}'[/green]")
    else:
        console.print(f"Command '{escape(cmd)}' was already allowed")


@policy_cli.command(name='allow-path')
@click.argument('glob')
@click.pass_context
@handle_errors
def allow_path(ctx, glob: str) -> None:
    """Adds GLOB to allowedGlobs."""
    runtime = get_runtime(ctx)
    changed = runtime.broker.allow_path(glob)
    runtime.recorder.record("policy.allow-path", {"glob": glob}, {"changed": changed}, True, exit_code=0)
    if changed:
        console.print(f"[green]Allowed path glob '{escape(glob)}'[/green]")
    else:
        console.print(f"Path glob '{escape(glob)}' was already allowed")


@policy_cli.command(name='explain-command')
@click.argument('cmd')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def explain_command(ctx, cmd: str, json_output: bool) -> None:
    """Explains whether CMD is allowed and why."""
    explanation = get_runtime(ctx).broker.explain_command(cmd)
    if json_output:
        print_json(explanation.to_dict())
    else:
        _print_explanation(cmd, explanation)


@policy_cli.command(name='explain-path')
@click.argument('path')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def explain_path(ctx, path: str, json_output: bool) -> None:
    """Explains whether PATH is allowed and why."""
    explanation = get_runtime(ctx).broker.explain_path(path)
    if json_output:
        print_json(explanation.to_dict())
    else:
        _print_explanation(path, explanation)


@policy_cli.command()
@click.argument('cmd')
@click.option('--minutes', type=click.IntRange(min=1), help='Token lifetime in minutes.')
@click.option('--for', 'duration', help='Token lifetime as a duration, e.g. 15m or 1h.')
@click.pass_context
@handle_errors
def trust(ctx, cmd: str, minutes, duration) -> None:
    """Grants a short-lived trust token for CMD."""
    runtime = get_runtime(ctx)
    if minutes is not None and duration is not None:
        raise click.UsageError("Use either --minutes or --for, not both")
    if duration is not None:
        try:
            minutes = parse_minutes(duration)
        except ValueError:
            raise click.BadParameter(f"'{duration}' is not a duration like 15m or 1h", param_hint="--for")
    if minutes is None:
        minutes = runtime.settings.TRUST_DEFAULT_MINUTES

    expiry = runtime.trust.grant(cmd, minutes)
    runtime.broker.log_action("policy.trust", {"command": cmd, "minutes": minutes})
    runtime.recorder.record(
        "policy.trust",
        {"command": cmd, "minutes": minutes},
        {"expiresAt": expiry.isoformat()},
        True,
        exit_code=0,
    )
    console.print(f"[green]Trusted '{escape(cmd)}' until {expiry.isoformat()}[/green]")


@policy_cli.command(name='trust-list')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def trust_list(ctx, json_output: bool) -> None:
    """Lists live trust tokens, soonest expiry first."""
    tokens = get_runtime(ctx).trust.list()
    if json_output:
        print_json([{"command": cmd, "expiresAt": expiry.isoformat()} for cmd, expiry in tokens])
        return
    if not tokens:
        console.print("No active trust tokens")
        return
    table = Table(title="Trust Tokens")
    table.add_column("Command", style="cyan")
    table.add_column("Expires At")
    for cmd, expiry in tokens:
        table.add_row(cmd, expiry.isoformat())
    console.print(table)


@policy_cli.command()
@click.option('--cmd', help='Command to check.')
@click.option('--path', help='Path to check.')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def doctor(ctx, cmd, path, json_output: bool) -> None:
    """Diagnoses the policy and suggests fixes."""
    report = get_runtime(ctx).broker.doctor(cmd=cmd, path=path)
    if json_output:
        print_json(report.to_dict())
        return
    console.print("[bold blue]Policy Doctor[/bold blue]")
    if report.command:
        _print_explanation(cmd, report.command)
    if report.path:
        _print_explanation(path, report.path)
    egress = "[red]enabled[/red]" if report.network_egress else "[green]disabled[/green]"
    console.print(f"[cyan]Network Egress[/cyan]: {egress}")
    console.print(f"[cyan]Audit Trail[/cyan]: {'on' if report.audit_trail else 'off'}")
    for name, value in report.signing.items():
        console.print(f"[cyan]{name}[/cyan]: {str(value).lower()}")
    if report.suggestions:
        console.print("[bold]Suggestions[/bold]")
        for suggestion in report.suggestions:
            console.print(f"- {escape(suggestion)}", soft_wrap=True)


@policy_cli.command(name='set')
@click.argument('key')
@click.argument('value', type=click.Choice(['true', 'false'], case_sensitive=False))
@click.pass_context
@handle_errors
def set_flag(ctx, key: str, value: str) -> None:
    """Sets a boolean policy flag (networkEgress, auditTrail, signExports, ...)."""
    runtime = get_runtime(ctx)
    flag = value.lower() == 'true'
    try:
        changed = runtime.broker.set_flag(key, flag)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='KEY')
    runtime.recorder.record("policy.set", {"flag": key, "value": flag}, {"changed": changed}, True, exit_code=0)
    console.print(f"{key} = {str(flag).lower()}" + ("" if changed else " (unchanged)"))
