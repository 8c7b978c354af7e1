import click
import os
from rich.console import Console
from rich.markup import escape

from ctxvault import __version__
from .utils import get_runtime, handle_errors, print_json

console = Console()

PROXY_VARIABLES = ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy")


def offline_proof(network_egress: bool) -> dict:
    proxies = sorted({name.upper() for name in PROXY_VARIABLES if os.environ.get(name)})
    return {
        "egress": "no-egress",
        "policy": "allowed" if network_egress else "blocked",
        "proxies": "present" if proxies else "none",
        "proxyVariables": proxies,
    }


@click.command(name='prove-offline')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def prove_offline(ctx, json_output: bool) -> None:
    """Prints a one-line proof that ctxvault makes no network calls."""
    runtime = get_runtime(ctx)
    proof = offline_proof(runtime.broker.is_network_allowed())
    if json_output:
        print_json({"offlineProof": proof})
        return
    click.echo(
        f"CTXVAULT OFFLINE PROOF: {proof['egress']}; policy={proof['policy']}; proxies={proof['proxies']}"
    )


@click.command(name='status')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format.')
@click.pass_context
@handle_errors
def status(ctx, json_output: bool) -> None:
    """Shows the policy, signing, key and trust status."""
    runtime = get_runtime(ctx)
    policy = runtime.broker.policy
    active = runtime.keys.status()
    status_data = {
        "version": __version__,
        "project_root": str(runtime.paths.project_root),
        "policy_file": str(runtime.paths.policy),
        "network_egress": policy.network_egress,
        "audit_trail": policy.audit_trail,
        "sign_exports": policy.sign_exports,
        "force_signed_exports": policy.force_signed_exports,
        "require_signed_context": policy.require_signed_context,
        "env_sign_override": runtime.settings.SIGN_EXPORTS,
        "active_key": active["keyId"] if active else None,
        "trust_tokens": [cmd for cmd, _ in runtime.trust.list()],
        "passthrough_env": sorted(name for name in os.environ if runtime.broker.is_env_allowed(name)),
        "records": runtime.records.count(),
    }
    if json_output:
        print_json(status_data)
        return
    console.print("[bold blue]ctxvault Status[/bold blue]")
    for key, value in status_data.items():
        if isinstance(value, list):
            value = ", ".join(value) or "none"
        elif value is None:
            value = "none"
        console.print(f"[cyan]{key.replace('_', ' ').title()}[/cyan]: {escape(str(value))}", soft_wrap=True)
