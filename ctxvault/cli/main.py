import click
import logging
import sys
from pydantic import ValidationError

from ctxvault import __version__
from ctxvault.config import Settings
from ctxvault.errors import CtxVaultError
from ctxvault.policy.models import BYPASS_COMMANDS
from ctxvault.utils.logging import setup_logging

from .bundles import export_context, import_context
from .keys import key_cli
from .policy import policy_cli
from .receipts import journal, receipt_show
from .system import prove_offline, status
from .utils import Runtime, print_error

logger = logging.getLogger(__name__)


def _wants_help(args) -> bool:
    for arg in args:
        if arg == '--':
            return False
        if arg in ('--help', '-h'):
            return True
    return False


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enables verbose mode.')
@click.option('--quiet', '-q', is_flag=True, help='Enables quiet mode.')
@click.version_option(__version__, '--version', '-V', prog_name='ctxvault')
@click.pass_context
def app(ctx, verbose, quiet):
    """
    ctxvault: local-only, policy-gated context export and import.
    """
    ctx.ensure_object(dict)
    ctx.obj['VERBOSE'] = verbose
    ctx.obj['QUIET'] = quiet

    if verbose:
        setup_logging(level="DEBUG")
    elif quiet:
        setup_logging(level="ERROR")
    else:
        setup_logging()

    command = ctx.invoked_subcommand
    if command is None or command in BYPASS_COMMANDS:
        return
    # ctx.args holds everything after the subcommand name, e.g. `export-context --help`
    if _wants_help(ctx.args):
        return

    try:
        runtime = Runtime.build(Settings(), sys.argv[1:])
    except ValidationError as e:
        print_error(f"Invalid configuration: {e}")
        ctx.exit(1)
    ctx.obj['runtime'] = runtime

    try:
        runtime.broker.require_command(command)
    except CtxVaultError as e:
        print_error(e)
        ctx.exit(e.exit_code)
    logger.debug(f"Command '{command}' permitted by policy")


@app.command(name='version')
def version() -> None:
    """Prints the ctxvault version."""
    click.echo(f"ctxvault {__version__}")


@app.command(name='help')
@click.pass_context
def help_command(ctx) -> None:
    """Shows this message."""
    click.echo(ctx.parent.get_help())


# Add subcommands
app.add_command(policy_cli, name='policy')
app.add_command(key_cli, name='key')
app.add_command(export_context, name='export-context')
app.add_command(import_context, name='import-context')
app.add_command(receipt_show, name='receipt-show')
app.add_command(journal, name='journal')
app.add_command(prove_offline, name='prove-offline')
app.add_command(status, name='status')

if __name__ == '__main__':
    app()
