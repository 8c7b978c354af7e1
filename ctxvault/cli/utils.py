import functools
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List

import click
from rich.console import Console
from rich.json import JSON
from rich.markup import escape

from ctxvault.audit.receipts import ReceiptRecorder
from ctxvault.audit.redact import Redactor
from ctxvault.config import Settings
from ctxvault.errors import CtxVaultError
from ctxvault.keys.manager import KeyManager
from ctxvault.paths import StatePaths
from ctxvault.policy.broker import PolicyBroker
from ctxvault.policy.store import PolicyStore
from ctxvault.policy.trust import TrustTokenStore
from ctxvault.storage import LocalRecordStore

console = Console()


@dataclass
class Runtime:
    """Components for one CLI invocation, wired from a single Settings instance."""
    settings: Settings
    paths: StatePaths
    broker: PolicyBroker
    trust: TrustTokenStore
    keys: KeyManager
    recorder: ReceiptRecorder
    records: LocalRecordStore

    @classmethod
    def build(cls, settings: Settings, argv: List[str]) -> "Runtime":
        paths = StatePaths.from_settings(settings)
        redactor = Redactor(
            paths.project_root, examples_limit=settings.REDACTION_EXAMPLES, base=Path.cwd()
        )
        trust = TrustTokenStore(paths.trust)
        broker = PolicyBroker(
            PolicyStore(paths.policy),
            trust,
            paths.project_root,
            audit_log=paths.audit_log,
            redactor=redactor,
        )
        return cls(
            settings=settings,
            paths=paths,
            broker=broker,
            trust=trust,
            keys=KeyManager(paths.keys, passphrase=settings.KEY_PASSPHRASE),
            recorder=ReceiptRecorder(paths, argv, redactor=redactor),
            records=LocalRecordStore(paths.records),
        )


def get_runtime(ctx: click.Context) -> Runtime:
    return ctx.find_root().obj["runtime"]


def print_error(message: Any) -> None:
    console.print(f"[red]Error: {escape(str(message))}[/red]", soft_wrap=True)


def print_json(data: Any) -> None:
    console.print(JSON(json.dumps(data, default=str)), soft_wrap=True)


def handle_errors(func):
    """Decorator mapping ctxvault errors to their exit codes."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(1)
        except CtxVaultError as e:
            print_error(e)
            sys.exit(e.exit_code)
    return wrapper
