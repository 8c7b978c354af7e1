import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from ctxvault.audit.receipts import ReceiptRecorder
from ctxvault.bundle.models import ContextRecord
from ctxvault.bundle.reader import BundleReader
from ctxvault.bundle.writer import BundleWriter
from ctxvault.config import Settings
from ctxvault.keys.manager import KeyManager
from ctxvault.paths import StatePaths
from ctxvault.policy.broker import PolicyBroker
from ctxvault.policy.store import PolicyStore
from ctxvault.policy.trust import TrustTokenStore
from ctxvault.storage import LocalRecordStore


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_records(count: int = 3, dim: int = 4):
    return [
        ContextRecord(
            id=f"rec-{i}",
            file=f"src/module_{i}.py",
            language="python",
            line_start=i * 10 + 1,
            line_end=i * 10 + 9,
            symbol=f"func_{i}" if i % 2 == 0 else None,
            type="code",
            timestamp="2026-01-01T00:00:00Z",
            vector=[0.5 * (i + 1), -0.25, 1.0, 2.0][:dim] if dim else None,
            note=f"note for {i}" if i != 1 else None,
        )
        for i in range(count)
    ]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in list(os.environ):
        if var.startswith("CTXVAULT_"):
            monkeypatch.delenv(var, raising=False)


@pytest.fixture
def project(tmp_path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(project):
    return Settings(PROJECT_ROOT=project, _env_file=None)


@pytest.fixture
def paths(settings):
    return StatePaths.from_settings(settings)


@pytest.fixture
def trust(paths, clock):
    return TrustTokenStore(paths.trust, clock=clock)


@pytest.fixture
def broker(paths, trust):
    return PolicyBroker(PolicyStore(paths.policy), trust, paths.project_root, audit_log=paths.audit_log)


@pytest.fixture
def key_manager(paths, clock):
    return KeyManager(paths.keys, clock=clock)


@pytest.fixture
def recorder(paths):
    return ReceiptRecorder(paths, ["pytest"])


@pytest.fixture
def records():
    return make_records()


@pytest.fixture
def record_store(paths, records):
    store = LocalRecordStore(paths.records)
    store.ingest(records)
    return store


@pytest.fixture
def import_store(tmp_path):
    return LocalRecordStore(tmp_path / "imported.jsonl")


@pytest.fixture
def writer(broker, key_manager, recorder):
    return BundleWriter(broker, key_manager, recorder=recorder)


@pytest.fixture
def reader(broker, key_manager, import_store, recorder):
    return BundleReader(broker, keys=key_manager, sink=import_store, recorder=recorder)


@pytest.fixture
def cli_runner():
    return CliRunner()


@pytest.fixture
def cli_env(project):
    env = {"CTXVAULT_PROJECT_ROOT": str(project)}
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        env[name] = None
    return env
