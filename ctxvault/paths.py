"""
State directory layout and whole-file writes.

Everything ctxvault persists lives under ``<project>/<STATE_DIR>/``.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from ctxvault.config import Settings


class StatePaths:
    """Resolves the on-disk locations of policy, trust, key, and audit files."""

    def __init__(self, project_root: Path, state_dir: str = ".ctxvault"):
        self.project_root = Path(project_root).resolve()
        self.base = self.project_root / state_dir

    @classmethod
    def from_settings(cls, settings: Settings) -> "StatePaths":
        return cls(settings.project_root, settings.STATE_DIR)

    @property
    def policy(self) -> Path:
        return self.base / "policy.json"

    @property
    def trust(self) -> Path:
        return self.base / "trust.json"

    @property
    def audit_log(self) -> Path:
        return self.base / "audit.log"

    @property
    def journal(self) -> Path:
        return self.base / "journal.jsonl"

    @property
    def receipts(self) -> Path:
        return self.base / "receipts"

    @property
    def records(self) -> Path:
        return self.base / "records.jsonl"

    @property
    def keys(self) -> Path:
        return self.base / "keys"

    @property
    def active_key(self) -> Path:
        return self.keys / "active.json"

    @property
    def key_archive(self) -> Path:
        return self.keys / "archive"


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` so readers see the old or the new file, never a mix."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_bytes(path, (json.dumps(data, indent=2) + "\n").encode("utf-8"))
