"""
Policy Store: loads, repairs, and persists the project policy document.
"""
import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Tuple

from ctxvault.paths import atomic_write_json
from ctxvault.policy.models import Policy, repair_policy

logger = logging.getLogger(__name__)


class PolicyStore:
    """
    Owns the policy file on disk.

    Loading never fails open or closed: a missing file is created with
    defaults, a partially malformed one is repaired and written back, and
    an unparseable one is set aside and replaced with defaults.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Policy:
        policy, changed = self._read()
        if changed:
            self.save(policy)
        return policy

    def save(self, policy: Policy) -> None:
        """Whole-document replace of the policy file."""
        atomic_write_json(self.path, policy.to_document())

    def _read(self) -> Tuple[Policy, bool]:
        if not self.path.exists():
            logger.info(f"Creating default policy file: {self.path}")
            return Policy(), True

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            backup = self._set_aside()
            logger.warning(
                f"Policy file is not valid JSON ({e}); restored defaults, "
                f"previous content kept at {backup.name}"
            )
            return Policy(), True

        policy, changed = repair_policy(raw)
        if changed:
            logger.warning(f"Policy file had missing or malformed fields; repaired {self.path.name}")
        return policy, changed

    def _set_aside(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        backup = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
        shutil.copy2(self.path, backup)
        return backup
