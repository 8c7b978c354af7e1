"""
Trust Token Store.

Trust tokens are short-lived, command-scoped overrides that relax one
otherwise-blocking policy check. They are stored as
``{"<command>": <epoch-millis-expiry>}`` and are never promoted to
permanent policy. Expired tokens stay on disk and are filtered at read time.
"""
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ctxvault.paths import atomic_write_json

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_millis(millis: float) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


class TrustTokenStore:
    """File-backed map of command -> expiry instant."""

    def __init__(self, path: Path, clock: Optional[Clock] = None):
        self.path = Path(path)
        self._clock = clock or utc_now

    def grant(self, command: str, minutes: float) -> datetime:
        """Create or overwrite the token for ``command``; at least one minute long."""
        if not command:
            raise ValueError("command must not be empty")
        minutes = max(1, int(minutes))
        expiry = self._clock() + timedelta(minutes=minutes)
        tokens = self._read()
        tokens[command] = _to_millis(expiry)
        atomic_write_json(self.path, tokens)
        logger.info(f"Granted trust for '{command}' for {minutes} minute(s)")
        return expiry

    def is_trusted(self, command: str) -> bool:
        expiry = self._read().get(command)
        if expiry is None:
            return False
        return _to_millis(self._clock()) < expiry

    def expiry(self, command: str) -> Optional[datetime]:
        """Expiry of a live token for ``command``, or None."""
        if not self.is_trusted(command):
            return None
        return _from_millis(self._read()[command])

    def list(self) -> List[Tuple[str, datetime]]:
        """Live tokens only, soonest expiry first."""
        now = _to_millis(self._clock())
        live = [(cmd, ms) for cmd, ms in self._read().items() if ms > now]
        live.sort(key=lambda item: item[1])
        return [(cmd, _from_millis(ms)) for cmd, ms in live]

    def _read(self) -> Dict[str, int]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable trust file {self.path.name}: {e}")
            return {}
        if not isinstance(raw, dict):
            return {}
        return {
            str(cmd): int(ms)
            for cmd, ms in raw.items()
            if isinstance(ms, (int, float)) and not isinstance(ms, bool)
        }
