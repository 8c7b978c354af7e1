"""
Receipts and the command journal.

Every mutating command produces one immutable receipt (a JSON file under
``receipts/``) and one journal line. Arguments and results are run
through the outside-root redactor before anything is persisted; the
receipt is fully built before the first write so a retried write stores
identical content. Writing is best-effort: a failure is logged once and
never changes the outcome of the command being recorded.
"""
import hashlib
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ctxvault import __version__
from ctxvault.audit.redact import Redactor
from ctxvault.paths import StatePaths, atomic_write_json

logger = logging.getLogger(__name__)

# Display order used by receipt-show.
RECEIPT_KEY_ORDER = [
    "schema", "version", "id", "command", "argv", "cwd", "startTime", "endTime",
    "durationMs", "params", "resultSummary", "results", "success", "exitCode",
    "error", "digests", "extras",
]


class Receipt(BaseModel):
    """Immutable record of one command invocation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    schema_version: str = Field(default="v1", alias="schema")
    version: str
    id: str
    command: str
    argv: List[Any]
    cwd: str
    start_time: str
    end_time: str
    duration_ms: int
    params: Any = None
    result_summary: Any = None
    results: Any = None
    success: bool
    exit_code: Optional[int] = None
    error: Optional[str] = None
    digests: Dict[str, str] = Field(default_factory=dict)
    extras: Optional[Dict[str, Any]] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def args_digest(argv: List[str], params: Any, redactor: Redactor) -> str:
    """SHA-256 over the unredacted ``(argv, params)`` pair."""
    safe = redactor.sanitize({"argv": argv, "params": params}, redact=False).value
    payload = json.dumps(safe, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ReceiptRecorder:
    """Builds and persists receipts for one process invocation."""

    def __init__(
        self,
        paths: StatePaths,
        argv: List[str],
        redactor: Optional[Redactor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.paths = paths
        self.argv = list(argv)
        self.redactor = redactor or Redactor(paths.project_root)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.started_at = self._clock()

    def build(
        self,
        command: str,
        params: Any,
        results: Any,
        success: bool,
        *,
        error: Optional[str] = None,
        exit_code: Optional[int] = None,
        result_summary: Any = None,
        digests: Optional[Dict[str, str]] = None,
        extras: Optional[Dict[str, Any]] = None,
    ) -> Receipt:
        ended_at = self._clock()
        duration_ms = max(0, int((ended_at - self.started_at).total_seconds() * 1000))

        scrubbed = self.redactor.sanitize(
            {
                "argv": self.argv,
                "cwd": os.getcwd(),
                "params": params,
                "results": results,
                "summary": result_summary,
                "error": error,
                "extras": extras or {},
            }
        )
        clean = scrubbed.value

        all_extras = dict(clean["extras"])
        if scrubbed.count:
            all_extras["redactions"] = {
                "outsideRoot": {"count": scrubbed.count, "examples": scrubbed.fingerprints()}
            }

        return Receipt(
            version=__version__,
            id=f"{int(ended_at.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}",
            command=command,
            argv=clean["argv"],
            cwd=clean["cwd"],
            start_time=_iso(self.started_at),
            end_time=_iso(ended_at),
            duration_ms=duration_ms,
            params=clean["params"],
            result_summary=clean["summary"],
            results=clean["results"],
            success=success,
            exit_code=exit_code,
            error=clean["error"],
            digests={"argsSha256": args_digest(self.argv, params, self.redactor), **(digests or {})},
            extras=all_extras or None,
        )

    def write(self, receipt: Receipt) -> Optional[Path]:
        """Persist the receipt and its journal line. Returns the receipt path, or None on failure."""
        target = self.paths.receipts / f"{receipt.id}.json"
        try:
            atomic_write_json(target, receipt.to_document())
            self.paths.journal.parent.mkdir(parents=True, exist_ok=True)
            line = {
                "ts": receipt.end_time,
                "id": receipt.id,
                "command": receipt.command,
                "success": receipt.success,
                "exitCode": receipt.exit_code,
                "argsSha256": receipt.digests.get("argsSha256"),
            }
            with open(self.paths.journal, "a", encoding="utf-8") as f:
                f.write(json.dumps(line) + "\n")
        except OSError as e:
            logger.warning(f"Could not persist receipt {receipt.id}: {e}")
            return None
        logger.debug(f"Receipt saved: {target.name}")
        return target

    def record(self, command: str, params: Any, results: Any, success: bool, **kwargs: Any) -> Receipt:
        receipt = self.build(command, params, results, success, **kwargs)
        self.write(receipt)
        return receipt


def order_receipt(doc: Dict[str, Any]) -> Dict[str, Any]:
    ordered = {k: doc[k] for k in RECEIPT_KEY_ORDER if k in doc}
    ordered.update({k: v for k, v in doc.items() if k not in ordered})
    return ordered


def list_receipt_files(paths: StatePaths, limit: int = 1) -> List[Path]:
    """Newest receipts first; ids start with epoch millis so names sort by time."""
    if not paths.receipts.is_dir():
        return []
    files = sorted(paths.receipts.glob("*.json"), key=lambda p: p.name, reverse=True)
    return files[: max(1, limit)]


def find_receipt(paths: StatePaths, id_or_path: str) -> Optional[Path]:
    candidate = Path(id_or_path)
    if candidate.suffix.lower() != ".json":
        candidate = paths.receipts / f"{id_or_path}.json"
    return candidate if candidate.is_file() else None


def read_journal(paths: StatePaths, limit: int = 100) -> List[str]:
    if not paths.journal.exists():
        return []
    lines = paths.journal.read_text(encoding="utf-8").splitlines()
    return [line for line in lines if line.strip()][-limit:]


def clear_journal(paths: StatePaths) -> bool:
    if not paths.journal.exists():
        return False
    paths.journal.write_text("", encoding="utf-8")
    return True
