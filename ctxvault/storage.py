"""
Record source / sink seam to the storage engine.

The bundle pipeline only needs an ordered iterable of records to export
and somewhere to hand verified records on import. ``LocalRecordStore`` is
the default adapter: a JSON-lines file under the state directory, upserted
by record id.
"""
import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Protocol

from ctxvault.bundle.models import ContextRecord
from ctxvault.paths import atomic_write_bytes

logger = logging.getLogger(__name__)


class RecordSource(Protocol):
    def iter_records(self, record_type: str = "code") -> Iterator[ContextRecord]:
        ...


class RecordSink(Protocol):
    def ingest(self, records: Iterable[ContextRecord]) -> int:
        ...


class LocalRecordStore:
    """JSON-lines record store; satisfies both RecordSource and RecordSink."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def iter_records(self, record_type: str = "code") -> Iterator[ContextRecord]:
        for record in self._load().values():
            if record_type in ("all", record.type):
                yield record

    def count(self) -> int:
        return len(self._load())

    def ingest(self, records: Iterable[ContextRecord]) -> int:
        """Upsert by id; returns the number of records written."""
        existing = self._load()
        ingested = 0
        for record in records:
            existing[record.id] = record
            ingested += 1
        self._save(existing.values())
        logger.info(f"Ingested {ingested} record(s) into {self.path.name}")
        return ingested

    def _load(self) -> Dict[str, ContextRecord]:
        if not self.path.exists():
            return {}
        records: Dict[str, ContextRecord] = {}
        for lineno, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                record = ContextRecord.model_validate(json.loads(line))
            except ValueError as e:
                logger.warning(f"Skipping malformed record on line {lineno} of {self.path.name}: {e}")
                continue
            records[record.id] = record
        return records

    def _save(self, records: Iterable[ContextRecord]) -> None:
        lines: List[str] = [
            json.dumps(r.model_dump(by_alias=True, exclude_none=True)) + "\n" for r in records
        ]
        atomic_write_bytes(self.path, "".join(lines).encode("utf-8"))
