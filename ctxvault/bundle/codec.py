"""
Payload serialization for bundle assets.

- ``map.csv``: one row per record, fixed header.
- ``vectors.f32``: little-endian float32, one fixed-width vector per record,
  in ``map.csv`` order. Records without a vector are zero-filled and read
  back as having none.
- ``notes.jsonl``: ``{"id", "note"}`` per record that carries a note.
"""
import csv
import hashlib
import io
import json
import logging
import struct
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ctxvault.bundle.models import ContextRecord
from ctxvault.errors import BundleStructureError

logger = logging.getLogger(__name__)

MAP_HEADER = ["id", "file", "lang", "line_start", "line_end", "symbol", "type", "timestamp"]


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _row(record: ContextRecord) -> List[str]:
    return [
        record.id,
        record.file,
        record.language,
        str(record.line_start),
        str(record.line_end),
        record.symbol or "",
        record.type,
        record.timestamp,
    ]


def _csv_line(row: Sequence[str]) -> str:
    buf = io.StringIO()
    csv.writer(buf, lineterminator="\n").writerow(row)
    return buf.getvalue()


def row_digest(record: ContextRecord) -> str:
    """Digest of the record's serialized map row plus its vector and note."""
    h = hashlib.sha256(_csv_line(_row(record)).encode("utf-8"))
    if record.vector:
        h.update(struct.pack(f"<{len(record.vector)}f", *record.vector))
    if record.note:
        h.update(record.note.encode("utf-8"))
    return h.hexdigest()


def encode_map(records: Iterable[ContextRecord]) -> bytes:
    parts = [_csv_line(MAP_HEADER)]
    parts.extend(_csv_line(_row(r)) for r in records)
    return "".join(parts).encode("utf-8")


def decode_map(data: bytes) -> List[Dict[str, str]]:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise BundleStructureError(f"map.csv is not valid UTF-8: {e}") from e
    reader = csv.reader(io.StringIO(text))
    try:
        header = next(reader)
    except StopIteration:
        raise BundleStructureError("map.csv is empty; expected a header row")
    if header != MAP_HEADER:
        raise BundleStructureError(f"map.csv header mismatch: {header}")
    rows = []
    for lineno, row in enumerate(reader, start=2):
        if not row:
            continue
        if len(row) != len(MAP_HEADER):
            raise BundleStructureError(f"map.csv line {lineno} has {len(row)} columns, expected {len(MAP_HEADER)}")
        rows.append(dict(zip(MAP_HEADER, row)))
    return rows


def vector_dim(records: Sequence[ContextRecord]) -> int:
    dims = {len(r.vector) for r in records if r.vector}
    if len(dims) > 1:
        raise ValueError(f"Records carry vectors of differing dimensions: {sorted(dims)}")
    return dims.pop() if dims else 0


def encode_vectors(records: Sequence[ContextRecord], dim: int) -> bytes:
    if dim == 0:
        return b""
    fmt = f"<{dim}f"
    zeros = [0.0] * dim
    missing = sum(1 for r in records if not r.vector)
    if missing:
        logger.debug(f"{missing} record(s) without vectors zero-filled")
    return b"".join(struct.pack(fmt, *(r.vector or zeros)) for r in records)


def decode_vectors(data: bytes, dim: int, count: int) -> List[Optional[List[float]]]:
    if dim == 0:
        if data:
            raise BundleStructureError("vectors.f32 has content but manifest declares dim 0")
        return [None] * count
    expected = dim * count * 4
    if len(data) != expected:
        raise BundleStructureError(f"vectors.f32 is {len(data)} bytes, expected {expected} ({count} x {dim} float32)")
    width = dim * 4
    vectors: List[Optional[List[float]]] = []
    for i in range(count):
        vec = list(struct.unpack_from(f"<{dim}f", data, i * width))
        vectors.append(vec if any(vec) else None)
    return vectors


def encode_notes(records: Iterable[ContextRecord]) -> bytes:
    lines = [json.dumps({"id": r.id, "note": r.note}) + "\n" for r in records if r.note]
    return "".join(lines).encode("utf-8")


def decode_notes(data: bytes) -> Dict[str, str]:
    notes: Dict[str, str] = {}
    for lineno, line in enumerate(data.decode("utf-8", errors="strict").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as e:
            raise BundleStructureError(f"notes.jsonl line {lineno} is not JSON: {e}") from e
        if not isinstance(entry, dict) or "id" not in entry:
            raise BundleStructureError(f"notes.jsonl line {lineno} lacks an id")
        notes[str(entry["id"])] = str(entry.get("note", ""))
    return notes


def decode_records(map_bytes: bytes, vector_bytes: bytes, note_bytes: bytes, dim: int) -> List[ContextRecord]:
    """Rebuild records from the three payload assets."""
    rows = decode_map(map_bytes)
    vectors = decode_vectors(vector_bytes, dim, len(rows))
    try:
        notes = decode_notes(note_bytes)
    except UnicodeDecodeError as e:
        raise BundleStructureError(f"notes.jsonl is not valid UTF-8: {e}") from e
    records = []
    for row, vec in zip(rows, vectors):
        try:
            records.append(
                ContextRecord(
                    id=row["id"],
                    file=row["file"],
                    language=row["lang"],
                    line_start=int(row["line_start"] or 0),
                    line_end=int(row["line_end"] or 0),
                    symbol=row["symbol"] or None,
                    type=row["type"],
                    timestamp=row["timestamp"],
                    vector=vec,
                    note=notes.get(row["id"]),
                )
            )
        except ValueError as e:
            raise BundleStructureError(f"map.csv row for id {row['id']!r} is invalid: {e}") from e
    return records


def split_delta(
    records: Sequence[ContextRecord], base_digests: Iterable[str]
) -> Tuple[List[ContextRecord], int]:
    """Drop records whose digest already appears in the base bundle."""
    known = set(base_digests)
    kept = [r for r in records if row_digest(r) not in known]
    return kept, len(records) - len(kept)


def signing_message(schema_version: int, checksums: Dict[str, str]) -> bytes:
    """Bytes covered by a bundle signature: the manifest digest plus every asset digest, sorted by path."""
    body = {
        "schemaVersion": schema_version,
        "manifestSha256": checksums.get("manifest.json", ""),
        "assets": sorted([name, digest] for name, digest in checksums.items()),
    }
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")
