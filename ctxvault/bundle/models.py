"""
Bundle data models.

A bundle is a directory (or a zip with the same layout) holding a manifest,
three payload assets, a checksum map, and optionally a signature plus the
public key that made it.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 1

MANIFEST = "manifest.json"
MAP = "map.csv"
VECTORS = "vectors.f32"
NOTES = "notes.jsonl"
CHECKSUMS = "checksums.json"
SIGNATURE = "signature.bin"
PUBLIC_KEY = "publickey.der"

PAYLOAD_ASSETS = (MAP, VECTORS, NOTES)
CHECKSUMMED_ASSETS = (MANIFEST,) + PAYLOAD_ASSETS
UNCHECKSUMMED = frozenset({CHECKSUMS, SIGNATURE, PUBLIC_KEY})


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ContextRecord(_CamelModel):
    """One exportable memory record, as yielded by a record source."""
    id: str
    file: str
    language: str = ""
    line_start: int = 0
    line_end: int = 0
    symbol: Optional[str] = None
    type: str = "code"
    timestamp: str = ""
    vector: Optional[List[float]] = None
    note: Optional[str] = None


class ExporterInfo(_CamelModel):
    name: str
    version: str
    runtime_version: str
    hostname: str
    timestamp: str


class VectorInfo(_CamelModel):
    dim: int = 0
    count: int = 0


class DeltaInfo(_CamelModel):
    base_manifest_sha256: str
    original_count: int
    exported_count: int
    unchanged_skipped: int


class Manifest(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    schema_version: int = SCHEMA_VERSION
    type: str = "code"
    count: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    vectors: VectorInfo = Field(default_factory=VectorInfo)
    created_at: str
    exporter: Optional[ExporterInfo] = None
    key_id: Optional[str] = None
    delta: Optional[DeltaInfo] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExportResult(_CamelModel):
    """What export-context produced."""
    out_path: str
    signed: bool
    signing_reason: str
    key_id: Optional[str] = None
    record_count: int
    asset_count: int
    checksums: Dict[str, str]
    zipped: bool = False
    delta: Optional[DeltaInfo] = None


class ImportResult(_CamelModel):
    """What import-context verified and ingested."""
    verified: bool
    signed: bool
    schema_version: int
    type: str
    count: int
    ingested: int
    key_id: Optional[str] = None
    key_is_active: bool = False
    bypass_used: bool = False
    checksums: Dict[str, str] = Field(default_factory=dict)
