"""
Bundle Writer (export-context).

Serializes records into payload assets, checksums every asset and the
manifest, signs when the signing decision says so, and materializes the
bundle as a directory or a zip. The bundle is assembled in a hidden
staging directory next to the target and only moved into place once
complete, so an interrupted export never leaves a partial bundle at the
target path.
"""
import json
import logging
import os
import platform
import shutil
import socket
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from ctxvault import __version__
from ctxvault.audit.receipts import ReceiptRecorder
from ctxvault.bundle import codec
from ctxvault.bundle.models import (
    CHECKSUMMED_ASSETS,
    CHECKSUMS,
    MANIFEST,
    MAP,
    NOTES,
    PUBLIC_KEY,
    SCHEMA_VERSION,
    SIGNATURE,
    VECTORS,
    ContextRecord,
    DeltaInfo,
    ExporterInfo,
    ExportResult,
    Manifest,
    VectorInfo,
)
from ctxvault.bundle.source import BundleSource
from ctxvault.errors import BundleStructureError, BundleWriteError, CtxVaultError
from ctxvault.keys.manager import KeyManager
from ctxvault.policy.broker import PolicyBroker
from ctxvault.policy.models import Policy

logger = logging.getLogger(__name__)


@dataclass
class SigningDecision:
    sign: bool
    reason: str


def decide_signing(policy: Policy, flag: Optional[bool], env_override: bool) -> SigningDecision:
    """
    Resolve whether an export is signed. First match wins:

    1. policy.forceSignedExports (the flag cannot turn it off)
    2. explicit --sign / --no-sign
    3. policy.signExports
    4. environment override
    5. unsigned
    """
    if policy.force_signed_exports:
        return SigningDecision(True, "policy.forceSignedExports")
    if flag is not None:
        return SigningDecision(flag, "--sign" if flag else "--no-sign")
    if policy.sign_exports:
        return SigningDecision(True, "policy.signExports")
    if env_override:
        return SigningDecision(True, "CTXVAULT_SIGN_EXPORTS")
    return SigningDecision(False, "default")


def exporter_info(now: datetime) -> ExporterInfo:
    return ExporterInfo(
        name="ctxvault",
        version=__version__,
        runtime_version=f"{platform.python_implementation()} {platform.python_version()}",
        hostname=socket.gethostname(),
        timestamp=now.isoformat(),
    )


class BundleWriter:
    """Builds bundles under the guidance of the policy broker and key manager."""

    def __init__(
        self,
        broker: PolicyBroker,
        keys: KeyManager,
        env_sign: bool = False,
        recorder: Optional[ReceiptRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.broker = broker
        self.keys = keys
        self.env_sign = env_sign
        self.recorder = recorder
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def export(
        self,
        records: Iterable[ContextRecord],
        out: Path,
        record_type: str = "code",
        sign: Optional[bool] = None,
        zip_output: bool = False,
        delta_from: Optional[Path] = None,
    ) -> ExportResult:
        """Write one bundle and emit its receipt (success or failure).

        ``out`` is resolved against the working directory once, so the path
        checked against allowedGlobs is the path that gets written.
        """
        out = Path(out).resolve()
        params = {
            "out": str(out),
            "type": record_type,
            "sign": sign,
            "zip": zip_output,
            "deltaFrom": str(delta_from) if delta_from else None,
        }
        try:
            result = self._export(records, out, record_type, sign, zip_output, delta_from)
        except CtxVaultError as e:
            if self.recorder:
                self.recorder.record("export-context", params, None, False, error=str(e), exit_code=e.exit_code)
            raise
        if self.recorder:
            self.recorder.record(
                "export-context",
                params,
                {"outPath": result.out_path, "signed": result.signed, "assetCount": result.asset_count},
                True,
                exit_code=0,
                result_summary={
                    "signed": result.signed,
                    "signingReason": result.signing_reason,
                    "records": result.record_count,
                    "assets": result.asset_count,
                },
                digests={f"sha256:{name}": digest for name, digest in result.checksums.items()},
                extras={"keyId": result.key_id} if result.key_id else None,
            )
        return result

    def _export(
        self,
        records: Iterable[ContextRecord],
        out: Path,
        record_type: str,
        sign: Optional[bool],
        zip_output: bool,
        delta_from: Optional[Path],
    ) -> ExportResult:
        self.broker.require_path(str(out))
        if out.exists():
            raise BundleWriteError(f"Export target already exists: {out}")
        if not out.parent.is_dir():
            raise BundleWriteError(f"Export target directory does not exist: {out.parent}")

        records = list(records)
        delta = None
        if delta_from is not None:
            records, delta = self._apply_delta(records, Path(delta_from))

        try:
            dim = codec.vector_dim(records)
        except ValueError as e:
            raise BundleWriteError(str(e)) from e

        assets: Dict[str, bytes] = {
            MAP: codec.encode_map(records),
            VECTORS: codec.encode_vectors(records, dim),
            NOTES: codec.encode_notes(records),
        }
        note_count = sum(1 for r in records if r.note)

        decision = decide_signing(self.broker.policy, sign, self.env_sign)
        key = self.keys.ensure_active() if decision.sign else None

        now = self._clock()
        manifest = Manifest(
            schema_version=SCHEMA_VERSION,
            type=record_type,
            count=len(records),
            counts={"records": len(records), "vectors": len(records) if dim else 0, "notes": note_count},
            vectors=VectorInfo(dim=dim, count=len(records) if dim else 0),
            created_at=now.isoformat(),
            exporter=exporter_info(now),
            key_id=key.key_id if key else None,
            delta=delta,
        )
        assets[MANIFEST] = (json.dumps(manifest.to_document(), indent=2) + "\n").encode("utf-8")

        checksums = {name: codec.sha256_hex(assets[name]) for name in CHECKSUMMED_ASSETS}
        assets[CHECKSUMS] = (json.dumps(checksums, indent=2, sort_keys=True) + "\n").encode("utf-8")

        if key is not None:
            assets[SIGNATURE] = key.sign(codec.signing_message(SCHEMA_VERSION, checksums))
            assets[PUBLIC_KEY] = key.public_der

        self._materialize(assets, out, zip_output)
        logger.info(
            f"Exported {len(records)} record(s), {len(assets)} file(s), "
            f"signed={decision.sign} ({decision.reason})"
        )
        return ExportResult(
            out_path=str(out),
            signed=decision.sign,
            signing_reason=decision.reason,
            key_id=key.key_id if key else None,
            record_count=len(records),
            asset_count=len(assets),
            checksums=checksums,
            zipped=zip_output,
            delta=delta,
        )

    def _apply_delta(self, records: List[ContextRecord], base: Path):
        with BundleSource.open(base) as source:
            if not source.exists(MANIFEST):
                raise BundleStructureError(f"Delta base has no {MANIFEST}")
            manifest_bytes = source.read(MANIFEST)
            try:
                base_manifest = Manifest.model_validate(json.loads(manifest_bytes))
            except ValueError as e:
                raise BundleStructureError(f"Delta base manifest is invalid: {e}") from e
            base_records = codec.decode_records(
                source.read(MAP),
                source.read_optional(VECTORS) or b"",
                source.read_optional(NOTES) or b"",
                base_manifest.vectors.dim,
            )
        kept, skipped = codec.split_delta(records, (codec.row_digest(r) for r in base_records))
        delta = DeltaInfo(
            base_manifest_sha256=codec.sha256_hex(manifest_bytes),
            original_count=len(records),
            exported_count=len(kept),
            unchanged_skipped=skipped,
        )
        return kept, delta

    def _materialize(self, assets: Dict[str, bytes], out: Path, zip_output: bool) -> None:
        staging = Path(tempfile.mkdtemp(prefix=".ctxvault-export-", dir=out.parent))
        try:
            for name, data in assets.items():
                (staging / name).write_bytes(data)
            if zip_output:
                tmp_zip = staging.with_suffix(".zip.tmp")
                with zipfile.ZipFile(tmp_zip, "w", zipfile.ZIP_DEFLATED) as zf:
                    for name in sorted(assets):
                        zf.write(staging / name, arcname=name)
                os.replace(tmp_zip, out)
            else:
                os.rename(staging, out)
        except OSError as e:
            raise BundleWriteError(f"Could not write bundle: {e}") from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
            leftover = staging.with_suffix(".zip.tmp")
            if leftover.exists():
                leftover.unlink()
