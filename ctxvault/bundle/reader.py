"""
Bundle Reader (import-context).

Verification runs in a fixed order and stops at the first failure:

1. structure: manifest, checksum map, and every listed asset are present,
   and the schema version is understood;
2. checksums over every listed asset (exit 4), even for signed bundles;
3. signature policy: unsigned bundles are refused under
   ``requireSignedContext`` unless ``--allow-unsigned`` is paired with a
   live ``import-context`` trust token (exit 2); signed bundles must verify
   against their embedded public key (exit 3);
4. records are decoded and handed to the sink.

A manifest that fails to parse is only reported as a structural error if
its checksum still matches; otherwise the tampering is reported as a
checksum mismatch.
"""
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

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
    UNCHECKSUMMED,
    VECTORS,
    ContextRecord,
    ImportResult,
    Manifest,
)
from ctxvault.bundle.source import BundleSource
from ctxvault.errors import (
    BundleStructureError,
    ChecksumMismatchError,
    CtxVaultError,
    SignatureInvalidError,
    UnsignedBundleBlockedError,
)
from ctxvault.keys.manager import KeyManager, key_fingerprint, verify_signature
from ctxvault.policy.broker import PolicyBroker
from ctxvault.storage import RecordSink

logger = logging.getLogger(__name__)

IMPORT_COMMAND = "import-context"
_HEX64 = re.compile(r"^[0-9a-f]{64}$")


@dataclass
class VerifiedBundle:
    manifest: Manifest
    checksums: Dict[str, str]
    records: List[ContextRecord]
    signed: bool
    key_id: Optional[str] = None
    key_is_active: bool = False
    bypass_used: bool = False


class BundleReader:
    """Verifies bundles against policy and hands their records to a sink."""

    def __init__(
        self,
        broker: PolicyBroker,
        keys: Optional[KeyManager] = None,
        sink: Optional[RecordSink] = None,
        recorder: Optional[ReceiptRecorder] = None,
    ):
        self.broker = broker
        self.keys = keys
        self.sink = sink
        self.recorder = recorder

    def import_bundle(self, path: Path, allow_unsigned: bool = False) -> ImportResult:
        """Verify and ingest one bundle, emitting a receipt either way."""
        params = {"bundle": str(path), "allowUnsigned": allow_unsigned}
        try:
            verified = self.verify(path, allow_unsigned=allow_unsigned)
            ingested = self.sink.ingest(verified.records) if self.sink is not None else 0
        except CtxVaultError as e:
            logger.error(f"Import failed ({type(e).__name__}): {e}")
            self.broker.log_action(IMPORT_COMMAND, {"verified": False, "exitCode": e.exit_code})
            if self.recorder:
                self.recorder.record(
                    IMPORT_COMMAND,
                    params,
                    {"verified": False},
                    False,
                    error=str(e),
                    exit_code=e.exit_code,
                    extras=self._failure_extras(e),
                )
            raise

        result = ImportResult(
            verified=True,
            signed=verified.signed,
            schema_version=verified.manifest.schema_version,
            type=verified.manifest.type,
            count=len(verified.records),
            ingested=ingested,
            key_id=verified.key_id,
            key_is_active=verified.key_is_active,
            bypass_used=verified.bypass_used,
            checksums=verified.checksums,
        )
        self.broker.log_action(
            IMPORT_COMMAND,
            {"verified": True, "signed": result.signed, "count": result.count, "bypass": result.bypass_used},
        )
        if self.recorder:
            extras: Dict[str, Any] = {
                "verification": {"checksums": "ok", "signature": "ok" if result.signed else "unsigned"}
            }
            if result.bypass_used:
                extras["bypass"] = {"allowUnsigned": True, "trustToken": IMPORT_COMMAND}
            self.recorder.record(
                IMPORT_COMMAND,
                params,
                {"verified": True, "schemaVersion": result.schema_version, "count": result.count,
                 "ingested": result.ingested},
                True,
                exit_code=0,
                result_summary={"verified": True, "signed": result.signed, "count": result.count},
                digests={f"sha256:{name}": digest for name, digest in result.checksums.items()},
                extras=extras,
            )
        return result

    def verify(self, path: Path, allow_unsigned: bool = False) -> VerifiedBundle:
        with BundleSource.open(Path(path)) as source:
            checksums = self._read_checksums(source)
            manifest_bytes = source.read(MANIFEST)
            manifest, manifest_error = self._parse_manifest(manifest_bytes)
            if manifest is not None and manifest.schema_version != SCHEMA_VERSION:
                raise BundleStructureError(
                    f"Unsupported bundle schemaVersion {manifest.schema_version} (expected {SCHEMA_VERSION})"
                )
            self._check_signature_files(source)

            self._verify_checksums(source, checksums)
            if manifest is None:
                raise BundleStructureError(f"{MANIFEST} is invalid: {manifest_error}")

            signed, key_id, bypass_used = self._verify_signature(source, manifest, checksums, allow_unsigned)

            records = codec.decode_records(
                source.read(MAP), source.read(VECTORS), source.read(NOTES), manifest.vectors.dim
            )
        if len(records) != manifest.count:
            raise BundleStructureError(f"Manifest declares {manifest.count} record(s) but map.csv holds {len(records)}")

        key_is_active = False
        if signed and self.keys is not None:
            status = self.keys.status()
            key_is_active = bool(status and status["keyId"] == key_id)
        return VerifiedBundle(
            manifest=manifest,
            checksums=checksums,
            records=records,
            signed=signed,
            key_id=key_id,
            key_is_active=key_is_active,
            bypass_used=bypass_used,
        )

    # ----- step 1: structure -----

    def _read_checksums(self, source: BundleSource) -> Dict[str, str]:
        for required in (MANIFEST, CHECKSUMS):
            if not source.exists(required):
                raise BundleStructureError(f"Bundle is missing {required}")
        try:
            checksums = json.loads(source.read(CHECKSUMS))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise BundleStructureError(f"{CHECKSUMS} is not valid JSON: {e}") from e
        if not isinstance(checksums, dict) or not all(
            isinstance(k, str) and isinstance(v, str) and _HEX64.match(v) for k, v in checksums.items()
        ):
            raise BundleStructureError(f"{CHECKSUMS} must map file names to SHA-256 hex digests")
        for name in CHECKSUMMED_ASSETS:
            if name not in checksums:
                raise BundleStructureError(f"{CHECKSUMS} does not cover {name}")
        for name in checksums:
            if name in UNCHECKSUMMED:
                raise BundleStructureError(f"{CHECKSUMS} must not list {name}")
            if not source.exists(name):
                raise BundleStructureError(f"Bundle is missing listed asset {name}")
        return checksums

    @staticmethod
    def _parse_manifest(data: bytes):
        try:
            return Manifest.model_validate(json.loads(data)), None
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            return None, e

    @staticmethod
    def _check_signature_files(source: BundleSource) -> None:
        if source.exists(SIGNATURE) != source.exists(PUBLIC_KEY):
            present = SIGNATURE if source.exists(SIGNATURE) else PUBLIC_KEY
            raise BundleStructureError(f"Bundle has {present} without its counterpart")

    # ----- step 2: checksums -----

    @staticmethod
    def _verify_checksums(source: BundleSource, checksums: Dict[str, str]) -> None:
        mismatched = []
        for name in sorted(checksums):
            actual = codec.sha256_hex(source.read(name))
            if actual != checksums[name]:
                mismatched.append((name, checksums[name], actual))
        if mismatched:
            name, expected, actual = mismatched[0]
            err = ChecksumMismatchError(name, expected, actual)
            err.assets = [m[0] for m in mismatched]
            if len(mismatched) > 1:
                err.args = (f"checksum mismatch for {', '.join(err.assets)}",)
            raise err

    # ----- step 3: signature -----

    def _verify_signature(self, source: BundleSource, manifest: Manifest, checksums: Dict[str, str],
                          allow_unsigned: bool):
        if not source.exists(SIGNATURE):
            if manifest.key_id:
                raise SignatureInvalidError(
                    f"Manifest declares keyId {manifest.key_id} but the bundle carries no signature"
                )
            bypass_used = False
            if self.broker.policy.require_signed_context:
                trusted = self.broker.trust.is_trusted(IMPORT_COMMAND)
                if not (allow_unsigned and trusted):
                    raise UnsignedBundleBlockedError(self._blocked_message(allow_unsigned, trusted))
                logger.warning("Importing unsigned bundle under trust-token bypass")
                bypass_used = True
            return False, None, bypass_used

        public_der = source.read(PUBLIC_KEY)
        signature = source.read(SIGNATURE)
        fingerprint = key_fingerprint(public_der)
        if not manifest.key_id:
            raise SignatureInvalidError("Signed bundle manifest has no keyId")
        if manifest.key_id != fingerprint:
            raise SignatureInvalidError(
                f"Manifest keyId {manifest.key_id} does not match embedded public key {fingerprint}"
            )
        if not verify_signature(public_der, codec.signing_message(manifest.schema_version, checksums), signature):
            raise SignatureInvalidError(f"Invalid signature for keyId {fingerprint}")
        return True, fingerprint, False

    @staticmethod
    def _blocked_message(allow_unsigned: bool, trusted: bool) -> str:
        message = "Import blocked: policy requires a valid signed bundle (requireSignedContext=true)."
        if not allow_unsigned and not trusted:
            return message + (
                f" Grant a trust token with `ctxvault policy trust {IMPORT_COMMAND} --minutes 15`, "
                "then retry with --allow-unsigned."
            )
        if not trusted:
            return message + (
                f" --allow-unsigned needs a live trust token: run `ctxvault policy trust {IMPORT_COMMAND}` first."
            )
        return message + " A trust token is active; retry with --allow-unsigned."

    @staticmethod
    def _failure_extras(error: CtxVaultError) -> Dict[str, Any]:
        extras: Dict[str, Any] = {"verification": {"failure": type(error).__name__}}
        if isinstance(error, ChecksumMismatchError):
            extras["verification"]["assets"] = error.assets
        return extras
