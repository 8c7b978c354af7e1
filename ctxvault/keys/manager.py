"""
Signing key lifecycle.

One Ed25519 keypair is active at a time (``keys/active.json``). Rotation
archives the current key under ``keys/archive/`` before the new key
replaces ``active.json`` in a single atomic rename, so there is never a
moment without an active key, and a failed generation leaves the old key
in place. Archived keys are kept for provenance until pruned.
"""
import base64
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from ctxvault.errors import KeyLifecycleError
from ctxvault.paths import atomic_write_json

logger = logging.getLogger(__name__)

ALGORITHM = "ed25519"


def key_fingerprint(public_der: bytes) -> str:
    """Stable 16-hex-char keyId derived from the DER public key."""
    return hashlib.sha256(public_der).hexdigest()[:16]


def verify_signature(public_der: bytes, message: bytes, signature: bytes) -> bool:
    """Check an Ed25519 signature against a DER (SubjectPublicKeyInfo) public key."""
    try:
        public_key = serialization.load_der_public_key(public_der)
    except (ValueError, TypeError):
        return False
    if not isinstance(public_key, Ed25519PublicKey):
        return False
    try:
        public_key.verify(signature, message)
    except InvalidSignature:
        return False
    return True


@dataclass
class SigningKey:
    """The active keypair, loaded and ready to sign."""
    key_id: str
    created_at: str
    public_der: bytes
    private_key: Ed25519PrivateKey

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)


def _parse_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class KeyManager:
    """Owns ``keys/active.json`` and ``keys/archive/``."""

    def __init__(
        self,
        keys_dir: Path,
        passphrase: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.keys_dir = Path(keys_dir)
        self.active_path = self.keys_dir / "active.json"
        self.archive_dir = self.keys_dir / "archive"
        self._passphrase = passphrase.encode("utf-8") if passphrase else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()

    # ----- queries -----

    def status(self) -> Optional[Dict[str, str]]:
        """``{keyId, createdAt}`` of the active key, or None when no key exists yet."""
        doc = self._read_active()
        if doc is None:
            return None
        return {"keyId": doc["keyId"], "createdAt": doc["createdAt"]}

    def list(self) -> Dict[str, Any]:
        archived = []
        for path in sorted(self.archive_dir.glob("*.json")) if self.archive_dir.is_dir() else []:
            doc = self._read_archived(path)
            if doc is None:
                continue
            archived.append(
                {
                    "keyId": doc.get("keyId"),
                    "createdAt": doc.get("createdAt"),
                    "archivedAt": doc.get("archivedAt"),
                    "file": path.name,
                }
            )
        archived.sort(key=lambda entry: entry.get("archivedAt") or "")
        return {"active": self.status(), "archived": archived}

    def active_key(self) -> Optional[SigningKey]:
        with self._lock:
            doc = self._read_active()
            if doc is None:
                return None
            try:
                private_key = serialization.load_pem_private_key(
                    doc["privateKey"].encode("utf-8"), password=self._passphrase
                )
                public_der = base64.b64decode(doc["publicKey"])
            except (KeyError, ValueError, TypeError) as e:
                raise KeyLifecycleError(f"Active signing key could not be loaded: {e}") from e
            if not isinstance(private_key, Ed25519PrivateKey):
                raise KeyLifecycleError("Active signing key is not an Ed25519 key")
            return SigningKey(doc["keyId"], doc["createdAt"], public_der, private_key)

    def ensure_active(self) -> SigningKey:
        """Return the active key, generating the first one if none exists."""
        with self._lock:
            key = self.active_key()
            if key is None:
                self.rotate()
                key = self.active_key()
            return key

    # ----- mutations -----

    def rotate(self) -> str:
        """Archive the active key (if any) and install a freshly generated one."""
        with self._lock:
            now = self._clock()
            try:
                new_doc = self._generate(now)
            except Exception as e:
                raise KeyLifecycleError(f"Key generation failed; active key unchanged: {e}") from e

            previous = self._read_active()
            archive_path = None
            if previous is not None:
                archived = dict(previous, archivedAt=now.isoformat())
                archive_path = self.archive_dir / f"{previous['keyId']}-{now.strftime('%Y%m%dT%H%M%S%fZ')}.json"
                try:
                    atomic_write_json(archive_path, archived)
                except OSError as e:
                    raise KeyLifecycleError(f"Could not archive key {previous['keyId']}: {e}") from e

            try:
                atomic_write_json(self.active_path, new_doc)
            except OSError as e:
                if archive_path is not None:
                    archive_path.unlink(missing_ok=True)
                raise KeyLifecycleError(f"Could not install new key; active key unchanged: {e}") from e

            logger.info(
                f"Rotated signing key: {previous['keyId'] if previous else 'none'} -> {new_doc['keyId']}"
            )
            return new_doc["keyId"]

    def prune(self, older_than_days: float) -> int:
        """Delete archived keys archived more than ``older_than_days`` ago. Never touches the active key."""
        if older_than_days < 0:
            raise ValueError("older_than_days must not be negative")
        if not self.archive_dir.is_dir():
            return 0
        cutoff = self._clock() - timedelta(days=older_than_days)
        removed = 0
        with self._lock:
            for path in sorted(self.archive_dir.glob("*.json")):
                doc = self._read_archived(path)
                archived_at = _parse_time(doc.get("archivedAt")) if doc else None
                if archived_at is None:
                    archived_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                if archived_at < cutoff:
                    path.unlink()
                    removed += 1
        if removed:
            logger.info(f"Pruned {removed} archived key(s) older than {older_than_days} day(s)")
        return removed

    # ----- internals -----

    def _generate(self, now: datetime) -> Dict[str, str]:
        private_key = Ed25519PrivateKey.generate()
        public_der = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        encryption = (
            serialization.BestAvailableEncryption(self._passphrase)
            if self._passphrase
            else serialization.NoEncryption()
        )
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        return {
            "keyId": key_fingerprint(public_der),
            "algorithm": ALGORITHM,
            "createdAt": now.isoformat(),
            "publicKey": base64.b64encode(public_der).decode("ascii"),
            "privateKey": private_pem.decode("ascii"),
            "encrypted": bool(self._passphrase),
        }

    @staticmethod
    def _read_archived(path: Path) -> Optional[Dict[str, Any]]:
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unreadable archived key {path.name}: {e}")
            return None
        if not isinstance(doc, dict):
            logger.warning(f"Skipping archived key {path.name}: not a JSON object")
            return None
        return doc

    def _read_active(self) -> Optional[Dict[str, Any]]:
        try:
            doc = json.loads(self.active_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise KeyLifecycleError(f"Active key file is unreadable: {e}") from e
        if not isinstance(doc, dict) or not doc.get("keyId") or not doc.get("privateKey"):
            raise KeyLifecycleError("Active key file is missing keyId or privateKey")
        return doc
