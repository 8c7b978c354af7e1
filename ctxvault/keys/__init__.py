"""Ed25519 signing key lifecycle."""

from .manager import KeyManager, SigningKey, key_fingerprint, verify_signature

__all__ = ["KeyManager", "SigningKey", "key_fingerprint", "verify_signature"]
