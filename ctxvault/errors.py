"""
Error taxonomy for ctxvault.

Every error carries the process exit code the CLI should use. Import
integrity failures use the fixed codes in ``ImportExitCode``.
"""
from enum import IntEnum
from typing import Optional


class ImportExitCode(IntEnum):
    """Stable exit codes for ``import-context``."""
    OK = 0
    BLOCKED_UNSIGNED = 2
    INVALID_SIGNATURE = 3
    CHECKSUM_MISMATCH = 4
    STRUCTURE = 5


class CtxVaultError(Exception):
    """Base error for all ctxvault failures."""
    exit_code: int = 1


class PolicyDeniedError(CtxVaultError):
    """A command, path, or network request was refused by policy."""

    def __init__(self, kind: str, subject: str, rule: str, remedy: Optional[str] = None):
        self.kind = kind
        self.subject = subject
        self.rule = rule
        self.remedy = remedy
        message = f"{kind} '{subject}' blocked by policy ({rule})"
        if remedy:
            message += f". To allow it: {remedy}"
        super().__init__(message)


class IntegrityError(CtxVaultError):
    """Base class for bundle integrity failures."""


class UnsignedBundleBlockedError(IntegrityError):
    exit_code = int(ImportExitCode.BLOCKED_UNSIGNED)


class SignatureInvalidError(IntegrityError):
    exit_code = int(ImportExitCode.INVALID_SIGNATURE)


class ChecksumMismatchError(IntegrityError):
    exit_code = int(ImportExitCode.CHECKSUM_MISMATCH)

    def __init__(self, asset: str, expected: str, actual: str):
        self.asset = asset
        self.expected = expected
        self.actual = actual
        self.assets = [asset]
        super().__init__(
            f"checksum mismatch for {asset}: expected {expected[:16]}..., got {actual[:16]}..."
        )


class BundleStructureError(CtxVaultError):
    """Bundle is missing files, truncated, unreadable, or of an unknown schema."""
    exit_code = int(ImportExitCode.STRUCTURE)


class BundleWriteError(CtxVaultError):
    """Export target could not be written."""


class KeyLifecycleError(CtxVaultError):
    """Signing key generation, rotation, or loading failed."""
