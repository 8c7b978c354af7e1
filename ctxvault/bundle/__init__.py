"""
Context bundles: the on-disk export format.

The writer and reader live in ``ctxvault.bundle.writer`` and
``ctxvault.bundle.reader``.
"""

from .models import (
    SCHEMA_VERSION, ContextRecord, Manifest, ExportResult, ImportResult
)

__all__ = ["SCHEMA_VERSION", "ContextRecord", "Manifest", "ExportResult", "ImportResult"]
