"""
Read-only access to a bundle on disk, either a directory or a zip archive.
"""
import posixpath
import zipfile
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from ctxvault.errors import BundleStructureError


class BundleSource(ABC):
    """Uniform ``exists`` / ``read`` over a bundle's relative file names."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def open(cls, path: Path) -> "BundleSource":
        path = Path(path)
        if path.is_dir():
            return DirectorySource(path)
        if path.is_file():
            return ZipSource(path)
        raise BundleStructureError(f"Bundle not found: {path}")

    @abstractmethod
    def exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def read(self, name: str) -> bytes:
        ...

    @abstractmethod
    def names(self) -> List[str]:
        ...

    def read_optional(self, name: str) -> Optional[bytes]:
        return self.read(name) if self.exists(name) else None

    def close(self) -> None:
        pass

    def __enter__(self) -> "BundleSource":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _safe_name(name: str) -> str:
    norm = posixpath.normpath(name.replace("\\", "/"))
    if norm.startswith("/") or norm == ".." or norm.startswith("../"):
        raise BundleStructureError(f"Bundle entry escapes the bundle root: {name}")
    return norm


class DirectorySource(BundleSource):

    def exists(self, name: str) -> bool:
        return (self.path / _safe_name(name)).is_file()

    def read(self, name: str) -> bytes:
        try:
            return (self.path / _safe_name(name)).read_bytes()
        except OSError as e:
            raise BundleStructureError(f"Cannot read {name} from bundle: {e}") from e

    def names(self) -> List[str]:
        return sorted(p.relative_to(self.path).as_posix() for p in self.path.rglob("*") if p.is_file())


class ZipSource(BundleSource):
    """Reads members straight from the archive; nothing is extracted to disk."""

    def __init__(self, path: Path):
        super().__init__(path)
        try:
            self._zip = zipfile.ZipFile(self.path)
        except (zipfile.BadZipFile, OSError) as e:
            raise BundleStructureError(f"Unreadable bundle archive: {e}") from e
        self._members = {}
        try:
            for info in self._zip.infolist():
                if info.is_dir():
                    continue
                self._members[_safe_name(info.filename)] = info
        except BundleStructureError:
            self._zip.close()
            raise

    def exists(self, name: str) -> bool:
        return _safe_name(name) in self._members

    def read(self, name: str) -> bytes:
        info = self._members.get(_safe_name(name))
        if info is None:
            raise BundleStructureError(f"Bundle archive has no member {name}")
        # corrupt deflate data raises zlib.error; unknown compression methods raise NotImplementedError
        try:
            return self._zip.read(info)
        except (zipfile.BadZipFile, zlib.error, NotImplementedError, OSError, EOFError) as e:
            raise BundleStructureError(f"Cannot read {name} from bundle archive: {e}") from e

    def names(self) -> List[str]:
        return sorted(self._members)

    def close(self) -> None:
        self._zip.close()
