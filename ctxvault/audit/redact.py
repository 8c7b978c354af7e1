"""
Outside-root path redaction for persisted audit data.

The "looks like a path" test is a heuristic: a string is treated as a
path only when it contains a separator and is either absolute or climbs
with a ``..`` segment. Bare tokens such as ``notes.txt`` or ``..`` are
never redacted, and a relative path that stays inside the project is left
alone. In ``name=value`` tokens such as ``--out=/tmp/b`` only the value is
checked.
"""
import hashlib
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, List, Tuple

REDACTED = "<redacted:outside-root>"
CYCLE = "<cycle>"

_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")
_PARENT_RE = re.compile(r"(^|[\\/])\.\.([\\/]|$)")
_SPACE_RE = re.compile(r"\s")
_TOKEN_RE = re.compile(r"\S+")
_TOKEN_PUNCT = "\"'()[]{}<>,;:"


def _is_absolute(value: str) -> bool:
    return value.startswith(("/", "\\")) or bool(_DRIVE_RE.match(value))


def looks_path_like(value: str) -> bool:
    if "/" not in value and "\\" not in value:
        return False
    return _is_absolute(value) or bool(_PARENT_RE.search(value))


def fingerprint(value: str) -> str:
    return "sha256:" + hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


@dataclass
class RedactionResult:
    """A sanitized structure plus what was taken out of it."""
    value: Any
    count: int = 0
    examples: List[str] = field(default_factory=list)

    def fingerprints(self) -> List[str]:
        return [fingerprint(e) for e in self.examples]


class Redactor:
    """Replaces string values that resolve outside ``project_root``."""

    def __init__(self, project_root, examples_limit: int = 5, base=None):
        self.root = posixpath.normpath(str(project_root).replace("\\", "/"))
        # relative values resolve against base, which defaults to the root
        self.base = posixpath.normpath(str(base).replace("\\", "/")) if base is not None else self.root
        self.examples_limit = examples_limit

    def is_within_root(self, value: str) -> bool:
        norm = value.replace("\\", "/")
        if _DRIVE_RE.match(value) and not _DRIVE_RE.match(self.root):
            return False
        if not _is_absolute(value):
            norm = self.base + "/" + norm
        resolved = posixpath.normpath(norm)
        if resolved.startswith("//"):
            resolved = "/" + resolved.lstrip("/")
        prefix = self.root.rstrip("/") + "/"
        return resolved == self.root or resolved.startswith(prefix)

    def redact_string(self, value: str) -> Tuple[str, List[str]]:
        """Redact a whole path value, or outside-root path tokens inside free text.

        Returns the new string and the original paths that were removed.
        """
        if self._is_outside(value):
            return REDACTED, [value]
        if not _SPACE_RE.search(value):
            return self._redact_assignment(value)
        removed: List[str] = []

        def replace(match: "re.Match[str]") -> str:
            token = match.group(0)
            core = token.strip(_TOKEN_PUNCT)
            if not core:
                return token
            if self._is_outside(core):
                removed.append(core)
                return token.replace(core, REDACTED)
            redacted, taken = self._redact_assignment(core)
            if taken:
                removed.extend(taken)
                return token.replace(core, redacted)
            return token

        return _TOKEN_RE.sub(replace, value), removed

    def _is_outside(self, value: str) -> bool:
        return looks_path_like(value) and not self.is_within_root(value)

    def _redact_assignment(self, token: str) -> Tuple[str, List[str]]:
        # --out=/abs/path or key=../path: only the value half can be a path
        name, sep, rest = token.partition("=")
        path = rest.strip(_TOKEN_PUNCT)
        if sep and path and self._is_outside(path):
            return name + sep + rest.replace(path, REDACTED), [path]
        return token, []

    def sanitize(self, data: Any, redact: bool = True) -> RedactionResult:
        """Recursively copy ``data`` with outside-root paths replaced.

        Containers that refer back to one of their ancestors are replaced by
        a cycle marker instead of being walked again. With ``redact=False``
        only the cycle marking is applied.
        """
        result = RedactionResult(value=None)
        active: set = set()
        seen_originals: set = set()

        def walk(val: Any) -> Any:
            if isinstance(val, PurePath):
                val = str(val)
            if isinstance(val, str):
                if not redact:
                    return val
                redacted, removed = self.redact_string(val)
                for original in removed:
                    if original not in seen_originals and len(result.examples) < self.examples_limit:
                        result.examples.append(original)
                    seen_originals.add(original)
                return redacted
            if isinstance(val, (dict, list, tuple, set, frozenset)):
                marker = id(val)
                if marker in active:
                    return CYCLE
                active.add(marker)
                try:
                    if isinstance(val, dict):
                        return {walk(k) if isinstance(k, (str, PurePath)) else k: walk(v) for k, v in val.items()}
                    items = sorted(val, key=repr) if isinstance(val, (set, frozenset)) else val
                    return [walk(v) for v in items]
                finally:
                    active.discard(marker)
            return val

        result.value = walk(data)
        result.count = len(seen_originals)
        return result
