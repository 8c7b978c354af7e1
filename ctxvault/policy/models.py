"""
Policy document model.

The policy is a single human-editable JSON document. Field names on disk
are camelCase; the model exposes snake_case attributes. ``repair_policy``
turns any parsed document, however damaged, into a valid ``Policy`` and
reports whether anything had to change.
"""
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field

# Commands that are never subject to policy (bypass, not allow-list entries).
BYPASS_COMMANDS = frozenset({"help", "--help", "-h", "version", "--version", "-V"})

DEFAULT_ALLOWED_COMMANDS: List[str] = [
    "status",
    "policy",
    "key",
    "export-context",
    "import-context",
    "receipt-show",
    "journal",
    "prove-offline",
]
DEFAULT_ALLOWED_GLOBS: List[str] = ["**/*"]
DEFAULT_ENV_PASSTHROUGH: List[str] = ["PATH", "HOME", "USER", "USERNAME", "CTXVAULT_MODE"]

_LIST_FIELDS = {
    "allowedCommands": DEFAULT_ALLOWED_COMMANDS,
    "allowedGlobs": DEFAULT_ALLOWED_GLOBS,
    "envPassthrough": DEFAULT_ENV_PASSTHROUGH,
}
_BOOL_FIELDS = {
    "networkEgress": False,
    "auditTrail": True,
    "signExports": False,
    "requireSignedContext": False,
    "forceSignedExports": False,
}


class Policy(BaseModel):
    """Project policy (one per project)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    allowed_commands: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS), alias="allowedCommands"
    )
    allowed_globs: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_GLOBS), alias="allowedGlobs"
    )
    env_passthrough: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ENV_PASSTHROUGH), alias="envPassthrough"
    )
    network_egress: bool = Field(default=False, alias="networkEgress")
    audit_trail: bool = Field(default=True, alias="auditTrail")
    sign_exports: bool = Field(default=False, alias="signExports")
    require_signed_context: bool = Field(default=False, alias="requireSignedContext")
    force_signed_exports: bool = Field(default=False, alias="forceSignedExports")

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the on-disk camelCase document."""
        return self.model_dump(by_alias=True)


def _clean_string_list(value: Any) -> Tuple[List[str], bool]:
    """Keep string entries once each, in order. Returns (list, changed)."""
    out: List[str] = []
    for item in value:
        if isinstance(item, str) and item and item not in out:
            out.append(item)
    return out, len(out) != len(value)


def repair_policy(raw: Any) -> Tuple[Policy, bool]:
    """
    Build a valid policy from a parsed document.

    Missing or malformed fields fall back to their safe defaults. Unknown
    keys are preserved. Returns the policy and whether any repair happened.
    """
    if not isinstance(raw, dict):
        return Policy(), True

    doc: Dict[str, Any] = dict(raw)
    changed = False

    for key, default in _LIST_FIELDS.items():
        value = doc.get(key)
        if not isinstance(value, list):
            doc[key] = list(default)
            changed = True
            continue
        cleaned, dropped = _clean_string_list(value)
        if dropped:
            doc[key] = cleaned
            changed = True

    for key, default in _BOOL_FIELDS.items():
        if not isinstance(doc.get(key), bool):
            doc[key] = default
            changed = True

    return Policy.model_validate(doc), changed
