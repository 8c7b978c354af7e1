"""
Policy Broker.

Answers whether a command, a filesystem path, an environment variable, or
network egress is permitted under the current policy, explains its
answers, and applies the two idempotent policy mutations.
"""
import json
import logging
import posixpath
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from ctxvault.audit.redact import Redactor
from ctxvault.errors import PolicyDeniedError
from ctxvault.policy.models import BYPASS_COMMANDS, Policy
from ctxvault.policy.store import PolicyStore
from ctxvault.policy.trust import TrustTokenStore

logger = logging.getLogger(__name__)

_POLICY_FLAGS = {
    "networkEgress": "network_egress",
    "auditTrail": "audit_trail",
    "signExports": "sign_exports",
    "requireSignedContext": "require_signed_context",
    "forceSignedExports": "force_signed_exports",
}


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a path glob into a regex; ``**`` spans directories, ``*`` does not."""
    i, n = 0, len(pattern)
    out = []
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                if i < n and pattern[i] == "/":
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body.replace(chr(92), chr(92) * 2)}]")
                i = end
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out), re.IGNORECASE | re.DOTALL)


def glob_match(target: str, pattern: str) -> bool:
    """Case-insensitive glob match, dot-files included.

    Patterns without a slash also match the last path segment.
    """
    pattern = pattern.replace("\\", "/")
    try:
        regex = _glob_regex(pattern)
    except re.error:
        logger.warning(f"Ignoring invalid glob pattern: {pattern!r}")
        return False
    if regex.fullmatch(target):
        return True
    if "/" not in pattern:
        base = target.rstrip("/").rsplit("/", 1)[-1]
        return bool(base) and regex.fullmatch(base) is not None
    return False


def path_candidates(path: str, project_root: Path) -> List[str]:
    """Raw and project-relative POSIX forms of ``path``, each with and without a trailing slash."""
    raw = str(path).replace("\\", "/")
    root = str(project_root).replace("\\", "/")
    absolute = raw if posixpath.isabs(raw) else posixpath.join(root, raw)
    rel = posixpath.relpath(posixpath.normpath(absolute), root) if raw else "."
    candidates = []
    for form in (raw, rel):
        base = form.rstrip("/") or form
        for variant in (base, base + "/"):
            if variant and variant not in candidates:
                candidates.append(variant)
    return candidates


@dataclass
class Explanation:
    """Outcome of a policy check plus the rule it rests on."""
    allowed: bool
    reason: str
    rule: Optional[str] = None
    matched: Optional[str] = None
    remedy: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class DoctorReport:
    """Self-service diagnosis of the current policy."""
    command: Optional[Explanation] = None
    path: Optional[Explanation] = None
    network_egress: bool = False
    audit_trail: bool = True
    signing: Dict[str, bool] = field(default_factory=dict)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command.to_dict() if self.command else None,
            "path": self.path.to_dict() if self.path else None,
            "networkEgress": self.network_egress,
            "auditTrail": self.audit_trail,
            "signing": self.signing,
            "suggestions": self.suggestions,
        }


class PolicyBroker:
    """
    Evaluates policy for one project.

    All collaborators are passed in explicitly: the policy store, the trust
    token store, and the project root used for relative-path matching.
    """

    def __init__(
        self,
        store: PolicyStore,
        trust: TrustTokenStore,
        project_root: Path,
        audit_log: Optional[Path] = None,
        redactor: Optional[Redactor] = None,
    ):
        self.store = store
        self.trust = trust
        self.project_root = Path(project_root).resolve()
        self.audit_log = Path(audit_log) if audit_log else None
        self.redactor = redactor or Redactor(self.project_root)
        self._policy = store.load()

    @property
    def policy(self) -> Policy:
        return self._policy

    def reload(self) -> Policy:
        self._policy = self.store.load()
        return self._policy

    # ----- checks -----

    def is_command_allowed(self, cmd: str) -> bool:
        if cmd in BYPASS_COMMANDS:
            return True
        return cmd in self._policy.allowed_commands

    def is_path_allowed(self, path: str) -> bool:
        return self._match_path(path) is not None

    def is_env_allowed(self, name: str) -> bool:
        return name in self._policy.env_passthrough

    def is_network_allowed(self) -> bool:
        if self._policy.network_egress:
            logger.warning(
                "Policy sets networkEgress=true; ctxvault performs no network I/O, "
                "so this setting is a configuration anomaly"
            )
        return self._policy.network_egress

    def should_audit(self) -> bool:
        return self._policy.audit_trail

    # ----- explanations -----

    def explain_command(self, cmd: str) -> Explanation:
        if cmd in BYPASS_COMMANDS:
            return Explanation(True, "Help/version commands are never subject to policy", rule="bypass")
        if cmd in self._policy.allowed_commands:
            return Explanation(True, "Command present in allowedCommands", rule="allowedCommands", matched=cmd)
        return Explanation(
            False,
            "Command not present in allowedCommands",
            rule="allowedCommands",
            remedy=f"ctxvault policy allow-command {cmd}",
        )

    def explain_path(self, path: str) -> Explanation:
        matched = self._match_path(path)
        if matched is not None:
            return Explanation(True, "Path matches allowedGlobs", rule="allowedGlobs", matched=matched)
        return Explanation(
            False,
            "No allowedGlobs matched",
            rule="allowedGlobs",
            remedy=f"ctxvault policy allow-path '<glob matching {path}>'",
        )

    # ----- enforcement -----

    def require_command(self, cmd: str) -> None:
        """Raise PolicyDeniedError unless ``cmd`` is allowed or carries a live trust token."""
        decision = self.explain_command(cmd)
        if decision.allowed:
            self.log_action("policy.command", {"command": cmd, "allowed": True})
            return
        if self.trust.is_trusted(cmd):
            logger.info(f"Command '{cmd}' not in allowedCommands; proceeding on trust token")
            self.log_action("policy.command", {"command": cmd, "allowed": True, "trust": True})
            return
        self.log_action("policy.command", {"command": cmd, "allowed": False})
        raise PolicyDeniedError(
            "command",
            cmd,
            "allowedCommands",
            f"run `{decision.remedy}` or `ctxvault policy trust {cmd} --minutes 15`",
        )

    def require_path(self, path: str) -> None:
        decision = self.explain_path(path)
        self.log_action("policy.path", {"path": path, "allowed": decision.allowed})
        if not decision.allowed:
            raise PolicyDeniedError("path", str(path), "allowedGlobs", decision.remedy)

    # ----- mutations -----

    def allow_command(self, cmd: str) -> bool:
        """Add ``cmd`` to allowedCommands. Returns whether the policy changed."""
        if cmd in self._policy.allowed_commands:
            return False
        self._policy.allowed_commands.append(cmd)
        self._persist("policy.allow-command", {"command": cmd})
        return True

    def allow_path(self, glob: str) -> bool:
        """Add ``glob`` to allowedGlobs. Returns whether the policy changed."""
        if glob in self._policy.allowed_globs:
            return False
        self._policy.allowed_globs.append(glob)
        self._persist("policy.allow-path", {"glob": glob})
        return True

    def set_flag(self, name: str, value: bool) -> bool:
        """Set one of the boolean policy switches by its document name."""
        attr = _POLICY_FLAGS.get(name)
        if attr is None:
            raise ValueError(f"Unknown policy flag '{name}'. Valid flags: {', '.join(_POLICY_FLAGS)}")
        if getattr(self._policy, attr) == value:
            return False
        setattr(self._policy, attr, value)
        self._persist("policy.set", {"flag": name, "value": value})
        return True

    # ----- audit / diagnosis -----

    def log_action(self, action: str, details: Dict[str, Any]) -> None:
        """Append one redacted JSON line to the audit log when auditTrail is on."""
        if not self.should_audit() or self.audit_log is None:
            return
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "details": self.redactor.sanitize(details).value,
        }
        try:
            self.audit_log.parent.mkdir(parents=True, exist_ok=True)
            with open(self.audit_log, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            logger.warning(f"Could not append to audit log: {e}")

    def doctor(self, cmd: Optional[str] = None, path: Optional[str] = None) -> DoctorReport:
        policy = self._policy
        report = DoctorReport(
            network_egress=policy.network_egress,
            audit_trail=policy.audit_trail,
            signing={
                "signExports": policy.sign_exports,
                "requireSignedContext": policy.require_signed_context,
                "forceSignedExports": policy.force_signed_exports,
            },
        )
        if cmd:
            report.command = self.explain_command(cmd)
            if not report.command.allowed:
                report.suggestions.append(report.command.remedy)
                report.suggestions.append(f"ctxvault policy trust {cmd} --minutes 15")
        if path:
            report.path = self.explain_path(path)
            if not report.path.allowed:
                report.suggestions.append(report.path.remedy)
        if policy.network_egress:
            report.suggestions.append("ctxvault policy set networkEgress false")
        if policy.require_signed_context and "import-context" not in (t[0] for t in self.trust.list()):
            report.suggestions.append(
                "Unsigned bundles are blocked; grant `ctxvault policy trust import-context` "
                "and retry with --allow-unsigned to import one"
            )
        if not policy.audit_trail:
            report.suggestions.append("ctxvault policy set auditTrail true")
        return report

    # ----- internals -----

    def _match_path(self, path: str) -> Optional[str]:
        candidates = path_candidates(str(path), self.project_root)
        for glob in self._policy.allowed_globs:
            for target in candidates:
                if glob_match(target, glob):
                    return glob
        return None

    def _persist(self, action: str, details: Dict[str, Any]) -> None:
        self.store.save(self._policy)
        self.log_action(action, details)
