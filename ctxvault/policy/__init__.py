"""
Policy system for ctxvault.

- Policy document model and self-repair
- Policy store (load / persist)
- Trust tokens (time-boxed, command-scoped overrides)
- Policy broker (checks, explanations, mutations, audit log)
"""

from .models import Policy, repair_policy, BYPASS_COMMANDS
from .store import PolicyStore
from .trust import TrustTokenStore
from .broker import PolicyBroker, Explanation, DoctorReport, glob_match

__all__ = [
    "Policy", "repair_policy", "BYPASS_COMMANDS", "PolicyStore",
    "TrustTokenStore", "PolicyBroker", "Explanation", "DoctorReport",
    "glob_match",
]
