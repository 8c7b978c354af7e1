"""
ctxvault: local-only, policy-gated memory export/import for codebases.
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
