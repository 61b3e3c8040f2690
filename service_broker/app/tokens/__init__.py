"""
Token lifecycle package.
"""

from .lifecycle import RefreshOutcome, TokenLifecycleManager

__all__ = [
    "RefreshOutcome",
    "TokenLifecycleManager",
]
