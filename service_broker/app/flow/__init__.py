"""
Authorization flow package.

Holds the handshake state machine and the orchestrator that drives it.
"""

from .states import Flow, FlowState, IllegalTransition
from .orchestrator import AuthorizationOrchestrator

__all__ = [
    "AuthorizationOrchestrator",
    "Flow",
    "FlowState",
    "IllegalTransition",
]
