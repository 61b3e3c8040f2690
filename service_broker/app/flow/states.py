"""
Authorization handshake state machine.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector


class FlowState(Enum):
    IDLE = "idle"
    PENDING_AUTHORIZATION = "pending_authorization"
    AWAITING_LOGIN_CHALLENGE = "awaiting_login_challenge"
    AWAITING_CONSENT_CHALLENGE = "awaiting_consent_challenge"
    AWAITING_CODE = "awaiting_code"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (FlowState.AUTHENTICATED, FlowState.FAILED)


@dataclass(frozen=True)
class StateRules:
    """Cookie invariants of a state."""
    requires_challenge_cookies: bool = False
    clears_challenge_cookies: bool = False


TRANSITIONS: Dict[FlowState, FrozenSet[FlowState]] = {
    FlowState.IDLE: frozenset({FlowState.PENDING_AUTHORIZATION}),
    FlowState.PENDING_AUTHORIZATION: frozenset({
        FlowState.AWAITING_LOGIN_CHALLENGE,
        FlowState.AWAITING_CONSENT_CHALLENGE,
        FlowState.AWAITING_CODE,
    }),
    # Repeats while the browser is sent to the hosted login page
    FlowState.AWAITING_LOGIN_CHALLENGE: frozenset({
        FlowState.AWAITING_LOGIN_CHALLENGE,
        FlowState.AWAITING_CONSENT_CHALLENGE,
    }),
    FlowState.AWAITING_CONSENT_CHALLENGE: frozenset({FlowState.AWAITING_CODE}),
    FlowState.AWAITING_CODE: frozenset({FlowState.EXCHANGING}),
    FlowState.EXCHANGING: frozenset({FlowState.AUTHENTICATED}),
    FlowState.AUTHENTICATED: frozenset(),
    FlowState.FAILED: frozenset(),
}

RULES: Dict[FlowState, StateRules] = {
    FlowState.IDLE: StateRules(),
    FlowState.PENDING_AUTHORIZATION: StateRules(requires_challenge_cookies=True),
    FlowState.AWAITING_LOGIN_CHALLENGE: StateRules(),
    FlowState.AWAITING_CONSENT_CHALLENGE: StateRules(),
    FlowState.AWAITING_CODE: StateRules(),
    FlowState.EXCHANGING: StateRules(requires_challenge_cookies=True, clears_challenge_cookies=True),
    FlowState.AUTHENTICATED: StateRules(clears_challenge_cookies=True),
    FlowState.FAILED: StateRules(clears_challenge_cookies=True),
}


class IllegalTransition(RuntimeError):
    """A step was attempted out of order."""

    def __init__(self, current: FlowState, target: FlowState):
        self.current = current
        self.target = target
        super().__init__(f"Illegal flow transition {current.value} -> {target.value}")


def can_transition(current: FlowState, target: FlowState) -> bool:
    if target is FlowState.FAILED:
        return not current.terminal
    return target in TRANSITIONS[current]


class Flow:
    """One pass through the handshake as seen by a single broker request.

    Each HTTP step re-enters the machine at the state its endpoint handles;
    ``Flow.resume`` builds the flow at that point.
    """

    def __init__(self, state: FlowState = FlowState.IDLE,
                 metrics: Optional[MetricsCollector] = None):
        self.state = state
        self.history: List[FlowState] = [state]
        self.metrics = metrics
        self.logger = get_logger("broker.flow")

    @classmethod
    def resume(cls, state: FlowState, metrics: Optional[MetricsCollector] = None) -> "Flow":
        return cls(state, metrics)

    @property
    def rules(self) -> StateRules:
        return RULES[self.state]

    def advance(self, target: FlowState) -> "Flow":
        if not can_transition(self.state, target):
            raise IllegalTransition(self.state, target)

        self.logger.debug("Flow transition", from_state=self.state.value, to_state=target.value)
        if self.metrics is not None:
            self.metrics.increment_counter(
                "auth_flow_transitions_total",
                from_state=self.state.value,
                to_state=target.value,
            )
        self.state = target
        self.history.append(target)
        return self

    def fail(self, reason: str) -> "Flow":
        if self.state.terminal:
            return self
        self.logger.warning("Flow failed", state=self.state.value, reason=reason)
        return self.advance(FlowState.FAILED)
