"""
sysop.agent.state — Agent loop states and the confirmation sub-state.

``StateMachine`` only knows which moves are legal; the loop decides when to
make them.  Any state may fall back to ``AWAITING_INPUT`` (errors and
cancellation), every other move must appear in ``_TRANSITIONS``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from sysop.log import get_logger
from sysop.models.base import ToolInvocation
from sysop.safety.policy import DangerAssessment

log = get_logger(__name__)


class AgentState(str, Enum):
    AWAITING_INPUT = "awaiting_input"
    THINKING = "thinking"
    REVIEW_ACTION = "review_action"
    EXECUTING = "executing"
    FINALIZING = "finalizing"


_TRANSITIONS: dict[AgentState, frozenset[AgentState]] = {
    AgentState.AWAITING_INPUT: frozenset({
        AgentState.THINKING,
        AgentState.REVIEW_ACTION,  # confirmation acknowledged, or a shell escape
    }),
    AgentState.THINKING: frozenset({AgentState.REVIEW_ACTION}),
    AgentState.REVIEW_ACTION: frozenset({AgentState.EXECUTING, AgentState.FINALIZING}),
    AgentState.EXECUTING: frozenset({AgentState.REVIEW_ACTION, AgentState.FINALIZING}),
    AgentState.FINALIZING: frozenset({AgentState.THINKING}),
}


class IllegalTransition(RuntimeError):
    """Raised when the loop attempts a move the state machine forbids."""


# ---------------------------------------------------------------------------
# Confirmation sub-state: None | AwaitingFirst | AwaitingSecond
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AwaitingFirst:
    """A gated invocation waiting for the user's first ``y``/``yes``."""

    invocation: ToolInvocation
    assessment: DangerAssessment


@dataclass(frozen=True)
class AwaitingSecond:
    """First acknowledgement given; waiting for the exact phrase."""

    invocation: ToolInvocation
    assessment: DangerAssessment


PendingConfirmation = Union[AwaitingFirst, AwaitingSecond, None]


class StateMachine:
    """Current ``AgentState`` plus the legality check."""

    def __init__(self) -> None:
        self.state = AgentState.AWAITING_INPUT

    def move(self, target: AgentState) -> None:
        """Transition to *target*.

        Raises
        ------
        IllegalTransition
            *target* is not reachable from the current state.
        """
        if target != AgentState.AWAITING_INPUT and target not in _TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.state.value} -> {target.value}")
        if target != self.state:
            log.debug("agent_state", source=self.state.value, target=target.value)
        self.state = target

    def reset(self) -> None:
        self.move(AgentState.AWAITING_INPUT)
