from __future__ import annotations

from enum import Enum


class PromotionState(str, Enum):
    IDLE = "idle"
    DEPLOYING = "deploying"
    HEALTH_CHECKING = "health_checking"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"


ALLOWED_TRANSITIONS: dict[PromotionState, set[PromotionState]] = {
    PromotionState.IDLE: {PromotionState.DEPLOYING},
    PromotionState.DEPLOYING: {PromotionState.HEALTH_CHECKING, PromotionState.ROLLED_BACK},
    PromotionState.HEALTH_CHECKING: {PromotionState.PROMOTED, PromotionState.ROLLED_BACK},
    PromotionState.PROMOTED: set(),
    PromotionState.ROLLED_BACK: set(),
}


class IllegalTransitionError(ValueError):
    pass


def transition(*, current: PromotionState, to: PromotionState) -> PromotionState:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to
