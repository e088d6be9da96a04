"""Knockout tournament phase transitions.

registration -> in_round (round 1 needs several rooms)
registration -> finale   (everyone fits in one room)
in_round     -> in_round (next round)
in_round     -> finale
finale       -> completed
"""

from arena_economy.models.knockout import BracketPhase
from arena_economy.utils.errors import ErrorCode, StateConflictError

PHASE_TRANSITIONS: dict[BracketPhase, frozenset[BracketPhase]] = {
    BracketPhase.REGISTRATION: frozenset({BracketPhase.IN_ROUND, BracketPhase.FINALE}),
    BracketPhase.IN_ROUND: frozenset({BracketPhase.IN_ROUND, BracketPhase.FINALE}),
    BracketPhase.FINALE: frozenset({BracketPhase.COMPLETED}),
    BracketPhase.COMPLETED: frozenset(),
}


def can_transition(current: BracketPhase, target: BracketPhase) -> bool:
    return target in PHASE_TRANSITIONS[current]


def transition(current: BracketPhase, target: BracketPhase) -> BracketPhase:
    """Return ``target`` if the move is legal, else raise."""
    if not can_transition(current, target):
        raise StateConflictError(
            ErrorCode.ILLEGAL_TRANSITION,
            f"Tournament cannot move from {current.value} to {target.value}",
            details={"from": current.value, "to": target.value},
        )
    return target


def phase_for_round(room_count: int) -> BracketPhase:
    """A round played in a single room is the finale."""
    return BracketPhase.FINALE if room_count == 1 else BracketPhase.IN_ROUND


def accepts_registrations(phase: BracketPhase) -> bool:
    return phase is BracketPhase.REGISTRATION
