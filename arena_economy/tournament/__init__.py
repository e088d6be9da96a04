"""
Tournament package.

- settlement: prize-pool lock and winner payouts for scheduled competitions
- bracket: multi-round knockout engine (rooms, eliminations, rounds)
- structure: pure round/room planner
- state_machine: bracket phase transition table
"""

from .bracket import KnockoutEngine, RoundStartResult
from .settlement import PayoutResult, SettlementService, SettlementSummary
from .state_machine import PHASE_TRANSITIONS, can_transition, transition
from .structure import RoundPlan, TournamentStructure, calculate_structure

__all__ = [
    "KnockoutEngine",
    "RoundStartResult",
    "SettlementService",
    "SettlementSummary",
    "PayoutResult",
    "PHASE_TRANSITIONS",
    "can_transition",
    "transition",
    "RoundPlan",
    "TournamentStructure",
    "calculate_structure",
]
