"""Bracket structure planner.

Pure function: given the room size and player count, how many rounds and
rooms a knockout tournament needs. One team per room advances; the finale
is the first round whose teams fit in a single room.
"""

from dataclasses import dataclass, field

from arena_economy.utils.errors import ErrorCode, ValidationError

PLAYERS_PER_TEAM = 4


@dataclass(frozen=True)
class RoundPlan:
    round: int
    rooms: int
    teams: int

    def to_dict(self) -> dict:
        return {"round": self.round, "rooms": self.rooms, "teams": self.teams}


@dataclass(frozen=True)
class TournamentStructure:
    """Planned bracket shape."""

    teams_per_room: int
    total_teams: int
    initial_rooms: int
    total_rounds: int
    finale_max_teams: int
    round_breakdown: list[RoundPlan] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "teams_per_room": self.teams_per_room,
            "total_teams": self.total_teams,
            "initial_rooms": self.initial_rooms,
            "total_rounds": self.total_rounds,
            "finale_max_teams": self.finale_max_teams,
            "round_breakdown": [r.to_dict() for r in self.round_breakdown],
        }


def rooms_needed(teams: int, teams_per_room: int) -> int:
    """Ceiling division; the last room may be partially filled."""
    return -(-teams // teams_per_room)


def calculate_structure(
    teams_per_room: int,
    max_players: int,
    players_per_team: int = PLAYERS_PER_TEAM,
) -> TournamentStructure:
    """Plan rounds until the remaining teams fit in one finale room.

    >>> calculate_structure(25, 1000).total_rounds
    2
    """
    if teams_per_room < 2:
        raise ValidationError(
            ErrorCode.INVALID_REQUEST,
            "A room must hold at least 2 teams",
            details={"teams_per_room": teams_per_room},
        )
    if max_players < 1 or players_per_team < 1:
        raise ValidationError(
            ErrorCode.INVALID_REQUEST,
            "max_players and players_per_team must be positive",
            details={"max_players": max_players, "players_per_team": players_per_team},
        )

    total_teams = rooms_needed(max_players, players_per_team)

    breakdown: list[RoundPlan] = []
    teams = total_teams
    round_number = 1
    while teams > teams_per_room:
        rooms = rooms_needed(teams, teams_per_room)
        breakdown.append(RoundPlan(round=round_number, rooms=rooms, teams=teams))
        teams = rooms  # one winner per room advances
        round_number += 1

    breakdown.append(RoundPlan(round=round_number, rooms=1, teams=teams))

    return TournamentStructure(
        teams_per_room=teams_per_room,
        total_teams=total_teams,
        initial_rooms=rooms_needed(total_teams, teams_per_room),
        total_rounds=round_number,
        finale_max_teams=teams_per_room,
        round_breakdown=breakdown,
    )
