"""Domain model for the standings pipeline.

Python attributes are snake_case; ``to_dict`` renders the camelCase wire format
that the artifact consumers (API layer, browser UI) read.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed); None when absent or invalid."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Unit:
    division: str
    tier: str

    @property
    def key(self) -> str:
        return f"{self.division}-{self.tier}"

    def __str__(self) -> str:
        return f"{self.division}/{self.tier}"


@dataclass(frozen=True)
class RawScrapeResult:
    unit: Unit
    standings: Any
    schedule: Any
    fetched_at: datetime


@dataclass(frozen=True)
class StandingsEntry:
    position: int
    team_name: str
    team_code: str
    games_played: int
    wins: int
    losses: int
    ties: int
    win_pct: float
    runs_for: int
    runs_against: int
    points: Optional[int] = None

    @property
    def run_differential(self) -> int:
        return self.runs_for - self.runs_against

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "teamName": self.team_name,
            "teamCode": self.team_code,
            "gamesPlayed": self.games_played,
            "wins": self.wins,
            "losses": self.losses,
            "ties": self.ties,
            "winPct": self.win_pct,
            "points": self.points,
            "runsFor": self.runs_for,
            "runsAgainst": self.runs_against,
            "runDifferential": self.run_differential,
        }


@dataclass(frozen=True)
class TeamRef:
    name: str
    code: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "code": self.code}


@dataclass(frozen=True)
class Game:
    home_team: TeamRef
    away_team: TeamRef
    date: Optional[datetime] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    is_completed: bool = False
    location: Optional[str] = None
    date_text: Optional[str] = None
    time: Optional[str] = None
    score_text: Optional[str] = None

    @property
    def has_score(self) -> bool:
        return self.home_score is not None and self.away_score is not None

    @property
    def total_runs(self) -> Optional[int]:
        if not self.has_score:
            return None
        return int(self.home_score) + int(self.away_score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": isoformat_utc(self.date),
            "dateText": self.date_text,
            "time": self.time,
            "homeTeam": self.home_team.to_dict(),
            "awayTeam": self.away_team.to_dict(),
            "homeScore": self.home_score,
            "awayScore": self.away_score,
            "isCompleted": self.is_completed,
            "location": self.location,
        }


@dataclass(frozen=True)
class TeamSchedule:
    team_code: str
    total_games: int
    played_games: int
    upcoming_games: int
    recent_games: tuple[Game, ...] = ()
    next_games: tuple[Game, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "teamCode": self.team_code,
            "totalGames": self.total_games,
            "playedGames": self.played_games,
            "upcomingGames": self.upcoming_games,
            "recentGames": [g.to_dict() for g in self.recent_games],
            "nextGames": [g.to_dict() for g in self.next_games],
        }


@dataclass(frozen=True)
class UnitSummary:
    total_teams: int
    total_games: int
    played_games: int
    upcoming_games: int
    no_result_games: int
    top_team: Optional[StandingsEntry] = None
    highest_scoring_game: Optional[Game] = None
    recent_games: tuple[Game, ...] = ()
    next_games: tuple[Game, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        top = None
        if self.top_team is not None:
            top = {
                "teamName": self.top_team.team_name,
                "teamCode": self.top_team.team_code,
                "wins": self.top_team.wins,
                "losses": self.top_team.losses,
                "ties": self.top_team.ties,
                "winPct": self.top_team.win_pct,
            }
        highest = None
        if self.highest_scoring_game is not None:
            highest = dict(self.highest_scoring_game.to_dict())
            highest["totalRuns"] = self.highest_scoring_game.total_runs
        return {
            "totalTeams": self.total_teams,
            "totalGames": self.total_games,
            "playedGames": self.played_games,
            "upcomingGames": self.upcoming_games,
            "noResultGames": self.no_result_games,
            "topTeam": top,
            "highestScoringGame": highest,
            "recentGames": [g.to_dict() for g in self.recent_games],
            "nextGames": [g.to_dict() for g in self.next_games],
        }


@dataclass(frozen=True)
class UnitDataset:
    unit: Unit
    standings: tuple[StandingsEntry, ...]
    games: tuple[Game, ...]
    summary: UnitSummary
    team_schedules: Mapping[str, TeamSchedule] = field(default_factory=dict)

    @property
    def team_count(self) -> int:
        return len(self.standings)

    @property
    def game_count(self) -> int:
        return len(self.games)

    def to_dict(self) -> dict[str, Any]:
        return {
            "division": self.unit.division,
            "tier": self.unit.tier,
            "standings": [entry.to_dict() for entry in self.standings],
            "games": [game.to_dict() for game in self.games],
            "summary": self.summary.to_dict(),
            "teamSchedules": {code: sched.to_dict() for code, sched in self.team_schedules.items()},
        }


@dataclass(frozen=True)
class UnitError:
    unit: Unit
    message: str
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "division": self.unit.division,
            "tier": self.unit.tier,
            "message": self.message,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class RunMetadata:
    run_number: int
    started_at: datetime
    finished_at: datetime
    success_count: int
    failure_count: int
    total_units: int
    per_unit_errors: tuple[UnitError, ...] = ()
    data_changed: Optional[bool] = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def success(self) -> bool:
        return self.success_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "runNumber": self.run_number,
            "startedAt": isoformat_utc(self.started_at),
            "finishedAt": isoformat_utc(self.finished_at),
            "success": self.success,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "totalUnits": self.total_units,
            "perUnitErrors": [err.to_dict() for err in self.per_unit_errors],
            "durationMs": self.duration_ms,
            "dataChanged": self.data_changed,
        }


@dataclass(frozen=True)
class DivisionData:
    key: str
    display_name: str
    short_name: str
    tiers: Mapping[str, UnitDataset]


@dataclass(frozen=True)
class FullDataset:
    """Versioned result of one successful run: division -> tier -> UnitDataset."""

    run_number: int
    last_updated: datetime
    divisions: Mapping[str, DivisionData]

    def units(self) -> list[UnitDataset]:
        return [ds for division in self.divisions.values() for ds in division.tiers.values()]

    def get(self, unit: Unit) -> Optional[UnitDataset]:
        division = self.divisions.get(unit.division)
        if division is None:
            return None
        return division.tiers.get(unit.tier)

    @property
    def total_units(self) -> int:
        return len(self.units())

    @property
    def total_teams(self) -> int:
        return sum(ds.team_count for ds in self.units())

    @property
    def total_games(self) -> int:
        return sum(ds.game_count for ds in self.units())

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": {
                "lastUpdated": isoformat_utc(self.last_updated),
                "runNumber": self.run_number,
                "source": "YSBA Website",
                "totalDivisions": len(self.divisions),
                "totalUnits": self.total_units,
                "totalTeams": self.total_teams,
                "totalGames": self.total_games,
            },
            "divisions": {
                key: {
                    "displayName": division.display_name,
                    "shortName": division.short_name,
                    "tiers": {tier: ds.to_dict() for tier, ds in division.tiers.items()},
                }
                for key, division in self.divisions.items()
            },
        }
