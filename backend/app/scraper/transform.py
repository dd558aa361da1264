"""Raw standings/schedule blobs -> normalized UnitDataset."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from backend.app.core.logging import logger
from backend.app.scraper.models import (
    Game,
    RawScrapeResult,
    StandingsEntry,
    TeamRef,
    TeamSchedule,
    UnitDataset,
    UnitSummary,
    parse_iso_datetime,
)

PLAYED = "played"
UPCOMING = "upcoming"
NO_RESULT = "no_result"
UNSCHEDULED = "unscheduled"

SUMMARY_PREVIEW_SIZE = 10
TEAM_PREVIEW_SIZE = 5

_MIN_DATE = datetime.min.replace(tzinfo=timezone.utc)


class TransformError(RuntimeError):
    pass


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value or value == "-":
            return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return int(round(num))


def _coerce_pct(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        pct = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(pct) or pct < 0:
        return None
    return round(pct, 3)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def classify_game(game: Game, now: datetime) -> str:
    """Bucket a game relative to ``now``.

    A dated game at or after ``now`` is upcoming even when flagged completed.
    A past game with no completion flag and no score is ``no_result``; we do
    not infer a result that was never recorded.
    """
    if game.date is not None and game.date >= now:
        return UPCOMING
    if game.is_completed:
        return PLAYED
    if game.date is None:
        return UNSCHEDULED
    if game.has_score:
        return PLAYED
    return NO_RESULT


def sort_played(games: Iterable[Game]) -> List[Game]:
    """Most recent first; undated completed games go last in source order."""
    dated = [g for g in games if g.date is not None]
    undated = [g for g in games if g.date is None]
    return sorted(dated, key=lambda g: g.date, reverse=True) + undated


def sort_upcoming(games: Iterable[Game]) -> List[Game]:
    return sorted(games, key=lambda g: g.date or _MIN_DATE)


def _split_score_text(score_text: Optional[str]) -> tuple[Optional[int], Optional[int]]:
    # Source renders scores as "away-home".
    if not score_text or score_text.count("-") != 1:
        return None, None
    away, home = (part.strip() for part in score_text.split("-"))
    return _coerce_int(home), _coerce_int(away)


def _team_ref(raw: Mapping[str, Any], side: str) -> TeamRef:
    value = raw.get(f"{side}Team")
    if isinstance(value, Mapping):
        name = _text(value.get("name")) or ""
        code = _text(value.get("code")) or ""
    else:
        name = _text(value) or ""
        code = _text(raw.get(f"{side}TeamCode")) or ""
    return TeamRef(name=name or code, code=code or name)


def _standings_rows(blob: Any) -> Sequence[Any]:
    if blob is None:
        return []
    if not isinstance(blob, Mapping):
        raise TransformError(f"standings blob must be an object (got {type(blob).__name__})")
    teams = blob.get("teams")
    if teams is None:
        return []
    if not isinstance(teams, list):
        raise TransformError("standings.teams must be a list")
    return teams


def _schedule_rows(blob: Any) -> Sequence[Any]:
    if blob is None:
        return []
    if not isinstance(blob, Mapping):
        raise TransformError(f"schedule blob must be an object (got {type(blob).__name__})")
    games = blob.get("allGames")
    if games is None:
        return []
    if not isinstance(games, list):
        raise TransformError("schedule.allGames must be a list")
    return games


class Transformer:
    """Turns one unit's RawScrapeResult into a UnitDataset.

    ``now`` is injectable so game classification is deterministic in tests.
    """

    def __init__(self, now: Optional[Callable[[], datetime]] = None) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))

    def transform(self, raw: RawScrapeResult) -> UnitDataset:
        standings = self.build_standings(_standings_rows(raw.standings))
        games = self.build_games(_schedule_rows(raw.schedule))
        now = self._now()
        summary = self.summarize(standings, games, now)
        schedules = self.team_schedules(standings, games, now)
        logger.debug(
            "Transformed %s: %s teams, %s games (%s played, %s upcoming)",
            raw.unit,
            len(standings),
            len(games),
            summary.played_games,
            summary.upcoming_games,
        )
        return UnitDataset(
            unit=raw.unit,
            standings=tuple(standings),
            games=tuple(games),
            summary=summary,
            team_schedules=schedules,
        )

    def build_standings(self, rows: Sequence[Any]) -> List[StandingsEntry]:
        entries: List[StandingsEntry] = []
        for row in rows:
            if not isinstance(row, Mapping):
                continue
            wins = _coerce_int(row.get("wins")) or 0
            losses = _coerce_int(row.get("losses")) or 0
            ties = _coerce_int(row.get("ties")) or 0
            games_played = wins + losses + ties
            reported = _coerce_int(row.get("gamesPlayed"))
            if reported is not None and reported != games_played:
                logger.debug(
                    "gamesPlayed %s for %r disagrees with record %s-%s-%s",
                    reported,
                    row.get("team"),
                    wins,
                    losses,
                    ties,
                )

            win_pct = _coerce_pct(row.get("winPct", row.get("winPercentage")))
            if win_pct is None:
                win_pct = round((wins + 0.5 * ties) / games_played, 3) if games_played else 0.0

            code = _text(row.get("teamCode")) or ""
            name = _text(row.get("teamName", row.get("team"))) or code
            entries.append(
                StandingsEntry(
                    position=len(entries) + 1,
                    team_name=name,
                    team_code=code,
                    games_played=games_played,
                    wins=wins,
                    losses=losses,
                    ties=ties,
                    win_pct=win_pct,
                    runs_for=_coerce_int(row.get("runsFor")) or 0,
                    runs_against=_coerce_int(row.get("runsAgainst")) or 0,
                    points=_coerce_int(row.get("points")),
                )
            )
        return entries

    def build_games(self, rows: Sequence[Any]) -> List[Game]:
        games: List[Game] = []
        for row in rows:
            if not isinstance(row, Mapping):
                continue
            score_text = _text(row.get("scoreText"))
            home_score = _coerce_int(row.get("homeScore"))
            away_score = _coerce_int(row.get("awayScore"))
            if home_score is None and away_score is None:
                home_score, away_score = _split_score_text(score_text)
            games.append(
                Game(
                    home_team=_team_ref(row, "home"),
                    away_team=_team_ref(row, "away"),
                    date=parse_iso_datetime(row.get("date")),
                    home_score=home_score,
                    away_score=away_score,
                    is_completed=bool(row.get("isCompleted")),
                    location=_text(row.get("location")),
                    date_text=_text(row.get("dateText")),
                    time=_text(row.get("time")),
                    score_text=score_text,
                )
            )
        return games

    def summarize(self, standings: Sequence[StandingsEntry], games: Sequence[Game], now: datetime) -> UnitSummary:
        buckets: Dict[str, List[Game]] = {PLAYED: [], UPCOMING: [], NO_RESULT: [], UNSCHEDULED: []}
        for game in games:
            buckets[classify_game(game, now)].append(game)

        top_team: Optional[StandingsEntry] = None
        for entry in standings:
            if top_team is None or entry.win_pct > top_team.win_pct:
                top_team = entry

        highest: Optional[Game] = None
        for game in buckets[PLAYED]:
            if not game.has_score:
                continue
            if highest is None or game.total_runs > highest.total_runs:
                highest = game

        return UnitSummary(
            total_teams=len(standings),
            total_games=len(games),
            played_games=len(buckets[PLAYED]),
            upcoming_games=len(buckets[UPCOMING]),
            no_result_games=len(buckets[NO_RESULT]),
            top_team=top_team,
            highest_scoring_game=highest,
            recent_games=tuple(sort_played(buckets[PLAYED])[:SUMMARY_PREVIEW_SIZE]),
            next_games=tuple(sort_upcoming(buckets[UPCOMING])[:SUMMARY_PREVIEW_SIZE]),
        )

    def team_schedules(
        self, standings: Sequence[StandingsEntry], games: Sequence[Game], now: datetime
    ) -> Dict[str, TeamSchedule]:
        schedules: Dict[str, TeamSchedule] = {}
        for entry in standings:
            code = entry.team_code
            if not code or code in schedules:
                continue
            team_games = [g for g in games if code in (g.home_team.code, g.away_team.code)]
            played = [g for g in team_games if classify_game(g, now) == PLAYED]
            upcoming = [g for g in team_games if classify_game(g, now) == UPCOMING]
            schedules[code] = TeamSchedule(
                team_code=code,
                total_games=len(team_games),
                played_games=len(played),
                upcoming_games=len(upcoming),
                recent_games=tuple(sort_played(played)[:TEAM_PREVIEW_SIZE]),
                next_games=tuple(sort_upcoming(upcoming)[:TEAM_PREVIEW_SIZE]),
            )
        return schedules
