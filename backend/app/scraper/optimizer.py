"""Read-optimized projections of a FullDataset.

Every builder is a pure function of the dataset (and an explicit ``now``,
which defaults to the dataset's ``last_updated``), so the same dataset always
yields the same artifacts.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from backend.app.scraper.models import FullDataset, Game, UnitDataset, isoformat_utc
from backend.app.scraper.transform import PLAYED, UPCOMING, classify_game

DEFAULT_RECENT_GAMES_LIMIT = 50
DASHBOARD_PREVIEW_SIZE = 5


@dataclass(frozen=True)
class DerivedArtifacts:
    active_only: dict
    quick_standings: dict
    recent_games: dict
    index: dict
    dashboard: dict


def _is_active(unit: UnitDataset) -> bool:
    return unit.team_count > 0


def _tagged_game(game: Game, unit: UnitDataset, dataset: FullDataset) -> dict[str, Any]:
    payload = game.to_dict()
    division = dataset.divisions[unit.unit.division]
    payload.update(
        {
            "division": unit.unit.division,
            "tier": unit.unit.tier,
            "divisionName": division.display_name,
        }
    )
    return payload


def _games_in(dataset: FullDataset, bucket: str, now: datetime, *, active_only: bool) -> List[Tuple[Game, UnitDataset]]:
    found: List[Tuple[Game, UnitDataset]] = []
    for unit in dataset.units():
        if active_only and not _is_active(unit):
            continue
        for game in unit.games:
            if classify_game(game, now) == bucket:
                found.append((game, unit))
    return found


def _newest_first(pairs: List[Tuple[Game, UnitDataset]]) -> List[Tuple[Game, UnitDataset]]:
    dated = [p for p in pairs if p[0].date is not None]
    undated = [p for p in pairs if p[0].date is None]
    return sorted(dated, key=lambda p: p[0].date, reverse=True) + undated


def _soonest_first(pairs: List[Tuple[Game, UnitDataset]]) -> List[Tuple[Game, UnitDataset]]:
    return sorted((p for p in pairs if p[0].date is not None), key=lambda p: p[0].date)


def build_active_only(dataset: FullDataset) -> dict:
    divisions: Dict[str, dict] = {}
    active_units = 0
    active_teams = 0
    active_games = 0
    for key, division in dataset.divisions.items():
        tiers = {tier: unit for tier, unit in division.tiers.items() if _is_active(unit)}
        if not tiers:
            continue
        divisions[key] = {
            "displayName": division.display_name,
            "shortName": division.short_name,
            "tiers": {tier: unit.to_dict() for tier, unit in tiers.items()},
        }
        active_units += len(tiers)
        active_teams += sum(unit.team_count for unit in tiers.values())
        active_games += sum(unit.game_count for unit in tiers.values())

    return {
        "metadata": {
            "lastUpdated": isoformat_utc(dataset.last_updated),
            "runNumber": dataset.run_number,
            "activeDivisions": len(divisions),
            "activeUnits": active_units,
            "totalActiveTeams": active_teams,
            "totalActiveGames": active_games,
        },
        "divisions": divisions,
    }


def build_quick_standings(dataset: FullDataset) -> dict:
    divisions: Dict[str, dict] = {}
    for key, division in dataset.divisions.items():
        tiers: Dict[str, list] = {}
        for tier, unit in division.tiers.items():
            if not _is_active(unit):
                continue
            tiers[tier] = [
                {
                    "pos": entry.position,
                    "team": entry.team_name,
                    "code": entry.team_code,
                    "w": entry.wins,
                    "l": entry.losses,
                    "t": entry.ties,
                    "pct": entry.win_pct,
                    "rf": entry.runs_for,
                    "ra": entry.runs_against,
                }
                for entry in unit.standings
            ]
        if tiers:
            divisions[key] = {"displayName": division.display_name, "tiers": tiers}
    return {"lastUpdated": isoformat_utc(dataset.last_updated), "divisions": divisions}


def build_recent_games(
    dataset: FullDataset,
    limit: int = DEFAULT_RECENT_GAMES_LIMIT,
    now: Optional[datetime] = None,
) -> dict:
    now = now or dataset.last_updated
    played = _newest_first(_games_in(dataset, PLAYED, now, active_only=True))
    return {
        "lastUpdated": isoformat_utc(dataset.last_updated),
        "totalGames": len(played),
        "games": [_tagged_game(game, unit, dataset) for game, unit in played[: max(0, limit)]],
    }


def build_index(dataset: FullDataset) -> dict:
    rows: List[dict] = []
    for key, division in dataset.divisions.items():
        for tier, unit in division.tiers.items():
            rows.append(
                {
                    "key": unit.unit.key,
                    "division": key,
                    "tier": tier,
                    "displayName": division.display_name,
                    "teamCount": unit.team_count,
                    "gameCount": unit.game_count,
                    "hasData": _is_active(unit),
                }
            )
    return {
        "lastUpdated": isoformat_utc(dataset.last_updated),
        "runNumber": dataset.run_number,
        "totalUnits": len(rows),
        "units": rows,
    }


def build_dashboard(dataset: FullDataset, now: Optional[datetime] = None) -> dict:
    now = now or dataset.last_updated
    played = _newest_first(_games_in(dataset, PLAYED, now, active_only=False))
    upcoming = _soonest_first(_games_in(dataset, UPCOMING, now, active_only=False))
    return {
        "lastUpdated": isoformat_utc(dataset.last_updated),
        "runNumber": dataset.run_number,
        "totals": {
            "divisions": len(dataset.divisions),
            "units": dataset.total_units,
            "activeUnits": sum(1 for unit in dataset.units() if _is_active(unit)),
            "teams": dataset.total_teams,
            "games": dataset.total_games,
            "playedGames": len(played),
            "upcomingGames": len(upcoming),
        },
        "recentGames": [_tagged_game(g, u, dataset) for g, u in played[:DASHBOARD_PREVIEW_SIZE]],
        "upcomingGames": [_tagged_game(g, u, dataset) for g, u in upcoming[:DASHBOARD_PREVIEW_SIZE]],
    }


def optimize(
    dataset: FullDataset,
    recent_games_limit: int = DEFAULT_RECENT_GAMES_LIMIT,
    now: Optional[datetime] = None,
) -> DerivedArtifacts:
    return DerivedArtifacts(
        active_only=build_active_only(dataset),
        quick_standings=build_quick_standings(dataset),
        recent_games=build_recent_games(dataset, recent_games_limit, now),
        index=build_index(dataset),
        dashboard=build_dashboard(dataset, now),
    )
