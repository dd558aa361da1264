"""Static catalog of (division, tier) units refreshed by the worker.

The built-in catalog mirrors the divisions published on the YSBA site. A JSON
file (``YSBA_UNITS_CONFIG``) with the same shape replaces it wholesale:

    {"divisions": {"9U-select": {"displayName": "9U Select", "shortName": "9U Sel",
                                 "sourceValue": "13",
                                 "tiers": {"all-tiers": {"displayName": "All Teams",
                                                         "sourceValue": "__ALL__"}}}}}
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from backend.app.core.logging import logger
from backend.app.scraper.models import Unit

_REP_TIERS: Dict[str, Dict[str, str]] = {
    "no-tier": {"displayName": "No Tier", "sourceValue": "-10"},
    "tier-1": {"displayName": "Tier 1", "sourceValue": "1"},
    "tier-2": {"displayName": "Tier 2", "sourceValue": "2"},
    "tier-3": {"displayName": "Tier 3", "sourceValue": "3"},
    "all-tiers": {"displayName": "All Tiers", "sourceValue": "__ALL__"},
}
_SELECT_TIERS: Dict[str, Dict[str, str]] = {
    "all-tiers": {"displayName": "All Teams", "sourceValue": "__ALL__"},
}

# division key -> (display name, short name, source value)
_REP_DIVISIONS = [
    ("8U-rep", "Rep 8U", "8U Rep", "1"),
    ("9U-rep", "Rep 9U", "9U Rep", "2"),
    ("10U-rep", "Rep 10U", "10U Rep", "3"),
    ("11U-rep", "Rep 11U", "11U Rep", "4"),
    ("12U-rep", "Rep 12U", "12U Rep", "5"),
    ("13U-rep", "Rep 13U", "13U Rep", "6"),
    ("14U-rep", "Rep 14U", "14U Rep", "7"),
    ("15U-rep", "Rep 15U", "15U Rep", "8"),
    ("16U-rep", "Rep 16U", "16U Rep", "9"),
    ("18U-rep", "Rep 18U", "18U Rep", "10"),
    ("22U-rep", "Rep 22U", "22U Rep", "11"),
    ("senior-rep", "Rep Senior", "Senior Rep", "12"),
]
_SELECT_DIVISIONS = [
    ("9U-select", "9U Select", "9U Sel", "13"),
    ("11U-select", "11U Select", "11U Sel", "15"),
    ("13U-select", "13U Select", "13U Sel", "16"),
    ("15U-select", "15U Select", "15U Sel", "18"),
]


def _build_default_divisions() -> Dict[str, dict]:
    divisions: Dict[str, dict] = {}
    for rows, tiers in ((_REP_DIVISIONS, _REP_TIERS), (_SELECT_DIVISIONS, _SELECT_TIERS)):
        for key, display, short, value in rows:
            divisions[key] = {
                "displayName": display,
                "shortName": short,
                "sourceValue": value,
                "tiers": {tier: dict(cfg) for tier, cfg in tiers.items()},
            }
    return divisions


DEFAULT_DIVISIONS: Dict[str, dict] = _build_default_divisions()


@dataclass(frozen=True)
class SourceParams:
    division_value: str
    tier_value: str


class UnitCatalog:
    """Ordered, immutable set of units plus their display names and source parameters."""

    def __init__(self, divisions: Mapping[str, Mapping]) -> None:
        errors: List[str] = []
        for key, cfg in divisions.items():
            if not isinstance(cfg, Mapping):
                errors.append(f"division {key!r} must be an object")
                continue
            if not str(cfg.get("sourceValue") or "").strip():
                errors.append(f"division {key!r} missing sourceValue")
            tiers = cfg.get("tiers")
            if not isinstance(tiers, Mapping) or not tiers:
                errors.append(f"division {key!r} must define at least one tier")
                continue
            for tier_key, tier_cfg in tiers.items():
                if not isinstance(tier_cfg, Mapping) or not str(tier_cfg.get("sourceValue") or "").strip():
                    errors.append(f"tier {key}/{tier_key} missing sourceValue")
        if errors:
            raise ValueError("Unit catalog invalid:\n- " + "\n- ".join(errors))

        self._divisions: Dict[str, dict] = {key: dict(cfg) for key, cfg in divisions.items()}
        self._units: tuple[Unit, ...] = tuple(
            Unit(division=key, tier=tier_key)
            for key, cfg in self._divisions.items()
            for tier_key in cfg["tiers"].keys()
        )

    def __len__(self) -> int:
        return len(self._units)

    def __iter__(self):
        return iter(self._units)

    @property
    def units(self) -> tuple[Unit, ...]:
        return self._units

    def division_config(self, division: str) -> Optional[dict]:
        return self._divisions.get(division)

    def display_name(self, division: str) -> str:
        cfg = self._divisions.get(division) or {}
        return str(cfg.get("displayName") or division)

    def short_name(self, division: str) -> str:
        cfg = self._divisions.get(division) or {}
        return str(cfg.get("shortName") or division)

    def source_params(self, unit: Unit) -> SourceParams:
        cfg = self._divisions.get(unit.division)
        if cfg is None:
            raise KeyError(f"Unknown division: {unit.division}")
        tier_cfg = cfg["tiers"].get(unit.tier)
        if tier_cfg is None:
            raise KeyError(f"Unknown tier {unit.tier!r} for division {unit.division!r}")
        return SourceParams(division_value=str(cfg["sourceValue"]), tier_value=str(tier_cfg["sourceValue"]))

    @classmethod
    def from_units(cls, units: Iterable[Unit]) -> "UnitCatalog":
        """Build a catalog from bare units (source values default to the keys)."""
        divisions: Dict[str, dict] = {}
        for unit in units:
            cfg = divisions.setdefault(
                unit.division,
                {"displayName": unit.division, "shortName": unit.division, "sourceValue": unit.division, "tiers": {}},
            )
            cfg["tiers"][unit.tier] = {"displayName": unit.tier, "sourceValue": unit.tier}
        return cls(divisions)


def load_unit_catalog(path: str | Path | None = None) -> UnitCatalog:
    """Load the catalog from ``path`` when given, otherwise the built-in divisions."""
    if not path:
        catalog = UnitCatalog(DEFAULT_DIVISIONS)
    else:
        config_path = Path(path)
        data = json.loads(config_path.read_text(encoding="utf-8"))
        divisions = data.get("divisions") if isinstance(data, dict) else None
        if not isinstance(divisions, dict):
            raise ValueError(f"{config_path}: 'divisions' must be an object")
        catalog = UnitCatalog(divisions)

    logger.info("Configured to refresh %s division/tier units", len(catalog))
    for unit in catalog:
        logger.debug("  unit %s", unit)
    return catalog
