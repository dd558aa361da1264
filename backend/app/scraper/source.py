"""Source side of the pipeline: the SourceFetcher contract and the YSBA adapter.

The YSBA site only renders its standings and schedule grids after ASP.NET form
postbacks, so pages are driven with a headless browser and the rendered HTML is
parsed with BeautifulSoup into the raw blob structures the Transformer reads.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

from bs4 import BeautifulSoup

from backend.app.core.config import settings
from backend.app.core.logging import logger
from backend.app.core.units import UnitCatalog
from backend.app.scraper.models import RawScrapeResult, Unit, isoformat_utc

# Teams whose grid cell text is truncated or ambiguous on the source site.
TEAM_NAME_OVERRIDES: Dict[str, str] = {
    "511105": "Midland Penetang Twins 9U DS",
    "511106": "Aurora-King Jays 9U DS",
    "511107": "Barrie Baycats 9U DS",
    "511108": "Bradford Tigers 9U DS",
    "511109": "Collingwood Jays 9U DS",
    "511110": "Innisfil Cardinals 9U DS",
    "511111": "Markham Mariners 9U DS",
    "511112": "Newmarket Hawks 9U DS",
    "511113": "Richmond Hill Phoenix 9U DS",
    "511114": "Thornhill Reds 9U DS",
    "511115": "TNT Thunder 9U DS",
    "511116": "Caledon Nationals 9U HS",
    "518965": "Vaughan Vikings 8U DS",
    "518966": "Vaughan Vikings 9U DS",
}

GRID_ID = "dgGrid"
_TEAM_CODE_HREF_RE = re.compile(r"tmcd=(\d+)")
_TEAM_CODE_TEXT_RE = re.compile(r"\b(5\d{5})\b")
_TEAM_CELL_RE = re.compile(r"^\((\d+)\)\s+(.+)$")
_YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")
_DATE_FORMATS = (
    "%a %b %d %Y",
    "%a %B %d %Y",
    "%b %d %Y",
    "%B %d %Y",
    "%m/%d/%Y",
    "%Y-%m-%d",
    "%d-%b-%Y",
)
_TIME_FORMATS = ("%I:%M %p", "%I:%M%p", "%H:%M")
_STANDINGS_HEADER_WORDS = ("team", "name", "standing")


class SourceError(RuntimeError):
    pass


class SourceFetcher(Protocol):
    """Contract for anything that can produce raw data for a unit.

    Any exception raised by ``fetch`` counts as a (possibly transient) failure.
    """

    def fetch(self, unit: Unit) -> RawScrapeResult:  # pragma: no cover - protocol
        ...


def _cell_text(cell) -> str:
    return cell.get_text(" ", strip=True) if cell is not None else ""


def _parse_int(text: str) -> int:
    try:
        return int(str(text).strip())
    except (TypeError, ValueError):
        return 0


def _win_percentage(wins: int, losses: int, ties: int) -> str:
    total = wins + losses + ties
    if total <= 0:
        return ".000"
    pct = f"{(wins + 0.5 * ties) / total:.3f}"
    return pct[1:] if pct.startswith("0") else pct


def _find_grid(html: str):
    soup = BeautifulSoup(html or "", "html.parser")
    return soup.find("table", id=GRID_ID)


def _team_code_from_cells(cells: Sequence) -> Optional[str]:
    for cell in cells[:2]:
        link = cell.find("a")
        if link is None:
            continue
        match = _TEAM_CODE_HREF_RE.search(link.get("href") or "")
        if match:
            return match.group(1)
    for cell in cells[:3]:
        match = _TEAM_CODE_TEXT_RE.search(_cell_text(cell))
        if match:
            return match.group(1)
    return None


def parse_standings_html(
    html: str,
    *,
    team_names: Mapping[str, str] = TEAM_NAME_OVERRIDES,
    fetched_at: Optional[datetime] = None,
) -> dict:
    """Parse the rendered standings grid into the raw standings blob."""
    table = _find_grid(html)
    if table is None:
        raise SourceError("Standings table not found")

    rows = table.find_all("tr")
    if not rows:
        raise SourceError("No data rows found in standings table")

    data_rows = []
    for row in rows:
        first = row.find("td")
        if first is None:
            continue
        text = _cell_text(first).lower()
        if not text or any(word in text for word in _STANDINGS_HEADER_WORDS):
            continue
        data_rows.append(row)

    teams: List[dict] = []
    for index, row in enumerate(data_rows):
        cells = row.find_all("td")
        if len(cells) < 7:
            continue
        texts = [_cell_text(c) for c in cells]
        code = _team_code_from_cells(cells)
        name = team_names.get(code) if code else None
        if not name:
            name = texts[1] if len(texts) > 1 and texts[1] else texts[0] or f"Team {code or index + 1}"

        values = [_parse_int(t) for t in texts[2:9]]
        values += [0] * (7 - len(values))
        games_played, wins, losses, ties, points, runs_for, runs_against = values
        teams.append(
            {
                "position": len(teams) + 1,
                "team": name,
                "teamCode": code or f"unknown-{index + 1}",
                "gamesPlayed": games_played,
                "wins": wins,
                "losses": losses,
                "ties": ties,
                "points": points,
                "runsFor": runs_for,
                "runsAgainst": runs_against,
                "winPercentage": _win_percentage(wins, losses, ties),
            }
        )

    return {
        "teams": teams,
        "lastUpdated": isoformat_utc(fetched_at or datetime.now(timezone.utc)),
        "source": "YSBA Website",
    }


def _split_team_cell(text: str) -> tuple[str, str]:
    match = _TEAM_CELL_RE.match(text)
    if match:
        return match.group(1), match.group(2)
    return text, text


def parse_game_datetime(
    date_text: str,
    time_text: str = "",
    *,
    year: int,
    tz: ZoneInfo,
) -> Optional[datetime]:
    """Parse the grid's date/time cells (local source time) into an aware UTC datetime."""
    if not date_text or date_text.strip() == "-":
        return None
    cleaned = " ".join(date_text.replace(",", " ").split())
    if not _YEAR_RE.search(cleaned):
        cleaned = f"{cleaned} {year}"

    parsed_date: Optional[datetime] = None
    for fmt in _DATE_FORMATS:
        try:
            parsed_date = datetime.strptime(cleaned, fmt)
            break
        except ValueError:
            continue
    if parsed_date is None:
        return None

    time_clean = " ".join((time_text or "").upper().split())
    if time_clean and time_clean != "-":
        for fmt in _TIME_FORMATS:
            try:
                parsed_time = datetime.strptime(time_clean, fmt)
            except ValueError:
                continue
            parsed_date = parsed_date.replace(hour=parsed_time.hour, minute=parsed_time.minute)
            break

    return parsed_date.replace(tzinfo=tz).astimezone(timezone.utc)


def _parse_score(score_text: str) -> tuple[Optional[int], Optional[int], bool]:
    if not score_text or score_text.strip() == "-" or "-" not in score_text:
        return None, None, False
    parts = score_text.split("-")
    if len(parts) != 2:
        return None, None, False
    try:
        away = int(parts[0].strip())
        home = int(parts[1].strip())
    except ValueError:
        return None, None, False
    return home, away, True


def parse_schedule_html(
    pages: Sequence[str],
    *,
    year: Optional[int] = None,
    tz: Optional[ZoneInfo] = None,
    fetched_at: Optional[datetime] = None,
) -> dict:
    """Parse one or more rendered schedule grid pages into the raw schedule blob."""
    tz = tz or ZoneInfo(settings.source_timezone)
    now = fetched_at or datetime.now(timezone.utc)
    year = year or now.astimezone(tz).year

    games: List[dict] = []
    for html in pages:
        table = _find_grid(html)
        if table is None:
            continue
        for row in table.find_all("tr")[1:]:
            cells = row.find_all("td")
            if len(cells) < 8:
                continue
            texts = [_cell_text(c) for c in cells[:8]]
            date_text, time_text, division, game_tier, away_text, home_text, location, score_text = texts
            away_code, away_name = _split_team_cell(away_text)
            home_code, home_name = _split_team_cell(home_text)
            if not date_text or not away_code or not home_code:
                continue

            game_date = parse_game_datetime(date_text, time_text, year=year, tz=tz)
            if game_date is None:
                logger.debug("Unparseable game date %r %r", date_text, time_text)
            home_score, away_score, completed = _parse_score(score_text)
            games.append(
                {
                    "date": isoformat_utc(game_date),
                    "dateText": date_text,
                    "time": time_text,
                    "homeTeam": home_name,
                    "homeTeamCode": home_code,
                    "awayTeam": away_name,
                    "awayTeamCode": away_code,
                    "homeScore": home_score,
                    "awayScore": away_score,
                    "location": location,
                    "division": division,
                    "gameTier": game_tier,
                    "isCompleted": completed,
                    "scoreText": score_text,
                }
            )

    return {"allGames": games, "lastUpdated": isoformat_utc(now)}


class PlaywrightSourceFetcher:
    """Render YSBA standings/schedule pages in headless Chromium and parse them.

    The browser is launched lazily and reused across units; ``close`` releases it.
    """

    _PAGE2_SELECTOR = 'a[href*="dgGrid$ctl104$ctl02"]'

    def __init__(
        self,
        catalog: UnitCatalog,
        *,
        standings_url: str = settings.standings_url,
        schedule_url: str = settings.schedule_url,
        timeout: int = settings.request_timeout_ms,
        headless: bool = settings.headless,
        user_agent: str = settings.user_agent,
    ) -> None:
        self.catalog = catalog
        self.standings_url = standings_url
        self.schedule_url = schedule_url
        self.timeout = timeout
        self.headless = headless
        self.user_agent = user_agent
        self._playwright = None
        self._browser = None

    def _ensure_browser(self):
        if self._browser is not None and self._browser.is_connected():
            return self._browser
        try:
            from playwright.sync_api import sync_playwright
        except Exception as exc:  # noqa: BLE001
            raise SourceError("Playwright is not installed") from exc

        logger.info("Launching headless browser")
        if self._playwright is None:
            self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(
            headless=self.headless,
            args=["--no-sandbox", "--disable-dev-shm-usage", "--disable-gpu"],
        )
        return self._browser

    def _new_page(self):
        page = self._ensure_browser().new_page(user_agent=self.user_agent)
        page.set_viewport_size({"width": 1366, "height": 768})
        page.set_default_timeout(self.timeout)
        return page

    def _render(self, url: str, selections: Sequence[tuple[str, str]], *, follow_page2: bool = False) -> List[str]:
        page = self._new_page()
        try:
            page.goto(url, wait_until="domcontentloaded", timeout=self.timeout)
            for name, value in selections:
                page.wait_for_selector(f'select[name="{name}"]', timeout=10000)
                page.select_option(f'select[name="{name}"]', value)
                page.wait_for_timeout(500)
            page.click("#cmdSearch")
            page.wait_for_selector(f"#{GRID_ID}", timeout=20000)
            pages = [page.content()]
            if follow_page2:
                link = page.query_selector(self._PAGE2_SELECTOR)
                if link is not None:
                    link.click()
                    page.wait_for_selector(f"#{GRID_ID}", timeout=10000)
                    page.wait_for_timeout(1000)
                    pages.append(page.content())
            return pages
        except SourceError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SourceError(f"Failed to render {url}: {exc}") from exc
        finally:
            page.close()

    def fetch(self, unit: Unit) -> RawScrapeResult:
        params = self.catalog.source_params(unit)
        fetched_at = datetime.now(timezone.utc)

        logger.info("Fetching standings for %s (source %s/%s)", unit, params.division_value, params.tier_value)
        standings_pages = self._render(
            self.standings_url,
            [("ddlDivision", params.division_value), ("ddlTier", params.tier_value)],
        )
        logger.info("Fetching schedule for %s", unit)
        schedule_pages = self._render(
            self.schedule_url,
            [("ddlDivision", params.division_value), ("ddlCategory", "1")],
            follow_page2=True,
        )

        standings = parse_standings_html(standings_pages[0], fetched_at=fetched_at)
        schedule = parse_schedule_html(schedule_pages, fetched_at=fetched_at)
        logger.info(
            "Fetched %s: %s teams, %s games", unit, len(standings["teams"]), len(schedule["allGames"])
        )
        return RawScrapeResult(unit=unit, standings=standings, schedule=schedule, fetched_at=fetched_at)

    def close(self) -> None:
        if self._browser is not None:
            try:
                self._browser.close()
            except Exception:  # noqa: BLE001
                logger.exception("Error closing browser")
            finally:
                self._browser = None
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except Exception:  # noqa: BLE001
                logger.exception("Error stopping playwright")
            finally:
                self._playwright = None
