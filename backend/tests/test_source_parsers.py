from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from backend.app.core.units import UnitCatalog
from backend.app.scraper.models import RawScrapeResult, Unit
from backend.app.scraper.source import (
    PlaywrightSourceFetcher,
    SourceError,
    parse_game_datetime,
    parse_schedule_html,
    parse_standings_html,
)
from backend.app.scraper.transform import Transformer

TORONTO = ZoneInfo("America/Toronto")
FETCHED_AT = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

STANDINGS_HTML = """
<html><body>
<table id="dgGrid">
  <tr><td>Team</td><td>Name</td><td>GP</td><td>W</td><td>L</td><td>T</td><td>PTS</td><td>RF</td><td>RA</td></tr>
  <tr>
    <td><a href="TeamPage.aspx?tmcd=511105">511105</a></td><td>Midland Penetang</td>
    <td>4</td><td>3</td><td>1</td><td>0</td><td>6</td><td>30</td><td>12</td>
  </tr>
  <tr>
    <td>520001</td><td>Newmarket Hawks</td>
    <td>4</td><td>2</td><td>1</td><td>1</td><td>5</td><td>20</td><td>18</td>
  </tr>
  <tr><td>Totals</td><td>only two cells</td></tr>
</table>
</body></html>
"""

SCHEDULE_PAGE_1 = """
<table id="dgGrid">
  <tr><td>Date</td><td>Time</td><td>Div</td><td>Tier</td><td>Away</td><td>Home</td><td>Location</td><td>Score</td></tr>
  <tr>
    <td>Sat May 10</td><td>6:30 PM</td><td>9U</td><td>T1</td>
    <td>(511105) Midland Penetang</td><td>(520001) Newmarket Hawks</td><td>Fairy Lake</td><td>3-5</td>
  </tr>
  <tr>
    <td>Sun Jun 22, 2025</td><td>10:00 AM</td><td>9U</td><td>T1</td>
    <td>(520001) Newmarket Hawks</td><td>(511105) Midland Penetang</td><td>Bayview</td><td>-</td>
  </tr>
</table>
"""

SCHEDULE_PAGE_2 = """
<table id="dgGrid">
  <tr><td>Date</td><td>Time</td><td>Div</td><td>Tier</td><td>Away</td><td>Home</td><td>Location</td><td>Score</td></tr>
  <tr>
    <td>TBD</td><td>-</td><td>9U</td><td>T1</td>
    <td>(511105) Midland Penetang</td><td>(520001) Newmarket Hawks</td><td></td><td></td>
  </tr>
</table>
"""


def test_parse_standings_rows():
    blob = parse_standings_html(STANDINGS_HTML, fetched_at=FETCHED_AT)

    assert blob["lastUpdated"] == "2025-06-01T12:00:00Z"
    first, second = blob["teams"]
    assert first["teamCode"] == "511105"
    assert first["team"] == "Midland Penetang Twins 9U DS"
    assert (first["wins"], first["losses"], first["ties"]) == (3, 1, 0)
    assert first["winPercentage"] == ".750"
    assert second["teamCode"] == "520001"
    assert second["team"] == "Newmarket Hawks"
    assert second["winPercentage"] == ".625"
    assert (second["runsFor"], second["runsAgainst"], second["points"]) == (20, 18, 5)


def test_parse_standings_without_grid_raises():
    with pytest.raises(SourceError):
        parse_standings_html("<html><p>maintenance</p></html>")


def test_parse_schedule_pages():
    blob = parse_schedule_html([SCHEDULE_PAGE_1, SCHEDULE_PAGE_2], year=2025, tz=TORONTO, fetched_at=FETCHED_AT)

    played, upcoming, undated = blob["allGames"]
    assert played["date"] == "2025-05-10T22:30:00Z"
    assert (played["awayTeamCode"], played["homeTeamCode"]) == ("511105", "520001")
    assert played["homeTeam"] == "Newmarket Hawks"
    assert (played["awayScore"], played["homeScore"], played["isCompleted"]) == (3, 5, True)
    assert upcoming["date"] == "2025-06-22T14:00:00Z"
    assert upcoming["homeScore"] is None
    assert upcoming["isCompleted"] is False
    assert undated["date"] is None
    assert undated["dateText"] == "TBD"


def test_parsed_blobs_feed_the_transformer():
    standings = parse_standings_html(STANDINGS_HTML, fetched_at=FETCHED_AT)
    schedule = parse_schedule_html([SCHEDULE_PAGE_1], year=2025, tz=TORONTO, fetched_at=FETCHED_AT)

    raw = RawScrapeResult(Unit("9U-rep", "tier-1"), standings, schedule, FETCHED_AT)
    dataset = Transformer(now=lambda: FETCHED_AT).transform(raw)

    assert dataset.standings[0].win_pct == 0.75
    assert dataset.summary.played_games == 1
    assert dataset.summary.upcoming_games == 1
    assert dataset.team_schedules["511105"].total_games == 2


@pytest.mark.parametrize(
    "date_text,time_text,expected",
    [
        ("05/10/2025", "9:15 AM", datetime(2025, 5, 10, 13, 15, tzinfo=timezone.utc)),
        ("2025-01-04", "", datetime(2025, 1, 4, 5, 0, tzinfo=timezone.utc)),
        ("Jul 4", "19:00", datetime(2025, 7, 4, 23, 0, tzinfo=timezone.utc)),
        ("-", "", None),
        ("someday", "", None),
    ],
)
def test_parse_game_datetime(date_text, time_text, expected):
    assert parse_game_datetime(date_text, time_text, year=2025, tz=TORONTO) == expected


def test_fetcher_renders_both_pages(monkeypatch):
    catalog = UnitCatalog.from_units([Unit("9U-rep", "tier-1")])
    fetcher = PlaywrightSourceFetcher(catalog)
    rendered = []

    def fake_render(url, selections, follow_page2=False):
        rendered.append((url, list(selections), follow_page2))
        if follow_page2:
            return [SCHEDULE_PAGE_1, SCHEDULE_PAGE_2]
        return [STANDINGS_HTML]

    monkeypatch.setattr(fetcher, "_render", fake_render)

    raw = fetcher.fetch(Unit("9U-rep", "tier-1"))

    assert len(raw.standings["teams"]) == 2
    assert len(raw.schedule["allGames"]) == 3
    assert rendered[0][1] == [("ddlDivision", "9U-rep"), ("ddlTier", "tier-1")]
    assert rendered[1][1] == [("ddlDivision", "9U-rep"), ("ddlCategory", "1")]
    assert rendered[1][2] is True
    fetcher.close()
