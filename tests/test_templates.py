# tests/test_templates.py
"""Tests for templates.py - cast text builders."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, add_race
from errors import NotFoundError, PayloadError, TemplateError
from models import DriverOfDayArgs, LockReminderArgs, parse_iso
from templates import (
    build_close_calls_cast, build_custom_cast, build_driver_of_day_cast, build_leaderboard_update_cast,
    build_lock_reminder_cast, build_perfect_slate_cast, build_prediction_consensus_cast,
    build_race_results_summary_cast, count_correct_categories, default_driver_of_day_publish_at,
    format_lead_time, format_lock_time, render_template, tally_votes, truncate,
)


@pytest.fixture
def race(db, neynar_env):
    return add_race(db, "r1", lock_time=datetime(2025, 6, 1, 14, 5, tzinfo=timezone.utc))


def _seed_drivers(db):
    db.add_driver("ver", "Max Verstappen", team="Red Bull", number=1)
    db.add_driver("nor", "Lando Norris", team="McLaren", number=4)
    db.add_driver("lec", "Charles Leclerc", team="Ferrari", number=16)


def test_truncate_caps_at_limit_with_ellipsis():
    text = "x" * 400
    result = truncate(text)
    assert len(result) == 320
    assert result.endswith("...")
    assert truncate("short") == "short"


def test_long_race_name_truncates_whole_cast(db, neynar_env):
    add_race(db, "long", name="Grand Prix " * 40)
    payload = build_driver_of_day_cast(db, DriverOfDayArgs(race_id="long"), now=NOW).payload
    assert len(payload.text) == 320
    assert payload.text.endswith("...")


def test_render_template_drops_empty_lines_keeps_blanks():
    text = render_template(("Hello {name}", "{missing}", "", "Bye"), {"name": "Lando"})
    assert text == "Hello Lando\n\nBye"


@pytest.mark.parametrize("minutes,expected", [
    (0, "moments"),
    (-5, "moments"),
    (45, "45m"),
    (60, "1h"),
    (61, "1h"),
    (90, "1.5h"),
    (100, "1.7h"),
    (1440, "24h"),
])
def test_format_lead_time(minutes, expected):
    assert format_lead_time(minutes) == expected


def test_format_lock_time():
    assert format_lock_time("2025-06-01T14:05:00.000+00:00") == "2:05 PM UTC"
    assert format_lock_time("2025-06-01T00:30:00Z") == "12:30 AM UTC"


def test_format_lock_time_converts_offsets_to_utc():
    assert format_lock_time("2025-06-01T14:00:00+02:00") == "12:00 PM UTC"
    assert format_lock_time(datetime(2025, 6, 1, 1, 15, tzinfo=timezone(timedelta(hours=2)))) == "11:15 PM UTC"


def test_lock_reminder_text(db, race):
    payload = build_lock_reminder_cast(db, LockReminderArgs(race_id="r1", lead_minutes=60, channel_id="f1"))

    lines = payload.text.split("\n")
    assert lines[0] == "🚨 Predictions close in 1h for Monaco Grand Prix."
    assert "Lock: 2:05 PM UTC" in lines
    assert "S2025 | R8 | Monte Carlo" in lines
    assert "Most-picked pole/winner: —/—" in lines
    assert lines[-1] == "https://example.test/app?race=r1"
    assert payload.embeds[0].url == "https://example.test/app?race=r1"
    assert payload.channel_id == "f1"


def test_lock_reminder_shows_most_picked_drivers(db, race):
    _seed_drivers(db)
    db.save_prediction("r1", "u1", pole_driver_id="ver", winner_driver_id="nor")
    db.save_prediction("r1", "u2", pole_driver_id="ver", winner_driver_id="ver")
    db.save_prediction("r1", "u3", pole_driver_id="lec", winner_driver_id="nor")

    payload = build_lock_reminder_cast(db, LockReminderArgs(race_id="r1", lead_minutes=1440))
    assert "Most-picked pole/winner: Max Verstappen/Lando Norris" in payload.text
    assert payload.channel_id is None


def test_lock_reminder_missing_race(db, neynar_env):
    with pytest.raises(NotFoundError):
        build_lock_reminder_cast(db, LockReminderArgs(race_id="nope", lead_minutes=60))


def test_tally_votes_percentages():
    rows = [{"driver_id": "a", "name": "A"}] * 3 + [{"driver_id": "b", "name": "B"}]
    tally, total = tally_votes(rows)

    assert total == 4
    assert [(t.driver["id"], t.votes, t.percentage) for t in tally] == [("a", 3, 75), ("b", 1, 25)]


def test_tally_skips_rows_without_driver():
    tally, total = tally_votes([{"driver_id": None, "name": "X"}, {"driver_id": "a", "name": None}])
    assert tally == []
    assert total == 0


def test_driver_of_day_leaderboard(db, race):
    _seed_drivers(db)
    for user, driver in (("u1", "ver"), ("u2", "ver"), ("u3", "ver"), ("u4", "nor")):
        db.add_dotd_vote("r1", user, driver)

    dotd = build_driver_of_day_cast(db, DriverOfDayArgs(race_id="r1"), now=NOW)
    assert dotd.total_votes == 4
    assert "1. #1 Max Verstappen (Red Bull) - 75% (3)" in dotd.payload.text
    assert "2. #4 Lando Norris (McLaren) - 25% (1)" in dotd.payload.text
    assert "Total votes: 4" in dotd.payload.text
    assert dotd.payload.text.endswith("#F1 #DriverOfTheDay #GridGuessr")


def test_driver_of_day_without_votes(db, race):
    dotd = build_driver_of_day_cast(db, DriverOfDayArgs(race_id="r1"), now=NOW)
    assert dotd.total_votes == 0
    assert "No votes recorded yet. Keep the picks coming!" in dotd.payload.text


def test_default_driver_of_day_publish_at():
    assert parse_iso(default_driver_of_day_publish_at("2025-06-01T14:05:00Z")) == \
        datetime(2025, 6, 5, 18, 0, tzinfo=timezone.utc)
    assert parse_iso(default_driver_of_day_publish_at(None, "2025-06-02T13:00:00Z")) == \
        datetime(2025, 6, 6, 18, 0, tzinfo=timezone.utc)
    assert parse_iso(default_driver_of_day_publish_at(now=NOW)) == NOW + timedelta(days=2)


def test_default_driver_of_day_publish_at_uses_utc_day():
    """01:00 at +02:00 is still the previous day in UTC."""
    assert parse_iso(default_driver_of_day_publish_at("2025-06-02T01:00:00+02:00")) == \
        datetime(2025, 6, 5, 18, 0, tzinfo=timezone.utc)


def test_prediction_consensus(db, race):
    _seed_drivers(db)
    db.save_prediction("r1", "u1", winner_driver_id="nor")
    db.save_prediction("r1", "u2", winner_driver_id="nor")
    db.save_prediction("r1", "u3", winner_driver_id="ver")

    payload = build_prediction_consensus_cast(db, "r1", "winner")
    assert "📊 67% have Lando Norris winning the Monaco Grand Prix." in payload.text

    with pytest.raises(TemplateError):
        build_prediction_consensus_cast(db, "r1", "pole")


def _seed_results(db):
    _seed_drivers(db)
    results = dict(
        pole_driver_id="ver", winner_driver_id="ver", second_driver_id="nor", third_driver_id="lec",
        fastest_lap_driver_id="nor", fastest_pit_team_id="mclaren", first_dnf_driver_id="lec",
        no_dnf=0, safety_car=1, winning_margin="0-2s",
    )
    db.set_race_result("r1", **results)
    return results


def test_race_results_summary(db, race):
    _seed_results(db)
    db.add_user("u1", fid=1, username="alice", display_name="Alice")
    db.add_user("u2", fid=2, username="bob", display_name="")
    db.save_prediction("r1", "u1", score=80)
    db.save_prediction("r1", "u2", score=95)

    text = build_race_results_summary_cast(db, "r1").text
    assert "Real winner: #1 Max Verstappen (Red Bull) 🏆" in text
    assert text.index("🥇 bob (@bob) - 95 pts") < text.index("🥈 Alice (@alice) - 80 pts")


def test_race_results_summary_requires_scores(db, race):
    with pytest.raises(TemplateError):
        build_race_results_summary_cast(db, "r1")


def test_perfect_slate_lists_alphabetically_with_overflow(db, race):
    for name in ("zed", "amy", "kim"):
        db.add_user(name, username=name, display_name=name.title())
        db.save_prediction("r1", name, score=110)
    db.save_prediction("r1", "meh", score=40)

    highlight = build_perfect_slate_cast(db, "r1", display_limit=2)
    assert highlight.count == 3
    assert highlight.displayed_users == ["Amy", "Kim"]
    assert "…and 1 more" in highlight.payload.text


def test_count_correct_categories():
    results = {
        "pole_driver_id": "ver", "winner_driver_id": "ver", "second_driver_id": "nor",
        "third_driver_id": "lec", "fastest_lap_driver_id": "nor", "fastest_pit_team_id": "mcl",
        "first_dnf_driver_id": "lec", "no_dnf": 0, "safety_car": 1, "winning_margin": "0-2s",
    }
    assert count_correct_categories(dict(results), results) == 9
    assert count_correct_categories(dict(results, safety_car=0), results) == 8
    assert count_correct_categories(dict(results, no_dnf=1), dict(results, no_dnf=1)) == 9


def test_close_calls(db, race):
    results = _seed_results(db)
    db.add_user("u1", username="alice", display_name="Alice")
    db.save_prediction("r1", "u1", score=100, **dict(results, winning_margin="2-5s"))
    db.save_prediction("r1", "u2", score=110, **results)

    highlight = build_close_calls_cast(db, "r1")
    assert highlight.count == 1
    assert "Alice (@alice) - all but one." in highlight.payload.text


def test_close_calls_requires_results(db, race):
    with pytest.raises(TemplateError):
        build_close_calls_cast(db, "r1")


def test_leaderboard_update(db, race):
    db.add_user("u1", username="alice", display_name="Alice", total_points=300)
    db.add_user("u2", username="bob", display_name="Bob", total_points=250)

    text = build_leaderboard_update_cast(db, "r1").text
    assert "🥇 Alice (@alice) - 300 pts" in text
    assert "🥈 Bob (@bob) - 250 pts" in text


def test_custom_cast():
    payload = build_custom_cast("  Lights out!  ", embed_url="https://x.test", channel_id="f1")
    assert payload.text == "Lights out!"
    assert payload.embeds[0].url == "https://x.test"

    with pytest.raises(PayloadError):
        build_custom_cast("   ")
