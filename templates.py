# templates.py
"""
Cast template builders.

Each builder reads what it needs from Storage and returns a CastPayload
(text, link embed, optional channel). Text is always truncated last, after
the whole cast has been assembled.
"""
import logging
import re
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from urllib.parse import urlencode

from errors import NotFoundError, PayloadError, TemplateError
from models import CastEmbed, CastPayload, VoteTally, parse_iso, to_iso, utc_now
from settings import CAST_TEXT_MAX_LENGTH, app_url

logger = logging.getLogger(__name__)

ELLIPSIS = "..."
PERFECT_SCORE = 110
DOTD_FOOTER = "#F1 #DriverOfTheDay #GridGuessr"
MEDALS = ("🥇", "🥈", "🥉")

LOCK_REMINDER_LINES = (
    "🚨 Predictions close in {leadTime} for {raceName}.",
    "Lock: {lockTime}",
    "{raceContext}",
    "",
    "Get your slate in now: pole, podium, safety car, DNF...",
    "Most-picked pole/winner: {topPole}/{topWinner}",
    "",
    "Set your picks before it's too late 👇",
    "{link}",
)

DRIVER_OF_DAY_LINES = (
    "🗳️ Driver of the Day - {raceName}",
    "{raceContext}",
    "",
    "Current leaderboard:",
    "{leaderboard}",
    "Total votes: {totalVotes}",
    "",
    DOTD_FOOTER,
)

PREDICTION_CONSENSUS_LINES = {
    "pole": (
        "🧠 Prediction Statistics",
        "",
        "📊 {percentage}% picking {driverName} for pole for the {raceName}.",
        "",
        "Going with the crowd or betting against the odds?",
        "Where do you stand? 👇",
    ),
    "winner": (
        "🧠 Prediction Statistics",
        "",
        "Most of the grid's already locked in their picks!",
        "📊 {percentage}% have {driverName} winning the {raceName}.",
        "",
        "What's your call? 👇",
    ),
}

RACE_RESULTS_LINES = (
    "🏁 {raceName} - Results are in!",
    "",
    "Real winner: {winnerName} 🏆",
    "Top 3 GridGuessr predictors:",
    "{leaderboard}",
    "",
    "New standings are live - check your rank 👀",
)

PERFECT_SLATE_LINES = (
    "💯 Perfect Slate Alert!",
    "",
    "Only {count} user(s) predicted everything right for the {raceName}!",
    "{list}",
    "",
    "100 points. Zero misses. Unreal 🔥",
)

CLOSE_CALLS_LINES = (
    "⚙️ Close Calls",
    "",
    "These legends almost pulled off perfection:",
    "{names} - all but one.",
    "8/9 correct answers...",
    "",
    "One wrong guess from glory 🫡",
)

LEADERBOARD_UPDATE_LINES = (
    "🏆 Global Leaderboard Update - {raceName}",
    "",
    "{leaderboard}",
    "",
    "Can anyone catch them next round? 👀",
)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass
class DriverOfDayCast:
    payload: CastPayload
    total_votes: int
    default_publish_at: str
    tally: list = field(default_factory=list)


@dataclass
class HighlightCast:
    """Builders that single out users also report who made the cut."""
    payload: CastPayload
    count: int
    displayed_users: list = field(default_factory=list)


# ---------------- Formatting helpers ----------------
def truncate(text, limit=CAST_TEXT_MAX_LENGTH):
    if len(text) <= limit:
        return text
    return text[:limit - len(ELLIPSIS)] + ELLIPSIS


def render_template(lines, context):
    """Fill placeholders; template lines that end up empty are dropped, blank ones kept."""
    rendered = []
    for line in lines:
        if not line.strip():
            rendered.append("")
            continue
        filled = _PLACEHOLDER.sub(lambda m: str(context.get(m.group(1)) or ""), line).strip()
        if filled:
            rendered.append(filled)
    return "\n".join(rendered)


def format_lead_time(minutes):
    if minutes is None or minutes <= 0:
        return "moments"
    if minutes >= 60:
        hours = round(minutes / 60, 1)
        if hours == int(hours):
            return f"{int(hours)}h"
        return f"{hours}h"
    return f"{int(round(minutes))}m"


def format_lock_time(value):
    """h:mm AM/PM UTC"""
    moment = parse_iso(value if isinstance(value, str) else to_iso(value))
    hour = moment.hour % 12 or 12
    meridiem = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {meridiem} UTC"


def format_race_context(race):
    segments = []
    if race.season:
        segments.append(f"S{race.season}")
    if race.round:
        segments.append(f"R{race.round}")
    if race.circuit:
        segments.append(race.circuit)
    return " | ".join(segments)


def race_link(race_id):
    base = app_url()
    separator = "&" if "?" in base else "?"
    return f"{base}{separator}{urlencode({'race': race_id})}"


def format_driver(driver):
    number = f"#{driver['number']} " if driver.get("number") else ""
    team = f" ({driver['team']})" if driver.get("team") else ""
    return f"{number}{driver['name']}{team}"


def format_user_mention(display_name, username):
    return f"{display_name} (@{username})"


def _payload(text, channel_id, link=None):
    return CastPayload(
        text=truncate(text),
        embeds=[CastEmbed(url=link or app_url())],
        channel_id=channel_id or None,
    )


def load_race(db, race_id):
    if not race_id:
        raise PayloadError("Template requires a raceId.")
    race = db.get_race(race_id)
    if race is None:
        raise NotFoundError(f"Race {race_id} not found")
    return race


# ---------------- Race lock reminder ----------------
def load_top_prediction_drivers(db, race_id):
    poles, winners = Counter(), Counter()
    for prediction in db.predictions(race_id):
        if prediction.get("pole_driver_id"):
            poles[prediction["pole_driver_id"]] += 1
        if prediction.get("winner_driver_id"):
            winners[prediction["winner_driver_id"]] += 1

    top_pole = poles.most_common(1)[0][0] if poles else None
    top_winner = winners.most_common(1)[0][0] if winners else None
    drivers = db.get_drivers([d for d in (top_pole, top_winner) if d])
    return (
        drivers[top_pole]["name"] if top_pole in drivers else None,
        drivers[top_winner]["name"] if top_winner in drivers else None,
    )


def build_lock_reminder_cast(db, args):
    race = load_race(db, args.race_id)

    top_pole, top_winner = None, None
    try:
        top_pole, top_winner = load_top_prediction_drivers(db, race.id)
    except sqlite3.Error:
        logger.warning("Failed to load top prediction picks for race %s", race.id, exc_info=True)

    link = race_link(race.id)
    text = render_template(LOCK_REMINDER_LINES, {
        "leadTime": format_lead_time(args.lead_minutes),
        "raceName": race.name,
        "lockTime": format_lock_time(race.lock_time),
        "raceContext": format_race_context(race),
        "topPole": top_pole or "—",
        "topWinner": top_winner or "—",
        "link": link,
    })
    return _payload(text, args.channel_id, link)


# ---------------- Driver of the Day ----------------
def tally_votes(vote_rows):
    """Ranked [VoteTally] by votes descending, and the total vote count."""
    drivers, counts = {}, Counter()
    for row in vote_rows:
        driver_id = row.get("driver_id")
        if not driver_id or not row.get("name"):
            continue
        drivers.setdefault(driver_id, {
            "id": driver_id,
            "name": row["name"],
            "team": row.get("team"),
            "number": row.get("number"),
        })
        counts[driver_id] += 1

    total = sum(counts.values())
    tally = [
        VoteTally(
            driver=drivers[driver_id],
            votes=votes,
            percentage=round(votes / total * 100) if total else 0,
        )
        for driver_id, votes in counts.items()
    ]
    tally.sort(key=lambda entry: -entry.votes)
    return tally, total


def default_driver_of_day_publish_at(lock_time=None, race_date=None, now=None):
    """Four days after lock (or race date) at 18:00 UTC; two days from now when neither is known."""
    anchor = parse_iso(lock_time) or parse_iso(race_date)
    if anchor is None:
        return to_iso((now or utc_now()) + timedelta(days=2))
    publish = (anchor + timedelta(days=4)).replace(hour=18, minute=0, second=0, microsecond=0)
    return to_iso(publish)


def build_driver_of_day_cast(db, args, now=None):
    race = load_race(db, args.race_id)
    tally, total = tally_votes(db.dotd_votes(race.id))

    if tally:
        leaderboard = "\n".join(
            f"{rank}. {format_driver(entry.driver)} - {entry.percentage}% ({entry.votes})"
            for rank, entry in enumerate(tally[:3], start=1)
        )
    else:
        leaderboard = "No votes recorded yet. Keep the picks coming!"

    text = render_template(DRIVER_OF_DAY_LINES, {
        "raceName": race.name,
        "raceContext": format_race_context(race),
        "leaderboard": leaderboard,
        "totalVotes": str(total),
    })
    return DriverOfDayCast(
        payload=_payload(text, args.channel_id, race_link(race.id)),
        total_votes=total,
        default_publish_at=default_driver_of_day_publish_at(race.lock_time, race.race_date, now),
        tally=tally,
    )


# ---------------- One-off admin templates ----------------
def _user_names(db, user_ids):
    names = {}
    for user_id, user in db.get_users(user_ids).items():
        display = (user.get("display_name") or "").strip() or (user.get("username") or "").strip() or user_id
        username = (user.get("username") or "").strip() or display
        names[user_id] = (display, username)
    return names


def build_prediction_consensus_cast(db, race_id, category="winner", channel_id=None):
    race = load_race(db, race_id)
    field_name = "pole_driver_id" if category == "pole" else "winner_driver_id"
    counts = Counter(p[field_name] for p in db.predictions(race.id) if p.get(field_name))
    total = sum(counts.values())
    if not total:
        raise TemplateError("Not enough picks yet to calculate consensus.")

    top_id, top_count = counts.most_common(1)[0]
    driver = db.get_drivers([top_id]).get(top_id)
    percentage = round(top_count / total * 100)
    if not driver or percentage == 0:
        raise TemplateError("Not enough picks yet to calculate consensus.")

    lines = PREDICTION_CONSENSUS_LINES["pole" if category == "pole" else "winner"]
    text = render_template(lines, {
        "percentage": str(percentage),
        "driverName": driver["name"],
        "raceName": race.name,
    })
    return _payload(text, channel_id)


def build_race_results_summary_cast(db, race_id, channel_id=None):
    race = load_race(db, race_id)
    result = db.race_result(race.id) or {}
    winner_id = result.get("winner_driver_id")
    winner = db.get_drivers([winner_id]).get(winner_id) if winner_id else None

    scored = db.top_scored_predictions(race.id, 3)
    if not scored:
        raise TemplateError("No scored predictions found for this race.")

    names = _user_names(db, [row["user_id"] for row in scored])
    leaderboard = []
    for index, row in enumerate(scored):
        display, username = names.get(row["user_id"], (row["user_id"], row["user_id"]))
        leaderboard.append(f"{MEDALS[index]} {format_user_mention(display, username)} - {round(row['score'])} pts")

    text = render_template(RACE_RESULTS_LINES, {
        "raceName": race.name,
        "winnerName": format_driver(winner) if winner else "—",
        "leaderboard": "\n".join(leaderboard),
    })
    return _payload(text, channel_id)


def build_perfect_slate_cast(db, race_id, channel_id=None, display_limit=5):
    race = load_race(db, race_id)
    perfect = [p["user_id"] for p in db.predictions(race.id) if p.get("score") == PERFECT_SCORE]
    if not perfect:
        raise TemplateError("No perfect slates recorded for this race.")

    names = _user_names(db, perfect)
    users = sorted(
        (names.get(user_id, (user_id, user_id)) for user_id in perfect),
        key=lambda pair: pair[0].lower(),
    )
    shown = users[:display_limit]
    listing = "\n".join(f"🏁 {format_user_mention(display, username)}" for display, username in shown)
    if len(users) > display_limit:
        listing += f"\n…and {len(users) - display_limit} more"

    text = render_template(PERFECT_SLATE_LINES, {
        "raceName": race.name,
        "count": str(len(users)),
        "list": listing,
    })
    return HighlightCast(
        payload=_payload(text, channel_id),
        count=len(users),
        displayed_users=[display for display, _ in shown],
    )


def count_correct_categories(prediction, results):
    """Matches across the nine base categories (pole, podium, FL, pit, DNF, SC, margin)."""
    correct = 0
    for name in ("pole_driver_id", "winner_driver_id", "second_driver_id", "third_driver_id",
                 "fastest_lap_driver_id", "fastest_pit_team_id", "winning_margin"):
        if prediction.get(name) and prediction.get(name) == results.get(name):
            correct += 1

    if results.get("no_dnf"):
        if prediction.get("no_dnf"):
            correct += 1
    elif prediction.get("first_dnf_driver_id") and prediction["first_dnf_driver_id"] == results.get("first_dnf_driver_id"):
        correct += 1

    if prediction.get("safety_car") is not None and results.get("safety_car") is not None \
            and bool(prediction["safety_car"]) == bool(results["safety_car"]):
        correct += 1
    return correct


def build_close_calls_cast(db, race_id, channel_id=None, display_limit=3):
    race = load_race(db, race_id)
    results = db.race_result(race.id)
    if not results:
        raise TemplateError("Race results not recorded yet.")

    close = [p for p in db.predictions(race.id) if count_correct_categories(p, results) == 8]
    if not close:
        raise TemplateError("No near-perfect predictions to highlight.")

    close.sort(key=lambda p: -(p.get("score") or 0))
    names = _user_names(db, [p["user_id"] for p in close])
    shown = [names.get(p["user_id"], (p["user_id"], p["user_id"])) for p in close[:display_limit]]
    names_line = ", ".join(format_user_mention(display, username) for display, username in shown)
    if len(close) > display_limit:
        names_line += f", +{len(close) - display_limit} more"

    text = render_template(CLOSE_CALLS_LINES, {"names": names_line or "—"})
    return HighlightCast(
        payload=_payload(text, channel_id),
        count=len(close),
        displayed_users=[display for display, _ in shown],
    )


def build_leaderboard_update_cast(db, race_id, channel_id=None):
    race = load_race(db, race_id)
    users = db.top_users(3)
    if not users:
        raise TemplateError("Leaderboard is empty.")

    lines = []
    for index, user in enumerate(users):
        display = (user.get("display_name") or "").strip() or (user.get("username") or "").strip() or "Player"
        username = (user.get("username") or "").strip() or display
        lines.append(f"{MEDALS[index]} {format_user_mention(display, username)} - {user.get('total_points') or 0} pts")

    text = render_template(LEADERBOARD_UPDATE_LINES, {
        "raceName": race.name,
        "leaderboard": "\n".join(lines),
    })
    return _payload(text, channel_id)


def build_custom_cast(text, embed_url=None, channel_id=None):
    """Free-form admin cast; length is checked by the transport, not truncated here."""
    text = (text or "").strip()
    if not text:
        raise PayloadError("Cast text is required.")
    embeds = [CastEmbed(url=embed_url.strip())] if embed_url and embed_url.strip() else []
    return CastPayload(text=text, embeds=embeds, channel_id=channel_id or None)
