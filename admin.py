# admin.py
"""
Manual admin actions: build a cast or notification right now and send it,
without going through the job table. Errors surface to the caller as
AdminActionError carrying an HTTP-ish status code.
"""
import logging
import math
import re

from cast_client import CastClient
from errors import AdminActionError, NotFoundError, PayloadError, TemplateError
from models import DriverOfDayArgs, LockReminderArgs, parse_iso, to_iso, utc_now
from neynar import should_dry_run
from notifications import NearLocation, Notification, NotificationClient, NotificationFilters
from settings import app_url
from templates import (
    build_close_calls_cast, build_custom_cast, build_driver_of_day_cast, build_leaderboard_update_cast,
    build_lock_reminder_cast, build_perfect_slate_cast, build_prediction_consensus_cast,
    build_race_results_summary_cast,
)

logger = logging.getLogger(__name__)

CAST_ACTIONS = (
    "manual-cast", "race-lock-reminder", "driver-of-day-summary", "race-results-summary",
    "perfect-slate-alert", "close-calls", "leaderboard-update", "prediction-consensus", "delete-cast",
)
NOTIFICATION_ACTIONS = ("manual-notification", "manual", "race-lock-reminder", "race-results-broadcast")


def _text(params, *names):
    for name in names:
        value = params.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_positive_int(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None


def parse_number(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def parse_fid_array(value):
    """List or comma/space separated string of fids; None when absent."""
    if isinstance(value, str):
        value = re.split(r"[,\s]+", value)
    if not isinstance(value, (list, tuple)):
        return None
    return [fid for fid in (parse_positive_int(v) for v in value) if fid is not None]


def parse_filters(value):
    if not isinstance(value, dict):
        return None
    filters = NotificationFilters()
    exclude = parse_fid_array(value.get("excludeFids", value.get("exclude_fids")))
    if exclude:
        filters.exclude_fids = exclude
    filters.following_fid = parse_positive_int(value.get("followingFid", value.get("following_fid")))
    filters.minimum_user_score = parse_number(value.get("minimumUserScore", value.get("minimum_user_score")))

    near = value.get("nearLocation") or value.get("near_location")
    if isinstance(near, dict):
        latitude, longitude = parse_number(near.get("latitude")), parse_number(near.get("longitude"))
        if latitude is not None and longitude is not None:
            filters.near_location = NearLocation(latitude, longitude, parse_number(near.get("radius")))

    if not (filters.exclude_fids or filters.following_fid is not None
            or filters.minimum_user_score is not None or filters.near_location):
        return None
    return filters


def parse_notification(params):
    nested = params.get("notification") if isinstance(params.get("notification"), dict) else {}
    return Notification(
        title=_text(nested, "title") or _text(params, "title") or "",
        body=_text(nested, "body") or _text(params, "body") or "",
        target_url=_text(nested, "targetUrl", "target_url") or _text(params, "targetUrl", "target_url"),
    )


class AdminActions:
    def __init__(self, db, cast_client=None, notification_client=None, clock=utc_now):
        self.db = db
        self.cast_client = cast_client or CastClient()
        self.notification_client = notification_client or NotificationClient()
        self.clock = clock

    # ---------------- Race resolution ----------------
    def _race_or_latest_completed(self, params):
        race_id = _text(params, "raceId")
        race = self.db.get_race(race_id) if race_id else self.db.latest_completed_race()
        if race is None:
            raise AdminActionError("No completed race found.", 404)
        return race

    def _race_or_next(self, params, missing_message):
        race_id = _text(params, "raceId")
        race = self.db.get_race(race_id) if race_id else self.db.next_prediction_race(to_iso(self.clock()))
        if race is None:
            raise AdminActionError(missing_message, 404)
        return race

    def _minutes_until_lock(self, race):
        lock = parse_iso(race.lock_time)
        return round((lock - self.clock()).total_seconds() / 60) if lock else 0

    def _post(self, payload):
        dry_run = should_dry_run(self.cast_client.dry_run)
        result = self.cast_client.post(payload, dry_run=dry_run)
        return {"success": True, "dryRun": dry_run, "result": result.to_dict()}

    # ---------------- Casts ----------------
    def run_cast_action(self, action, params=None):
        params = params or {}
        action = action or "manual-cast"
        channel_id = _text(params, "channelId")
        logger.info("Admin cast action %s", action)

        try:
            if action == "manual-cast":
                payload = build_custom_cast(params.get("text"), _text(params, "embedUrl"), channel_id)
                return self._post(payload)

            if action == "delete-cast":
                target_hash = _text(params, "targetHash")
                if not target_hash:
                    raise AdminActionError("Cast hash is required.", 400)
                dry_run = should_dry_run(self.cast_client.dry_run)
                result = self.cast_client.delete(target_hash, signer_uuid=_text(params, "signerUuid"), dry_run=dry_run)
                return {"success": result["success"], "dryRun": dry_run, "result": result}

            if action == "race-lock-reminder":
                race = self._race_or_next(params, "No upcoming race found for lock reminder.")
                lead_minutes = self._minutes_until_lock(race)
                if lead_minutes <= 0:
                    raise AdminActionError("Lock time has already passed for the selected race.", 409)
                payload = build_lock_reminder_cast(self.db, LockReminderArgs(race.id, lead_minutes, channel_id))
                return {**self._post(payload), "raceId": race.id, "leadMinutes": lead_minutes}

            if action == "driver-of-day-summary":
                race = self._race_or_latest_completed(params)
                dotd = build_driver_of_day_cast(self.db, DriverOfDayArgs(race.id, channel_id), now=self.clock())
                if not dotd.total_votes:
                    raise AdminActionError("Driver of the Day has no votes yet.", 409)
                return {**self._post(dotd.payload), "raceId": race.id, "totalVotes": dotd.total_votes}

            if action == "prediction-consensus":
                category = params.get("category") if params.get("category") in ("pole", "winner") else "winner"
                race = self._race_or_next(params, "No race found for prediction consensus.")
                payload = build_prediction_consensus_cast(self.db, race.id, category, channel_id)
                return {**self._post(payload), "raceId": race.id, "category": category}

            if action == "race-results-summary":
                race = self._race_or_latest_completed(params)
                payload = build_race_results_summary_cast(self.db, race.id, channel_id)
                return {**self._post(payload), "raceId": race.id}

            if action == "leaderboard-update":
                race = self._race_or_latest_completed(params)
                payload = build_leaderboard_update_cast(self.db, race.id, channel_id)
                return {**self._post(payload), "raceId": race.id}

            if action in ("perfect-slate-alert", "close-calls"):
                race = self._race_or_latest_completed(params)
                builder = build_perfect_slate_cast if action == "perfect-slate-alert" else build_close_calls_cast
                highlight = builder(self.db, race.id, channel_id)
                count_key = "perfectCount" if action == "perfect-slate-alert" else "closeCount"
                return {
                    **self._post(highlight.payload),
                    "raceId": race.id,
                    count_key: highlight.count,
                    "displayedUsers": highlight.displayed_users,
                }
        except TemplateError as e:
            raise AdminActionError(str(e), 409) from e
        except NotFoundError as e:
            raise AdminActionError(str(e), 404) from e
        except PayloadError as e:
            raise AdminActionError(str(e), 400) from e

        raise AdminActionError(f"Unsupported Farcaster admin action: {action}", 400)

    # ---------------- Notifications ----------------
    def _publish(self, notification, target_fids=None, filters=None, campaign_id=None):
        result = self.notification_client.publish(notification, target_fids=target_fids,
                                                  filters=filters, campaign_id=campaign_id)
        return {"success": True, "dryRun": result.dry_run, "result": result.raw}

    def run_notification_action(self, action, params=None):
        params = params or {}
        action = (action or "").strip() or "manual-notification"
        logger.info("Admin notification action %s", action)

        if action in ("manual", "manual-notification"):
            notification = parse_notification(params)
            if not notification.title:
                raise AdminActionError("Notification title is required.", 400)
            if not notification.body:
                raise AdminActionError("Notification body is required.", 400)
            return self._publish(
                notification,
                target_fids=parse_fid_array(params.get("targetFids", params.get("target_fids"))) or [],
                filters=parse_filters(params.get("filters")),
                campaign_id=_text(params, "campaignId", "campaign_id"),
            )

        if action == "race-lock-reminder":
            race = self._race_or_next(params, "No upcoming race found for lock notifications.")
            minutes = self._minutes_until_lock(race)
            if minutes <= 0:
                raise AdminActionError("Race lock has already passed for the next race.", 409)
            hours = max(1, round(minutes / 60))
            target_fids = self.db.fids_without_prediction(race.id)
            if not target_fids:
                raise AdminActionError(f"No eligible users without predictions for {race.name}.", 409)
            result = self._publish(
                Notification(
                    title=f"Race lock in {hours}h",
                    body=f"Predictions close in {hours}h for {race.name}. "
                         "Pole, podium, FL, safety car - lock your slate now.",
                    target_url=app_url(),
                ),
                target_fids=target_fids,
                campaign_id=f"lock-reminder-{race.id}-{hours}h",
            )
            return {**result, "raceId": race.id, "targetFidCount": len(target_fids), "hours": hours}

        if action == "race-results-broadcast":
            race_id = _text(params, "raceId")
            race = self.db.get_race(race_id) if race_id else self.db.latest_completed_race()
            if race is None:
                raise AdminActionError("No completed race found for results notification.", 404)
            result = self._publish(
                Notification(
                    title=f"{race.name} results & scores live",
                    body="Scores posted. Check your score and vote for the Driver of the Day!",
                    target_url=app_url(),
                ),
                campaign_id=f"results-live-{race.id}",
            )
            return {**result, "raceId": race.id}

        raise AdminActionError(f"Unsupported notification action: {action}", 400)
