# notifications.py
import math
from dataclasses import dataclass, field
from typing import Optional

from errors import ConfigurationError, PayloadError
from neynar import NEYNAR_BASE_URL, build_session, resolve_api_key, send_json, should_dry_run
from settings import REQUEST_TIMEOUT, app_url, get_env


@dataclass
class Notification:
    title: str
    body: str
    target_url: Optional[str] = None


@dataclass
class NearLocation:
    latitude: float
    longitude: float
    radius: Optional[float] = None


@dataclass
class NotificationFilters:
    exclude_fids: list = field(default_factory=list)
    following_fid: Optional[int] = None
    minimum_user_score: Optional[float] = None
    near_location: Optional[NearLocation] = None


@dataclass
class PublishResult:
    dry_run: bool
    raw: dict


def _finite(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def resolve_client_id():
    client_id = get_env("FARCASTER_CLIENT_ID", "NEYNAR_CLIENT_ID")
    if not client_id:
        raise ConfigurationError("Missing Neynar client ID. Set FARCASTER_CLIENT_ID or NEYNAR_CLIENT_ID.")
    return client_id


def build_filters_payload(filters):
    if not filters:
        return None
    payload = {}
    if filters.exclude_fids:
        payload["exclude_fids"] = list(filters.exclude_fids)
    if _finite(filters.following_fid):
        payload["following_fid"] = filters.following_fid
    if _finite(filters.minimum_user_score):
        payload["minimum_user_score"] = filters.minimum_user_score
    location = filters.near_location
    if location and _finite(location.latitude) and _finite(location.longitude):
        near = {"latitude": location.latitude, "longitude": location.longitude}
        if _finite(location.radius):
            near["radius"] = location.radius
        payload["near_location"] = near
    return payload or None


def sanitize_target_fids(target_fids):
    if not target_fids:
        return None
    normalized = [fid for fid in target_fids if isinstance(fid, int) and not isinstance(fid, bool) and fid > 0]
    return normalized or None


class NotificationClient:
    """Mini app push notifications through Neynar, with the same dry-run rules as casts."""

    def __init__(self, dry_run=None, timeout=REQUEST_TIMEOUT, session=None, base_url=NEYNAR_BASE_URL):
        self.dry_run = dry_run
        self.timeout = timeout
        self.session = session
        self.endpoint = f"{base_url.rstrip('/')}/frame/notifications"

    def publish(self, notification, target_fids=None, filters=None, campaign_id=None, dry_run=None):
        if not notification or not (notification.title or "").strip():
            raise PayloadError("Notification title is required.")
        if not (notification.body or "").strip():
            raise PayloadError("Notification body is required.")

        api_key = resolve_api_key()
        client_id = resolve_client_id()
        dry = should_dry_run(dry_run if dry_run is not None else self.dry_run)

        target_url = (notification.target_url or "").strip() or app_url()

        body = {
            "client_id": client_id,
            "notification": {
                "title": notification.title.strip(),
                "body": notification.body.strip(),
                "target_url": target_url,
            },
        }
        fids = sanitize_target_fids(target_fids)
        if fids:
            body["target_fids"] = fids
        filters_payload = build_filters_payload(filters)
        if filters_payload:
            body["filters"] = filters_payload
        if campaign_id and campaign_id.strip():
            body["campaign_id"] = campaign_id.strip()

        if dry:
            return PublishResult(dry_run=True, raw={"dryRun": True, "request": body})

        if self.session is None:
            self.session = build_session()
        raw = send_json(self.session, "POST", self.endpoint, api_key, body, self.timeout,
                        "Failed to publish notifications")
        return PublishResult(dry_run=False, raw=raw)
