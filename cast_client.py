# cast_client.py
from dataclasses import dataclass, field
from typing import Optional

from errors import ConfigurationError, PayloadError
from neynar import NEYNAR_BASE_URL, build_session, resolve_api_key, send_json, should_dry_run
from settings import CAST_TEXT_MAX_LENGTH, REQUEST_TIMEOUT, get_env


@dataclass
class PostCastResponse:
    raw: dict = field(default_factory=dict)
    hash: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self):
        return {"hash": self.hash, "url": self.url, "raw": self.raw}


def resolve_signer_uuid(explicit=None):
    if explicit and explicit.strip():
        return explicit.strip()
    signer = get_env("FARCASTER_SIGNER_UUID", "FARCASTER_NEYNAR_SIGNER_UUID", "NEYNAR_SIGNER_UUID")
    if not signer:
        raise ConfigurationError("Missing Farcaster signer UUID. Set FARCASTER_SIGNER_UUID or NEYNAR_SIGNER_UUID.")
    return signer


def determine_channel_id(payload_channel_id=None, override=None):
    explicit = override or payload_channel_id
    if explicit and explicit.strip():
        return explicit.strip()
    return get_env("FARCASTER_DEFAULT_CHANNEL_ID", "NEYNAR_DEFAULT_CHANNEL_ID")


def validate_payload(payload):
    if not payload or not isinstance(payload.text, str) or not payload.text.strip():
        raise PayloadError("Cast payload requires text.")
    if len(payload.text) > CAST_TEXT_MAX_LENGTH:
        raise PayloadError(f"Cast text exceeds {CAST_TEXT_MAX_LENGTH} characters.")


class CastClient:
    """Posts and deletes casts through Neynar. Dry-run echoes the request instead."""

    def __init__(self, dry_run=None, timeout=REQUEST_TIMEOUT, session=None, base_url=NEYNAR_BASE_URL):
        self.dry_run = dry_run
        self.timeout = timeout
        self.session = session
        self.base_url = base_url.rstrip("/")

    def _session(self):
        if self.session is None:
            self.session = build_session()
        return self.session

    def post(self, payload, dry_run=None, signer_uuid=None, channel_id=None):
        validate_payload(payload)

        dry = should_dry_run(dry_run if dry_run is not None else self.dry_run)
        signer = resolve_signer_uuid(signer_uuid)
        channel = determine_channel_id(payload.channel_id, channel_id)
        embeds = [{"url": embed.url} for embed in payload.embeds]

        if dry:
            return PostCastResponse(raw={
                "dryRun": True,
                "payload": {
                    "text": payload.text,
                    "embeds": embeds,
                    "signer_uuid": signer,
                    "channel_id": channel,
                },
            })

        body = {"text": payload.text, "signer_uuid": signer}
        if embeds:
            body["embeds"] = embeds
        if channel:
            body["channel_id"] = channel

        raw = send_json(self._session(), "POST", f"{self.base_url}/cast", resolve_api_key(),
                        body, self.timeout, "Farcaster cast failed")
        cast = raw.get("cast") if isinstance(raw.get("cast"), dict) else {}
        cast_hash = raw.get("hash") or cast.get("hash")
        cast_url = raw.get("cast_url") or cast.get("url")
        return PostCastResponse(
            raw=raw,
            hash=cast_hash if isinstance(cast_hash, str) else None,
            url=cast_url if isinstance(cast_url, str) else None,
        )

    def delete(self, target_hash, signer_uuid=None, dry_run=None):
        if not target_hash or not target_hash.strip():
            raise PayloadError("Cast hash is required.")

        dry = should_dry_run(dry_run if dry_run is not None else self.dry_run)
        body = {"signer_uuid": resolve_signer_uuid(signer_uuid), "target_hash": target_hash.strip()}

        if dry:
            return {"success": True, "dryRun": True, "request": body}

        raw = send_json(self._session(), "DELETE", f"{self.base_url}/cast", resolve_api_key(),
                        body, self.timeout, "Farcaster cast delete failed")
        result = {"success": bool(raw.get("success", True))}
        if isinstance(raw.get("message"), str):
            result["message"] = raw["message"]
        return result
