# neynar.py
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import ConfigurationError, TransportError
from settings import env_flag, get_env

logger = logging.getLogger(__name__)

NEYNAR_BASE_URL = "https://api.neynar.com/v2/farcaster"


def build_session():
    session = requests.Session()
    session.headers.update({
        "accept": "application/json",
        "content-type": "application/json",
        # Neynar can reject the default python-requests UA with HTTP 403.
        "user-agent": "castqueue/1.0",
    })
    # Only connection-level retries; a POST that reached Neynar is never replayed here,
    # the job backoff handles that.
    retry = Retry(total=2, connect=2, read=0, status=0, backoff_factor=0.5)
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def resolve_api_key():
    key = get_env("FARCASTER_API_KEY", "NEYNAR_API_KEY")
    if not key:
        raise ConfigurationError("Missing Neynar API key. Set FARCASTER_API_KEY or NEYNAR_API_KEY.")
    return key


def should_dry_run(explicit=None):
    if isinstance(explicit, bool):
        return explicit
    return env_flag("FARCASTER_DRY_RUN", "NEYNAR_DRY_RUN")


def send_json(session, method, url, api_key, body, timeout, failure_label):
    """Send one JSON request, returning the decoded body or raising TransportError."""
    try:
        response = session.request(
            method, url, json=body, headers={"x-api-key": api_key}, timeout=timeout,
        )
    except requests.Timeout as e:
        raise TransportError(f"{failure_label}: request timed out after {timeout}s") from e
    except requests.RequestException as e:
        raise TransportError(f"{failure_label}: {e}") from e

    try:
        raw = response.json()
    except ValueError:
        raw = {"message": response.text[:400]}
    if not isinstance(raw, dict):
        raw = {"data": raw}

    if response.status_code >= 400:
        message = raw.get("message") if isinstance(raw.get("message"), str) else str(raw)
        logger.warning("%s (%s): %s", failure_label, response.status_code, message)
        raise TransportError(f"{failure_label} ({response.status_code}): {message}", response.status_code)
    return raw
