import logging
import os
from typing import Optional

import requests

log = logging.getLogger(__name__)

DISCORD_LIMIT = 2000  # Discord message hard limit (approx)

def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    # Keep a small suffix to show truncation
    return text[: limit - 20] + "\n… (truncated)"

def send_discord_alert(message: str, webhook_url: Optional[str] = None,
                       username: Optional[str] = "Database Sync Alert",
                       avatar_url: Optional[str] = None) -> bool:
    """
    Sends a simple Discord webhook message. Falls back to the DISCORD_WEBHOOK environment variable.
    Never raises: an alert that cannot be delivered is logged and dropped.
    """
    webhook_url = webhook_url or os.getenv("DISCORD_WEBHOOK", "")
    if not webhook_url:
        log.warning("No Discord webhook URL configured, skipping alert: %s", message)
        return False

    payload = {
        "content": _truncate_for_discord(message),
        "username": username,
    }
    if avatar_url:
        payload["avatar_url"] = avatar_url

    try:
        response = requests.post(webhook_url, json=payload, timeout=10)
    except requests.RequestException as e:
        log.exception("Exception while sending Discord alert: %s", e)
        return False

    # Discord returns 204 No Content for non-waiting calls; 200 OK if '?wait=true'
    if response.status_code in (200, 204):
        log.info("Discord alert sent successfully (status %s).", response.status_code)
        return True
    log.error("Failed to send Discord alert: status=%s body=%s", response.status_code, response.text)
    return False
