import logging
import os
from typing import Optional

import requests

log = logging.getLogger(__name__)

WEBHOOK_ENV = "GRID_PG_SYNC_DISCORD_WEBHOOK"
DISCORD_LIMIT = 2000  # Discord content hard limit

def _truncate_for_discord(text: str, limit: int = DISCORD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 20] + "\n… (truncated)"

def format_export_failure(table: str, message: str) -> str:
    return f":x: PostgreSQL export failed for `{table}`\n{message}"

def send_discord_alert(message: str, username: Optional[str] = "Grid Export Alert",
                       webhook_url: Optional[str] = None) -> bool:
    """
    Post a message to the Discord webhook in GRID_PG_SYNC_DISCORD_WEBHOOK.
    Returns True when Discord accepted it; delivery problems are logged only.
    """
    url = webhook_url if webhook_url is not None else os.environ.get(WEBHOOK_ENV, "")
    if not url:
        log.debug("No Discord webhook URL configured (%s), skipping alert.", WEBHOOK_ENV)
        return False

    payload = {
        "content": _truncate_for_discord(message),
        "username": username,
    }

    try:
        response = requests.post(url, json=payload, timeout=10)
    except requests.RequestException as e:
        log.exception("Exception while sending Discord alert: %s", e)
        return False

    # 204 No Content normally, 200 OK with '?wait=true'
    if response.status_code in (200, 204):
        log.info("Discord alert sent successfully (status %s).", response.status_code)
        return True
    log.error("Failed to send Discord alert: status=%s body=%s", response.status_code, response.text)
    return False
