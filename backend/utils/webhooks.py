"""Outbound webhook delivery (automation workflows: reminders, due-date alerts)."""

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10


def post_webhook(url: str, payload: dict, token: Optional[str] = None) -> bool:
    """
    POST a JSON payload to a webhook.

    Returns True on a 2xx response. Network errors and non-2xx responses are
    logged and reported as False, never raised.
    """
    headers = {"content-type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = requests.post(url, json=payload, headers=headers, timeout=WEBHOOK_TIMEOUT_SECONDS)
    except requests.exceptions.Timeout:
        logger.error(f"Webhook {payload.get('event')} timed out")
        return False
    except requests.exceptions.RequestException as e:
        logger.error(f"Webhook {payload.get('event')} failed: {e}")
        return False

    if not 200 <= response.status_code < 300:
        logger.warning(f"Webhook {payload.get('event')} returned status {response.status_code}")
        return False
    return True
