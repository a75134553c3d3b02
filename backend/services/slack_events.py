"""
Slack Events API payload handling.

Verifies request signatures and routes ``event_callback`` payloads to the
orchestrator.  The HTTP layer that receives the request is not part of this
package.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Optional

from agents.orchestrator import ConversationOrchestrator
from models.slack import SlackMessage

logger = logging.getLogger(__name__)

# Slack rejects requests older than five minutes to prevent replays
MAX_REQUEST_AGE_SECONDS = 300
_IGNORED_SUBTYPES = ("message_changed", "message_deleted")


def verify_slack_signature(
    signing_secret: Optional[str],
    body: bytes,
    timestamp: str,
    signature: str,
    now: Optional[float] = None,
) -> bool:
    """
    Verify that a request came from Slack using HMAC-SHA256.

    Args:
        signing_secret: The app's signing secret
        body: Raw request body
        timestamp: X-Slack-Request-Timestamp header
        signature: X-Slack-Signature header
        now: Current unix time (defaults to ``time.time()``)

    Returns:
        True if the signature is valid and the request is recent
    """
    if not signing_secret:
        logger.warning("[slack_events] SLACK_SIGNING_SECRET not configured")
        return False

    try:
        request_time = int(timestamp)
    except ValueError:
        logger.warning("[slack_events] Invalid timestamp: %s", timestamp)
        return False
    current_time = int(now if now is not None else time.time())
    if abs(current_time - request_time) > MAX_REQUEST_AGE_SECONDS:
        logger.warning("[slack_events] Request timestamp too old: %s", timestamp)
        return False

    sig_basestring = f"v0:{timestamp}:{body.decode('utf-8')}"
    expected_signature = (
        "v0="
        + hmac.new(
            signing_secret.encode("utf-8"),
            sig_basestring.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
    )
    return hmac.compare_digest(expected_signature, signature)


async def dispatch_event(orchestrator: ConversationOrchestrator, payload: dict[str, Any]) -> Optional[str]:
    """
    Route one Events API payload.

    Returns the challenge for ``url_verification`` payloads, otherwise None.
    Errors from the orchestrator propagate to the caller.
    """
    payload_type = payload.get("type")
    if payload_type == "url_verification":
        return payload.get("challenge", "")
    if payload_type != "event_callback":
        logger.debug("[slack_events] Ignoring payload type %s", payload_type)
        return None

    event: dict[str, Any] = payload.get("event", {}) or {}
    if event.get("subtype") in _IGNORED_SUBTYPES:
        return None

    message = SlackMessage.from_event(event, payload.get("team_id", ""))
    if message is None:
        logger.debug("[slack_events] Ignoring event type %s", event.get("type"))
        return None

    if event.get("type") == "app_mention":
        await orchestrator.handle_mention(message)
    else:
        await orchestrator.handle_message(message)
    return None
