"""
Desktop notifications for the factory.

Uses notify-send (freedesktop compliant). Missing notify-send is not an
error; the notification is logged at debug level and dropped.
"""

import logging
import shutil
import subprocess

logger = logging.getLogger(__name__)

APP_NAME = "AgentFactory"
VALID_URGENCIES = ("low", "normal", "critical")
MAX_NOTIFICATION_LENGTH = 200


def _truncate(text: str) -> str:
    if len(text) > MAX_NOTIFICATION_LENGTH:
        return text[:MAX_NOTIFICATION_LENGTH] + "..."
    return text


def notify(title: str, message: str, urgency: str = "normal"):
    """
    Send a desktop notification.

    Args:
        title: Notification title
        message: Notification body
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug(f"notify-send not found, dropping notification: {title}")
        return

    try:
        result = subprocess.run(
            ["notify-send", "--urgency", urgency, "--app-name", APP_NAME, title, _truncate(message)],
            capture_output=True, text=True, timeout=5,
        )
        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


def notify_blocked(ticket_id: str, reason: str):
    """A ticket was blocked and needs an operator."""
    notify(f"{APP_NAME}: {ticket_id}", f"Blocked: {reason}", "critical")


def notify_merge_escalated(ticket_id: str, error: str):
    """A merge exhausted its retries."""
    notify(f"{APP_NAME}: {ticket_id}", f"Merge failed, manual resolution needed: {error}", "critical")


def notify_prd_complete(ticket_id: str, forced: bool = False):
    """Expert deliberation produced a PRD."""
    body = "PRD forced after max rounds" if forced else "PRD reached consensus"
    notify(f"{APP_NAME}: {ticket_id}", body, "low")


def notify_awaiting_user(ticket_id: str, question_count: int):
    """The facilitator needs answers from the user."""
    notify(f"{APP_NAME}: {ticket_id}", f"{question_count} question(s) awaiting your answer", "normal")
