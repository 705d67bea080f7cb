"""Slack Web API integration for conductor escalations."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


EVENT_EMOJI = {
    "merge_conflict": ":twisted_rightwards_arrows:",
    "watchdog": ":hourglass:",
    "timeout": ":alarm_clock:",
    "reap_failed": ":x:",
    "error": ":red_circle:",
}


def format_escalation(event: str, task_id: str, message: str, next_steps: list[str] | tuple = ()) -> list[dict]:
    """Format an escalation as Slack blocks."""
    emoji = EVENT_EMOJI.get(event, ":warning:")
    text = f"{emoji} *Agent needs attention* (`{task_id}`)\n{message}"
    blocks = [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]
    if next_steps:
        steps = "\n".join(f"• `{s}`" for s in next_steps)
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": f"Next steps:\n{steps}"}]})
    return blocks


class SlackNotifier:
    """Posts escalations to a channel. Failures are logged, never raised."""

    def __init__(self, token: str | None, channel: str | None):
        self.token = token
        self.channel = channel

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.channel)

    def notify(self, event: str, task_id: str, message: str, next_steps: list[str] | tuple = ()) -> None:
        if not self.enabled:
            return
        try:
            send_message(
                self.token,
                self.channel,
                f"[{event}] {task_id}: {message}",
                blocks=format_escalation(event, task_id, message, next_steps),
            )
        except Exception:
            logger.exception("Slack notification failed for %s (%s)", task_id, event)
