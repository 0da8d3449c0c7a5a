"""Slack Web API integration."""

from dataclasses import dataclass

from work_reconciler.db.models import Agent, DesiredExecutionState, Task


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


def format_crash_notification(agent: Agent, task: Task) -> list[dict]:
    """Format a crashed-agent notice as Slack blocks."""
    status = agent.process_status.value if agent.process_status else "no heartbeat"
    restart = (
        "will be restarted"
        if agent.desired_execution_state == DesiredExecutionState.ACTIVE
        else f"desired state is {agent.desired_execution_state.value}"
    )
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":rotating_light: *Agent Crashed*\n"
                    f"{agent.type.value.title()} `{agent.id}` on *{task.title}* (`{task.id}`)\n"
                    f"Signal: {status} | {restart}"
                ),
            },
        }
    ]
