"""
Reference container task for the fan-out workflow.

Launched by the state machine with the file to process and the branch that
selected it, and reports both to a Slack incoming webhook.

Environment Variables:
    S3_FILE_PATH: Object the workflow asked this task to process
    TASK_TYPE: Branch that launched the task ("A" or "B")
    MESSAGE: Optional text overriding the generated notification
    SLACK_WEBHOOK_URL: Incoming webhook URL
    SLACK_CHANNEL: Channel to post to
    LOG_LEVEL: Logging level (default INFO)
"""

import json
import logging
import os
import sys
from typing import Mapping, Optional

import urllib3

logger = logging.getLogger("notifier")

http = urllib3.PoolManager()


class NotificationError(Exception):
    """Raised when the webhook does not accept the notification."""


def build_message(env: Mapping[str, str]) -> str:
    message = env.get("MESSAGE")
    if message:
        return f"MESSAGE: {message}"
    return (
        f"Task {env.get('TASK_TYPE', '?')} processed "
        f"{env.get('S3_FILE_PATH') or '<no file>'}"
    )


def send_slack_message(webhook_url: str, channel: str, message: str) -> None:
    payload = {"text": message, "channel": channel}
    response = http.request(
        "POST",
        webhook_url,
        body=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
    )
    if response.status != 200:
        raise NotificationError(f"non-200 response: {response.status}")


def run(env: Optional[Mapping[str, str]] = None) -> int:
    """Send the notification; returns the process exit code."""
    env = os.environ if env is None else env

    webhook_url = env.get("SLACK_WEBHOOK_URL")
    if not webhook_url:
        logger.info("SLACK_WEBHOOK_URL environment variable is not set")
        return 0

    channel = env.get("SLACK_CHANNEL")
    if not channel:
        logger.info("SLACK_CHANNEL environment variable is not set")
        return 0

    message = build_message(env)
    try:
        send_slack_message(webhook_url, channel, message)
    except (NotificationError, urllib3.exceptions.HTTPError) as e:
        logger.error(f"Error sending message to Slack: {str(e)}")
        return 1

    logger.info(f"Posted notification to {channel}")
    return 0


def main() -> None:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    sys.exit(run())


if __name__ == "__main__":
    main()
