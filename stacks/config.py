"""
Deployment options for the fan-out stack, read from CDK context.

Values can come from ``cdk.json`` or the command line, for example::

    cdk deploy -c trigger=lambda -c enableDeadLetterQueue=false
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from constructs import Node

DEFAULT_CONTAINER_IMAGE = "public.ecr.aws/docker/library/hello-world:nanoserver"


class TriggerMode(str, Enum):
    """How queue messages reach the workflow. The modes are alternatives."""

    RULE = "rule"
    LAMBDA = "lambda"
    PIPE = "pipe"


class ImageSource(str, Enum):
    REGISTRY = "registry"
    NOTIFIER = "notifier"


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class FanoutConfig:
    trigger: TriggerMode = TriggerMode.PIPE
    enable_dead_letter_queue: bool = True
    enable_task_retry: bool = True
    max_receive_count: int = 3
    image_source: ImageSource = ImageSource.REGISTRY
    container_image: str = DEFAULT_CONTAINER_IMAGE
    slack_channel: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_context(cls, node: Node) -> "FanoutConfig":
        """
        Build the configuration from a construct node's context.

        Raises:
            ValueError: If a context value is not one of the accepted options
        """
        get = node.try_get_context
        defaults = cls()

        trigger = get("trigger") or defaults.trigger.value
        image_source = get("imageSource") or defaults.image_source.value
        try:
            trigger_mode = TriggerMode(str(trigger).lower())
        except ValueError:
            raise ValueError(
                f"Unknown trigger '{trigger}', expected one of "
                f"{', '.join(m.value for m in TriggerMode)}"
            ) from None
        try:
            source = ImageSource(str(image_source).lower())
        except ValueError:
            raise ValueError(
                f"Unknown imageSource '{image_source}', expected one of "
                f"{', '.join(s.value for s in ImageSource)}"
            ) from None

        raw_receive_count = get("maxReceiveCount")
        max_receive_count = (
            defaults.max_receive_count if raw_receive_count is None else int(raw_receive_count)
        )
        if max_receive_count < 1:
            raise ValueError(f"maxReceiveCount must be at least 1, got {max_receive_count}")

        return cls(
            trigger=trigger_mode,
            enable_dead_letter_queue=_as_bool(
                get("enableDeadLetterQueue"), defaults.enable_dead_letter_queue
            ),
            enable_task_retry=_as_bool(get("enableTaskRetry"), defaults.enable_task_retry),
            max_receive_count=max_receive_count,
            image_source=source,
            container_image=get("containerImage") or defaults.container_image,
            slack_channel=get("slackChannel"),
            slack_webhook_url=get("slackWebhookUrl"),
            log_level=str(get("logLevel") or defaults.log_level).upper(),
        )
