"""
Unit tests for reading stack options from CDK context.
"""

import aws_cdk as cdk
import pytest

from stacks.config import DEFAULT_CONTAINER_IMAGE, FanoutConfig, ImageSource, TriggerMode


def config_from(context):
    return FanoutConfig.from_context(cdk.App(context=context).node)


def test_defaults():
    config = config_from({})
    assert config.trigger is TriggerMode.PIPE
    assert config.enable_dead_letter_queue is True
    assert config.enable_task_retry is True
    assert config.max_receive_count == 3
    assert config.image_source is ImageSource.REGISTRY
    assert config.container_image == DEFAULT_CONTAINER_IMAGE
    assert config.slack_channel is None
    assert config.log_level == "INFO"


@pytest.mark.parametrize("value,expected", [
    ("rule", TriggerMode.RULE),
    ("lambda", TriggerMode.LAMBDA),
    ("PIPE", TriggerMode.PIPE),
])
def test_trigger(value, expected):
    assert config_from({"trigger": value}).trigger is expected


def test_command_line_strings_are_coerced():
    config = config_from({
        "enableDeadLetterQueue": "false",
        "enableTaskRetry": "no",
        "maxReceiveCount": "5",
        "logLevel": "debug",
    })
    assert config.enable_dead_letter_queue is False
    assert config.enable_task_retry is False
    assert config.max_receive_count == 5
    assert config.log_level == "DEBUG"


def test_json_values():
    config = config_from({"enableDeadLetterQueue": False, "maxReceiveCount": 2})
    assert config.enable_dead_letter_queue is False
    assert config.max_receive_count == 2


def test_notifier_image_and_slack():
    config = config_from({
        "imageSource": "notifier",
        "slackChannel": "#alerts",
        "slackWebhookUrl": "https://hooks.example.com/x",
    })
    assert config.image_source is ImageSource.NOTIFIER
    assert config.slack_channel == "#alerts"
    assert config.slack_webhook_url == "https://hooks.example.com/x"


def test_unknown_trigger_rejected():
    with pytest.raises(ValueError, match="Unknown trigger"):
        config_from({"trigger": "webhook"})


def test_unknown_image_source_rejected():
    with pytest.raises(ValueError, match="Unknown imageSource"):
        config_from({"imageSource": "dockerhub"})


def test_max_receive_count_must_be_positive():
    with pytest.raises(ValueError, match="maxReceiveCount"):
        config_from({"maxReceiveCount": "0"})
