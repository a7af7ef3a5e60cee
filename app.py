#!/usr/bin/env python3
"""
EventBridge / ECS Fan-out - CDK Python Application

An inbound SQS message starts one of two containerized tasks on ECS Fargate,
chosen by the message's taskType attribute.

Architecture:
- SQS queue with an optional dead-letter queue
- ECS cluster and Fargate task definition
- Step Functions state machine choosing task A or task B, with retries
- One transport from the queue to the workflow: EventBridge rule,
  dispatcher Lambda, or EventBridge Pipe (CDK context "trigger")
"""

import os

import aws_cdk as cdk

from stacks import EventbridgeEcsFanoutStack, FanoutConfig


def main() -> None:
    app = cdk.App()

    config = FanoutConfig.from_context(app.node)

    EventbridgeEcsFanoutStack(
        app,
        "EventbridgeEcsPocStack",
        config=config,
        description=f"Queue-driven ECS fan-out ({config.trigger.value} transport)",
        env=cdk.Environment(
            account=os.getenv("CDK_DEFAULT_ACCOUNT"),
            region=os.getenv("CDK_DEFAULT_REGION"),
        ),
    )

    app.synth()


if __name__ == "__main__":
    main()
