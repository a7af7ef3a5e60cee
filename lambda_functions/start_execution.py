"""
Queue-to-workflow dispatcher Lambda function.

Triggered by the SQS event source mapping on the fan-out queue. For every
record it reads the ``taskType`` message attribute (default ``"A"``), merges
it into the JSON message body and starts one Step Functions execution with
the result.

Records that cannot be processed are reported back as batch item failures so
SQS redelivers only those, and moves them to the dead-letter queue once the
queue's maximum receive count is exceeded.

Environment Variables:
    STATE_MACHINE_ARN: ARN of the fan-out state machine
    LOG_LEVEL: Logging level (default INFO)
"""

import json
import logging
import os
from typing import Any, Dict, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

# Configure logging
logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))

# Initialize AWS clients
stepfunctions_client = boto3.client("stepfunctions")

DEFAULT_TASK_TYPE = "A"
TASK_TYPE_ATTRIBUTE = "taskType"


class MalformedPayload(ValueError):
    """Raised when a message body is not a JSON object."""


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Start one workflow execution per SQS record.

    Args:
        event: SQS event containing message records
        context: Lambda context object

    Returns:
        Partial batch response listing the records that were not processed
    """
    records = event.get("Records", [])
    logger.info(f"Processing {len(records)} messages")

    failures: List[Dict[str, str]] = []
    for record in records:
        message_id = record.get("messageId")
        try:
            payload = parse_payload(record)
            task_type = resolve_task_type(record)
            execution_arn = start_workflow(build_execution_input(payload, task_type))
            logger.info(f"Message {message_id} started execution {execution_arn} (taskType={task_type})")
        except MalformedPayload as e:
            logger.error(f"Malformed payload in message {message_id}: {str(e)}")
            failures.append({"itemIdentifier": message_id})
        except (ClientError, BotoCoreError) as e:
            logger.exception(f"Failed to start execution for message {message_id}: {str(e)}")
            failures.append({"itemIdentifier": message_id})

    if failures:
        logger.warning(f"{len(failures)} of {len(records)} messages left for redelivery")

    return {"batchItemFailures": failures}


def parse_payload(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Decode the record body as a JSON object.

    Raises:
        MalformedPayload: If the body is missing, not JSON, or not an object
    """
    body = record.get("body")
    if body is None:
        raise MalformedPayload("message has no body")
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"body is not valid JSON: {str(e)}") from e
    if not isinstance(payload, dict):
        raise MalformedPayload(f"body must be a JSON object, got {type(payload).__name__}")
    return payload


def resolve_task_type(record: Dict[str, Any]) -> str:
    """Read the taskType message attribute, defaulting to "A" when absent."""
    attributes = record.get("messageAttributes") or {}
    attribute = attributes.get(TASK_TYPE_ATTRIBUTE) or {}
    return attribute.get("stringValue") or DEFAULT_TASK_TYPE


def build_execution_input(payload: Dict[str, Any], task_type: str) -> Dict[str, Any]:
    """Shallow merge of the payload and the resolved discriminator."""
    return {**payload, TASK_TYPE_ATTRIBUTE: task_type}


def start_workflow(execution_input: Dict[str, Any]) -> str:
    """
    Start a Step Functions execution with the given input.

    No execution name is supplied, so a redelivered message starts a second
    execution rather than being deduplicated.

    Returns:
        The ARN of the started execution
    """
    response = stepfunctions_client.start_execution(
        stateMachineArn=os.environ["STATE_MACHINE_ARN"],
        input=json.dumps(execution_input),
    )
    return response["executionArn"]
