"""
Unit tests for the queue-to-workflow dispatcher Lambda function.

The Step Functions client is replaced with a mock so the tests exercise the
record handling without calling AWS.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from lambda_functions import start_execution
from lambda_functions.start_execution import (
    MalformedPayload,
    build_execution_input,
    lambda_handler,
    parse_payload,
    resolve_task_type,
)

STATE_MACHINE_ARN = "arn:aws:states:us-east-1:123456789012:stateMachine:fanout"


def make_record(body, task_type=None, message_id="msg-1"):
    record = {
        "messageId": message_id,
        "receiptHandle": f"{message_id}-handle",
        "body": body if isinstance(body, str) else json.dumps(body),
        "attributes": {"ApproximateReceiveCount": "1"},
        "messageAttributes": {},
        "eventSource": "aws:sqs",
    }
    if task_type is not None:
        record["messageAttributes"]["taskType"] = {
            "stringValue": task_type,
            "dataType": "String",
        }
    return record


@pytest.fixture
def sfn_client(monkeypatch):
    monkeypatch.setenv("STATE_MACHINE_ARN", STATE_MACHINE_ARN)
    client = MagicMock()
    client.start_execution.return_value = {
        "executionArn": f"{STATE_MACHINE_ARN}:exec-1",
        "startDate": "2024-01-01T00:00:00Z",
    }
    with patch.object(start_execution, "stepfunctions_client", client):
        yield client


class TestResolveTaskType:
    """Tests for reading the taskType discriminator."""

    def test_defaults_to_a_without_attribute(self):
        assert resolve_task_type(make_record({})) == "A"

    def test_defaults_to_a_without_message_attributes(self):
        record = make_record({})
        del record["messageAttributes"]
        assert resolve_task_type(record) == "A"

    def test_defaults_to_a_with_empty_string_value(self):
        assert resolve_task_type(make_record({}, task_type="")) == "A"

    @pytest.mark.parametrize("task_type", ["A", "B"])
    def test_known_values_pass_through(self, task_type):
        assert resolve_task_type(make_record({}, task_type=task_type)) == task_type

    def test_unknown_value_is_not_rewritten(self):
        # The workflow's choice state sends unknown values to branch A
        assert resolve_task_type(make_record({}, task_type="C")) == "C"


class TestParsePayload:
    """Tests for decoding message bodies."""

    def test_parses_json_object(self):
        assert parse_payload(make_record({"s3FilePath": "s3://bucket/key"})) == {
            "s3FilePath": "s3://bucket/key"
        }

    def test_rejects_invalid_json(self):
        with pytest.raises(MalformedPayload):
            parse_payload(make_record("{not json"))

    def test_rejects_non_object_json(self):
        with pytest.raises(MalformedPayload, match="JSON object"):
            parse_payload(make_record("[1, 2, 3]"))

    def test_rejects_missing_body(self):
        record = make_record({})
        del record["body"]
        with pytest.raises(MalformedPayload):
            parse_payload(record)

    def test_malformed_payload_is_value_error(self):
        assert issubclass(MalformedPayload, ValueError)


class TestBuildExecutionInput:
    """Tests for merging the payload with the discriminator."""

    def test_merges_task_type(self):
        payload = {"s3FilePath": "s3://bucket/key"}
        assert build_execution_input(payload, "B") == {
            "s3FilePath": "s3://bucket/key",
            "taskType": "B",
        }

    def test_resolved_task_type_overrides_payload_field(self):
        payload = {"taskType": "B", "other": 1}
        assert build_execution_input(payload, "A") == {"taskType": "A", "other": 1}

    def test_does_not_mutate_payload(self):
        payload = {"s3FilePath": "s3://bucket/key"}
        build_execution_input(payload, "A")
        assert payload == {"s3FilePath": "s3://bucket/key"}


class TestLambdaHandler:
    """Tests for the handler entry point."""

    def test_starts_execution_with_merged_input(self, sfn_client):
        event = {"Records": [make_record({"s3FilePath": "s3://bucket/key"}, task_type="B")]}

        result = lambda_handler(event, None)

        assert result == {"batchItemFailures": []}
        sfn_client.start_execution.assert_called_once()
        kwargs = sfn_client.start_execution.call_args.kwargs
        assert kwargs["stateMachineArn"] == STATE_MACHINE_ARN
        assert json.loads(kwargs["input"]) == {
            "s3FilePath": "s3://bucket/key",
            "taskType": "B",
        }
        # No execution name: redeliveries are not deduplicated
        assert "name" not in kwargs

    def test_default_task_type_reaches_workflow(self, sfn_client):
        lambda_handler({"Records": [make_record({"s3FilePath": "s3://b/k"})]}, None)

        sent = json.loads(sfn_client.start_execution.call_args.kwargs["input"])
        assert sent["taskType"] == "A"

    def test_one_execution_per_record(self, sfn_client):
        records = [
            make_record({"n": i}, message_id=f"msg-{i}") for i in range(3)
        ]

        result = lambda_handler({"Records": records}, None)

        assert result == {"batchItemFailures": []}
        assert sfn_client.start_execution.call_count == 3

    def test_redelivered_message_starts_duplicate_run(self, sfn_client):
        record = make_record({"s3FilePath": "s3://b/k"})

        lambda_handler({"Records": [record]}, None)
        lambda_handler({"Records": [record]}, None)

        assert sfn_client.start_execution.call_count == 2

    def test_malformed_record_does_not_fail_batch(self, sfn_client):
        records = [
            make_record("not json", message_id="bad"),
            make_record({"s3FilePath": "s3://b/k"}, message_id="good"),
        ]

        result = lambda_handler({"Records": records}, None)

        assert result == {"batchItemFailures": [{"itemIdentifier": "bad"}]}
        sfn_client.start_execution.assert_called_once()

    def test_start_failure_leaves_record_unacknowledged(self, sfn_client):
        sfn_client.start_execution.side_effect = ClientError(
            {"Error": {"Code": "ExecutionLimitExceeded", "Message": "Too many executions"}},
            "StartExecution",
        )

        result = lambda_handler({"Records": [make_record({}, message_id="m")]}, None)

        assert result == {"batchItemFailures": [{"itemIdentifier": "m"}]}

    def test_connection_error_fails_only_that_record(self, sfn_client):
        sfn_client.start_execution.side_effect = [
            {"executionArn": f"{STATE_MACHINE_ARN}:exec-1"},
            EndpointConnectionError(endpoint_url="https://states.us-east-1.amazonaws.com"),
            {"executionArn": f"{STATE_MACHINE_ARN}:exec-3"},
        ]
        records = [make_record({}, message_id=m) for m in ("m1", "m2", "m3")]

        result = lambda_handler({"Records": records}, None)

        assert result == {"batchItemFailures": [{"itemIdentifier": "m2"}]}
        assert sfn_client.start_execution.call_count == 3

    def test_missing_state_machine_arn_propagates(self, sfn_client, monkeypatch):
        monkeypatch.delenv("STATE_MACHINE_ARN")

        with pytest.raises(KeyError):
            lambda_handler({"Records": [make_record({})]}, None)

    def test_empty_event(self, sfn_client):
        assert lambda_handler({}, None) == {"batchItemFailures": []}
        sfn_client.start_execution.assert_not_called()
