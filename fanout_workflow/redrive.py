"""
In-memory stand-in for the main queue and its dead-letter queue.

Mirrors the SQS redrive rule: every receive increments the message's receive
count, and the receive that would push it past ``max_receive_count`` moves
the message to the dead-letter queue instead of delivering it. Records are
returned in the shape the Lambda SQS event source delivers them.
"""

import itertools
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedrivePolicy:
    max_receive_count: int = 3
    retention: timedelta = timedelta(days=14)

    def should_dead_letter(self, receive_count: int) -> bool:
        return receive_count > self.max_receive_count


@dataclass
class _Message:
    message_id: str
    body: str
    attributes: Dict[str, str]
    receive_count: int = 0
    in_flight: bool = False


@dataclass
class LocalQueue:
    name: str = "fanout-queue"
    redrive_policy: Optional[RedrivePolicy] = field(default_factory=RedrivePolicy)

    def __post_init__(self) -> None:
        self._messages: "OrderedDict[str, _Message]" = OrderedDict()
        self._ids = itertools.count(1)
        self.dead_letters: List[Dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._messages)

    def send(self, body: Any, attributes: Optional[Dict[str, str]] = None) -> str:
        """Enqueue a message; non-string bodies are JSON encoded."""
        if not isinstance(body, str):
            body = json.dumps(body)
        message_id = f"{self.name}-{next(self._ids)}"
        self._messages[message_id] = _Message(message_id, body, dict(attributes or {}))
        return message_id

    def receive(self) -> Optional[Dict[str, Any]]:
        """Deliver the oldest visible message, or ``None`` when there is none."""
        for message in list(self._messages.values()):
            if message.in_flight:
                continue
            message.receive_count += 1
            if self.redrive_policy and self.redrive_policy.should_dead_letter(message.receive_count):
                logger.warning(
                    f"Moving {message.message_id} to dead-letter queue after "
                    f"{message.receive_count - 1} receives"
                )
                del self._messages[message.message_id]
                self.dead_letters.append(self._to_record(message))
                continue
            message.in_flight = True
            return self._to_record(message)
        return None

    def delete(self, message_id: str) -> None:
        """Acknowledge a processed message."""
        self._messages.pop(message_id, None)

    def release(self, message_id: str) -> None:
        """Make an unacknowledged message visible again, as a lapsed visibility timeout does."""
        message = self._messages.get(message_id)
        if message is not None:
            message.in_flight = False

    def _to_record(self, message: _Message) -> Dict[str, Any]:
        return {
            "messageId": message.message_id,
            "receiptHandle": f"{message.message_id}#{message.receive_count}",
            "body": message.body,
            "attributes": {"ApproximateReceiveCount": str(message.receive_count)},
            "messageAttributes": {
                name: {"stringValue": value, "dataType": "String"}
                for name, value in message.attributes.items()
            },
            "eventSource": "aws:sqs",
            "eventSourceARN": f"arn:aws:sqs:local:000000000000:{self.name}",
        }
