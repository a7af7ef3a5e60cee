"""
Workflow policy shared by the CDK state machine and the local run model.

The Step Functions definition in ``stacks/fanout_stack.py`` and the
``WorkflowRun`` state machine in ``fanout_workflow/run.py`` both read their
branching, retry and timeout settings from here so the two never drift apart.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Tuple


class TaskType(str, Enum):
    """Discriminator selecting which container task processes a work item."""

    A = "A"
    B = "B"


DEFAULT_TASK_TYPE = TaskType.A

# Name of the SQS message attribute carrying the discriminator
TASK_TYPE_ATTRIBUTE = "taskType"

# Execution input field holding the object to process
S3_FILE_PATH_FIELD = "s3FilePath"

# Amazon States Language error names
TASK_FAILED_ERROR = "States.TaskFailed"
TIMEOUT_ERROR = "States.Timeout"
ALL_ERRORS = "States.ALL"

TASK_TIMEOUT = timedelta(minutes=30)
RUN_TIMEOUT = timedelta(minutes=60)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry settings applied to each task-running state.

    ``max_attempts`` follows the Amazon States Language meaning: the number
    of retries after the first attempt.
    """

    max_attempts: int = 3
    interval: timedelta = timedelta(seconds=5)
    backoff_rate: float = 1.0
    errors: Tuple[str, ...] = field(default=(TASK_FAILED_ERROR,))

    def matches(self, error: str) -> bool:
        """
        Whether ``error`` is covered by ``errors``.

        ``States.ALL`` matches everything and ``States.TaskFailed`` matches
        every error except ``States.Timeout``, as in an ASL ``ErrorEquals``.
        """
        for name in self.errors:
            if name == ALL_ERRORS or name == error:
                return True
            if name == TASK_FAILED_ERROR and error != TIMEOUT_ERROR:
                return True
        return False

    def allows_retry(self, retries_used: int, error: str) -> bool:
        return retries_used < self.max_attempts and self.matches(error)

    def delay_for(self, retries_used: int) -> timedelta:
        """Delay before retry number ``retries_used + 1``."""
        return self.interval * (self.backoff_rate ** retries_used)


DEFAULT_RETRY_POLICY = RetryPolicy()


def choose_branch(task_type: Any) -> TaskType:
    """Branch B only on an exact ``"B"`` match; everything else runs A."""
    if task_type == TaskType.B.value:
        return TaskType.B
    return TaskType.A


def task_environment(execution_input: Dict[str, Any], task_type: TaskType) -> Dict[str, Any]:
    """Container environment injected by the task-running state of ``task_type``."""
    return {
        "S3_FILE_PATH": execution_input.get(S3_FILE_PATH_FIELD),
        "TASK_TYPE": task_type.value,
    }
