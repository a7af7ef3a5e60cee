"""
Local model of one workflow run.

The managed state machine chooses a branch, runs one container task with a
bounded retry budget and enforces a per-attempt and a per-run timeout. This
module expresses that routine as an explicit finite-state machine driven by
external callbacks: whoever launches the container reports its completion
through ``task_succeeded`` / ``task_failed`` and advances the clock with
``tick``. Time is always passed in, never read from the system clock.

``TIMED_OUT`` covers both timeouts. In Step Functions only the run timeout
ends the execution as TIMED_OUT; an attempt exceeding the task state's
``TimeoutSeconds`` raises ``States.Timeout``, which is not retried, and the
execution ends FAILED with that error. The model reports both as
``TIMED_OUT`` and keeps the cause in ``error``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from fanout_workflow.policy import (
    DEFAULT_RETRY_POLICY,
    RUN_TIMEOUT,
    TASK_FAILED_ERROR,
    TASK_TIMEOUT,
    TASK_TYPE_ATTRIBUTE,
    TIMEOUT_ERROR,
    RetryPolicy,
    TaskType,
    choose_branch,
    task_environment,
)

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    CHOOSING = "Choosing"
    RUNNING_TASK_A = "RunningTaskA"
    RUNNING_TASK_B = "RunningTaskB"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.TIMED_OUT)


_RUNNING_STATUS = {
    TaskType.A: RunStatus.RUNNING_TASK_A,
    TaskType.B: RunStatus.RUNNING_TASK_B,
}


class WorkflowError(Exception):
    """Base class for workflow model errors."""


class InvalidTransition(WorkflowError):
    """Raised when a callback does not apply to the run's current state."""


@dataclass(frozen=True)
class TaskInvocation:
    """A container launch the driver must perform."""

    execution_id: str
    task_type: TaskType
    attempt: int
    environment: Dict[str, Any]


@dataclass
class WorkflowRun:
    execution_id: str
    execution_input: Dict[str, Any]
    started_at: datetime
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY
    task_timeout: timedelta = TASK_TIMEOUT
    run_timeout: timedelta = RUN_TIMEOUT

    status: RunStatus = field(default=RunStatus.CHOOSING, init=False)
    branch: Optional[TaskType] = field(default=None, init=False)
    attempt: int = field(default=0, init=False)
    error: Optional[str] = field(default=None, init=False)
    history: List[Tuple[datetime, RunStatus, str]] = field(default_factory=list, init=False)

    _attempt_started_at: Optional[datetime] = field(default=None, init=False, repr=False)
    _retry_at: Optional[datetime] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        # Execution input is passed by value
        self.execution_input = dict(self.execution_input)
        self.history.append((self.started_at, self.status, "ExecutionStarted"))

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def attempt_in_flight(self) -> bool:
        return self._attempt_started_at is not None

    @property
    def retry_due_at(self) -> Optional[datetime]:
        return self._retry_at

    def begin(self, now: datetime) -> TaskInvocation:
        """Evaluate the choice and launch the first attempt of the chosen task."""
        if self.status is not RunStatus.CHOOSING:
            raise InvalidTransition(
                f"Run {self.execution_id} already left Choosing (status {self.status.value})"
            )
        self.branch = choose_branch(self.execution_input.get(TASK_TYPE_ATTRIBUTE))
        self._transition(now, _RUNNING_STATUS[self.branch], f"ChoseTask{self.branch.value}")
        return self._launch(now)

    def task_succeeded(self, now: datetime) -> RunStatus:
        self._require_attempt("task_succeeded")
        if self._check_timeouts(now):
            return self.status
        self._attempt_started_at = None
        self._transition(now, RunStatus.SUCCEEDED, "TaskSucceeded")
        return self.status

    def task_failed(self, now: datetime, error: str = TASK_FAILED_ERROR) -> RunStatus:
        """
        Record a failed attempt.

        While the retry budget lasts the run stays in its running state with a
        retry scheduled; ``tick`` launches it once the interval has elapsed.
        A ``States.Timeout`` reported by the driver that the policy does not
        retry ends the run ``TIMED_OUT``.
        """
        self._require_attempt("task_failed")
        if self._check_timeouts(now):
            return self.status
        self._attempt_started_at = None
        retries_used = self.attempt - 1
        if self.retry_policy.allows_retry(retries_used, error):
            self._retry_at = now + self.retry_policy.delay_for(retries_used)
            logger.info(
                f"Run {self.execution_id}: attempt {self.attempt} failed with {error}, "
                f"retrying at {self._retry_at.isoformat()}"
            )
            self.history.append((now, self.status, f"TaskFailed:{error}"))
            return self.status
        if error == TIMEOUT_ERROR:
            self._time_out(now, error)
            return self.status
        self.error = error
        self._transition(now, RunStatus.FAILED, f"TaskFailed:{error}")
        return self.status

    def tick(self, now: datetime) -> Optional[TaskInvocation]:
        """Advance the clock; returns the retry to launch when one is due."""
        if self.is_finished:
            return None
        if self._check_timeouts(now):
            return None
        if self._retry_at is not None and now >= self._retry_at:
            self._retry_at = None
            return self._launch(now)
        return None

    def _launch(self, now: datetime) -> TaskInvocation:
        self.attempt += 1
        self._attempt_started_at = now
        self.history.append((now, self.status, f"TaskStarted:{self.attempt}"))
        return TaskInvocation(
            execution_id=self.execution_id,
            task_type=self.branch,
            attempt=self.attempt,
            environment=task_environment(self.execution_input, self.branch),
        )

    def _check_timeouts(self, now: datetime) -> bool:
        if now - self.started_at >= self.run_timeout:
            self._time_out(now, "ExecutionTimedOut")
            return True
        if (
            self._attempt_started_at is not None
            and now - self._attempt_started_at >= self.task_timeout
        ):
            self._time_out(now, TIMEOUT_ERROR)
            return True
        return False

    def _time_out(self, now: datetime, reason: str) -> None:
        self._attempt_started_at = None
        self._retry_at = None
        self.error = reason
        self._transition(now, RunStatus.TIMED_OUT, reason)

    def _require_attempt(self, callback: str) -> None:
        if self.is_finished:
            raise InvalidTransition(
                f"{callback} on finished run {self.execution_id} ({self.status.value})"
            )
        if self._attempt_started_at is None:
            raise InvalidTransition(f"{callback} with no attempt in flight on {self.execution_id}")

    def _transition(self, now: datetime, status: RunStatus, event: str) -> None:
        logger.debug(f"Run {self.execution_id}: {self.status.value} -> {status.value} ({event})")
        self.status = status
        self.history.append((now, status, event))
