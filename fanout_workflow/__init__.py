"""
Local model of the fan-out workflow: branch policy, run state machine and
queue redrive behaviour.
"""

from fanout_workflow.policy import (
    DEFAULT_RETRY_POLICY,
    DEFAULT_TASK_TYPE,
    RUN_TIMEOUT,
    TASK_TIMEOUT,
    RetryPolicy,
    TaskType,
    choose_branch,
    task_environment,
)
from fanout_workflow.redrive import LocalQueue, RedrivePolicy
from fanout_workflow.run import (
    InvalidTransition,
    RunStatus,
    TaskInvocation,
    WorkflowError,
    WorkflowRun,
)

__all__ = [
    "DEFAULT_RETRY_POLICY",
    "DEFAULT_TASK_TYPE",
    "RUN_TIMEOUT",
    "TASK_TIMEOUT",
    "RetryPolicy",
    "TaskType",
    "choose_branch",
    "task_environment",
    "LocalQueue",
    "RedrivePolicy",
    "InvalidTransition",
    "RunStatus",
    "TaskInvocation",
    "WorkflowError",
    "WorkflowRun",
]
