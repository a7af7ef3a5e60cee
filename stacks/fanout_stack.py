"""
Fan-out Stack: SQS queue -> Step Functions -> ECS Fargate task A or B

Creates the queue (and optional dead-letter queue), an ECS cluster with a
Fargate task definition, a state machine that picks task A or task B from the
message's ``taskType`` flag, and one of three alternative transports carrying
queue messages to the workflow.
"""

import os
from typing import Dict, Tuple

from aws_cdk import (
    Stack,
    CfnOutput,
    Duration,
    RemovalPolicy,
    Tags,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_events as events,
    aws_events_targets as events_targets,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_lambda_event_sources as lambda_event_sources,
    aws_logs as logs,
    aws_pipes as pipes,
    aws_sqs as sqs,
    aws_stepfunctions as sfn,
    aws_stepfunctions_tasks as sfn_tasks,
)
from constructs import Construct

from fanout_workflow.policy import (
    DEFAULT_RETRY_POLICY,
    RUN_TIMEOUT,
    S3_FILE_PATH_FIELD,
    TASK_TIMEOUT,
    TASK_TYPE_ATTRIBUTE,
    TaskType,
)
from fanout_workflow.redrive import RedrivePolicy
from stacks.config import FanoutConfig, ImageSource, TriggerMode

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LAMBDA_ASSET_DIR = os.path.join(PROJECT_ROOT, "lambda_functions")
NOTIFIER_ASSET_DIR = os.path.join(PROJECT_ROOT, "notifier")

# Pipes parses JSON message bodies, so body fields can be addressed directly
PIPE_INPUT_TEMPLATE = (
    '{"' + S3_FILE_PATH_FIELD + '": "<$.body.' + S3_FILE_PATH_FIELD + '>", '
    '"' + TASK_TYPE_ATTRIBUTE + '": "<$.messageAttributes.' + TASK_TYPE_ATTRIBUTE + '.stringValue>"}'
)


class EventbridgeEcsFanoutStack(Stack):
    """
    CDK Stack for the queue-driven ECS fan-out

    The transport between the queue and the workflow is chosen by
    ``FanoutConfig.trigger``:
    - rule: EventBridge rule on SendMessage API calls runs task A directly
    - lambda: dispatcher Lambda starts one execution per message
    - pipe: EventBridge Pipe starts executions with an input template
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        config: FanoutConfig = FanoutConfig(),
        **kwargs
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.config = config
        self.redrive_policy = RedrivePolicy(max_receive_count=config.max_receive_count)

        # Networking and compute
        self.vpc = self._create_vpc()
        self.cluster = ecs.Cluster(self, "FanoutCluster", vpc=self.vpc)

        # Messaging
        self.dead_letter_queue = (
            self._create_dead_letter_queue() if config.enable_dead_letter_queue else None
        )
        self.queue = self._create_queue()

        # Container task shared by both branches
        self.task_definition, self.container = self._create_task_definition()

        # Workflow
        self.state_machine = self._create_state_machine()

        # Transport
        self.dispatcher_function = None
        self.pipe = None
        if config.trigger is TriggerMode.RULE:
            self._create_send_message_rule()
        elif config.trigger is TriggerMode.LAMBDA:
            self.dispatcher_function = self._create_dispatcher_function()
        else:
            self.pipe = self._create_pipe()

        Tags.of(self).add("Project", "EventbridgeEcsFanout")
        Tags.of(self).add("Trigger", config.trigger.value)

        self._create_outputs()

    def _create_vpc(self) -> ec2.Vpc:
        """Public subnets only: tasks get a public IP instead of a NAT gateway."""
        return ec2.Vpc(
            self, "FanoutVpc",
            max_azs=2,
            nat_gateways=0,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name="Public",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=24,
                )
            ],
        )

    def _create_dead_letter_queue(self) -> sqs.Queue:
        return sqs.Queue(
            self, "FanoutDeadLetterQueue",
            retention_period=Duration.seconds(int(self.redrive_policy.retention.total_seconds())),
            encryption=sqs.QueueEncryption.SQS_MANAGED,
            removal_policy=RemovalPolicy.DESTROY,
        )

    def _create_queue(self) -> sqs.Queue:
        """
        Create the inbound work queue

        Returns:
            sqs.Queue: The queue, redriving to the dead-letter queue when one exists
        """
        dead_letter_queue = None
        if self.dead_letter_queue is not None:
            dead_letter_queue = sqs.DeadLetterQueue(
                max_receive_count=self.redrive_policy.max_receive_count,
                queue=self.dead_letter_queue,
            )

        return sqs.Queue(
            self, "FanoutQueue",
            # Longer than the dispatcher timeout so in-flight records are not redelivered
            visibility_timeout=Duration.seconds(60),
            dead_letter_queue=dead_letter_queue,
            encryption=sqs.QueueEncryption.SQS_MANAGED,
            removal_policy=RemovalPolicy.DESTROY,
        )

    def _create_task_definition(self) -> Tuple[ecs.FargateTaskDefinition, ecs.ContainerDefinition]:
        """
        Create the Fargate task definition run by both branches

        Returns:
            Tuple of the task definition and its container definition
        """
        task_definition = ecs.FargateTaskDefinition(
            self, "FanoutTaskDef",
            cpu=256,
            memory_limit_mib=512,
        )

        environment: Dict[str, str] = {
            "SQS_QUEUE_URL": self.queue.queue_url,
            "LOG_LEVEL": self.config.log_level,
        }
        if self.config.slack_channel:
            environment["SLACK_CHANNEL"] = self.config.slack_channel
        if self.config.slack_webhook_url:
            environment["SLACK_WEBHOOK_URL"] = self.config.slack_webhook_url

        container = task_definition.add_container(
            "FanoutContainer",
            image=self._container_image(),
            memory_limit_mib=512,
            cpu=256,
            environment=environment,
            logging=ecs.LogDrivers.aws_logs(
                stream_prefix="fanout",
                log_retention=logs.RetentionDays.ONE_WEEK,
            ),
        )

        # Containers launched by the rule transport read the message themselves
        self.queue.grant_consume_messages(task_definition.task_role)

        return task_definition, container

    def _container_image(self) -> ecs.ContainerImage:
        if self.config.image_source is ImageSource.NOTIFIER:
            return ecs.ContainerImage.from_asset(NOTIFIER_ASSET_DIR)
        return ecs.ContainerImage.from_registry(self.config.container_image)

    def _create_task_state(self, task_type: TaskType) -> sfn_tasks.EcsRunTask:
        """
        Create the state that runs the container for one branch

        Args:
            task_type: Branch whose TASK_TYPE is injected into the container

        Returns:
            sfn_tasks.EcsRunTask: Synchronous run-task state
        """
        state = sfn_tasks.EcsRunTask(
            self, f"RunTask{task_type.value}",
            integration_pattern=sfn.IntegrationPattern.RUN_JOB,
            cluster=self.cluster,
            task_definition=self.task_definition,
            launch_target=sfn_tasks.EcsFargateLaunchTarget(
                platform_version=ecs.FargatePlatformVersion.LATEST
            ),
            assign_public_ip=True,
            subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
            container_overrides=[
                sfn_tasks.ContainerOverride(
                    container_definition=self.container,
                    environment=[
                        sfn_tasks.TaskEnvironmentVariable(
                            name="S3_FILE_PATH",
                            value=sfn.JsonPath.string_at(f"$.{S3_FILE_PATH_FIELD}"),
                        ),
                        sfn_tasks.TaskEnvironmentVariable(
                            name="TASK_TYPE",
                            value=task_type.value,
                        ),
                    ],
                )
            ],
            result_path=sfn.JsonPath.DISCARD,
            task_timeout=sfn.Timeout.duration(
                Duration.seconds(int(TASK_TIMEOUT.total_seconds()))
            ),
        )

        if self.config.enable_task_retry:
            retry = DEFAULT_RETRY_POLICY
            state.add_retry(
                errors=list(retry.errors),
                interval=Duration.seconds(int(retry.interval.total_seconds())),
                max_attempts=retry.max_attempts,
                backoff_rate=retry.backoff_rate,
            )

        return state

    def _create_state_machine(self) -> sfn.StateMachine:
        """
        Create the conditional-dispatch state machine

        Returns:
            sfn.StateMachine: Choice on taskType routing to RunTaskA or RunTaskB
        """
        log_group = logs.LogGroup(
            self, "StateMachineLogGroup",
            log_group_name=f"/aws/vendedlogs/states/{self.stack_name}-fanout",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=RemovalPolicy.DESTROY,
        )

        run_task_a = self._create_task_state(TaskType.A)
        run_task_b = self._create_task_state(TaskType.B)

        task_type_path = f"$.{TASK_TYPE_ATTRIBUTE}"
        choose_task_type = sfn.Choice(
            self, "ChooseTaskType",
            comment="Route to task B on taskType == B, otherwise task A",
        ).when(
            sfn.Condition.and_(
                sfn.Condition.is_present(task_type_path),
                sfn.Condition.is_string(task_type_path),
                sfn.Condition.string_equals(task_type_path, TaskType.B.value),
            ),
            run_task_b,
        ).otherwise(run_task_a)

        return sfn.StateMachine(
            self, "FanoutStateMachine",
            definition_body=sfn.DefinitionBody.from_chainable(choose_task_type),
            timeout=Duration.seconds(int(RUN_TIMEOUT.total_seconds())),
            comment="Fan-out of queue messages to ECS task A or B",
            logs=sfn.LogOptions(
                destination=log_group,
                level=sfn.LogLevel.ALL,
                include_execution_data=True,
            ),
        )

    def _create_send_message_rule(self) -> events.Rule:
        """
        Create the EventBridge rule transport

        Matches CloudTrail SendMessage calls against the queue and runs task A
        with the queue URL in its environment.
        """
        rule = events.Rule(
            self, "SendMessageRule",
            description="Run the fan-out task when a message is sent to the queue",
            event_pattern=events.EventPattern(
                source=["aws.sqs"],
                detail_type=["AWS API Call via CloudTrail"],
                detail={
                    "eventSource": ["sqs.amazonaws.com"],
                    "eventName": ["SendMessage"],
                    "requestParameters": {"queueUrl": [self.queue.queue_url]},
                },
            ),
        )

        rule.add_target(
            events_targets.EcsTask(
                cluster=self.cluster,
                task_definition=self.task_definition,
                task_count=1,
                subnet_selection=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
                assign_public_ip=True,
                security_groups=[
                    ec2.SecurityGroup.from_security_group_id(
                        self, "DefaultSecurityGroup",
                        self.vpc.vpc_default_security_group,
                    )
                ],
                container_overrides=[
                    events_targets.ContainerOverride(
                        container_name=self.container.container_name,
                        environment=[
                            events_targets.TaskEnvironmentVariable(
                                name="TASK_TYPE",
                                value=TaskType.A.value,
                            )
                        ],
                    )
                ],
            )
        )
        return rule

    def _create_dispatcher_function(self) -> _lambda.Function:
        """
        Create the dispatcher Lambda and subscribe it to the queue

        Returns:
            _lambda.Function: Function starting one execution per record
        """
        log_group = logs.LogGroup(
            self, "DispatcherLogGroup",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=RemovalPolicy.DESTROY,
        )

        function = _lambda.Function(
            self, "StartExecutionFunction",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="start_execution.lambda_handler",
            code=_lambda.Code.from_asset(LAMBDA_ASSET_DIR, exclude=["__pycache__", "*.pyc"]),
            timeout=Duration.seconds(30),
            memory_size=128,
            description="Starts a fan-out workflow execution for each queue message",
            environment={
                "STATE_MACHINE_ARN": self.state_machine.state_machine_arn,
                "LOG_LEVEL": self.config.log_level,
            },
            log_group=log_group,
        )

        self.state_machine.grant_start_execution(function)

        function.add_event_source(
            lambda_event_sources.SqsEventSource(
                self.queue,
                batch_size=1,
                # Failed records are retried on their own
                report_batch_item_failures=True,
            )
        )
        return function

    def _create_pipe(self) -> pipes.CfnPipe:
        """
        Create the EventBridge Pipe transport

        Returns:
            pipes.CfnPipe: Pipe from the queue to the state machine
        """
        pipe_role = iam.Role(
            self, "FanoutPipeRole",
            assumed_by=iam.ServicePrincipal("pipes.amazonaws.com"),
            description="Role for the queue to state machine pipe",
        )
        self.queue.grant_consume_messages(pipe_role)
        self.state_machine.grant_start_execution(pipe_role)

        pipe = pipes.CfnPipe(
            self, "FanoutPipe",
            role_arn=pipe_role.role_arn,
            source=self.queue.queue_arn,
            source_parameters=pipes.CfnPipe.PipeSourceParametersProperty(
                sqs_queue_parameters=pipes.CfnPipe.PipeSourceSqsQueueParametersProperty(
                    batch_size=1,
                )
            ),
            target=self.state_machine.state_machine_arn,
            target_parameters=pipes.CfnPipe.PipeTargetParametersProperty(
                # Standard workflows only accept asynchronous starts
                step_function_state_machine_parameters=pipes.CfnPipe.PipeTargetStateMachineParametersProperty(
                    invocation_type="FIRE_AND_FORGET",
                ),
                input_template=PIPE_INPUT_TEMPLATE,
            ),
        )
        pipe.node.add_dependency(pipe_role)
        return pipe

    def _create_outputs(self) -> None:
        """Create CloudFormation outputs for key resources"""
        CfnOutput(
            self, "QueueUrl",
            value=self.queue.queue_url,
            description="URL of the fan-out queue",
        )

        if self.dead_letter_queue is not None:
            CfnOutput(
                self, "DeadLetterQueueUrl",
                value=self.dead_letter_queue.queue_url,
                description="URL of the dead-letter queue",
            )

        CfnOutput(
            self, "StateMachineArn",
            value=self.state_machine.state_machine_arn,
            description="ARN of the fan-out state machine",
        )

        CfnOutput(
            self, "ClusterName",
            value=self.cluster.cluster_name,
            description="Name of the ECS cluster running the tasks",
        )

        if self.dispatcher_function is not None:
            CfnOutput(
                self, "DispatcherFunctionName",
                value=self.dispatcher_function.function_name,
                description="Name of the dispatcher Lambda function",
            )

        if self.pipe is not None:
            CfnOutput(
                self, "PipeName",
                value=self.pipe.ref,
                description="Name of the queue to state machine pipe",
            )
