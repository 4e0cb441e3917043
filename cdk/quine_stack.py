"""
Quine Infrastructure Stack
Runs Quine as an ECS Fargate service inside a new VPC, optionally persisting
to Amazon Keyspaces and optionally exposed through a public load balancer.
"""
from aws_cdk import (
    Stack,
    Duration,
    RemovalPolicy,
    CfnOutput,
    Environment,
    Tags,
    aws_cassandra as cassandra,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_logs as logs,
)
from aws_lambda_powertools import Logger
from constructs import Construct

from deployment_config import DeploymentConfig
from quine_image import resolve_quine_image

logger = Logger(service="quine-stack")

PROJECT_TAG = "quine-aws-cdk-demo"
CONTAINER_NAME = "quine"
CONTAINER_PORT = 8080
LISTENER_PORT = 80

# Four vCPUs is the Fargate maximum, and 8192 MiB the smallest memory size
# Fargate pairs with it.
TASK_CPU = 4096
TASK_MEMORY_MIB = 8192

HEALTH_CHECK_URL = "http://127.0.0.1:8080/api/v1/admin/build-info"

OUTPUT_CLUSTER_NAME = "ecsClusterName"
OUTPUT_SERVICE_NAME = "ecsQuineServiceName"
OUTPUT_TASK_DEFINITION_ARN = "ecsQuineTaskDefinitionArn"
OUTPUT_LOAD_BALANCER_ENDPOINT = "loadBalancerEndpoint"
OUTPUT_KEYSPACE_NAME = "quineKeyspaceName"


class QuineStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, config: DeploymentConfig, **kwargs) -> None:
        # Nothing is added to the app until the configuration is known to be usable
        config.validate()
        kwargs.setdefault("env", Environment(account=config.account, region=config.region))
        super().__init__(scope, construct_id, **kwargs)

        self.config = config
        self.keyspace = None
        self.load_balancer = None
        self.load_balancer_security_group = None

        Tags.of(self).add("project", PROJECT_TAG)

        logger.info("Declaring Quine stack", extra={
            "stack": construct_id,
            "use_keyspaces": config.use_keyspaces,
            "run_quine_container": config.run_quine_container,
            "public_load_balancer_enabled": config.public_load_balancer_enabled,
        })

        # Single NAT gateway keeps the demo cheap; an ALB needs subnets in two AZs
        self.vpc = ec2.Vpc(
            self, "vpc",
            max_azs=2 if config.public_load_balancer_enabled else 1,
            nat_gateways=1
        )

        self.cluster = ecs.Cluster(
            self, "Cluster",
            vpc=self.vpc,
            enable_fargate_capacity_providers=True
        )

        self.task_definition = ecs.FargateTaskDefinition(
            self, "TaskDef",
            cpu=TASK_CPU,
            memory_limit_mib=TASK_MEMORY_MIB
        )

        # Cassandra drivers read the system tables on connect
        self.task_definition.task_role.add_to_principal_policy(iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=["cassandra:Select"],
            resources=[f"arn:aws:cassandra:{config.region}:{config.account}:/keyspace/system*"]
        ))

        # Remote shell into the container through ECS Exec
        self.task_definition.task_role.add_to_principal_policy(iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=[
                "ssmmessages:CreateControlChannel",
                "ssmmessages:CreateDataChannel",
                "ssmmessages:OpenControlChannel",
                "ssmmessages:OpenDataChannel"
            ],
            resources=["*"]
        ))

        if config.use_keyspaces:
            self._add_keyspace()

        self.container = self.task_definition.add_container(
            CONTAINER_NAME,
            image=resolve_quine_image(self, config),
            logging=ecs.LogDrivers.aws_logs(
                stream_prefix=CONTAINER_NAME,
                mode=ecs.AwsLogDriverMode.NON_BLOCKING,
                log_retention=logs.RetentionDays.ONE_WEEK
            ),
            cpu=TASK_CPU,
            memory_limit_mib=TASK_MEMORY_MIB,
            # Reaps zombie processes left behind by ECS Exec sessions
            linux_parameters=ecs.LinuxParameters(
                self, "quineLinuxParams",
                init_process_enabled=True
            ),
            start_timeout=Duration.seconds(10),
            stop_timeout=Duration.seconds(5),
            port_mappings=[ecs.PortMapping(
                container_port=CONTAINER_PORT,
                host_port=CONTAINER_PORT
            )],
            health_check=self._health_check() if config.container_health_check_enabled else None
        )

        self.service = ecs.FargateService(
            self, "FargateService",
            cluster=self.cluster,
            task_definition=self.task_definition,
            propagate_tags=ecs.PropagatedTagSource.TASK_DEFINITION,
            # A single task, so the heavier weight lands it on Fargate Spot
            capacity_provider_strategies=[
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE_SPOT", weight=2),
                ecs.CapacityProviderStrategy(capacity_provider="FARGATE", weight=1),
            ],
            desired_count=1 if config.run_quine_container else 0,
            enable_ecs_managed_tags=True,
            enable_execute_command=True
        )

        if config.public_load_balancer_enabled:
            self._add_public_load_balancer()

        # Outputs
        CfnOutput(
            self, OUTPUT_CLUSTER_NAME,
            value=self.cluster.cluster_name,
            description="ECS cluster running Quine"
        )

        CfnOutput(
            self, OUTPUT_SERVICE_NAME,
            value=self.service.service_name,
            description="ECS service running the Quine task"
        )

        CfnOutput(
            self, OUTPUT_TASK_DEFINITION_ARN,
            value=self.task_definition.task_definition_arn,
            description="Quine task definition ARN"
        )

    def _add_keyspace(self) -> None:
        self.keyspace = cassandra.CfnKeyspace(
            self, "CassandraKeyspace",
            keyspace_name=self.config.keyspace_name
        )
        # Keyspaces retains keyspaces by default; this demo drops it with the stack
        self.keyspace.apply_removal_policy(RemovalPolicy.DESTROY)

        self.task_definition.task_role.add_to_principal_policy(iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=["cassandra:*"],
            resources=[
                f"arn:aws:cassandra:{self.config.region}:{self.config.account}"
                f":/keyspace/{self.keyspace.ref}/table/*"
            ]
        ))

        CfnOutput(
            self, OUTPUT_KEYSPACE_NAME,
            value=self.keyspace.ref,
            description="Amazon Keyspaces keyspace used by Quine"
        )

    def _health_check(self) -> ecs.HealthCheck:
        return ecs.HealthCheck(
            command=["CMD-SHELL", f"curl -sf \"{HEALTH_CHECK_URL}\" || exit 1"],
            interval=Duration.seconds(30),
            start_period=Duration.seconds(30)
        )

    def _add_public_load_balancer(self) -> None:
        self.load_balancer_security_group = ec2.SecurityGroup(
            self, "QuineALBSecGroup",
            vpc=self.vpc
        )

        for peer in self.config.public_load_balancer_ingress_peers:
            self.load_balancer_security_group.add_ingress_rule(
                peer=ec2.Peer.ipv4(peer),
                connection=ec2.Port.tcp(LISTENER_PORT)
            )

        if not self.config.public_load_balancer_ingress_peers:
            logger.warning("Public load balancer has no ingress peers and will not accept traffic")

        self.load_balancer = elbv2.ApplicationLoadBalancer(
            self, "QuineALB",
            vpc=self.vpc,
            internet_facing=True,
            security_group=self.load_balancer_security_group
        )

        listener = self.load_balancer.add_listener(
            "Listener",
            port=LISTENER_PORT,
            open=False
        )

        self.service.register_load_balancer_targets(ecs.EcsTarget(
            container_name=CONTAINER_NAME,
            container_port=CONTAINER_PORT,
            new_target_group_id="ecs-fargate-quine",
            listener=ecs.ListenerConfig.application_listener(
                listener,
                protocol=elbv2.ApplicationProtocol.HTTP
            )
        ))

        CfnOutput(
            self, OUTPUT_LOAD_BALANCER_ENDPOINT,
            value=self.load_balancer.load_balancer_dns_name,
            description="Public DNS name of the Quine load balancer"
        )
