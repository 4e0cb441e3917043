#!/usr/bin/env python3
"""
Quine CDK Application Entry Point
Deploys the Quine streaming graph on Amazon ECS Fargate
"""
import aws_cdk as cdk
from aws_lambda_powertools import Logger

from deployment_config import DeploymentConfig, parse_bool
from network_identity import DigPublicIpResolver, resolve_ingress_peers
from quine_stack import QuineStack

logger = Logger(service="quine-cdk")


def main(app: cdk.App, resolver=None) -> QuineStack:
    """Declare the Quine stack on `app`; `resolver` replaces the dig lookup when given"""
    try:
        # Account and region come from context, then CDK_DEFAULT_*, then the current AWS
        # credentials. Pin them in cdk.json when working across several accounts.
        config = DeploymentConfig.from_context(app.node)

        if config.public_load_balancer_enabled and parse_bool(app.node.try_get_context("detect_public_ip"), False):
            config.public_load_balancer_ingress_peers = resolve_ingress_peers(
                config.public_load_balancer_ingress_peers,
                resolver=resolver or DigPublicIpResolver()
            )

        return QuineStack(
            app,
            app.node.try_get_context("stack_name") or "QuineAwsCdkStack",
            config=config,
            description="Quine streaming graph on Amazon ECS Fargate"
        )
    except Exception as e:
        logger.error(f"Failed to declare Quine stack: {e}")
        raise


if __name__ == "__main__":
    app = cdk.App()
    main(app)
    app.synth()
