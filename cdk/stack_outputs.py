"""
Quine Stack Outputs
Reads the identifiers a deployed Quine stack publishes for operators.
"""
from dataclasses import dataclass
from typing import Dict, Optional

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from quine_stack import (
    OUTPUT_CLUSTER_NAME,
    OUTPUT_KEYSPACE_NAME,
    OUTPUT_LOAD_BALANCER_ENDPOINT,
    OUTPUT_SERVICE_NAME,
    OUTPUT_TASK_DEFINITION_ARN,
)

logger = Logger(service="quine-outputs")


class StackNotFoundError(LookupError):
    """Raised when the requested CloudFormation stack does not exist."""


class StackOutputsError(LookupError):
    """Raised when a stack exists but does not publish the Quine outputs."""


REQUIRED_OUTPUTS = (OUTPUT_CLUSTER_NAME, OUTPUT_SERVICE_NAME, OUTPUT_TASK_DEFINITION_ARN)


@dataclass
class StackOutputs:
    cluster_name: str
    service_name: str
    task_definition_arn: str
    load_balancer_dns_name: Optional[str] = None
    keyspace_name: Optional[str] = None

    @property
    def quine_url(self) -> Optional[str]:
        if not self.load_balancer_dns_name:
            return None
        return f"http://{self.load_balancer_dns_name}"

    @classmethod
    def from_outputs(cls, outputs: Dict[str, str]) -> "StackOutputs":
        return cls(
            cluster_name=outputs[OUTPUT_CLUSTER_NAME],
            service_name=outputs[OUTPUT_SERVICE_NAME],
            task_definition_arn=outputs[OUTPUT_TASK_DEFINITION_ARN],
            load_balancer_dns_name=outputs.get(OUTPUT_LOAD_BALANCER_ENDPOINT),
            keyspace_name=outputs.get(OUTPUT_KEYSPACE_NAME),
        )


def get_stack_outputs(stack_name: str, region: Optional[str] = None,
                      cloudformation_client=None) -> StackOutputs:
    """Fetch the outputs of a deployed Quine stack"""
    client = cloudformation_client or boto3.client("cloudformation", region_name=region)
    try:
        response = client.describe_stacks(StackName=stack_name)
    except ClientError as e:
        if "does not exist" in e.response.get("Error", {}).get("Message", ""):
            raise StackNotFoundError(f"Stack '{stack_name}' does not exist") from e
        raise

    stacks = response.get("Stacks", [])
    if not stacks:
        raise StackNotFoundError(f"Stack '{stack_name}' does not exist")

    outputs = {
        output["OutputKey"]: output["OutputValue"]
        for output in stacks[0].get("Outputs", [])
    }

    # Stacks still creating, rolled back, or not built from QuineStack lack these
    missing = [key for key in REQUIRED_OUTPUTS if key not in outputs]
    if missing:
        status = stacks[0].get("StackStatus", "UNKNOWN")
        raise StackOutputsError(
            f"Stack '{stack_name}' (status {status}) is missing outputs: {', '.join(missing)}"
        )
    logger.info("Fetched stack outputs", extra={"stack": stack_name, "outputs": sorted(outputs)})
    return StackOutputs.from_outputs(outputs)
