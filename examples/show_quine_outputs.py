#!/usr/bin/env python3
"""
Example of reading a deployed Quine stack's outputs
"""

import os
import sys

# Add cdk directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'cdk'))

from stack_outputs import StackNotFoundError, StackOutputsError, get_stack_outputs


def main():
    stack_name = sys.argv[1] if len(sys.argv) > 1 else "QuineAwsCdkStack"
    region = os.environ.get("CDK_DEFAULT_REGION") or os.environ.get("AWS_REGION")

    print(f"🔎 Looking up stack {stack_name}")
    print("=" * 50)

    try:
        outputs = get_stack_outputs(stack_name, region=region)
    except StackNotFoundError as e:
        print(f"\n❌ {e}. Run `cdk deploy` from the cdk/ directory first.")
        sys.exit(1)
    except StackOutputsError as e:
        print(f"\n⏳ {e}. Wait for the deployment to finish, or check the stack name.")
        sys.exit(1)

    print(f"ECS cluster:      {outputs.cluster_name}")
    print(f"ECS service:      {outputs.service_name}")
    print(f"Task definition:  {outputs.task_definition_arn}")

    if outputs.keyspace_name:
        print(f"Keyspace:         {outputs.keyspace_name}")

    if outputs.quine_url:
        print(f"\n🌐 Quine UI: {outputs.quine_url}")
    else:
        print("\nNo public load balancer; use ECS Exec to reach the container:")

    print(
        f"  aws ecs list-tasks --cluster {outputs.cluster_name} "
        f"--service-name {outputs.service_name}"
    )


if __name__ == "__main__":
    main()
