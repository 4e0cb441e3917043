#!/usr/bin/env python3
"""
Tests for the Quine CDK stack, asserting against the synthesized template
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

# Add cdk directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'cdk'))

import aws_cdk as cdk
from aws_cdk.assertions import Match, Template

from deployment_config import ConfigurationError, DeploymentConfig
from quine_image import PLACEHOLDER_PATTERN, RENDERED_CONFIG_NAME
from quine_stack import (
    OUTPUT_CLUSTER_NAME,
    OUTPUT_KEYSPACE_NAME,
    OUTPUT_LOAD_BALANCER_ENDPOINT,
    OUTPUT_SERVICE_NAME,
    OUTPUT_TASK_DEFINITION_ARN,
    QuineStack,
)

ACCOUNT = "123456789012"
REGION = "us-east-1"


def make_config(**overrides) -> DeploymentConfig:
    values = {"account": ACCOUNT, "region": REGION}
    values.update(overrides)
    return DeploymentConfig(**values)


class QuineStackTestCase(unittest.TestCase):

    def synth(self, config):
        self.app = cdk.App()
        self.stack = QuineStack(self.app, "QuineTestStack", config=config)
        return Template.from_stack(self.stack)

    def container_definitions(self, template):
        task_definitions = template.find_resources("AWS::ECS::TaskDefinition")
        self.assertEqual(len(task_definitions), 1)
        return next(iter(task_definitions.values()))["Properties"]["ContainerDefinitions"]

    def policy_statements(self, template):
        statements = []
        for policy in template.find_resources("AWS::IAM::Policy").values():
            statements.extend(policy["Properties"]["PolicyDocument"]["Statement"])
        return statements


class TestQuineStackValidation(unittest.TestCase):

    def assert_rejected(self, config):
        app = cdk.App()
        with self.assertRaises(ConfigurationError):
            QuineStack(app, "QuineTestStack", config=config)
        self.assertEqual(len(app.node.children), 0)

    def test_missing_region_declares_nothing(self):
        self.assert_rejected(make_config(region=""))

    def test_missing_account_declares_nothing(self):
        self.assert_rejected(make_config(account=""))

    def test_keyspaces_without_keyspace_name_declares_nothing(self):
        self.assert_rejected(make_config(use_keyspaces=True, truststore_password="secret"))

    def test_keyspaces_without_password_declares_nothing(self):
        self.assert_rejected(make_config(use_keyspaces=True, keyspace_name="quine_demo"))


class TestQuineStackLocalStorage(QuineStackTestCase):

    def test_registry_image_without_rendering(self):
        with patch('quine_image.render_quine_config') as mock_render:
            template = self.synth(make_config())

        mock_render.assert_not_called()
        containers = self.container_definitions(template)
        self.assertEqual(len(containers), 1)
        self.assertEqual(containers[0]["Image"], "thatdot/quine")
        self.assertEqual(containers[0]["Name"], "quine")
        template.resource_count_is("AWS::Cassandra::Keyspace", 0)

    def test_container_settings(self):
        template = self.synth(make_config())

        template.has_resource_properties("AWS::ECS::TaskDefinition", {
            "Cpu": "4096",
            "Memory": "8192",
            "RequiresCompatibilities": ["FARGATE"],
            "ContainerDefinitions": [Match.object_like({
                "Cpu": 4096,
                "Memory": 8192,
                "PortMappings": [Match.object_like({"ContainerPort": 8080, "HostPort": 8080})],
                "LinuxParameters": Match.object_like({"InitProcessEnabled": True}),
                "StartTimeout": 10,
                "StopTimeout": 5,
                "LogConfiguration": Match.object_like({
                    "LogDriver": "awslogs",
                    "Options": Match.object_like({
                        "awslogs-stream-prefix": "quine",
                        "mode": "non-blocking",
                    }),
                }),
            })],
        })
        template.has_resource_properties("AWS::Logs::LogGroup", {"RetentionInDays": 7})

    def test_task_role_grants(self):
        template = self.synth(make_config())
        statements = self.policy_statements(template)

        select = [s for s in statements if s["Action"] == "cassandra:Select"]
        self.assertEqual(len(select), 1)
        self.assertEqual(select[0]["Effect"], "Allow")
        self.assertEqual(select[0]["Resource"], f"arn:aws:cassandra:{REGION}:{ACCOUNT}:/keyspace/system*")

        exec_actions = set()
        for statement in statements:
            actions = statement["Action"] if isinstance(statement["Action"], list) else [statement["Action"]]
            if any(action.startswith("ssmmessages:") for action in actions):
                self.assertEqual(statement["Resource"], "*")
                exec_actions.update(actions)
        self.assertEqual(exec_actions, {
            "ssmmessages:CreateControlChannel",
            "ssmmessages:CreateDataChannel",
            "ssmmessages:OpenControlChannel",
            "ssmmessages:OpenDataChannel",
        })
        self.assertFalse(any(s["Action"] == "cassandra:*" for s in statements))

    def test_health_check_disabled_by_default(self):
        template = self.synth(make_config())

        self.assertNotIn("HealthCheck", self.container_definitions(template)[0])

    def test_health_check_enabled(self):
        template = self.synth(make_config(container_health_check_enabled=True))

        health_check = self.container_definitions(template)[0]["HealthCheck"]
        self.assertEqual(health_check["Command"][0], "CMD-SHELL")
        self.assertIn("/api/v1/admin/build-info", health_check["Command"][1])
        self.assertEqual(health_check["Interval"], 30)
        self.assertEqual(health_check["StartPeriod"], 30)

    def test_project_tag(self):
        template = self.synth(make_config())

        template.has_resource_properties("AWS::ECS::Cluster", {
            "Tags": Match.array_with([{"Key": "project", "Value": "quine-aws-cdk-demo"}]),
        })


class TestQuineStackService(QuineStackTestCase):

    def test_running_container(self):
        template = self.synth(make_config(run_quine_container=True))

        template.has_resource_properties("AWS::ECS::Service", {
            "DesiredCount": 1,
            "EnableExecuteCommand": True,
            "EnableECSManagedTags": True,
            "PropagateTags": "TASK_DEFINITION",
            "CapacityProviderStrategy": [
                {"CapacityProvider": "FARGATE_SPOT", "Weight": 2},
                {"CapacityProvider": "FARGATE", "Weight": 1},
            ],
        })

    def test_stopped_container(self):
        template = self.synth(make_config(run_quine_container=False))

        template.has_resource_properties("AWS::ECS::Service", {"DesiredCount": 0})
        template.resource_count_is("AWS::ECS::Service", 1)

    def test_cluster_capacity_providers(self):
        template = self.synth(make_config())

        template.has_resource_properties("AWS::ECS::ClusterCapacityProviderAssociations", {
            "CapacityProviders": Match.array_with(["FARGATE", "FARGATE_SPOT"]),
        })

    def test_outputs(self):
        template = self.synth(make_config())
        outputs = template.find_outputs("*")

        for key in (OUTPUT_CLUSTER_NAME, OUTPUT_SERVICE_NAME,
                    OUTPUT_TASK_DEFINITION_ARN, OUTPUT_LOAD_BALANCER_ENDPOINT):
            self.assertIn(key, outputs)
        self.assertNotIn(OUTPUT_KEYSPACE_NAME, outputs)


class TestQuineStackLoadBalancer(QuineStackTestCase):

    def alb_security_group(self, template):
        logical_id = self.stack.get_logical_id(self.stack.load_balancer_security_group.node.default_child)
        return template.find_resources("AWS::EC2::SecurityGroup")[logical_id]["Properties"]

    def test_no_peers_means_no_ingress(self):
        template = self.synth(make_config(public_load_balancer_ingress_peers=[]))

        self.assertNotIn("SecurityGroupIngress", self.alb_security_group(template))
        template.resource_count_is("AWS::ElasticLoadBalancingV2::LoadBalancer", 1)

    def test_peer_ingress_rules(self):
        template = self.synth(make_config(
            public_load_balancer_ingress_peers=["52.95.4.3/32", "198.51.100.0/24"]
        ))

        ingress = self.alb_security_group(template)["SecurityGroupIngress"]
        self.assertEqual(
            sorted(rule["CidrIp"] for rule in ingress),
            ["198.51.100.0/24", "52.95.4.3/32"]
        )
        for rule in ingress:
            self.assertEqual(rule["IpProtocol"], "tcp")
            self.assertEqual(rule["FromPort"], 80)
            self.assertEqual(rule["ToPort"], 80)

    def test_listener_and_target_group(self):
        template = self.synth(make_config())

        template.has_resource_properties("AWS::ElasticLoadBalancingV2::LoadBalancer", {
            "Scheme": "internet-facing",
        })
        template.has_resource_properties("AWS::ElasticLoadBalancingV2::Listener", {
            "Port": 80,
            "Protocol": "HTTP",
        })
        # The target group takes the listener's port; the container port is on the service
        template.has_resource_properties("AWS::ElasticLoadBalancingV2::TargetGroup", {
            "Port": 80,
            "Protocol": "HTTP",
            "TargetType": "ip",
        })
        template.has_resource_properties("AWS::ECS::Service", {
            "LoadBalancers": [{
                "ContainerName": "quine",
                "ContainerPort": 8080,
                "TargetGroupArn": Match.any_value(),
            }],
        })

    def test_load_balancer_disabled(self):
        template = self.synth(make_config(public_load_balancer_enabled=False))

        template.resource_count_is("AWS::ElasticLoadBalancingV2::LoadBalancer", 0)
        template.resource_count_is("AWS::ElasticLoadBalancingV2::Listener", 0)
        self.assertIsNone(self.stack.load_balancer)
        self.assertNotIn(OUTPUT_LOAD_BALANCER_ENDPOINT, template.find_outputs("*"))


class TestQuineStackKeyspaces(QuineStackTestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.image_directory = Path(self.tmpdir.name)
        (self.image_directory / "Dockerfile").write_text(
            "FROM thatdot/quine\nCOPY quine.conf /quine.conf\n", encoding="utf-8"
        )

    def keyspaces_config(self, **overrides):
        values = {
            "use_keyspaces": True,
            "keyspace_name": "quine_demo",
            "truststore_password": "truststore-secret",
            "quine_image_directory": self.image_directory,
        }
        values.update(overrides)
        return make_config(**values)

    def test_rendered_configuration(self):
        self.synth(self.keyspaces_config())

        body = (self.image_directory / RENDERED_CONFIG_NAME).read_text(encoding="utf-8")
        self.assertEqual(PLACEHOLDER_PATTERN.findall(body), [])
        self.assertIn(REGION, body)
        self.assertIn("truststore-secret", body)
        self.assertIn("quine_demo", body)

    def test_keyspace_and_grants(self):
        template = self.synth(self.keyspaces_config())

        template.has_resource_properties("AWS::Cassandra::Keyspace", {"KeyspaceName": "quine_demo"})
        template.has_resource("AWS::Cassandra::Keyspace", {
            "DeletionPolicy": "Delete",
            "UpdateReplacePolicy": "Delete",
        })

        keyspace_statements = [
            s for s in self.policy_statements(template) if s["Action"] == "cassandra:*"
        ]
        self.assertEqual(len(keyspace_statements), 1)
        self.assertIn("Fn::Join", keyspace_statements[0]["Resource"])

        self.assertIn(OUTPUT_KEYSPACE_NAME, template.find_outputs("*"))

    def test_asset_image_used(self):
        template = self.synth(self.keyspaces_config())

        image = self.container_definitions(template)[0]["Image"]
        self.assertNotEqual(image, "thatdot/quine")
        self.assertIn("Fn::Sub", image)

    def test_missing_template_aborts(self):
        config = self.keyspaces_config(quine_config_template=self.image_directory / "absent.conf")

        with self.assertRaises(FileNotFoundError):
            self.synth(config)


if __name__ == '__main__':
    unittest.main()
