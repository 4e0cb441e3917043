"""
Quine Deployment Configuration
Explicit settings for the Quine CDK stack and the rules they must satisfy.
"""
import ipaddress
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

logger = Logger(service="quine-config")

CDK_DIR = Path(__file__).resolve().parent
DEFAULT_QUINE_IMAGE = "thatdot/quine"
DEFAULT_CONFIG_TEMPLATE = CDK_DIR / "resources" / "quine-conf-template.conf"
DEFAULT_IMAGE_DIRECTORY = CDK_DIR / "images" / "quine"

_TRUE_VALUES = {"true", "yes", "1", "on"}
_FALSE_VALUES = {"false", "no", "0", "off", ""}


class ConfigurationError(ValueError):
    """Raised when the deployment configuration cannot produce a valid stack."""


@dataclass
class DeploymentConfig:
    account: str
    region: str
    use_keyspaces: bool = False  # False keeps Quine on its container-local RocksDB store
    keyspace_name: Optional[str] = None
    truststore_password: Optional[str] = None
    run_quine_container: bool = True
    public_load_balancer_enabled: bool = True
    public_load_balancer_ingress_peers: List[str] = field(default_factory=list)
    container_health_check_enabled: bool = False
    quine_image: str = DEFAULT_QUINE_IMAGE
    quine_config_template: Path = DEFAULT_CONFIG_TEMPLATE
    quine_image_directory: Path = DEFAULT_IMAGE_DIRECTORY

    def validate(self) -> None:
        """Reject configurations that cannot be deployed"""
        if not self.region:
            raise ConfigurationError("region must be specified in the deployment configuration.")

        if not self.account:
            raise ConfigurationError("account must be specified in the deployment configuration.")

        if self.use_keyspaces:
            if not self.keyspace_name:
                raise ConfigurationError("keyspace_name must be provided when use_keyspaces is true.")
            if not self.truststore_password:
                raise ConfigurationError("truststore_password must be provided when use_keyspaces is true.")

        for peer in self.public_load_balancer_ingress_peers:
            try:
                ipaddress.IPv4Network(peer)
            except ValueError as e:
                raise ConfigurationError(f"Invalid load balancer ingress peer '{peer}': {e}") from e

    @classmethod
    def from_context(cls, node, environ: Optional[Mapping[str, str]] = None,
                     resolve_from_credentials: bool = True) -> "DeploymentConfig":
        """
        Build a configuration from CDK context values, falling back to environment
        variables and then to the current AWS credentials for account and region.
        """
        if environ is None:
            environ = os.environ

        account = node.try_get_context("aws_account_id") or environ.get("CDK_DEFAULT_ACCOUNT") or ""
        region = node.try_get_context("aws_region") or environ.get("CDK_DEFAULT_REGION") or ""

        if resolve_from_credentials and not (account and region):
            session = boto3.session.Session()
            region = region or session.region_name or ""
            account = account or lookup_account(session)

        config = cls(
            account=str(account),
            region=str(region),
            use_keyspaces=parse_bool(node.try_get_context("use_keyspaces"), False),
            keyspace_name=node.try_get_context("keyspace_name") or None,
            truststore_password=(
                node.try_get_context("truststore_password")
                or environ.get("QUINE_TRUSTSTORE_PASSWORD")
                or None
            ),
            run_quine_container=parse_bool(node.try_get_context("run_quine_container"), True),
            public_load_balancer_enabled=parse_bool(
                node.try_get_context("public_load_balancer_enabled"), True
            ),
            public_load_balancer_ingress_peers=parse_list(
                node.try_get_context("public_load_balancer_ingress_peers")
            ),
            container_health_check_enabled=parse_bool(
                node.try_get_context("container_health_check_enabled"), False
            ),
            quine_image=node.try_get_context("quine_image") or DEFAULT_QUINE_IMAGE,
        )

        logger.info("Loaded deployment configuration", extra={
            "account": config.account,
            "region": config.region,
            "use_keyspaces": config.use_keyspaces,
            "keyspace_name": config.keyspace_name,
            "run_quine_container": config.run_quine_container,
            "public_load_balancer_enabled": config.public_load_balancer_enabled,
            "ingress_peers": config.public_load_balancer_ingress_peers,
        })
        return config


def lookup_account(session=None) -> str:
    """Return the account of the current AWS credentials, or an empty string if unavailable"""
    session = session or boto3.session.Session()
    try:
        return session.client("sts").get_caller_identity()["Account"]
    except (BotoCoreError, ClientError) as e:
        logger.warning(f"Unable to determine AWS account from current credentials: {e}")
        return ""


def parse_bool(value: Any, default: bool) -> bool:
    """Interpret a context value that may arrive as a bool or as a command line string"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Expected a boolean value, got '{value}'")


def parse_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"Expected a list or comma-separated string, got '{value}'")
    return [str(item).strip() for item in value if str(item).strip()]
