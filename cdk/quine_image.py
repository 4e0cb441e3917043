"""
Quine Container Image Resolution
Chooses between the public Quine image and a locally built image configured
for Amazon Keyspaces.
"""
import re
from pathlib import Path
from typing import Dict, Union

from aws_cdk import (
    aws_ecr_assets as ecr_assets,
    aws_ecs as ecs,
)
from aws_lambda_powertools import Logger
from constructs import Construct

from deployment_config import DeploymentConfig

logger = Logger(service="quine-image")

REGION_PLACEHOLDER = "<<AWS_REGION>>"
PASSWORD_PLACEHOLDER = "<<KEYSTORE_PASSWORD>>"
KEYSPACE_PLACEHOLDER = "<<KEYSPACE_NAME>>"

PLACEHOLDER_PATTERN = re.compile(r"<<[A-Z0-9_]+>>")
RENDERED_CONFIG_NAME = "quine.conf"


class TemplateRenderError(ValueError):
    """Raised when a configuration template cannot be fully rendered."""


def render_template(template: str, values: Dict[str, str]) -> str:
    """
    Substitute each placeholder in `values` verbatim, in a single pass over the
    template so substituted values are never rescanned.

    Every placeholder must occur in the template, and every token in the
    template must have a value.
    """
    tokens = set(PLACEHOLDER_PATTERN.findall(template))

    missing = [placeholder for placeholder in values if placeholder not in tokens]
    if missing:
        raise TemplateRenderError(f"Template is missing placeholders: {', '.join(missing)}")

    unresolved = sorted(tokens - set(values))
    if unresolved:
        raise TemplateRenderError(f"Template has placeholders without values: {', '.join(unresolved)}")

    return PLACEHOLDER_PATTERN.sub(lambda match: values[match.group(0)], template)


def render_quine_config(region: str, truststore_password: str, keyspace_name: str,
                        template_path: Union[str, Path],
                        output_path: Union[str, Path]) -> Path:
    """Render the Keyspaces persistor template and write it where the image build expects it"""
    template = Path(template_path).read_text(encoding="utf-8")
    rendered = render_template(template, {
        REGION_PLACEHOLDER: region,
        PASSWORD_PLACEHOLDER: truststore_password,
        KEYSPACE_PLACEHOLDER: keyspace_name,
    })

    output_path = Path(output_path)
    output_path.write_text(rendered, encoding="utf-8")
    logger.info("Rendered Quine configuration", extra={
        "template": str(template_path),
        "output": str(output_path),
        "keyspace_name": keyspace_name,
        "region": region,
    })
    return output_path


def resolve_quine_image(scope: Construct, config: DeploymentConfig) -> ecs.ContainerImage:
    # The public image persists to RocksDB inside the container. Keyspaces needs the
    # SigV4 driver settings and truststore baked into a custom image instead.
    if not config.use_keyspaces:
        logger.info("Using registry image", extra={"image": config.quine_image})
        return ecs.ContainerImage.from_registry(config.quine_image)

    image_directory = Path(config.quine_image_directory)
    render_quine_config(
        region=config.region,
        truststore_password=config.truststore_password,
        keyspace_name=config.keyspace_name,
        template_path=config.quine_config_template,
        output_path=image_directory / RENDERED_CONFIG_NAME,
    )

    docker_asset = ecr_assets.DockerImageAsset(
        scope, "QuineImage",
        directory=str(image_directory),
        platform=ecr_assets.Platform.LINUX_AMD64,
        build_args={
            "QUINE_BASE_IMAGE": config.quine_image,
            "TRUSTSTORE_PASSWORD": config.truststore_password,
        },
    )
    logger.info("Using locally built image", extra={"directory": str(image_directory)})
    return ecs.ContainerImage.from_docker_image_asset(docker_asset)
