"""Publish a built release to every destination that was asked for."""

import logging
from dataclasses import dataclass, field
from typing import List

from google.api_core.exceptions import GoogleAPIError

from releasebuilder.core.credentials import github_token, grafana_token
from releasebuilder.core.errors import PublishError, ReleaseError
from releasebuilder.core.models import Manifest
from releasebuilder.publish import gcs, github, grafana, helm, images

logger = logging.getLogger("releasebuilder.publish")


@dataclass
class PublishOptions:
    docker_hub: str = ""
    docker_tags: List[str] = field(default_factory=list)
    cosign_key: str = ""
    gcs_bucket: str = ""
    gcs_aliases: List[str] = field(default_factory=list)
    helm_bucket: str = ""
    helm_hub: str = ""
    github_org: str = ""
    github_token_file: str = ""
    grafana_token_file: str = ""


def _step(name: str, fn, *args, **kwargs) -> None:
    logger.info(f"Publishing to {name}")
    try:
        fn(*args, **kwargs)
    except (ReleaseError, GoogleAPIError, OSError) as err:
        raise PublishError(f"failed to publish to {name}: {err}") from err
    logger.info(f"Published to {name}")


def publish(manifest: Manifest, options: PublishOptions) -> None:
    """manifest.directory must point at the built release (the out/ directory of a build)."""
    if options.docker_hub:
        _step("docker", images.publish_images, manifest, options.docker_hub, options.docker_tags,
              options.cosign_key)
    if options.gcs_bucket:
        _step("gcs", gcs.publish_archive, manifest, options.gcs_bucket, options.gcs_aliases)
    if options.helm_bucket or options.helm_hub:
        _step("helm", helm.publish_helm, manifest, options.helm_bucket, options.helm_hub)
    if options.github_org:
        _step("github", github.publish_github, manifest, options.github_org,
              github_token(options.github_token_file))
    if options.grafana_token_file:
        _step("grafana", grafana.publish_grafana, manifest, grafana_token(options.grafana_token_file))
