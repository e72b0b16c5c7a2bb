#!/usr/bin/env python3
"""
RELEASE BUILDER IMAGE PUBLISHER
-------------------------------
Pushes the image tarballs of a built release to a destination hub.

Tarball file names encode what they hold: `<name>[-<variant>][-<arch>].tar.gz`
(pilot.tar.gz, pilot-distroless.tar.gz, pilot-arm64.tar.gz ...). Images are
grouped per published reference, i.e. per (tag, variant, name):

* one architecture: retag the loaded image and push it directly.
* several architectures: push every per-arch image by digest, then push a
  manifest list referencing those digests under the human readable tag.

When a signing key is given the digest is always resolved from the registry
after the push, so the signature binds to what clients actually pull.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from releasebuilder.core.errors import ConfigError, PublishError, ReleaseError
from releasebuilder.core.manifest import yaml_log
from releasebuilder.core.models import Manifest
from releasebuilder.publish.registry import (
    DockerRegistry,
    ManifestEntry,
    ManifestList,
    Registry,
    repository_of,
)

logger = logging.getLogger("releasebuilder.publish.images")

TARBALL_SUFFIX = ".tar.gz"
ARCHITECTURES = ("amd64", "arm64")
VARIANTS = ("distroless", "debug")
DEFAULT_ARCH = "amd64"
LOCAL_HUB = "release-builder.local"


@dataclass(frozen=True)
class ImageTarball:
    name: str
    variant: str = ""
    arch: str = DEFAULT_ARCH

    @property
    def variant_suffix(self) -> str:
        return f"-{self.variant}" if self.variant else ""


def parse_image_tarball(filename: str) -> ImageTarball:
    """Split `<name>[-<variant>][-<arch>].tar.gz` into its parts."""
    if not filename.endswith(TARBALL_SUFFIX):
        raise ConfigError(f"invalid image found in docker folder: {filename}")
    stem = filename[: -len(TARBALL_SUFFIX)]

    arch = DEFAULT_ARCH
    for candidate in ARCHITECTURES:
        if stem.endswith(f"-{candidate}"):
            arch = candidate
            stem = stem[: -len(candidate) - 1]
            break

    variant = ""
    for candidate in VARIANTS:
        if stem.endswith(f"-{candidate}"):
            variant = candidate
            stem = stem[: -len(candidate) - 1]
            break

    if not stem:
        raise ConfigError(f"invalid image found in docker folder: {filename}")
    return ImageTarball(name=stem, variant=variant, arch=arch)


@dataclass
class ImageGroup:
    """Every architecture that will be published under a single reference."""
    tag: str
    variant: str
    name: str
    images: Dict[str, str] = field(default_factory=dict)  # arch -> local ref

    def target(self, hub: str) -> str:
        suffix = f"-{self.variant}" if self.variant else ""
        return f"{hub}/{self.name}:{self.tag}{suffix}"


def group_images(loaded: Sequence[Tuple[ImageTarball, str]], tags: Sequence[str]) -> List[ImageGroup]:
    groups: Dict[Tuple[str, str, str], ImageGroup] = {}
    for tag in tags:
        for image, local_ref in loaded:
            key = (tag, image.variant, image.name)
            group = groups.setdefault(key, ImageGroup(tag=tag, variant=image.variant, name=image.name))
            if image.arch in group.images:
                raise ConfigError(f"duplicate {image.arch} image for {image.name}{image.variant_suffix}")
            group.images[image.arch] = local_ref
    return list(groups.values())


class ImagePublisher:
    """Loads, groups and pushes every image tarball of a release."""

    def __init__(self, manifest: Manifest, hub: str, tags: Optional[Sequence[str]] = None,
                 signing_key: str = "", registry: Optional[Registry] = None):
        self.manifest = manifest
        self.hub = hub
        self.tags = list(tags or []) or [manifest.version]
        self.signing_key = signing_key
        self.registry = registry or DockerRegistry()
        self._pushed: Dict[Tuple[str, str], str] = {}

    def docker_dir(self) -> str:
        return os.path.join(self.manifest.directory, "docker")

    def load_all(self) -> List[Tuple[ImageTarball, str]]:
        try:
            names = sorted(os.listdir(self.docker_dir()))
        except OSError as err:
            raise PublishError(f"failed to read docker output of release: {err}") from err

        loaded = []
        for filename in names:
            image = parse_image_tarball(filename)
            ref = self.registry.load(os.path.join(self.docker_dir(), filename))
            # Per-arch tarballs load under the same tag; give each a unique local name
            local = f"{LOCAL_HUB}/{image.name}:{self.manifest.version}{image.variant_suffix}-{image.arch}"
            self.registry.tag(ref, local)
            logger.info(f"Loaded {filename} as {local}")
            loaded.append((image, local))
        return loaded

    def publish(self) -> List[str]:
        published = []
        for group in group_images(self.load_all(), self.tags):
            target = group.target(self.hub)
            try:
                if len(group.images) == 1:
                    self.push_single(group, target)
                else:
                    self.push_multi_arch(group, target)
                if self.signing_key:
                    self.sign(target)
            except ReleaseError as err:
                raise PublishError(f"failed to publish {target}: {err}") from err
            published.append(target)
        return published

    def push_single(self, group: ImageGroup, target: str) -> None:
        (arch, local), = group.images.items()
        logger.info(f"Pushing {target} ({arch})")
        self.registry.tag(local, target)
        self.registry.push(target)

    def push_multi_arch(self, group: ImageGroup, target: str) -> None:
        repository = repository_of(target)
        manifest_list = ManifestList(target=target)
        for arch in sorted(group.images):
            local = group.images[arch]
            key = (local, repository)
            if key not in self._pushed:
                self._pushed[key] = self.registry.push_by_digest(local, repository)
            manifest_list.entries.append(
                ManifestEntry(repository=repository, digest=self._pushed[key], platform=self.registry.platform(local))
            )
        yaml_log(f"Manifest list {target}", manifest_list.to_dict())
        self.registry.push_manifest_list(manifest_list)

    def sign(self, target: str) -> None:
        digest = self.registry.digest(target)
        ref = f"{repository_of(target)}@{digest}"
        logger.info(f"Signing {ref}")
        self.registry.sign(ref, self.signing_key)


def publish_images(manifest: Manifest, hub: str, tags: Optional[Sequence[str]] = None,
                   signing_key: str = "", registry: Optional[Registry] = None) -> List[str]:
    return ImagePublisher(manifest, hub, tags, signing_key, registry).publish()
