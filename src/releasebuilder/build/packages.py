"""Sidecar OS packages (.deb and .rpm), one per architecture."""

import logging
import os

from releasebuilder.core import command, files
from releasebuilder.core.models import ANCHOR_REPO, Manifest

logger = logging.getLogger("releasebuilder.build.packages")


def package_name(kind: str, arch: str) -> str:
    if arch == "amd64":
        return f"istio-sidecar.{kind}"
    return f"istio-sidecar-{arch}.{kind}"


def _build_packages(manifest: Manifest, kind: str, target: str) -> None:
    for arch in manifest.arches():
        logger.info(f"Building {kind} package for {arch}")
        command.run_make(manifest, ANCHOR_REPO, [target], {"TARGET_ARCH": arch})
        src = os.path.join(manifest.repo_arch_out_dir(ANCHOR_REPO, arch), f"istio-sidecar.{kind}")
        dest = os.path.join(manifest.out_dir(), kind, package_name(kind, arch))
        files.copy_file(src, dest)
        files.create_sha(dest)


def build_debian(manifest: Manifest) -> None:
    _build_packages(manifest, "deb", "deb/fpm")


def build_rpm(manifest: Manifest) -> None:
    _build_packages(manifest, "rpm", "rpm/fpm")
