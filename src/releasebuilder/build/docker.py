"""Container images: drive `make docker.save` and collect the per-arch tarballs."""

import logging
import os

from releasebuilder.core import command, files
from releasebuilder.core.models import ANCHOR_REPO, DockerOutput, Manifest

logger = logging.getLogger("releasebuilder.build.docker")

BUILD_VARIANTS = "default distroless"
TARBALL_SUFFIX = ".tar.gz"


def docker_env(manifest: Manifest) -> dict:
    env = {
        "DOCKER_BUILD_VARIANTS": BUILD_VARIANTS,
        "HUB": manifest.docker,
    }
    if manifest.architectures:
        env["DOCKER_ARCHITECTURES"] = ",".join(manifest.architectures)
    return env


def arch_tarball_name(filename: str, arch: str) -> str:
    """pilot.tar.gz built for arm64 is published as pilot-arm64.tar.gz; amd64 keeps the bare name."""
    if arch == "amd64" or not filename.endswith(TARBALL_SUFFIX):
        return filename
    stem = filename[: -len(TARBALL_SUFFIX)]
    if stem.endswith(f"-{arch}"):
        return filename
    return f"{stem}-{arch}{TARBALL_SUFFIX}"


def collect_tarballs(manifest: Manifest) -> int:
    dest = os.path.join(manifest.out_dir(), "docker")
    os.makedirs(dest, exist_ok=True)
    copied = 0
    for arch in manifest.arches():
        src = os.path.join(manifest.repo_arch_out_dir(ANCHOR_REPO, arch), "docker")
        if not os.path.isdir(src):
            logger.warning(f"No docker output for {arch} at {src}")
            continue
        for name in sorted(os.listdir(src)):
            path = os.path.join(src, name)
            if os.path.isfile(path):
                files.copy_file(path, os.path.join(dest, arch_tarball_name(name, arch)))
                copied += 1
    return copied


def build_docker(manifest: Manifest) -> None:
    target = "docker.save" if manifest.docker_output is DockerOutput.TAR else "docker"
    command.run_make(manifest, ANCHOR_REPO, [target], docker_env(manifest))
    if manifest.docker_output is DockerOutput.CONTEXT:
        logger.info("Images loaded into the local docker daemon; nothing to copy")
        return
    logger.info(f"Collected {collect_tarballs(manifest)} image tarball(s)")
