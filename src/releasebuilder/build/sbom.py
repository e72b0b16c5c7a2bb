"""Software bill of materials (SPDX) via the `bom` tool."""

import logging
import os

from releasebuilder.core import command
from releasebuilder.core.models import ANCHOR_REPO, DockerOutput, Manifest

logger = logging.getLogger("releasebuilder.build.sbom")

DEFAULT_NAMESPACE_URI = "https://storage.googleapis.com/istio-release/releases"


def docker_tar_paths(docker_dir: str):
    """Every image tarball below docker_dir; `bom` cannot take a directory."""
    found = []
    for root, _, names in os.walk(docker_dir):
        for name in sorted(names):
            found.append(os.path.join(root, name))
    return sorted(found)


def generate_bill_of_materials(manifest: Manifest) -> None:
    base_uri = (manifest.bill_of_materials_uri or DEFAULT_NAMESPACE_URI).rstrip("/")
    out = manifest.out_dir()
    release_file = f"istio-release-{manifest.version}.spdx"
    source_file = f"istio-source-{manifest.version}.spdx"

    # `bom` can only describe tarballs or remote images, not the local daemon
    if manifest.docker_output is DockerOutput.TAR:
        logger.info("Generating bill of materials for release artifacts")
        command.run([
            "bom", "--log-level", "error", "generate",
            "--name", f"Istio Release {manifest.version}",
            "--namespace", f"{base_uri}/{manifest.version}/{release_file}",
            "--ignore", "licenses,*.sha256,docker",
            "--dirs", out,
            "--image-archive", ",".join(docker_tar_paths(os.path.join(out, "docker"))),
            "--output", os.path.join(out, release_file),
        ], env=command.constrained_env())

    logger.info("Generating bill of materials for source")
    command.run([
        "bom", "--log-level", "error", "generate",
        "--name", f"Istio Source {manifest.version}",
        "--namespace", f"{base_uri}/{manifest.version}/{source_file}",
        "--dirs", manifest.repo_dir(ANCHOR_REPO),
        "--output", os.path.join(out, source_file),
    ], env=command.constrained_env())
