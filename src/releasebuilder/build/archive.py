#!/usr/bin/env python3
"""
RELEASE BUILDER ARCHIVE ASSEMBLY
--------------------------------
Builds the downloadable release archives. Each platform archive holds the
same tree (license, readme, completion files, filtered samples and
manifests) and differs only in the bundled istioctl binary. A standalone
istioctl archive is produced for every platform as well.
"""

import logging
import os
from dataclasses import dataclass

from releasebuilder.core import command, files
from releasebuilder.core.models import ANCHOR_REPO, Manifest

logger = logging.getLogger("releasebuilder.build.archive")


@dataclass(frozen=True)
class Platform:
    name: str          # Archive suffix, e.g. linux-amd64
    binary: str        # Built istioctl binary under the repo output dir
    zip: bool = False

    @property
    def istioctl(self) -> str:
        return "istioctl.exe" if self.zip else "istioctl"

    @property
    def extension(self) -> str:
        return "zip" if self.zip else "tar.gz"


PLATFORMS = (
    Platform("linux-amd64", "istioctl-linux-amd64"),
    Platform("linux-arm64", "istioctl-linux-arm64"),
    Platform("osx", "istioctl-osx"),
    Platform("osx-arm64", "istioctl-osx-arm64"),
    Platform("win", "istioctl-win.exe", zip=True),
)

DIRECT_COPIES = ("LICENSE", "README.md")

# Copied when present; the tools/ folder holds plenty we do not ship
OPTIONAL_TOOLS = (
    "tools/certs/Makefile.selfsigned.mk",
    "tools/certs/common.mk",
    "tools/certs/README.md",
)

COMPLETION_FILES = ("istioctl.bash", "_istioctl")

INCLUDE_PATTERNS = ("*.yaml", "*.md", "cleanup.sh", "*.txt", "*.pem", "*.conf", "*.tpl", "*.json")


def archive_name(manifest: Manifest, platform: Platform) -> str:
    return f"istio-{manifest.version}-{platform.name}.{platform.extension}"


def istioctl_archive_name(manifest: Manifest, platform: Platform) -> str:
    return f"istioctl-{manifest.version}-{platform.name}.{platform.extension}"


def _pack(archive: str, root: str, member: str, as_zip: bool) -> None:
    if as_zip:
        files.zip_dir(archive, root, member)
    else:
        files.tar_gz(archive, root, [member])


def stage_platform(manifest: Manifest, platform: Platform) -> str:
    """Lay out istio-<version>/ for one platform and return the directory holding it."""
    src = manifest.repo_dir(ANCHOR_REPO)
    bin_dir = manifest.repo_out_dir(ANCHOR_REPO)
    staging = os.path.join(manifest.work_dir(), "archive", platform.name)
    out = os.path.join(staging, f"istio-{manifest.version}")
    os.makedirs(out, mode=0o750, exist_ok=True)

    for name in DIRECT_COPIES:
        files.copy_file(os.path.join(src, name), os.path.join(out, name))
    for name in OPTIONAL_TOOLS:
        path = os.path.join(src, name)
        if os.path.isfile(path):
            files.copy_file(path, os.path.join(out, name))
    for name in COMPLETION_FILES:
        files.copy_file(os.path.join(bin_dir, name), os.path.join(out, "tools", name))

    for tree in ("samples", "manifests"):
        files.copy_dir_filtered(os.path.join(src, tree), os.path.join(out, tree), INCLUDE_PATTERNS)

    files.copy_file(os.path.join(bin_dir, platform.binary), os.path.join(out, "bin", platform.istioctl))
    return staging


def build_archive(manifest: Manifest) -> None:
    command.run_make(manifest, ANCHOR_REPO, ["istioctl-all", "istioctl.completion"])

    bin_dir = manifest.repo_out_dir(ANCHOR_REPO)
    for platform in PLATFORMS:
        logger.info(f"Assembling {platform.name} archive")
        staging = stage_platform(manifest, platform)
        archive = os.path.join(manifest.out_dir(), archive_name(manifest, platform))
        _pack(archive, staging, f"istio-{manifest.version}", platform.zip)
        files.create_sha(archive)

        standalone = os.path.join(manifest.work_dir(), "istioctl", platform.name)
        files.copy_file(os.path.join(bin_dir, platform.binary), os.path.join(standalone, platform.istioctl))
        archive = os.path.join(manifest.out_dir(), istioctl_archive_name(manifest, platform))
        _pack(archive, standalone, platform.istioctl, platform.zip)
        files.create_sha(archive)
