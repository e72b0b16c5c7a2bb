#!/usr/bin/env python3
"""
RELEASE BUILDER ORCHESTRATOR
----------------------------
Drives one release build from a derived Manifest to a populated out/
directory:

1. Prepare: working directory layout, source resolution, SHA pinning.
2. Scan: optional vulnerability scan of the base image.
3. Build: one sub-builder per selected output. Charts are always stamped
   after images and before Helm packaging and archiving, since both read
   the stamped files.
4. Record: sources bundle, licenses and the pinned manifest.yaml.

Everything runs sequentially in the calling thread. The first failure
aborts the run with the failing phase prepended to the error.
"""

import logging
import os
from typing import Callable, List, Tuple

from releasebuilder.build import archive, charts, docker, grafana, helm, packages, sbom, scanner
from releasebuilder.core import files
from releasebuilder.core.errors import BuildError, ReleaseError
from releasebuilder.core.manifest import setup_work_dir, write_manifest
from releasebuilder.core.models import BuildOutput, Manifest
from releasebuilder.sources import resolver

logger = logging.getLogger("releasebuilder.build")


def write_licenses(manifest: Manifest) -> List[str]:
    """Bundle each repo's licenses/ folder as out/licenses/<repo>.tar.gz."""
    dest = os.path.join(manifest.out_dir(), "licenses")
    os.makedirs(dest, mode=0o750, exist_ok=True)
    written = []
    for repo, _ in manifest.dependencies.present():
        src = os.path.join(manifest.repo_dir(repo), "licenses")
        # Validation flags repos that are expected to ship licenses
        if not os.path.isdir(src):
            logger.warning(f"Skipping license for {repo}")
            continue
        archive_path = os.path.join(dest, f"{repo}.tar.gz")
        files.tar_gz(archive_path, manifest.directory, [os.path.relpath(src, manifest.directory)])
        written.append(archive_path)
    return written


def bundle_sources(manifest: Manifest) -> str:
    target = os.path.join(manifest.out_dir(), "sources.tar.gz")
    files.tar_gz(target, manifest.directory, ["sources"])
    return target


class ReleaseBuilder:
    """Runs the build phases for a single manifest."""

    def __init__(self, manifest: Manifest):
        self.manifest = manifest

    def steps(self) -> List[Tuple[str, Callable[[Manifest], None]]]:
        m = self.manifest
        plan: List[Tuple[str, Callable[[Manifest], None]]] = []
        if m.should_build(BuildOutput.DOCKER):
            plan.append(("Docker", docker.build_docker))
        plan.append(("charts", charts.sanitize_all_charts))
        if m.should_build(BuildOutput.HELM):
            plan.append(("Helm", helm.build_helm))
        if m.should_build(BuildOutput.DEBIAN):
            plan.append(("Debian", packages.build_debian))
        if m.should_build(BuildOutput.RPM):
            plan.append(("RPM", packages.build_rpm))
        if m.should_build(BuildOutput.ARCHIVE):
            plan.append(("Archive", archive.build_archive))
        if m.should_build(BuildOutput.GRAFANA):
            plan.append(("Grafana", grafana.build_grafana))
        if not m.skip_generate_bill_of_materials:
            plan.append(("bill of materials", sbom.generate_bill_of_materials))
        return plan

    def prepare(self) -> None:
        setup_work_dir(self.manifest.directory)
        resolver.resolve_sources(self.manifest)
        logger.info(f"Fetched all sources and setup working directory at {self.manifest.work_dir()}")
        resolver.standardize_manifest(self.manifest)

    def scan(self) -> None:
        if self.manifest.should_build(BuildOutput.SCANNER):
            scanner.run_scanner(self.manifest)

    def build(self) -> None:
        for name, step in self.steps():
            logger.info(f"Building {name}")
            try:
                step(self.manifest)
            except ReleaseError as err:
                raise BuildError(f"failed to build {name}: {err}") from err
            except OSError as err:
                raise BuildError(f"failed to build {name}: {err}") from err
            logger.info(f"Built {name}")
        self.record()

    def record(self) -> None:
        try:
            bundle_sources(self.manifest)
        except OSError as err:
            raise BuildError(f"failed to bundle sources: {err}") from err
        write_manifest(self.manifest, self.manifest.out_dir())
        try:
            write_licenses(self.manifest)
        except OSError as err:
            raise BuildError(f"failed to package license file: {err}") from err

    def run(self) -> str:
        self.prepare()
        self.scan()
        self.build()
        logger.info(f"Built release at {self.manifest.out_dir()}")
        return self.manifest.out_dir()


def build(manifest: Manifest) -> None:
    """Build every selected output. Assumes sources are already resolved."""
    ReleaseBuilder(manifest).build()
