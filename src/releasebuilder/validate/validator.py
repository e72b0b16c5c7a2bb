#!/usr/bin/env python3
"""
RELEASE BUILDER VALIDATOR
-------------------------
Sanity checks over a finished release directory (the out/ directory of a
build). Every check runs even if an earlier one fails so a single run
reports everything that is wrong.
"""

import logging
import os
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ruamel.yaml import YAML, YAMLError

from releasebuilder.build.archive import PLATFORMS, archive_name
from releasebuilder.core import files
from releasebuilder.core.errors import ReleaseError, ValidationError
from releasebuilder.core.manifest import MANIFEST_FILE, read_manifest
from releasebuilder.core.models import ANCHOR_REPO, DockerOutput, Manifest
from releasebuilder.publish.images import parse_image_tarball

logger = logging.getLogger("releasebuilder.validate")

EXPECTED_IMAGES = ("pilot", "proxyv2")
EXPECTED_LICENSES = (f"{ANCHOR_REPO}.tar.gz",)
COMPLETION_FILES = ("tools/istioctl.bash", "tools/_istioctl")
ARCHIVED_CHARTS = (
    "manifests/charts/base",
    "manifests/charts/gateways/istio-egress",
    "manifests/charts/gateways/istio-ingress",
    "manifests/charts/istio-control/istio-discovery",
)


def _load_yaml(path: str) -> dict:
    try:
        return YAML(typ="safe").load(Path(path).read_text(encoding="utf-8")) or {}
    except (OSError, YAMLError) as err:
        raise ValidationError(f"failed to read {path}: {err}") from err


def _verify_sha(path: str) -> None:
    if not os.path.isfile(path):
        raise ValidationError(f"{os.path.basename(path)} not found")
    sha_file = path + ".sha256"
    if not os.path.isfile(sha_file):
        raise ValidationError(f"{os.path.basename(sha_file)} not found")
    expected = Path(sha_file).read_text(encoding="utf-8").split()[0]
    actual = files.sha256_file(path)
    if expected != actual:
        raise ValidationError(f"checksum mismatch for {os.path.basename(path)}: {expected} != {actual}")


class ReleaseValidator:
    """Runs every release check against one release directory."""

    def __init__(self, release: str):
        self.release = release
        self.manifest: Manifest = read_manifest(os.path.join(release, MANIFEST_FILE))
        self.tmp_dir: Optional[str] = None
        self.archive_error: Optional[Exception] = None
        self.archive: Optional[str] = self._unpack_archive()

    def _unpack_archive(self) -> Optional[str]:
        path = os.path.join(self.release, archive_name(self.manifest, PLATFORMS[0]))
        if not os.path.isfile(path):
            logger.warning(f"Release archive {path} not found")
            return None
        self.tmp_dir = tempfile.mkdtemp(prefix="release-test")
        try:
            with tarfile.open(path, "r:gz") as tar:
                tar.extractall(self.tmp_dir, filter="data")
        except (tarfile.TarError, OSError) as err:
            logger.error(f"Failed to unpack release archive {path}: {err}")
            self.archive_error = err
            return None
        return os.path.join(self.tmp_dir, f"istio-{self.manifest.version}")

    def close(self) -> None:
        if self.tmp_dir:
            shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def checks(self) -> Dict[str, Callable[[], None]]:
        return {
            "Manifest": self.check_manifest,
            "Docker": self.check_docker,
            "HelmVersions": self.check_helm_versions,
            "CompletionFiles": self.check_completion_files,
            "Licenses": self.check_licenses,
            "Grafana": self.check_grafana,
            "Debian": lambda: self.check_package("deb"),
            "Rpm": lambda: self.check_package("rpm"),
        }

    def check_manifest(self) -> None:
        raw = _load_yaml(os.path.join(self.release, MANIFEST_FILE))
        if "directory" in raw:
            raise ValidationError(f"expected manifest directory to be hidden, got {raw['directory']}")
        if self.manifest.dependencies.get(ANCHOR_REPO) is None:
            raise ValidationError(f"missing dependency: {ANCHOR_REPO}")
        for repo, dep in self.manifest.dependencies.present():
            if not dep.sha:
                raise ValidationError(f"got empty SHA for {repo}")

    def check_docker(self) -> None:
        if self.manifest.docker_output is DockerOutput.CONTEXT:
            return
        docker = os.path.join(self.release, "docker")
        try:
            found = {parse_image_tarball(name) for name in os.listdir(docker)}
        except OSError as err:
            raise ValidationError(f"failed to read docker dir: {err}") from err
        names = {image.name for image in found}
        missing = [name for name in EXPECTED_IMAGES if name not in names]
        if missing:
            raise ValidationError(f"expected docker images {missing}, but had {sorted(names)}")

    def _require_archive(self) -> str:
        if self.archive_error is not None:
            raise ValidationError(f"release archive unreadable: {self.archive_error}") from self.archive_error
        if not self.archive:
            raise ValidationError("release archive not available")
        return self.archive

    def check_helm_versions(self) -> None:
        archive = self._require_archive()
        version, hub = self.manifest.version, self.manifest.docker
        for chart in ARCHIVED_CHARTS:
            descriptor = _load_yaml(os.path.join(archive, chart, "Chart.yaml"))
            for key in ("version", "appVersion"):
                if str(descriptor.get(key)) != version:
                    raise ValidationError(f"{chart} {key} incorrect: got {descriptor.get(key)} expected {version}")
            values_path = os.path.join(archive, chart, "values.yaml")
            if not os.path.isfile(values_path):
                continue
            values = _load_yaml(values_path)
            g = values.get("global") or (values.get("_internal_defaults_do_not_set") or {}).get("global") or {}
            if "tag" in g and str(g["tag"]) != version:
                raise ValidationError(f"{chart} tag incorrect: got {g['tag']} expected {version}")
            if "hub" in g and g["hub"] != hub:
                raise ValidationError(f"{chart} hub incorrect: got {g['hub']} expected {hub}")

    def check_completion_files(self) -> None:
        archive = self._require_archive()
        for name in COMPLETION_FILES:
            if not os.path.isfile(os.path.join(archive, name)):
                raise ValidationError(f"file not found {name}")

    def check_licenses(self) -> None:
        try:
            present = set(os.listdir(os.path.join(self.release, "licenses")))
        except OSError as err:
            raise ValidationError(f"failed to read licenses: {err}") from err
        missing = [name for name in EXPECTED_LICENSES if name not in present]
        if missing:
            raise ValidationError(f"failed to find licenses for: {missing}")

    def check_grafana(self) -> None:
        directory = os.path.join(self.release, "grafana")
        created = set()
        if os.path.isdir(directory):
            created = {name[: -len(".json")] for name in os.listdir(directory) if name.endswith(".json")}
        wanted = set(self.manifest.dashboards)
        if not wanted <= created:
            raise ValidationError(
                f"dashboards out of sync, release contains {sorted(created)}, manifest contains {sorted(wanted)}"
            )

    def check_package(self, kind: str) -> None:
        _verify_sha(os.path.join(self.release, kind, f"istio-sidecar.{kind}"))

    def run(self) -> Tuple[List[str], str, List[str]]:
        passed: List[str] = []
        failed: List[str] = []
        for name, check in self.checks().items():
            try:
                check()
            except ReleaseError as err:
                logger.error(f"Check {name} failed: {err}")
                failed.append(f"check {name} failed: {err}")
            else:
                logger.info(f"Check {name} passed")
                passed.append(name)
        info = ""
        if failed:
            lines = [f"Checks failed for release {self.release} (version {self.manifest.version})",
                     "Files in release:"]
            lines += [f"- {f}" for f in files.list_files(self.release)]
            info = "\n".join(lines)
        return passed, info, failed


def check_release(release: str) -> Tuple[List[str], str, List[str]]:
    """Validate a release directory. Returns (passed checks, diagnostic info, failures)."""
    if not release:
        return [], "", ["--release must be passed"]
    validator = ReleaseValidator(release)
    try:
        return validator.run()
    finally:
        validator.close()
