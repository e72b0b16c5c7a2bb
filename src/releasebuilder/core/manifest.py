#!/usr/bin/env python3
"""
RELEASE BUILDER MANIFEST I/O
----------------------------
Reads the user-facing input manifest, applies the defaulting rules that turn
it into a Manifest, and writes the final manifest.yaml that records exactly
what was built.
"""

import io
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Set

from ruamel.yaml import YAML, YAMLError

from releasebuilder.core.errors import ConfigError
from releasebuilder.core.models import (
    BuildOutput,
    DependencySet,
    DockerOutput,
    InputManifest,
    Manifest,
    parse_dashboards,
)

logger = logging.getLogger("releasebuilder.manifest")

MANIFEST_FILE = "manifest.yaml"


def new_yaml() -> YAML:
    """Round-trip YAML configured the same way for every file we emit."""
    yaml = YAML(typ="rt")
    yaml.preserve_quotes = True
    yaml.indent(mapping=2, sequence=4, offset=2)
    yaml.width = 4096
    return yaml


def _load(path: str) -> Any:
    try:
        text = Path(path).read_text(encoding="utf-8-sig")
    except OSError as err:
        raise ConfigError(f"failed to read manifest file {path}: {err}") from err
    try:
        return YAML(typ="safe").load(text) or {}
    except YAMLError as err:
        raise ConfigError(f"failed to unmarshal manifest file {path}: {err}") from err


def dump_yaml(data: Any) -> str:
    stream = io.StringIO()
    new_yaml().dump(data, stream)
    return stream.getvalue()


def yaml_log(prefix: str, data: Any) -> None:
    logger.info(f"{prefix}:\n{dump_yaml(data)}")


def validate_dependencies(dependencies: DependencySet) -> None:
    for repo, dep in dependencies.items():
        if dep is None:
            # Many slots are optional and only used for tagging
            logger.warning(f"missing dependency: {repo}")
            continue
        if (dep.branch or dep.sha or dep.auto) and not dep.git:
            raise ConfigError(f"{repo} has branch/sha/auto selected without git source")


def parse_input_manifest(data: dict) -> InputManifest:
    if not isinstance(data, dict):
        raise ConfigError("manifest must be a mapping")
    manifest = InputManifest(
        dependencies=DependencySet.from_dict(data.get("dependencies")),
        version=str(data.get("version") or ""),
        docker=str(data.get("docker") or ""),
        docker_output=str(data.get("dockerOutput") or ""),
        architectures=[str(a) for a in (data.get("architectures") or [])],
        directory=str(data.get("directory") or ""),
        proxy_override=str(data.get("proxyOverride") or ""),
        outputs=[str(o) for o in (data.get("outputs") or [])],
        dashboards=parse_dashboards(data.get("dashboards")),
        skip_generate_bill_of_materials=bool(data.get("skipGenerateBillOfMaterials", False)),
        ignore_vulnerability=bool(data.get("ignoreVulnerability", False)),
        bill_of_materials_uri=str(data.get("billOfMaterialsURI") or ""),
    )
    validate_dependencies(manifest.dependencies)
    return manifest


def read_input_manifest(path: str) -> InputManifest:
    try:
        return parse_input_manifest(_load(path))
    except ConfigError as err:
        raise ConfigError(f"invalid manifest {path}: {err}") from err


def parse_build_outputs(names) -> Set[BuildOutput]:
    outputs: Set[BuildOutput] = set()
    for name in names:
        try:
            outputs.add(BuildOutput(name.strip().lower()))
        except ValueError as err:
            raise ConfigError(f"unknown build output: {name}") from err
    return outputs or set(BuildOutput)


def derive_manifest(inp: InputManifest) -> Manifest:
    """Apply defaulting rules. Only side effect: creating a temp working dir when none is given."""
    outputs = parse_build_outputs(inp.outputs)
    try:
        docker_output = DockerOutput(inp.docker_output or DockerOutput.TAR.value)
    except ValueError as err:
        raise ConfigError(f"unknown docker output: {inp.docker_output}") from err

    directory = inp.directory
    if not directory:
        try:
            directory = tempfile.mkdtemp(prefix="istio-release")
        except OSError as err:
            raise ConfigError(f"failed to create working directory: {err}") from err

    return Manifest(
        dependencies=inp.dependencies,
        version=inp.version,
        docker=inp.docker,
        docker_output=docker_output,
        architectures=list(inp.architectures),
        directory=directory,
        proxy_override=inp.proxy_override,
        build_outputs=outputs,
        dashboards=dict(inp.dashboards),
        skip_generate_bill_of_materials=inp.skip_generate_bill_of_materials,
        ignore_vulnerability=inp.ignore_vulnerability,
        bill_of_materials_uri=inp.bill_of_materials_uri,
    )


def read_manifest(path: str) -> Manifest:
    """Read back a manifest.yaml written at the end of a build."""
    data = _load(path)
    if not isinstance(data, dict):
        raise ConfigError(f"manifest {path} must be a mapping")
    return Manifest.from_dict(data)


def write_manifest(manifest: Manifest, directory: str) -> str:
    os.makedirs(directory, exist_ok=True)
    target = os.path.join(directory, MANIFEST_FILE)
    Path(target).write_text(dump_yaml(manifest.to_dict()), encoding="utf-8")
    os.chmod(target, 0o640)
    return target


def setup_work_dir(directory: str) -> None:
    for sub in ("sources", "work", "out"):
        try:
            os.makedirs(os.path.join(directory, sub), mode=0o750)
        except OSError as err:
            raise ConfigError(f"failed to set up working directory: {err}") from err
