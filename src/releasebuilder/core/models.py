#!/usr/bin/env python3
"""
RELEASE BUILDER CORE MODELS
---------------------------
Defines the declarative description of a release: which repositories take
part, what version is being cut, what gets built and where everything lives
on disk while it is being built.

The Manifest never stores derived paths. Every directory the build touches
is computed from `directory` so that a manifest read back from disk can be
re-rooted simply by pointing `directory` somewhere else.
"""

import enum
import os
import platform
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from releasebuilder.core.errors import ConfigError


class BuildOutput(enum.Enum):
    DOCKER = "docker"
    HELM = "helm"
    DEBIAN = "debian"
    RPM = "rpm"
    ARCHIVE = "archive"
    GRAFANA = "grafana"
    SCANNER = "scanner"


class DockerOutput(str, enum.Enum):
    # Images are written to tarballs on disk
    TAR = "tar"
    # Images are loaded straight into the local docker daemon
    CONTEXT = "context"


class AutoStrategy(str, enum.Enum):
    # Read lastStableSHA from istio.deps in the anchor repo
    DEPS = "deps"
    # Read the pinned version from go.mod in the anchor repo
    MODULES = "modules"
    # Read ENVOY_SHA from the proxy WORKSPACE file. Only meaningful for envoy.
    PROXY_WORKSPACE = "proxy_workspace"


# The anchor repo is always resolved first; auto strategies read files out of it.
ANCHOR_REPO = "istio"

# Fixed, ordered set of repository slots a release may draw from.
REPOS: Tuple[str, ...] = (
    "istio",
    "api",
    "proxy",
    "ztunnel",
    "client-go",
    "test-infra",
    "tools",
    "envoy",
    "enhancements",
    "release-builder",
    "common-files",
)

_DEPENDENCY_KEYS = ("git", "branch", "sha", "localpath", "auto", "goversionenabled")


@dataclass
class Dependency:
    """A single source repository and how to pick its revision."""
    git: str = ""                   # Required when branch, sha or auto is set
    branch: str = ""
    sha: str = ""
    localpath: str = ""             # Copied as-is; must still be a git checkout
    auto: str = ""                  # One of AutoStrategy
    goversionenabled: bool = False  # Tag with a `v` prefix, e.g. v1.2.3

    def ref(self) -> str:
        return self.sha or self.branch

    def selectors(self) -> List[str]:
        return [name for name in ("branch", "sha", "localpath", "auto") if getattr(self, name)]

    def describe(self) -> str:
        parts = [f"{name}={getattr(self, name)}" for name in ("git", "branch", "sha", "localpath", "auto")
                 if getattr(self, name)]
        return "{" + ", ".join(parts) + "}"

    @classmethod
    def from_dict(cls, repo: str, data: Optional[dict]) -> "Dependency":
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{repo}: dependency must be a mapping, got {data!r}")
        unknown = sorted(set(data) - set(_DEPENDENCY_KEYS))
        if unknown:
            raise ConfigError(f"{repo}: unknown dependency field(s) {', '.join(unknown)}")
        dep = cls(
            git=str(data.get("git") or ""),
            branch=str(data.get("branch") or ""),
            sha=str(data.get("sha") or ""),
            localpath=str(data.get("localpath") or ""),
            auto=str(data.get("auto") or ""),
            goversionenabled=bool(data.get("goversionenabled", False)),
        )
        if len(dep.selectors()) > 1:
            raise ConfigError(f"{repo}: only one of branch/sha/localpath/auto may be set, got {dep.selectors()}")
        return dep


class DependencySet:
    """
    Maps each known repository slot to an optional Dependency.

    A slot holding None means the repo is not part of this release. Callers
    iterate with `present()` and must treat absence as skip, never as failure.
    """

    def __init__(self, deps: Optional[Dict[str, Optional[Dependency]]] = None):
        self._slots: Dict[str, Optional[Dependency]] = {name: None for name in REPOS}
        for name, dep in (deps or {}).items():
            self.set(name, dep)

    def _check(self, repo: str) -> None:
        if repo not in self._slots:
            raise ConfigError(f"unknown dependency {repo!r}, expected one of {', '.join(REPOS)}")

    def get(self, repo: str) -> Optional[Dependency]:
        self._check(repo)
        return self._slots[repo]

    def set(self, repo: str, dep: Optional[Dependency]) -> None:
        self._check(repo)
        self._slots[repo] = dep

    def items(self) -> Iterator[Tuple[str, Optional[Dependency]]]:
        for repo in REPOS:
            yield repo, self._slots[repo]

    def present(self) -> Iterator[Tuple[str, Dependency]]:
        for repo, dep in self.items():
            if dep is not None:
                yield repo, dep

    def to_dict(self) -> Dict[str, dict]:
        """Only the pinned SHA survives serialization; branch and git URL are dropped."""
        out: Dict[str, dict] = {}
        for repo, dep in self.present():
            entry: dict = {"sha": dep.sha}
            if dep.goversionenabled:
                entry["goversionenabled"] = True
            out[repo] = entry
        return out

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DependencySet":
        deps = cls()
        if not isinstance(data or {}, dict):
            raise ConfigError(f"dependencies must be a mapping of repo to dependency, got {data!r}")
        for repo, spec in (data or {}).items():
            repo = str(repo)
            deps._check(repo)
            deps.set(repo, None if spec is None else Dependency.from_dict(repo, spec))
        return deps

    def __eq__(self, other: object) -> bool:
        return isinstance(other, DependencySet) and dict(self.items()) == dict(other.items())

    def __repr__(self) -> str:
        return f"DependencySet({dict(self.present())!r})"


def host_platform() -> str:
    """GOOS_GOARCH style name of the machine running the build, e.g. linux_amd64."""
    system = platform.system().lower()
    machine = platform.machine().lower()
    arch = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64"}.get(machine, machine)
    return f"{system}_{arch}"


def parse_dashboards(data: Optional[dict]) -> Dict[str, int]:
    """Dashboard name -> grafana.com dashboard id."""
    if not isinstance(data or {}, dict):
        raise ConfigError(f"dashboards must be a mapping of name to id, got {data!r}")
    dashboards: Dict[str, int] = {}
    for name, dashboard_id in (data or {}).items():
        if isinstance(dashboard_id, bool) or not isinstance(dashboard_id, int):
            raise ConfigError(f"dashboard {name}: id must be an integer, got {dashboard_id!r}")
        dashboards[str(name)] = dashboard_id
    return dashboards


@dataclass
class InputManifest:
    """The user-facing manifest, before defaulting."""
    dependencies: DependencySet = field(default_factory=DependencySet)
    version: str = ""
    docker: str = ""
    docker_output: str = ""
    architectures: List[str] = field(default_factory=list)
    directory: str = ""
    proxy_override: str = ""
    outputs: List[str] = field(default_factory=list)
    dashboards: Dict[str, int] = field(default_factory=dict)
    skip_generate_bill_of_materials: bool = False
    ignore_vulnerability: bool = False
    bill_of_materials_uri: str = ""


@dataclass
class Manifest:
    """The release descriptor every phase works from."""
    dependencies: DependencySet = field(default_factory=DependencySet)
    version: str = ""
    docker: str = ""
    docker_output: DockerOutput = DockerOutput.TAR
    architectures: List[str] = field(default_factory=list)
    # Internal: never serialized
    directory: str = ""
    proxy_override: str = ""
    build_outputs: Set[BuildOutput] = field(default_factory=lambda: set(BuildOutput))
    dashboards: Dict[str, int] = field(default_factory=dict)
    skip_generate_bill_of_materials: bool = False
    ignore_vulnerability: bool = False
    bill_of_materials_uri: str = ""
    # repo -> short SHA/version for every dependency, including ones never cloned
    all_dependencies: Dict[str, str] = field(default_factory=dict)

    def should_build(self, output: BuildOutput) -> bool:
        return output in self.build_outputs

    def arches(self) -> List[str]:
        """Bare CPU architectures, e.g. ["amd64", "arm64"] from linux/amd64,linux/arm64."""
        arches = [a.split("/", 1)[-1] for a in self.architectures if a]
        return arches or ["amd64"]

    def work_dir(self) -> str:
        return os.path.join(self.directory, "work")

    def source_dir(self) -> str:
        return os.path.join(self.directory, "sources")

    def out_dir(self) -> str:
        return os.path.join(self.directory, "out")

    def repo_dir(self, repo: str) -> str:
        return os.path.join(self.work_dir(), "src", "istio.io", repo)

    def repo_arch_out_dir(self, repo: str, arch: str) -> str:
        return os.path.join(self.repo_dir(repo), "out", f"linux_{arch}", "release")

    def repo_out_dir(self, repo: str) -> str:
        return os.path.join(self.repo_dir(repo), "out", host_platform(), "release")

    def to_dict(self) -> dict:
        data = {
            "dependencies": self.dependencies.to_dict(),
            "version": self.version,
            "docker": self.docker,
            "dockerOutput": self.docker_output.value,
            "architectures": list(self.architectures),
            "dashboards": dict(self.dashboards),
            "skipGenerateBillOfMaterials": self.skip_generate_bill_of_materials,
        }
        if self.ignore_vulnerability:
            data["ignoreVulnerability"] = True
        if self.bill_of_materials_uri:
            data["billOfMaterialsURI"] = self.bill_of_materials_uri
        if self.all_dependencies:
            data["allDependencies"] = dict(self.all_dependencies)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Manifest":
        try:
            docker_output = DockerOutput(data.get("dockerOutput") or DockerOutput.TAR.value)
        except ValueError as err:
            raise ConfigError(f"unknown docker output: {data.get('dockerOutput')}") from err
        return cls(
            dependencies=DependencySet.from_dict(data.get("dependencies")),
            version=str(data.get("version") or ""),
            docker=str(data.get("docker") or ""),
            docker_output=docker_output,
            architectures=[str(a) for a in (data.get("architectures") or [])],
            dashboards=parse_dashboards(data.get("dashboards")),
            skip_generate_bill_of_materials=bool(data.get("skipGenerateBillOfMaterials", False)),
            ignore_vulnerability=bool(data.get("ignoreVulnerability", False)),
            bill_of_materials_uri=str(data.get("billOfMaterialsURI") or ""),
            all_dependencies={str(k): str(v) for k, v in (data.get("allDependencies") or {}).items()},
        )
