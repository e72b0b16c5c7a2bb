"""
Container registry access through the docker, crane and cosign CLIs.

`Registry` is the seam the image publisher talks to; `DockerRegistry` is the
real implementation. Digests are always `sha256:<hex>` strings.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Dict, List

from releasebuilder.core import command
from releasebuilder.core.errors import PublishError

logger = logging.getLogger("releasebuilder.registry")

MANIFEST_LIST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.list.v2+json"
MANIFEST_MEDIA_TYPE = "application/vnd.docker.distribution.manifest.v2+json"


@dataclass
class Platform:
    architecture: str
    os: str = "linux"
    variant: str = ""
    os_version: str = ""

    def to_dict(self) -> Dict[str, str]:
        data = {"architecture": self.architecture, "os": self.os}
        if self.os_version:
            data["os.version"] = self.os_version
        if self.variant:
            data["variant"] = self.variant
        return data


@dataclass
class ManifestEntry:
    """One per-architecture image already pushed by digest."""
    repository: str
    digest: str
    platform: Platform

    @property
    def reference(self) -> str:
        return f"{self.repository}@{self.digest}"


@dataclass
class ManifestList:
    target: str
    entries: List[ManifestEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "schemaVersion": 2,
            "mediaType": MANIFEST_LIST_MEDIA_TYPE,
            "manifests": [
                {
                    "mediaType": MANIFEST_MEDIA_TYPE,
                    "digest": e.digest,
                    "platform": e.platform.to_dict(),
                }
                for e in self.entries
            ],
        }


def repository_of(ref: str) -> str:
    """gcr.io/istio/pilot:1.2.3 -> gcr.io/istio/pilot (registry ports are kept)."""
    ref = ref.split("@", 1)[0]
    slash = ref.rfind("/")
    colon = ref.rfind(":")
    if colon > slash:
        return ref[:colon]
    return ref


class Registry:
    """Operations the image publisher needs from a registry and local image store."""

    def load(self, tarball: str) -> str:
        raise NotImplementedError

    def tag(self, source: str, target: str) -> None:
        raise NotImplementedError

    def push(self, ref: str) -> None:
        raise NotImplementedError

    def push_by_digest(self, local_ref: str, repository: str) -> str:
        raise NotImplementedError

    def platform(self, local_ref: str) -> Platform:
        raise NotImplementedError

    def push_manifest_list(self, manifest_list: ManifestList) -> None:
        raise NotImplementedError

    def digest(self, ref: str) -> str:
        raise NotImplementedError

    def sign(self, ref: str, key: str) -> None:
        raise NotImplementedError


class DockerRegistry(Registry):

    def load(self, tarball: str) -> str:
        out = command.output(["docker", "load", "-i", tarball])
        loaded = ""
        for line in out.splitlines():
            for prefix in ("Loaded image:", "Loaded image ID:"):
                if line.startswith(prefix):
                    loaded = line[len(prefix):].strip()
        if not loaded:
            raise PublishError(f"docker load of {tarball} did not report an image: {out}")
        return loaded

    def tag(self, source: str, target: str) -> None:
        command.run(["docker", "tag", source, target])

    def push(self, ref: str) -> None:
        command.run(["docker", "push", ref])

    def push_by_digest(self, local_ref: str, repository: str) -> str:
        with tempfile.TemporaryDirectory(prefix="release-image") as tmp:
            tarball = os.path.join(tmp, "image.tar")
            command.run(["docker", "save", "-o", tarball, local_ref])
            digest = command.output(["crane", "digest", "--tarball", tarball])
            command.run(["crane", "push", tarball, f"{repository}@{digest}"])
        return digest

    def platform(self, local_ref: str) -> Platform:
        raw = command.output(["docker", "image", "inspect", "--format", "{{json .}}", local_ref])
        try:
            info = json.loads(raw)
        except json.JSONDecodeError as err:
            raise PublishError(f"failed to parse image config of {local_ref}: {err}") from err
        return Platform(
            architecture=info.get("Architecture") or "amd64",
            os=info.get("Os") or "linux",
            variant=info.get("Variant") or "",
            os_version=info.get("OsVersion") or "",
        )

    def push_manifest_list(self, manifest_list: ManifestList) -> None:
        target = manifest_list.target
        refs = [e.reference for e in manifest_list.entries]
        command.run(["docker", "manifest", "create", "--amend", target, *refs])
        for entry in manifest_list.entries:
            args = ["docker", "manifest", "annotate", target, entry.reference,
                    "--os", entry.platform.os, "--arch", entry.platform.architecture]
            if entry.platform.variant:
                args += ["--variant", entry.platform.variant]
            if entry.platform.os_version:
                args += ["--os-version", entry.platform.os_version]
            command.run(args)
        command.run(["docker", "manifest", "push", "--purge", target])

    def digest(self, ref: str) -> str:
        return command.output(["crane", "digest", ref])

    def sign(self, ref: str, key: str) -> None:
        command.run(["cosign", "sign", "--key", key, "-y", ref])
