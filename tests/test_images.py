import os

import pytest

from releasebuilder.core.errors import ConfigError
from releasebuilder.publish.images import ImagePublisher, ImageTarball, group_images, parse_image_tarball
from releasebuilder.publish.registry import ManifestList, Platform, Registry, repository_of


class FakeRegistry(Registry):
    """Records every call instead of talking to docker."""

    def __init__(self):
        self.calls = []
        self.manifest_lists = []

    def load(self, tarball):
        self.calls.append(("load", os.path.basename(tarball)))
        return f"loaded/{os.path.basename(tarball)}"

    def tag(self, source, target):
        self.calls.append(("tag", source, target))

    def push(self, ref):
        self.calls.append(("push", ref))

    def push_by_digest(self, local_ref, repository):
        self.calls.append(("push_by_digest", local_ref, repository))
        return "sha256:" + local_ref.rsplit("-", 1)[-1]

    def platform(self, local_ref):
        return Platform(architecture=local_ref.rsplit("-", 1)[-1])

    def push_manifest_list(self, manifest_list: ManifestList):
        self.manifest_lists.append(manifest_list)

    def digest(self, ref):
        self.calls.append(("digest", ref))
        return "sha256:remote"

    def sign(self, ref, key):
        self.calls.append(("sign", ref, key))


def write_tarballs(manifest, *names):
    docker = os.path.join(manifest.directory, "docker")
    os.makedirs(docker, exist_ok=True)
    for name in names:
        open(os.path.join(docker, name), "wb").close()


@pytest.mark.parametrize("filename, expected", [
    ("pilot.tar.gz", ImageTarball("pilot")),
    ("pilot-arm64.tar.gz", ImageTarball("pilot", arch="arm64")),
    ("proxyv2-distroless.tar.gz", ImageTarball("proxyv2", variant="distroless")),
    ("proxyv2-debug-arm64.tar.gz", ImageTarball("proxyv2", variant="debug", arch="arm64")),
    ("install-cni.tar.gz", ImageTarball("install-cni")),
])
def test_parse_image_tarball(filename, expected):
    assert parse_image_tarball(filename) == expected


@pytest.mark.parametrize("filename", ["pilot.tar", "README.md", "-arm64.tar.gz"])
def test_parse_image_tarball_rejects_other_files(filename):
    with pytest.raises(ConfigError):
        parse_image_tarball(filename)


def test_repository_of():
    assert repository_of("docker.io/istio/pilot:1.2.3") == "docker.io/istio/pilot"
    assert repository_of("localhost:5000/pilot:1.2.3") == "localhost:5000/pilot"
    assert repository_of("localhost:5000/pilot") == "localhost:5000/pilot"
    assert repository_of("docker.io/istio/pilot@sha256:abc") == "docker.io/istio/pilot"


def test_group_images_rejects_duplicate_architectures():
    loaded = [(ImageTarball("pilot"), "a"), (ImageTarball("pilot"), "b")]
    with pytest.raises(ConfigError, match="duplicate amd64"):
        group_images(loaded, ["1.0"])


def test_multi_arch_images_publish_one_manifest_list(manifest):
    """
    An amd64 and an arm64 build of the same image become a single tag that
    resolves per platform, with no single-arch push under the tag.
    """
    write_tarballs(manifest, "pilot.tar.gz", "pilot-arm64.tar.gz")
    registry = FakeRegistry()

    published = ImagePublisher(manifest, "gcr.io/istio", tags=["1.2.3"], registry=registry).publish()

    # 1. One reference published
    assert published == ["gcr.io/istio/pilot:1.2.3"]

    # 2. Exactly one manifest list, with two distinct digests
    assert len(registry.manifest_lists) == 1
    manifest_list = registry.manifest_lists[0]
    assert manifest_list.target == "gcr.io/istio/pilot:1.2.3"
    assert sorted(e.platform.architecture for e in manifest_list.entries) == ["amd64", "arm64"]
    assert len({e.digest for e in manifest_list.entries}) == 2
    assert all(e.repository == "gcr.io/istio/pilot" for e in manifest_list.entries)

    # 3. Nothing pushed directly under the tag
    assert not [c for c in registry.calls if c[0] == "push"]

    body = manifest_list.to_dict()
    assert body["schemaVersion"] == 2
    assert {m["platform"]["architecture"] for m in body["manifests"]} == {"amd64", "arm64"}


def test_single_arch_image_is_pushed_directly(manifest):
    write_tarballs(manifest, "pilot.tar.gz")
    registry = FakeRegistry()

    published = ImagePublisher(manifest, "gcr.io/istio", tags=["1.2.3", "latest"], registry=registry).publish()

    assert published == ["gcr.io/istio/pilot:1.2.3", "gcr.io/istio/pilot:latest"]
    assert registry.manifest_lists == []
    pushes = [c[1] for c in registry.calls if c[0] == "push"]
    assert pushes == ["gcr.io/istio/pilot:1.2.3", "gcr.io/istio/pilot:latest"]


def test_variants_publish_under_suffixed_tags(manifest):
    write_tarballs(manifest, "proxyv2.tar.gz", "proxyv2-distroless.tar.gz")
    registry = FakeRegistry()

    published = ImagePublisher(manifest, "gcr.io/istio", registry=registry).publish()

    assert sorted(published) == ["gcr.io/istio/proxyv2:9.9.9", "gcr.io/istio/proxyv2:9.9.9-distroless"]


def test_per_arch_images_are_pushed_once_across_tags(manifest):
    write_tarballs(manifest, "pilot.tar.gz", "pilot-arm64.tar.gz")
    registry = FakeRegistry()

    ImagePublisher(manifest, "gcr.io/istio", tags=["1.2.3", "latest"], registry=registry).publish()

    assert len([c for c in registry.calls if c[0] == "push_by_digest"]) == 2
    assert [m.target for m in registry.manifest_lists] == ["gcr.io/istio/pilot:1.2.3", "gcr.io/istio/pilot:latest"]


def test_signing_uses_registry_digest(manifest):
    write_tarballs(manifest, "pilot.tar.gz")
    registry = FakeRegistry()

    ImagePublisher(manifest, "gcr.io/istio", tags=["1.2.3"], signing_key="cosign.key", registry=registry).publish()

    assert ("digest", "gcr.io/istio/pilot:1.2.3") in registry.calls
    assert ("sign", "gcr.io/istio/pilot@sha256:remote", "cosign.key") in registry.calls
