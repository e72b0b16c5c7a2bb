import os
import tarfile
import tempfile

import pytest

from releasebuilder.cli.main import main
from releasebuilder.core import files
from releasebuilder.core.manifest import write_manifest
from releasebuilder.core.models import Dependency, DependencySet, Manifest
from releasebuilder.validate.validator import ARCHIVED_CHARTS, check_release

CHART = "apiVersion: v2\nname: {name}\nversion: 9.9.9\nappVersion: 9.9.9\n"
VALUES = "global:\n  hub: docker.io/istio\n  tag: 9.9.9\n"


def touch(path, text=""):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


@pytest.fixture
def release(tmp_path):
    """A minimal release directory that passes every check."""
    out = tmp_path / "out"
    manifest = Manifest(
        dependencies=DependencySet({"istio": Dependency(sha="a" * 40)}),
        version="9.9.9",
        docker="docker.io/istio",
    )
    write_manifest(manifest, str(out))

    for image in ("pilot.tar.gz", "proxyv2.tar.gz", "proxyv2-arm64.tar.gz"):
        touch(str(out / "docker" / image))
    touch(str(out / "licenses" / "istio.tar.gz"))
    for kind in ("deb", "rpm"):
        package = str(out / kind / f"istio-sidecar.{kind}")
        touch(package, kind)
        files.create_sha(package)

    staging = tmp_path / "staging"
    root = staging / "istio-9.9.9"
    for chart in ARCHIVED_CHARTS:
        touch(str(root / chart / "Chart.yaml"), CHART.format(name=os.path.basename(chart)))
        touch(str(root / chart / "values.yaml"), VALUES)
    touch(str(root / "tools" / "istioctl.bash"))
    touch(str(root / "tools" / "_istioctl"))
    files.tar_gz(str(out / "istio-9.9.9-linux-amd64.tar.gz"), str(staging), ["istio-9.9.9"])
    return out


def test_complete_release_passes(release):
    passed, info, failed = check_release(str(release))
    assert failed == []
    assert info == ""
    assert passed == ["Manifest", "Docker", "HelmVersions", "CompletionFiles", "Licenses", "Grafana", "Debian", "Rpm"]


def test_every_failure_is_reported(release):
    os.remove(release / "rpm" / "istio-sidecar.rpm.sha256")
    os.remove(release / "docker" / "pilot.tar.gz")
    touch(str(release / "deb" / "istio-sidecar.deb"), "tampered")

    passed, info, failed = check_release(str(release))

    assert len(failed) == 3
    assert any(f.startswith("check Docker failed") and "pilot" in f for f in failed)
    assert any(f.startswith("check Debian failed") and "checksum mismatch" in f for f in failed)
    assert any(f.startswith("check Rpm failed") for f in failed)
    assert "Files in release:" in info
    assert "Manifest" in passed


def test_wrong_chart_hub_is_flagged(release, tmp_path):
    staging = tmp_path / "restage"
    root = staging / "istio-9.9.9"
    for chart in ARCHIVED_CHARTS:
        touch(str(root / chart / "Chart.yaml"), CHART.format(name="x"))
        touch(str(root / chart / "values.yaml"), "global:\n  hub: gcr.io/istio-testing\n  tag: 9.9.9\n")
    files.tar_gz(str(release / "istio-9.9.9-linux-amd64.tar.gz"), str(staging), ["istio-9.9.9"])

    _, _, failed = check_release(str(release))
    assert failed == [f"check HelmVersions failed: {ARCHIVED_CHARTS[0]} hub incorrect: "
                      f"got gcr.io/istio-testing expected docker.io/istio"]


def test_release_flag_is_required():
    assert check_release("") == ([], "", ["--release must be passed"])


def test_cli_validate_exit_codes(release):
    assert main(["validate", "--release", str(release)]) == 0
    os.remove(release / "licenses" / "istio.tar.gz")
    assert main(["validate", "--release", str(release)]) == 1


def test_cli_reports_config_errors(tmp_path):
    assert main(["build", "--manifest", str(tmp_path / "absent.yaml")]) == 1


def test_cli_without_command_prints_help(capsys):
    assert main([]) == 2


def test_corrupt_archive_fails_only_archive_checks(release, tmp_path, monkeypatch):
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    (release / "istio-9.9.9-linux-amd64.tar.gz").write_bytes(b"not a tarball")

    passed, info, failed = check_release(str(release))

    # 1. Both archive checks fail with the unpack error, nothing raises
    assert [f.split(":")[0] for f in failed] == ["check HelmVersions failed", "check CompletionFiles failed"]
    assert all("release archive unreadable" in f for f in failed)
    # 2. The remaining checks still run
    assert passed == ["Manifest", "Docker", "Licenses", "Grafana", "Debian", "Rpm"]
    # 3. The unpack directory is removed
    assert os.listdir(scratch) == []


def test_archive_members_cannot_escape_the_unpack_dir(release, tmp_path):
    payload = tmp_path / "payload.txt"
    payload.write_text("outside")
    with tarfile.open(release / "istio-9.9.9-linux-amd64.tar.gz", "w:gz") as tar:
        tar.add(str(payload), arcname="../escaped.txt")

    _, _, failed = check_release(str(release))

    assert any(f.startswith("check HelmVersions failed: release archive unreadable") for f in failed)
    assert not (tmp_path / "escaped.txt").exists()
