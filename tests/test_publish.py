import os

import pytest
from google.api_core.exceptions import Forbidden

from test_gcs import FakeBucket
from releasebuilder.core import command
from releasebuilder.core.errors import PublishError
from releasebuilder.publish import gcs, helm
from releasebuilder.publish.pipeline import PublishOptions, publish

INDEX = """apiVersion: v1
entries:
  base:
  - appVersion: 9.9.9
    name: base
    version: 9.9.9
  - appVersion: 1.0.0
    name: base
    version: 1.0.0
"""


def test_helm_index_is_merged_and_charts_uploaded(manifest, monkeypatch):
    charts = os.path.join(manifest.directory, "helm")
    os.makedirs(charts)
    open(os.path.join(charts, "base-9.9.9.tgz"), "wb").close()
    calls = []

    def fake_run(args, cwd=None, **kwargs):
        calls.append((list(args), cwd))
        with open(os.path.join(cwd, "index.yaml"), "w") as f:
            f.write(INDEX)
        return command.CommandResult(args=list(args), cwd=cwd, returncode=0)

    monkeypatch.setattr(command, "run", fake_run)
    bucket = FakeBucket()
    bucket.objects["charts/index.yaml"] = (b"apiVersion: v1\nentries: {}\n", 3)

    helm.publish_helm(manifest, "istio-release/charts", bucket=bucket)

    args, cwd = calls[0]
    assert args == ["helm", "repo", "index", ".", "--url", "https://istio-release.storage.googleapis.com/charts",
                    "--merge", "index.yaml"]
    assert cwd == charts
    assert bucket.objects["charts/index.yaml"] == (INDEX.encode(), 4)
    assert "charts/base-9.9.9.tgz" in bucket.objects
    assert helm.index_versions(INDEX.encode()) == ["9.9.9", "1.0.0"]


def test_helm_oci_push(manifest, monkeypatch):
    charts = os.path.join(manifest.directory, "helm")
    os.makedirs(charts)
    open(os.path.join(charts, "base-9.9.9.tgz"), "wb").close()
    calls = []
    monkeypatch.setattr(command, "run", lambda args, **kwargs: calls.append(list(args)))

    helm.publish_helm(manifest, hub="gcr.io/istio-release/charts")

    assert calls == [["helm", "push", os.path.join(charts, "base-9.9.9.tgz"), "oci://gcr.io/istio-release/charts"]]


def test_publish_without_destinations_does_nothing(manifest):
    publish(manifest, PublishOptions())


def test_publish_names_the_failing_destination(manifest):
    with pytest.raises(PublishError, match="failed to publish to docker"):
        publish(manifest, PublishOptions(docker_hub="gcr.io/istio"))


def test_publish_wraps_storage_errors(manifest, monkeypatch):
    def denied(*args, **kwargs):
        raise Forbidden("no access")

    monkeypatch.setattr(gcs, "publish_archive", denied)
    with pytest.raises(PublishError, match="failed to publish to gcs"):
        publish(manifest, PublishOptions(gcs_bucket="istio-release/releases"))
