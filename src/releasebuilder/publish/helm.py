"""
Chart publishing: merge the new charts into the shared GCS index.yaml and
upload the packages, and/or push them to an OCI registry.
"""

import logging
import os
from typing import List

from ruamel.yaml import YAML, YAMLError

from releasebuilder.core import command
from releasebuilder.core.errors import PublishError
from releasebuilder.core.models import Manifest
from releasebuilder.publish import gcs

logger = logging.getLogger("releasebuilder.publish.helm")

INDEX_FILE = "index.yaml"
# All charts share one version set, so one chart is enough to summarize the index
SUMMARY_CHART = "base"


def helm_dir(manifest: Manifest) -> str:
    return os.path.join(manifest.directory, "helm")


def chart_packages(directory: str) -> List[str]:
    return sorted(name for name in os.listdir(directory) if name.endswith(".tgz"))


def index_versions(data: bytes) -> List[str]:
    index = YAML(typ="safe").load(data) or {}
    return [str(chart.get("appVersion", "")) for chart in (index.get("entries") or {}).get(SUMMARY_CHART) or []]


def dump_index(data: bytes, context: str) -> None:
    try:
        logger.info(f"index.yaml contents {context}: {index_versions(data)}")
    except (YAMLError, AttributeError) as err:
        logger.error(f"failed to parse index.yaml ({context}): {err}")


def dump_index_file(path: str, context: str) -> None:
    try:
        with open(path, "rb") as f:
            dump_index(f.read(), context)
    except OSError as err:
        logger.warning(f"failed to read {path}: {err}")


def publish_helm_index(manifest: Manifest, bucket_path: str, bucket=None) -> None:
    bucket_name, prefix = gcs.split_bucket(bucket_path)
    bucket = bucket or gcs.open_bucket(bucket_name)
    directory = helm_dir(manifest)
    index = os.path.join(directory, INDEX_FILE)

    def merge_index() -> None:
        dump_index_file(index, "before")
        command.run(
            ["helm", "repo", "index", ".",
             "--url", f"https://{bucket_name}.storage.googleapis.com/{prefix}",
             "--merge", INDEX_FILE],
            cwd=directory,
        )
        dump_index_file(index, "after")

    gcs.mutate_object(directory, bucket, prefix, INDEX_FILE, merge_index)

    try:
        dump_index(gcs.fetch_object(bucket, prefix, INDEX_FILE), "live")
    except PublishError as err:
        logger.warning(f"failed to get live index.yaml: {err}")

    for name in chart_packages(directory):
        obj = gcs.object_name(prefix, name)
        bucket.blob(obj).upload_from_filename(os.path.join(directory, name))
        logger.info(f"Wrote {name} to gs://{bucket_name}/{obj}")


def publish_helm_oci(manifest: Manifest, hub: str) -> None:
    directory = helm_dir(manifest)
    for name in chart_packages(directory):
        command.run(["helm", "push", os.path.join(directory, name), f"oci://{hub}"])


def publish_helm(manifest: Manifest, bucket_path: str = "", hub: str = "", bucket=None) -> None:
    if bucket_path:
        publish_helm_index(manifest, bucket_path, bucket=bucket)
    if hub:
        publish_helm_oci(manifest, hub)
