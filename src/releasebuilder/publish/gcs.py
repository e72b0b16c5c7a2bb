#!/usr/bin/env python3
"""
RELEASE BUILDER GCS PUBLISHER
-----------------------------
Uploads release artifacts to Google Cloud Storage and safely updates shared
objects (the Helm index) that several release pipelines may rewrite at the
same time.

mutate_object implements optimistic concurrency on top of object
generations: read the generation, download, mutate locally, then upload
only if the generation is unchanged. A precondition failure restarts the
whole cycle; after a fixed number of conflicts it gives up.
"""

import logging
import os
import posixpath
from typing import Callable, List, Optional, Tuple

from google.api_core.exceptions import NotFound, PreconditionFailed
from google.cloud import storage

from releasebuilder.core.errors import ConflictExhaustedError, PublishError
from releasebuilder.core.models import Manifest
from releasebuilder.core.retry import retry

logger = logging.getLogger("releasebuilder.publish.gcs")

MAX_CONFLICTS = 10
# Releases can land minutes apart; the default one hour cache would hide the newer index
NO_CACHE = "no-cache, max-age=0, no-transform"
# Lets plain web servers serve the bucket as a chart repository
INDEX_CONTENT_TYPE = "text/yaml"


def split_bucket(path: str) -> Tuple[str, str]:
    """istio-release/charts/sub -> (istio-release, charts/sub)."""
    name, _, prefix = path.strip("/").partition("/")
    return name, prefix


def object_name(prefix: str, *parts: str) -> str:
    return posixpath.join(prefix, *parts) if prefix else posixpath.join(*parts)


def open_bucket(name: str, client: Optional[storage.Client] = None) -> storage.Bucket:
    return (client or storage.Client()).bucket(name)


def fetch_object(bucket: storage.Bucket, prefix: str, filename: str) -> bytes:
    name = object_name(prefix, filename)
    try:
        return bucket.blob(name).download_as_bytes()
    except NotFound as err:
        raise PublishError(f"object {name} does not exist") from err


def _mutate_once(out_dir: str, bucket: storage.Bucket, prefix: str, filename: str,
                 fn: Callable[[], None]) -> None:
    name = object_name(prefix, filename)
    local = os.path.join(out_dir, filename)

    generation = 0
    blob = bucket.get_blob(name)
    if blob is None:
        logger.warning(f"Existing file {name} does not exist, starting from empty content")
        if os.path.exists(local):
            os.remove(local)
    else:
        generation = blob.generation or 0
        logger.info(f"Object {name} currently has generation {generation}")
        try:
            blob.download_to_filename(local)
            logger.info(f"Wrote {local}")
        except NotFound:
            logger.warning(f"Object {name} vanished before download, starting from empty content")
            generation = 0
            if os.path.exists(local):
                os.remove(local)

    fn()

    target = bucket.blob(name)
    target.cache_control = NO_CACHE
    target.content_type = INDEX_CONTENT_TYPE
    # Generation 0 means "only if the object does not exist"
    target.upload_from_filename(local, content_type=INDEX_CONTENT_TYPE, if_generation_match=generation)
    logger.info(f"Object {name} now has generation {target.generation}")


def mutate_object(out_dir: str, bucket: storage.Bucket, prefix: str, filename: str,
                  fn: Callable[[], None]) -> None:
    """
    Download gs://bucket/prefix/filename into out_dir, run fn to rewrite the
    local copy, and upload it back conditionally on the generation read.
    """
    retry(
        lambda: _mutate_once(out_dir, bucket, prefix, filename, fn),
        MAX_CONFLICTS,
        (PreconditionFailed,),
        what=f"write of {object_name(prefix, filename)}",
        exhausted=lambda _: ConflictExhaustedError("max conflicts attempted"),
    )


def publish_archive(manifest: Manifest, bucket_path: str, aliases: Optional[List[str]] = None,
                    bucket: Optional[storage.Bucket] = None) -> List[str]:
    """Upload the release directory to {prefix}/{version}/ and write alias objects."""
    bucket_name, prefix = split_bucket(bucket_path)
    bucket = bucket or open_bucket(bucket_name)
    root = manifest.directory
    written = []
    for dirpath, _, names in os.walk(root):
        for filename in sorted(names):
            path = os.path.join(dirpath, filename)
            rel = os.path.relpath(path, root).replace(os.sep, "/")
            name = object_name(prefix, manifest.version, rel)
            bucket.blob(name).upload_from_filename(path)
            logger.info(f"Wrote {path} to gs://{bucket_name}/{name}")
            written.append(name)

    # Aliases are pointers: the object body is the version it resolves to
    for alias in aliases or []:
        name = object_name(prefix, alias)
        bucket.blob(name).upload_from_string(manifest.version)
        logger.info(f"Wrote {alias} to gs://{bucket_name}/{name}")
        written.append(name)
    return written
