#!/usr/bin/env python3
"""
RELEASE BUILDER GITHUB PUBLISHER
--------------------------------
Tags every source repository of a release at its pinned SHA (an annotated
tag object followed by the refs/tags reference) and opens a draft
pre-release on the anchor repository with the release archives attached.
"""

import logging
import os
import re
from typing import List, Optional

import httpx

from releasebuilder.core.errors import ConfigError, PublishError
from releasebuilder.core.manifest import yaml_log
from releasebuilder.core.models import ANCHOR_REPO, Manifest

logger = logging.getLogger("releasebuilder.publish.github")

API_URL = "https://api.github.com"
UPLOAD_URL = "https://uploads.github.com"
ARTIFACT_PATTERN = re.compile(r"istio.*")

SEMVER = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


def github_headers(token: str) -> dict:
    return {
        "Accept": "application/vnd.github+json",
        "Authorization": f"Bearer {token}",
        "X-GitHub-Api-Version": "2022-11-28",
        "User-Agent": "release-builder",
    }


def go_tag(repo: str, version: str, goversionenabled: bool) -> str:
    """Go modules need `v`-prefixed strict semver tags."""
    if not goversionenabled or version.startswith("v"):
        return version
    if not SEMVER.match(version):
        raise ConfigError(f"cannot tag {repo} with invalid semantic version {version}")
    return f"v{version}"


def release_body(version: str) -> str:
    minor = version[: version.rfind(".")] + ".x" if "." in version else version
    return (
        f"[Artifacts](http://gcsweb.istio.io/gcs/istio-release/releases/{version}/)\n"
        f"[Release Notes](https://istio.io/news/releases/{minor}/announcing-{version}/)"
    )


class GitHubClient:
    """Just the REST calls a release needs."""

    def __init__(self, token: str, transport: Optional[httpx.BaseTransport] = None, timeout: float = 60.0):
        self._client = httpx.Client(headers=github_headers(token), timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as err:
            raise PublishError(f"{method} {url} failed with {err.response.status_code}: {err.response.text}") from err
        except httpx.HTTPError as err:
            raise PublishError(f"{method} {url} failed: {err}") from err
        return response.json() if response.content else {}

    def current_user(self) -> dict:
        return self._request("GET", f"{API_URL}/user")

    def create_tag(self, org: str, repo: str, tag: str, sha: str, message: str) -> dict:
        return self._request("POST", f"{API_URL}/repos/{org}/{repo}/git/tags", json={
            "tag": tag,
            "message": message,
            "object": sha,
            "type": "commit",
        })

    def create_ref(self, org: str, repo: str, ref: str, sha: str) -> dict:
        return self._request("POST", f"{API_URL}/repos/{org}/{repo}/git/refs", json={"ref": ref, "sha": sha})

    def create_release(self, org: str, repo: str, tag: str, name: str, body: str) -> dict:
        return self._request("POST", f"{API_URL}/repos/{org}/{repo}/releases", json={
            "tag_name": tag,
            "name": name,
            "body": body,
            "draft": True,
            "prerelease": True,
        })

    def upload_asset(self, org: str, repo: str, release_id: int, path: str) -> dict:
        name = os.path.basename(path)
        with open(path, "rb") as f:
            return self._request(
                "POST",
                f"{UPLOAD_URL}/repos/{org}/{repo}/releases/{release_id}/assets",
                params={"name": name},
                headers={"Content-Type": "application/octet-stream"},
                content=f.read(),
            )


def tag_repository(client: GitHubClient, org: str, repo: str, version: str, goversionenabled: bool,
                   sha: str) -> None:
    tag = go_tag(repo, version, goversionenabled)
    created = client.create_tag(org, repo, tag, sha, f"Istio release {tag}")
    yaml_log("Tag", created)
    reference = client.create_ref(org, repo, f"refs/tags/{tag}", created.get("sha", sha))
    yaml_log("Reference", reference)


def release_assets(directory: str) -> List[str]:
    assets = []
    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if os.path.isfile(path) and ARTIFACT_PATTERN.match(name):
            assets.append(path)
        else:
            logger.info(f"github: skipping upload of {name}")
    return assets


def create_release(manifest: Manifest, client: GitHubClient, org: str) -> dict:
    release = client.create_release(
        org, ANCHOR_REPO, manifest.version, f"Istio {manifest.version}", release_body(manifest.version)
    )
    yaml_log("Release", release)
    for path in release_assets(manifest.directory):
        logger.info(f"github: uploading {os.path.basename(path)}")
        client.upload_asset(org, ANCHOR_REPO, release["id"], path)
    return release


def publish_github(manifest: Manifest, org: str, token: str,
                   transport: Optional[httpx.BaseTransport] = None) -> None:
    with GitHubClient(token, transport=transport) as client:
        for repo, dep in manifest.dependencies.items():
            if dep is None:
                logger.warning(f"Skipping missing dependency {repo}")
                continue
            # The source org is not necessarily the publishing org
            try:
                tag_repository(client, org, repo, manifest.version, dep.goversionenabled, dep.sha)
            except PublishError as err:
                raise PublishError(f"failed to tag repo {repo}: {err}") from err
        try:
            create_release(manifest, client, org)
        except PublishError as err:
            raise PublishError(f"failed to create release: {err}") from err
