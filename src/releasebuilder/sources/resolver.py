#!/usr/bin/env python3
"""
RELEASE BUILDER SOURCE RESOLVER
-------------------------------
Materializes every dependency of a release on disk:

1. Acquire: copy a local path, or clone from git (after computing the SHA
   for `auto` dependencies from files in already-fetched repos).
2. Materialize: copy the pristine checkout under sources/ into the working
   tree under work/, which later build steps are free to mutate.
3. Tag: tag the working tree HEAD with the release version. Existing tags
   are only accepted when they already point at HEAD.

Repos are processed one at a time, anchor first, and the first failure
aborts the whole resolve.
"""

import json
import logging
import os
import re
from dataclasses import replace
from pathlib import Path
from typing import Dict, List

from releasebuilder.core import files
from releasebuilder.core.errors import ReleaseError, ResolveError, TagConflictError
from releasebuilder.core.models import ANCHOR_REPO, AutoStrategy, Dependency, Manifest
from releasebuilder.sources import git
from releasebuilder.sources.gomod import parse_requires, unwrap_pseudo_version

logger = logging.getLogger("releasebuilder.sources")

DEPS_FILE = "istio.deps"
GO_MOD_FILE = "go.mod"
WORKSPACE_FILE = "WORKSPACE"
MODULE_PREFIX = "istio.io/"
# Matches upstream go.mod convention for abbreviated commits
SHORT_SHA_LENGTH = 12

_ENVOY_SHA = re.compile(r'ENVOY_SHA = "([a-z0-9]{40})"')


def _read(path: str, repo: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as err:
        raise ResolveError(f"failed to read {path}: {err}", repo=repo) from err


def _load_deps_file(path: str, repo: str) -> List[dict]:
    try:
        deps = json.loads(_read(path, repo))
    except json.JSONDecodeError as err:
        raise ResolveError(f"failed to parse {path}: {err}", repo=repo) from err
    if not isinstance(deps, list):
        raise ResolveError(f"{path} must contain a list of dependencies", repo=repo)
    return deps


def resolve_from_deps(repo: str, anchor_dir: str) -> str:
    """lastStableSHA for repo in the anchor repo's legacy istio.deps file."""
    sha = ""
    for entry in _load_deps_file(os.path.join(anchor_dir, DEPS_FILE), repo):
        if entry.get("repoName") == repo:
            sha = entry.get("lastStableSHA") or ""
    if not sha:
        raise ResolveError(f"failed to automatically resolve source for {repo}: not in {DEPS_FILE}", repo=repo)
    return sha


def resolve_from_modules(repo: str, anchor_dir: str) -> str:
    """Pinned version of istio.io/<repo> in the anchor repo's go.mod."""
    text = _read(os.path.join(anchor_dir, GO_MOD_FILE), repo)
    for path, version in parse_requires(text):
        if path == MODULE_PREFIX + repo:
            return unwrap_pseudo_version(version)
    raise ResolveError(f"failed to automatically resolve source for {repo}: not in {GO_MOD_FILE}", repo=repo)


def resolve_from_proxy_workspace(repo: str, proxy_dir: str) -> str:
    match = _ENVOY_SHA.search(_read(os.path.join(proxy_dir, WORKSPACE_FILE), repo))
    if not match:
        raise ResolveError(f"failed to automatically resolve source for {repo}: no ENVOY_SHA", repo=repo)
    return match.group(1)


def fetch_auto(repo: str, dep: Dependency, source_dir: str) -> Dependency:
    """Return a copy of dep pinned to the SHA its auto strategy points at."""
    try:
        strategy = AutoStrategy(dep.auto)
    except ValueError as err:
        raise ResolveError(f"unknown auto dependency: {dep.auto}", repo=repo) from err

    if strategy is AutoStrategy.DEPS:
        sha = resolve_from_deps(repo, os.path.join(source_dir, ANCHOR_REPO))
    elif strategy is AutoStrategy.MODULES:
        sha = resolve_from_modules(repo, os.path.join(source_dir, ANCHOR_REPO))
    else:
        sha = resolve_from_proxy_workspace(repo, os.path.join(source_dir, "proxy"))
    logger.info(f"Resolved {repo} via {strategy.value} to {sha}")
    return replace(dep, sha=sha, branch="")


def acquire(repo: str, dep: Dependency, dest: str, source_dir: str) -> None:
    if dep.localpath:
        files.copy_dir(dep.localpath, dest)
        return
    if dep.auto:
        dep = fetch_auto(repo, dep, source_dir)
    git.clone(dep.git, dest, branch=dep.branch)
    git.checkout(dest, dep.ref())


def tag_repo(manifest: Manifest, repo_path: str) -> None:
    """Tag HEAD with the release version; re-running against the same HEAD is a no-op."""
    head = git.rev_parse(repo_path, "HEAD")
    existing = git.commit_for(repo_path, manifest.version)
    if existing:
        if existing == head:
            logger.info(f"Tag {manifest.version} already exists, but points to the right place.")
            return
        raise TagConflictError(manifest.version, existing, head)
    git.create_tag(repo_path, manifest.version)


def resolve_sources(manifest: Manifest) -> None:
    for repo, dep in manifest.dependencies.items():
        if dep is None:
            logger.info(f"Skipping missing dependency {repo}")
            continue
        logger.info(f"Resolving {repo} {dep.describe()}")
        src = os.path.join(manifest.source_dir(), repo)
        try:
            acquire(repo, dep, src, manifest.source_dir())
        except ReleaseError as err:
            raise ResolveError(f"failed to resolve {repo} {dep.describe()}: {err}", repo=repo) from err
        except OSError as err:
            raise ResolveError(f"failed to resolve {repo} {dep.describe()}: {err}", repo=repo) from err
        logger.info(f"Resolved {repo}")

        try:
            files.copy_dir(src, manifest.repo_dir(repo))
        except OSError as err:
            raise ResolveError(f"failed to copy dependency {repo} to working directory: {err}", repo=repo) from err

        try:
            tag_repo(manifest, manifest.repo_dir(repo))
        except TagConflictError:
            raise
        except ReleaseError as err:
            raise ResolveError(f"failed to tag repo {repo}: {err}", repo=repo) from err


def standardize_manifest(manifest: Manifest) -> None:
    """Pin every dependency to the SHA actually checked out, so manifest.yaml is reproducible."""
    for repo, dep in list(manifest.dependencies.present()):
        try:
            sha = git.rev_parse(manifest.repo_dir(repo), "HEAD")
        except ReleaseError as err:
            raise ResolveError(f"failed to get SHA for {repo}: {err}", repo=repo) from err
        manifest.dependencies.set(repo, Dependency(git=dep.git, sha=sha, goversionenabled=dep.goversionenabled))
    try:
        fetch_transitive_dependencies(manifest)
    except ReleaseError as err:
        raise ResolveError(f"failed to get transitive dependencies: {err}") from err


def fetch_transitive_dependencies(manifest: Manifest) -> Dict[str, str]:
    """
    Fill manifest.all_dependencies from the pinned repos, then the anchor's
    go.mod, then its istio.deps. The first source to mention a repo wins.
    """
    found: Dict[str, str] = {}
    for repo, dep in manifest.dependencies.present():
        found[repo] = dep.sha[:SHORT_SHA_LENGTH]

    if manifest.dependencies.get(ANCHOR_REPO) is None:
        logger.warning(f"{ANCHOR_REPO} is not part of this release; skipping transitive dependencies")
        manifest.all_dependencies = found
        return found

    anchor = manifest.repo_dir(ANCHOR_REPO)
    for path, version in parse_requires(_read(os.path.join(anchor, GO_MOD_FILE), ANCHOR_REPO)):
        if not path.startswith(MODULE_PREFIX):
            continue
        name = path.split("/")[1]
        found.setdefault(name, unwrap_pseudo_version(version))

    for entry in _load_deps_file(os.path.join(anchor, DEPS_FILE), ANCHOR_REPO):
        name = entry.get("repoName")
        sha = entry.get("lastStableSHA") or ""
        if name and sha:
            found.setdefault(name, sha[:SHORT_SHA_LENGTH])

    manifest.all_dependencies = found
    return found
