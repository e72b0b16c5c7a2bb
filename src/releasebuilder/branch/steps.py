#!/usr/bin/env python3
"""
RELEASE BUILDER BRANCH CUT
--------------------------
Cutting a release branch is a human driven checklist. The operator runs
one step at a time and verifies the result before moving on:

1. Update inter-repo dependencies of the anchor repo on master.
2. Create `release-<version>` branches in every repo except test-infra.
3. Regenerate CI (prow) job configuration for the new branch.
4. Point build images, common files, CODEOWNERS and release-builder at the
   new branch and stop publishing the floating `latest` artifacts.
5. Update the common-files repo itself (branch, build image, CODEOWNERS).

After any step every repo is checked for changes; repos with changes get a
commit on `automatedBranchStep<N>` and a pull request, unless this is a dry
run. A repo without changes is simply done.
"""

import logging
import os
import re
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

import httpx

from releasebuilder.branch.pull_requests import GitIdentity, create_pr
from releasebuilder.core import command
from releasebuilder.core.errors import BranchError, ConfigError, ReleaseError
from releasebuilder.core.manifest import write_manifest
from releasebuilder.core.models import ANCHOR_REPO, Manifest
from releasebuilder.publish.github import GitHubClient
from releasebuilder.sources import git
from releasebuilder.sources.makefile import read_variable

logger = logging.getLogger("releasebuilder.branch")

STEPS = (1, 2, 3, 4, 5)
BUILD_TOOLS_TAGS_URL = "https://gcr.io/v2/istio-testing/build-tools/tags/list"

# Repos that never get release branches
UNBRANCHED_REPOS = ("test-infra",)
# Repos that do not consume common-files
NO_COMMON_FILES_REPOS = ("common-files", "envoy", "test-infra", "enhancements")

RELEASE_BUILDER_FILES = (
    "example/manifest.yaml",
    "release/build.sh",
    "test/publish.sh",
    "release/build-base-images.sh",
)


def release_branch(release: str) -> str:
    return f"release-{release}"


def rewrite_file(path: str, pattern: str, replacement: str) -> bool:
    """Regex-replace within a file, like `sed -i s/pattern/replacement/`. Returns True on change."""
    p = Path(path)
    try:
        original = p.read_text(encoding="utf-8")
    except OSError as err:
        raise BranchError(f"failed to read {path}: {err}") from err
    updated = re.sub(pattern, lambda _: replacement, original)
    if updated != original:
        p.write_text(updated, encoding="utf-8")
    return updated != original


def codeowners_line(release: str) -> str:
    return f"* @istio/release-managers-{release.replace('.', '-')}\n"


def write_codeowners(repo_dir: str, release: str) -> None:
    Path(repo_dir, "CODEOWNERS").write_text(codeowners_line(release), encoding="utf-8")


def _present(manifest: Manifest, skip: Iterable[str] = ()) -> Iterable[str]:
    for repo, dep in manifest.dependencies.items():
        if dep is None:
            # Many slots are optional and only used for tagging
            logger.info(f"Skipping missing dependency: {repo}")
            continue
        if repo in skip:
            logger.info(f"Skipping repo: {repo}")
            continue
        yield repo


# Step 1

def update_dependencies(manifest: Manifest) -> None:
    logger.info("*** Updating the istio dependencies in the master branch before branching")
    repo_dir = manifest.repo_dir(ANCHOR_REPO)
    # update_deps.sh may prompt, so it keeps the terminal's stdin
    command.run(["./bin/update_deps.sh"], cwd=repo_dir,
                env=command.constrained_env({"UPDATE_BRANCH": "master"}), stdin=None)
    version = read_variable(os.path.join(repo_dir, "Makefile.core.mk"), "VERSION")
    command.run_make(manifest, ANCHOR_REPO, ["gen"], {"VERSION": version})
    command.run(["git", "checkout", "HEAD", "common"], cwd=repo_dir)
    logger.info("*** istio dependencies in the master branch updated")


# Step 2

def create_branches(manifest: Manifest, release: str, dry_run: bool) -> None:
    branch = release_branch(release)
    logger.info(f"*** Creating release branches for release: {release}")
    for repo in _present(manifest, UNBRANCHED_REPOS):
        path = manifest.repo_dir(repo)
        if git.remote_branch_exists(path, branch):
            logger.warning(f"Branch {branch} already exists in repo {repo}. Verify it and delete it if needed.")
        logger.info(f"*** Creating release branch {branch} for {repo} in {path}")
        git.create_branch(path, branch)
        if dry_run:
            continue
        try:
            git.push_branch(path, branch)
        except ReleaseError as err:
            logger.warning(f"Failed to push branch to {repo}: {err}. Ignoring as it may already exist.")
    logger.info("*** Release branches created")


# Step 3

def setup_prow(manifest: Manifest, release: str) -> None:
    logger.info("*** Updating prow config for new branches")
    repo = manifest.repo_dir("test-infra")
    jobs_in = os.path.join(repo, "prow/config/jobs")
    jobs_out = os.path.join(repo, "prow/cluster/jobs")
    prowgen = os.path.join(repo, "tools/prowgen")
    command.run(["go", "run", "./cmd/prowgen/main.go", "--skip-gar-tagging", f"--input-dir={jobs_in}",
                 "branch", release], cwd=prowgen)
    command.run(["go", "run", "./cmd/prowgen/main.go", f"--input-dir={jobs_in}", f"--output-dir={jobs_out}",
                 "write"], cwd=prowgen)
    private = os.path.join(repo, "prow/config/istio-private_jobs")
    command.run(["go", "run", "main.go", f"--input-dir={private}", "branch", release],
                cwd=os.path.join(repo, "tools/generate-transform-jobs"))
    logger.info("*** Prow config for new branches updated")


# Step 4

def create_tool_images(manifest: Manifest, release: str) -> None:
    logger.info("*** Pointing the build-tools image at the release branch")
    rewrite_file(os.path.join(manifest.repo_dir("tools"), "docker/build-tools/build-and-push.sh"),
                 r"BRANCH=.*", f"BRANCH={release_branch(release)}")


def update_common_files(manifest: Manifest, release: str) -> None:
    logger.info("*** Updating common-files UPDATE_BRANCH")
    for repo in _present(manifest, NO_COMMON_FILES_REPOS):
        rewrite_file(os.path.join(manifest.repo_dir(repo), "common/Makefile.common.mk"),
                     r"UPDATE_BRANCH \?=.*", f'UPDATE_BRANCH ?= "{release_branch(release)}"')


def update_code_owners(manifest: Manifest, release: str) -> None:
    logger.info("*** Updating CODEOWNERS")
    for repo in _present(manifest, UNBRANCHED_REPOS):
        write_codeowners(manifest.repo_dir(repo), release)


def stop_publishing_latest(manifest: Manifest) -> None:
    logger.info("*** Dropping the latest alias from release-commit artifacts")
    rewrite_file(os.path.join(manifest.repo_dir(ANCHOR_REPO), "prow/release-commit.sh"), r"-dev,latest", "-dev")


def pin_release_builder_branch(text: str, release: str) -> str:
    """`branch: master` -> `branch: release-X`, except right after a test-infra entry."""
    lines = text.splitlines(keepends=True)
    for i, line in enumerate(lines):
        previous = lines[i - 1] if i > 0 else ""
        if "branch: master" in line and "test-infra" not in previous and "test-infra" not in line:
            lines[i] = line.replace("branch: master", f"branch: {release_branch(release)}", 1)
    return "".join(lines)


def release_builder_updates(manifest: Manifest, release: str) -> None:
    logger.info(f"*** Updating release-builder to use branch {release_branch(release)}")
    root = manifest.repo_dir("release-builder")
    for name in RELEASE_BUILDER_FILES:
        p = Path(root, name)
        try:
            p.write_text(pin_release_builder_branch(p.read_text(encoding="utf-8"), release), encoding="utf-8")
        except OSError as err:
            raise BranchError(f"failed to update {name}: {err}") from err


# Step 5

def latest_build_tools_tag(release: str, transport: Optional[httpx.BaseTransport] = None) -> str:
    """Newest build-tools image tag cut from the release branch (arch-specific and latest tags excluded)."""
    try:
        with httpx.Client(timeout=60.0, transport=transport, follow_redirects=True) as client:
            response = client.get(BUILD_TOOLS_TAGS_URL)
            response.raise_for_status()
            data = response.json()
    except (httpx.HTTPError, ValueError) as err:
        raise BranchError(f"failed to list build-tools tags: {err}") from err

    tags = set()
    for entry in (data.get("manifest") or {}).values():
        tags.update(entry.get("tag") or [])
    wanted = sorted(
        (t for t in tags
         if release_branch(release) in t and not any(x in t for x in ("latest", "amd64", "arm64"))),
        reverse=True,
    )
    if not wanted:
        raise BranchError(f"no build-tools image found for {release_branch(release)}")
    return wanted[0]


def update_common_files_common(manifest: Manifest, release: str,
                               transport: Optional[httpx.BaseTransport] = None) -> None:
    logger.info("*** Updating common-files")
    root = manifest.repo_dir("common-files")
    rewrite_file(os.path.join(root, "files/common/Makefile.common.mk"),
                 r"UPDATE_BRANCH \?=.*", f'UPDATE_BRANCH ?= "{release_branch(release)}"')
    tag = latest_build_tools_tag(release, transport)
    rewrite_file(os.path.join(root, "files/common/scripts/setup_env.sh"), r"IMAGE_VERSION=.*", f"IMAGE_VERSION={tag}")
    write_codeowners(root, release)
    logger.info("*** common-files updated")


class BranchCutter:
    """Runs one branch-cut step and opens the resulting pull requests."""

    def __init__(self, manifest: Manifest, step: int, dry_run: bool = True, token: str = "",
                 transport: Optional[httpx.BaseTransport] = None):
        if step not in STEPS:
            raise ConfigError(f"unknown step {step}, expected one of {list(STEPS)}")
        self.manifest = manifest
        self.step = step
        self.dry_run = dry_run
        self.token = token
        self.transport = transport
        self.release = manifest.version
        self._identity: Optional[GitIdentity] = None

    def actions(self) -> Dict[int, Callable[[], None]]:
        m, release = self.manifest, self.release
        return {
            1: lambda: update_dependencies(m),
            2: lambda: create_branches(m, release, self.dry_run),
            3: lambda: setup_prow(m, release),
            4: self._step_four,
            5: lambda: update_common_files_common(m, release, self.transport),
        }

    def _step_four(self) -> None:
        m, release = self.manifest, self.release
        create_tool_images(m, release)
        update_common_files(m, release)
        update_code_owners(m, release)
        stop_publishing_latest(m)
        release_builder_updates(m, release)

    def identity(self) -> GitIdentity:
        if self._identity is None:
            with GitHubClient(self.token, transport=self.transport) as client:
                self._identity = GitIdentity.from_github_user(client.current_user())
        return self._identity

    def pr_title(self) -> str:
        title = f"Automated branching step {self.step}"
        # From step 3 on, PRs target the new release branch
        if self.step > 2:
            title = f"[{release_branch(self.release)}] {title}"
        return title

    def sweep(self) -> None:
        branch = f"automatedBranchStep{self.step}"
        for repo in _present(self.manifest):
            logger.info(f"*** Checking repo {repo}")
            try:
                create_pr(self.manifest, repo, branch, self.pr_title(), self.dry_run, self.identity)
            except ReleaseError as err:
                raise BranchError(f"failed PR creation for {repo}: {err}") from err

    def run(self) -> None:
        write_manifest(self.manifest, self.manifest.out_dir())
        try:
            self.actions()[self.step]()
        except ReleaseError as err:
            raise BranchError(f"branch step {self.step} failed: {err}") from err
        self.sweep()
        logger.info(f"Branch step {self.step} to {release_branch(self.release)} done in {self.manifest.work_dir()}")


def branch(manifest: Manifest, step: int, dry_run: bool = True, token: str = "") -> None:
    BranchCutter(manifest, step, dry_run, token).run()
