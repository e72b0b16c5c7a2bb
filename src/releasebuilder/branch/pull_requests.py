"""Commit pending changes in a working tree and open a pull request for them."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from releasebuilder.core import command
from releasebuilder.core.models import Manifest
from releasebuilder.sources import git

logger = logging.getLogger("releasebuilder.branch.pr")

NO_RELEASE_NOTES_LABEL = "release-notes-none"
# Repos whose PRs are opened without the release notes label
UNLABELED_REPOS = ("envoy",)


@dataclass
class GitIdentity:
    name: str
    email: str

    @classmethod
    def from_github_user(cls, user: dict) -> "GitIdentity":
        login = user.get("login") or "release-builder"
        return cls(
            name=user.get("name") or login,
            email=user.get("email") or f"{login}@users.noreply.github.com",
        )


def push_commit(manifest: Manifest, repo: str, branch: str, message: str, dry_run: bool,
                identity: Callable[[], GitIdentity]) -> bool:
    """Commit and push any changes on a new branch. Returns whether there were changes."""
    path = manifest.repo_dir(repo)
    status = git.status_porcelain(path)
    if not status.strip():
        logger.info(f"No changes found to commit in {repo}")
        return False
    logger.info(f"Changes found in {repo}:\n{status}")
    if dry_run:
        return True

    who = identity()
    git.create_branch(path, branch)
    git.add_all(path)
    git.commit(path, message, who.name, who.email)
    git.push_branch(path, branch)
    return True


def create_pr(manifest: Manifest, repo: str, branch: str, title: str, dry_run: bool,
              identity: Callable[[], GitIdentity]) -> Optional[str]:
    changes = push_commit(manifest, repo, branch, title, dry_run, identity)
    if not changes or dry_run:
        return None
    dep = manifest.dependencies.get(repo)
    args = ["gh", "pr", "create", "--repo", dep.git, "--fill", "--head", branch, "--base", dep.branch]
    if repo not in UNLABELED_REPOS:
        args += ["--label", NO_RELEASE_NOTES_LABEL]
    return command.output(args, cwd=manifest.repo_dir(repo))
