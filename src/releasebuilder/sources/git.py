"""Thin wrappers over the git CLI used during source resolution and branching."""

import logging
from typing import List, Optional

from releasebuilder.core import command
from releasebuilder.core.errors import ExternalToolError

logger = logging.getLogger("releasebuilder.git")


def clone(url: str, dest: str, branch: str = "") -> None:
    args = ["git", "clone", url, dest]
    # Shallow clone branches; a SHA checkout needs full history
    if branch:
        args += ["-b", branch, "--depth=1"]
    command.run(args)


def checkout(repo: str, ref: str) -> None:
    command.run(["git", "checkout", ref], cwd=repo)


def rev_parse(repo: str, ref: str) -> str:
    return command.output(["git", "rev-parse", ref], cwd=repo)


def commit_for(repo: str, ref: str) -> Optional[str]:
    """SHA of the commit ref points at, peeling annotated tags. None if ref does not exist."""
    result = command.run(
        ["git", "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"],
        cwd=repo, capture=True, check=False,
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def create_tag(repo: str, tag: str) -> None:
    command.run(["git", "tag", tag], cwd=repo)


def status_porcelain(repo: str) -> str:
    return command.run(["git", "status", "--porcelain"], cwd=repo, capture=True).stdout


def create_branch(repo: str, branch: str) -> None:
    command.run(["git", "checkout", "-b", branch], cwd=repo)


def add_all(repo: str) -> None:
    command.run(["git", "add", "-A"], cwd=repo)


def commit(repo: str, message: str, name: str, email: str) -> None:
    command.run(
        ["git", "-c", f"user.name={name}", "-c", f"user.email={email}",
         "commit", "-m", message, f"--author={name} <{email}>"],
        cwd=repo,
    )


def push_branch(repo: str, branch: str, remote: str = "origin") -> None:
    command.run(["git", "push", "--set-upstream", remote, branch], cwd=repo)


def remote_branches(repo: str, remote: str = "origin") -> List[str]:
    out = command.output(["git", "ls-remote", "--heads", remote], cwd=repo)
    branches = []
    for line in out.splitlines():
        _, _, ref = line.partition("\t")
        if ref.startswith("refs/heads/"):
            branches.append(ref[len("refs/heads/"):])
    return branches


def remote_branch_exists(repo: str, branch: str) -> bool:
    try:
        return branch in remote_branches(repo)
    except ExternalToolError as err:
        logger.warning(f"Failed to check if branch {branch} exists in {repo}: {err}")
        return False
