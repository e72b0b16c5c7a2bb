import os
import shutil
import subprocess

import pytest

from releasebuilder.core.models import Dependency, DependencySet, Manifest

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def git(repo, *args):
    return subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True,
        env={**os.environ, "GIT_AUTHOR_NAME": "t", "GIT_AUTHOR_EMAIL": "t@example.com",
             "GIT_COMMITTER_NAME": "t", "GIT_COMMITTER_EMAIL": "t@example.com"},
    ).stdout.strip()


def init_repo(path, files=None):
    """Create a git repo with one commit holding `files` (name -> text)."""
    os.makedirs(path, exist_ok=True)
    git(path, "init", "-q")
    for name, text in (files or {"README.md": "hello\n"}).items():
        target = os.path.join(path, name)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            f.write(text)
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", "initial")
    return git(path, "rev-parse", "HEAD")


@pytest.fixture
def manifest(tmp_path):
    deps = DependencySet({"istio": Dependency(git="https://github.com/istio/istio", branch="master")})
    return Manifest(
        dependencies=deps,
        version="9.9.9",
        docker="docker.io/istio",
        architectures=["linux/amd64"],
        directory=str(tmp_path),
    )
