#!/usr/bin/env python3
"""
RELEASE BUILDER COMMAND RUNNER
------------------------------
Single choke point for every external process the orchestrator starts
(git, make, helm, docker, crane, cosign, gh, bom). Each invocation is
logged before it runs, blocks until exit, and a non-zero exit becomes an
ExternalToolError carrying the command line and working directory so the
failure can be reproduced by hand.
"""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from releasebuilder.core.errors import ExternalToolError
from releasebuilder.core.models import Manifest

logger = logging.getLogger("releasebuilder.command")

# Ambient variables a child build may legitimately need.
ENV_ALLOWLIST = (
    "PATH",
    "HOME",
    "USER",
    "TMPDIR",
    "LANG",
    "LC_ALL",
    "TERM",
    "SSH_AUTH_SOCK",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
    "DOCKER_HOST",
    "DOCKER_CONFIG",
    "DOCKER_BUILDKIT",
    "BUILD_WITH_CONTAINER",
    "GOPROXY",
    "GOCACHE",
    "GOMODCACHE",
    "GOFLAGS",
    "GITHUB_TOKEN",
    "GOOGLE_APPLICATION_CREDENTIALS",
)

# Output path overrides a containerized CI may inject. The orchestrator owns output paths.
STRIPPED_ENV = (
    "TARGET_OUT",
    "TARGET_OUT_LINUX",
    "CONTAINER_TARGET_OUT",
    "CONTAINER_TARGET_OUT_LINUX",
    "ISTIO_OUT",
    "ISTIO_OUT_LINUX",
    "LOCAL_OUT",
)


@dataclass
class CommandResult:
    args: List[str]
    cwd: Optional[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""


def format_command(args: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(a)) for a in args)


def constrained_env(extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = {key: os.environ[key] for key in ENV_ALLOWLIST if key in os.environ}
    for key, value in (extra or {}).items():
        env[key] = str(value)
    for key in STRIPPED_ENV:
        env.pop(key, None)
    return env


def run(
    args: Sequence[str],
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    capture: bool = False,
    check: bool = True,
    stdin: Optional[int] = subprocess.DEVNULL,
) -> CommandResult:
    """
    Run a command to completion.

    With capture=False output streams straight to the terminal, like a
    verbose shell. With check=True a non-zero exit raises ExternalToolError.
    """
    argv = [str(a) for a in args]
    line = format_command(argv)
    logger.info(f"Running command: {line}" + (f" (cwd={cwd})" if cwd else ""))
    try:
        proc = subprocess.run(
            argv,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=stdin,
            capture_output=capture,
            text=True,
            check=False,
        )
    except OSError as err:
        raise ExternalToolError(line, cwd, 127, str(err)) from err

    result = CommandResult(
        args=argv,
        cwd=cwd,
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )
    if check and proc.returncode != 0:
        raise ExternalToolError(line, cwd, proc.returncode, result.stderr)
    return result


def output(args: Sequence[str], cwd: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> str:
    """Run a command and return its stripped stdout."""
    return run(args, cwd=cwd, env=env, capture=True).stdout.strip()


def make_env(manifest: Manifest, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = {
        "GOPATH": manifest.work_dir(),
        "TAG": manifest.version,
        "VERSION": manifest.version,
    }
    if manifest.proxy_override:
        env["ISTIO_ENVOY_BASE_URL"] = manifest.proxy_override
    env.update(extra or {})
    return constrained_env(env)


def run_make(manifest: Manifest, repo: str, targets: Sequence[str],
             extra_env: Optional[Mapping[str, str]] = None) -> CommandResult:
    cwd = manifest.repo_dir(repo)
    extras = " ".join(f"{k}={v}" for k, v in (extra_env or {}).items())
    logger.info(f"Running make {' '.join(targets)} with env={extras} wd={cwd}")
    return run(["make", *targets], cwd=cwd, env=make_env(manifest, extra_env))
