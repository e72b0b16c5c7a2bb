#!/usr/bin/env python3
"""
RELEASE BUILDER CLI
-------------------
Routes the four subcommands to their engines:

1. build     resolve sources, pin SHAs and build every selected output
2. publish   push a built release to registries, GCS, GitHub and grafana.com
3. validate  sanity check a built release directory
4. branch    run one step of the release branch cut

Any failure exits non-zero with the wrapped error chain, outer context first.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from releasebuilder.branch.steps import STEPS, branch
from releasebuilder.build.orchestrator import ReleaseBuilder
from releasebuilder.core.credentials import github_token
from releasebuilder.core.errors import ConfigError, ReleaseError
from releasebuilder.core.manifest import (
    MANIFEST_FILE,
    derive_manifest,
    read_input_manifest,
    read_manifest,
    setup_work_dir,
    yaml_log,
)
from releasebuilder.publish.pipeline import PublishOptions, publish
from releasebuilder.sources.resolver import resolve_sources
from releasebuilder.validate.validator import check_release

console = Console()
logger = logging.getLogger("releasebuilder.cli")


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, markup=False)],
        force=True,
    )


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class ReleaseBuilderCLI:
    """Translates command line flags into engine calls and renders the outcome."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="release-builder",
            description="Builds, publishes, validates and branches Istio releases",
        )
        self._setup_args()

    def _setup_args(self):
        self.parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
        subparsers = self.parser.add_subparsers(dest="command", metavar="Command")

        build = subparsers.add_parser("build", help="Build a release")
        build.add_argument("--manifest", default="example/manifest.yaml", help="The manifest to build")

        pub = subparsers.add_parser("publish", help="Publish a built release")
        pub.add_argument("--release", required=True, help="Directory holding the built release")
        pub.add_argument("--dockerhub", default="", help="Hub to push images to, e.g. docker.io/istio")
        pub.add_argument("--dockertags", type=_csv, default=[], help="Comma separated image tags")
        pub.add_argument("--cosignkey", default="", help="Key passed to `cosign sign --key`")
        pub.add_argument("--gcsbucket", default="", help="Bucket/prefix for binaries, e.g. istio-release/releases")
        pub.add_argument("--gcsaliases", type=_csv, default=[], help="Comma separated aliases, e.g. latest")
        pub.add_argument("--helmbucket", default="", help="Bucket/prefix for charts, e.g. istio-release/charts")
        pub.add_argument("--helmhub", default="", help="OCI registry for charts")
        pub.add_argument("--github", default="", help="GitHub org to tag and release in")
        pub.add_argument("--githubtoken", default="", help="File containing a GitHub token")
        pub.add_argument("--grafanatoken", default="", help="File containing a grafana.com API token")

        val = subparsers.add_parser("validate", help="Validate a built release")
        val.add_argument("--release", required=True, help="Directory holding the built release")

        br = subparsers.add_parser("branch", help="Run one release branch cut step")
        br.add_argument("--manifest", default="example/manifest_branch.yaml",
                        help="Manifest listing the repos to branch")
        br.add_argument("--step", type=int, required=True, choices=STEPS, help="Which step to run")
        br.add_argument("--dryrun", action=argparse.BooleanOptionalAction, default=True,
                        help="Do not push or open pull requests (default: on)")
        br.add_argument("--githubtoken", default="", help="File containing a GitHub token")

    def print_header(self, subtitle: str):
        console.print(Panel.fit("[bold cyan]Istio Release Builder[/bold cyan]",
                                title=f"[bold white]{subtitle}[/bold white]", border_style="cyan"))

    def cmd_build(self, args: argparse.Namespace) -> int:
        manifest = derive_manifest(read_input_manifest(args.manifest))
        yaml_log("Manifest", manifest.to_dict())
        out = ReleaseBuilder(manifest).run()
        console.print(Panel(f"Built release at {out}", border_style="green"))
        return 0

    def cmd_publish(self, args: argparse.Namespace) -> int:
        logger.info(f"Publishing Istio release from: {args.release}")
        manifest = read_manifest(os.path.join(args.release, MANIFEST_FILE))
        manifest.directory = os.path.normpath(args.release)
        yaml_log("Manifest", manifest.to_dict())
        publish(manifest, PublishOptions(
            docker_hub=args.dockerhub,
            docker_tags=args.dockertags,
            cosign_key=args.cosignkey,
            gcs_bucket=args.gcsbucket,
            gcs_aliases=args.gcsaliases,
            helm_bucket=args.helmbucket,
            helm_hub=args.helmhub,
            github_org=args.github,
            github_token_file=args.githubtoken,
            grafana_token_file=args.grafanatoken,
        ))
        console.print(Panel(f"Published release {manifest.version}", border_style="green"))
        return 0

    def cmd_validate(self, args: argparse.Namespace) -> int:
        passed, info, failed = check_release(args.release)
        table = Table(title="Release Validation", show_lines=True, header_style="bold magenta")
        table.add_column("Check", style="cyan")
        table.add_column("Result", justify="center")
        for name in passed:
            table.add_row(name, "[green]PASS[/green]")
        for failure in failed:
            table.add_row(failure, "[red]FAIL[/red]")
        console.print(table)
        if failed:
            console.print(info, markup=False)
            return 1
        console.print(Panel(f"Release validation PASSED ({len(passed)} checks)", border_style="green"))
        return 0

    def cmd_branch(self, args: argparse.Namespace) -> int:
        manifest = derive_manifest(read_input_manifest(args.manifest))
        token = github_token(args.githubtoken)
        if not args.dryrun and not token:
            raise ConfigError("a GitHub token is required unless --dryrun is set")
        setup_work_dir(manifest.directory)
        resolve_sources(manifest)
        logger.info(f"Fetched all sources and setup working directory at {manifest.work_dir()}")
        branch(manifest, args.step, dry_run=args.dryrun, token=token)
        return 0

    def run(self, argv: Optional[List[str]] = None) -> int:
        args = self.parser.parse_args(argv)
        setup_logging(args.log_level)
        handlers = {
            "build": ("Release Build", self.cmd_build),
            "publish": ("Release Publish", self.cmd_publish),
            "validate": ("Release Validation", self.cmd_validate),
            "branch": ("Release Branch Cut", self.cmd_branch),
        }
        if args.command not in handlers:
            self.parser.print_help()
            return 2
        title, handler = handlers[args.command]
        self.print_header(title)
        return handler(args)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        return ReleaseBuilderCLI().run(argv)
    except ReleaseError as err:
        console.print(f"[bold red]Error:[/bold red] {err}", highlight=False)
        return 1
    except KeyboardInterrupt:
        console.print("\n[bold red]Terminated by user.[/bold red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
