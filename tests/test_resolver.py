import json
import os

import pytest

from conftest import git, init_repo, requires_git
from releasebuilder.core.errors import ResolveError, TagConflictError
from releasebuilder.core.manifest import setup_work_dir
from releasebuilder.core.models import Dependency, DependencySet, Manifest
from releasebuilder.sources.gomod import parse_requires, unwrap_pseudo_version
from releasebuilder.sources.resolver import (
    fetch_auto,
    fetch_transitive_dependencies,
    resolve_from_deps,
    resolve_from_modules,
    resolve_from_proxy_workspace,
    resolve_sources,
    standardize_manifest,
    tag_repo,
)

GO_MOD = """module istio.io/istio

go 1.22

require istio.io/pkg v0.0.0-20200101000000-0123456789ab // indirect

require (
\tgithub.com/spf13/cobra v1.8.0
\tistio.io/api v1.22.0-alpha.0.0.20240501000000-fedcba987654
\tistio.io/client-go v1.22.0
)
"""

DEPS = [
    {"_comment": "", "name": "PROXY_REPO_SHA", "repoName": "proxy", "file": "", "lastStableSHA": "c" * 40},
    {"_comment": "", "name": "ZTUNNEL_REPO_SHA", "repoName": "ztunnel", "file": "", "lastStableSHA": "d" * 40},
]


def anchor_files():
    return {"go.mod": GO_MOD, "istio.deps": json.dumps(DEPS)}


def test_parse_requires_handles_single_line_and_blocks():
    requires = parse_requires(GO_MOD)
    assert requires == [
        ("istio.io/pkg", "v0.0.0-20200101000000-0123456789ab"),
        ("github.com/spf13/cobra", "v1.8.0"),
        ("istio.io/api", "v1.22.0-alpha.0.0.20240501000000-fedcba987654"),
        ("istio.io/client-go", "v1.22.0"),
    ]


def test_unwrap_pseudo_version():
    assert unwrap_pseudo_version("v0.0.0-20200101000000-0123456789ab") == "0123456789ab"
    assert unwrap_pseudo_version("v1.22.0") == "v1.22.0"


def test_auto_strategies_read_anchor_files(tmp_path):
    anchor = tmp_path / "istio"
    anchor.mkdir()
    for name, text in anchor_files().items():
        (anchor / name).write_text(text)
    proxy = tmp_path / "proxy"
    proxy.mkdir()
    (proxy / "WORKSPACE").write_text(f'ENVOY_SHA = "{"e" * 40}"\n')

    assert resolve_from_deps("proxy", str(anchor)) == "c" * 40
    assert resolve_from_modules("api", str(anchor)) == "fedcba987654"
    assert resolve_from_proxy_workspace("envoy", str(proxy)) == "e" * 40

    with pytest.raises(ResolveError, match="not in istio.deps"):
        resolve_from_deps("tools", str(anchor))
    with pytest.raises(ResolveError, match="not in go.mod"):
        resolve_from_modules("tools", str(anchor))


def test_fetch_auto_pins_sha_and_drops_branch(tmp_path):
    anchor = tmp_path / "istio"
    anchor.mkdir()
    (anchor / "istio.deps").write_text(json.dumps(DEPS))

    dep = Dependency(git="https://github.com/istio/proxy", auto="deps")
    pinned = fetch_auto("proxy", dep, str(tmp_path))
    assert pinned.sha == "c" * 40
    assert pinned.branch == ""
    assert dep.sha == ""

    with pytest.raises(ResolveError, match="unknown auto dependency"):
        fetch_auto("proxy", Dependency(git="x", auto="magic"), str(tmp_path))


def test_transitive_dependencies_skip_without_anchor(tmp_path):
    deps = DependencySet({"api": Dependency(git="x", sha="f" * 40)})
    manifest = Manifest(dependencies=deps, version="1.0.0", directory=str(tmp_path))
    assert fetch_transitive_dependencies(manifest) == {"api": "f" * 12}


@requires_git
class TestLocalResolve:

    def build(self, tmp_path):
        upstream = str(tmp_path / "upstream")
        head = init_repo(upstream, anchor_files())
        manifest = Manifest(
            dependencies=DependencySet({"istio": Dependency(localpath=upstream)}),
            version="9.9.9",
            directory=str(tmp_path / "build"),
        )
        setup_work_dir(manifest.directory)
        resolve_sources(manifest)
        return manifest, head

    def test_resolve_tags_working_tree(self, tmp_path):
        manifest, head = self.build(tmp_path)
        work = manifest.repo_dir("istio")

        # 1. Pristine copy and working copy both exist
        assert os.path.isfile(os.path.join(manifest.source_dir(), "istio", "go.mod"))
        assert os.path.isfile(os.path.join(work, "go.mod"))

        # 2. The working tree is tagged at HEAD, the pristine copy is not
        assert git(work, "rev-parse", "9.9.9^{commit}") == head
        assert git(os.path.join(manifest.source_dir(), "istio"), "tag") == ""

    def test_tagging_is_idempotent_and_refuses_to_move(self, tmp_path):
        manifest, head = self.build(tmp_path)
        work = manifest.repo_dir("istio")

        tag_repo(manifest, work)
        assert git(work, "rev-parse", "9.9.9^{commit}") == head

        (tmp_path / "build" / "work" / "src" / "istio.io" / "istio" / "NEW").write_text("x")
        git(work, "add", "-A")
        git(work, "commit", "-q", "-m", "move head")
        with pytest.raises(TagConflictError) as info:
            tag_repo(manifest, work)
        assert info.value.existing == head
        assert git(work, "rev-parse", "9.9.9^{commit}") == head

    def test_standardize_pins_every_repo(self, tmp_path):
        manifest, head = self.build(tmp_path)
        standardize_manifest(manifest)

        dep = manifest.dependencies.get("istio")
        assert dep.sha == head
        assert dep.localpath == ""
        assert manifest.dependencies.get("api") is None
        assert manifest.all_dependencies == {
            "istio": head[:12],
            "pkg": "0123456789ab",
            "api": "fedcba987654",
            "client-go": "v1.22.0",
            "proxy": "c" * 12,
            "ztunnel": "d" * 12,
        }

    def test_unreadable_local_path_fails_resolve(self, tmp_path):
        manifest = Manifest(
            dependencies=DependencySet({"istio": Dependency(localpath=str(tmp_path / "absent"))}),
            version="9.9.9",
            directory=str(tmp_path / "build"),
        )
        setup_work_dir(manifest.directory)
        with pytest.raises(ResolveError) as info:
            resolve_sources(manifest)
        assert info.value.repo == "istio"


def commit_file(repo, name, text):
    with open(os.path.join(repo, name), "w", encoding="utf-8") as f:
        f.write(text)
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", f"update {name}")
    return git(repo, "rev-parse", "HEAD")


@requires_git
class TestGitResolve:

    def upstreams(self, tmp_path):
        """Upstream repos: api with two commits, proxy and client-go, and an anchor pointing at them."""
        root = tmp_path / "upstream"
        api = str(root / "api")
        api_pinned = init_repo(api, {"README.md": "api v1\n"})
        commit_file(api, "README.md", "api v2\n")
        proxy = str(root / "proxy")
        proxy_sha = init_repo(proxy, {"WORKSPACE": "# proxy\n"})
        client_go = str(root / "client-go")
        client_go_sha = init_repo(client_go, {"README.md": "client-go\n"})

        go_mod = (f"module istio.io/istio\n\ngo 1.22\n\nrequire (\n"
                  f"\tistio.io/client-go v1.22.0-alpha.0.0.20240501000000-{client_go_sha[:12]}\n)\n")
        deps = [{"repoName": "proxy", "lastStableSHA": proxy_sha}]
        istio = str(root / "istio")
        anchor = init_repo(istio, {"go.mod": go_mod, "istio.deps": json.dumps(deps)})
        git(istio, "branch", "release-9.9")
        commit_file(istio, "NEXT", "not on the release branch\n")

        return {
            "istio": (f"file://{istio}", anchor),
            "api": (f"file://{api}", api_pinned),
            "proxy": (f"file://{proxy}", proxy_sha),
            "client-go": (f"file://{client_go}", client_go_sha),
        }

    def make_manifest(self, tmp_path, deps):
        manifest = Manifest(dependencies=DependencySet(deps), version="9.9.9", directory=str(tmp_path / "build"))
        setup_work_dir(manifest.directory)
        return manifest

    def test_branch_sha_and_auto_dependencies(self, tmp_path):
        up = self.upstreams(tmp_path)
        manifest = self.make_manifest(tmp_path, {
            "istio": Dependency(git=up["istio"][0], branch="release-9.9"),
            "api": Dependency(git=up["api"][0], sha=up["api"][1]),
            "proxy": Dependency(git=up["proxy"][0], auto="deps"),
            "client-go": Dependency(git=up["client-go"][0], auto="modules"),
        })

        resolve_sources(manifest)

        # 1. Every working tree is checked out at the expected commit and tagged there
        for repo, (_, sha) in up.items():
            work = manifest.repo_dir(repo)
            assert git(work, "rev-parse", "HEAD") == sha
            assert git(work, "rev-parse", "9.9.9^{commit}") == sha

        # 2. The branch dependency is a shallow clone of the branch tip, SHA pins keep full history
        anchor_src = os.path.join(manifest.source_dir(), "istio")
        assert git(anchor_src, "rev-parse", "--is-shallow-repository") == "true"
        assert not os.path.exists(os.path.join(anchor_src, "NEXT"))
        assert git(os.path.join(manifest.source_dir(), "api"), "rev-parse", "--is-shallow-repository") == "false"

        # 3. Standardizing records the resolved SHAs
        standardize_manifest(manifest)
        assert manifest.dependencies.get("proxy").sha == up["proxy"][1]
        assert manifest.dependencies.get("proxy").auto == ""
        assert manifest.dependencies.get("client-go").sha == up["client-go"][1]

    @pytest.mark.parametrize("repo, auto, message", [
        ("ztunnel", "deps", "not in istio.deps"),
        ("ztunnel", "modules", "not in go.mod"),
    ])
    def test_repo_missing_from_anchor_fails_resolve(self, tmp_path, repo, auto, message):
        up = self.upstreams(tmp_path)
        manifest = self.make_manifest(tmp_path, {
            "istio": Dependency(git=up["istio"][0], branch="release-9.9"),
            repo: Dependency(git=up["proxy"][0], auto=auto),
        })

        with pytest.raises(ResolveError, match=message) as info:
            resolve_sources(manifest)
        assert info.value.repo == repo
        assert not os.path.exists(os.path.join(manifest.source_dir(), repo))

    def test_unknown_branch_fails_resolve(self, tmp_path):
        up = self.upstreams(tmp_path)
        manifest = self.make_manifest(tmp_path, {"istio": Dependency(git=up["istio"][0], branch="release-0.0")})

        with pytest.raises(ResolveError, match="failed to resolve istio") as info:
            resolve_sources(manifest)
        assert info.value.repo == "istio"
