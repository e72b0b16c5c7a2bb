#!/usr/bin/env python3
"""
RELEASE BUILDER CHART STAMPER
-----------------------------
Charts in the source tree carry development placeholders: a `0.0.0-dev`
style version, `file://` dependencies between sibling charts, and images
pointing at the testing hub with floating tags. Before anything is packaged
or archived every chart is stamped with the release identity:

* Chart.yaml `version` and `appVersion` become the release version.
* `file://` dependencies are rewritten to the public `@istio` repository
  alias at the release version.
* Hub, tag and operator image placeholders in Chart.yaml, values*.yaml and
  templates/*.yaml are rewritten through a fixed allow-list of patterns.
  Anything the patterns do not recognize is left byte-for-byte intact.
"""

import io
import logging
import os
import re
from pathlib import Path
from typing import List

from ruamel.yaml import YAMLError

from releasebuilder.core.errors import ChartError
from releasebuilder.core.manifest import new_yaml
from releasebuilder.core.models import ANCHOR_REPO, Manifest

logger = logging.getLogger("releasebuilder.charts")

CHART_FILE = "Chart.yaml"
RELEASE_REPOSITORY = "@istio"

HELM_CHARTS = (
    "manifests/charts/base",
    "manifests/charts/gateways/istio-egress",
    "manifests/charts/gateways/istio-ingress",
    "manifests/charts/istio-cni",
    "manifests/charts/istio-control/istio-discovery",
    "manifests/charts/istiod-remote",
    "manifests/charts/ztunnel",
    "manifests/charts/gateway",
)

# Development hubs images are built against
HUB_PATTERN = re.compile(r"^([ \t]*)hub: (?:gcr\.io/istio-testing|gcr\.io/istio-release)[ \t]*$", re.M)

# Floating tags: `release-1.x-latest-daily`, `latest` or `1.x-dev`
TAG_PATTERNS = (
    re.compile(r"^([ \t]*)tag: \S*-latest-daily[ \t]*$", re.M),
    re.compile(r"^([ \t]*)tag: latest[ \t]*$", re.M),
    re.compile(r"^([ \t]*)tag: \d+\.\d+-dev[ \t]*$", re.M),
)

# Images embedded directly in templates are enumerated one by one
OPERATOR_IMAGE_PATTERN = re.compile(r"^([ \t]*)image: gcr\.io/istio-testing/operator:\S*[ \t]*$", re.M)


def rewrite_placeholders(contents: str, hub: str, version: str) -> str:
    """Apply the hub/tag/image allow-list to one file's contents."""
    contents = HUB_PATTERN.sub(lambda m: f"{m.group(1)}hub: {hub}", contents)
    for pattern in TAG_PATTERNS:
        contents = pattern.sub(lambda m: f"{m.group(1)}tag: {version}", contents)
    return OPERATOR_IMAGE_PATTERN.sub(lambda m: f"{m.group(1)}image: {hub}/operator:{version}", contents)


def sanitize_template(manifest: Manifest, path: str) -> bool:
    """Rewrite placeholders in a single file. Returns True when the file changed."""
    p = Path(path)
    try:
        original = p.read_text(encoding="utf-8")
    except OSError as err:
        raise ChartError(f"failed to read {path}: {err}") from err
    updated = rewrite_placeholders(original, manifest.docker, manifest.version)
    if updated == original:
        return False
    p.write_text(updated, encoding="utf-8")
    return True


def stamp_chart_file(path: str, version: str) -> None:
    """Set version/appVersion and pin local dependencies in a Chart.yaml, keeping its layout."""
    yaml = new_yaml()
    try:
        chart = yaml.load(Path(path).read_text(encoding="utf-8"))
    except (OSError, YAMLError) as err:
        raise ChartError(f"failed to read {path}: {err}") from err
    if not isinstance(chart, dict):
        raise ChartError(f"{path} is not a chart descriptor")

    chart["version"] = version
    chart["appVersion"] = version
    for dep in chart.get("dependencies") or []:
        if str(dep.get("repository", "")).startswith("file://"):
            dep["repository"] = RELEASE_REPOSITORY
            dep["version"] = version

    stream = io.StringIO()
    yaml.dump(chart, stream)
    Path(path).write_text(stream.getvalue(), encoding="utf-8")


def chart_templates(chart_dir: str) -> List[str]:
    """Files subject to placeholder rewriting within one chart."""
    found = [os.path.join(chart_dir, CHART_FILE)]
    for name in sorted(os.listdir(chart_dir)):
        if name.startswith("values") and name.endswith(".yaml"):
            found.append(os.path.join(chart_dir, name))
    templates = os.path.join(chart_dir, "templates")
    if os.path.isdir(templates):
        for name in sorted(os.listdir(templates)):
            if name.endswith(".yaml"):
                found.append(os.path.join(templates, name))
    return found


def stamp_chart(manifest: Manifest, chart_dir: str) -> None:
    chart_file = os.path.join(chart_dir, CHART_FILE)
    if not os.path.isfile(chart_file):
        raise ChartError(f"no {CHART_FILE} in {chart_dir}")
    stamp_chart_file(chart_file, manifest.version)
    changed = [f for f in chart_templates(chart_dir) if sanitize_template(manifest, f)]
    logger.info(f"Stamped {chart_dir} with {manifest.version} ({len(changed)} file(s) rewritten)")


def sanitize_all_charts(manifest: Manifest) -> None:
    """Stamp every known chart in the anchor repo. Must run before Helm packaging and archiving."""
    root = manifest.repo_dir(ANCHOR_REPO)
    for chart in HELM_CHARTS:
        try:
            stamp_chart(manifest, os.path.join(root, chart))
        except ChartError as err:
            raise ChartError(f"failed to sanitize chart {chart}: {err}") from err
