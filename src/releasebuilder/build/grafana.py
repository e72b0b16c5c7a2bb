"""
Grafana dashboards, converted from the in-chart form to the form grafana.com
expects: `__inputs`/`__requires` added, a versioned description, and the
datasource turned into the `${DS_PROMETHEUS}` input placeholder.
"""

import json
import logging
import os
from pathlib import Path

from releasebuilder.core import files
from releasebuilder.core.errors import BuildError
from releasebuilder.core.models import ANCHOR_REPO, Manifest

logger = logging.getLogger("releasebuilder.build.grafana")

DASHBOARD_DIR = "manifests/addons/dashboards"
DASHBOARD_SUFFIXES = ("-dashboard.json", "-dashboard.gen.json")

INPUTS = [
    {
        "name": "DS_PROMETHEUS",
        "label": "Prometheus",
        "description": "",
        "type": "datasource",
        "pluginId": "prometheus",
        "pluginName": "Prometheus",
    }
]

REQUIRES = [
    {"type": "grafana", "id": "grafana", "name": "Grafana", "version": "6.4.3"},
    {"type": "panel", "id": "graph", "name": "Graph", "version": ""},
    {"type": "datasource", "id": "prometheus", "name": "Prometheus", "version": "5.0.0"},
    {"type": "panel", "id": "table", "name": "Table", "version": ""},
]


def externalize_dashboard(version: str, path: str) -> None:
    try:
        dashboard = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as err:
        raise BuildError(f"failed to read {path}: {err}") from err

    if dashboard.get("description"):
        raise BuildError(f"{path} already has a description: {dashboard['description']!r}")
    title = dashboard.get("title")
    if not title:
        raise BuildError(f"{path} has no title")

    dashboard["__inputs"] = INPUTS
    dashboard["__requires"] = REQUIRES
    dashboard["description"] = f"{title} version {version}"

    result = json.dumps(dashboard, indent=2, sort_keys=True)
    result = result.replace('"datasource": "Prometheus"', '"datasource": "${DS_PROMETHEUS}"')
    Path(path).write_text(result, encoding="utf-8")


def build_grafana(manifest: Manifest) -> None:
    work = os.path.join(manifest.work_dir(), "grafana")
    files.copy_dir(os.path.join(manifest.repo_dir(ANCHOR_REPO), DASHBOARD_DIR), work)
    for name in sorted(os.listdir(work)):
        if not name.endswith(DASHBOARD_SUFFIXES):
            logger.info(f"Skipping non-dashboard file {name}")
            continue
        try:
            externalize_dashboard(manifest.version, os.path.join(work, name))
        except BuildError as err:
            raise BuildError(f"failed to process dashboard {name}: {err}") from err
    files.copy_dir(work, os.path.join(manifest.out_dir(), "grafana"))
