"""Package the stamped charts with `helm package`."""

import logging
import os

from releasebuilder.build.charts import HELM_CHARTS
from releasebuilder.core import command, files
from releasebuilder.core.models import ANCHOR_REPO, Manifest

logger = logging.getLogger("releasebuilder.build.helm")


def build_helm(manifest: Manifest) -> None:
    packages = os.path.join(manifest.work_dir(), "helm", "packages")
    os.makedirs(packages, exist_ok=True)
    root = manifest.repo_dir(ANCHOR_REPO)
    for chart in HELM_CHARTS:
        logger.info(f"Packaging chart {chart}")
        command.run(["helm", "package", os.path.join(root, chart), "--destination", packages],
                    env=command.constrained_env())
    files.copy_files_to_dir(packages, os.path.join(manifest.out_dir(), "helm"))
