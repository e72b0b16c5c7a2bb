"""Upload each dashboard of a release as a new revision on grafana.com."""

import logging
import os
from typing import Optional

import httpx

from releasebuilder.core.errors import PublishError
from releasebuilder.core.models import Manifest

logger = logging.getLogger("releasebuilder.publish.grafana")

REVISIONS_URL = "https://grafana.com/api/dashboards/{id}/revisions"


def publish_grafana(manifest: Manifest, token: str, transport: Optional[httpx.BaseTransport] = None) -> None:
    headers = {"Authorization": f"Bearer {token}"}
    with httpx.Client(timeout=60.0, headers=headers, transport=transport) as client:
        for name, dashboard_id in sorted(manifest.dashboards.items()):
            path = os.path.join(manifest.directory, "grafana", f"{name}.json")
            try:
                with open(path, "rb") as f:
                    response = client.post(
                        REVISIONS_URL.format(id=dashboard_id),
                        files={"json": (os.path.basename(path), f.read(), "application/json")},
                    )
            except OSError as err:
                raise PublishError(f"failed to read dashboard {name}: {err}") from err
            except httpx.HTTPError as err:
                raise PublishError(f"request to update {name} failed: {err}") from err
            logger.info(f"Dashboard {name} uploaded with code: {response.status_code}. Body: {response.text}")
