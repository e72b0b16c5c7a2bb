"""
Vulnerability scan of the release base image.

The base image version is read from BASE_VERSION in the anchor repo's
Makefile.core.mk, then the image scanner is queried over HTTP. Timeouts are
retried a bounded number of times; any other transport failure aborts.
"""

import logging
import os
from typing import Optional

import httpx

from releasebuilder.core.errors import ScanError
from releasebuilder.core.models import ANCHOR_REPO, Manifest
from releasebuilder.core.retry import retry
from releasebuilder.sources.makefile import read_variable

logger = logging.getLogger("releasebuilder.build.scanner")

SCANNER_URL = "http://imagescanner.cloud.ibm.com/scan"
BASE_IMAGE = "istio/base"
MAKEFILE = "Makefile.core.mk"
SCAN_ATTEMPTS = 4
SCAN_TIMEOUT = 60.0


def base_image(manifest: Manifest) -> str:
    version = read_variable(os.path.join(manifest.repo_dir(ANCHOR_REPO), MAKEFILE), "BASE_VERSION")
    return f"{BASE_IMAGE}:{version}"


def scan_image(image: str, transport: Optional[httpx.BaseTransport] = None) -> None:
    """Raise ScanError unless the scanner reports the image clean."""

    def request() -> httpx.Response:
        with httpx.Client(timeout=SCAN_TIMEOUT, transport=transport) as client:
            return client.get(SCANNER_URL, params={"image": image})

    try:
        response = retry(request, SCAN_ATTEMPTS, (httpx.TimeoutException,), what=f"scan of {image}")
    except httpx.HTTPError as err:
        raise ScanError(f"scanning error ({image}): {err}") from err

    try:
        body = response.json()
    except ValueError:
        body = {}
    if response.status_code != httpx.codes.OK:
        if response.status_code == httpx.codes.INTERNAL_SERVER_ERROR:
            raise ScanError(f"scanning error ({image}): {body.get('Progress') or body.get('progress')}")
        raise ScanError(f"scanning error ({image}): {response.status_code}")

    results = body.get("Results") or body.get("results") or {}
    status = results.get("Status") or results.get("status")
    if status == "OK":
        logger.info(f"Base image scan of {image} was successful")
        return
    raise ScanError(f"image {image} has vulnerabilities:\n{response.text}")


def run_scanner(manifest: Manifest, transport: Optional[httpx.BaseTransport] = None) -> None:
    image = base_image(manifest)
    try:
        scan_image(image, transport=transport)
    except ScanError as err:
        if manifest.ignore_vulnerability:
            logger.warning(f"Ignoring vulnerability scanning error: {err}")
            return
        raise
