"""Filesystem helpers shared by the resolver, builders and publishers."""

import fnmatch
import hashlib
import logging
import os
import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger("releasebuilder.files")


def copy_dir(src: str, dst: str) -> None:
    """Recursively copy src to dst. dst must not exist yet."""
    os.makedirs(os.path.dirname(os.path.abspath(dst)), exist_ok=True)
    shutil.copytree(src, dst, symlinks=True)


def copy_file(src: str, dst: str) -> None:
    logger.info(f"Copying {src} -> {dst}")
    os.makedirs(os.path.dirname(os.path.abspath(dst)), exist_ok=True)
    shutil.copy2(src, dst)


def copy_files_to_dir(src: str, dst: str) -> None:
    """Copy every regular file directly under src into dst (which may already exist)."""
    os.makedirs(dst, exist_ok=True)
    for entry in sorted(os.listdir(src)):
        path = os.path.join(src, entry)
        if os.path.isfile(path):
            copy_file(path, os.path.join(dst, entry))


def copy_dir_filtered(src: str, dst: str, include: Iterable[str]) -> None:
    """Copy src to dst keeping only files whose basename matches one of the include globs."""
    patterns = list(include)
    copy_dir(src, dst)
    for root, _, files in os.walk(dst):
        for name in files:
            if not any(fnmatch.fnmatch(name, p) for p in patterns):
                os.remove(os.path.join(root, name))


def sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def create_sha(path: str) -> str:
    """Write `<path>.sha256` in sha256sum format and return its path."""
    target = path + ".sha256"
    Path(target).write_text(f"{sha256_file(path)} {os.path.basename(path)}\n", encoding="utf-8")
    return target


def tar_gz(archive: str, root: str, members: Iterable[str]) -> None:
    """Create a gzipped tarball of `members`, relative to `root`."""
    os.makedirs(os.path.dirname(os.path.abspath(archive)), exist_ok=True)
    with tarfile.open(archive, "w:gz") as tar:
        for member in members:
            tar.add(os.path.join(root, member), arcname=member)
    logger.info(f"Wrote {archive}")


def zip_dir(archive: str, root: str, member: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(archive)), exist_ok=True)
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        base = os.path.join(root, member)
        if os.path.isfile(base):
            zf.write(base, arcname=member)
        for dirpath, _, files in os.walk(base):
            for name in sorted(files):
                full = os.path.join(dirpath, name)
                zf.write(full, arcname=os.path.relpath(full, root))
    logger.info(f"Wrote {archive}")


def list_files(directory: str) -> List[str]:
    """All regular files below directory, relative to it, sorted."""
    found = []
    for root, _, files in os.walk(directory):
        for name in files:
            found.append(os.path.relpath(os.path.join(root, name), directory))
    return sorted(found)
