"""Batch directory archival: <batch-dir>.tgz with regular files only."""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path

logger = logging.getLogger(__name__)


def compress_directory(output_dir: str) -> str:
    """Archive every regular file under output_dir into output_dir.tgz.

    Member names are relative to the parent of output_dir, so the archive
    unpacks into a directory with the batch name. Directory entries are
    omitted.
    """
    source = Path(output_dir).resolve()
    archive_path = f"{output_dir.rstrip('/')}.tgz"
    logger.info("Compressing to %s", archive_path)
    with tarfile.open(archive_path, "w:gz") as tar:
        for item in sorted(source.rglob("*")):
            if not item.is_file():
                continue
            arcname = str(item.relative_to(source.parent))
            tar.add(str(item), arcname=arcname, recursive=False)
    return archive_path
