"""On-disk size inspection for database data directories."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)


def walk(target_dir: Path | str) -> Dict[str, int]:
    """Map the absolute path of every non-directory entry under ``target_dir`` to its size.

    Symlinks are recorded with their own ``lstat`` size and never followed.
    """
    root = Path(target_dir).resolve()
    sizes: Dict[str, int] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        # os.walk lists links to directories with the directories
        links = [name for name in dirnames if os.path.islink(os.path.join(dirpath, name))]
        for filename in filenames + links:
            path = Path(dirpath) / filename
            try:
                stat = path.lstat()
            except FileNotFoundError:
                # removed while walking (compaction, snapshot rotation)
                continue
            sizes[str(path)] = stat.st_size
    return sizes


def size(target_dir: Path | str) -> int:
    """Total size in bytes of ``target_dir``, like ``du -sb``."""
    total = sum(walk(target_dir).values())
    logger.debug("Data size of %s: %d bytes", target_dir, total)
    return total
