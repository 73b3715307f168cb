"""
Cleanup: scoped workspaces for transient audio, removed on success or failure.
"""

import shutil
import logging
import uuid
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


def cleanup_paths(*paths: Path | str | None):
    """Delete files or directories, logging (not raising) on failure."""
    for path in paths:
        if not path:
            continue
        path = Path(path)
        try:
            if path.is_dir():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()
            else:
                continue
            logger.debug("Deleted: %s", path)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)


@contextmanager
def scoped_workspace(root: Path | str, prefix: str, keep: bool = False):
    """
    Create `root/<prefix>-<random>` and yield it.
    The directory and everything in it is removed on exit unless `keep`.
    """
    workspace = Path(root) / f"{prefix}-{uuid.uuid4().hex[:12]}"
    workspace.mkdir(parents=True, exist_ok=True)
    try:
        yield workspace
    finally:
        if keep:
            logger.info("Keeping debug workspace: %s", workspace)
        else:
            cleanup_paths(workspace)
