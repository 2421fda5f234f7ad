"""Workspace file I/O: materialize submitted source, remove session directories."""
import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def ensure_root(root: Path) -> None:
    root.mkdir(parents=True, exist_ok=True)
    logger.info("Workspace root ready at %s", root)


def materialize(workspace_dir: Path, filename: str, source: str) -> Path:
    """Create the workspace (recursively, idempotent) and write the entry file."""
    workspace_dir.mkdir(parents=True, exist_ok=True)
    path = workspace_dir / filename
    path.write_text(source, encoding="utf-8")
    return path


def remove(workspace_dir: Path) -> bool:
    """Best-effort recursive removal. Returns True if nothing is left behind."""
    try:
        shutil.rmtree(workspace_dir)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.warning("Error cleaning up workspace %s: %s", workspace_dir, e)
        return False
    logger.info("Cleaned up workspace %s", workspace_dir)
    return True
