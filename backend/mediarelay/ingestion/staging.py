"""Local staging of downloaded media.

Content is streamed from the platform into a uniquely named temp file,
uploaded from there, and removed once the pipeline is done with it.
Staged names are random so that concurrent events carrying the same file
name never share a path.
"""
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class StagingArea:
    """Owns the staging directory and the lifetime of staged files."""

    def __init__(self, directory: str = "") -> None:
        self.directory = Path(directory) if directory else Path(tempfile.gettempdir()) / "mediarelay"

    def _ensure_dir(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def allocate(self, file_name: str) -> Path:
        """Create an empty staging file keeping *file_name*'s suffix."""
        self._ensure_dir()
        fd, path = tempfile.mkstemp(
            prefix="stage_", suffix=Path(file_name).suffix, dir=self.directory
        )
        os.close(fd)
        return Path(path)

    def cleanup(self, path: Path) -> bool:
        """Remove a staged file; returns False if it was already gone."""
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning("Could not remove staged file %s: %s", path, e)
            return False
        logger.debug("Removed staged file %s", path)
        return True
