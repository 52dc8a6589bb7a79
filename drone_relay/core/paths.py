"""Filesystem locations for the drone relay."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .logging_utils import get_module_logger


logger = get_module_logger("Paths")

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT = PACKAGE_ROOT.parent

CONFIG_PATH = PROJECT_ROOT / "config.txt"

_DATA_DIR_ENV = os.environ.get("DRONE_RELAY_DATA_DIR")
DEFAULT_DATA_DIR = Path(_DATA_DIR_ENV).expanduser() if _DATA_DIR_ENV else (Path.home() / ".drone_relay")


@dataclass(frozen=True)
class MediaPaths:
    """Layout under the writable application-data root."""
    data_dir: Path

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def photos_dir(self) -> Path:
        return self.uploads_dir / "photos"

    @property
    def recordings_dir(self) -> Path:
        return self.uploads_dir / "mp4_recordings"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    def ensure(self) -> None:
        """Create the media folders and warn if photos cannot be written."""
        logger.info("Ensuring media folders exist in: %s", self.uploads_dir)
        for directory in (self.uploads_dir, self.photos_dir, self.recordings_dir):
            directory.mkdir(mode=0o755, parents=True, exist_ok=True)

        marker = self.photos_dir / ".testwrite"
        try:
            marker.write_text("test")
            marker.unlink()
        except OSError as e:
            logger.warning("Could not confirm write access to %s: %s", self.photos_dir, e)


__all__ = ["PACKAGE_ROOT", "PROJECT_ROOT", "CONFIG_PATH", "DEFAULT_DATA_DIR", "MediaPaths"]
