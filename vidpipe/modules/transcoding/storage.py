"""Output directory layout for transcoded videos.

Each job writes into its own directory::

    <output_path>/
        480p.m3u8
        480p_000.ts ...
        720p.m3u8
        720p_000.ts ...
        master.m3u8
        thumbnail.jpg        (optional)

Reprocessing the same job overwrites the directory in place.
"""

import glob
import logging
import os
import tempfile
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MASTER_PLAYLIST_NAME = "master.m3u8"
THUMBNAIL_NAME = "thumbnail.jpg"


@dataclass(frozen=True)
class OutputLayout:
    """Paths inside one job's output directory."""
    root: str

    @property
    def master_path(self) -> str:
        return os.path.join(self.root, MASTER_PLAYLIST_NAME)

    @property
    def thumbnail_path(self) -> str:
        return os.path.join(self.root, THUMBNAIL_NAME)

    def playlist_name(self, quality: str) -> str:
        return f"{quality}.m3u8"

    def playlist_path(self, quality: str) -> str:
        return os.path.join(self.root, self.playlist_name(quality))

    def segment_pattern(self, quality: str) -> str:
        """ffmpeg ``-hls_segment_filename`` pattern, e.g. ``720p_%03d.ts``."""
        return os.path.join(self.root, f"{quality}_%03d.ts")

    def segment_paths(self, quality: str) -> list[str]:
        return sorted(glob.glob(os.path.join(glob.escape(self.root), f"{quality}_[0-9]*.ts")))

    def ensure(self) -> None:
        os.makedirs(self.root, exist_ok=True)

    def remove_rendition(self, quality: str) -> int:
        """Delete the playlist and segments of a rendition.

        Returns:
            Number of files removed
        """
        removed = 0
        for path in self.segment_paths(quality) + [self.playlist_path(quality)]:
            try:
                os.remove(path)
                removed += 1
            except FileNotFoundError:
                continue
        if removed:
            logger.debug(f"Removed {removed} stale files for {quality} in {self.root}")
        return removed

    def remove_master(self) -> bool:
        """Unpublish the master playlist left by an earlier attempt."""
        try:
            os.remove(self.master_path)
        except FileNotFoundError:
            return False
        logger.info(f"Removed previous master playlist in {self.root}")
        return True


def atomic_write_text(path: str, content: str) -> None:
    """Write a file so readers see either the old or the new content."""
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=os.path.basename(path), dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
