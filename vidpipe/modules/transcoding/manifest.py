"""HLS master playlist assembly."""

import os
from typing import Iterable, Optional

from vidpipe.core.exceptions import EngineFailure
from vidpipe.modules.transcoding.models import MasterManifest, RenditionOutput
from vidpipe.modules.transcoding.storage import OutputLayout, atomic_write_text

HLS_VERSION = 3


def order_renditions(renditions: Iterable[RenditionOutput]) -> list[RenditionOutput]:
    """Sort renditions by ascending bitrate, then by label."""
    return sorted(renditions, key=lambda r: (r.bitrate, r.quality))


def build_master_playlist(renditions: Iterable[RenditionOutput]) -> str:
    """Render the master playlist text.

    Playlist URIs are relative to the master playlist, so the output
    directory can be moved or served from any prefix.
    """
    ordered = order_renditions(renditions)
    if not ordered:
        raise ValueError("A master playlist needs at least one rendition")

    lines = ["#EXTM3U", f"#EXT-X-VERSION:{HLS_VERSION}"]
    for rendition in ordered:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.bitrate},"
            f"RESOLUTION={rendition.scale},NAME=\"{rendition.quality}\""
        )
        lines.append(os.path.basename(rendition.playlist_path))
    return "\n".join(lines) + "\n"


def write_master_manifest(
    layout: OutputLayout,
    renditions: Iterable[RenditionOutput],
    thumbnail_path: Optional[str] = None,
) -> MasterManifest:
    """Write ``master.m3u8`` atomically once every rendition exists.

    Raises:
        EngineFailure: If a rendition playlist is missing on disk
    """
    ordered = order_renditions(renditions)
    for rendition in ordered:
        if not os.path.isfile(rendition.playlist_path):
            raise EngineFailure(
                f"Rendition playlist missing: {rendition.playlist_path}",
                quality=rendition.quality,
            )

    atomic_write_text(layout.master_path, build_master_playlist(ordered))
    return MasterManifest(
        path=layout.master_path,
        renditions=tuple(ordered),
        thumbnail_path=thumbnail_path,
    )


def parse_master_playlist(text: str) -> list[tuple[int, str]]:
    """Return ``(bandwidth, uri)`` pairs in playlist order."""
    entries = []
    bandwidth = None
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("#EXT-X-STREAM-INF:"):
            for attr in line.split(":", 1)[1].split(","):
                key, _, value = attr.partition("=")
                if key == "BANDWIDTH":
                    bandwidth = int(value)
        elif line and not line.startswith("#") and bandwidth is not None:
            entries.append((bandwidth, line))
            bandwidth = None
    return entries
