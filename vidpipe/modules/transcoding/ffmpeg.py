"""FFmpeg HLS transcoding.

One ffmpeg run per rendition, each producing ``<quality>.m3u8`` and its
numbered ``.ts`` segments. Runs are blocking; callers in an event loop
hand them to a worker thread.
"""

import logging
import os
import subprocess
import time
from abc import ABC, abstractmethod
from typing import Optional

from vidpipe.core.config import settings
from vidpipe.core.exceptions import EngineFailure
from vidpipe.core.metrics import TRANSCODE_DURATION_SECONDS
from vidpipe.modules.transcoding.models import RenditionOutput, get_preset
from vidpipe.modules.transcoding.storage import OutputLayout

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000
KEYFRAME_INTERVAL_FRAMES = 48


def trim_tail(text: str, limit: int = STDERR_TAIL_CHARS) -> str:
    """Keep the last ``limit`` characters of tool output."""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


def read_segments(playlist_path: str) -> list[str]:
    """List the media segments referenced by a rendition playlist."""
    root = os.path.dirname(playlist_path)
    with open(playlist_path, encoding="utf-8") as f:
        return [
            os.path.join(root, line.strip())
            for line in f
            if line.strip() and not line.startswith("#")
        ]


class TranscodingEngine(ABC):
    """Produces one HLS rendition of a source video."""

    @abstractmethod
    def transcode(self, source: str, output_dir: str, quality: str) -> RenditionOutput:
        """Encode ``source`` at ``quality`` into ``output_dir``.

        Raises:
            EngineFailure: If the rendition could not be produced
        """

    @abstractmethod
    def extract_thumbnail(self, source: str, destination: str, at: str) -> str:
        """Write a single frame taken at ``at`` to ``destination``."""


class FFmpegHLSTranscoder(TranscodingEngine):
    """FFmpeg-based HLS transcoder."""

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        preset: Optional[str] = None,
        segment_seconds: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize transcoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            preset: x264 preset
            segment_seconds: Target HLS segment length
            timeout: Wall-clock limit per ffmpeg run, None for no limit
        """
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.preset = preset or settings.FFMPEG_PRESET
        self.segment_seconds = segment_seconds or settings.HLS_SEGMENT_SECONDS
        self.timeout = timeout if timeout is not None else settings.ENGINE_TIMEOUT_SECONDS

    def build_hls_command(self, source: str, layout: OutputLayout, quality: str) -> list[str]:
        """Build the ffmpeg command for one rendition.

        Raises:
            EngineFailure: If the quality label has no preset
        """
        preset = get_preset(quality)
        if preset is None:
            raise EngineFailure(f"Unknown quality: {quality}", quality=quality)

        width, height = preset.width, preset.height
        return [
            self.ffmpeg_path,
            "-y",  # Overwrite output
            "-hide_banner",
            "-loglevel", "error",
            "-i", source,
            "-map", "0:v:0",
            "-map", "0:a:0?",
            # Video settings
            "-c:v", "libx264",
            "-preset", self.preset,
            "-profile:v", "main",
            "-pix_fmt", "yuv420p",
            "-b:v", str(preset.video_bitrate),
            "-maxrate", str(int(preset.video_bitrate * 1.5)),
            "-bufsize", str(int(preset.video_bitrate * 2)),
            "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease,pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            "-g", str(KEYFRAME_INTERVAL_FRAMES),
            "-keyint_min", str(KEYFRAME_INTERVAL_FRAMES),
            "-sc_threshold", "0",
            # Audio settings
            "-c:a", "aac",
            "-b:a", str(preset.audio_bitrate),
            "-ar", "48000",
            "-ac", "2",
            # Output format
            "-f", "hls",
            "-hls_time", str(self.segment_seconds),
            "-hls_playlist_type", "vod",
            "-hls_flags", "independent_segments",
            "-hls_segment_filename", layout.segment_pattern(quality),
            layout.playlist_path(quality),
        ]

    def build_thumbnail_command(self, source: str, destination: str, at: str) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-ss", str(at),
            "-i", source,
            "-frames:v", "1",
            "-q:v", "2",
            destination,
        ]

    def transcode(self, source: str, output_dir: str, quality: str) -> RenditionOutput:
        """Transcode a source video into one HLS rendition.

        Any previous output of the same rendition is removed first so a
        re-run never mixes old and new segments.
        """
        layout = OutputLayout(output_dir)
        layout.ensure()
        cmd = self.build_hls_command(source, layout, quality)
        layout.remove_rendition(quality)

        started = time.monotonic()
        status = "failure"
        try:
            self._run(cmd, quality=quality)
            segments = self._collect_segments(layout, quality)
            status = "success"
        finally:
            TRANSCODE_DURATION_SECONDS.labels(quality=quality, status=status).observe(
                time.monotonic() - started
            )

        preset = get_preset(quality)
        logger.info(
            f"Rendition {quality} written with {len(segments)} segments",
            extra={"quality": quality, "output_dir": output_dir},
        )
        return RenditionOutput(
            quality=quality,
            playlist_path=layout.playlist_path(quality),
            segments=tuple(segments),
            bitrate=preset.bandwidth,
            scale=preset.scale,
        )

    def extract_thumbnail(self, source: str, destination: str, at: str) -> str:
        self._run(self.build_thumbnail_command(source, destination, at), quality=None)
        if not os.path.isfile(destination):
            raise EngineFailure(f"ffmpeg produced no thumbnail at {destination}")
        return destination

    def _run(self, cmd: list[str], quality: Optional[str]) -> None:
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            stderr = e.stderr.decode("utf-8", "replace") if isinstance(e.stderr, bytes) else e.stderr
            raise EngineFailure(
                f"ffmpeg timed out after {self.timeout}s",
                quality=quality,
                diagnostics=trim_tail(stderr or ""),
            ) from e
        except OSError as e:
            raise EngineFailure(f"ffmpeg could not be started: {e}", quality=quality) from e

        if result.returncode != 0:
            diagnostics = trim_tail(result.stderr)
            raise EngineFailure(
                f"ffmpeg exited with code {result.returncode}: {diagnostics}",
                quality=quality,
                diagnostics=diagnostics,
            )

    def _collect_segments(self, layout: OutputLayout, quality: str) -> list[str]:
        playlist = layout.playlist_path(quality)
        if not os.path.isfile(playlist):
            raise EngineFailure(f"ffmpeg produced no playlist for {quality}", quality=quality)
        segments = read_segments(playlist)
        if not segments:
            raise EngineFailure(f"Playlist for {quality} lists no segments", quality=quality)
        return segments
