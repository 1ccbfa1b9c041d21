"""Rendition presets and transcoding results."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class Quality(str, Enum):
    """Supported rendition labels."""
    Q_240P = "240p"
    Q_360P = "360p"
    Q_480P = "480p"
    Q_720P = "720p"
    Q_1080P = "1080p"
    Q_1440P = "1440p"
    Q_2160P = "2160p"


@dataclass(frozen=True)
class QualityPreset:
    """Encoding parameters for one rendition."""
    quality: Quality
    width: int
    height: int
    video_bitrate: int  # bps
    audio_bitrate: int  # bps

    @property
    def scale(self) -> str:
        return f"{self.width}x{self.height}"

    @property
    def bandwidth(self) -> int:
        """Peak bandwidth advertised in the master playlist."""
        return self.video_bitrate + self.audio_bitrate


QUALITY_PRESETS: dict[str, QualityPreset] = {
    preset.quality.value: preset
    for preset in (
        QualityPreset(Quality.Q_240P, 426, 240, 400_000, 64_000),
        QualityPreset(Quality.Q_360P, 640, 360, 800_000, 96_000),
        QualityPreset(Quality.Q_480P, 854, 480, 1_400_000, 128_000),
        QualityPreset(Quality.Q_720P, 1280, 720, 2_800_000, 128_000),
        QualityPreset(Quality.Q_1080P, 1920, 1080, 5_000_000, 192_000),
        QualityPreset(Quality.Q_1440P, 2560, 1440, 10_000_000, 192_000),
        QualityPreset(Quality.Q_2160P, 3840, 2160, 20_000_000, 192_000),
    )
}


def get_preset(quality: str) -> Optional[QualityPreset]:
    """Look up the preset for a rendition label, or None if unknown."""
    return QUALITY_PRESETS.get(quality)


def normalize_qualities(qualities) -> list[str]:
    """Strip labels and drop repeats, keeping the first occurrence."""
    return list(dict.fromkeys(label.strip() for label in qualities))


def unknown_qualities(qualities) -> list[str]:
    """Return the labels that have no preset, in request order."""
    return [q for q in qualities if q not in QUALITY_PRESETS]


@dataclass(frozen=True)
class RenditionOutput:
    """One transcoded quality variant on disk."""
    quality: str
    playlist_path: str
    segments: tuple[str, ...]
    bitrate: int
    scale: str


@dataclass(frozen=True)
class MasterManifest:
    """Top-level playlist referencing every rendition, lowest bitrate first."""
    path: str
    renditions: tuple[RenditionOutput, ...] = field(default_factory=tuple)
    thumbnail_path: Optional[str] = None
