"""
Encode plan model.

An EncodePlan is one fully-resolved output variant: every default has been
filled in by the parser, so two plans compare equal exactly when they would
produce the same output. `to_spec()` renders the canonical encode-spec form and
`signature()` renders the file-name token that keeps destinations distinct.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from ..config.audio import DEFAULT_AUDIO_ENCODER, DEFAULT_AUDIO_TRACK
from ..config.video import (
    COMPAT_ENCODERS,
    COPY_ENCODER,
    DEFAULT_EXTENSION,
    DEFAULT_PROFILE,
    DEFAULT_QUANTIZERS,
    DEFAULT_VIDEO_ENCODER,
    GRAIN_ENCODERS,
)


@dataclass(frozen=True)
class Track:
    """
    A stream index inside the source media plus its container flags.

    With `external` set the track is instead the first stream of the script's
    sibling file with that extension: `at=ac3` reads `clip.ac3`.
    """

    index: int = 0
    enabled: bool = False
    forced: bool = False
    external: Optional[str] = None

    def render(self, separator: str = "-") -> str:
        ident = self.external or str(self.index)
        flags = ("d" if self.enabled else "") + ("f" if self.forced else "")
        return f"{ident}{separator}{flags}" if flags else ident


DEFAULT_AUDIO_TRACKS: Tuple[Track, ...] = (Track(DEFAULT_AUDIO_TRACK),)


@dataclass(frozen=True)
class VideoSettings:
    encoder: str = DEFAULT_VIDEO_ENCODER
    quantizer: Optional[int] = DEFAULT_QUANTIZERS[DEFAULT_VIDEO_ENCODER]
    # An int for the AV1 encoders, an x264 preset name for x264/x265.
    speed: Optional[Union[int, str]] = None
    profile: Optional[str] = DEFAULT_PROFILE
    grain: int = 0
    compat: bool = False
    # Filters. These shape the decoded frames and therefore the cache key.
    bit_depth: Optional[int] = None
    resolution: Optional[Tuple[int, int]] = None

    @property
    def is_copy(self) -> bool:
        return self.encoder == COPY_ENCODER


@dataclass(frozen=True)
class AudioSettings:
    encoder: str = DEFAULT_AUDIO_ENCODER
    bitrate: Optional[int] = None  # kbps per track
    tracks: Tuple[Track, ...] = DEFAULT_AUDIO_TRACKS
    normalize: bool = False

    @property
    def is_copy(self) -> bool:
        return self.encoder == "copy"


@dataclass(frozen=True)
class EncodePlan:
    video: VideoSettings = field(default_factory=VideoSettings)
    audio: AudioSettings = field(default_factory=AudioSettings)
    subtitle_tracks: Tuple[Track, ...] = ()
    hdr: bool = False
    extension: str = DEFAULT_EXTENSION

    def to_spec(self) -> str:
        """
        Renders this plan back into a single encode-spec segment.

        Fields always come out in the same order and every value the parser
        would otherwise default is written explicitly, so `parse(plan.to_spec())`
        returns `[plan]`.
        """
        v, a = self.video, self.audio
        fields: List[str] = [f"enc={v.encoder}"]
        if not v.is_copy:
            fields.append(f"q={v.quantizer}")
            if v.speed is not None:
                fields.append(f"s={v.speed}")
            fields.append(f"p={v.profile}")
        if v.encoder in GRAIN_ENCODERS:
            fields.append(f"g={v.grain}")
        if v.encoder in COMPAT_ENCODERS:
            fields.append(f"compat={int(v.compat)}")
        fields.append(f"hdr={int(self.hdr)}")
        fields.append(f"ext={self.extension}")
        if v.bit_depth is not None:
            fields.append(f"bd={v.bit_depth}")
        if v.resolution is not None:
            fields.append(f"res={v.resolution[0]}x{v.resolution[1]}")
        fields.append(f"aenc={a.encoder}")
        if a.bitrate is not None:
            fields.append(f"ab={a.bitrate}")
        if not a.is_copy:
            fields.append(f"an={int(a.normalize)}")
        fields.append("at=" + "|".join(t.render() for t in a.tracks))
        if self.subtitle_tracks:
            fields.append("st=" + "|".join(t.render() for t in self.subtitle_tracks))
        return ",".join(fields)

    def signature(self) -> str:
        """
        Renders the distinguishing fields as a file-name token.

        Example: `aom-q20-s4-pfilm-g8-hdr.opus-ab128`. Values equal to their
        single default are omitted, so the token stays short while two different
        plans still never share one.
        """
        v, a = self.video, self.audio
        if v.is_copy:
            video_part = COPY_ENCODER
        else:
            video_part = f"{v.encoder}-q{v.quantizer}"
            if v.speed is not None:
                video_part += f"-s{v.speed}"
            video_part += f"-p{v.profile}"
            if v.grain:
                video_part += f"-g{v.grain}"
            if v.compat:
                video_part += "-compat"
            if v.bit_depth is not None:
                video_part += f"-{v.bit_depth}bit"
            if v.resolution is not None:
                video_part += f"-{v.resolution[0]}x{v.resolution[1]}"
        if self.hdr:
            video_part += "-hdr"

        audio_part = a.encoder
        if a.bitrate is not None:
            audio_part += f"-ab{a.bitrate}"
        if a.normalize:
            audio_part += "-an"
        if a.tracks != DEFAULT_AUDIO_TRACKS:
            audio_part += "-at" + "_".join(t.render(separator="") for t in a.tracks)
        if self.subtitle_tracks:
            audio_part += "-st" + "_".join(t.render(separator="") for t in self.subtitle_tracks)

        return f"{video_part}.{audio_part}"
