"""
Colour signalling for the encoders, the lossless dump and mkvmerge.

y4m carries no colour description, so every encoder has to be told the
source's primaries, transfer characteristics and matrix coefficients
explicitly. A Colorimetry stores them as ITU-T H.273 code points, read from
ffprobe's stream fields, and renders them in each tool's own vocabulary.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .hdr import HdrMetadata

# --- ffprobe names -> H.273 code points ---
PRIMARIES_CODES = {
    "bt709": 1, "bt470m": 4, "bt470bg": 5, "smpte170m": 6, "smpte240m": 7, "film": 8,
    "bt2020": 9, "smpte428": 10, "smpte431": 11, "smpte432": 12, "jedec-p22": 22, "ebu3213": 22,
}
TRANSFER_CODES = {
    "bt709": 1, "gamma22": 4, "gamma28": 5, "smpte170m": 6, "smpte240m": 7, "linear": 8,
    "log100": 9, "log316": 10, "iec61966-2-4": 11, "bt1361e": 12, "iec61966-2-1": 13,
    "bt2020-10": 14, "bt2020-12": 15, "smpte2084": 16, "smpte428": 17, "arib-std-b67": 18,
}
MATRIX_CODES = {
    "gbr": 0, "bt709": 1, "fcc": 4, "bt470bg": 5, "smpte170m": 6, "smpte240m": 7, "ycgco": 8,
    "bt2020nc": 9, "bt2020c": 10, "smpte2085": 11, "chroma-derived-nc": 12, "chroma-derived-c": 13,
    "ictcp": 14,
}

# PQ and HLG.
HDR_TRANSFER_CODES = frozenset({16, 18})

# Used for every field the source leaves unspecified, as vapoursynth does.
BT709 = 1
SMPTE170M = 6
HD_MIN_HEIGHT = 576

# --- aomenc ---
AOM_PRIMARIES = {
    1: "bt709", 4: "bt470m", 5: "bt470bg", 6: "bt601", 7: "smpte240", 8: "film", 9: "bt2020",
    10: "xyz", 11: "smpte431", 12: "smpte432", 22: "ebu3213",
}
AOM_TRANSFER = {
    1: "bt709", 4: "bt470m", 5: "bt470bg", 6: "bt601", 7: "smpte240", 8: "lin", 9: "log100",
    10: "log100sq10", 11: "iec61966", 12: "bt1361", 13: "srgb", 14: "bt2020-10bit",
    15: "bt2020-12bit", 16: "smpte2084", 17: "smpte428", 18: "hlg",
}
AOM_MATRIX = {
    0: "identity", 1: "bt709", 4: "fcc73", 5: "bt470bg", 6: "bt601", 7: "smpte240", 8: "ycgco",
    9: "bt2020ncl", 10: "bt2020cl", 11: "smpte2085", 12: "chromncl", 13: "chromcl", 14: "ictcp",
}
# aomenc and SvtAv1EncApp share these; ffprobe calls them left and topleft.
AV1_CHROMA_POSITIONS = {"left": "vertical", "topleft": "colocated"}

# --- rav1e ---
RAV1E_PRIMARIES = {
    1: "BT709", 4: "BT470M", 5: "BT470BG", 6: "BT601", 7: "SMPTE240", 8: "GenericFilm", 9: "BT2020",
    10: "XYZ", 11: "SMPTE431", 12: "SMPTE432", 22: "EBU3213",
}
RAV1E_TRANSFER = {
    1: "BT709", 4: "BT470M", 5: "BT470BG", 6: "BT601", 7: "SMPTE240", 8: "Linear", 9: "Log100",
    10: "Log100Sqrt10", 11: "IEC61966", 12: "BT1361", 13: "SRGB", 14: "BT2020_10Bit",
    15: "BT2020_12Bit", 16: "SMPTE2084", 17: "SMPTE428", 18: "HLG",
}
RAV1E_MATRIX = {
    0: "Identity", 1: "BT709", 4: "FCC", 5: "BT470BG", 6: "BT601", 7: "SMPTE240", 8: "YCgCo",
    9: "BT2020NCL", 10: "BT2020CL", 11: "SMPTE2085", 12: "ChromatNCL", 13: "ChromatCL", 14: "ICtCp",
}

# --- x264 / x265 ---
X26X_PRIMARIES = {
    1: "bt709", 4: "bt470m", 5: "bt470bg", 6: "smpte170m", 7: "smpte240m", 8: "film", 9: "bt2020",
    10: "smpte428", 11: "smpte431", 12: "smpte432",
}
X26X_TRANSFER = {
    1: "bt709", 4: "bt470m", 5: "bt470bg", 6: "smpte170m", 7: "smpte240m", 8: "linear",
    9: "log100", 10: "log316", 11: "iec61966-2-4", 12: "bt1361e", 13: "iec61966-2-1",
    14: "bt2020-10", 15: "bt2020-12", 16: "smpte2084", 17: "smpte428", 18: "arib-std-b67",
}
X265_MATRIX = {
    0: "gbr", 1: "bt709", 4: "fcc", 5: "bt470bg", 6: "smpte170m", 7: "smpte240m", 8: "ycgco",
    9: "bt2020nc", 10: "bt2020c", 11: "smpte2085", 12: "chroma-derived-nc", 13: "chroma-derived-c",
    14: "ictcp",
}
X264_MATRIX = {**X265_MATRIX, 0: "GBR", 8: "YCgCo", 14: "ICtCp"}

# Matroska range values: 1 is broadcast (limited), 2 is full.
MKV_RANGE = {False: 1, True: 2}


def _pairs(flags: Sequence[Tuple[str, Optional[str]]]) -> List[str]:
    """`[flag, value, ...]` for every flag whose value is known."""
    args: List[str] = []
    for flag, value in flags:
        if value is not None:
            args += [flag, value]
    return args


@dataclass(frozen=True)
class Colorimetry:
    primaries: Optional[int] = None
    transfer: Optional[int] = None
    matrix: Optional[int] = None
    full_range: bool = False
    # ffprobe's chroma_location name, e.g. "left".
    chroma_location: Optional[str] = None
    mastering: Optional[HdrMetadata] = None

    @classmethod
    def from_stream(cls, stream: dict, mastering: Optional[HdrMetadata] = None) -> "Colorimetry":
        """
        Reads an ffprobe video stream entry.

        Fields the stream leaves unspecified fall back to BT.709 for HD
        (height >= 576) and SMPTE 170M below that.
        """
        height = int(stream.get("height") or 0)
        fallback = BT709 if height >= HD_MIN_HEIGHT else SMPTE170M
        return cls(
            primaries=PRIMARIES_CODES.get(stream.get("color_primaries"), fallback),
            transfer=TRANSFER_CODES.get(stream.get("color_transfer"), fallback),
            matrix=MATRIX_CODES.get(stream.get("color_space"), fallback),
            full_range=stream.get("color_range") == "pc",
            chroma_location=stream.get("chroma_location"),
            mastering=mastering,
        )

    @property
    def is_hdr(self) -> bool:
        return self.transfer in HDR_TRANSFER_CODES

    def _names(self, primaries: Dict[int, str], transfer: Dict[int, str], matrix: Dict[int, str]):
        return primaries.get(self.primaries), transfer.get(self.transfer), matrix.get(self.matrix)

    def aom_args(self) -> List[str]:
        primaries, transfer, matrix = self._names(AOM_PRIMARIES, AOM_TRANSFER, AOM_MATRIX)
        return [
            f"{flag}={value}"
            for flag, value in (
                ("--color-primaries", primaries),
                ("--transfer-characteristics", transfer),
                ("--matrix-coefficients", matrix),
                ("--chroma-sample-position", AV1_CHROMA_POSITIONS.get(self.chroma_location)),
            )
            if value is not None
        ]

    def svt_args(self, hdr: bool = False) -> List[str]:
        def code(value: Optional[int]) -> Optional[str]:
            return None if value is None else str(value)

        args = _pairs(
            (
                ("--color-primaries", code(self.primaries)),
                ("--transfer-characteristics", code(self.transfer)),
                ("--matrix-coefficients", code(self.matrix)),
                ("--color-range", "1" if self.full_range else "0"),
                ("--chroma-sample-position", AV1_CHROMA_POSITIONS.get(self.chroma_location)),
            )
        )
        if hdr and self.mastering is not None:
            args += ["--mastering-display", self.mastering.mastering_display()]
            args += ["--content-light", self.mastering.content_light()]
        return args

    def rav1e_args(self, hdr: bool = False) -> List[str]:
        primaries, transfer, matrix = self._names(RAV1E_PRIMARIES, RAV1E_TRANSFER, RAV1E_MATRIX)
        args = _pairs(
            (
                ("--primaries", primaries),
                ("--transfer", transfer),
                ("--matrix", matrix),
                ("--range", "Full" if self.full_range else "Limited"),
            )
        )
        if hdr and self.mastering is not None:
            args += ["--mastering-display", self.mastering.mastering_display()]
            args += ["--content-light", self.mastering.content_light()]
        return args

    def x265_args(self, hdr: bool = False) -> List[str]:
        primaries, transfer, matrix = self._names(X26X_PRIMARIES, X26X_TRANSFER, X265_MATRIX)
        args = _pairs(
            (
                ("--colorprim", primaries),
                ("--transfer", transfer),
                ("--colormatrix", matrix),
                ("--range", "full" if self.full_range else "limited"),
            )
        )
        if hdr and self.mastering is not None:
            args += ["--master-display", self.mastering.x265_master_display()]
            args += ["--max-cll", self.mastering.content_light()]
        return args

    def x264_args(self) -> List[str]:
        primaries, transfer, matrix = self._names(X26X_PRIMARIES, X26X_TRANSFER, X264_MATRIX)
        range_name = "pc" if self.full_range else "tv"
        return _pairs(
            (
                ("--colorprim", primaries),
                ("--transfer", transfer),
                ("--colormatrix", matrix),
                ("--input-range", range_name),
                ("--range", range_name),
            )
        )

    def x264_params(self) -> str:
        """The same tags as an ffmpeg `-x264-params` value, for the lossless dump."""
        primaries, transfer, matrix = self._names(X26X_PRIMARIES, X26X_TRANSFER, X264_MATRIX)
        range_name = "pc" if self.full_range else "tv"
        params = [
            f"{key}={value}"
            for key, value in (
                ("colorprim", primaries),
                ("transfer", transfer),
                ("colormatrix", matrix),
                ("input-range", range_name),
                ("range", range_name),
            )
            if value is not None
        ]
        return ":".join(params)

    def mkvmerge_options(self, track_id: int = 0) -> List[str]:
        """Container colour tags for `track_id` of the next mkvmerge input file."""

        def tagged(value: Optional[int]) -> Optional[str]:
            return None if value is None else f"{track_id}:{value}"

        return _pairs(
            (
                ("--colour-matrix-coefficients", tagged(self.matrix)),
                ("--colour-range", tagged(MKV_RANGE[self.full_range])),
                ("--colour-transfer-characteristics", tagged(self.transfer)),
                ("--colour-primaries", tagged(self.primaries)),
            )
        )
