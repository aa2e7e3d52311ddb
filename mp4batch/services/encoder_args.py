"""
Per-encoder argument tables.

Each builder returns the argument list for one encoder given a plan's video
settings. Profile-dependent tuning is expressed as lookup tables keyed by the
profile name. Frames reach every encoder as y4m or from the lossless file, so
the source's colour description is passed explicitly from a Colorimetry.
"""
from typing import Callable, Dict, List, Optional, Sequence

from ..config.video import ANIME_PROFILES
from ..domain.plan import VideoSettings
from .colorimetry import Colorimetry

# --- x264 / x265 shared tables ---
BFRAMES = {"film": 5, "grain": 5, "anime": 8, "animedetailed": 8, "animegrain": 8, "fast": 3}
AQ_STRENGTH = {
    "grain": "0.9",
    "film": "0.8",
    "animegrain": "0.8",
    "anime": "0.7",
    "animedetailed": "0.7",
    "fast": "0.7",
}

# --- x264 ---
X264_QCOMP = {
    "film": "0.75",
    "grain": "0.75",
    "fast": "0.75",
    "animegrain": "0.7",
    "anime": "0.65",
    "animedetailed": "0.65",
}
X264_COMPAT = ["--level", "4.1", "--vbv-maxrate", "50000", "--vbv-bufsize", "78125"]

# --- x265 ---
X265_REFS = {"film": 4, "grain": 4, "animegrain": 4, "anime": 6, "animedetailed": 6, "fast": 3}
X265_PSY_RD = {
    "anime": "1.0",
    "fast": "1.0",
    "film": "1.5",
    "animedetailed": "1.5",
    "grain": "2.0",
    "animegrain": "2.0",
}
X265_PSY_RDOQ = {
    "anime": "1.0",
    "fast": "1.0",
    "animedetailed": "1.5",
    "film": "2.0",
    "animegrain": "2.0",
    "grain": "4.0",
}


def _is_anime(video: VideoSettings) -> bool:
    return video.profile in ANIME_PROFILES


def x264_args(
    video: VideoSettings,
    colour: Optional[Colorimetry] = None,
    qpfile: Optional[str] = None,
) -> List[str]:
    anime = _is_anime(video)
    preset = video.speed or ("faster" if video.profile == "fast" else "veryslow")
    args = [
        "--crf", str(video.quantizer),
        "--preset", str(preset),
        "--bframes", str(BFRAMES[video.profile]),
        "--psy-rd", "0.7:0.0" if anime else "1.0:0.0",
        "--deblock", "-2:-1" if anime else "-3:-3",
        "--rc-lookahead", "96",
        "--aq-mode", "3",
        "--aq-strength", AQ_STRENGTH[video.profile],
        "--qcomp", X264_QCOMP[video.profile],
        "--no-mbtree",
        "--ipratio", "1.30",
        "--pbratio", "1.20",
        "--no-fast-pskip",
        "--no-dct-decimate",
    ]
    if video.bit_depth:
        args += ["--output-depth", str(video.bit_depth)]
    if video.compat:
        args += X264_COMPAT
    if colour is not None:
        args += colour.x264_args()
    if qpfile:
        args += ["--qpfile", qpfile]
    return args


def x265_args(video: VideoSettings, hdr: bool = False, colour: Optional[Colorimetry] = None) -> List[str]:
    anime = _is_anime(video)
    crf = video.quantizer
    if crf >= 22:
        sao = ["--sao"]
    elif crf >= 17:
        sao = ["--limit-sao"]
    else:
        sao = ["--no-sao", "--no-strong-intra-smoothing"]
    deblock = -1 if anime else -2
    chroma_offset = -2 if anime else 0
    args = [
        "--crf", str(crf),
        "--preset", str(video.speed or "slow"),
        "--bframes", str(BFRAMES[video.profile]),
        "--ref", str(X265_REFS[video.profile]),
        "--keyint", "-1",
        "--min-keyint", "1",
        "--no-scenecut",
        *sao,
        "--deblock", f"{deblock}:{deblock}",
        "--psy-rd", X265_PSY_RD[video.profile],
        "--psy-rdoq", X265_PSY_RDOQ[video.profile],
        "--qcomp", "0.65",
        "--aq-mode", "3",
        "--aq-strength", AQ_STRENGTH[video.profile],
        "--cbqpoffs", str(chroma_offset),
        "--crqpoffs", str(chroma_offset),
        "--no-open-gop",
        "--no-cutree",
        "--fades",
        "--y4m",
    ]
    if video.bit_depth:
        args += ["--output-depth", str(video.bit_depth)]
    if video.compat:
        profile = "main10" if video.bit_depth == 10 else "main"
        args += ["--profile", profile, "--level-idc", "5.1"]
    if colour is not None:
        args += colour.x265_args(hdr)
    if hdr:
        args.append("--hdr10-opt")
    return args


def aom_args(video: VideoSettings, hdr: bool = False, colour: Optional[Colorimetry] = None) -> List[str]:
    arnr_strength = 1 if video.profile in ("anime", "animedetailed") else 3
    args = [
        "--end-usage=q",
        "--min-q=1",
        "--lag-in-frames=64",
        f"--cpu-used={video.speed}",
        f"--cq-level={video.quantizer}",
        "--disable-kf",
        "--kf-max-dist=9999",
        "--enable-fwd-kf=0",
        "--sharpness=3",
        "--row-mt=0",
        "--arnr-maxframes=15",
        f"--arnr-strength={arnr_strength}",
        "--tune=ssim",
        "--enable-chroma-deltaq=1",
        "--disable-trellis-quant=0",
        "--enable-qm=1",
        "--qm-min=0",
        "--qm-max=8",
        "--quant-b-adapt=1",
        "--aq-mode=0",
        f"--deltaq-mode={5 if hdr else 1}",
        "--tune-content=psy",
        "--sb-size=dynamic",
        "--enable-dnl-denoising=0",
    ]
    if video.bit_depth:
        args.insert(0, f"--bit-depth={video.bit_depth}")
    if colour is not None:
        args += colour.aom_args()
    return args


def svt_args(video: VideoSettings, hdr: bool = False, colour: Optional[Colorimetry] = None) -> List[str]:
    args = [
        "--scm", "0",
        "--preset", str(video.speed),
        "--crf", str(video.quantizer),
        "--film-grain-denoise", "0",
        "--rc", "0",
        "--enable-qm", "1",
        "--qm-min", "0",
        "--qm-max", "8",
        "--tune", "2",
        "--enable-tf", "0",
        "--scd", "0",
        "--keyint", "-1",
    ]
    if video.bit_depth:
        args = ["--input-depth", str(video.bit_depth)] + args
    if colour is not None:
        args += colour.svt_args(hdr)
    return args


def rav1e_args(video: VideoSettings, hdr: bool = False, colour: Optional[Colorimetry] = None) -> List[str]:
    args = [
        "--speed", str(video.speed),
        "--quantizer", str(video.quantizer),
        "--rdo-lookahead-frames", "25",
        "--no-scene-detection",
        "--keyint", "0",
    ]
    if colour is not None:
        args += colour.rav1e_args(hdr)
    return args


# Encoders reached through av1an, which takes their arguments as one string.
AV1AN_ARG_BUILDERS: Dict[str, Callable[..., List[str]]] = {
    "aom": aom_args,
    "svt": svt_args,
    "rav1e": rav1e_args,
    "x265": x265_args,
}


def av1an_video_params(video: VideoSettings, hdr: bool = False, colour: Optional[Colorimetry] = None) -> str:
    builder = AV1AN_ARG_BUILDERS[video.encoder]
    return " ".join(builder(video, hdr, colour))


def qpfile_lines(keyframes: Sequence[int]) -> str:
    """An x264 qpfile forcing an I-frame at every listed frame."""
    return "".join(f"{frame} I -1\n" for frame in keyframes)
