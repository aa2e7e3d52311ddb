"""
Parser for the `-f` encode-spec mini-language.

Grammar:

    spec    := plan (";" plan)*
    plan    := field ("," field)*
    field   := key ["=" value]

Whitespace around every token is trimmed. A field without `=value` is only
allowed for boolean keys and means "enabled". Every recognized key, its aliases,
the encoders it applies to and its value converter are listed in FIELD_TABLE;
anything outside that table, any out-of-range value, and any key that does not
apply to the chosen encoder raises ParseError, carrying the offending token and
its character offset in the full spec string.
"""
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from loguru import logger

from ..config.audio import (
    AUDIO_ENCODERS,
    DEFAULT_AUDIO_BITRATES,
    DEFAULT_AUDIO_ENCODER,
)
from ..config.video import (
    AV1_ENCODERS,
    BIT_DEPTHS,
    COMPAT_ENCODERS,
    DEFAULT_EXTENSION,
    DEFAULT_PROFILE,
    DEFAULT_QUANTIZERS,
    DEFAULT_SPEEDS,
    DEFAULT_VIDEO_ENCODER,
    ENCODING_ENCODERS,
    GRAIN_ENCODERS,
    GRAIN_RANGE,
    MIN_RESOLUTION,
    OUTPUT_EXTENSIONS,
    PRESET_ENCODERS,
    PROFILES,
    QUANTIZER_RANGES,
    SPEED_RANGE,
    VIDEO_ENCODERS,
    X264_PRESETS,
)
from ..domain.exceptions import ParseError
from ..domain.plan import (
    DEFAULT_AUDIO_TRACKS,
    AudioSettings,
    EncodePlan,
    Track,
    VideoSettings,
)

_INT_RE = re.compile(r"-?\d+")
_RES_RE = re.compile(r"(\d+)x(\d+)")
# A stream index, or the extension of a sibling file (`ac3`, `srt`), then optional flags.
_TRACK_RE = re.compile(r"(?:(\d+)|([a-z][a-z0-9]*))(?:-([a-z]+))?")
_TRACK_FLAGS = frozenset("def")

ALL_VIDEO = frozenset(VIDEO_ENCODERS)
ALL_AUDIO = frozenset(AUDIO_ENCODERS)


# --- Value converters ---
# Each takes the raw value and the resolved video encoder and returns the typed
# value, raising ValueError with a human-readable reason.


def _to_int(value: str) -> int:
    if not _INT_RE.fullmatch(value):
        raise ValueError("expected an integer")
    return int(value)


def _in_range(number: int, bounds: Tuple[int, int], name: str) -> int:
    low, high = bounds
    if not low <= number <= high:
        raise ValueError(f"'{name}' must be between {low} and {high}")
    return number


def _choice(value: str, choices, name: str) -> str:
    if value not in choices:
        raise ValueError(f"'{name}' must be one of {', '.join(choices)}")
    return value


def _convert_encoder(value: str, encoder: str) -> str:
    return _choice(value, VIDEO_ENCODERS, "enc")


def _convert_quantizer(value: str, encoder: str) -> int:
    return _in_range(_to_int(value), QUANTIZER_RANGES[encoder], "q")


def _convert_speed(value: str, encoder: str):
    if encoder in PRESET_ENCODERS:
        return _choice(value, X264_PRESETS, "s")
    return _in_range(_to_int(value), SPEED_RANGE, "s")


def _convert_profile(value: str, encoder: str) -> str:
    return _choice(value, PROFILES, "p")


def _convert_grain(value: str, encoder: str) -> int:
    return _in_range(_to_int(value), GRAIN_RANGE, "g")


def _convert_bool(value: Optional[str], encoder: str) -> bool:
    if value is None or value == "1":
        return True
    if value == "0":
        return False
    raise ValueError("expected 0 or 1")


def _convert_extension(value: str, encoder: str) -> str:
    return _choice(value, OUTPUT_EXTENSIONS, "ext")


def _convert_bit_depth(value: str, encoder: str) -> int:
    depth = _to_int(value)
    if depth not in BIT_DEPTHS:
        raise ValueError(f"'bd' must be one of {', '.join(map(str, BIT_DEPTHS))}")
    return depth


def _convert_resolution(value: str, encoder: str) -> Tuple[int, int]:
    match = _RES_RE.fullmatch(value)
    if not match:
        raise ValueError("expected WIDTHxHEIGHT")
    width, height = int(match.group(1)), int(match.group(2))
    if width % 2 or height % 2:
        raise ValueError(f"resolution must be mod 2, got {width}x{height}")
    if width < MIN_RESOLUTION or height < MIN_RESOLUTION:
        raise ValueError(
            f"resolution must be at least {MIN_RESOLUTION}x{MIN_RESOLUTION}, got {width}x{height}"
        )
    return width, height


def _convert_audio_encoder(value: str, encoder: str) -> str:
    return _choice(value, AUDIO_ENCODERS, "aenc")


def _convert_bitrate(value: str, encoder: str) -> int:
    bitrate = _to_int(value)
    if bitrate <= 0:
        raise ValueError("'ab' must be greater than 0")
    return bitrate


def _convert_tracks(value: str, encoder: str) -> Tuple[Track, ...]:
    tracks = []
    for item in value.split("|"):
        match = _TRACK_RE.fullmatch(item.strip())
        if not match:
            raise ValueError("expected track indices or sibling extensions like 0|1-df|ac3")
        flags = match.group(3) or ""
        unknown = set(flags) - _TRACK_FLAGS
        if unknown:
            raise ValueError(f"unknown track flag(s) {''.join(sorted(unknown))}")
        tracks.append(
            Track(
                index=int(match.group(1)) if match.group(1) else 0,
                enabled="d" in flags or "e" in flags,
                forced="f" in flags,
                external=match.group(2),
            )
        )
    return tuple(tracks)


@dataclass(frozen=True)
class FieldRule:
    key: str
    convert: Callable[[Optional[str], str], Any]
    aliases: Tuple[str, ...] = ()
    # Video encoders the key is valid for.
    video: FrozenSet[str] = ALL_VIDEO
    # Audio encoders the key is valid for.
    audio: FrozenSet[str] = ALL_AUDIO
    flag: bool = False


FIELD_TABLE: Tuple[FieldRule, ...] = (
    FieldRule("enc", _convert_encoder),
    FieldRule("q", _convert_quantizer, aliases=("qp", "crf"), video=ENCODING_ENCODERS),
    FieldRule("s", _convert_speed, aliases=("speed",), video=ENCODING_ENCODERS),
    FieldRule("p", _convert_profile, aliases=("profile",), video=ENCODING_ENCODERS),
    FieldRule("g", _convert_grain, aliases=("grain",), video=GRAIN_ENCODERS),
    FieldRule("compat", _convert_bool, video=COMPAT_ENCODERS, flag=True),
    FieldRule("hdr", _convert_bool, flag=True),
    FieldRule("ext", _convert_extension),
    FieldRule("bd", _convert_bit_depth, video=ENCODING_ENCODERS),
    FieldRule("res", _convert_resolution, video=ENCODING_ENCODERS),
    FieldRule("aenc", _convert_audio_encoder),
    FieldRule("ab", _convert_bitrate, audio=frozenset(DEFAULT_AUDIO_BITRATES)),
    FieldRule("an", _convert_bool, audio=ALL_AUDIO - {"copy"}, flag=True),
    FieldRule("at", _convert_tracks),
    FieldRule("st", _convert_tracks),
)

RULES: Dict[str, FieldRule] = {rule.key: rule for rule in FIELD_TABLE}
KEY_ALIASES: Dict[str, str] = {
    name: rule.key for rule in FIELD_TABLE for name in (rule.key, *rule.aliases)
}


@dataclass(frozen=True)
class _RawField:
    key: str  # canonical key
    name: str  # as written
    value: Optional[str]
    token: str
    position: int


def _split_with_offsets(text: str, separator: str, base: int) -> List[Tuple[str, int]]:
    """Splits `text` on `separator`, returning (piece, absolute offset) pairs."""
    pieces = []
    offset = 0
    for piece in text.split(separator):
        pieces.append((piece, base + offset))
        offset += len(piece) + len(separator)
    return pieces


def _stripped(piece: str, offset: int) -> Tuple[str, int]:
    leading = len(piece) - len(piece.lstrip())
    return piece.strip(), offset + leading


def _tokenize_plan(segment: str, segment_index: int, offset: int) -> List[_RawField]:
    fields: List[_RawField] = []
    seen: Dict[str, _RawField] = {}
    for piece, piece_offset in _split_with_offsets(segment, ",", offset):
        token, position = _stripped(piece, piece_offset)
        if not token:
            raise ParseError("empty field", segment=segment_index, position=position)

        name, has_value, value = token.partition("=")
        name = name.strip()
        value = value.strip() if has_value else None
        if has_value and not value:
            raise ParseError("missing value", field=name, token=token, segment=segment_index, position=position)

        key = KEY_ALIASES.get(name)
        if key is None:
            raise ParseError("unrecognized key", field=name, token=token, segment=segment_index, position=position)
        if key in seen:
            raise ParseError(
                f"'{key}' given more than once", field=key, token=token, segment=segment_index, position=position
            )
        if value is None and not RULES[key].flag:
            raise ParseError("missing value", field=key, token=token, segment=segment_index, position=position)

        raw = _RawField(key=key, name=name, value=value, token=token, position=position)
        seen[key] = raw
        fields.append(raw)
    return fields


def _convert(raw: _RawField, encoder: str, segment_index: int) -> Any:
    try:
        return RULES[raw.key].convert(raw.value, encoder)
    except ValueError as e:
        raise ParseError(str(e), field=raw.key, token=raw.token, segment=segment_index, position=raw.position) from e


def _parse_plan(segment: str, segment_index: int, offset: int) -> EncodePlan:
    fields = _tokenize_plan(segment, segment_index, offset)
    by_key = {raw.key: raw for raw in fields}

    # The encoders decide which other keys are meaningful, so resolve them first.
    encoder = DEFAULT_VIDEO_ENCODER
    if "enc" in by_key:
        encoder = _convert(by_key["enc"], encoder, segment_index)
    audio_encoder = DEFAULT_AUDIO_ENCODER
    if "aenc" in by_key:
        audio_encoder = _convert(by_key["aenc"], encoder, segment_index)

    values: Dict[str, Any] = {}
    for raw in fields:
        rule = RULES[raw.key]
        if encoder not in rule.video:
            raise ParseError(
                f"'{raw.key}' does not apply to enc={encoder}",
                field=raw.key,
                token=raw.token,
                segment=segment_index,
                position=raw.position,
            )
        if audio_encoder not in rule.audio:
            raise ParseError(
                f"'{raw.key}' does not apply to aenc={audio_encoder}",
                field=raw.key,
                token=raw.token,
                segment=segment_index,
                position=raw.position,
            )
        values[raw.key] = _convert(raw, encoder, segment_index)

    is_copy = encoder not in ENCODING_ENCODERS
    video = VideoSettings(
        encoder=encoder,
        quantizer=None if is_copy else values.get("q", DEFAULT_QUANTIZERS[encoder]),
        speed=values.get("s", DEFAULT_SPEEDS.get(encoder)) if encoder in AV1_ENCODERS else values.get("s"),
        profile=None if is_copy else values.get("p", DEFAULT_PROFILE),
        grain=values.get("g", 0),
        compat=values.get("compat", False),
        bit_depth=values.get("bd"),
        resolution=values.get("res"),
    )
    audio = AudioSettings(
        encoder=audio_encoder,
        bitrate=values.get("ab", DEFAULT_AUDIO_BITRATES.get(audio_encoder)),
        tracks=values.get("at", DEFAULT_AUDIO_TRACKS),
        normalize=values.get("an", False),
    )
    return EncodePlan(
        video=video,
        audio=audio,
        subtitle_tracks=values.get("st", ()),
        hdr=values.get("hdr", False),
        extension=values.get("ext", DEFAULT_EXTENSION),
    )


def parse(spec: str) -> List[EncodePlan]:
    """
    Parses an encode spec into plans, in the order they appear.

    Args:
        spec: The raw `-f` string, e.g. "enc=aom,q=20,s=4;enc=x264,q=16".

    Returns:
        One EncodePlan per `;`-separated segment.

    Raises:
        ParseError: On an empty spec or segment, an unknown or repeated key, a
            key that does not apply to the chosen encoder, or a malformed or
            out-of-range value. Also when two segments resolve to the same
            plan, since they would write the same files. Nothing is returned
            for a partially valid spec.
    """
    if not spec or not spec.strip():
        raise ParseError("empty encode spec")

    plans: List[EncodePlan] = []
    for segment_index, (segment, offset) in enumerate(_split_with_offsets(spec, ";", 0)):
        if not segment.strip():
            raise ParseError("empty plan", segment=segment_index, position=offset)
        plan = _parse_plan(segment, segment_index, offset)
        if plan in plans:
            token, position = _stripped(segment, offset)
            raise ParseError(
                f"same plan as plan {plans.index(plan) + 1}",
                token=token,
                segment=segment_index,
                position=position,
            )
        plans.append(plan)

    logger.debug(f"Parsed {len(plans)} plan(s) from '{spec}'")
    return plans


def parse_or_default(spec: Optional[str]) -> List[EncodePlan]:
    """Like `parse`, but an absent spec yields the single default plan."""
    if spec is None:
        return [EncodePlan()]
    return parse(spec)
