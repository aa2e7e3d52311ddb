"""
Lossless cache keys.

Two plans can share one decode pass, and therefore one lossless intermediate,
when everything that shapes the decoded frames is identical: the script, the
resolution override and the bit depth override. Encoder choice and its tuning
(quantizer, speed, profile, grain, compat), HDR propagation and audio settings
do not matter. Stream-copy plans never decode, so they get a passthrough key
that is never shared.
"""
import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..domain.plan import EncodePlan

FRAMESERVER = "frameserver"
PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class CacheKey:
    input_path: Path
    source: str = FRAMESERVER
    resolution: Optional[Tuple[int, int]] = None
    bit_depth: Optional[int] = None

    @property
    def shareable(self) -> bool:
        return self.source == FRAMESERVER

    def digest(self) -> str:
        """Short stable hash used in the lossless file name."""
        raw = f"{self.input_path}|{self.source}|{self.resolution}|{self.bit_depth}"
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:8]


def key_of(input_path: Path, plan: EncodePlan) -> CacheKey:
    path = Path(os.path.abspath(input_path))
    if plan.video.is_copy:
        return CacheKey(path, source=PASSTHROUGH)
    return CacheKey(path, resolution=plan.video.resolution, bit_depth=plan.video.bit_depth)


def group(input_path: Path, plans: Sequence[EncodePlan]) -> Dict[CacheKey, List[int]]:
    """
    Groups plan indices by cache key.

    Indices inside each group keep their original order, and groups are
    ordered by their first member, so the result is fully deterministic.
    """
    groups: Dict[CacheKey, List[int]] = {}
    for index, plan in enumerate(plans):
        groups.setdefault(key_of(input_path, plan), []).append(index)
    return groups
