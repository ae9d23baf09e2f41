from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

from Thickness.errors import ConfigurationError


FASTASHS = "fastashs"
ASHS = "ashs"

# (input type, filename pattern with the side substituted)
SEGMENTATION_SUFFIXES = (
    (FASTASHS, "_MTLSeg_{side}.nii.gz"),
    (ASHS, "_{side}_lfseg_heur.nii.gz"),
)


@dataclass(frozen=True)
class SegmentationInputs:
    kind: str
    prefix: str
    segs: Dict[str, Path]


def probe_segmentations(input_dir: Path, sides: Iterable[str]) -> SegmentationInputs:
    """Find the per-side segmentations in an ASHS output directory.

    fastashs naming is tried first, then the plain ashs naming; the prefix found for
    the first side is used for every requested side.
    """
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise ConfigurationError(f"Input directory {input_dir} does not exist.")
    sides = list(sides)
    for kind, pattern in SEGMENTATION_SUFFIXES:
        prefix = _find_prefix(input_dir, pattern.format(side=sides[0]))
        if prefix is None:
            continue
        print(f"[inputs] Found {kind} input with prefix '{prefix}'")
        segs: Dict[str, Path] = {}
        for side in sides:
            path = input_dir / f"{prefix}{pattern.format(side=side)}"
            if not path.exists():
                raise ConfigurationError(f"Missing {side} segmentation {path}.")
            segs[side] = path
        return SegmentationInputs(kind=kind, prefix=prefix, segs=segs)
    raise ConfigurationError(f"Cannot find ASHS segmentations in input directory {input_dir}")


def _find_prefix(input_dir: Path, suffix: str) -> Optional[str]:
    matches = sorted(p for p in input_dir.glob(f"*{suffix}") if p.is_file())
    if not matches:
        return None
    if len(matches) > 1:
        print(f"[inputs] Several files end with {suffix}; using {matches[0].name}")
    return matches[0].name[: -len(suffix)]
