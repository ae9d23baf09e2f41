"""Ordered transform chains across the subject, atlas and template coordinate spaces.

A chain is written exactly as greedy's ``-r`` option expects it: the last entry is
applied to a point of the reference space first, so appending a transform puts it
closer to the subject side of the mapping and prepending puts it closer to the
template side.  Inverse entries keep an explicit ``,-1`` flag instead of a
numerically inverted copy of the file.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import SimpleITK as sitk


INVERSE_FLAG = ",-1"

# greedy matrices live in RAS physical space, ITK transforms in LPS.
_RAS_TO_LPS = np.diag([-1.0, -1.0, 1.0, 1.0])


@dataclass(frozen=True)
class TransformRef:
    path: Path
    inverse: bool = False

    @classmethod
    def parse(cls, token: str, base_dir: Optional[Path] = None) -> "TransformRef":
        inverse = token.endswith(INVERSE_FLAG)
        raw = token[: -len(INVERSE_FLAG)] if inverse else token
        path = Path(raw)
        if base_dir is not None and not path.is_absolute():
            path = Path(base_dir) / path
        return cls(path=path, inverse=inverse)

    def token(self) -> str:
        return f"{self.path}{INVERSE_FLAG}" if self.inverse else str(self.path)

    @property
    def is_matrix(self) -> bool:
        return self.path.suffix in (".mat", ".txt")


@dataclass(frozen=True)
class TransformChain:
    refs: Tuple[TransformRef, ...] = ()

    @classmethod
    def of(cls, *entries: "TransformRef | Path | str") -> "TransformChain":
        return cls(tuple(_as_ref(e) for e in entries))

    def __len__(self) -> int:
        return len(self.refs)

    def __iter__(self):
        return iter(self.refs)

    def append(self, *entries: "TransformRef | Path | str") -> "TransformChain":
        return TransformChain(self.refs + tuple(_as_ref(e) for e in entries))

    def prepend(self, *entries: "TransformRef | Path | str") -> "TransformChain":
        return TransformChain(tuple(_as_ref(e) for e in entries) + self.refs)

    def concat(self, other: "TransformChain") -> "TransformChain":
        return TransformChain(self.refs + other.refs)

    def greedy_args(self) -> List[str]:
        return [ref.token() for ref in self.refs]

    def serialize(self) -> str:
        return " ".join(self.greedy_args()) + "\n"

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.serialize(), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path, base_dir: Optional[Path] = None) -> "TransformChain":
        """Read a chain file; relative entries are resolved against ``base_dir``."""
        tokens = Path(path).read_text(encoding="utf-8").split()
        return cls(tuple(TransformRef.parse(t, base_dir) for t in tokens))

    def to_sitk(self) -> sitk.CompositeTransform:
        """Build a transform mapping reference-space points the way greedy applies this chain."""
        composite = sitk.CompositeTransform(3)
        for ref in self.refs:
            composite.AddTransform(_load_sitk_transform(ref))
        return composite

    def transform_points(self, points: Iterable[Sequence[float]]) -> np.ndarray:
        composite = self.to_sitk()
        return np.array([composite.TransformPoint(tuple(float(c) for c in p)) for p in points])


def compose_chain(
    prior: TransformChain,
    new: Iterable["TransformRef | Path | str"],
    where: str = "append",
) -> TransformChain:
    """Extend ``prior`` with ``new`` transforms, preserving their given order."""
    entries = list(new)
    if where == "append":
        return prior.append(*entries)
    if where == "prepend":
        return prior.prepend(*entries)
    raise ValueError(f"where must be 'append' or 'prepend', got {where!r}")


def read_matrix(path: Path) -> np.ndarray:
    """Read a greedy/c3d 4x4 affine matrix (RAS, whitespace separated)."""
    values = [float(v) for v in Path(path).read_text(encoding="utf-8").split()]
    if len(values) != 16:
        raise ValueError(f"Expected 16 matrix entries in {path}, got {len(values)}")
    return np.array(values).reshape(4, 4)


def write_matrix(path: Path, matrix: np.ndarray) -> Path:
    matrix = np.asarray(matrix, dtype=float)
    if matrix.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 matrix, got shape {matrix.shape}")
    lines = [" ".join(f"{v:.10g}" for v in row) for row in matrix]
    Path(path).write_text("\n".join(lines) + "\n", encoding="utf-8")
    return Path(path)


def compose_matrices(*matrices: np.ndarray) -> np.ndarray:
    """Matrix of applying the last matrix first, matching chain order."""
    out = np.eye(4)
    for m in matrices:
        out = out @ np.asarray(m, dtype=float)
    return out


def matrix_to_sitk(matrix: np.ndarray) -> sitk.AffineTransform:
    lps = _RAS_TO_LPS @ np.asarray(matrix, dtype=float) @ _RAS_TO_LPS
    transform = sitk.AffineTransform(3)
    transform.SetMatrix(tuple(lps[:3, :3].ravel()))
    transform.SetTranslation(tuple(lps[:3, 3]))
    return transform


def _load_sitk_transform(ref: TransformRef) -> sitk.Transform:
    if ref.is_matrix:
        matrix = read_matrix(ref.path)
        if ref.inverse:
            matrix = np.linalg.inv(matrix)
        return matrix_to_sitk(matrix)
    if ref.inverse:
        raise ValueError(f"Inverse displacement fields are not supported: {ref.path}")
    field = sitk.ReadImage(str(ref.path), sitk.sitkVectorFloat64)
    return sitk.DisplacementFieldTransform(field)


def _as_ref(entry: "TransformRef | Path | str") -> TransformRef:
    if isinstance(entry, TransformRef):
        return entry
    if isinstance(entry, Path):
        return TransformRef(entry)
    return TransformRef.parse(str(entry))
