"""Typed requests for the external registration, shooting and meshing executables.

Each request knows its tool name, its argument list and its output files; the
:class:`ToolRunner` owns process execution.  Stages only build requests, which
keeps command-line assembly in one place and lets tests swap the runner.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import os
from pathlib import Path
import subprocess
import time
from typing import ClassVar, List, Optional, Sequence, Tuple

from Thickness.chains import TransformChain
from Thickness.config import ToolConfig
from Thickness.errors import ExternalToolError


@dataclass(frozen=True)
class ImagePair:
    fixed: Path
    moving: Path
    weight: float = 1.0


def _pair_args(pairs: Sequence[ImagePair]) -> List[str]:
    args: List[str] = []
    for pair in pairs:
        args += ["-w", f"{pair.weight:g}", "-i", str(pair.fixed), str(pair.moving)]
    return args


@dataclass(frozen=True)
class ToolRequest:
    tool: ClassVar[str] = ""
    single_threaded: ClassVar[bool] = False

    def resolve(self, tools: ToolConfig) -> "ToolRequest":
        """Fill in helper executables that appear on the command line itself."""
        return self

    def arguments(self, threads: int) -> List[str]:
        raise NotImplementedError

    def outputs(self) -> List[Path]:
        raise NotImplementedError


@dataclass(frozen=True)
class GreedyMoments(ToolRequest):
    """Moments-of-inertia alignment of two label images."""

    tool: ClassVar[str] = "greedy"
    fixed: Path
    moving: Path
    output: Path
    order: int = 2

    def arguments(self, threads: int) -> List[str]:
        return ["-d", "3", "-threads", str(threads), "-i", str(self.fixed), str(self.moving),
                "-moments", str(self.order), "-o", str(self.output)]

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class GreedyAffine(ToolRequest):
    """Affine registration of weighted multi-label mask pairs.

    Without ``initial`` the registration starts from the identity.
    """

    tool: ClassVar[str] = "greedy"
    pairs: Tuple[ImagePair, ...]
    output: Path
    initial: Optional[Path] = None
    iterations: str = "100x100"

    def arguments(self, threads: int) -> List[str]:
        init = ["-ia", str(self.initial)] if self.initial is not None else ["-ia-identity"]
        return ["-d", "3", "-threads", str(threads), *_pair_args(self.pairs), "-a", *init,
                "-n", self.iterations, "-o", str(self.output)]

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class GreedyDeformable(ToolRequest):
    tool: ClassVar[str] = "greedy"
    pairs: Tuple[ImagePair, ...]
    output: Path
    initial_affine: Optional[Path] = None
    mask: Optional[Path] = None
    iterations: str = "50x40x20"
    sigmas: Tuple[str, str] = ("2vox", "1vox")
    exponent: float = 0.5
    single_precision: bool = False

    def arguments(self, threads: int) -> List[str]:
        args = ["-d", "3", "-threads", str(threads), *_pair_args(self.pairs)]
        if self.initial_affine is not None:
            args += ["-it", str(self.initial_affine)]
        if self.mask is not None:
            args += ["-gm", str(self.mask)]
        args += ["-n", self.iterations]
        if self.single_precision:
            args.append("-float")
        args += ["-s", self.sigmas[0], self.sigmas[1], "-e", f"{self.exponent:g}", "-o", str(self.output)]
        return args

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class GreedyReslice(ToolRequest):
    """Apply a transform chain to images (``-rm``), label images (``-ri LABEL``) and meshes (``-rs``)."""

    tool: ClassVar[str] = "greedy"
    reference: Path
    transforms: TransformChain
    images: Tuple[Tuple[Path, Path], ...] = ()
    labels: Tuple[Tuple[Path, Path], ...] = ()
    meshes: Tuple[Tuple[Path, Path], ...] = ()
    label_sigma: str = "0.2vox"

    def arguments(self, threads: int) -> List[str]:
        args = ["-d", "3", "-threads", str(threads), "-rf", str(self.reference)]
        for src, dst in self.images:
            args += ["-rm", str(src), str(dst)]
        if self.labels:
            args += ["-ri", "LABEL", self.label_sigma]
            for src, dst in self.labels:
                args += ["-rm", str(src), str(dst)]
        for src, dst in self.meshes:
            args += ["-rs", str(src), str(dst)]
        return args + ["-r", *self.transforms.greedy_args()]

    def outputs(self) -> List[Path]:
        return [dst for _, dst in (*self.images, *self.labels, *self.meshes)]


@dataclass(frozen=True)
class MLAffine(ToolRequest):
    """Multi-label affine alignment between two segmentations."""

    tool: ClassVar[str] = "ml_affine"
    fixed: Path
    moving: Path
    output: Path

    def arguments(self, threads: int) -> List[str]:
        return [str(self.fixed), str(self.moving), str(self.output)]

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class Procrustes(ToolRequest):
    tool: ClassVar[str] = "vtkprocrustes"
    source: Path
    target: Path
    output: Path

    def arguments(self, threads: int) -> List[str]:
        return [str(self.source), str(self.target), str(self.output)]

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class LandmarkShoot(ToolRequest):
    """Geodesic shooting between two landmark sets; the integrator is not parallel."""

    tool: ClassVar[str] = "lmshoot"
    single_threaded: ClassVar[bool] = True
    template: Path
    target: Path
    output: Path
    sigma: float
    weight: float
    time_steps: int
    iterations: int

    def arguments(self, threads: int) -> List[str]:
        return ["-d", "3", "-m", str(self.template), str(self.target),
                "-s", f"{self.sigma:g}", "-l", f"{self.weight:g}", "-n", str(self.time_steps),
                "-i", str(self.iterations), "0", "-o", str(self.output)]

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class LandmarkWarp(ToolRequest):
    """Carry meshes along the flow defined by a momenta field."""

    tool: ClassVar[str] = "lmtowarp"
    momenta: Path
    meshes: Tuple[Tuple[Path, Path], ...]
    sigma: float
    time_steps: int

    def arguments(self, threads: int) -> List[str]:
        args = ["-d", "3", "-n", str(self.time_steps), "-s", f"{self.sigma:g}", "-m", str(self.momenta)]
        for src, dst in self.meshes:
            args += ["-M", str(src), str(dst)]
        return args

    def outputs(self) -> List[Path]:
        return [dst for _, dst in self.meshes]


@dataclass(frozen=True)
class MeshToImage(ToolRequest):
    tool: ClassVar[str] = "mesh2img"
    mesh: Path
    output: Path
    spacing: Tuple[float, float, float] = (0.3, 0.3, 0.3)
    margin: int = 4

    def arguments(self, threads: int) -> List[str]:
        return ["-f", "-vtk", str(self.mesh), "-a", *(f"{s:g}" for s in self.spacing), str(self.margin),
                str(self.output)]

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class AverageImages(ToolRequest):
    tool: ClassVar[str] = "AverageImages"
    output: Path
    inputs: Tuple[Path, ...]

    def arguments(self, threads: int) -> List[str]:
        return ["3", str(self.output), "0", *(str(p) for p in self.inputs)]

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class SkeletonThickness(ToolRequest):
    """Voronoi skeleton of a boundary mesh; writes the thickness map mesh."""

    tool: ClassVar[str] = "cmrep_vskel"
    mesh: Path
    thickmap: Path
    skeleton: Path
    pruning: float
    min_edge: int
    qvoronoi: Optional[str] = None

    def resolve(self, tools: ToolConfig) -> "SkeletonThickness":
        if self.qvoronoi is not None:
            return self
        return replace(self, qvoronoi=tools.executable("qvoronoi"))

    def arguments(self, threads: int) -> List[str]:
        return ["-Q", self.qvoronoi or "qvoronoi", "-T", str(self.thickmap), "-p", f"{self.pruning:g}",
                "-e", str(self.min_edge), str(self.mesh), str(self.skeleton)]

    def outputs(self) -> List[Path]:
        return [self.thickmap]


@dataclass(frozen=True)
class MeshImageSample(ToolRequest):
    tool: ClassVar[str] = "mesh_image_sample"
    mesh: Path
    image: Path
    output: Path
    array: str = "PROB"

    def arguments(self, threads: int) -> List[str]:
        return [str(self.mesh), str(self.image), str(self.output), self.array]

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class MeshMergeArrays(ToolRequest):
    tool: ClassVar[str] = "mesh_merge_arrays"
    reference: Path
    output: Path
    meshes: Tuple[Path, ...]
    array: str = "PROB"

    def arguments(self, threads: int) -> List[str]:
        return ["-r", str(self.reference), str(self.output), self.array, *(str(m) for m in self.meshes)]

    def outputs(self) -> List[Path]:
        return [self.output]


@dataclass(frozen=True)
class MeshLabelThickness(ToolRequest):
    """Assign labels to mesh vertices and summarise thickness per label (mean and median)."""

    tool: ClassVar[str] = "meshlabel_thickness"
    mesh: Path
    subject_id: str
    side: str
    mean_output: Path
    median_output: Path

    def arguments(self, threads: int) -> List[str]:
        return [str(self.mesh), self.subject_id, self.side, str(self.mean_output), str(self.median_output)]

    def outputs(self) -> List[Path]:
        return [self.mean_output, self.median_output]


@dataclass(frozen=True)
class GroupMembership(ToolRequest):
    """External nearest-neighbour classifier over the similarity row."""

    tool: ClassVar[str] = "group_membership"
    adjacency: Path
    groups: Path
    neighbours: int
    variant_output: Path
    unified_output: Path
    prefix: Tuple[str, ...] = ()

    def arguments(self, threads: int) -> List[str]:
        return [*self.prefix, str(self.adjacency), str(self.groups), str(self.neighbours),
                str(self.variant_output), str(self.unified_output)]

    def outputs(self) -> List[Path]:
        return [self.variant_output, self.unified_output]


class ToolRunner:
    """Run requests as blocking subprocesses.

    ``threads`` is the job's core grant; single-threaded tools always get one thread.
    Commands and their output are appended to ``log_path`` when set.
    """

    def __init__(self, tools: ToolConfig, threads: int = 1, log_path: Optional[Path] = None) -> None:
        self.tools = tools
        self.threads = max(1, int(threads))
        self.log_path = log_path

    def command(self, request: ToolRequest) -> List[str]:
        threads = 1 if request.single_threaded else self.threads
        return [self.tools.executable(request.tool), *request.arguments(threads)]

    def run(self, request: ToolRequest) -> None:
        request = request.resolve(self.tools)
        cmd = self.command(request)
        threads = 1 if request.single_threaded else self.threads
        env = dict(os.environ)
        env["ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS"] = str(threads)
        print(f"[{request.tool}] {' '.join(cmd)}")
        start = time.monotonic()
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, env=env)
        self._log(cmd, proc.stdout or "", proc.returncode, time.monotonic() - start)
        if proc.returncode != 0:
            raise ExternalToolError(cmd, proc.returncode, proc.stdout or "")

    def _log(self, cmd: Sequence[str], output: str, returncode: int, seconds: float) -> None:
        if self.log_path is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "a", encoding="utf-8") as handle:
            handle.write(f"$ {' '.join(cmd)}\n")
            if output:
                handle.write(output if output.endswith("\n") else output + "\n")
            handle.write(f"# exit {returncode} after {seconds:.1f}s\n")
