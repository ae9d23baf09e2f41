from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import shutil
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from Thickness.errors import ConfigurationError


TEMPLATE_CONFIG_NAME = "template_config.yaml"
SIDES: Tuple[str, ...] = ("left", "right")

TOOL_NAMES: Tuple[str, ...] = (
    "greedy",
    "ml_affine",
    "vtkprocrustes",
    "lmshoot",
    "lmtowarp",
    "mesh2img",
    "cmrep_vskel",
    "qvoronoi",
    "mesh_image_sample",
    "mesh_merge_arrays",
    "AverageImages",
    "meshlabel_thickness",
    "group_membership",
)


@dataclass(frozen=True)
class FitLabel:
    """One region mask used for registration, built by merging raw segmentation labels."""

    name: str
    merge: Tuple[int, ...]

    @classmethod
    def from_dict(cls, data: Dict) -> "FitLabel":
        if "name" not in data or "merge" not in data:
            raise ConfigurationError(f"Fit label entries need 'name' and 'merge': {data!r}")
        return cls(name=str(data["name"]), merge=_int_tuple(data["merge"]))


@dataclass(frozen=True)
class CsSplitConfig:
    """Labels used to split the collateral sulcus into anterior and posterior parts."""

    anterior: Tuple[int, ...] = (10, 11, 12)
    posterior: int = 13
    cs: int = 14

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "CsSplitConfig":
        defaults = cls()
        data = data or {}
        return cls(
            anterior=_int_tuple(data.get("anterior", defaults.anterior)),
            posterior=int(data.get("posterior", defaults.posterior)),
            cs=int(data.get("cs", defaults.cs)),
        )


@dataclass(frozen=True)
class EvalRegion:
    name: str
    labels: Tuple[int, ...]

    @classmethod
    def from_dict(cls, data: Dict) -> "EvalRegion":
        if "name" not in data or "labels" not in data:
            raise ConfigurationError(f"Evaluation entries need 'name' and 'labels': {data!r}")
        return cls(name=str(data["name"]), labels=_int_tuple(data["labels"]))


@dataclass(frozen=True)
class ShootingConfig:
    """Hyperparameters of the landmark geodesic shooting (lmshoot/lmtowarp)."""

    sigma: float = 2.0
    weight: float = 5000.0
    time_steps: int = 40
    iterations: int = 80

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ShootingConfig":
        defaults = cls()
        merged = {**defaults.__dict__, **(data or {})}
        return cls(
            sigma=float(merged["sigma"]),
            weight=float(merged["weight"]),
            time_steps=int(merged["time_steps"]),
            iterations=int(merged["iterations"]),
        )


@dataclass(frozen=True)
class ThicknessConfig:
    """Pruning parameters passed to cmrep_vskel (-p / -e)."""

    pruning: float = 1.2
    min_edge: int = 2

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ThicknessConfig":
        defaults = cls()
        merged = {**defaults.__dict__, **(data or {})}
        return cls(pruning=float(merged["pruning"]), min_edge=int(merged["min_edge"]))


@dataclass(frozen=True)
class MembershipConfig:
    """Group classification settings.

    ``external`` swaps the built-in nearest-neighbour vote for the ``group_membership``
    executable; ``arguments`` go before its usual ones (e.g. a runtime directory).
    """

    neighbours: int = 6
    external: bool = False
    arguments: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "MembershipConfig":
        data = data or {}
        neighbours = int(data.get("neighbours", 6))
        if neighbours < 1:
            raise ConfigurationError("membership.neighbours must be a positive integer.")
        arguments = data.get("arguments") or ()
        if isinstance(arguments, str):
            arguments = arguments.split()
        return cls(
            neighbours=neighbours,
            external=bool(data.get("external", False)),
            arguments=tuple(str(a) for a in arguments),
        )


@dataclass(frozen=True)
class MeshConfig:
    """Template meshes carried to the subject by geodesic shooting.

    ``fusion`` lists the meshes voted into the fitted segmentation; its first entry is
    the background mesh and is excluded from the vote.
    """

    warp: Tuple[str, ...]
    fusion: Tuple[str, ...]
    merged: str = "MRG"
    merged_labels: Tuple[str, ...] = ()
    nobkg: str = "NOBKG"

    @classmethod
    def from_dict(cls, data: Dict, fit_names: Sequence[str]) -> "MeshConfig":
        if not data or "warp" not in data or "fusion" not in data:
            raise ConfigurationError("meshes must define 'warp' and 'fusion' lists.")
        cfg = cls(
            warp=_str_tuple(data["warp"]),
            fusion=_str_tuple(data["fusion"]),
            merged=str(data.get("merged", "MRG")),
            merged_labels=_str_tuple(data.get("merged_labels", [])),
            nobkg=str(data.get("nobkg", "NOBKG")),
        )
        if len(cfg.fusion) < 2:
            raise ConfigurationError("meshes.fusion needs a background entry plus at least one region.")
        missing = [m for m in (*cfg.fusion[1:], cfg.nobkg) if m not in cfg.warp]
        if missing:
            raise ConfigurationError(f"meshes {missing} are used for fusion but not listed in meshes.warp.")
        unknown = [name for name in cfg.merged_labels if name not in fit_names]
        if unknown:
            raise ConfigurationError(f"meshes.merged_labels {unknown} are not fit labels.")
        return cfg


@dataclass(frozen=True)
class ReportConfig:
    regions: Tuple[str, ...]
    fit_quality: Tuple[str, ...]

    @classmethod
    def from_dict(cls, data: Dict, eval_names: Sequence[str]) -> "ReportConfig":
        if not data or "regions" not in data:
            raise ConfigurationError("report.regions must list the reported regions.")
        regions = _str_tuple(data["regions"])
        fit_quality = _str_tuple(data.get("fit_quality", [*regions, "All"]))
        if len(fit_quality) != len(regions) + 1:
            raise ConfigurationError(
                "report.fit_quality needs one evaluation region per reported region plus one aggregate."
            )
        unknown = [name for name in fit_quality if name not in eval_names]
        if unknown:
            raise ConfigurationError(f"report.fit_quality {unknown} are not evaluation regions.")
        return cls(regions=regions, fit_quality=fit_quality)


@dataclass(frozen=True)
class TemplateConfig:
    """Per-template settings, loaded once from ``template_config.yaml``."""

    fit_labels: Tuple[FitLabel, ...]
    kinds: Tuple[str, ...]
    cs_split: CsSplitConfig
    similarity_map: Tuple[Tuple[int, int], ...]
    meshes: MeshConfig
    evaluation: Tuple[EvalRegion, ...]
    report: ReportConfig
    shooting: ShootingConfig = field(default_factory=ShootingConfig)
    thickness: ThicknessConfig = field(default_factory=ThicknessConfig)
    membership: MembershipConfig = field(default_factory=MembershipConfig)

    @property
    def fit_names(self) -> Tuple[str, ...]:
        return tuple(label.name for label in self.fit_labels)

    @classmethod
    def from_dict(cls, data: Dict) -> "TemplateConfig":
        regions = data.get("regions") or {}
        raw_fit = regions.get("fit_labels")
        if not raw_fit:
            raise ConfigurationError("regions.fit_labels must list at least one label.")
        fit_labels = tuple(FitLabel.from_dict(item) for item in raw_fit)
        fit_names = [label.name for label in fit_labels]
        kinds = _str_tuple(regions.get("kinds", fit_names))
        missing_kinds = [n for n in fit_names if n not in kinds]
        if missing_kinds:
            raise ConfigurationError(f"regions.kinds must include every fit label; missing {missing_kinds}.")
        extra_kinds = [k for k in kinds if k not in fit_names]
        if extra_kinds:
            print(f"[config] Kinds {extra_kinds} have no fit label; they must exist in the subject data dir.")
        raw_eval = data.get("evaluation")
        if not raw_eval:
            raise ConfigurationError("evaluation must list at least one region grouping.")
        evaluation = tuple(EvalRegion.from_dict(item) for item in raw_eval)
        similarity_map = tuple(
            (int(k), int(v)) for k, v in sorted((regions.get("similarity_map") or {}).items(), key=lambda kv: int(kv[0]))
        )
        for key in data:
            if key not in ("regions", "meshes", "evaluation", "report", "shooting", "thickness", "membership"):
                print(f"[config] Ignoring unknown template setting '{key}'.")
        return cls(
            fit_labels=fit_labels,
            kinds=kinds,
            cs_split=CsSplitConfig.from_dict(regions.get("cs_split")),
            similarity_map=similarity_map,
            meshes=MeshConfig.from_dict(data.get("meshes") or {}, fit_names),
            evaluation=evaluation,
            report=ReportConfig.from_dict(data.get("report") or {}, [e.name for e in evaluation]),
            shooting=ShootingConfig.from_dict(data.get("shooting")),
            thickness=ThicknessConfig.from_dict(data.get("thickness")),
            membership=MembershipConfig.from_dict(data.get("membership")),
        )


def load_template_config(template_dir: Path) -> TemplateConfig:
    """Load ``template_config.yaml`` from the template directory."""
    path = Path(template_dir) / TEMPLATE_CONFIG_NAME
    if not path.exists():
        raise ConfigurationError(
            f"The configuration file of the template can not be found ({path}). "
            "Please check the completeness of the template."
        )
    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping.")
    return TemplateConfig.from_dict(data)


@dataclass(frozen=True)
class ToolConfig:
    """Where to find the external executables.

    Lookup order per tool: explicit path in ``executables``, then ``bin_dir``, then ``PATH``.
    """

    bin_dir: Optional[Path] = None
    executables: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ToolConfig":
        data = data or {}
        bin_dir = data.get("bin_dir") or os.environ.get("THICKNESS_BIN_DIR")
        executables = {}
        for name, value in (data.get("executables") or {}).items():
            if name not in TOOL_NAMES:
                print(f"[config] Ignoring unknown tool '{name}'.")
                continue
            executables[name] = str(value)
        return cls(bin_dir=Path(bin_dir) if bin_dir else None, executables=executables)

    def executable(self, name: str) -> str:
        if name in self.executables:
            return self.executables[name]
        if self.bin_dir is not None and (self.bin_dir / name).exists():
            return str(self.bin_dir / name)
        exe = shutil.which(name)
        if not exe:
            raise ConfigurationError(
                f"{name} not found on PATH. Install it or set tools.bin_dir / tools.executables.{name} in the config."
            )
        return exe


def load_tool_config(config_path: Optional[Path]) -> ToolConfig:
    """Load the ``tools`` section of a pipeline YAML, or defaults when no file is given."""
    if config_path is None:
        return ToolConfig.from_dict(None)
    with open(config_path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return ToolConfig.from_dict(data.get("tools"))


@dataclass(frozen=True)
class RunConfig:
    """Everything about one invocation; built once by the CLI and never mutated."""

    subject_id: str
    input_segs: Mapping[str, Path]
    template_dir: Path
    output_dir: Path
    work_dir: Path
    threads: int = 1
    stage_start: int = 1
    stage_end: int = 5
    tidy: bool = False
    debug: bool = False

    @property
    def sides(self) -> List[str]:
        return [side for side in SIDES if side in self.input_segs]

    def work_dir_for(self, side: str) -> Path:
        return self.work_dir / f"work_{side}"


def default_threads() -> int:
    """Cores granted to the job: LSF's allocation when present, else all local cores."""
    granted = os.environ.get("LSB_DJOB_NUMPROC")
    if granted:
        try:
            value = int(granted)
            if value > 0:
                return value
        except ValueError:
            print(f"[config] Ignoring non-numeric LSB_DJOB_NUMPROC={granted!r}.")
    return max(1, os.cpu_count() or 1)


def _int_tuple(value: Any) -> Tuple[int, ...]:
    if isinstance(value, (int, float)):
        return (int(value),)
    if isinstance(value, str):
        return tuple(int(v) for v in value.replace(",", " ").split())
    return tuple(int(v) for v in value)


def _str_tuple(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return tuple(v for v in value.replace(",", " ").split())
    return tuple(str(v) for v in value)
