"""Deterministic artifact names for the template directory and the per-side work directory."""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from pathlib import Path
from typing import Optional, Tuple

from Thickness.errors import ConfigurationError


VARIANT = "variant"
UNIFIED = "unified"
UNIFIED_GROUP = 1


class TemplateLayout:
    """Read-only view of a multi-template template directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    @property
    def atlas_list_path(self) -> Path:
        return self.root / "GSTemplate" / "MST" / "paths" / "IDSide.txt"

    @property
    def groups_path(self) -> Path:
        return self.root / "group_xval_2group_all.txt"

    @cached_property
    def atlases(self) -> Tuple[str, ...]:
        if not self.atlas_list_path.exists():
            raise ConfigurationError(f"Atlas list {self.atlas_list_path} does not exist.")
        names = tuple(self.atlas_list_path.read_text(encoding="utf-8").split())
        if not names:
            raise ConfigurationError(f"Atlas list {self.atlas_list_path} is empty.")
        return names

    @cached_property
    def atlas_groups(self) -> Tuple[int, ...]:
        """Ground-truth group per atlas, aligned with :attr:`atlases`.

        Lines hold either ``<group>`` (positional) or ``<atlas> <group>``.
        """
        if not self.groups_path.exists():
            raise ConfigurationError(f"Group table {self.groups_path} does not exist.")
        lines = [ln.split() for ln in self.groups_path.read_text(encoding="utf-8").splitlines() if ln.strip()]
        if lines and all(len(parts) >= 2 for parts in lines):
            by_name = {parts[0]: int(parts[1]) for parts in lines}
            missing = [a for a in self.atlases if a not in by_name]
            if missing:
                raise ConfigurationError(f"Group table has no entry for atlases {missing}.")
            return tuple(by_name[a] for a in self.atlases)
        groups = tuple(int(parts[0]) for parts in lines)
        if len(groups) != len(self.atlases):
            raise ConfigurationError(
                f"Group table lists {len(groups)} groups but the atlas list has {len(self.atlases)} atlases."
            )
        return groups

    def atlas_label(self, atlas: str, kind: str) -> Path:
        return self.root / "data" / f"{atlas}_{kind}.nii.gz"

    def atlas_label_orig(self, atlas: str, kind: str) -> Path:
        return self.root / "data" / f"{atlas}_{kind}_orig.nii.gz"

    def atlas_seg(self, atlas: str) -> Path:
        return self.root / "data" / f"{atlas}_seg.nii.gz"

    def atlas_seg_orig(self, atlas: str) -> Path:
        return self.root / "data" / f"{atlas}_seg_orig.nii.gz"

    @property
    def unified_dir(self) -> Path:
        return self.root / "GSUTemplate" / "gshoot" / f"template_{UNIFIED_GROUP}"

    @property
    def unified_iter_dir(self) -> Path:
        return self.unified_dir / "template" / "iter_2"

    @property
    def unified_root_seg(self) -> Path:
        return self.unified_iter_dir / f"template_{UNIFIED_GROUP}_gshoot_seg.nii.gz"

    def unified_atlas_warp(self, atlas: str) -> Path:
        return self.unified_dir / atlas / "iter_final" / "shooting_warp.nii.gz"

    def unified_atlas_procrustes(self, atlas: str) -> Path:
        return self.unified_dir / atlas / "iter_final" / "target_to_root_procrustes.mat"

    def target(self, kind: str, group: int) -> "TemplateTarget":
        if kind == VARIANT:
            return _variant_target(self, group)
        if kind == UNIFIED:
            return _unified_target(self)
        raise ValueError(f"Unknown template type: {kind!r}")


@dataclass(frozen=True)
class TemplateTarget:
    """Paths of one template (a variant group or the unified template) used by stages 3-8."""

    kind: str
    group: int
    report_type: str
    root_seg: Path
    refine_dir: Path
    refine_prefix: str
    init_landmarks: Path
    root_landmarks: Path
    refspace_inputs: Tuple[Path, Path]
    mesh_dir: Path
    mesh_prefix: str
    fitted_prefix: str
    output_tag: str
    atlas_chain_dir: Optional[Path] = None

    def refine_label(self, kind: str) -> Path:
        return self.refine_dir / f"{self.refine_prefix}_{kind}.nii.gz"

    def mesh(self, name: str) -> Path:
        return self.mesh_dir / f"{self.mesh_prefix}_{name}.vtk"

    @property
    def group_tag(self) -> str:
        return f"_{self.group}" if self.kind == VARIANT else ""

    def atlas_chain(self, atlas: str) -> Path:
        if self.atlas_chain_dir is None:
            raise ValueError(f"The {self.kind} template has no per-atlas chains.")
        return self.atlas_chain_dir / atlas / "final" / "chain_unwarp_to_final.txt"


def _variant_target(layout: TemplateLayout, group: int) -> TemplateTarget:
    gs = layout.root / "GSTemplate"
    init_work = gs / "InitTemp" / f"template_{group}" / "work"
    gshoot = gs / "gshoot" / f"template_{group}"
    return TemplateTarget(
        kind=VARIANT,
        group=group,
        report_type="MultiTemp",
        root_seg=gs / "MST" / "template" / f"template_{group}" / f"template_{group}_seg.nii.gz",
        refine_dir=init_work,
        refine_prefix=f"template_{group}",
        init_landmarks=init_work / "iter_04" / f"template_{group}_MRGcombined_sampled.vtk",
        root_landmarks=gshoot / "shape_avg" / "iter_1" / "shavg_landmarks.vtk",
        refspace_inputs=(
            init_work / "iter_04" / f"template_{group}_seg.nii.gz",
            gshoot / f"refspace_{group}.nii.gz",
        ),
        mesh_dir=gshoot / "template" / "iter_2",
        mesh_prefix=f"template_{group}_gshoot",
        fitted_prefix=f"template_{group}_to",
        output_tag=f"template_{group}",
        atlas_chain_dir=gs / "MST" / "registration" / f"template_{group}",
    )


def _unified_target(layout: TemplateLayout) -> TemplateTarget:
    group = UNIFIED_GROUP
    landmarks = layout.unified_iter_dir / f"template_{group}_gshoot_MRGcombined_sampled.vtk"
    return TemplateTarget(
        kind=UNIFIED,
        group=group,
        report_type="UnifiedTemp",
        root_seg=layout.unified_root_seg,
        refine_dir=layout.unified_iter_dir,
        refine_prefix=f"template_{group}_gshoot",
        init_landmarks=landmarks,
        root_landmarks=landmarks,
        refspace_inputs=(
            layout.root / "GSUTemplate" / "InitTemp" / f"template_{group}" / "work" / "iter_04" / f"template_{group}_seg.nii.gz",
            layout.unified_dir / f"refspace_{group}.nii.gz",
        ),
        mesh_dir=layout.unified_iter_dir,
        mesh_prefix=f"template_{group}_gshoot",
        fitted_prefix="template_to",
        output_tag="UT_template",
    )


class SubjectLayout:
    """Artifact names inside ``<work>/work_<side>`` for one subject/side."""

    def __init__(self, work_dir: Path, subject_id: str, side: str) -> None:
        self.work_dir = Path(work_dir)
        self.subject_id = subject_id
        self.side = side

    @property
    def idside(self) -> str:
        return f"{self.subject_id}_{self.side}"

    @property
    def data_dir(self) -> Path:
        return self.work_dir / "data"

    @property
    def dump_dir(self) -> Path:
        return self.work_dir / "dump"

    @property
    def tmp_dir(self) -> Path:
        return self.dump_dir / "tmp"

    # stage 1: subject preparation
    @property
    def divided_seg(self) -> Path:
        return self.data_dir / f"{self.idside}_lfseg_heur_dividedCS.nii.gz"

    def fit_label_orig(self, kind: str) -> Path:
        return self.data_dir / f"{self.idside}_{kind}_orig.nii.gz"

    def fit_label(self, kind: str) -> Path:
        return self.data_dir / f"{self.idside}_{kind}.nii.gz"

    @property
    def seg_orig(self) -> Path:
        return self.data_dir / f"{self.idside}_seg_orig.nii.gz"

    @property
    def seg(self) -> Path:
        return self.data_dir / f"{self.idside}_seg.nii.gz"

    @property
    def mlaffine(self) -> Path:
        return self.data_dir / f"{self.idside}_to_MSTInitTemp_mlaffine.txt"

    # stage 1: pairwise registration to every atlas
    def atlas_dir(self, atlas: str) -> Path:
        return self.work_dir / "RegToAtlases" / self.idside / f"{self.idside}_to_{atlas}"

    def similarity_file(self, atlas: str) -> Path:
        return self.atlas_dir(atlas) / f"{self.idside}_to_{atlas}_sim.txt"

    def pairwise(self, atlas: str, what: str) -> Path:
        return self.tmp_dir / f"{self.idside}_to_{atlas}_{what}"

    # stage 2
    @property
    def membership_dir(self) -> Path:
        return self.work_dir / "membership"

    @property
    def adjacency_csv(self) -> Path:
        return self.membership_dir / f"adj_{self.side}.csv"

    @property
    def info_file(self) -> Path:
        return self.membership_dir / f"all_info_{self.side}.txt"

    def assignment_file(self, kind: str) -> Path:
        prefix = "autogroup" if kind == VARIANT else "UTautogroup"
        return self.membership_dir / f"{prefix}_{self.side}.txt"

    # stages 3 and 6
    def registration_dir(self, kind: str) -> Path:
        return self.work_dir / ("RegToInitTemp" if kind == VARIANT else "RegToUT")

    def init_dir(self, kind: str) -> Path:
        return self.registration_dir(kind) / "init"

    def refine_dir(self, kind: str) -> Path:
        return self.registration_dir(kind) / ("inittemp" if kind == VARIANT else "UTemp")

    def init_file(self, kind: str, atlas: str, what: str) -> Path:
        return self.init_dir(kind) / f"{self.idside}_to_{atlas}_{what}"

    def init_reslice(self, target: TemplateTarget, what: str) -> Path:
        return self.init_dir(target.kind) / f"{self.idside}_to_MSTRoot{target.group_tag}_reslice_{what}.nii.gz"

    def refine_warp(self, kind: str) -> Path:
        return self.refine_dir(kind) / f"{self.idside}_totempWarp.nii.gz"

    def refine_reslice(self, target: TemplateTarget, what: str) -> Path:
        return self.refine_dir(target.kind) / f"{self.idside}_totemp{target.group_tag}_reslice_{what}.nii.gz"

    def init_chain(self, kind: str) -> Path:
        return self.init_dir(kind) / f"chain_unwarp_to_final_{self.side}.txt"

    def final_chain(self, kind: str) -> Path:
        return self.refine_dir(kind) / f"chain_unwarp_to_final_{self.side}.txt"

    # stages 4 and 7
    def shoot_dir(self, kind: str) -> Path:
        return self.work_dir / ("GeoShoot" if kind == VARIANT else "GeoShootUT") / self.side

    def fitted(self, target: TemplateTarget, what: str, suffix: str = ".nii.gz") -> Path:
        return self.shoot_dir(target.kind) / f"{target.fitted_prefix}_{self.idside}_GSShoot_{what}{suffix}"

    def fitted_seg(self, target: TemplateTarget) -> Path:
        return self.fitted(target, "seg")

    def mean_thickness(self, kind: str) -> Path:
        return self.shoot_dir(kind) / f"{self.idside}_mean_thickness.vtk"

    def median_thickness(self, kind: str) -> Path:
        return self.shoot_dir(kind) / f"{self.idside}_median_thickness.vtk"

    # stages 5 and 8
    @property
    def evaluation_dir(self) -> Path:
        return self.work_dir / "evaluation"

    def overlap_csv(self, kind: str) -> Path:
        tag = "GSShootASHS" if kind == VARIANT else "UTGSShootASHS"
        return self.evaluation_dir / f"{self.idside}_{tag}_overlap.csv"
