"""Stages 5 and 8: fit quality, thickness measurement and the per-subject report."""

from __future__ import annotations

import math
from pathlib import Path
import shutil
from typing import List, Optional, Sequence

import pandas as pd

from Thickness.context import StageContext
from Thickness.errors import ThicknessError
from Thickness.images import binarize_labels, dice, label_mask, read_image, reslice_identity, smooth, write_image
from Thickness.layout import UNIFIED, UNIFIED_GROUP, VARIANT, TemplateTarget
from Thickness.selection import GroupAssignment
from Thickness.tools import MeshImageSample, MeshLabelThickness, MeshMergeArrays, SkeletonThickness


MEASURES = ("MeanThk", "MedianThk", "FitQuality")


def do_pair(seg_a: Path, seg_b: Path, ranges: Sequence[Sequence[int]]) -> List[float]:
    """Dice of ``seg_b`` against ``seg_a`` for each label group, after reslicing b onto a's grid."""
    image_a = read_image(seg_a)
    image_b = reslice_identity(image_a, read_image(seg_b))
    return [dice(binarize_labels(image_a, labels), binarize_labels(image_b, labels)) for labels in ranges]


def _fmt(value: float) -> str:
    return "nan" if math.isnan(value) else f"{value:.6f}"


def _targets(ctx: StageContext) -> List[TemplateTarget]:
    variant = GroupAssignment.load(ctx.layout.assignment_file(VARIANT))
    return [ctx.templates.target(VARIANT, variant.group), ctx.templates.target(UNIFIED, UNIFIED_GROUP)]


def eval_fit(ctx: StageContext) -> None:
    layout = ctx.layout
    group = GroupAssignment.load(layout.assignment_file(VARIANT)).group
    ranges = [region.labels for region in ctx.template.evaluation]
    for target in _targets(ctx):
        fitted = layout.fitted_seg(target)
        if not fitted.exists():
            continue

        def write(tmp: Path, fitted: Path = fitted) -> None:
            overlaps = do_pair(layout.seg_orig, fitted, ranges)
            line = ",".join([ctx.subject_id, ctx.side, str(group), *(_fmt(v) for v in overlaps)])
            tmp.write_text(line + "\n", encoding="utf-8")

        ctx.store.ensure(layout.overlap_csv(target.kind), write)
        ctx.log("evaluation", f"{target.output_tag} fit quality in {layout.overlap_csv(target.kind).name}")


def measure_thickness(ctx: StageContext) -> None:
    for target in _targets(ctx):
        _measure(ctx, target)


def _measure(ctx: StageContext, target: TemplateTarget) -> None:
    layout = ctx.layout
    kind = target.kind
    outputs = [layout.mean_thickness(kind), layout.median_thickness(kind)]
    if all(p.exists() for p in outputs):
        ctx.store.hits.extend(outputs)
        return
    meshes = ctx.template.meshes
    merged = layout.fitted(target, meshes.merged, ".vtk")
    if not merged.exists():
        return

    params = ctx.template.thickness
    thickmap = layout.fitted(target, f"{meshes.merged}_thickmap", ".vtk")
    ctx.tool_step(
        [thickmap],
        lambda o: SkeletonThickness(
            mesh=merged,
            thickmap=o[0],
            skeleton=ctx.scratch(f"{target.fitted_prefix}_{ctx.idside}_GSShoot_{meshes.merged}_skel.vtk"),
            pruning=params.pruning,
            min_edge=params.min_edge,
        ),
    )
    labelled = layout.fitted(target, f"{meshes.merged}_thickmap_withlabel", ".vtk")
    ctx.store.ensure(labelled, lambda tmp: _label_thickmap(ctx, target, thickmap, tmp))
    ctx.tool_step(
        outputs,
        lambda o: MeshLabelThickness(
            mesh=labelled,
            subject_id=ctx.subject_id,
            side=ctx.side,
            mean_output=o[0],
            median_output=o[1],
        ),
    )
    ctx.log("thickness", f"{target.output_tag} thickness summarised")


def _label_thickmap(ctx: StageContext, target: TemplateTarget, thickmap: Path, out: Path) -> None:
    """Sample a smoothed indicator of every merged label onto the thickness map and merge the arrays."""
    seg = read_image(ctx.layout.fitted_seg(target))
    fit_names = ctx.template.fit_names
    sampled: List[Path] = []
    for name in ctx.template.meshes.merged_labels:
        stem = f"{target.fitted_prefix}_{ctx.idside}_GSShoot"
        prob = ctx.scratch(f"{stem}_{name}_smooth.nii.gz")
        write_image(smooth(label_mask(seg, fit_names.index(name)), 1.0), prob)
        mesh = ctx.scratch(f"{stem}_{ctx.template.meshes.merged}_thickmap_{name}.vtk")
        ctx.runner.run(MeshImageSample(mesh=thickmap, image=prob, output=mesh))
        sampled.append(mesh)
    ctx.runner.run(MeshMergeArrays(reference=thickmap, output=out, meshes=tuple(sampled)))


def report_header(ctx: StageContext) -> List[str]:
    regions = ctx.template.report.regions
    header = ["ID", "SIDE", "TempType", "GROUP"]
    for measure in MEASURES:
        header += [f"{region}_{measure}" for region in regions]
    return header + ["All_FitQuality"]


def _thickness_values(path: Path, count: int) -> List[str]:
    lines = [ln for ln in path.read_text(encoding="utf-8").splitlines() if ln.strip()]
    values = lines[0].strip().split(",")[2:] if lines else []
    if len(values) < count:
        raise ThicknessError(f"{path} holds {len(values)} thickness values, expected {count}.")
    return [v.strip() for v in values[:count]]


def _fit_quality(ctx: StageContext, path: Path) -> List[str]:
    fields = path.read_text(encoding="utf-8").strip().split(",")
    names = [region.name for region in ctx.template.evaluation]
    if len(fields) < 3 + len(names):
        raise ThicknessError(f"{path} holds {len(fields) - 3} overlap values, expected {len(names)}.")
    return [fields[3 + names.index(name)].strip() for name in ctx.template.report.fit_quality]


def report_row(ctx: StageContext, target: TemplateTarget, group: int) -> Optional[List[str]]:
    """Report row for one template type, or None when its terminal artifacts are absent."""
    layout = ctx.layout
    mean, median = layout.mean_thickness(target.kind), layout.median_thickness(target.kind)
    overlap = layout.overlap_csv(target.kind)
    if not (mean.exists() and median.exists() and overlap.exists()):
        return None
    count = len(ctx.template.report.regions)
    return [
        ctx.subject_id,
        ctx.side,
        target.report_type,
        str(group),
        *_thickness_values(mean, count),
        *_thickness_values(median, count),
        *_fit_quality(ctx, overlap),
    ]


def clean_up(ctx: StageContext) -> Path:
    layout = ctx.layout
    output_dir = ctx.run.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    variant_group = GroupAssignment.load(layout.assignment_file(VARIANT)).group

    rows = []
    for target in _targets(ctx):
        row = report_row(ctx, target, variant_group if target.kind == VARIANT else UNIFIED_GROUP)
        if row is None:
            ctx.log("report", f"No {target.report_type} results for {ctx.idside}")
            continue
        rows.append(row)

    frame = pd.DataFrame(rows, columns=report_header(ctx), dtype=str)
    csv = output_dir / f"{ctx.idside}_thickness.csv"
    ctx.store.publish_text(csv, frame.to_csv(index=False, lineterminator="\n"))

    for target in _targets(ctx):
        kept = {
            layout.fitted(target, f"{ctx.template.meshes.merged}_thickmap_withlabel", ".vtk"): "fitted_mesh",
            layout.shoot_dir(target.kind) / "shooting_momenta.vtk": "momenta",
        }
        for src, what in kept.items():
            if src.exists():
                dst = output_dir / f"{ctx.idside}_{target.output_tag}_{what}.vtk"
                ctx.store.ensure(dst, lambda tmp, s=src: shutil.copyfile(s, tmp))
    ctx.log("report", f"Wrote {csv} with {len(rows)} row(s)")
    return csv


def post_steps(ctx: StageContext) -> None:
    eval_fit(ctx)
    measure_thickness(ctx)
    clean_up(ctx)
