"""Stages 1 and 2: subject preparation, similarity to every atlas and group membership."""

from __future__ import annotations

from dataclasses import dataclass
import math
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from Thickness.chains import TransformChain, compose_matrices, read_matrix, write_matrix
from Thickness.context import StageContext
from Thickness.errors import ClassificationError, ExternalToolError, IncompleteArtifactError, MissingPrerequisiteError
from Thickness.images import (
    binarize_labels,
    dilated_union_mask,
    divide_cs,
    read_image,
    remap_labels,
    total_label_overlap,
    vote,
    write_image,
)
from Thickness.layout import UNIFIED, UNIFIED_GROUP, VARIANT, TemplateTarget
from Thickness.tools import (
    GreedyAffine,
    GreedyDeformable,
    GreedyMoments,
    GreedyReslice,
    GroupMembership,
    ImagePair,
    MLAffine,
)


@dataclass(frozen=True)
class SimilarityRow:
    """One overlap score per atlas, in atlas-list order; NaN marks a missing comparison."""

    atlases: Tuple[str, ...]
    values: Tuple[float, ...]

    def __post_init__(self) -> None:
        if len(self.atlases) != len(self.values):
            raise ValueError(
                f"Similarity row has {len(self.values)} values for {len(self.atlases)} atlases."
            )

    def __len__(self) -> int:
        return len(self.values)

    @property
    def missing(self) -> List[str]:
        return [a for a, v in zip(self.atlases, self.values) if math.isnan(v)]

    def to_csv_line(self) -> str:
        return ",".join("nan" if math.isnan(v) else f"{v:.10g}" for v in self.values)

    @classmethod
    def from_csv_line(cls, line: str, atlases: Sequence[str]) -> "SimilarityRow":
        return cls(tuple(atlases), tuple(float(v) for v in line.strip().split(",")))


@dataclass(frozen=True)
class GroupAssignment:
    """Selected group and the 0-based index of the nearest atlas in the atlas list.

    On disk the index is 1-based: ``"<group> <index>"``.
    """

    group: int
    nearest_atlas_index: int

    def serialize(self) -> str:
        return f"{self.group} {self.nearest_atlas_index + 1}\n"

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.serialize(), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path) -> "GroupAssignment":
        path = Path(path)
        if not path.exists():
            raise MissingPrerequisiteError("group membership", [path])
        parts = path.read_text(encoding="utf-8").split()
        if len(parts) < 2:
            raise ClassificationError(f"Malformed group assignment in {path}: {parts!r}")
        return cls(group=int(float(parts[0])), nearest_atlas_index=int(float(parts[1])) - 1)


# ---------------------------------------------------------------------------
# stage 1: subject preparation


def prepare_subject(ctx: StageContext) -> None:
    """Divide the CS label, build the fit-label masks and bring them into template root space."""
    layout = ctx.layout
    cfg = ctx.template
    raw = Path(ctx.run.input_segs[ctx.side])
    ctx.store.require("subject segmentation", raw)

    split = cfg.cs_split
    ctx.store.ensure(
        layout.divided_seg,
        lambda tmp: write_image(divide_cs(read_image(raw), split.anterior, split.posterior, split.cs), tmp),
    )

    divided = None
    for label in cfg.fit_labels:
        if not layout.fit_label_orig(label.name).exists():
            divided = divided if divided is not None else read_image(layout.divided_seg)
            mask = binarize_labels(divided, label.merge)
            ctx.store.ensure(layout.fit_label_orig(label.name), lambda tmp, m=mask: write_image(m, tmp))

    origs = [layout.fit_label_orig(name) for name in cfg.fit_names]
    ctx.store.ensure(layout.seg_orig, lambda tmp: write_image(vote([read_image(p) for p in origs]), tmp))
    ctx.store.ensure(layout.mlaffine, lambda tmp: _align_to_root(ctx, tmp))

    root = ctx.templates.unified_root_seg
    ctx.tool_step(
        [layout.fit_label(name) for name in cfg.fit_names],
        lambda tmps: GreedyReslice(
            reference=root,
            transforms=TransformChain.of(layout.mlaffine),
            images=tuple(zip(origs, tmps)),
        ),
    )
    fitted = [layout.fit_label(name) for name in cfg.fit_names]
    ctx.store.ensure(layout.seg, lambda tmp: write_image(vote([read_image(p) for p in fitted]), tmp))


def _align_to_root(ctx: StageContext, out: Path) -> None:
    """ml_affine of the subject segmentation onto the unified root segmentation.

    Right hemispheres are first mirrored onto the left-sided template by a moments
    match; the stored matrix composes both so it maps root space to the raw subject.
    """
    root = ctx.templates.unified_root_seg
    seg = ctx.layout.seg_orig
    ctx.store.require("template root segmentation", root)
    if ctx.side != "right":
        ctx.runner.run(MLAffine(fixed=root, moving=seg, output=out))
        return
    moments = ctx.scratch(f"{ctx.idside}_seg_moments.mat")
    flipped = ctx.scratch(f"{ctx.idside}_seg_orig_flipLR.nii.gz")
    aligned = ctx.scratch(f"{ctx.idside}_to_MSTInitTemp_mlaffine_flipped.mat")
    ctx.runner.run(GreedyMoments(fixed=root, moving=seg, output=moments))
    ctx.runner.run(
        GreedyReslice(reference=root, transforms=TransformChain.of(moments), labels=((seg, flipped),))
    )
    ctx.runner.run(MLAffine(fixed=root, moving=flipped, output=aligned))
    write_matrix(out, compose_matrices(read_matrix(moments), read_matrix(aligned)))


# ---------------------------------------------------------------------------
# stage 1: similarity row


def compute_similarity_row(ctx: StageContext) -> SimilarityRow:
    atlases = ctx.templates.atlases
    for atlas in tqdm(atlases, desc=f"atlases ({ctx.side})"):
        sim = ctx.layout.similarity_file(atlas)
        if sim.exists():
            ctx.store.hits.append(sim)
            continue
        # SimpleITK reports unreadable images as RuntimeError
        try:
            score = compare_to_atlas(ctx, atlas)
        except (ExternalToolError, IncompleteArtifactError, RuntimeError, OSError) as exc:
            ctx.log("atlas", f"Comparison with {atlas} failed, recording NaN: {exc}")
            continue
        ctx.store.publish_text(sim, f"{score:.10g}\n")
    return read_similarity_row(ctx)


def compare_to_atlas(ctx: StageContext, atlas: str) -> float:
    """Register the subject's fit labels to one atlas and score the fused result."""
    layout = ctx.layout
    templates = ctx.templates
    names = ctx.template.fit_names
    pairs = tuple(ImagePair(templates.atlas_label(atlas, n), layout.fit_label(n)) for n in names)

    affine = layout.pairwise(atlas, "affine.mat")
    mask = layout.pairwise(atlas, "mask.nii.gz")
    warp = layout.pairwise(atlas, "warp.nii.gz")
    atlas_seg = templates.atlas_seg(atlas)

    ctx.tool_step([affine], lambda o: GreedyAffine(pairs=pairs, output=o[0]))
    ctx.store.ensure(
        mask, lambda tmp: write_image(dilated_union_mask(read_image(atlas_seg), read_image(layout.seg)), tmp)
    )
    ctx.tool_step(
        [warp],
        lambda o: GreedyDeformable(
            pairs=pairs,
            output=o[0],
            initial_affine=affine,
            mask=mask,
            iterations="50x50x20x0",
            sigmas=("2.0mm", "0.1mm"),
        ),
    )
    resliced = [layout.pairwise(atlas, f"reslice_{n}.nii.gz") for n in names]
    ctx.tool_step(
        resliced,
        lambda tmps: GreedyReslice(
            reference=atlas_seg,
            transforms=TransformChain.of(warp, affine),
            images=tuple(zip((layout.fit_label(n) for n in names), tmps)),
        ),
    )
    fused = layout.pairwise(atlas, "reslice_seg.nii.gz")
    ctx.store.ensure(fused, lambda tmp: write_image(vote([read_image(p) for p in resliced]), tmp))

    mapping = ctx.template.similarity_map
    return total_label_overlap(
        remap_labels(read_image(fused), mapping), remap_labels(read_image(atlas_seg), mapping)
    )


def read_similarity_row(ctx: StageContext) -> SimilarityRow:
    atlases = ctx.templates.atlases
    values: List[float] = []
    for atlas in atlases:
        path = ctx.layout.similarity_file(atlas)
        if not path.exists():
            ctx.log("membership", f"error: {path} does not exist")
            values.append(float("nan"))
            continue
        text = path.read_text(encoding="utf-8").split()
        try:
            values.append(float(text[0]))
        except (IndexError, ValueError):
            ctx.log("membership", f"error: {path} does not hold a number")
            values.append(float("nan"))
    return SimilarityRow(atlases, tuple(values))


def reg_to_atlases(ctx: StageContext) -> None:
    prepare_subject(ctx)
    row = compute_similarity_row(ctx)
    if row.missing:
        ctx.log("atlas", f"{len(row.missing)} of {len(row)} comparisons are missing: {', '.join(row.missing)}")


# ---------------------------------------------------------------------------
# stage 2: group membership


def classify_group(
    row: SimilarityRow, groups: Sequence[int], neighbours: int
) -> Tuple[GroupAssignment, GroupAssignment]:
    """k-nearest-neighbour vote over the most similar atlases.

    Returns the variant assignment (winning group, most similar atlas in it) and the
    unified assignment (the single unified group, most similar atlas overall).
    """
    values = np.asarray(row.values, dtype=float)
    if len(groups) != len(values):
        raise ClassificationError(f"{len(groups)} atlas groups for a similarity row of {len(values)}.")
    finite = [int(i) for i in np.flatnonzero(np.isfinite(values))]
    if not finite:
        raise ClassificationError("No atlas comparison succeeded; cannot select a template.")

    ranked = sorted(finite, key=lambda i: (-values[i], i))
    votes: Dict[int, Tuple[int, float]] = {}
    for i in ranked[:neighbours]:
        count, total = votes.get(groups[i], (0, 0.0))
        votes[groups[i]] = (count + 1, total + values[i])
    group = min(votes, key=lambda g: (-votes[g][0], -votes[g][1], g))
    nearest = next(i for i in ranked if groups[i] == group)
    return GroupAssignment(group, nearest), GroupAssignment(UNIFIED_GROUP, ranked[0])


def membership(ctx: StageContext) -> None:
    layout = ctx.layout
    outputs = [layout.assignment_file(VARIANT), layout.assignment_file(UNIFIED)]
    if all(p.exists() for p in outputs):
        ctx.log("membership", "Group assignments already exist; keeping them.")
        ctx.store.hits.extend(outputs)
        return

    row = read_similarity_row(ctx)
    ctx.store.publish_text(layout.adjacency_csv, row.to_csv_line() + "\n")
    ctx.store.publish_text(layout.info_file, f"{ctx.subject_id},{ctx.side},{ctx.idside}\n")

    settings = ctx.template.membership
    if settings.external:
        ctx.tool_step(
            outputs,
            lambda tmps: GroupMembership(
                adjacency=layout.adjacency_csv,
                groups=ctx.templates.groups_path,
                neighbours=settings.neighbours,
                variant_output=tmps[0],
                unified_output=tmps[1],
                prefix=settings.arguments,
            ),
        )
    else:
        variant, unified = classify_group(row, ctx.templates.atlas_groups, settings.neighbours)
        ctx.store.ensure_many(outputs, lambda tmps: (variant.save(tmps[0]), unified.save(tmps[1])))

    variant = GroupAssignment.load(outputs[0])
    atlas = ctx.templates.atlases[variant.nearest_atlas_index]
    ctx.log("membership", f"{ctx.idside}: group {variant.group}, nearest atlas {atlas}")


def assigned_target(ctx: StageContext, kind: str) -> Tuple[TemplateTarget, GroupAssignment]:
    """Template and assignment persisted by stage 2 for ``kind``."""
    assignment = GroupAssignment.load(ctx.layout.assignment_file(kind))
    atlases = ctx.templates.atlases
    if not 0 <= assignment.nearest_atlas_index < len(atlases):
        raise ClassificationError(
            f"Nearest atlas index {assignment.nearest_atlas_index + 1} is outside the atlas list."
        )
    return ctx.templates.target(kind, assignment.group), assignment
