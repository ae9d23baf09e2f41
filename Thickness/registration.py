"""Stages 3 and 6: deformable registration of the subject to the selected template.

Both template types follow the same two steps.  The subject is first registered to
the nearest atlas of its group and the atlas's own chain back to the template root
is extended with that registration (appended, subject side).  A second registration
from the root to the refined template iteration is then prepended to that chain
(template side).  Each chain is persisted as soon as it is composed and re-read from
disk by every later step.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

import SimpleITK as sitk

from Thickness.chains import TransformChain, TransformRef, compose_chain
from Thickness.context import StageContext
from Thickness.images import dilated_union_mask, read_image, reslice_identity, trim, vote, write_image
from Thickness.layout import UNIFIED, VARIANT, TemplateTarget
from Thickness.selection import assigned_target
from Thickness.tools import GreedyAffine, GreedyDeformable, GreedyReslice, ImagePair, MLAffine


REFINE_SIGMAS = {VARIANT: ("0.6mm", "0.1mm"), UNIFIED: ("0.6mm", "0.3mm")}
REFINE_ITERATIONS = "120x120x40"


def register_to_template(ctx: StageContext, kind: str) -> TransformChain:
    """Run both registration steps for ``kind`` and return the final chain as read from disk."""
    target, assignment = assigned_target(ctx, kind)
    atlas = ctx.templates.atlases[assignment.nearest_atlas_index]
    layout = ctx.layout
    ctx.store.require("subject template-space labels", layout.seg, *(layout.fit_label(k) for k in ctx.template.kinds))
    ctx.log("registration", f"{ctx.idside} -> {target.output_tag} through atlas {atlas}")

    warp, affine = _register_to_atlas(ctx, target, atlas)
    chain = compose_chain(_atlas_chain(ctx, target, atlas), [warp, affine], where="append")
    ctx.store.ensure(layout.init_chain(kind), chain.save)
    init_chain = TransformChain.load(layout.init_chain(kind))

    _reslice_and_vote(ctx, target, init_chain, target.root_seg, layout.init_reslice)

    refine_warp = _refine(ctx, target)
    final = compose_chain(init_chain, [refine_warp], where="prepend")
    ctx.store.ensure(layout.final_chain(kind), final.save)
    final = TransformChain.load(layout.final_chain(kind))

    _reslice_and_vote(ctx, target, final, target.refine_label("BKG"), layout.refine_reslice)
    ctx.log("registration", f"Chain to {target.output_tag} has {len(final)} transforms")
    return final


def _atlas_chain(ctx: StageContext, target: TemplateTarget, atlas: str) -> TransformChain:
    templates = ctx.templates
    if target.kind == VARIANT:
        path = target.atlas_chain(atlas)
        ctx.store.require(f"chain of atlas {atlas}", path)
        return TransformChain.load(path, base_dir=templates.root)
    warp = templates.unified_atlas_warp(atlas)
    procrustes = templates.unified_atlas_procrustes(atlas)
    ctx.store.require(f"unified template shooting of atlas {atlas}", warp, procrustes)
    return TransformChain.of(TransformRef(warp), TransformRef(procrustes, inverse=True))


def _register_to_atlas(ctx: StageContext, target: TemplateTarget, atlas: str) -> Tuple[Path, Path]:
    layout = ctx.layout
    kind = target.kind
    names = ctx.template.fit_names
    fixed_seg, fixed_labels = _atlas_images(ctx, target, atlas)
    pairs = tuple(ImagePair(fixed, layout.fit_label(n)) for fixed, n in zip(fixed_labels, names))

    moments = layout.init_file(kind, atlas, "moment.mat")
    affine = layout.init_file(kind, atlas, "affine.mat")
    warp = layout.init_file(kind, atlas, "warp.nii.gz")

    ctx.tool_step([moments], lambda o: MLAffine(fixed=fixed_seg, moving=layout.seg, output=o[0]))
    ctx.tool_step([affine], lambda o: GreedyAffine(pairs=pairs, output=o[0], initial=moments))

    mask = None
    if kind == VARIANT:
        mask = ctx.scratch(f"{ctx.idside}_to_{atlas}_mask.nii.gz")
        ctx.store.ensure(
            mask, lambda tmp: write_image(dilated_union_mask(read_image(fixed_seg), read_image(layout.seg)), tmp)
        )
    ctx.tool_step(
        [warp],
        lambda o: GreedyDeformable(
            pairs=pairs,
            output=o[0],
            initial_affine=affine,
            mask=mask,
            iterations="50x40x20",
            sigmas=("2vox", "1vox"),
            single_precision=True,
        ),
    )
    return warp, affine


def _atlas_images(ctx: StageContext, target: TemplateTarget, atlas: str) -> Tuple[Path, List[Path]]:
    """Fixed images for the atlas step.

    The variant path uses the atlas's template-space images; the unified path uses
    its native-space images cropped around the segmentation.
    """
    templates = ctx.templates
    names = ctx.template.fit_names
    if target.kind == VARIANT:
        return templates.atlas_seg(atlas), [templates.atlas_label(atlas, n) for n in names]

    source = templates.atlas_seg_orig(atlas)
    ctx.store.require(f"native segmentation of atlas {atlas}", source)
    trimmed = ctx.scratch(f"{atlas}_seg_orig.nii.gz")
    ctx.store.ensure(trimmed, lambda tmp: write_image(trim(read_image(source), 10), tmp))
    labels: List[Path] = []
    for name in names:
        out = ctx.scratch(f"{atlas}_{name}_orig.nii.gz")
        label = templates.atlas_label_orig(atlas, name)
        ctx.store.ensure(
            out,
            lambda tmp, lab=label: write_image(
                reslice_identity(read_image(trimmed), read_image(lab), sitk.sitkLinear), tmp
            ),
        )
        labels.append(out)
    return trimmed, labels


def _refine(ctx: StageContext, target: TemplateTarget) -> Path:
    layout = ctx.layout
    names = ctx.template.fit_names
    pairs = tuple(ImagePair(target.refine_label(n), layout.init_reslice(target, n)) for n in names)
    template_seg = target.refine_label("seg")
    ctx.store.require(f"{target.output_tag} refined template", template_seg, target.refine_label("BKG"))

    mask = ctx.scratch(f"{ctx.idside}_totemp{target.group_tag}_{target.kind}_mask.nii.gz")
    ctx.store.ensure(
        mask,
        lambda tmp: write_image(
            dilated_union_mask(read_image(template_seg), read_image(layout.init_reslice(target, "seg"))), tmp
        ),
    )
    warp = layout.refine_warp(target.kind)
    ctx.tool_step(
        [warp],
        lambda o: GreedyDeformable(
            pairs=pairs,
            output=o[0],
            mask=mask,
            iterations=REFINE_ITERATIONS,
            sigmas=REFINE_SIGMAS[target.kind],
        ),
    )
    return warp


def _reslice_and_vote(ctx: StageContext, target: TemplateTarget, chain: TransformChain, reference: Path, name) -> None:
    """Reslice every subject label kind through ``chain`` and vote the fit labels into a segmentation."""
    layout = ctx.layout
    kinds = ctx.template.kinds
    ctx.tool_step(
        [name(target, k) for k in kinds],
        lambda tmps: GreedyReslice(
            reference=reference,
            transforms=chain,
            images=tuple(zip((layout.fit_label(k) for k in kinds), tmps)),
        ),
    )
    fit = [name(target, n) for n in ctx.template.fit_names]
    ctx.store.ensure(name(target, "seg"), lambda tmp: write_image(vote([read_image(p) for p in fit]), tmp))


def reg_to_variant(ctx: StageContext) -> None:
    register_to_template(ctx, VARIANT)


def reg_to_unified(ctx: StageContext) -> None:
    register_to_template(ctx, UNIFIED)
