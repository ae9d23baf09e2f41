"""Stages 4 and 7: geodesic shooting of the template meshes onto the subject.

Every transition of the per-template state machine is one memoized artifact, so a
restarted run picks up at the first state whose artifact is missing:

    NotStarted -> TargetExtracted -> ProcrustesAligned -> MomentaComputed
               -> TemplateWarped -> LabelsFused -> Done
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from Thickness.chains import TransformChain, TransformRef
from Thickness.context import StageContext
from Thickness.images import (
    fuse_meshes,
    pad,
    read_image,
    resample_mm,
    resample_percent,
    reslice_identity,
    threshold,
    trim,
    write_image,
)
from Thickness.layout import UNIFIED, VARIANT, TemplateTarget
from Thickness.selection import assigned_target
from Thickness.tools import AverageImages, GreedyReslice, LandmarkShoot, LandmarkWarp, MeshToImage, Procrustes


SHOOTING_STATES: List[str] = [
    "NotStarted",
    "TargetExtracted",
    "ProcrustesAligned",
    "MomentaComputed",
    "TemplateWarped",
    "LabelsFused",
    "Done",
]

REFSPACE_PERCENT = 25
REFSPACE_PAD = 60
REFSPACE_TRIM = 20
REFSPACE_SPACING = (0.4, 0.4, 0.4)


def shooting_artifacts(ctx: StageContext, target: TemplateTarget) -> Dict[str, List[Path]]:
    """Artifacts proving each state was reached."""
    layout = ctx.layout
    shoot = layout.shoot_dir(target.kind)
    warp_meshes = ctx.template.meshes.warp
    return {
        "TargetExtracted": [shoot / "shooting_target_native.vtk"],
        "ProcrustesAligned": [shoot / "target_to_root_procrustes.mat", shoot / "shooting_target_procrustes.vtk"],
        "MomentaComputed": [shoot / "shooting_momenta.vtk"],
        "TemplateWarped": [layout.fitted(target, m, ".vtk") for m in warp_meshes],
        "LabelsFused": [layout.fitted(target, m) for m in warp_meshes],
        "Done": [layout.fitted_seg(target)],
    }


def shooting_state(ctx: StageContext, target: TemplateTarget) -> str:
    state = SHOOTING_STATES[0]
    for name, paths in shooting_artifacts(ctx, target).items():
        if not all(p.exists() for p in paths):
            break
        state = name
    return state


def shoot_to_template(ctx: StageContext, kind: str) -> Path:
    target, _ = assigned_target(ctx, kind)
    layout = ctx.layout
    shoot = layout.shoot_dir(kind)
    shoot.mkdir(parents=True, exist_ok=True)
    artifacts = shooting_artifacts(ctx, target)
    ctx.log("shooting", f"{target.output_tag}: resuming from state {shooting_state(ctx, target)}")

    ctx.store.require("registration chain", layout.final_chain(kind), layout.mlaffine)
    ctx.store.require(f"{target.output_tag} landmarks", target.init_landmarks, target.root_landmarks)
    chain = TransformChain.load(layout.final_chain(kind))

    refspace = shoot / "refspace.nii.gz"
    ctx.store.ensure(refspace, lambda tmp: _reference_space(ctx, target, tmp))

    (native,) = artifacts["TargetExtracted"]
    ctx.tool_step(
        [native],
        lambda o: GreedyReslice(
            reference=refspace,
            transforms=chain.append(layout.mlaffine),
            meshes=((target.init_landmarks, o[0]),),
        ),
    )

    procrustes, aligned = artifacts["ProcrustesAligned"]
    ctx.tool_step([procrustes], lambda o: Procrustes(source=native, target=target.root_landmarks, output=o[0]))
    ctx.tool_step(
        [aligned],
        lambda o: GreedyReslice(reference=refspace, transforms=TransformChain.of(procrustes), meshes=((native, o[0]),)),
    )

    params = ctx.template.shooting
    (momenta,) = artifacts["MomentaComputed"]
    ctx.tool_step(
        [momenta],
        lambda o: LandmarkShoot(
            template=target.root_landmarks,
            target=aligned,
            output=o[0],
            sigma=params.sigma,
            weight=params.weight,
            time_steps=params.time_steps,
            iterations=params.iterations,
        ),
    )

    ctx.store.ensure_many(
        artifacts["TemplateWarped"], lambda tmps: _warp_template(ctx, target, momenta, procrustes, refspace, tmps)
    )
    for name, mesh, image in zip(ctx.template.meshes.warp, artifacts["TemplateWarped"], artifacts["LabelsFused"]):
        ctx.store.ensure(image, lambda tmp, n=name, m=mesh: _voxelize(ctx, target, n, m, tmp))

    (seg,) = artifacts["Done"]
    ctx.store.ensure(seg, lambda tmp: write_image(_fuse(ctx, target), tmp))
    ctx.log("shooting", f"{target.output_tag}: {shooting_state(ctx, target)}")
    return seg


def _reference_space(ctx: StageContext, target: TemplateTarget, out: Path) -> None:
    """Subject grid padded generously and averaged with the template's own reference spaces."""
    ctx.store.require(f"{target.output_tag} reference spaces", *target.refspace_inputs)
    small = ctx.scratch(f"{ctx.idside}_{target.kind}_seg_orig_small.nii.gz")
    write_image(pad(resample_percent(read_image(ctx.layout.seg_orig), REFSPACE_PERCENT), REFSPACE_PAD), small)
    average = ctx.scratch(f"{ctx.idside}_{target.kind}_refspace_average.nii.gz")
    ctx.runner.run(AverageImages(output=average, inputs=(*target.refspace_inputs, small)))
    mask = trim(threshold(read_image(average), 1e-4), REFSPACE_TRIM)
    write_image(resample_mm(mask, REFSPACE_SPACING), out)


def _warp_template(
    ctx: StageContext, target: TemplateTarget, momenta: Path, procrustes: Path, refspace: Path, outputs: List[Path]
) -> None:
    """Flow the template meshes with the momenta, then undo the procrustes alignment."""
    names = ctx.template.meshes.warp
    flowed = [ctx.scratch(f"{target.fitted_prefix}_{ctx.idside}_GSShoot_{n}_flowed.vtk") for n in names]
    params = ctx.template.shooting
    ctx.runner.run(
        LandmarkWarp(
            momenta=momenta,
            meshes=tuple(zip((target.mesh(n) for n in names), flowed)),
            sigma=params.sigma,
            time_steps=params.time_steps,
        )
    )
    ctx.runner.run(
        GreedyReslice(
            reference=refspace,
            transforms=TransformChain.of(TransformRef(procrustes, inverse=True)),
            meshes=tuple(zip(flowed, outputs)),
        )
    )


def _voxelize(ctx: StageContext, target: TemplateTarget, name: str, mesh: Path, out: Path) -> None:
    raw = ctx.scratch(f"{target.fitted_prefix}_{ctx.idside}_GSShoot_{name}.nii.gz")
    ctx.runner.run(MeshToImage(mesh=mesh, output=raw))
    write_image(reslice_identity(read_image(ctx.layout.divided_seg), read_image(raw)), out)


def _fuse(ctx: StageContext, target: TemplateTarget):
    meshes = ctx.template.meshes
    layout = ctx.layout
    regions = [read_image(layout.fitted(target, name)) for name in meshes.fusion[1:]]
    return fuse_meshes(regions, read_image(layout.fitted(target, meshes.nobkg)))


def shoot_variant(ctx: StageContext) -> None:
    shoot_to_template(ctx, VARIANT)


def shoot_unified(ctx: StageContext) -> None:
    shoot_to_template(ctx, UNIFIED)
