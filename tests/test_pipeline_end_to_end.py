from __future__ import annotations

from pathlib import Path
import shutil
from typing import Dict, List

import numpy as np
import pytest
import SimpleITK as sitk

from Thickness.chains import TransformChain, write_matrix
from Thickness.config import RunConfig
from Thickness.errors import ExternalToolError, MissingPrerequisiteError, StageFailure
from Thickness.layout import UNIFIED, VARIANT, SubjectLayout
from Thickness.pipeline import ThicknessRunner
from Thickness.selection import GroupAssignment
from Thickness.tools import (
    AverageImages,
    GreedyAffine,
    GreedyDeformable,
    GreedyMoments,
    GreedyReslice,
    LandmarkShoot,
    LandmarkWarp,
    MeshImageSample,
    MeshLabelThickness,
    MeshMergeArrays,
    MeshToImage,
    MLAffine,
    Procrustes,
    SkeletonThickness,
    ToolRequest,
)


class FakeRunner:
    """Stands in for the external tools: records requests and fabricates plausible outputs."""

    def __init__(self, fail_atlas: str = "") -> None:
        self.requests: List[ToolRequest] = []
        self.fail_atlas = fail_atlas

    def run(self, request: ToolRequest) -> None:
        self.requests.append(request)
        if isinstance(request, (GreedyMoments, MLAffine, Procrustes)):
            write_matrix(request.output, np.eye(4))
        elif isinstance(request, GreedyAffine):
            if self.fail_atlas and any(self.fail_atlas in str(p.fixed) for p in request.pairs):
                raise ExternalToolError(["greedy", "-a"], 2, "registration diverged")
            write_matrix(request.output, np.eye(4))
        elif isinstance(request, GreedyReslice):
            for src, dst in (*request.images, *request.labels, *request.meshes):
                shutil.copyfile(src, dst)
        elif isinstance(request, LandmarkWarp):
            for src, dst in request.meshes:
                shutil.copyfile(src, dst)
        elif isinstance(request, MeshToImage):
            arr = np.zeros((10, 10, 10), dtype=np.uint8)
            arr[2:8, 2:8, 2:8] = 1
            sitk.WriteImage(sitk.GetImageFromArray(arr), str(request.output), True)
        elif isinstance(request, AverageImages):
            shutil.copyfile(request.inputs[0], request.output)
        elif isinstance(request, MeshLabelThickness):
            request.mean_output.write_text(f"{request.subject_id},{request.side},2.1,2.4\n", encoding="utf-8")
            request.median_output.write_text(f"{request.subject_id},{request.side},2.0,2.3\n", encoding="utf-8")
        elif isinstance(request, (GreedyDeformable, LandmarkShoot, SkeletonThickness, MeshImageSample, MeshMergeArrays)):
            for out in request.outputs():
                out.write_text(f"{request.tool}\n", encoding="utf-8")
        else:
            raise AssertionError(f"unexpected request {request!r}")


def _cfg(input_dir: Path, template_dir: Path, out: Path, stages=(1, 5), sides=("left",)) -> RunConfig:
    return RunConfig(
        subject_id="S01",
        input_segs={side: input_dir / f"S01_MTLSeg_{side}.nii.gz" for side in sides},
        template_dir=template_dir,
        output_dir=out,
        work_dir=out,
        threads=2,
        stage_start=stages[0],
        stage_end=stages[1],
    )


def _runner(cfg: RunConfig, fake: FakeRunner) -> ThicknessRunner:
    return ThicknessRunner(cfg, runner_factory=lambda log_path: fake)


def test_variant_pipeline_writes_report_row(input_dir: Path, template_dir: Path, tmp_path: Path) -> None:
    out = tmp_path / "out"
    fake = FakeRunner()
    ctx = _runner(_cfg(input_dir, template_dir, out), fake).run_side("left")

    layout = ctx.layout
    assert GroupAssignment.load(layout.assignment_file(VARIANT)).group == 2
    assert GroupAssignment.load(layout.assignment_file(UNIFIED)).group == 1

    chain = TransformChain.load(layout.final_chain(VARIANT))
    assert len(chain) >= 2
    # refinement warp is the first entry, the atlas chain sits in the middle
    assert chain.refs[0].path == layout.refine_warp(VARIANT)
    assert "template_2" in str(chain.refs[1].path)

    lines = (out / "S01_left_thickness.csv").read_text(encoding="utf-8").splitlines()
    assert lines[0] == (
        "ID,SIDE,TempType,GROUP,CA_MeanThk,ERC_MeanThk,CA_MedianThk,ERC_MedianThk,"
        "CA_FitQuality,ERC_FitQuality,All_FitQuality"
    )
    assert len(lines) == 2
    assert lines[1].startswith("S01,left,MultiTemp,2,2.1,2.4,2.0,2.3,")
    assert (out / "S01_left_template_2_fitted_mesh.vtk").exists()
    assert (out / "S01_left_template_2_momenta.vtk").exists()

    shoots = [r for r in fake.requests if isinstance(r, LandmarkShoot)]
    assert len(shoots) == 1
    assert not list(layout.work_dir.rglob(".partial.*"))


def test_resume_reuses_every_artifact(input_dir: Path, template_dir: Path, tmp_path: Path) -> None:
    out = tmp_path / "out"
    first = FakeRunner()
    ctx = _runner(_cfg(input_dir, template_dir, out), first).run_side("left")
    chain_text = ctx.layout.final_chain(VARIANT).read_text(encoding="utf-8")
    report = (out / "S01_left_thickness.csv").read_text(encoding="utf-8")

    second = FakeRunner()
    again = _runner(_cfg(input_dir, template_dir, out), second).run_side("left")

    assert second.requests == []
    assert again.store.produced == [out / "S01_left_thickness.csv"]
    assert again.layout.final_chain(VARIANT).read_text(encoding="utf-8") == chain_text
    assert (out / "S01_left_thickness.csv").read_text(encoding="utf-8") == report


def test_failed_atlas_becomes_nan_and_is_outvoted(input_dir: Path, template_dir: Path, tmp_path: Path) -> None:
    out = tmp_path / "out"
    ctx = _runner(_cfg(input_dir, template_dir, out, stages=(1, 2)), FakeRunner(fail_atlas="A1_left")).run_side("left")

    row = (ctx.layout.adjacency_csv).read_text(encoding="utf-8").strip().split(",")
    assert row[0] == "nan"
    assert len(row) == 3
    assert not ctx.layout.similarity_file("A1_left").exists()
    assignment = GroupAssignment.load(ctx.layout.assignment_file(VARIANT))
    assert assignment.nearest_atlas_index in (1, 2)


def test_full_run_both_sides_reports_both_templates(input_dir: Path, template_dir: Path, tmp_path: Path) -> None:
    out = tmp_path / "out"
    fake = FakeRunner()
    _runner(_cfg(input_dir, template_dir, out, stages=(1, 8), sides=("left", "right")), fake).run()

    for side in ("left", "right"):
        lines = (out / f"S01_{side}_thickness.csv").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 3
        assert lines[1].startswith(f"S01,{side},MultiTemp,2,")
        assert lines[2].startswith(f"S01,{side},UnifiedTemp,1,")
        assert (out / f"S01_{side}_UT_template_momenta.vtk").exists()

    # right hemispheres are pre-aligned by moments before ml_affine
    assert sum(isinstance(r, GreedyMoments) for r in fake.requests) == 1
    unified_chain = TransformChain.load(out / "work_left" / "RegToUT" / "UTemp" / "chain_unwarp_to_final_left.txt")
    assert any(ref.inverse for ref in unified_chain)


def test_late_stage_without_earlier_work_fails_before_running(
    input_dir: Path, template_dir: Path, tmp_path: Path
) -> None:
    out = tmp_path / "out"
    fake = FakeRunner()
    runner = _runner(_cfg(input_dir, template_dir, out, stages=(6, 8)), fake)
    with pytest.raises(MissingPrerequisiteError):
        runner.run()
    assert fake.requests == []
    assert (out / "pipeline_error.txt").exists()


def test_unreadable_atlas_is_recorded_as_nan(input_dir: Path, template_dir: Path, tmp_path: Path) -> None:
    (template_dir / "data" / "A1_left_seg.nii.gz").unlink()
    out = tmp_path / "out"
    ctx = _runner(_cfg(input_dir, template_dir, out, stages=(1, 2)), FakeRunner()).run_side("left")

    row = ctx.layout.adjacency_csv.read_text(encoding="utf-8").strip().split(",")
    assert row[0] == "nan"
    assert len(row) == 3
    assert not ctx.layout.similarity_file("A1_left").exists()
    assert GroupAssignment.load(ctx.layout.assignment_file(VARIANT)).nearest_atlas_index in (1, 2)


def test_unexpected_error_on_one_side_still_runs_the_other(
    input_dir: Path, template_dir: Path, tmp_path: Path, monkeypatch
) -> None:
    out = tmp_path / "out"
    runner = _runner(_cfg(input_dir, template_dir, out, sides=("left", "right")), FakeRunner())
    seen: List[str] = []

    def run_side(side: str) -> None:
        seen.append(side)
        if side == "left":
            raise RuntimeError("disk full")

    monkeypatch.setattr(runner, "run_side", run_side)
    with pytest.raises(StageFailure, match="disk full") as info:
        runner.run()

    assert seen == ["left", "right"]
    assert isinstance(info.value.__cause__, RuntimeError)
    report = (out / "pipeline_error.txt").read_text(encoding="utf-8")
    assert report.startswith("left: left hemisphere failed with RuntimeError: disk full")


def test_in_process_stage_error_names_the_stage(input_dir: Path, template_dir: Path, tmp_path: Path) -> None:
    out = tmp_path / "out"
    (input_dir / "S01_MTLSeg_left.nii.gz").write_text("not an image", encoding="utf-8")
    runner = _runner(_cfg(input_dir, template_dir, out, stages=(1, 1), sides=("left", "right")), FakeRunner())

    with pytest.raises(StageFailure, match=r"stage 1 \(reg_to_atlases\) for S01_left"):
        runner.run()
    assert SubjectLayout(out / "work_right", "S01", "right").seg.exists()


def _tree(out: Path) -> Dict[str, object]:
    """Every finished artifact under ``out`` keyed by relative path; logs and scratch are skipped."""
    files: Dict[str, object] = {}
    for path in sorted(out.rglob("*")):
        rel = path.relative_to(out)
        if not path.is_file() or "dump" in rel.parts or path.name == "pipeline_error.txt":
            continue
        if path.name.endswith(".nii.gz"):
            image = sitk.ReadImage(str(path))
            files[str(rel)] = (sitk.GetArrayFromImage(image).tolist(), image.GetSpacing(), image.GetOrigin())
        else:
            files[str(rel)] = path.read_text(encoding="utf-8").replace(str(out), "<out>")
    return files


@pytest.mark.parametrize("split", range(2, 9))
def test_split_run_matches_single_run(input_dir: Path, template_dir: Path, tmp_path: Path, split: int) -> None:
    whole = tmp_path / "whole"
    _runner(_cfg(input_dir, template_dir, whole, stages=(1, 8)), FakeRunner()).run()

    parts = tmp_path / "parts"
    _runner(_cfg(input_dir, template_dir, parts, stages=(1, split - 1)), FakeRunner()).run()
    _runner(_cfg(input_dir, template_dir, parts, stages=(split, 8)), FakeRunner()).run()

    assert _tree(parts) == _tree(whole)
