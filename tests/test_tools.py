from __future__ import annotations

from pathlib import Path
import subprocess

import pytest

from Thickness.chains import TransformChain, TransformRef
from Thickness.config import ToolConfig
from Thickness.errors import ExternalToolError
from Thickness.tools import (
    GreedyAffine,
    GreedyDeformable,
    GreedyReslice,
    ImagePair,
    LandmarkShoot,
    SkeletonThickness,
    ToolRunner,
)


TOOLS = ToolConfig(
    executables={
        "greedy": "/opt/bin/greedy",
        "lmshoot": "/opt/bin/lmshoot",
        "cmrep_vskel": "/opt/bin/cmrep_vskel",
        "qvoronoi": "/opt/bin/qvoronoi",
    }
)


def _shoot(tmp_path: Path) -> LandmarkShoot:
    return LandmarkShoot(
        template=tmp_path / "root.vtk",
        target=tmp_path / "target.vtk",
        output=tmp_path / "momenta.vtk",
        sigma=2.0,
        weight=5000.0,
        time_steps=40,
        iterations=80,
    )


def test_greedy_affine_with_identity_initializer(tmp_path: Path) -> None:
    request = GreedyAffine(pairs=(ImagePair(Path("f_CA.nii.gz"), Path("m_CA.nii.gz")),), output=tmp_path / "a.mat")
    cmd = ToolRunner(TOOLS, threads=8).command(request)
    assert cmd[:5] == ["/opt/bin/greedy", "-d", "3", "-threads", "8"]
    assert cmd[5:10] == ["-w", "1", "-i", "f_CA.nii.gz", "m_CA.nii.gz"]
    assert "-ia-identity" in cmd
    assert cmd[-2:] == ["-o", str(tmp_path / "a.mat")]


def test_greedy_deformable_mask_and_precision() -> None:
    request = GreedyDeformable(
        pairs=(ImagePair(Path("f.nii.gz"), Path("m.nii.gz")),),
        output=Path("warp.nii.gz"),
        initial_affine=Path("affine.mat"),
        mask=Path("mask.nii.gz"),
        single_precision=True,
    )
    args = request.arguments(4)
    assert args[args.index("-it") + 1] == "affine.mat"
    assert args[args.index("-gm") + 1] == "mask.nii.gz"
    assert "-float" in args
    assert args[args.index("-s") + 1 : args.index("-s") + 3] == ["2vox", "1vox"]


def test_reslice_puts_chain_last() -> None:
    chain = TransformChain.of(Path("w.nii.gz"), TransformRef(Path("p.mat"), inverse=True))
    request = GreedyReslice(
        reference=Path("ref.nii.gz"),
        transforms=chain,
        images=((Path("a.nii.gz"), Path("a_out.nii.gz")),),
        labels=((Path("seg.nii.gz"), Path("seg_out.nii.gz")),),
        meshes=((Path("m.vtk"), Path("m_out.vtk")),),
    )
    args = request.arguments(1)
    assert args[args.index("-ri") : args.index("-ri") + 3] == ["-ri", "LABEL", "0.2vox"]
    assert args[-3:] == ["-r", "w.nii.gz", "p.mat,-1"]
    assert request.outputs() == [Path("a_out.nii.gz"), Path("seg_out.nii.gz"), Path("m_out.vtk")]


def test_lmshoot_always_single_threaded(tmp_path: Path, monkeypatch) -> None:
    seen = {}

    def fake_run(cmd, stdout, stderr, text, env):
        seen["cmd"] = cmd
        seen["threads"] = env["ITK_GLOBAL_DEFAULT_NUMBER_OF_THREADS"]
        return subprocess.CompletedProcess(cmd, 0, stdout="ok\n")

    monkeypatch.setattr("Thickness.tools.subprocess.run", fake_run)
    log = tmp_path / "dump" / "run.log"
    ToolRunner(TOOLS, threads=16, log_path=log).run(_shoot(tmp_path))

    assert seen["threads"] == "1"
    assert "-threads" not in seen["cmd"]
    assert seen["cmd"][seen["cmd"].index("-i") + 1 : seen["cmd"].index("-i") + 3] == ["80", "0"]
    assert "# exit 0" in log.read_text(encoding="utf-8")


def test_skeleton_resolves_qvoronoi(tmp_path: Path) -> None:
    request = SkeletonThickness(
        mesh=tmp_path / "MRG.vtk",
        thickmap=tmp_path / "thick.vtk",
        skeleton=tmp_path / "skel.vtk",
        pruning=1.2,
        min_edge=2,
    )
    cmd = ToolRunner(TOOLS).command(request.resolve(TOOLS))
    assert cmd[:3] == ["/opt/bin/cmrep_vskel", "-Q", "/opt/bin/qvoronoi"]
    assert cmd[-2:] == [str(tmp_path / "MRG.vtk"), str(tmp_path / "skel.vtk")]


def test_failed_tool_raises_with_status(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(
        "Thickness.tools.subprocess.run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 3, stdout="segfault\n"),
    )
    with pytest.raises(ExternalToolError) as info:
        ToolRunner(TOOLS, threads=2).run(_shoot(tmp_path))
    assert info.value.exit_code == 3
    assert "lmshoot" in str(info.value)
    assert info.value.output == "segfault\n"
