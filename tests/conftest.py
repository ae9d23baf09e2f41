from __future__ import annotations

from pathlib import Path
from typing import Dict

import numpy as np
import pytest
import SimpleITK as sitk
import yaml


ATLASES = ("A1_left", "A2_left", "A3_left")
FIT_NAMES = ("BKG", "CA", "ERC", "PHC")
WARP_MESHES = ("BKG", "CA", "ERC", "PHC", "MRG", "NOBKG")

TEMPLATE_CONFIG: Dict = {
    "regions": {
        "fit_labels": [
            {"name": "BKG", "merge": [0]},
            {"name": "CA", "merge": [1]},
            {"name": "ERC", "merge": [10, 15]},
            {"name": "PHC", "merge": [13, 14]},
        ],
        "cs_split": {"anterior": [10], "posterior": 13, "cs": 14},
        "similarity_map": {3: 2},
    },
    "meshes": {
        "warp": list(WARP_MESHES),
        "fusion": ["BKG", "CA", "ERC", "PHC"],
        "merged": "MRG",
        "merged_labels": ["CA", "ERC"],
        "nobkg": "NOBKG",
    },
    "evaluation": [
        {"name": "CA", "labels": [1]},
        {"name": "ERC", "labels": [2]},
        {"name": "PHC", "labels": [3]},
        {"name": "All", "labels": [1, 2, 3]},
    ],
    "report": {"regions": ["CA", "ERC"], "fit_quality": ["CA", "ERC", "All"]},
    "shooting": {"sigma": 2.0, "weight": 5000, "time_steps": 40, "iterations": 80},
}


def subject_array() -> np.ndarray:
    """10x10x10 (z, y, x) ASHS-like segmentation with CA, ERC, CS and PHC slabs along x."""
    arr = np.zeros((10, 10, 10), dtype=np.uint8)
    arr[2:8, 2:8, 1:3] = 1
    arr[2:8, 2:8, 3:5] = 10
    arr[2:8, 2:8, 5:7] = 14
    arr[2:8, 2:8, 7:9] = 13
    return arr


def fit_seg_array() -> np.ndarray:
    """Same layout voted into fit-label indices (0=BKG, 1=CA, 2=ERC, 3=PHC)."""
    arr = np.zeros((10, 10, 10), dtype=np.uint16)
    arr[2:8, 2:8, 1:3] = 1
    arr[2:8, 2:8, 3:6] = 2
    arr[2:8, 2:8, 6:9] = 3
    return arr


def write_array(arr: np.ndarray, path: Path, spacing=(1.0, 1.0, 1.0)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    image = sitk.GetImageFromArray(arr)
    image.SetSpacing(spacing)
    sitk.WriteImage(image, str(path), True)
    return path


def _write_text(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _write_label_set(prefix: Path) -> None:
    seg = fit_seg_array()
    write_array(seg, prefix.with_name(prefix.name + "_seg.nii.gz"))
    for index, name in enumerate(FIT_NAMES):
        write_array((seg == index).astype(np.uint8), prefix.with_name(f"{prefix.name}_{name}.nii.gz"))


def _write_refspace(path: Path) -> None:
    arr = np.zeros((8, 8, 8), dtype=np.float32)
    arr[2:6, 2:6, 2:6] = 1.0
    write_array(arr, path, spacing=(0.4, 0.4, 0.4))


def _write_meshes(directory: Path, prefix: str) -> None:
    for name in WARP_MESHES:
        _write_text(directory / f"{prefix}_{name}.vtk", f"mesh {name}\n")


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    """Complete two-level template: variant group 2 holding every atlas, plus the unified template."""
    root = tmp_path / "template"
    _write_text(root / "template_config.yaml", yaml.safe_dump(TEMPLATE_CONFIG))
    _write_text(root / "GSTemplate" / "MST" / "paths" / "IDSide.txt", "\n".join(ATLASES) + "\n")
    _write_text(root / "group_xval_2group_all.txt", "2\n2\n2\n")

    data = root / "data"
    unified = root / "GSUTemplate" / "gshoot" / "template_1"
    for atlas in ATLASES:
        _write_label_set(data / atlas)
        seg = fit_seg_array()
        write_array(seg, data / f"{atlas}_seg_orig.nii.gz")
        for index, name in enumerate(FIT_NAMES):
            write_array((seg == index).astype(np.uint8), data / f"{atlas}_{name}_orig.nii.gz")
        final = root / "GSTemplate" / "MST" / "registration" / "template_2" / atlas / "final"
        rel = final.relative_to(root)
        _write_text(final / "chain_unwarp_to_final.txt", f"{rel}/warp.nii.gz {rel}/affine.mat\n")
        _write_text(unified / atlas / "iter_final" / "shooting_warp.nii.gz", "warp\n")
        _write_text(unified / atlas / "iter_final" / "target_to_root_procrustes.mat", "1 0 0 0\n0 1 0 0\n0 0 1 0\n0 0 0 1\n")

    gs = root / "GSTemplate"
    write_array(fit_seg_array(), gs / "MST" / "template" / "template_2" / "template_2_seg.nii.gz")
    work = gs / "InitTemp" / "template_2" / "work"
    _write_label_set(work / "template_2")
    _write_text(work / "iter_04" / "template_2_MRGcombined_sampled.vtk", "landmarks\n")
    _write_refspace(work / "iter_04" / "template_2_seg.nii.gz")
    gshoot = gs / "gshoot" / "template_2"
    _write_text(gshoot / "shape_avg" / "iter_1" / "shavg_landmarks.vtk", "landmarks\n")
    _write_refspace(gshoot / "refspace_2.nii.gz")
    _write_meshes(gshoot / "template" / "iter_2", "template_2_gshoot")

    iter2 = unified / "template" / "iter_2"
    _write_label_set(iter2 / "template_1_gshoot")
    _write_text(iter2 / "template_1_gshoot_MRGcombined_sampled.vtk", "landmarks\n")
    _write_meshes(iter2, "template_1_gshoot")
    _write_refspace(root / "GSUTemplate" / "InitTemp" / "template_1" / "work" / "iter_04" / "template_1_seg.nii.gz")
    _write_refspace(unified / "refspace_1.nii.gz")
    return root


@pytest.fixture
def input_dir(tmp_path: Path) -> Path:
    """fastashs output folder for subject S01 with both hemispheres."""
    folder = tmp_path / "ashs"
    write_array(subject_array(), folder / "S01_MTLSeg_left.nii.gz")
    write_array(subject_array(), folder / "S01_MTLSeg_right.nii.gz")
    return folder
