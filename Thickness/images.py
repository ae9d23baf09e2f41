"""Label-image algebra done in-process with SimpleITK and numpy.

These cover the small voxel operations between registration calls: label merging,
argmax voting, distance-transform voting, mask dilation, identity reslicing and
overlap scores.  All functions take and return ``sitk.Image`` objects.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Iterable, Mapping, Sequence, Tuple

import numpy as np
import SimpleITK as sitk


def read_image(path: Path) -> sitk.Image:
    return sitk.ReadImage(str(path))


def write_image(image: sitk.Image, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    sitk.WriteImage(image, str(path), True)
    return path


def _like(arr: np.ndarray, reference: sitk.Image) -> sitk.Image:
    out = sitk.GetImageFromArray(arr)
    out.CopyInformation(reference)
    return out


def binarize_labels(image: sitk.Image, labels: Iterable[int]) -> sitk.Image:
    """1 where the voxel holds any of ``labels``, 0 elsewhere."""
    arr = sitk.GetArrayViewFromImage(image)
    mask = np.isin(arr, np.asarray(list(labels))).astype(np.uint8)
    return _like(mask, image)


def remap_labels(image: sitk.Image, mapping: Mapping[int, int] | Sequence[Tuple[int, int]]) -> sitk.Image:
    """Replace label values; unmapped labels are kept."""
    pairs = mapping.items() if isinstance(mapping, Mapping) else mapping
    arr = sitk.GetArrayFromImage(image)
    out = arr.copy()
    for src, dst in pairs:
        out[arr == src] = dst
    return _like(out, image)


def vote(images: Sequence[sitk.Image]) -> sitk.Image:
    """Index of the image with the highest value at each voxel; ties go to the lower index."""
    if not images:
        raise ValueError("vote needs at least one image")
    stack = np.stack([sitk.GetArrayFromImage(sitk.Cast(img, sitk.sitkFloat32)) for img in images])
    winner = np.argmax(stack, axis=0).astype(np.uint16)
    return _like(winner, images[0])


def distance_vote(masks: Sequence[sitk.Image]) -> sitk.Image:
    """Closest boundary wins: vote over negated signed distance maps of binary masks."""
    scores = [
        sitk.SignedMaurerDistanceMap(
            sitk.Cast(mask > 0, sitk.sitkUInt8),
            insideIsPositive=True,
            squaredDistance=False,
            useImageSpacing=True,
        )
        for mask in masks
    ]
    return vote(scores)


def divide_cs(seg: sitk.Image, anterior: Sequence[int], posterior: int, cs: int) -> sitk.Image:
    """Split the collateral sulcus label by proximity to the anterior or the posterior regions.

    CS voxels closer to the anterior regions get ``cs + 1``; the rest keep ``cs``.
    """
    front = binarize_labels(seg, anterior)
    back = binarize_labels(seg, [posterior])
    closer_to_front = sitk.GetArrayFromImage(distance_vote([back, front]))
    arr = sitk.GetArrayFromImage(seg)
    out = arr + ((arr == cs) * closer_to_front).astype(arr.dtype)
    return _like(out, seg)


def reslice_identity(reference: sitk.Image, image: sitk.Image, interpolator=sitk.sitkNearestNeighbor) -> sitk.Image:
    """Resample ``image`` onto the grid of ``reference`` with no spatial transform."""
    return sitk.Resample(image, reference, sitk.Transform(), interpolator, 0.0, image.GetPixelID())


def dilated_union_mask(fixed: sitk.Image, moving: sitk.Image, radius: int = 10) -> sitk.Image:
    """Binary union of two segmentations on the fixed grid, dilated by ``radius`` voxels."""
    moving_on_fixed = reslice_identity(fixed, moving)
    union = sitk.Cast((fixed > 0) | (moving_on_fixed > 0), sitk.sitkUInt8)
    return sitk.BinaryDilate(union, [radius] * union.GetDimension(), sitk.sitkBall, 0.0, 1.0)


def dice(mask_a: sitk.Image, mask_b: sitk.Image) -> float:
    a = sitk.GetArrayViewFromImage(mask_a) > 0
    b = sitk.GetArrayViewFromImage(mask_b) > 0
    total = int(a.sum()) + int(b.sum())
    if total == 0:
        return float("nan")
    return 2.0 * int(np.logical_and(a, b).sum()) / total


def total_label_overlap(seg_a: sitk.Image, seg_b: sitk.Image) -> float:
    """Dice over all non-zero labels jointly (sum of per-label intersections over sum of volumes)."""
    b = reslice_identity(seg_a, seg_b)
    arr_a = sitk.GetArrayViewFromImage(seg_a)
    arr_b = sitk.GetArrayViewFromImage(b)
    total = int((arr_a > 0).sum()) + int((arr_b > 0).sum())
    if total == 0:
        return float("nan")
    agree = int(np.logical_and(arr_a == arr_b, arr_a > 0).sum())
    return 2.0 * agree / total


def resample_percent(image: sitk.Image, percent: float) -> sitk.Image:
    scale = percent / 100.0
    size = [max(1, int(round(s * scale))) for s in image.GetSize()]
    spacing = [sp * old / new for sp, old, new in zip(image.GetSpacing(), image.GetSize(), size)]
    return _resample_grid(image, size, spacing)


def resample_mm(image: sitk.Image, spacing: Sequence[float]) -> sitk.Image:
    size = [
        max(1, int(round(old * sp / new)))
        for old, sp, new in zip(image.GetSize(), image.GetSpacing(), spacing)
    ]
    return _resample_grid(image, size, list(spacing))


def _resample_grid(image: sitk.Image, size: Sequence[int], spacing: Sequence[float]) -> sitk.Image:
    # keep the physical extent: the first voxel corner stays where it was
    direction = np.array(image.GetDirection()).reshape(3, 3)
    old_spacing = np.array(image.GetSpacing())
    corner = np.array(image.GetOrigin()) - direction @ (old_spacing / 2.0)
    origin = corner + direction @ (np.asarray(spacing) / 2.0)
    return sitk.Resample(
        sitk.Cast(image, sitk.sitkFloat32),
        [int(s) for s in size],
        sitk.Transform(),
        sitk.sitkLinear,
        tuple(origin),
        tuple(float(s) for s in spacing),
        image.GetDirection(),
        0.0,
        sitk.sitkFloat32,
    )


def pad(image: sitk.Image, voxels: int, value: float = 0.0) -> sitk.Image:
    bound = [int(voxels)] * image.GetDimension()
    return sitk.ConstantPad(image, bound, bound, value)


def threshold(image: sitk.Image, lower: float, upper: float = math.inf) -> sitk.Image:
    upper = min(upper, np.finfo(np.float64).max)
    return sitk.BinaryThreshold(sitk.Cast(image, sitk.sitkFloat64), lower, upper, 1, 0)


def trim(image: sitk.Image, margin: int) -> sitk.Image:
    """Crop to the bounding box of non-zero voxels plus ``margin`` voxels, padding where needed."""
    arr = sitk.GetArrayViewFromImage(image)
    nonzero = np.argwhere(arr != 0)
    if nonzero.size == 0:
        raise ValueError("Cannot trim an image without non-zero voxels.")
    padded = pad(image, margin)
    lower_zyx = nonzero.min(axis=0)
    upper_zyx = nonzero.max(axis=0) + 2 * margin
    index = [int(v) for v in lower_zyx[::-1]]
    size = [int(u - l + 1) for l, u in zip(lower_zyx[::-1], upper_zyx[::-1])]
    return sitk.RegionOfInterest(padded, size, index)


def smooth(image: sitk.Image, sigma_vox: float = 1.0) -> sitk.Image:
    sigma = [sigma_vox * s for s in image.GetSpacing()]
    return sitk.SmoothingRecursiveGaussian(sitk.Cast(image, sitk.sitkFloat32), sigma)


def label_mask(image: sitk.Image, label: int) -> sitk.Image:
    return binarize_labels(image, [label])


def fuse_meshes(region_masks: Sequence[sitk.Image], foreground: sitk.Image) -> sitk.Image:
    """Distance vote over region masks, labels shifted to start at 1, background masked out."""
    winner = sitk.GetArrayFromImage(distance_vote(region_masks)).astype(np.uint16) + 1
    fg = sitk.GetArrayFromImage(reslice_identity(region_masks[0], foreground)) > 0
    return _like((winner * fg).astype(np.uint16), region_masks[0])
