"""
volume.py

Binary phase volume, chunk plan and the error types shared by the
purification modules.

- Phase arrays are shaped [z, y, x] (depth, height, width), uint8.
- Foreground voxels hold 255 and background voxels hold 0.
- Chunks are half-open depth ranges (z0, z1) that partition [0, depth).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np


FOREGROUND = 255
BACKGROUND = 0

LABEL_METHODS = ("linear", "multithreaded", "mapped")


class PurifyError(Exception):
    """Base class for purification errors."""


class InvalidConfiguration(PurifyError, ValueError):
    """Rejected parameters (chunk size, labelling method, worker count)."""


class DimensionMismatch(PurifyError, RuntimeError):
    """Arrays that should share the volume shape do not."""


class PurificationCancelled(PurifyError):
    """Raised between stages when the caller asked to stop."""


def opposite(phase: int) -> int:
    if phase == FOREGROUND:
        return BACKGROUND
    if phase == BACKGROUND:
        return FOREGROUND
    raise InvalidConfiguration(f"phase must be FOREGROUND ({FOREGROUND}) or BACKGROUND ({BACKGROUND}), got {phase}")


def connectivity_of(phase: int) -> int:
    """Foreground is 26-connected, background is 6-connected."""
    if phase == FOREGROUND:
        return 26
    if phase == BACKGROUND:
        return 6
    raise InvalidConfiguration(f"unknown phase {phase}")


def causal_offsets(connectivity: int) -> np.ndarray:
    """Return the already-visited half of the neighbourhood for a z, y, x raster scan.

    Offsets are shaped (M, 3) with entries (dz, dy, dx) relative to the current voxel.
    """
    if connectivity == 6:
        offs = [(0, 0, -1), (0, -1, 0), (-1, 0, 0)]
    elif connectivity == 26:
        offs = [
            # same slice (dz=0), previous column and previous row
            (0, 0, -1), (0, -1, -1), (0, -1, 0), (0, -1, 1),
            # previous slice (dz=-1), all 3x3 neighbours
            (-1, -1, -1), (-1, -1, 0), (-1, -1, 1),
            (-1, 0, -1),  (-1, 0, 0),  (-1, 0, 1),
            (-1, 1, -1),  (-1, 1, 0),  (-1, 1, 1),
        ]
    else:
        raise InvalidConfiguration("connectivity must be 6 or 26")
    return np.asarray(offs, dtype=np.int64)


@dataclass
class VolumeGrid:
    """Dense binary volume with explicit dimensions.

    - width, height, depth: voxel counts along x, y, z
    - phases: uint8 array of shape (depth, height, width) holding FOREGROUND/BACKGROUND
    """

    width: int
    height: int
    depth: int
    phases: np.ndarray

    def __post_init__(self):
        expected = (int(self.depth), int(self.height), int(self.width))
        if tuple(self.phases.shape) != expected:
            raise DimensionMismatch(
                f"phase array shape {tuple(self.phases.shape)} != (depth, height, width) {expected}"
            )
        if self.phases.dtype != np.uint8:
            raise DimensionMismatch(f"phase array must be uint8, got {self.phases.dtype}")

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "VolumeGrid":
        """Build from any [z, y, x] array; nonzero voxels become foreground."""
        a = np.asarray(arr)
        if a.ndim != 3:
            raise DimensionMismatch(f"expected a 3-D array, got ndim={a.ndim}")
        phases = np.where(a != 0, np.uint8(FOREGROUND), np.uint8(BACKGROUND)).astype(np.uint8)
        d, h, w = phases.shape
        return cls(width=w, height=h, depth=d, phases=np.ascontiguousarray(phases))

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.depth, self.height, self.width)

    @property
    def n_voxels(self) -> int:
        return self.width * self.height * self.depth

    def copy(self) -> "VolumeGrid":
        return VolumeGrid(self.width, self.height, self.depth, self.phases.copy())

    def count(self, phase: int) -> int:
        return int(np.count_nonzero(self.phases == phase))


def _check_slices_per_chunk(slices_per_chunk) -> int:
    if isinstance(slices_per_chunk, (bool, np.bool_)) or not isinstance(slices_per_chunk, (int, np.integer)):
        raise InvalidConfiguration(f"slices_per_chunk must be an integer, got {slices_per_chunk!r}")
    if slices_per_chunk <= 0:
        raise InvalidConfiguration(f"slices_per_chunk must be >= 1, got {slices_per_chunk}")
    return int(slices_per_chunk)


def n_chunks(depth: int, slices_per_chunk: int) -> int:
    s = _check_slices_per_chunk(slices_per_chunk)
    if depth <= 0:
        return 0
    return -(-int(depth) // s)


def chunk_ranges(depth: int, slices_per_chunk: int) -> List[Tuple[int, int]]:
    """Split [0, depth) into consecutive (z0, z1) ranges of slices_per_chunk slices.

    The last range may be shorter. slices_per_chunk >= depth gives a single range.
    """
    s = _check_slices_per_chunk(slices_per_chunk)
    out = []
    for z0 in range(0, int(depth), s):
        out.append((z0, min(z0 + s, int(depth))))
    return out


def check_method(method: str) -> str:
    m = str(method).lower()
    if m not in LABEL_METHODS:
        raise InvalidConfiguration(f"method must be one of {', '.join(LABEL_METHODS)}; got {method!r}")
    return m


def check_workers(n_workers) -> int:
    if n_workers is None:
        return max(1, os.cpu_count() or 1)
    if isinstance(n_workers, bool) or not isinstance(n_workers, (int, np.integer)) or n_workers <= 0:
        raise InvalidConfiguration(f"n_workers must be a positive integer, got {n_workers!r}")
    return int(n_workers)
