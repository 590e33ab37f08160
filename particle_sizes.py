from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

import numpy as np

from volume import DimensionMismatch


def _tally(labels: np.ndarray, n_labels: int) -> np.ndarray:
    cnt = np.bincount(labels.ravel(), minlength=n_labels + 1).astype(np.int64)
    if cnt.size != n_labels + 1:
        raise DimensionMismatch(
            f"label grid holds label {cnt.size - 1} but only {n_labels} labels were issued"
        )
    return cnt


def particle_sizes(labels: np.ndarray,
                   n_labels: int,
                   chunks: Optional[List[Tuple[int, int]]] = None,
                   n_workers: int = 1) -> np.ndarray:
    """Voxel count per label; index 0 counts the voxels of the other phase.

    With several chunks and workers, one partial table per chunk is computed in
    the pool and the partials are summed. The result always sums to labels.size.
    """
    if chunks and len(chunks) > 1 and n_workers > 1:
        with ThreadPoolExecutor(max_workers=min(n_workers, len(chunks))) as ex:
            partials = list(ex.map(lambda zz: _tally(labels[zz[0]:zz[1]], n_labels), chunks))
        sizes = np.zeros(n_labels + 1, dtype=np.int64)
        for p in partials:
            if p.shape != sizes.shape:
                raise DimensionMismatch(f"partial size table {p.shape} != {sizes.shape}")
            sizes += p
    else:
        sizes = _tally(labels, n_labels)

    if int(sizes.sum()) != labels.size:
        raise DimensionMismatch(
            f"particle sizes sum to {int(sizes.sum())} but the volume has {labels.size} voxels"
        )
    return sizes


def largest_particle(sizes: np.ndarray) -> int:
    """Label of the biggest particle (lowest label on ties), 0 if there is none."""
    if sizes.size <= 1:
        return 0
    return int(np.argmax(sizes[1:])) + 1
