"""
Label equivalences and their resolution.

Chunks are labelled independently, so a particle crossing a chunk boundary
carries one label per chunk. This module unions those labels across the
boundary slice pairs and compacts the label space to 1..N.
"""

from __future__ import annotations

from typing import List, Tuple

import numpy as np
from numba import njit

from volume import DimensionMismatch, causal_offsets


@njit(inline='always', nogil=True)
def uf_find(parent, x):
    while parent[x] != x:
        parent[x] = parent[parent[x]]
        x = parent[x]
    return x


@njit(inline='always', nogil=True)
def uf_union(parent, a, b):
    # the smaller root wins so roots are always the lowest label of their set
    ra = uf_find(parent, a)
    rb = uf_find(parent, b)
    if ra < rb:
        parent[rb] = ra
    elif rb < ra:
        parent[ra] = rb


class EquivalenceForest:
    """Union-find over label ids 0..n_labels backed by an int64 parent array."""

    __slots__ = ("parent",)

    def __init__(self, n_labels: int):
        self.parent = np.arange(int(n_labels) + 1, dtype=np.int64)

    def __len__(self) -> int:
        return self.parent.size - 1

    def _check(self, x: int) -> np.int64:
        if x < 0 or x >= self.parent.size:
            raise IndexError(f"label {x} outside forest of {len(self)} labels")
        return np.int64(x)

    def find(self, x: int) -> int:
        return int(uf_find(self.parent, self._check(x)))

    def union(self, a: int, b: int):
        uf_union(self.parent, self._check(a), self._check(b))

    def same(self, a: int, b: int) -> bool:
        return self.find(a) == self.find(b)


@njit(nogil=True, cache=True)
def _merge_slice_pair(labels, parent, z, neigh):
    """Union labels of slice z with their labelled neighbours in slice z-1."""
    nz, ny, nx = labels.shape
    for y in range(ny):
        for x in range(nx):
            lbl = labels[z, y, x]
            if lbl == 0:
                continue
            for t in range(neigh.shape[0]):
                if neigh[t, 0] != -1:
                    continue
                yy = y + neigh[t, 1]
                xx = x + neigh[t, 2]
                if yy < 0 or xx < 0 or yy >= ny or xx >= nx:
                    continue
                nb = labels[z - 1, yy, xx]
                if nb != 0 and nb != lbl:
                    uf_union(parent, lbl, nb)


@njit(nogil=True, cache=True)
def _resolve_flat(flat, parent):
    # Pass 1: every label to its root
    for idx in range(flat.size):
        lbl = flat[idx]
        if lbl != 0:
            flat[idx] = uf_find(parent, lbl)

    # Pass 2: roots to 1..N in order of first appearance
    lut = np.zeros(parent.size, dtype=np.int64)
    n = 0
    for idx in range(flat.size):
        r = flat[idx]
        if r != 0:
            if lut[r] == 0:
                n += 1
                lut[r] = n
            flat[idx] = lut[r]
    return n


def merge_chunk_boundaries(labels: np.ndarray,
                           forest: EquivalenceForest,
                           chunks: List[Tuple[int, int]],
                           connectivity: int) -> int:
    """Union labels touching across every internal chunk boundary.

    Returns the number of boundaries visited. Must run after all chunks are labelled.
    """
    if labels.ndim != 3:
        raise DimensionMismatch(f"label grid must be 3-D, got ndim={labels.ndim}")
    if chunks and chunks[-1][1] != labels.shape[0]:
        raise DimensionMismatch(
            f"chunk plan ends at z={chunks[-1][1]} but label grid depth is {labels.shape[0]}"
        )
    neigh = causal_offsets(connectivity)
    visited = 0
    for (z0, _z1) in chunks[1:]:
        _merge_slice_pair(labels, forest.parent, z0, neigh)
        visited += 1
    return visited


def resolve_labels(labels: np.ndarray, forest: EquivalenceForest) -> int:
    """Replace labels by their roots and renumber to 1..N in raster order, in place.

    Returns N. Single-threaded: nothing else may touch the forest meanwhile.
    """
    if labels.size == 0:
        return 0
    if not labels.flags.c_contiguous:
        raise DimensionMismatch("label grid must be C-contiguous")
    flat = labels.reshape(-1)
    if int(flat.max()) >= forest.parent.size:
        raise DimensionMismatch(
            f"label {int(flat.max())} exceeds forest of {len(forest)} labels"
        )
    return int(_resolve_flat(flat, forest.parent))
