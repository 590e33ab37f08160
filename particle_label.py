from __future__ import annotations

import itertools
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Tuple

import numpy as np
from numba import njit

from label_merge import (
    EquivalenceForest,
    merge_chunk_boundaries,
    resolve_labels,
    uf_union,
)
from volume import (
    DimensionMismatch,
    causal_offsets,
    check_method,
    check_workers,
    connectivity_of,
)


@njit(nogil=True, cache=True)
def _label_chunk(phases, labels, parent, target, neigh, z0, z1, first_label):
    """Two-pass union-find labelling of slices [z0, z1) for voxels equal to target.

    Fresh labels start at first_label; neighbours below z0 are ignored so a chunk
    never reads slices owned by another worker. Returns the number of labels issued.
    """
    nz, ny, nx = phases.shape
    next_label = first_label
    for z in range(z0, z1):
        for y in range(ny):
            for x in range(nx):
                if phases[z, y, x] != target:
                    continue
                lbl = 0
                for t in range(neigh.shape[0]):
                    zz = z + neigh[t, 0]
                    yy = y + neigh[t, 1]
                    xx = x + neigh[t, 2]
                    if zz < z0 or yy < 0 or xx < 0 or yy >= ny or xx >= nx:
                        continue
                    nb = labels[zz, yy, xx]
                    if nb != 0:
                        if lbl == 0 or nb < lbl:
                            lbl = nb
                if lbl == 0:
                    lbl = next_label
                    next_label += 1
                labels[z, y, x] = lbl

                for t in range(neigh.shape[0]):
                    zz = z + neigh[t, 0]
                    yy = y + neigh[t, 1]
                    xx = x + neigh[t, 2]
                    if zz < z0 or yy < 0 or xx < 0 or yy >= ny or xx >= nx:
                        continue
                    nb = labels[zz, yy, xx]
                    if nb != 0 and nb != lbl:
                        uf_union(parent, lbl, nb)
    return next_label - first_label


def _run_chunks(n_chunks: int, work: Callable[[int], None], n_workers: int) -> None:
    """Run work(c) for every chunk index, claimed one at a time from a shared counter.

    The claimed unit is a whole chunk of slices_per_chunk slices, so each worker
    labels contiguous slice ranges; slices_per_chunk=1 claims single slices.

    Blocks until every worker has finished; the first worker exception is re-raised.
    """
    if n_workers <= 1 or n_chunks <= 1:
        for c in range(n_chunks):
            work(c)
        return

    # itertools.count hands out each index exactly once across threads
    counter = itertools.count()

    def worker():
        claimed = 0
        while True:
            c = next(counter)
            if c >= n_chunks:
                return claimed
            work(c)
            claimed += 1

    with ThreadPoolExecutor(max_workers=min(n_workers, n_chunks)) as ex:
        futures = [ex.submit(worker) for _ in range(min(n_workers, n_chunks))]
        for f in futures:
            f.result()


def _label_shared(phases, target, neigh, chunks, n_workers):
    """linear / multithreaded: one parent array indexed by voxel-offset labels.

    Chunk c issues labels from z0*H*W + 1 upward, so chunks own disjoint label
    ranges (and parent entries) without coordination.
    """
    nz, ny, nx = phases.shape
    plane = ny * nx
    labels = np.zeros(phases.shape, dtype=np.int64)
    forest = EquivalenceForest(phases.size)

    def work(c):
        z0, z1 = chunks[c]
        _label_chunk(phases, labels, forest.parent, target, neigh, z0, z1, z0 * plane + 1)

    _run_chunks(len(chunks), work, n_workers)
    return labels, forest


def _label_mapped(phases, target, neigh, chunks, n_workers):
    """mapped: private per-chunk forests, compacted, then offset into one small forest.

    A global label is base[c] + local label, so the global forest spans only the
    labels that survived per-chunk compaction.
    """
    labels = np.zeros(phases.shape, dtype=np.int64)
    counts = [0] * len(chunks)

    def work(c):
        z0, z1 = chunks[c]
        slab_phases = phases[z0:z1]
        slab = labels[z0:z1]
        local = EquivalenceForest(slab.size)
        _label_chunk(slab_phases, slab, local.parent, target, neigh, 0, z1 - z0, 1)
        counts[c] = resolve_labels(slab, local)

    _run_chunks(len(chunks), work, n_workers)

    bases = np.concatenate(([0], np.cumsum(counts, dtype=np.int64)))
    for c, (z0, z1) in enumerate(chunks):
        if bases[c] == 0:
            continue
        slab = labels[z0:z1]
        pos = slab > 0
        slab[pos] += bases[c]
    forest = EquivalenceForest(int(bases[-1]))
    return labels, forest


def label_phase(phases: np.ndarray,
                phase: int,
                chunks: List[Tuple[int, int]],
                method: str = "mapped",
                n_workers: int | None = None) -> Tuple[np.ndarray, int]:
    """Label every particle of `phase` in a [z, y, x] phase array.

    - phase: FOREGROUND (26-connected) or BACKGROUND (6-connected)
    - chunks: (z0, z1) ranges partitioning the depth axis; ignored for "linear"
    - method: "linear", "multithreaded" or "mapped"
    - n_workers: worker threads for the chunk pass (default: CPU count)

    Returns (labels, N): int64 labels compacted to 1..N in raster order of first
    appearance, 0 where the voxel is not of `phase`.
    """
    method = check_method(method)
    n_workers = check_workers(n_workers)
    connectivity = connectivity_of(phase)
    if phases.ndim != 3:
        raise DimensionMismatch(f"phase array must be 3-D, got ndim={phases.ndim}")
    phases = np.ascontiguousarray(phases)
    depth = phases.shape[0]
    if method == "linear":
        chunks = [(0, depth)] if depth > 0 else []
        n_workers = 1
    _check_plan(chunks, depth)

    neigh = causal_offsets(connectivity)
    target = np.uint8(phase)
    if method == "mapped":
        labels, forest = _label_mapped(phases, target, neigh, chunks, n_workers)
    else:
        labels, forest = _label_shared(phases, target, neigh, chunks, n_workers)

    merge_chunk_boundaries(labels, forest, chunks, connectivity)
    n = resolve_labels(labels, forest)
    return labels, n


def _check_plan(chunks: List[Tuple[int, int]], depth: int) -> None:
    z = 0
    for (z0, z1) in chunks:
        if z0 != z or z1 <= z0:
            raise DimensionMismatch(f"chunk plan has a gap or overlap at z={z}: ({z0}, {z1})")
        z = z1
    if z != depth:
        raise DimensionMismatch(f"chunk plan covers [0, {z}) but depth is {depth}")
