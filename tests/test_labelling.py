from __future__ import annotations

import os
import sys

import numpy as np
import pytest
from scipy import ndimage

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from label_merge import EquivalenceForest, merge_chunk_boundaries, resolve_labels
from particle_label import _run_chunks, label_phase
from particle_sizes import largest_particle, particle_sizes
from volume import (
    BACKGROUND,
    FOREGROUND,
    DimensionMismatch,
    InvalidConfiguration,
    causal_offsets,
    chunk_ranges,
    n_chunks,
)


def _random_phases(shape, p_fg, seed):
    rng = np.random.default_rng(seed)
    return np.where(rng.random(shape) < p_fg, FOREGROUND, BACKGROUND).astype(np.uint8)


def _scipy_labels(phases, phase):
    rank = 3 if phase == FOREGROUND else 1
    structure = ndimage.generate_binary_structure(3, rank)
    return ndimage.label(phases == phase, structure=structure)


def _same_partition(ours, theirs) -> bool:
    """True if both label grids split the voxels into the same particles."""
    if not np.array_equal(ours == 0, theirs == 0):
        return False
    pos = ours > 0
    pairs = np.unique(np.stack([ours[pos], theirs[pos]], axis=1), axis=0)
    return (pairs.shape[0] == np.unique(ours[pos]).size == np.unique(theirs[pos]).size)


def test_chunk_ranges_partition_depth():
    assert chunk_ranges(10, 4) == [(0, 4), (4, 8), (8, 10)]
    assert chunk_ranges(8, 4) == [(0, 4), (4, 8)]
    assert chunk_ranges(3, 4) == [(0, 3)]
    assert chunk_ranges(5, 5) == [(0, 5)]
    assert chunk_ranges(0, 2) == []
    assert n_chunks(10, 4) == 3
    for depth in range(1, 20):
        for s in range(1, 8):
            plan = chunk_ranges(depth, s)
            assert plan[0][0] == 0 and plan[-1][1] == depth
            assert all(a[1] == b[0] for a, b in zip(plan, plan[1:]))
            assert all(z1 - z0 == s for z0, z1 in plan[:-1])


@pytest.mark.parametrize("bad", [0, -1, 2.5, "4", True])
def test_chunk_ranges_rejects_bad_size(bad):
    with pytest.raises(InvalidConfiguration):
        chunk_ranges(10, bad)


def test_causal_offsets_are_already_visited():
    for conn, m in ((6, 3), (26, 13)):
        offs = causal_offsets(conn)
        assert offs.shape == (m, 3)
        # raster order z, y, x: every causal neighbour precedes the voxel
        keys = offs[:, 0] * 9 + offs[:, 1] * 3 + offs[:, 2]
        assert (keys < 0).all()
    with pytest.raises(InvalidConfiguration):
        causal_offsets(18)


def test_forest_union_find():
    f = EquivalenceForest(6)
    assert len(f) == 6
    f.union(4, 2)
    f.union(5, 4)
    assert f.find(5) == 2
    assert f.same(2, 5)
    assert not f.same(1, 2)
    f.union(1, 5)
    assert f.find(2) == 1 and f.find(4) == 1
    with pytest.raises(IndexError):
        f.find(7)


@pytest.mark.parametrize("method", ["linear", "multithreaded", "mapped"])
@pytest.mark.parametrize("phase", [FOREGROUND, BACKGROUND])
@pytest.mark.parametrize("slices_per_chunk", [1, 3, 7, 50])
def test_labels_match_scipy(method, phase, slices_per_chunk):
    phases = _random_phases((13, 11, 9), 0.35, seed=7)
    chunks = chunk_ranges(phases.shape[0], slices_per_chunk)
    labels, n = label_phase(phases, phase, chunks, method=method, n_workers=3)
    ref, k = _scipy_labels(phases, phase)
    assert n == k
    assert labels.max() == n
    assert _same_partition(labels, ref)


def test_labels_numbered_in_raster_order():
    phases = _random_phases((9, 10, 11), 0.3, seed=3)
    labels, n = label_phase(phases, FOREGROUND, chunk_ranges(9, 2), method="multithreaded", n_workers=4)
    flat = labels.ravel()
    vals, first = np.unique(flat, return_index=True)
    order = vals[vals > 0][np.argsort(first[vals > 0])]
    assert np.array_equal(order, np.arange(1, n + 1))


def test_methods_give_identical_labels():
    phases = _random_phases((16, 12, 12), 0.4, seed=11)
    chunks = chunk_ranges(16, 3)
    for phase in (FOREGROUND, BACKGROUND):
        ref, n_ref = label_phase(phases, phase, chunks, method="linear")
        for method in ("multithreaded", "mapped"):
            labels, n = label_phase(phases, phase, chunks, method=method, n_workers=4)
            assert n == n_ref
            assert np.array_equal(labels, ref)


def test_workers_claim_whole_chunks_once():
    chunks = chunk_ranges(10, 3)
    seen = []

    def work(c):
        seen.append(chunks[c])

    _run_chunks(len(chunks), work, n_workers=3)
    assert sorted(seen) == [(0, 3), (3, 6), (6, 9), (9, 10)]


def test_diagonal_contact_across_chunk_boundary():
    phases = np.zeros((4, 3, 3), dtype=np.uint8)
    phases[1, 0, 0] = FOREGROUND
    phases[2, 1, 1] = FOREGROUND
    chunks = chunk_ranges(4, 2)

    _, n = label_phase(phases, FOREGROUND, chunks, method="multithreaded", n_workers=2)
    assert n == 1
    _, n = label_phase(phases, FOREGROUND, chunks, method="mapped", n_workers=2)
    assert n == 1

    # the same two voxels as background are only corner-adjacent: two particles
    inverted = np.where(phases == FOREGROUND, BACKGROUND, FOREGROUND).astype(np.uint8)
    _, n = label_phase(inverted, BACKGROUND, chunks, method="mapped", n_workers=2)
    assert n == 2


def test_u_shape_merges_inside_one_chunk():
    # two arms first seen as separate labels, joined further down the raster
    phases = np.zeros((1, 4, 5), dtype=np.uint8)
    phases[0, 0:3, 0] = FOREGROUND
    phases[0, 0:3, 4] = FOREGROUND
    phases[0, 3, :] = FOREGROUND
    labels, n = label_phase(phases, FOREGROUND, [(0, 1)], method="linear")
    assert n == 1
    assert set(np.unique(labels)) == {0, 1}


def test_empty_phase_gives_zero_labels():
    phases = np.zeros((5, 4, 3), dtype=np.uint8)
    for method in ("linear", "multithreaded", "mapped"):
        labels, n = label_phase(phases, FOREGROUND, chunk_ranges(5, 2), method=method)
        assert n == 0
        assert not labels.any()
        sizes = particle_sizes(labels, n)
        assert sizes.tolist() == [60]
        assert largest_particle(sizes) == 0


def test_unknown_method_rejected():
    phases = np.zeros((2, 2, 2), dtype=np.uint8)
    with pytest.raises(InvalidConfiguration):
        label_phase(phases, FOREGROUND, [(0, 2)], method="octree")
    with pytest.raises(InvalidConfiguration):
        label_phase(phases, FOREGROUND, [(0, 2)], method="mapped", n_workers=0)


def test_bad_chunk_plan_is_fatal():
    phases = np.zeros((6, 2, 2), dtype=np.uint8)
    with pytest.raises(DimensionMismatch):
        label_phase(phases, FOREGROUND, [(0, 2), (3, 6)], method="mapped")
    with pytest.raises(DimensionMismatch):
        label_phase(phases, FOREGROUND, [(0, 4)], method="multithreaded")


def test_merge_and_resolve_by_hand():
    # two chunks each holding half of a column, labelled independently
    labels = np.zeros((4, 1, 1), dtype=np.int64)
    labels[:2, 0, 0] = 1
    labels[2:, 0, 0] = 5
    forest = EquivalenceForest(5)
    assert merge_chunk_boundaries(labels, forest, [(0, 2), (2, 4)], connectivity=6) == 1
    assert forest.same(1, 5)
    n = resolve_labels(labels, forest)
    assert n == 1
    assert labels.ravel().tolist() == [1, 1, 1, 1]


def test_resolve_renumbers_by_first_appearance():
    labels = np.array([[[0, 9, 4], [9, 0, 2]]], dtype=np.int64)
    forest = EquivalenceForest(9)
    n = resolve_labels(labels, forest)
    assert n == 3
    assert labels.ravel().tolist() == [0, 1, 2, 1, 0, 3]


def test_size_table_sums_to_volume():
    phases = _random_phases((10, 8, 7), 0.45, seed=5)
    chunks = chunk_ranges(10, 3)
    for phase in (FOREGROUND, BACKGROUND):
        labels, n = label_phase(phases, phase, chunks, method="mapped", n_workers=2)
        serial = particle_sizes(labels, n)
        parallel = particle_sizes(labels, n, chunks, n_workers=3)
        assert np.array_equal(serial, parallel)
        assert serial.sum() == phases.size
        assert serial[0] == np.count_nonzero(phases != phase)
        ref, k = _scipy_labels(phases, phase)
        assert sorted(serial[1:].tolist()) == sorted(np.bincount(ref.ravel())[1:].tolist())


def test_size_table_rejects_stray_labels():
    labels = np.zeros((2, 2, 2), dtype=np.int64)
    labels[0, 0, 0] = 3
    with pytest.raises(DimensionMismatch):
        particle_sizes(labels, 2)
