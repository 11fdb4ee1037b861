"""
Tests for MPI communication utilities, run against the threaded FakeComm.
"""

import numpy as np
import pytest

from conftest import run_ranks
from hybridsvm.mpi_utils import (
    allreduce_sum,
    chunked_bcast,
    distribute_indices,
    gather_to_root,
    reduce_sum,
    tree_allreduce,
    tree_combine,
    tree_reduce,
)


# ============================================================================
# Work distribution
# ============================================================================

@pytest.mark.parametrize("n_total,size", [(8, 4), (10, 4), (3, 5), (1, 1)])
def test_distribute_indices_covers_range(n_total, size):
    blocks = [distribute_indices(r, n_total, size) for r in range(size)]
    assert blocks[0][0] == 0
    assert blocks[-1][1] == n_total
    for (s0, e0, n0), (s1, _, _) in zip(blocks, blocks[1:]):
        assert e0 == s1
        assert n0 == e0 - s0
    counts = [b[2] for b in blocks]
    assert max(counts) - min(counts) <= 1


def test_distribute_indices_remainder_goes_first():
    assert [distribute_indices(r, 10, 4)[2] for r in range(4)] == [3, 3, 2, 2]


# ============================================================================
# Tree reductions
# ============================================================================

class TestTreeCombine:

    def test_empty(self):
        assert tree_combine([], lambda a, b: a + b) is None

    def test_single(self):
        assert tree_combine([7], lambda a, b: a + b) == 7

    @pytest.mark.parametrize("n", [2, 3, 5, 8, 13])
    def test_preserves_order(self, n):
        items = [[i] for i in range(n)]
        assert tree_combine(items, lambda a, b: a + b) == list(range(n))

    def test_input_not_modified(self):
        items = [[0], [1], [2]]
        tree_combine(items, lambda a, b: a + b)
        assert items == [[0], [1], [2]]


class TestTreeReduce:

    @pytest.mark.parametrize("size", [1, 2, 3, 4, 5, 7])
    def test_rank_order_on_root(self, size):
        results = run_ranks(size, lambda comm: tree_reduce(comm, [comm.Get_rank()], lambda a, b: a + b))
        assert results[0] == list(range(size))
        assert all(r is None for r in results[1:])

    def test_nonzero_root(self):
        results = run_ranks(4, lambda comm: tree_reduce(comm, [comm.Get_rank()], lambda a, b: a + b, root=2))
        assert sorted(results[2]) == [0, 1, 2, 3]
        assert results[0] is None

    def test_none_is_identity(self):
        def fn(comm):
            value = None if comm.Get_rank() % 2 else comm.Get_rank() + 1
            return tree_reduce(comm, value, lambda a, b: a + b)

        assert run_ranks(5, fn)[0] == 1 + 3 + 5

    def test_allreduce_everywhere(self):
        results = run_ranks(3, lambda comm: tree_allreduce(comm, comm.Get_rank() * 10, max))
        assert results == [20, 20, 20]


# ============================================================================
# Broadcast / gather / sums
# ============================================================================

class TestCollectives:

    def test_chunked_bcast_small(self):
        data = np.arange(6, dtype=np.float64).reshape(2, 3)

        def fn(comm):
            return chunked_bcast(comm, data if comm.Get_rank() == 0 else None)

        for result in run_ranks(3, fn):
            np.testing.assert_array_equal(result, data)

    def test_chunked_bcast_many_chunks(self):
        data = np.random.default_rng(0).normal(size=(5, 7))

        def fn(comm):
            return chunked_bcast(comm, data if comm.Get_rank() == 0 else None, max_bytes=24)

        for result in run_ranks(3, fn):
            assert result.shape == (5, 7)
            np.testing.assert_array_equal(result, data)

    def test_gather_to_root(self):
        results = run_ranks(3, lambda comm: gather_to_root(comm, [comm.Get_rank()] * comm.Get_rank()))
        assert results[0] == [1, 2, 2]
        assert results[1] is None

    def test_allreduce_sum(self):
        results = run_ranks(4, lambda comm: allreduce_sum(comm, np.full(3, comm.Get_rank())))
        for r in results:
            np.testing.assert_array_equal(r, [6.0, 6.0, 6.0])

    def test_reduce_sum(self):
        results = run_ranks(3, lambda comm: reduce_sum(comm, np.ones(2)))
        np.testing.assert_array_equal(results[0], [3.0, 3.0])
        assert results[1] is None and results[2] is None
