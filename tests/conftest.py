"""
Pytest configuration and fixtures for the hybridsvm test suite.

Multi-rank behaviour is tested with ``FakeComm``: one thread per rank,
sharing a barrier for collectives and queues for point-to-point messages.
It implements the subset of the mpi4py communicator API the package uses.
"""

import copy
import logging
import os
import queue
import threading
from collections import defaultdict
from functools import reduce

import numpy as np
import pytest
from scipy import sparse


# ============================================================================
# Fake communicator
# ============================================================================

class _World:
    def __init__(self, size, timeout=60.0):
        self.size = size
        self.timeout = timeout
        self.barrier = threading.Barrier(size, timeout=timeout)
        self.slots = [None] * size
        self.lock = threading.Lock()
        self.queues = defaultdict(queue.Queue)

    def channel(self, source, dest, tag):
        with self.lock:
            return self.queues[(source, dest, tag)]


class FakeComm:
    """Thread-backed stand-in for ``MPI.Comm``."""

    def __init__(self, world, rank):
        self._world = world
        self._rank = rank

    def Get_rank(self):
        return self._rank

    def Get_size(self):
        return self._world.size

    def _exchange(self, value):
        w = self._world
        w.slots[self._rank] = value
        w.barrier.wait()
        values = copy.deepcopy(w.slots)
        w.barrier.wait()
        return values

    # Point-to-point
    def send(self, obj, dest, tag=0):
        self._world.channel(self._rank, dest, tag).put(copy.deepcopy(obj))

    def recv(self, source=0, tag=0):
        return self._world.channel(source, self._rank, tag).get(timeout=self._world.timeout)

    # Object collectives
    def Barrier(self):
        self._world.barrier.wait()

    def bcast(self, obj, root=0):
        values = self._exchange(obj if self._rank == root else None)
        return values[root]

    def gather(self, obj, root=0):
        values = self._exchange(obj)
        return values if self._rank == root else None

    def allreduce(self, obj, op=None):
        return reduce(lambda a, b: a + b, self._exchange(obj))

    def reduce(self, obj, op=None, root=0):
        values = self._exchange(obj)
        return reduce(lambda a, b: a + b, values) if self._rank == root else None

    # Buffer collectives
    def Bcast(self, buf, root=0):
        values = self._exchange(buf if self._rank == root else None)
        if self._rank != root:
            buf[...] = values[root]

    def Allreduce(self, sendbuf, recvbuf, op=None):
        values = self._exchange(sendbuf)
        recvbuf[...] = reduce(lambda a, b: a + b, values)

    def Reduce(self, sendbuf, recvbuf, op=None, root=0):
        values = self._exchange(sendbuf)
        if self._rank == root:
            recvbuf[...] = reduce(lambda a, b: a + b, values)

    def Abort(self, errorcode=1):
        raise RuntimeError(f"Abort({errorcode})")


def run_ranks(size, fn):
    """
    Run ``fn(comm)`` on ``size`` threads and return the per-rank results.

    If any rank raises, the barrier is broken so the others stop waiting,
    and the first error that is not a broken barrier is re-raised.
    """
    world = _World(size)
    results = [None] * size
    errors = [None] * size

    def target(rank):
        try:
            results[rank] = fn(FakeComm(world, rank))
        except BaseException as e:
            errors[rank] = e
            world.barrier.abort()

    threads = [threading.Thread(target=target, args=(r,)) for r in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    real = [e for e in errors if e is not None and not isinstance(e, threading.BrokenBarrierError)]
    if real:
        raise real[0]
    broken = [e for e in errors if e is not None]
    if broken:
        raise broken[0]
    return results


# ============================================================================
# Data helpers
# ============================================================================

def make_separable(n_examples=200, num_features=12, density=0.5, seed=0):
    """Sparse examples labelled by a fixed hyperplane, with a margin."""
    rng = np.random.default_rng(seed)
    w_true = rng.normal(size=num_features)
    rows, labels = [], []
    while len(rows) < n_examples:
        x = rng.normal(size=num_features) * (rng.random(num_features) < density)
        score = x @ w_true
        if abs(score) < 0.5:
            continue
        rows.append(x)
        labels.append(1.0 if score > 0 else 0.0)
    return sparse.csr_matrix(np.array(rows)), np.array(labels)


def write_libsvm(path, features, labels, signed=False):
    """Write a CSR matrix in 1-based LIBSVM format."""
    features = sparse.csr_matrix(features)
    with open(path, 'w') as f:
        for i in range(features.shape[0]):
            lo, hi = features.indptr[i], features.indptr[i + 1]
            label = int(labels[i])
            if signed and label == 0:
                label = -1
            pairs = " ".join(
                f"{j + 1}:{v:.17g}" for j, v in zip(features.indices[lo:hi], features.data[lo:hi])
            )
            f.write(f"{label} {pairs}\n")
    return path


def naive_epoch(features, labels, rate, reg_param, feature_std=None, w0=None):
    """Reference SGD epoch: shrinks every weight after every example."""
    X = features.toarray()
    w = np.zeros(X.shape[1]) if w0 is None else w0.copy()
    shrink = 1.0 - rate * reg_param
    step = rate / shrink
    for x, label in zip(X, labels):
        y = 2.0 * label - 1.0
        if y * (w @ x) < 1.0:
            for j in np.nonzero(x)[0]:
                if feature_std is None:
                    w[j] += y * step * x[j]
                elif feature_std[j] != 0.0:
                    w[j] += y * step * x[j] / feature_std[j] ** 2
        w *= shrink
    return w


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def logger():
    log = logging.getLogger("hybridsvm.tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def separable_data():
    return make_separable()


@pytest.fixture
def libsvm_file(tmp_path, separable_data):
    features, labels = separable_data
    return str(write_libsvm(os.path.join(tmp_path, "train.libsvm"), features, labels, signed=True))


@pytest.fixture
def config_factory(tmp_path):
    """Build a validated config pointing at ``input_path``."""
    from hybridsvm.utils import HybridSVMConfig, validate_config

    def factory(input_path, num_features, **overrides):
        cfg = HybridSVMConfig(
            run_name="test",
            input_path=input_path,
            output_base=str(tmp_path / "runs"),
            num_features=num_features,
            num_workers=2,
            cores_per_executor=2,
            partitions_per_core=1,
            num_iterations=20,
            budget=30,
            reg_param=1e-3,
            spill_dir=str(tmp_path / "spill"),
            generate_plots=False,
        )
        for key, value in overrides.items():
            setattr(cfg, key, value)
        return validate_config(cfg)

    return factory
