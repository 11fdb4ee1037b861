"""
MPI communication utilities.

Provides helper functions for distributed computing:
- Index distribution across ranks
- Pairwise tree reductions (within a rank and across ranks)
- Chunked broadcasts (avoiding 32-bit overflow)
- Gathers and sum-allreduces

Nothing here imports mpi4py at module level; every function takes the
communicator as an argument so it can run under ``mpirun`` or against any
object exposing the same methods.
"""

import numpy as np
from typing import Any, Callable, List, Optional, Sequence


# =============================================================================
# LAZY MPI IMPORT
# =============================================================================

MPI = None


def _get_mpi():
    """Lazily import MPI only when a real communicator is needed."""
    global MPI
    if MPI is None:
        from mpi4py import MPI as _MPI
        MPI = _MPI
    return MPI


def get_world_comm():
    """Return ``MPI.COMM_WORLD``."""
    return _get_mpi().COMM_WORLD


# =============================================================================
# WORK DISTRIBUTION
# =============================================================================

def distribute_indices(rank: int, n_total: int, size: int) -> tuple:
    """
    Distribute indices across MPI ranks in contiguous blocks.

    The first ``n_total % size`` ranks receive one extra item.

    Args:
        rank: Current MPI rank
        n_total: Total number of items to distribute
        size: Number of MPI ranks

    Returns:
        Tuple of (start_idx, end_idx, n_local)
    """
    n_per_rank = n_total // size
    remainder = n_total % size

    if rank < remainder:
        start = rank * (n_per_rank + 1)
        end = start + n_per_rank + 1
    else:
        start = rank * n_per_rank + remainder
        end = start + n_per_rank

    return start, end, end - start


# =============================================================================
# TREE REDUCTIONS
# =============================================================================

def tree_combine(items: Sequence[Any], combine: Callable[[Any, Any], Any]) -> Optional[Any]:
    """
    Combine a sequence pairwise in a balanced tree.

    Each round combines neighbours ``(0, 1), (2, 3), ...``; an odd element
    is carried to the next round. The left operand always has the lower
    position.

    Args:
        items: Values to combine (not modified)
        combine: Binary function returning the combined value

    Returns:
        The combined value, or None for an empty sequence
    """
    level = list(items)
    if not level:
        return None
    while len(level) > 1:
        nxt = [combine(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)]
        if len(level) % 2 == 1:
            nxt.append(level[-1])
        level = nxt
    return level[0]


def tree_reduce(comm, value: Any, combine: Callable[[Any, Any], Any], root: int = 0,
                tag: int = 77) -> Optional[Any]:
    """
    Binomial-tree reduction of Python objects across ranks.

    At step ``s`` (1, 2, 4, ...) a rank whose relative rank is a multiple of
    ``2s`` receives from ``rel + s`` and combines it as the right operand;
    the sender then drops out. Depth is ``ceil(log2(size))``.

    ``None`` is treated as an identity so ranks without data can take part.

    Args:
        comm: MPI communicator
        value: Local value
        combine: Binary function on two non-None values
        root: Rank that receives the result
        tag: Message tag for point-to-point traffic

    Returns:
        Reduced value on root, None on other ranks
    """
    rank = comm.Get_rank()
    size = comm.Get_size()
    rel = (rank - root) % size

    step = 1
    while step < size:
        if rel % (2 * step) == 0:
            partner = rel + step
            if partner < size:
                other = comm.recv(source=(partner + root) % size, tag=tag)
                value = _combine_optional(value, other, combine)
        else:
            comm.send(value, dest=(rel - step + root) % size, tag=tag)
            return None
        step *= 2

    return value


def tree_allreduce(comm, value: Any, combine: Callable[[Any, Any], Any], root: int = 0) -> Any:
    """Tree-reduce to root, then broadcast the result to every rank."""
    result = tree_reduce(comm, value, combine, root=root)
    return comm.bcast(result, root=root)


def _combine_optional(left, right, combine):
    if left is None:
        return right
    if right is None:
        return left
    return combine(left, right)


# =============================================================================
# BROADCAST / GATHER
# =============================================================================

def chunked_bcast(comm, data, root: int = 0, max_bytes: int = 2**30):
    """
    Broadcast an array of any shape, splitting the flat buffer when needed.

    ``Bcast`` counts elements with a 32-bit int, so a feature vector with
    hundreds of millions of entries has to be sent in pieces.

    Args:
        comm: MPI communicator
        data: Array to send (ignored on non-root ranks)
        root: Sending rank
        max_bytes: Largest single message

    Returns:
        The array on every rank
    """
    rank = comm.Get_rank()

    # Shape and dtype first
    if rank == root:
        data = np.ascontiguousarray(data)
        shape, dtype = data.shape, data.dtype
    else:
        shape, dtype = None, None

    shape = comm.bcast(shape, root=root)
    dtype = comm.bcast(dtype, root=root)

    if rank != root:
        data = np.empty(shape, dtype=dtype)

    itemsize = np.dtype(dtype).itemsize
    total_bytes = int(np.prod(shape)) * itemsize

    if total_bytes <= max_bytes:
        comm.Bcast(data, root=root)
        return data

    # Chunked broadcast over the flattened array
    flat = data.reshape(-1)
    items_per_chunk = max(1, max_bytes // itemsize)

    for start in range(0, flat.shape[0], items_per_chunk):
        end = min(start + items_per_chunk, flat.shape[0])
        if rank == root:
            chunk = np.ascontiguousarray(flat[start:end])
        else:
            chunk = np.empty(end - start, dtype=dtype)
        comm.Bcast(chunk, root=root)
        if rank != root:
            flat[start:end] = chunk

    return data


def gather_to_root(comm, local_items: List[Any], root: int = 0) -> Optional[List[Any]]:
    """
    Gather lists from all ranks and flatten them on root.

    Args:
        comm: MPI communicator
        local_items: Local list
        root: Root rank to gather to

    Returns:
        Concatenated list on root (rank order), None on other ranks
    """
    gathered = comm.gather(local_items, root=root)

    if comm.Get_rank() == root:
        combined = []
        for items in gathered:
            combined.extend(items)
        return combined
    return None


def allreduce_sum(comm, local_array: np.ndarray) -> np.ndarray:
    """
    Element-wise float64 sum of an array over every rank.

    Args:
        comm: MPI communicator
        local_array: This rank's contribution

    Returns:
        The sum, on every rank
    """
    local_array = np.ascontiguousarray(local_array, dtype=np.float64)
    global_array = np.zeros_like(local_array)
    comm.Allreduce(local_array, global_array)
    return global_array


def reduce_sum(comm, local_array: np.ndarray, root: int = 0) -> Optional[np.ndarray]:
    """
    Element-wise float64 sum of an array, delivered to one rank.

    Args:
        comm: MPI communicator
        local_array: Local numpy array
        root: Rank receiving the sum

    Returns:
        Sum on root, None on other ranks
    """
    local_array = np.ascontiguousarray(local_array, dtype=np.float64)
    global_array = np.zeros_like(local_array) if comm.Get_rank() == root else None
    comm.Reduce(local_array, global_array, root=root)
    return global_array
