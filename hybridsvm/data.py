"""
Data loading, partitioning and caching.

This module handles:
- Parsing LIBSVM text files (label idx:value ...)
- Deterministic assignment of records to logical partitions
- Distribution of partitions across MPI ranks
- A per-rank partition cache kept in memory with spill to HDF5
"""

import os
import tempfile
import h5py
import numpy as np
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple
from scipy import sparse

from .mpi_utils import distribute_indices


class DatasetError(ValueError):
    """Raised for malformed records or an unusable (e.g. empty) dataset."""


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class LabeledExample(NamedTuple):
    """One sparse example: label in {0, 1} and its non-zero features."""
    label: float
    indices: np.ndarray
    values: np.ndarray


@dataclass
class Partition:
    """A disjoint slice of the dataset, processed by exactly one task."""
    index: int
    features: sparse.csr_matrix
    labels: np.ndarray

    @property
    def n_examples(self) -> int:
        return self.features.shape[0]

    @property
    def num_features(self) -> int:
        return self.features.shape[1]

    @property
    def nbytes(self) -> int:
        f = self.features
        return f.data.nbytes + f.indices.nbytes + f.indptr.nbytes + self.labels.nbytes

    def examples(self) -> Iterator[LabeledExample]:
        """Iterate examples in partition order."""
        indptr, indices, data = self.features.indptr, self.features.indices, self.features.data
        for i in range(self.n_examples):
            lo, hi = indptr[i], indptr[i + 1]
            yield LabeledExample(float(self.labels[i]), indices[lo:hi], data[lo:hi])


Row = Tuple[float, List[int], List[float]]


def row_nbytes(row: Row) -> int:
    """Bytes a parsed row occupies once stored as CSR (label, indptr entry, nnz)."""
    return 16 + 12 * len(row[1])


def _rows_to_arrays(rows: List[Row]):
    lengths = np.fromiter((len(idx) for _, idx, _ in rows), dtype=np.int64, count=len(rows))
    nnz = int(lengths.sum())
    indices = np.fromiter((j for _, idx, _ in rows for j in idx), dtype=np.int32, count=nnz)
    data = np.fromiter((v for _, _, vals in rows for v in vals), dtype=np.float64, count=nnz)
    labels = np.array([label for label, _, _ in rows], dtype=np.float64)
    return labels, indices, data, lengths


def make_partition(index: int, rows: List[Row], num_features: int) -> Partition:
    """Build a CSR partition from ``(label, indices, values)`` rows."""
    labels, indices, data, lengths = _rows_to_arrays(rows)
    indptr = np.concatenate(([0], np.cumsum(lengths))).astype(np.int64)
    features = sparse.csr_matrix((data, indices, indptr), shape=(len(rows), num_features))
    return Partition(index=index, features=features, labels=labels)


# =============================================================================
# LIBSVM PARSING
# =============================================================================

def parse_libsvm_line(line: str, num_features: int, zero_based: bool = False,
                      location: str = "") -> Optional[Tuple[float, List[int], List[float]]]:
    """
    Parse one LIBSVM record.

    Returns None for blank or comment-only lines. Labels -1/0/1 are accepted;
    -1 is mapped to 0. Indices must be strictly increasing and fall inside
    ``[0, num_features)`` after conversion to 0-based. Explicit zero values
    are kept.

    Raises
    ------
    DatasetError
        On any malformed token.
    """
    line = line.split('#', 1)[0].strip()
    if not line:
        return None

    tokens = line.split()
    try:
        label = float(tokens[0])
    except ValueError:
        raise DatasetError(f"{location}: invalid label {tokens[0]!r}") from None
    if label == -1.0:
        label = 0.0
    elif label not in (0.0, 1.0):
        raise DatasetError(f"{location}: label must be 0/1 (or -1/+1), got {tokens[0]!r}")

    offset = 0 if zero_based else 1
    indices, values = [], []
    prev = -1
    for tok in tokens[1:]:
        idx_str, sep, val_str = tok.partition(':')
        if not sep:
            raise DatasetError(f"{location}: expected index:value, got {tok!r}")
        try:
            idx = int(idx_str) - offset
            val = float(val_str)
        except ValueError:
            raise DatasetError(f"{location}: invalid feature {tok!r}") from None
        if idx < 0 or idx >= num_features:
            raise DatasetError(
                f"{location}: feature index {idx + offset} outside [{offset}, {num_features + offset})"
            )
        if idx <= prev:
            raise DatasetError(f"{location}: feature indices must be strictly increasing")
        prev = idx
        indices.append(idx)
        values.append(val)

    return label, indices, values


def list_input_files(path: str) -> List[str]:
    """A file, or the sorted visible files of a directory (part-00000, ...)."""
    if os.path.isdir(path):
        files = [
            os.path.join(path, name) for name in sorted(os.listdir(path))
            if not name.startswith(('.', '_')) and os.path.isfile(os.path.join(path, name))
        ]
        if not files:
            raise DatasetError(f"No input files in directory: {path}")
        return files
    if not os.path.exists(path):
        raise DatasetError(f"Input path does not exist: {path}")
    return [path]


def iter_libsvm_records(
    path: str,
    num_features: int,
    num_partitions: int,
    owned: range,
    zero_based: bool = False,
) -> Iterator[Tuple[int, Row]]:
    """
    Yield ``(partition_index, row)`` for the records of owned partitions.

    Record ``i`` (0-based, counting only non-blank records across all input
    files in order) belongs to partition ``i % num_partitions``. Records of
    partitions outside ``owned`` are skipped without parsing.
    """
    record = 0
    for file_path in list_input_files(path):
        with open(file_path, 'r') as f:
            for line_no, line in enumerate(f, start=1):
                stripped = line.split('#', 1)[0].strip()
                if not stripped:
                    continue
                p = record % num_partitions
                record += 1
                if p in owned:
                    yield p, parse_libsvm_line(
                        stripped, num_features, zero_based, location=f"{file_path}:{line_no}"
                    )


def read_libsvm_partitions(
    path: str,
    num_features: int,
    num_partitions: int,
    owned: range,
    zero_based: bool = False,
) -> Dict[int, Partition]:
    """
    Read the records of a set of partitions fully into memory.

    Returns
    -------
    dict
        Partition index -> Partition, for every index in ``owned`` (possibly
        empty partitions).
    """
    rows = {p: [] for p in owned}
    for p, row in iter_libsvm_records(path, num_features, num_partitions, owned, zero_based):
        rows[p].append(row)
    return {p: make_partition(p, rows[p], num_features) for p in owned}


# =============================================================================
# PARTITION CACHE
# =============================================================================

class PartitionCache:
    """
    Per-rank store of owned partitions.

    Partitions are kept in memory until ``max_memory_bytes`` is reached;
    later ones are written to an HDF5 file and read back on access. The
    cache is filled once and then only read.

    Parameters
    ----------
    max_memory_bytes : int
        In-memory budget, counting both cached partitions and rows still
        being read by ``fill``.
    spill_path : str, optional
        HDF5 file for spilled partitions (created on first spill).
    """

    def __init__(self, max_memory_bytes: int, spill_path: str = None):
        self.max_memory_bytes = int(max_memory_bytes)
        self.spill_path = spill_path
        self.memory_bytes = 0
        self.peak_bytes = 0
        self._memory: Dict[int, Partition] = {}
        self._spilled: List[int] = []
        self._h5 = None
        self._num_features = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __len__(self) -> int:
        return len(self._memory) + len(self._spilled)

    def __iter__(self) -> Iterator[Partition]:
        for index in self.indices:
            yield self.get(index)

    @property
    def indices(self) -> List[int]:
        return sorted(list(self._memory) + self._spilled)

    @property
    def n_spilled(self) -> int:
        return len(self._spilled)

    @property
    def num_features(self) -> Optional[int]:
        return self._num_features

    def _check_features(self, index: int, num_features: int):
        if self._num_features is None:
            self._num_features = num_features
        elif num_features != self._num_features:
            raise ValueError(
                f"Partition {index} has {num_features} features, expected {self._num_features}"
            )

    def put(self, partition: Partition):
        """Add a partition; spills to disk once the memory budget is used up."""
        if partition.index in self._memory or partition.index in self._spilled:
            raise ValueError(f"Partition {partition.index} already cached")
        self._check_features(partition.index, partition.num_features)

        if self.memory_bytes + partition.nbytes <= self.max_memory_bytes:
            self._memory[partition.index] = partition
            self.memory_bytes += partition.nbytes
            self.peak_bytes = max(self.peak_bytes, self.memory_bytes)
        else:
            self._spill(partition)

    def fill(self, records: Iterable[Tuple[int, Row]], owned: range, num_features: int):
        """
        Stream ``(partition_index, row)`` records into the cache.

        Rows are buffered per partition. As soon as the buffers would push
        the cache past ``max_memory_bytes``, the largest buffer is appended
        to the spill file and its partition stays on disk from then on.
        Partitions never spilled become CSR once ``records`` is exhausted.
        ``peak_bytes`` records the most that was held after each row.
        """
        for p in owned:
            if p in self._memory or p in self._spilled:
                raise ValueError(f"Partition {p} already cached")
            self._check_features(p, num_features)

        buffers = {p: [] for p in owned}
        sizes = dict.fromkeys(owned, 0)
        buffered = 0

        for p, row in records:
            nbytes = row_nbytes(row)
            buffers[p].append(row)
            sizes[p] += nbytes
            buffered += nbytes
            while self.memory_bytes + buffered > self.max_memory_bytes:
                largest = max(sizes, key=sizes.get)
                self._append(largest, *_rows_to_arrays(buffers[largest]))
                buffers[largest] = []
                buffered -= sizes[largest]
                sizes[largest] = 0
            self.peak_bytes = max(self.peak_bytes, self.memory_bytes + buffered)

        for p in owned:
            rows = buffers.pop(p)
            buffered -= sizes[p]
            if p in self._spilled:
                if rows:
                    self._append(p, *_rows_to_arrays(rows))
            else:
                partition = make_partition(p, rows, num_features)
                if self.memory_bytes + partition.nbytes + buffered > self.max_memory_bytes:
                    self._spill(partition)
                else:
                    self.put(partition)
            self.peak_bytes = max(self.peak_bytes, self.memory_bytes + buffered)

    def get(self, index: int) -> Partition:
        if index in self._memory:
            return self._memory[index]
        if index not in self._spilled:
            raise KeyError(f"Partition {index} is not cached on this rank")
        grp = self._h5[_group_name(index)]
        features = sparse.csr_matrix(
            (grp["data"][()], grp["indices"][()], grp["indptr"][()]),
            shape=tuple(grp.attrs["shape"]),
        )
        return Partition(index=index, features=features, labels=grp["labels"][()])

    def n_examples(self) -> int:
        """Total examples held by this rank."""
        total = sum(p.n_examples for p in self._memory.values())
        total += sum(int(self._h5[_group_name(i)].attrs["shape"][0]) for i in self._spilled)
        return total

    def _spill(self, partition: Partition):
        f = partition.features
        self._append(partition.index, partition.labels, f.indices, f.data, np.diff(f.indptr))

    def _append(self, index: int, labels, indices, data, lengths):
        """Append rows to a partition's HDF5 group, creating it on first use."""
        if self.spill_path is None:
            raise DatasetError(
                f"Partition {index} exceeds the memory budget and no spill path is set"
            )
        if self._h5 is None:
            os.makedirs(os.path.dirname(os.path.abspath(self.spill_path)), exist_ok=True)
            self._h5 = h5py.File(self.spill_path, 'w')

        name = _group_name(index)
        if name not in self._h5:
            grp = self._h5.create_group(name)
            for key, dtype in (("data", np.float64), ("indices", np.int32), ("labels", np.float64)):
                grp.create_dataset(key, shape=(0,), maxshape=(None,), dtype=dtype, chunks=(_CHUNK,))
            grp.create_dataset("indptr", data=np.zeros(1, dtype=np.int64), maxshape=(None,),
                               chunks=(_CHUNK,))
            self._spilled.append(index)
        grp = self._h5[name]

        nnz = grp["data"].shape[0]
        _extend(grp["data"], data)
        _extend(grp["indices"], indices)
        _extend(grp["labels"], labels)
        _extend(grp["indptr"], nnz + np.cumsum(lengths))
        grp.attrs["shape"] = np.array([grp["labels"].shape[0], self._num_features], dtype=np.int64)
        self._h5.flush()

    def close(self):
        """Drop in-memory partitions and delete the spill file."""
        self._memory.clear()
        if self._h5 is not None:
            self._h5.close()
            self._h5 = None
            if os.path.exists(self.spill_path):
                os.remove(self.spill_path)
        self._spilled = []
        self.memory_bytes = 0


_CHUNK = 4096


def _extend(dataset, values):
    n_new = len(values)
    if n_new == 0:
        return
    n_old = dataset.shape[0]
    dataset.resize((n_old + n_new,))
    dataset[n_old:] = values


def _group_name(index: int) -> str:
    return f"partition_{index:06d}"


# =============================================================================
# DISTRIBUTED LOADING
# =============================================================================

def build_partition_cache(cfg, comm, logger) -> PartitionCache:
    """
    Load this rank's partitions into a ``PartitionCache``.

    Partitions ``0 .. cfg.num_partitions - 1`` are split across ranks in
    contiguous blocks. Every rank scans the input but parses only its own
    records.

    Raises
    ------
    DatasetError
        On every rank if the whole dataset holds no example.
    """
    rank = comm.Get_rank()
    size = comm.Get_size()

    start, end, _ = distribute_indices(rank, cfg.num_partitions, size)
    if rank == 0:
        logger.info(f"Loading {cfg.input_path} into {cfg.num_partitions} partitions over {size} ranks")
    logger.debug(f"Rank {rank}: partitions [{start}, {end})")

    spill_dir = cfg.spill_dir or tempfile.gettempdir()
    spill_path = os.path.join(spill_dir, f"hybridsvm_cache_{os.getpid()}_rank{rank}.h5")
    cache = PartitionCache(int(cfg.max_memory_mb * 1024 * 1024), spill_path)

    owned = range(start, end)
    try:
        records = iter_libsvm_records(
            cfg.input_path, cfg.num_features, cfg.num_partitions, owned, zero_based=cfg.zero_based,
        )
        cache.fill(records, owned, cfg.num_features)
    except Exception:
        cache.close()
        raise

    n_local_examples = cache.n_examples()
    n_total = comm.allreduce(n_local_examples)

    if cache.n_spilled:
        logger.info(f"Rank {rank}: spilled {cache.n_spilled}/{len(cache)} partitions to {spill_path}")
    logger.debug(f"Rank {rank}: peak cache memory {cache.peak_bytes:,} bytes")

    if n_total == 0:
        cache.close()
        raise DatasetError(f"Dataset is empty: {cfg.input_path}")

    if rank == 0:
        logger.info(f"  Total examples: {n_total:,}")

    return cache
