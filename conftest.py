import threading

import numpy as np
import pytest
from hypothesis import settings

from entryframe import ArrayColumnReader, ExecutionContext, PartitionPolicy

# Configure hypothesis profiles
settings.register_profile("ci", max_examples=50, deadline=None)
settings.register_profile("dev", max_examples=10, deadline=None)
settings.register_profile("debug", max_examples=1, deadline=None)
settings.load_profile("ci")


def make_tracks(n_entries, seed=1):
    """Variable-length track momenta per entry, Poisson(5) tracks each."""
    rng = np.random.default_rng(seed)
    tracks = []
    for _ in range(n_entries):
        n_tracks = rng.poisson(5)
        tracks.append([float(pt) for pt in np.abs(rng.normal(0, 10, n_tracks))])
    return tracks


class CountingReader(ArrayColumnReader):
    """ArrayColumnReader that records every value read."""

    def __init__(self, columns):
        super().__init__(columns)
        self._count_lock = threading.Lock()
        self.reads = 0
        self.entries_read = set()

    def read_value(self, entry, name):
        with self._count_lock:
            self.reads += 1
            self.entries_read.add(entry)
        return super().read_value(entry, name)


@pytest.fixture
def small_columns():
    """Twenty entries: b1 = index, b2 = index squared, tracks = lists of floats."""
    return {
        'b1': np.arange(20, dtype=np.float64),
        'b2': np.arange(20, dtype=np.int64) ** 2,
        'tracks': make_tracks(20),
    }


@pytest.fixture
def counting_reader(small_columns):
    return CountingReader(small_columns)


@pytest.fixture
def large_columns():
    n = 16000
    return {
        'b1': np.arange(n, dtype=np.float64),
        'b2': np.arange(n, dtype=np.int64) ** 2,
    }


@pytest.fixture(params=[1, 4], ids=['sequential', 'parallel'])
def context(request):
    """Sequential and multi-block parallel execution."""
    return ExecutionContext(
        workers=request.param,
        policy=PartitionPolicy(min_block_entries=3, blocks_per_worker=2),
    )
