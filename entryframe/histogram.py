"""
Fixed-binning 1D histogram produced by the ``histo`` action.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, Optional, Tuple

import numpy as np


@dataclass(eq=False)
class Histogram1D:
    """Equal-width bins over ``[low, high]`` plus under/overflow counters.

    Statistics (``entries``, ``mean``, ``std``) are taken over every filled
    value, including the ones that fell outside the binned range.
    """
    edges: np.ndarray
    counts: np.ndarray = field(default=None)
    underflow: int = 0
    overflow: int = 0
    entries: int = 0
    sum_values: float = 0.0
    sum_squares: float = 0.0

    def __post_init__(self):
        if self.counts is None:
            self.counts = np.zeros(len(self.edges) - 1, dtype=np.int64)

    @classmethod
    def empty(cls, bins: int, range: Tuple[float, float]) -> 'Histogram1D':
        low, high = float(range[0]), float(range[1])
        if bins < 1:
            raise ValueError(f"Histogram needs at least one bin, got {bins}")
        if not high > low:
            raise ValueError(f"Invalid histogram range ({low}, {high})")
        return cls(edges=np.linspace(low, high, bins + 1))

    @classmethod
    def from_values(cls, values: Iterable[float], bins: int,
                    range: Optional[Tuple[float, float]] = None) -> 'Histogram1D':
        """Build a histogram from buffered values, choosing the range if needed."""
        data = np.asarray(list(values), dtype=np.float64)
        if range is None:
            range = auto_range(data)
        hist = cls.empty(bins, range)
        hist.fill_many(data)
        return hist

    @property
    def bins(self) -> int:
        return len(self.counts)

    @property
    def range(self) -> Tuple[float, float]:
        return float(self.edges[0]), float(self.edges[-1])

    @property
    def centers(self) -> np.ndarray:
        return 0.5 * (self.edges[:-1] + self.edges[1:])

    @property
    def mean(self) -> float:
        if self.entries == 0:
            return float('nan')
        return self.sum_values / self.entries

    @property
    def std(self) -> float:
        if self.entries == 0:
            return float('nan')
        variance = self.sum_squares / self.entries - self.mean ** 2
        return float(np.sqrt(max(variance, 0.0)))

    def fill(self, value: float) -> None:
        low, high = self.edges[0], self.edges[-1]
        if value < low:
            self.underflow += 1
        elif value <= high:
            # The upper edge belongs to the last bin, as in numpy.histogram
            index = min(int((value - low) / (high - low) * self.bins), self.bins - 1)
            self.counts[index] += 1
        else:
            # Above the range, or NaN
            self.overflow += 1
        self.entries += 1
        self.sum_values += float(value)
        self.sum_squares += float(value) * float(value)

    def fill_many(self, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=np.float64)
        if values.size == 0:
            return
        low, high = self.range
        counts, _ = np.histogram(values, bins=self.edges)
        below = int(np.count_nonzero(values < low))
        self.counts += counts
        self.underflow += below
        self.overflow += int(values.size - below - counts.sum())
        self.entries += int(values.size)
        self.sum_values += float(values.sum())
        self.sum_squares += float(np.dot(values, values))

    def merge(self, other: 'Histogram1D') -> 'Histogram1D':
        """Bin-wise sum of two histograms with identical binning."""
        if not np.array_equal(self.edges, other.edges):
            raise ValueError("Cannot merge histograms with different binning")
        return Histogram1D(
            edges=self.edges,
            counts=self.counts + other.counts,
            underflow=self.underflow + other.underflow,
            overflow=self.overflow + other.overflow,
            entries=self.entries + other.entries,
            sum_values=self.sum_values + other.sum_values,
            sum_squares=self.sum_squares + other.sum_squares,
        )

    def to_numpy(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(counts, edges)`` in the layout of ``numpy.histogram``."""
        return self.counts.copy(), self.edges.copy()


def auto_range(values: np.ndarray) -> Tuple[float, float]:
    """Range covering every value; degenerate inputs get a unit-wide range."""
    finite = values[np.isfinite(values)] if values.size else values
    if finite.size == 0:
        return 0.0, 1.0
    low, high = float(finite.min()), float(finite.max())
    if low == high:
        return low - 0.5, high + 0.5
    return low, high
