"""
Per-partition accumulators for booked actions.

One accumulator instance is created per action per block and is only touched
by the worker processing that block. After every block has finished the
engine folds them together, in block order, with ``merge`` and calls
``finalize`` once on the result.
"""

from __future__ import annotations
import warnings
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from .core import ActionKind, numeric_values
from .graph import Node
from .histogram import Histogram1D


class Accumulator(ABC):
    """Partial state of one action over one block of entries."""

    kind: ActionKind

    def __init__(self, node: Node):
        self.node_id = node.id
        self.columns = node.inputs
        self.updates = 0

    @property
    def column(self) -> Optional[str]:
        return self.columns[0] if self.columns else None

    @abstractmethod
    def update(self, values: Tuple[Any, ...]) -> None:
        """Consume the input values of one entry."""

    @abstractmethod
    def merge(self, other: 'Accumulator') -> 'Accumulator':
        """Fold ``other`` (a later block) into this accumulator and return it."""

    @abstractmethod
    def finalize(self) -> Any:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(node={self.node_id}, updates={self.updates})"


class CountAccumulator(Accumulator):
    kind = ActionKind.COUNT

    def update(self, values):
        self.updates += 1

    def merge(self, other):
        self.updates += other.updates
        return self

    def finalize(self) -> int:
        return self.updates


class ExtremumAccumulator(Accumulator):
    """Running minimum or maximum with NaN values skipped.

    Finalizes to ``None`` when no value was seen and to ``nan`` when every
    value seen was NaN.
    """

    def __init__(self, node: Node):
        super().__init__(node)
        self.best: Any = None
        self.saw_nan = False

    def _better(self, candidate, current) -> bool:
        raise NotImplementedError

    def update(self, values):
        self.updates += 1
        for value in numeric_values(values[0], self.column):
            if value != value:
                self.saw_nan = True
            elif self.best is None or self._better(value, self.best):
                self.best = value

    def merge(self, other):
        self.updates += other.updates
        self.saw_nan = self.saw_nan or other.saw_nan
        if other.best is not None and (self.best is None or self._better(other.best, self.best)):
            self.best = other.best
        return self

    def finalize(self):
        if self.best is None and self.saw_nan:
            return float('nan')
        return self.best


class MinAccumulator(ExtremumAccumulator):
    kind = ActionKind.MIN

    def _better(self, candidate, current) -> bool:
        return candidate < current


class MaxAccumulator(ExtremumAccumulator):
    kind = ActionKind.MAX

    def _better(self, candidate, current) -> bool:
        return candidate > current


class MeanAccumulator(Accumulator):
    kind = ActionKind.MEAN

    def __init__(self, node: Node):
        super().__init__(node)
        self.total = 0.0
        self.n = 0

    def update(self, values):
        self.updates += 1
        for value in numeric_values(values[0], self.column):
            self.total += float(value)
            self.n += 1

    def merge(self, other):
        self.updates += other.updates
        self.total += other.total
        self.n += other.n
        return self

    def finalize(self) -> float:
        if self.n == 0:
            warnings.warn(f"Mean of '{self.column}' over zero entries", RuntimeWarning)
            return float('nan')
        return self.total / self.n


class HistoAccumulator(Accumulator):
    """Fills bins directly when the range is known, otherwise buffers values."""
    kind = ActionKind.HISTO

    def __init__(self, node: Node, bins: int = 128, range: Optional[Tuple[float, float]] = None):
        super().__init__(node)
        self.bins = bins
        self.range = range
        self.histogram = Histogram1D.empty(bins, range) if range is not None else None
        self.buffer: List[float] = []

    def update(self, values):
        self.updates += 1
        items = numeric_values(values[0], self.column)
        if self.histogram is not None:
            for value in items:
                self.histogram.fill(value)
        else:
            self.buffer.extend(float(v) for v in items)

    def merge(self, other):
        self.updates += other.updates
        if self.histogram is not None:
            self.histogram = self.histogram.merge(other.histogram)
        else:
            self.buffer.extend(other.buffer)
        return self

    def finalize(self) -> Histogram1D:
        if self.histogram is not None:
            return self.histogram
        return Histogram1D.from_values(self.buffer, self.bins)


class ForeachAccumulator(Accumulator):
    """Calls the user function for every entry; has no result."""
    kind = ActionKind.FOREACH

    def __init__(self, node: Node, fn: Callable[..., Any] = None):
        super().__init__(node)
        self.fn = fn

    def update(self, values):
        self.updates += 1
        self.fn(*values)

    def merge(self, other):
        self.updates += other.updates
        return self

    def finalize(self) -> None:
        return None


class GetAccumulator(Accumulator):
    """Collects values; blocks are concatenated in entry order."""
    kind = ActionKind.GET

    def __init__(self, node: Node, container: Callable[[List[Any]], Any] = list):
        super().__init__(node)
        self.container = container
        self.values: List[Any] = []

    def update(self, values):
        self.updates += 1
        self.values.append(values[0])

    def merge(self, other):
        self.updates += other.updates
        self.values.extend(other.values)
        return self

    def finalize(self):
        return self.container(self.values)


ACCUMULATORS: Dict[ActionKind, Type[Accumulator]] = {
    ActionKind.COUNT: CountAccumulator,
    ActionKind.MIN: MinAccumulator,
    ActionKind.MAX: MaxAccumulator,
    ActionKind.MEAN: MeanAccumulator,
    ActionKind.HISTO: HistoAccumulator,
    ActionKind.FOREACH: ForeachAccumulator,
    ActionKind.GET: GetAccumulator,
}

def create_accumulator(node: Node) -> Accumulator:
    payload = node.payload
    return ACCUMULATORS[payload.kind](node, **payload.options)
