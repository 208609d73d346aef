"""
DataFrame graph builder and lazy result handles
===============================================

``DataFrame`` handles are cheap views onto one node of a shared ``Graph``.
Calling ``filter``/``define`` creates a child node and returns a new handle;
calling an action books a terminal node and returns a ``LazyResult``.
Nothing touches the dataset until a result is requested or ``run`` is
called; then every pending action of the graph is computed in one pass.

Handles derived from the same DataFrame are independent siblings: a filter
created from ``df`` does not affect actions booked on ``df`` itself.
"""

from __future__ import annotations
import threading
from pathlib import Path
from typing import (
    Any, Callable, Dict, Generic, List, Mapping, Optional, Sequence, Set, Tuple,
    TypeVar, Union
)

import polars as pl

from .core import (
    ActionKind, ColumnReader, EntryFrameError, GraphState, SchemaError,
    TypeMismatchError, check_declared_type, is_numeric
)
from .engine import ExecutionContext, ExecutionEngine, RunReport, inside_run
from .graph import NodeArena, callable_arity, check_callable
from .histogram import Histogram1D
from .readers import ArrayColumnReader, PolarsColumnReader

T = TypeVar('T')

DataSource = Union[ColumnReader, pl.DataFrame, pl.LazyFrame, Mapping[str, Any], str, Path]


def as_reader(source: DataSource) -> ColumnReader:
    """Wrap supported data sources in a column reader."""
    if isinstance(source, ColumnReader):
        return source
    if isinstance(source, (pl.DataFrame, pl.LazyFrame)):
        return PolarsColumnReader(source)
    if isinstance(source, Mapping):
        return ArrayColumnReader(source)
    if isinstance(source, (str, Path)):
        return PolarsColumnReader.from_file(source)
    raise TypeError(f"Unsupported data source: {type(source).__name__}")

# ==============================================================================
# GRAPH
# ==============================================================================

class Graph:
    """Node arena plus the run state machine shared by all handles of a dataset."""

    def __init__(self, reader: ColumnReader, context: Optional[ExecutionContext] = None,
                 default_columns: Sequence[str] = ()):
        self.arena = NodeArena(reader)
        self.context = context or ExecutionContext()
        self.default_columns = tuple(default_columns)
        self.arena.resolve(NodeArena.ROOT_ID, self.default_columns)

        self.state = GraphState.UNBOOKED
        self.reports: List[RunReport] = []
        self._results: Dict[int, Any] = {}
        self._finalized: Set[int] = set()
        self._lock = threading.RLock()

    @property
    def run_count(self) -> int:
        return len(self.reports)

    def register(self, node_id: int) -> None:
        with self._lock:
            if self.state is not GraphState.RUNNING:
                self.state = GraphState.BOOKED

    def pending_actions(self) -> List[int]:
        return [a for a in self.arena.action_ids() if a not in self._finalized]

    def is_finalized(self, node_id: int) -> bool:
        return node_id in self._finalized

    def ensure_finalized(self, context: Optional[ExecutionContext] = None) -> RunReport:
        """Run every pending action once; a no-op when nothing is pending."""
        if inside_run(self.arena):
            # Called from a worker of this graph's own run
            raise EntryFrameError("Graph is already running; results cannot be "
                                  "requested from inside a run")
        with self._lock:
            if self.state is GraphState.RUNNING:
                raise EntryFrameError("Graph is already running; results cannot be "
                                      "requested from inside a run")
            pending = self.pending_actions()
            if not pending:
                return self.reports[-1] if self.reports else RunReport(workers=self.context.workers)

            self.state = GraphState.RUNNING
            try:
                engine = ExecutionEngine(self.arena, context or self.context)
                results, report = engine.execute(pending)
            except BaseException:
                self.state = GraphState.BOOKED
                raise

            # Publish all results together
            self._results.update(results)
            self._finalized.update(pending)
            self.reports.append(report)
            self.state = GraphState.BOOKED if self.pending_actions() else GraphState.FINALIZED
            return report

    def result(self, node_id: int) -> Any:
        if node_id not in self._finalized:
            self.ensure_finalized()
        return self._results[node_id]

# ==============================================================================
# LAZY RESULT
# ==============================================================================

class LazyResult(Generic[T]):
    """Deferred value of one action; the first access runs the graph.

    Attribute access is forwarded to the value, so ``hist.entries`` works on
    the handle returned by ``histo``.
    """

    def __init__(self, graph: Graph, node_id: int, kind: ActionKind):
        self._graph = graph
        self._node_id = node_id
        self._kind = kind

    @property
    def node_id(self) -> int:
        return self._node_id

    @property
    def kind(self) -> ActionKind:
        return self._kind

    @property
    def is_ready(self) -> bool:
        return self._graph.is_finalized(self._node_id)

    def get(self) -> T:
        return self._graph.result(self._node_id)

    @property
    def value(self) -> T:
        return self.get()

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        return getattr(self.get(), name)

    def __repr__(self) -> str:
        if self.is_ready:
            return f"LazyResult({self._kind.name}, value={self.get()!r})"
        return f"LazyResult({self._kind.name}, pending)"

# ==============================================================================
# DATAFRAME
# ==============================================================================

class DataFrame:
    """Handle on one node of a lazily evaluated entry graph.

    Args:
        source: a ColumnReader, a polars frame, a mapping of column name to
            values, or the path of a parquet/ipc/csv file
        default_columns: columns used when a call omits its column list
        context: execution configuration used by implicit runs
    """

    def __init__(self, source: DataSource, default_columns: Sequence[str] = (),
                 context: Optional[ExecutionContext] = None):
        self._graph = Graph(as_reader(source), context, default_columns)
        self._node_id = NodeArena.ROOT_ID

    @classmethod
    def _derive(cls, graph: Graph, node_id: int) -> 'DataFrame':
        frame = cls.__new__(cls)
        frame._graph = graph
        frame._node_id = node_id
        return frame

    def __repr__(self) -> str:
        node = self._graph.arena[self._node_id]
        return f"DataFrame(node={node!r}, state={self._graph.state.name})"

    @property
    def graph(self) -> Graph:
        return self._graph

    @property
    def columns(self) -> List[str]:
        return list(self._graph.arena.visible_columns(self._node_id))

    def describe(self) -> str:
        return self._graph.arena.describe()

    # ------------------------------------------------------------------
    # Transformations
    # ------------------------------------------------------------------

    def filter(self, predicate: Callable[..., Any], columns: Optional[Sequence[str]] = None,
               name: Optional[str] = None) -> 'DataFrame':
        """Keep entries for which ``predicate(*values)`` is truthy."""
        columns = self._columns_for(predicate, columns)
        node = self._graph.arena.add_filter(self._node_id, predicate, columns, name)
        return self._derive(self._graph, node.id)

    def define(self, name: str, expression: Callable[..., Any],
               columns: Optional[Sequence[str]] = None, dtype: Any = None) -> 'DataFrame':
        """Add a computed column visible to the returned handle and its children."""
        columns = self._columns_for(expression, columns)
        node = self._graph.arena.add_branch(self._node_id, name, expression, columns, dtype)
        return self._derive(self._graph, node.id)

    add_branch = define

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def count(self) -> LazyResult[int]:
        return self._book(ActionKind.COUNT, ())

    def min(self, column: Optional[str] = None) -> LazyResult[Any]:
        return self._book_numeric(ActionKind.MIN, column)

    def max(self, column: Optional[str] = None) -> LazyResult[Any]:
        return self._book_numeric(ActionKind.MAX, column)

    def mean(self, column: Optional[str] = None) -> LazyResult[float]:
        return self._book_numeric(ActionKind.MEAN, column)

    def histo(self, column: Optional[str] = None, bins: int = 128,
              range: Optional[Tuple[float, float]] = None) -> LazyResult[Histogram1D]:
        """Book a 1D histogram; without ``range`` the binning follows the data."""
        if range is not None:
            Histogram1D.empty(bins, range)
        elif bins < 1:
            raise ValueError(f"Histogram needs at least one bin, got {bins}")
        return self._book_numeric(ActionKind.HISTO, column, bins=bins, range=range)

    def foreach(self, fn: Callable[..., Any], columns: Optional[Sequence[str]] = None) -> None:
        """Call ``fn(*values)`` for every entry reaching this node.

        With several workers the calls come from different threads in no
        particular order.
        """
        columns = self._columns_for(fn, columns)
        check_callable(fn, columns, self._graph.arena.resolve(self._node_id, columns))
        self._book(ActionKind.FOREACH, columns, fn=fn)

    def get(self, column: Optional[str] = None, container: Callable[[List[Any]], Any] = list,
            value_type: Any = None) -> LazyResult[Any]:
        """Collect the values of ``column`` in entry order."""
        column = self._default_column(column)
        (tag,) = self._graph.arena.resolve(self._node_id, (column,))
        check_declared_type(value_type, tag, column)
        return self._book(ActionKind.GET, (column,), container=container)

    def run(self, context: Optional[ExecutionContext] = None) -> RunReport:
        """Execute every pending action of the graph now."""
        return self._graph.ensure_finalized(context)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _book(self, kind: ActionKind, columns: Sequence[str], **options: Any) -> LazyResult:
        node = self._graph.arena.add_action(self._node_id, kind, columns, **options)
        self._graph.register(node.id)
        return LazyResult(self._graph, node.id, kind)

    def _book_numeric(self, kind: ActionKind, column: Optional[str], **options: Any) -> LazyResult:
        column = self._default_column(column)
        (tag,) = self._graph.arena.resolve(self._node_id, (column,))
        if not is_numeric(tag):
            raise TypeMismatchError(
                f"{kind.name.lower()} needs a numeric column, '{column}' has type {tag}",
                column=column, expected='numeric', actual=tag
            )
        return self._book(kind, (column,), **options)

    def _default_column(self, column: Optional[str]) -> str:
        if column is not None:
            return column
        defaults = self._graph.default_columns
        if not defaults:
            raise SchemaError("No column given and no default columns configured")
        return defaults[0]

    def _columns_for(self, fn: Callable[..., Any],
                     columns: Optional[Sequence[str]]) -> Tuple[str, ...]:
        """Explicit columns, or as many default columns as ``fn`` takes."""
        if columns is not None:
            if isinstance(columns, str):
                return (columns,)
            return tuple(columns)
        arity = callable_arity(fn)
        defaults = self._graph.default_columns
        if arity is None:
            raise SchemaError(f"Cannot infer the input columns of {fn!r}; pass columns explicitly")
        if arity > len(defaults):
            raise SchemaError(
                f"{getattr(fn, '__name__', fn)!s} takes {arity} argument(s) but only "
                f"{len(defaults)} default column(s) are configured: {list(defaults)}"
            )
        return defaults[:arity]
