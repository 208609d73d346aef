# entryframe/__init__.py
from __future__ import annotations
from .core import (
    ActionKind, ColumnReader, EntryFrameError, ExecutionError, GraphState,
    NameCollisionError, NodeKind, SchemaError, TypeMismatchError,
)
from .readers import ArrayColumnReader, PolarsColumnReader
from .histogram import Histogram1D
from .graph import NodeArena
from .engine import (
    Block, ExecutionContext, ExecutionEngine, PartitionPolicy, RunReport,
    partition_entries,
)
from .frame import DataFrame, Graph, LazyResult, as_reader

__version__ = '0.1.0'

__all__ = [
    'DataFrame',
    'LazyResult',
    'Graph',
    'NodeArena',
    'ExecutionContext',
    'ExecutionEngine',
    'PartitionPolicy',
    'RunReport',
    'Block',
    'partition_entries',
    'ColumnReader',
    'ArrayColumnReader',
    'PolarsColumnReader',
    'Histogram1D',
    'as_reader',
    'ActionKind',
    'NodeKind',
    'GraphState',
    'EntryFrameError',
    'SchemaError',
    'NameCollisionError',
    'TypeMismatchError',
    'ExecutionError',
]
