"""
Core: enumerations, exceptions, reader protocol and column type tags
====================================================================

Everything the graph, the engine and the readers agree on lives here.
Column types are described by ``numpy.dtype`` tags; the ``object`` tag
means the type is not known before a value has been read.
"""

from __future__ import annotations
from abc import abstractmethod
from enum import Enum, auto
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

# ==============================================================================
# CORE ENUMERATIONS
# ==============================================================================

class NodeKind(Enum):
    """Kinds of node stored in the arena."""
    ROOT = auto()
    FILTER = auto()
    BRANCH = auto()
    ACTION = auto()


class ActionKind(Enum):
    """Terminal consumers that can be booked on a DataFrame."""
    COUNT = auto()
    MIN = auto()
    MAX = auto()
    MEAN = auto()
    HISTO = auto()
    FOREACH = auto()
    GET = auto()


class GraphState(Enum):
    """Run lifecycle of one graph."""
    UNBOOKED = auto()
    BOOKED = auto()
    RUNNING = auto()
    FINALIZED = auto()

# ==============================================================================
# EXCEPTIONS
# ==============================================================================

class EntryFrameError(Exception):
    """Base class for every error raised by entryframe."""


class SchemaError(EntryFrameError):
    """A referenced column is not visible where the node is booked."""

    def __init__(self, message: str, column: Optional[str] = None):
        super().__init__(message)
        self.column = column


class NameCollisionError(SchemaError):
    """A defined column name shadows a column that is already visible."""


class TypeMismatchError(EntryFrameError):
    """A value or declared type does not fit the column it is used with."""

    def __init__(self, message: str, column: Optional[str] = None,
                 expected: Any = None, actual: Any = None):
        super().__init__(message)
        self.column = column
        self.expected = expected
        self.actual = actual


class ExecutionError(EntryFrameError):
    """Run aborted by a failure while evaluating the graph."""

    def __init__(self, message: str, node_id: Optional[int] = None,
                 entry: Optional[int] = None):
        super().__init__(message)
        self.node_id = node_id
        self.entry = entry

# ==============================================================================
# READER PROTOCOL
# ==============================================================================

@runtime_checkable
class ColumnReader(Protocol):
    """Random-access, entry-indexed column source.

    ``read_value`` must be callable from several worker threads at once.
    """

    @abstractmethod
    def entry_count(self) -> int:
        ...

    @abstractmethod
    def column_names(self) -> List[str]:
        ...

    @abstractmethod
    def has_column(self, name: str) -> bool:
        ...

    @abstractmethod
    def column_type(self, name: str) -> np.dtype:
        ...

    @abstractmethod
    def read_value(self, entry: int, name: str) -> Any:
        ...

# ==============================================================================
# TYPE TAGS
# ==============================================================================

UNKNOWN_TYPE = np.dtype(object)

# Python annotations we know how to compare against numpy kinds
_ANNOTATION_KINDS = {
    bool: 'b',
    int: 'iu',
    float: 'fiu',
    str: 'US',
}


def as_type_tag(dtype: Any) -> np.dtype:
    """Normalise anything numpy understands into a dtype tag."""
    if dtype is None:
        return UNKNOWN_TYPE
    try:
        return np.dtype(dtype)
    except TypeError:
        return UNKNOWN_TYPE


def is_known(tag: np.dtype) -> bool:
    return tag.kind != 'O'


def is_numeric(tag: np.dtype) -> bool:
    """True for numeric tags, and for unknown ones (checked at run time)."""
    return tag.kind in 'biuf' or not is_known(tag)


def check_declared_type(declared: Any, tag: np.dtype, column: str) -> None:
    """Raise TypeMismatchError if a declared Python type cannot hold the column."""
    if declared is None or not is_known(tag):
        return
    kinds = _ANNOTATION_KINDS.get(declared)
    if kinds is None:
        return
    if tag.kind not in kinds:
        raise TypeMismatchError(
            f"Column '{column}' has type {tag} which does not fit {declared.__name__}",
            column=column, expected=declared, actual=tag
        )


def is_collection(value: Any) -> bool:
    """Values whose elements are filled individually into numeric actions."""
    return isinstance(value, (list, tuple, np.ndarray)) and np.ndim(value) > 0


def numeric_values(value: Any, column: str) -> Sequence[float]:
    """Return the numeric elements carried by one entry value."""
    items = value if is_collection(value) else (value,)
    for item in items:
        if isinstance(item, (bool, np.bool_)):
            continue
        if not isinstance(item, (int, float, np.integer, np.floating)):
            raise TypeMismatchError(
                f"Column '{column}' produced non-numeric value {item!r}",
                column=column, expected='numeric', actual=type(item)
            )
    return items
