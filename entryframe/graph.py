"""
Node arena
==========

All filter, branch and action nodes of one dataset live in a single arena,
addressed by integer id. Node 0 is the dataset root. Parent and child links
are ids, never object references, and nodes are never removed.

Column visibility is resolved here, once, when a node is booked: a node sees
the dataset columns plus every branch defined on its ancestor chain.
"""

from __future__ import annotations
import inspect
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from .core import (
    ActionKind, ColumnReader, NameCollisionError, NodeKind, SchemaError,
    TypeMismatchError, UNKNOWN_TYPE, as_type_tag, check_declared_type
)

# ==============================================================================
# NODE PAYLOADS
# ==============================================================================

@dataclass(frozen=True)
class RootPayload:
    source: str


@dataclass(frozen=True)
class FilterPayload:
    predicate: Callable[..., Any]
    name: Optional[str] = None


@dataclass(frozen=True)
class BranchPayload:
    name: str
    expression: Callable[..., Any]
    dtype: np.dtype = UNKNOWN_TYPE


@dataclass(frozen=True)
class ActionPayload:
    kind: ActionKind
    options: Dict[str, Any] = field(default_factory=dict)


Payload = Union[RootPayload, FilterPayload, BranchPayload, ActionPayload]


@dataclass
class Node:
    id: int
    kind: NodeKind
    parent: Optional[int]
    inputs: Tuple[str, ...]
    payload: Payload
    children: List[int] = field(default_factory=list)

    def __repr__(self) -> str:
        if isinstance(self.payload, ActionPayload):
            label = self.payload.kind.name
        else:
            label = getattr(self.payload, 'name', None)
        suffix = f" {label}" if label else ""
        return f"Node({self.id}, {self.kind.name}{suffix}, inputs={list(self.inputs)})"

# ==============================================================================
# CALLABLE INSPECTION
# ==============================================================================

def callable_arity(fn: Callable[..., Any]) -> Optional[int]:
    """Number of required positional parameters, or None if not inspectable."""
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return None
    required = 0
    for param in signature.parameters.values():
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD) \
                and param.default is param.empty:
            required += 1
    return required


def check_callable(fn: Callable[..., Any], columns: Sequence[str],
                   types: Sequence[np.dtype]) -> None:
    """Check a user callable accepts the columns it will be called with.

    Parameters annotated with ``bool``, ``int``, ``float`` or ``str`` are
    compared against the column type tags.
    """
    if not callable(fn):
        raise TypeError(f"Expected a callable, got {type(fn).__name__}")
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return
    try:
        bound = signature.bind(*columns)
    except TypeError:
        raise TypeMismatchError(
            f"{getattr(fn, '__name__', fn)!s} cannot be called with "
            f"{len(columns)} column(s) {list(columns)}",
            expected=str(signature), actual=list(columns)
        ) from None

    try:
        hints = inspect.get_annotations(fn, eval_str=True) if inspect.isfunction(fn) else {}
    except (NameError, SyntaxError, TypeError):
        hints = {}
    column_types = dict(zip(columns, types))
    for param_name, column in bound.arguments.items():
        if isinstance(column, tuple):
            continue
        check_declared_type(hints.get(param_name), column_types[column], column)

# ==============================================================================
# ARENA
# ==============================================================================

class NodeArena:
    """Owns the node tree of one dataset."""

    ROOT_ID = 0

    def __init__(self, reader: ColumnReader, source: Optional[str] = None):
        self._reader = reader
        self._dataset_types: Dict[str, np.dtype] = {
            name: as_type_tag(reader.column_type(name)) for name in reader.column_names()
        }
        root = Node(
            id=self.ROOT_ID, kind=NodeKind.ROOT, parent=None, inputs=(),
            payload=RootPayload(source or repr(reader))
        )
        self._nodes: List[Node] = [root]
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._nodes)

    def __getitem__(self, node_id: int) -> Node:
        return self._nodes[node_id]

    def __iter__(self) -> Iterator[Node]:
        return iter(list(self._nodes))

    @property
    def reader(self) -> ColumnReader:
        return self._reader

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    def ancestors(self, node_id: int) -> List[Node]:
        """Nodes from ``node_id`` up to the root, inclusive."""
        chain = []
        current: Optional[int] = node_id
        while current is not None:
            node = self._nodes[current]
            chain.append(node)
            current = node.parent
        return chain

    def visible_columns(self, node_id: int) -> Dict[str, np.dtype]:
        """Dataset columns plus branches defined above (or at) ``node_id``."""
        visible = dict(self._dataset_types)
        for node in reversed(self.ancestors(node_id)):
            if node.kind is NodeKind.BRANCH:
                visible[node.payload.name] = node.payload.dtype
        return visible

    def resolve(self, node_id: int, columns: Sequence[str]) -> Tuple[np.dtype, ...]:
        """Type tags of ``columns`` as seen from ``node_id``; SchemaError if missing."""
        visible = self.visible_columns(node_id)
        missing = [c for c in columns if c not in visible]
        if missing:
            raise SchemaError(
                f"Unknown column(s) {missing}; visible columns are {sorted(visible)}",
                column=missing[0]
            )
        return tuple(visible[c] for c in columns)

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def add_filter(self, parent: int, predicate: Callable[..., Any],
                   columns: Sequence[str], name: Optional[str] = None) -> Node:
        types = self.resolve(parent, columns)
        check_callable(predicate, columns, types)
        return self._append(NodeKind.FILTER, parent, columns, FilterPayload(predicate, name))

    def add_branch(self, parent: int, name: str, expression: Callable[..., Any],
                   columns: Sequence[str], dtype: Any = None) -> Node:
        if not isinstance(name, str) or not name:
            raise SchemaError(f"Invalid column name {name!r}")
        if name in self.visible_columns(parent):
            raise NameCollisionError(
                f"Column '{name}' is already defined upstream", column=name
            )
        types = self.resolve(parent, columns)
        check_callable(expression, columns, types)
        payload = BranchPayload(name, expression, as_type_tag(dtype))
        return self._append(NodeKind.BRANCH, parent, columns, payload)

    def add_action(self, parent: int, kind: ActionKind, columns: Sequence[str],
                   **options: Any) -> Node:
        self.resolve(parent, columns)
        return self._append(NodeKind.ACTION, parent, columns, ActionPayload(kind, options))

    def _append(self, kind: NodeKind, parent: int, columns: Sequence[str],
                payload: Payload) -> Node:
        with self._lock:
            node = Node(
                id=len(self._nodes), kind=kind, parent=parent,
                inputs=tuple(columns), payload=payload
            )
            self._nodes.append(node)
            self._nodes[parent].children.append(node.id)
        return node

    # ------------------------------------------------------------------
    # Traversal helpers
    # ------------------------------------------------------------------

    def action_ids(self) -> List[int]:
        return [node.id for node in self._nodes if node.kind is NodeKind.ACTION]

    def prune(self, targets: Sequence[int]) -> Dict[int, Tuple[int, ...]]:
        """Child lists restricted to nodes that lead to one of ``targets``.

        Returns a mapping node id -> ordered ids of its kept children; the
        root is always present.
        """
        keep = set()
        for target in targets:
            for node in self.ancestors(target):
                if node.id in keep:
                    break
                keep.add(node.id)
        keep.add(self.ROOT_ID)
        return {
            node_id: tuple(c for c in self._nodes[node_id].children if c in keep)
            for node_id in sorted(keep)
        }

    def describe(self, node_id: int = ROOT_ID, indent: int = 0) -> str:
        """Indented text rendering of the subtree below ``node_id``."""
        lines = []
        stack = [(node_id, indent)]
        while stack:
            current, depth = stack.pop()
            node = self._nodes[current]
            lines.append("  " * depth + repr(node))
            stack.extend((child, depth + 1) for child in reversed(node.children))
        return "\n".join(lines)
