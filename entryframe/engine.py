"""
Execution Engine
================

Runs every pending action of one node arena in a single pass over the
dataset. The entry range is cut into contiguous blocks; each block is
processed start to finish by one worker with its own accumulators, and the
calling thread merges the per-block state in block order once all workers
are done (fork-join, one join per run).

Concurrency is configured by an explicit ``ExecutionContext``; nothing here
reads global state except ``ExecutionContext.from_environment``.
"""

from __future__ import annotations
import math
import os
import threading
import time
import warnings
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import psutil

from .actions import Accumulator, create_accumulator
from .core import ColumnReader, ExecutionError, NodeKind
from .graph import NodeArena

# ==============================================================================
# CONFIGURATION
# ==============================================================================

@dataclass(frozen=True)
class PartitionPolicy:
    """How the entry range is cut into blocks."""
    min_block_entries: int = 1000
    blocks_per_worker: int = 4

    def __post_init__(self):
        if self.min_block_entries < 1:
            raise ValueError(f"min_block_entries must be positive, got {self.min_block_entries}")
        if self.blocks_per_worker < 1:
            raise ValueError(f"blocks_per_worker must be positive, got {self.blocks_per_worker}")


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable concurrency configuration for one or more runs."""
    workers: int = 1
    policy: PartitionPolicy = field(default_factory=PartitionPolicy)
    verbose: bool = False

    def __post_init__(self):
        if self.workers < 1:
            raise ValueError(f"workers must be at least 1, got {self.workers}")

    @classmethod
    def sequential(cls, verbose: bool = False) -> 'ExecutionContext':
        return cls(workers=1, verbose=verbose)

    @classmethod
    def parallel(cls, workers: Optional[int] = None, **kwargs) -> 'ExecutionContext':
        """Pool of ``workers`` threads; defaults to the logical CPU count."""
        return cls(workers=workers or _available_cpus(), **kwargs)

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> 'ExecutionContext':
        """Build a context from ``ENTRYFRAME_*`` variables.

        ENTRYFRAME_WORKERS: integer or ``auto`` (logical CPU count), default 1
        ENTRYFRAME_MIN_BLOCK_ENTRIES: smallest block worth scheduling
        ENTRYFRAME_VERBOSE: ``1``/``true`` to print run diagnostics
        """
        environ = os.environ if environ is None else environ

        raw_workers = environ.get('ENTRYFRAME_WORKERS', '1').strip().lower()
        workers = _available_cpus() if raw_workers == 'auto' else _parse_int(
            'ENTRYFRAME_WORKERS', raw_workers)

        policy = PartitionPolicy()
        if 'ENTRYFRAME_MIN_BLOCK_ENTRIES' in environ:
            policy = PartitionPolicy(
                min_block_entries=_parse_int('ENTRYFRAME_MIN_BLOCK_ENTRIES',
                                             environ['ENTRYFRAME_MIN_BLOCK_ENTRIES']),
                blocks_per_worker=policy.blocks_per_worker,
            )

        verbose = environ.get('ENTRYFRAME_VERBOSE', '').strip().lower() in ('1', 'true', 'yes', 'on')
        return cls(workers=workers, policy=policy, verbose=verbose)

    def with_workers(self, workers: int) -> 'ExecutionContext':
        """Create new context with a different pool size."""
        return ExecutionContext(workers=workers, policy=self.policy, verbose=self.verbose)


def _parse_int(variable: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{variable} must be an integer or 'auto', got {raw!r}") from None


def _available_cpus() -> int:
    return psutil.cpu_count(logical=True) or os.cpu_count() or 1

# ==============================================================================
# PARTITIONING
# ==============================================================================

@dataclass(frozen=True)
class Block:
    """Contiguous entry range ``[start, stop)`` processed by one worker."""
    index: int
    start: int
    stop: int

    def __len__(self) -> int:
        return self.stop - self.start


def partition_entries(entry_count: int, workers: int,
                      policy: PartitionPolicy = PartitionPolicy()) -> List[Block]:
    """Split ``[0, entry_count)`` into near-equal contiguous blocks.

    A single worker always gets the whole range as one block.
    """
    if workers <= 1 or entry_count <= policy.min_block_entries:
        n_blocks = 1
    else:
        n_blocks = min(math.ceil(entry_count / policy.min_block_entries),
                       workers * policy.blocks_per_worker)
    bounds = [entry_count * i // n_blocks for i in range(n_blocks + 1)]
    return [Block(i, bounds[i], bounds[i + 1]) for i in range(n_blocks)]

# ==============================================================================
# PER-ENTRY SCOPES
# ==============================================================================

class EntryView:
    """Dataset columns of one entry, read on first use and memoised."""

    __slots__ = ('_reader', 'entry', '_values')

    def __init__(self, reader: ColumnReader, entry: int):
        self._reader = reader
        self.entry = entry
        self._values: Dict[str, Any] = {}

    def get(self, name: str) -> Any:
        try:
            return self._values[name]
        except KeyError:
            value = self._reader.read_value(self.entry, name)
            self._values[name] = value
            return value


class BranchScope:
    """A branch value layered over its parent scope; visible to one subtree."""

    __slots__ = ('_parent', '_name', '_value')

    def __init__(self, parent, name: str, value: Any):
        self._parent = parent
        self._name = name
        self._value = value

    def get(self, name: str) -> Any:
        scope = self
        while isinstance(scope, BranchScope):
            if scope._name == name:
                return scope._value
            scope = scope._parent
        return scope.get(name)

# ==============================================================================
# RUN REPORT
# ==============================================================================

@dataclass
class RunReport:
    """What one run did."""
    entries: int = 0
    blocks: int = 0
    workers: int = 1
    actions: Tuple[int, ...] = ()
    updates: Dict[int, int] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def executed(self) -> bool:
        return bool(self.actions)

# ==============================================================================
# ENGINE
# ==============================================================================

class ExecutionEngine:
    """Evaluates the pruned node tree for every entry of every block."""

    def __init__(self, arena: NodeArena, context: Optional[ExecutionContext] = None):
        self.arena = arena
        self.context = context or ExecutionContext()

    def execute(self, targets: Sequence[int]) -> Tuple[Dict[int, Any], RunReport]:
        """Run the actions ``targets`` and return their finalized values.

        Raises ExecutionError if any entry fails; no value is returned then.
        """
        start = time.perf_counter()
        context = self.context
        reader = self.arena.reader
        targets = tuple(targets)
        report = RunReport(workers=context.workers, actions=targets)
        if not targets:
            return {}, report

        children = self.arena.prune(targets)
        entry_count = reader.entry_count()
        blocks = partition_entries(entry_count, context.workers, context.policy)
        report.entries = entry_count
        report.blocks = len(blocks)

        if context.workers > _available_cpus():
            warnings.warn(
                f"Running with {context.workers} workers on {_available_cpus()} CPUs",
                RuntimeWarning
            )
        if context.verbose:
            print(f"📊 Partitioned {entry_count:,} entries into {len(blocks)} block(s) "
                  f"for {len(targets)} action(s) on {context.workers} worker(s)")

        abort = threading.Event()
        if context.workers == 1 or len(blocks) == 1:
            partials = [self._process_block(block, targets, children, abort) for block in blocks]
        else:
            partials = self._process_parallel(blocks, targets, children, abort)

        results = {}
        for node_id in targets:
            merged = partials[0][node_id]
            for partial in partials[1:]:
                merged = merged.merge(partial[node_id])
            report.updates[node_id] = merged.updates
            results[node_id] = merged.finalize()

        report.elapsed_seconds = time.perf_counter() - start
        if context.verbose:
            print(f"✅ Run finished in {report.elapsed_seconds:.3f}s")
        return results, report

    def _process_parallel(self, blocks: List[Block], targets: Tuple[int, ...],
                          children: Dict[int, Tuple[int, ...]],
                          abort: threading.Event) -> List[Dict[int, Accumulator]]:
        with ThreadPoolExecutor(max_workers=self.context.workers,
                                thread_name_prefix='entryframe') as executor:
            futures = [
                executor.submit(self._process_block, block, targets, children, abort)
                for block in blocks
            ]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            if pending:
                abort.set()
                for future in pending:
                    future.cancel()
                wait(pending)

        # Report the failure of the earliest block, whatever finished first
        for future in futures:
            if future.cancelled():
                continue
            error = future.exception()
            if error is not None and not isinstance(error, _Aborted):
                raise error
        return [future.result() for future in futures]

    def _process_block(self, block: Block, targets: Tuple[int, ...],
                       children: Dict[int, Tuple[int, ...]],
                       abort: threading.Event) -> Dict[int, Accumulator]:
        accumulators = {node_id: create_accumulator(self.arena[node_id]) for node_id in targets}
        reader = self.arena.reader
        running = _running_arenas()
        running.append(self.arena)
        try:
            for entry in range(block.start, block.stop):
                if abort.is_set():
                    raise _Aborted()
                self._visit(EntryView(reader, entry), entry, children, accumulators)
        finally:
            running.pop()
        return accumulators

    def _visit(self, scope, entry: int,
               children: Dict[int, Tuple[int, ...]],
               accumulators: Dict[int, Accumulator]) -> None:
        """Depth-first walk of the pruned tree for one entry, children in booking order."""
        arena = self.arena
        stack = [(child_id, scope) for child_id in reversed(children[NodeArena.ROOT_ID])]
        while stack:
            child_id, scope = stack.pop()
            node = arena[child_id]
            try:
                values = tuple(scope.get(column) for column in node.inputs)
                if node.kind is NodeKind.FILTER:
                    next_scope = scope if node.payload.predicate(*values) else None
                elif node.kind is NodeKind.BRANCH:
                    next_scope = BranchScope(scope, node.payload.name,
                                             node.payload.expression(*values))
                else:
                    accumulators[child_id].update(values)
                    continue
            except Exception as exc:
                raise ExecutionError(
                    f"{node!r} failed on entry {entry}: {exc}",
                    node_id=child_id, entry=entry
                ) from exc
            if next_scope is not None:
                stack.extend((grandchild, next_scope) for grandchild in reversed(children[child_id]))


class _Aborted(Exception):
    """Raised inside a block when another block has already failed."""


# Arenas whose blocks the current thread is processing
_thread_runs = threading.local()


def _running_arenas() -> List[NodeArena]:
    if not hasattr(_thread_runs, 'arenas'):
        _thread_runs.arenas = []
    return _thread_runs.arenas


def inside_run(arena: NodeArena) -> bool:
    """True when called from a worker that is processing a block of ``arena``."""
    return any(running is arena for running in _running_arenas())
