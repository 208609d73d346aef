"""
Execution engine tests: partitioning, single-pass runs, determinism under
parallelism, laziness, idempotence and failure handling.
"""

import threading
import warnings

import numpy as np
import pytest
from hypothesis import given, strategies as st

from entryframe import (
    ArrayColumnReader, DataFrame, EntryFrameError, ExecutionContext, ExecutionError,
    GraphState, PartitionPolicy, partition_entries,
)

pytestmark = pytest.mark.engine

FINE_BLOCKS = PartitionPolicy(min_block_entries=3, blocks_per_worker=2)


# ============================================================================
# Partitioning
# ============================================================================

class TestPartitioning:

    @given(entries=st.integers(0, 50_000), workers=st.integers(1, 16),
           min_block=st.integers(1, 5_000), per_worker=st.integers(1, 8))
    def test_blocks_cover_range_contiguously(self, entries, workers, min_block, per_worker):
        policy = PartitionPolicy(min_block_entries=min_block, blocks_per_worker=per_worker)
        blocks = partition_entries(entries, workers, policy)

        assert blocks[0].start == 0
        assert blocks[-1].stop == entries
        for previous, current in zip(blocks, blocks[1:]):
            assert previous.stop == current.start
        assert [b.index for b in blocks] == list(range(len(blocks)))
        assert sum(len(b) for b in blocks) == entries
        assert len(blocks) <= max(1, workers * per_worker)

    def test_single_worker_gets_whole_range(self):
        blocks = partition_entries(1_000_000, 1)
        assert len(blocks) == 1
        assert (blocks[0].start, blocks[0].stop) == (0, 1_000_000)

    def test_block_count_follows_dataset_size(self):
        policy = PartitionPolicy(min_block_entries=1000, blocks_per_worker=4)
        assert len(partition_entries(500, 8, policy)) == 1
        assert len(partition_entries(3500, 8, policy)) == 4
        assert len(partition_entries(10_000_000, 8, policy)) == 32

    def test_empty_dataset(self):
        blocks = partition_entries(0, 4)
        assert len(blocks) == 1
        assert len(blocks[0]) == 0

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            PartitionPolicy(min_block_entries=0)
        with pytest.raises(ValueError):
            ExecutionContext(workers=0)


# ============================================================================
# Execution context configuration
# ============================================================================

class TestExecutionContext:

    def test_defaults_are_sequential(self):
        context = ExecutionContext()
        assert context.workers == 1
        assert context.verbose is False

    def test_from_environment(self):
        context = ExecutionContext.from_environment({
            'ENTRYFRAME_WORKERS': '3',
            'ENTRYFRAME_MIN_BLOCK_ENTRIES': '64',
            'ENTRYFRAME_VERBOSE': 'true',
        })
        assert context.workers == 3
        assert context.policy.min_block_entries == 64
        assert context.verbose is True

    def test_from_environment_auto(self):
        context = ExecutionContext.from_environment({'ENTRYFRAME_WORKERS': 'auto'})
        assert context.workers >= 1

    def test_from_empty_environment(self):
        assert ExecutionContext.from_environment({}) == ExecutionContext()

    def test_invalid_environment(self):
        with pytest.raises(ValueError):
            ExecutionContext.from_environment({'ENTRYFRAME_WORKERS': 'many'})

    def test_with_workers(self):
        context = ExecutionContext(policy=FINE_BLOCKS, verbose=True).with_workers(6)
        assert context.workers == 6
        assert context.policy is FINE_BLOCKS
        assert context.verbose is True

    def test_oversubscription_warns(self, small_columns):
        d = DataFrame(small_columns)
        d.count()
        with pytest.warns(RuntimeWarning):
            d.run(ExecutionContext(workers=100_000, policy=FINE_BLOCKS))

    def test_verbose_run_prints_diagnostics(self, small_columns, capsys):
        d = DataFrame(small_columns, context=ExecutionContext(verbose=True))
        d.count().get()
        out = capsys.readouterr().out
        assert 'Partitioned 20 entries' in out
        assert 'Run finished' in out


# ============================================================================
# Reference scenarios
# ============================================================================

class TestScenarios:

    def test_threshold_counts(self, small_columns, context):
        d = DataFrame(small_columns, context=context)
        ok = lambda: True
        ko = lambda: False
        below5 = d.filter(lambda b1: b1 < 5, ['b1']).count()
        below4 = d.filter(lambda b1: b1 < 4, ['b1']).filter(ok, []).count()
        everything = d.filter(ok, []).count()
        nothing = d.filter(ko, []).count()

        assert below5.get() == 5
        assert below4.get() == 4
        assert everything.get() == 20
        assert nothing.get() == 0

    def test_added_branch_then_filter(self, small_columns, context):
        d = DataFrame(small_columns, context=context)
        r = (d.define('iseven', lambda b2: b2 % 2 == 0, ['b2'])
              .filter(lambda iseven: iseven, ['iseven'])
              .count())
        assert r.get() == int(np.count_nonzero(small_columns['b2'] % 2 == 0))

    def test_collection_column_filter(self, small_columns, context):
        d = DataFrame(small_columns, default_columns=['tracks'], context=context)
        many = d.filter(lambda tracks: len(tracks) > 7).count()
        assert many.get() == sum(1 for t in small_columns['tracks'] if len(t) > 7)

    def test_forked_actions(self, small_columns, context):
        seen_b1 = []
        lock = threading.Lock()

        def record(x):
            with lock:
                seen_b1.append(x)

        d = DataFrame(small_columns, context=context)
        dd = d.filter(lambda: True, [])
        dd.foreach(record, ['b1'])
        c = dd.count()
        never = []
        dd.filter(lambda: False, []).foreach(lambda: never.append(1), [])

        report = d.run()

        assert c.get() == 20
        assert sorted(seen_b1) == list(np.arange(20.0))
        assert never == []
        assert report.entries == 20

    def test_histo_with_filter_and_new_branch(self, small_columns, context):
        d = DataFrame(small_columns, default_columns=['tracks'], context=context)
        ad = (d.define('tracks_n', lambda tracks: len(tracks))
               .filter(lambda tracks_n: tracks_n > 2, ['tracks_n'])
               .define('tracks_pts', lambda tracks: [abs(pt) for pt in tracks]))
        tr_n = ad.histo('tracks_n')
        tr_pts = ad.histo('tracks_pts')

        kept = [t for t in small_columns['tracks'] if len(t) > 2]
        assert tr_n.entries == len(kept)
        assert tr_n.mean == pytest.approx(np.mean([len(t) for t in kept]))
        all_pts = [pt for t in kept for pt in t]
        assert tr_pts.entries == len(all_pts)
        assert tr_pts.mean == pytest.approx(np.mean(all_pts))


# ============================================================================
# Laws
# ============================================================================

@given(threshold=st.integers(-3, 25), workers=st.sampled_from([1, 2, 5]))
def test_filter_count_matches_predicate(threshold, workers):
    values = np.arange(20, dtype=np.float64)
    context = ExecutionContext(workers=workers, policy=FINE_BLOCKS)
    d = DataFrame({'b1': values}, context=context)
    count = d.filter(lambda b1: b1 < threshold, ['b1']).count()
    assert count.get() == int(np.count_nonzero(values < threshold))


@given(values=st.lists(st.integers(-100, 100), min_size=0, max_size=60),
       low=st.integers(-100, 100), modulus=st.integers(1, 7))
def test_chained_filters_equal_conjunction(values, low, modulus):
    data = {'x': np.asarray(values, dtype=np.int64)}
    p1 = lambda x: x > low
    p2 = lambda x: x % modulus == 0

    d = DataFrame(data, context=ExecutionContext(workers=3, policy=FINE_BLOCKS))
    chained = d.filter(p1, ['x']).filter(p2, ['x']).count()
    combined = d.filter(lambda x: p1(x) and p2(x), ['x']).count()
    assert chained.get() == combined.get()


@given(values=st.lists(st.floats(-1e6, 1e6) | st.just(float('nan')), min_size=1, max_size=80),
       workers=st.integers(2, 6))
def test_parallel_results_match_sequential(values, workers):
    data = {'v': np.asarray(values)}

    def book(context):
        d = DataFrame(data, context=context)
        f = d.filter(lambda v: v > 0, ['v'])
        return [f.count(), d.min('v'), d.max('v'), d.mean('v'), d.get('v'), f.get('v')]

    sequential = book(ExecutionContext())
    parallel = book(ExecutionContext(workers=workers, policy=PartitionPolicy(1, 3)))
    for seq, par in zip(sequential, parallel):
        if isinstance(seq.get(), float):
            assert par.get() == pytest.approx(seq.get(), rel=1e-9, abs=1e-6, nan_ok=True)
        elif isinstance(seq.get(), list):
            np.testing.assert_array_equal(par.get(), seq.get())
        else:
            assert par.get() == seq.get()


def test_min_max_skip_nan_whatever_the_blocks():
    data = {'v': np.array([2.0, np.nan, 1.0, np.nan, 3.0])}
    for context in (ExecutionContext(), ExecutionContext(workers=2, policy=PartitionPolicy(1, 1)),
                    ExecutionContext(workers=3, policy=PartitionPolicy(1, 2))):
        d = DataFrame(data, context=context)
        low, high = d.min('v'), d.max('v')
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', RuntimeWarning)
            d.run()
        assert (low.get(), high.get()) == (1.0, 3.0)

    only_nan = DataFrame({'v': np.array([np.nan, np.nan])})
    assert np.isnan(only_nan.min('v').get())


def test_get_preserves_entry_order_in_parallel(large_columns):
    context = ExecutionContext(workers=4, policy=PartitionPolicy(min_block_entries=100))
    d = DataFrame(large_columns, context=context)
    values = d.filter(lambda b2: b2 % 3 == 0, ['b2']).get('b1')
    report = d.run()

    assert report.blocks > 1
    expected = [v for v, sq in zip(large_columns['b1'], large_columns['b2']) if sq % 3 == 0]
    assert values.get() == expected


# ============================================================================
# Single pass, laziness and idempotence
# ============================================================================

class TestRunProtocol:

    def test_one_pass_serves_every_action(self, counting_reader, context):
        d = DataFrame(counting_reader, context=context)
        dd = d.filter(lambda: True, [])
        actions = [d.count(), dd.count(), dd.mean('b1'), dd.max('b2'),
                   d.filter(lambda b1: b1 < 5, ['b1']).count()]

        report = d.run()

        assert d.graph.run_count == 1
        assert set(report.actions) == {a.node_id for a in actions}
        assert report.updates[actions[0].node_id] == 20
        assert report.updates[actions[1].node_id] == 20
        assert report.updates[actions[2].node_id] == 20
        assert report.updates[actions[3].node_id] == 20
        assert report.updates[actions[4].node_id] == 5
        # Each dataset value read at most once per entry
        assert counting_reader.reads == 40
        assert counting_reader.entries_read == set(range(20))

    def test_branch_evaluated_once_per_entry_and_position(self, small_columns):
        calls = []
        d = DataFrame(small_columns)
        b = d.define('y', lambda b1: calls.append(1) or b1 * 2, ['b1'])
        b.count()
        b.mean('y')
        b.filter(lambda y: y > 10, ['y']).count()
        d.run()
        assert len(calls) == 20

    def test_first_access_triggers_run(self, counting_reader):
        d = DataFrame(counting_reader)
        c = d.filter(lambda b1: b1 < 4, ['b1']).filter(lambda: True, []).count()
        assert not c.is_ready
        assert counting_reader.reads == 0

        assert c.get() == 4
        assert c.is_ready
        assert d.graph.state is GraphState.FINALIZED

    def test_repeated_access_does_not_rescan(self, counting_reader):
        d = DataFrame(counting_reader)
        values = d.get('b1')
        first = values.get()
        reads = counting_reader.reads

        second = values.get()
        d.run()

        assert second is first
        assert counting_reader.reads == reads
        assert d.graph.run_count == 1

    def test_result_handle_forwards_attributes(self, small_columns):
        d = DataFrame(small_columns)
        h = d.histo('b1')
        assert h.entries == 20
        assert h.mean == pytest.approx(9.5)
        assert 'HISTO' in repr(h)

    def test_late_booking_runs_only_new_actions(self, counting_reader):
        d = DataFrame(counting_reader)
        first = d.count()
        assert first.get() == 20

        late = d.max('b1')
        assert d.graph.state is GraphState.BOOKED
        assert late.get() == 19
        assert d.graph.run_count == 2
        assert d.graph.reports[-1].actions == (late.node_id,)
        assert first.get() == 20

    def test_concurrent_dereference_runs_once(self, small_columns):
        d = DataFrame(small_columns)
        handles = [d.count(), d.mean('b1'), d.max('b2')]
        results = []

        def deref(handle):
            results.append(handle.get())

        threads = [threading.Thread(target=deref, args=(h,)) for h in handles * 3]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert d.graph.run_count == 1
        assert len(results) == 9

    def test_empty_dataset(self):
        d = DataFrame({'x': np.array([], dtype=np.float64)})
        c = d.count()
        lo = d.min('x')
        values = d.get('x')
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', RuntimeWarning)
            mean = d.mean('x').get()
        assert c.get() == 0
        assert lo.get() is None
        assert values.get() == []
        assert np.isnan(mean)

    def test_run_without_actions_is_noop(self, counting_reader):
        d = DataFrame(counting_reader)
        report = d.run()
        assert not report.executed
        assert counting_reader.reads == 0


# ============================================================================
# Failures
# ============================================================================

class TestFailures:

    def test_predicate_failure_aborts_run(self, small_columns, context):
        def fragile(b1):
            if b1 == 7:
                raise ZeroDivisionError("bad entry")
            return True

        d = DataFrame(small_columns, context=context)
        healthy = d.count()
        broken = d.filter(fragile, ['b1']).count()

        with pytest.raises(ExecutionError) as excinfo:
            broken.get()

        assert excinfo.value.entry == 7
        assert excinfo.value.node_id == d.graph.arena[broken.node_id].parent
        assert isinstance(excinfo.value.__cause__, ZeroDivisionError)
        assert not healthy.is_ready
        assert not broken.is_ready
        assert d.graph.state is GraphState.BOOKED

    def test_failure_surfaces_to_any_trigger(self, small_columns):
        d = DataFrame(small_columns)
        d.define('bad', lambda b1: 1 / 0, ['b1']).count()
        other = d.count()
        with pytest.raises(ExecutionError):
            other.get()
        with pytest.raises(ExecutionError):
            d.run()

    def test_retrigger_after_fixing_cause(self, small_columns, context):
        state = {'broken': True}

        def flaky(b1):
            if state['broken'] and b1 > 10:
                raise RuntimeError("not ready")
            return b1 > 10

        d = DataFrame(small_columns, context=context)
        c = d.filter(flaky, ['b1']).count()
        with pytest.raises(ExecutionError):
            c.get()

        state['broken'] = False
        assert c.get() == 9
        assert d.graph.state is GraphState.FINALIZED

    def test_reader_failure_is_wrapped(self, small_columns):
        class BrokenReader(ArrayColumnReader):
            def read_value(self, entry, name):
                if entry == 3:
                    raise IOError("corrupt basket")
                return super().read_value(entry, name)

        d = DataFrame(BrokenReader(small_columns))
        with pytest.raises(ExecutionError) as excinfo:
            d.mean('b1').get()
        assert excinfo.value.entry == 3
        assert isinstance(excinfo.value.__cause__, IOError)

    def test_foreach_failure(self, small_columns, context):
        d = DataFrame(small_columns, context=context)
        d.foreach(lambda b2: 1 // (int(b2) - 16), ['b2'])
        with pytest.raises(ExecutionError) as excinfo:
            d.run()
        assert excinfo.value.entry == 4

    def test_result_requested_inside_run(self, small_columns):
        d = DataFrame(small_columns)
        c = d.count()
        d.foreach(lambda: c.get(), [])
        with pytest.raises(ExecutionError) as excinfo:
            d.run()
        assert isinstance(excinfo.value.__cause__, EntryFrameError)

    def test_result_requested_inside_parallel_run(self, small_columns):
        d = DataFrame(small_columns, context=ExecutionContext(workers=2, policy=FINE_BLOCKS))
        c = d.count()
        d.foreach(lambda: c.get(), [])
        errors = []

        def run():
            try:
                d.run()
            except ExecutionError as exc:
                errors.append(exc)

        runner = threading.Thread(target=run, daemon=True)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', RuntimeWarning)
            runner.start()
            runner.join(timeout=30)

        assert not runner.is_alive()
        assert len(errors) == 1
        assert isinstance(errors[0].__cause__, EntryFrameError)
        assert d.graph.state is GraphState.BOOKED
        assert not c.is_ready

    def test_other_graph_readable_inside_run(self, small_columns, context):
        other = DataFrame({'x': np.arange(5)}).count()
        seen = []
        d = DataFrame(small_columns, context=context)
        d.foreach(lambda: seen.append(other.get()), [])
        d.run()
        assert seen == [5] * 20
        assert other.is_ready
