"""Tests for assignment persistence and the retrying balancing pass.

Uses a throwaway SQLite database per test (see conftest.engine).
"""
import logging

import pytest
from asserts import assert_equal, assert_false, assert_true
from sqlalchemy.exc import OperationalError

from worksync import schema, utils
from worksync.balancer import WorkBalancer
from worksync.store import AssignmentStore, balance_and_save
from worksync.utils import retry_with_backoff
from worksync.view import Assignment, AssignmentView

from fixtures import *  # noqa: F401, F403

logger = logging.getLogger(__name__)


class TestSchema:
    """Test table creation."""

    def test_table_names_use_appname(self):
        tables = schema.get_table_names('app_')
        assert_equal(tables['Assignment'], 'app_assignment')
        assert_equal(tables['Balance'], 'app_balance')

    def test_tables_created(self, engine):
        status = schema.verify_tables_exist(engine, 'worksync_')
        assert all(status.values()), f'Missing tables: {status}'

    def test_other_appname_missing(self, engine):
        status = schema.verify_tables_exist(engine, 'other_')
        assert_false(any(status.values()))

    def test_ensure_database_ready_is_repeatable(self, engine):
        schema.ensure_database_ready(engine, 'worksync_')
        schema.ensure_database_ready(engine, 'worksync_')
        assert_true(all(schema.verify_tables_exist(engine, 'worksync_').values()))


class TestStore:
    """Test loading and saving views."""

    def test_load_empty(self, store):
        assert_equal(store.load(), AssignmentView.empty())
        assert_equal(store.get_version(), 0)

    def test_save_and_load_round_trip(self, store, balancer):
        """Verify known entities, assignments and pin flags survive storage.
        """
        current = view_of({'N1': ['A'], 'N2': []}, pinned={('A', 'N1')}, subscriptions=['B'])
        result = balancer.balance(['A', 'B'], ['N1', 'N2'], current)

        version = store.save(result, reason='test')
        loaded = store.load()

        assert_equal(version, 1)
        assert_equal(loaded, result.view)
        pinned = [a for a in loaded.get_all_assignments() if not a.auto_assigned]
        assert_equal(pinned, [Assignment('A', 'N1')])

    def test_save_replaces_previous_view(self, store, balancer):
        first = balancer.balance(['A', 'B'], ['N1', 'N2'], AssignmentView.empty())
        store.save(first)
        second = balancer.balance(['B'], ['N2'], first.view)
        version = store.save(second)

        assert_equal(version, 2)
        assert_equal(store.load(), second.view)
        assert_equal(store.load().get_nodes(), {'N2'})

    def test_save_empty_view(self, store, balancer):
        store.save(balancer.balance(['A'], ['N1'], AssignmentView.empty()))
        store.save(balancer.balance([], [], store.load()))
        assert_equal(store.load(), AssignmentView.empty())

    def test_history_newest_first(self, store, balancer):
        result = balancer.balance(['A', 'B', 'C'], ['N1', 'N2'], AssignmentView.empty())
        store.save(result, reason='startup', duration_ms=5)
        store.save(balancer.balance(['A', 'B', 'C'], ['N1', 'N2'], result.view), reason='scheduled')

        history = store.get_history()

        assert_equal([h['version'] for h in history], [2, 1])
        assert_equal(history[1]['reason'], 'startup')
        assert_equal(history[1]['assignments_added'], 6)
        assert_equal(history[1]['duration_ms'], 5)
        assert_equal(history[0]['assignments_added'], 0)

    def test_non_str_ids_rejected(self, store, balancer):
        """Verify ids that would not load back unchanged are refused before writing.
        """
        store.save(balancer.balance(['A'], ['N1'], AssignmentView.empty()))
        result = balancer.balance([1, 2], ['N1', 'N2'], AssignmentView.empty())

        with pytest.raises(TypeError):
            store.save(result)
        assert_equal(store.get_version(), 1)
        assert_equal(store.load().get_subscriptions(), {'A'})

    def test_history_limit(self, store, balancer):
        for _ in range(3):
            store.save(balancer.balance(['A'], ['N1'], store.load()))
        assert_equal(len(store.get_history(limit=2)), 2)


class TestBalanceAndSave:
    """Test the load, balance and save cycle."""

    def test_pass_persists_result(self, store, balancer):
        result = balance_and_save(balancer, store, ['A', 'B'], ['N1', 'N2'], reason='startup')

        assert_equal(store.load(), result.view)
        assert_equal(store.get_history()[0]['reason'], 'startup')

    def test_consecutive_passes_converge(self, store):
        """Verify a repeated pass over stored state makes no changes.
        """
        balancer = WorkBalancer(consumers_per_subscription=2, max_subscriptions_per_consumer=4)
        balance_and_save(balancer, store, ['A', 'B', 'C'], ['N1', 'N2', 'N3'])
        result = balance_and_save(balancer, store, ['A', 'B', 'C'], ['N1', 'N2', 'N3'])

        assert_false(result.changed)
        assert_equal(store.get_version(), 2)

    def test_storage_errors_retried(self, store, balancer, monkeypatch):
        """Verify a failed save reruns the whole pass and then succeeds.
        """
        monkeypatch.setattr(utils.time, 'sleep', lambda _: None)
        original_save = AssignmentStore.save
        calls = {'save': 0}

        def flaky_save(self, *args, **kwargs):
            calls['save'] += 1
            if calls['save'] == 1:
                raise OperationalError('INSERT', {}, Exception('connection lost'))
            return original_save(self, *args, **kwargs)

        monkeypatch.setattr(AssignmentStore, 'save', flaky_save)

        result = balance_and_save(balancer, store, ['A'], ['N1'])

        assert_equal(calls['save'], 2)
        assert_equal(store.load(), result.view)

    def test_non_storage_errors_not_retried(self, store, monkeypatch):
        monkeypatch.setattr(utils.time, 'sleep', lambda _: None)
        calls = {'balance': 0}

        class BrokenBalancer:
            def balance(self, *args):
                calls['balance'] += 1
                raise ValueError('bad input')

        with pytest.raises(ValueError):
            balance_and_save(BrokenBalancer(), store, ['A'], ['N1'])
        assert_equal(calls['balance'], 1)


class TestRetryWithBackoff:
    """Test the retry decorator."""

    def test_gives_up_after_max_attempts(self, monkeypatch):
        delays = []
        monkeypatch.setattr(utils.time, 'sleep', delays.append)

        @retry_with_backoff(max_attempts=3, base_delay=1.0, exceptions=(OSError,))
        def always_fails():
            raise OSError('down')

        with pytest.raises(OSError):
            always_fails()
        assert_equal(delays, [1.0, 2.0])

    def test_returns_first_success(self):
        @retry_with_backoff(max_attempts=3)
        def works():
            return 42

        assert_equal(works(), 42)
