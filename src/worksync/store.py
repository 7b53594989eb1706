"""Assignment view persistence for the coordination layer.

The store is the boundary between the pure balancer and durable state:
`load` rebuilds the previous view, `save` replaces it in one transaction
and records an audit row per balancing pass.
"""
import logging
import time
from collections.abc import Hashable, Iterable

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from worksync import config, schema
from worksync.balancer import BalancingResult, WorkBalancer
from worksync.config import BalancingConfig
from worksync.utils import retry_with_backoff
from worksync.view import Assignment, AssignmentView

logger = logging.getLogger(__name__)

__all__ = ['AssignmentStore', 'balance_and_save']


class AssignmentStore:
    """Loads and saves assignment views.

    Subscription and node ids must be `str`; `save` rejects anything else
    so that a loaded view compares equal to the one that was saved.
    """

    def __init__(self, engine: Engine, appname: str = 'worksync_'):
        """Initialize assignment store.

        Args:
            engine: SQLAlchemy engine
            appname: Application name prefix for tables
        """
        self.engine = engine
        self.tables = schema.get_table_names(appname)

    @classmethod
    def from_config(cls, balancing_config: BalancingConfig) -> 'AssignmentStore':
        """Create a store on PostgreSQL and make sure its tables exist.
        """
        engine = create_engine(balancing_config.connection_string, pool_pre_ping=True,
                               pool_size=10, max_overflow=5)
        schema.ensure_database_ready(engine, balancing_config.appname)
        return cls(engine, balancing_config.appname)

    def query(self, sql: str, params: dict = None) -> list:
        """Execute query and return all rows.

        Args:
            sql: SQL query to execute
            params: Optional parameters for the query

        Returns
            List of row objects
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return list(result)

    def load(self) -> AssignmentView:
        """Rebuild the last saved view (empty if nothing was saved).
        """
        subscriptions = [row[0] for row in self.query(f'SELECT name FROM {self.tables["Subscription"]}')]
        nodes = [row[0] for row in self.query(f'SELECT name FROM {self.tables["Node"]}')]
        sql = f'SELECT subscription, node, auto_assigned FROM {self.tables["Assignment"]}'
        assignments = [Assignment(row[0], row[1], bool(row[2])) for row in self.query(sql)]

        logger.debug(f'Loaded view: {len(subscriptions)} subscriptions, {len(nodes)} nodes, '
                     f'{len(assignments)} assignments')
        return AssignmentView(subscriptions, nodes, assignments)

    def get_version(self) -> int:
        """Version of the last saved view, 0 when none.
        """
        rows = self.query(f'SELECT MAX(version) FROM {self.tables["Balance"]}')
        return (rows[0][0] if rows else None) or 0

    def save(self, result: BalancingResult, reason: str = 'scheduled', duration_ms: int = None) -> int:
        """Replace the stored view with the result's view and audit the pass.

        Everything happens in one transaction; on failure nothing is
        committed and the previous view stays in place.

        Args:
            result: Balancing result to persist
            reason: Why the pass ran
            duration_ms: Optional pass duration for the audit row

        Returns
            New view version

        Raises
            TypeError: If a subscription or node id is not a str
        """
        view = result.view
        for name in [*view.get_subscriptions(), *view.get_nodes()]:
            if not isinstance(name, str):
                raise TypeError(f'Stored ids must be str, got {type(name).__name__}: {name!r}')

        with self.engine.connect() as conn:
            current = conn.execute(text(f'SELECT MAX(version) FROM {self.tables["Balance"]}')).scalar() or 0
            version = current + 1

            conn.execute(text(f'DELETE FROM {self.tables["Assignment"]}'))
            conn.execute(text(f'DELETE FROM {self.tables["Subscription"]}'))
            conn.execute(text(f'DELETE FROM {self.tables["Node"]}'))

            subscriptions = [{'name': s} for s in sorted(view.get_subscriptions())]
            if subscriptions:
                conn.execute(text(f'INSERT INTO {self.tables["Subscription"]} (name) VALUES (:name)'), subscriptions)

            nodes = [{'name': n} for n in sorted(view.get_nodes())]
            if nodes:
                conn.execute(text(f'INSERT INTO {self.tables["Node"]} (name) VALUES (:name)'), nodes)

            assignments = [
                {'subscription': a.subscription, 'node': a.node, 'auto_assigned': a.auto_assigned,
                 'version': version}
                for a in view.get_all_assignments()
            ]
            if assignments:
                sql = f"""
                INSERT INTO {self.tables["Assignment"]} (subscription, node, auto_assigned, version, assigned_at)
                VALUES (:subscription, :node, :auto_assigned, :version, CURRENT_TIMESTAMP)
                """
                conn.execute(text(sql), assignments)

            stats = result.as_dict()
            sql = f"""
            INSERT INTO {self.tables["Balance"]}
            (version, balanced_at, reason, subscriptions, removed_subscriptions, created_subscriptions,
             active_nodes, inactive_nodes, new_nodes, missing_resources, assignments_added,
             assignments_removed, duration_ms)
            VALUES (:version, CURRENT_TIMESTAMP, :reason, :subscriptions, :removed_subscriptions,
                    :created_subscriptions, :active_nodes, :inactive_nodes, :new_nodes, :missing_resources,
                    :assignments_added, :assignments_removed, :duration_ms)
            """
            conn.execute(text(sql), {**stats, 'version': version, 'reason': reason, 'duration_ms': duration_ms})

            conn.commit()

        logger.info(f'Saved view v{version}: {len(assignments)} assignments across {len(nodes)} nodes ({reason})')
        return version

    def get_history(self, limit: int = 10) -> list[dict]:
        """Most recent balancing audit rows, newest first.
        """
        sql = f"""
        SELECT version, reason, subscriptions, active_nodes, missing_resources,
               assignments_added, assignments_removed, duration_ms
        FROM {self.tables["Balance"]}
        ORDER BY version DESC
        LIMIT :limit
        """
        return [dict(row._mapping) for row in self.query(sql, {'limit': limit})]

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        self.engine.dispose()
        logger.debug('Assignment store disposed')


@retry_with_backoff(max_attempts=config.balancing.workload.balance_retry_attempts, base_delay=0.5,
                    operation_name='balance_and_save', exceptions=(SQLAlchemyError,))
def balance_and_save(
    balancer: WorkBalancer,
    store: AssignmentStore,
    subscriptions: Iterable[Hashable],
    active_nodes: Iterable[str],
    reason: str = 'scheduled'
) -> BalancingResult:
    """Load the previous view, balance it and persist the outcome.

    The whole cycle is retried on storage errors; the balancing itself is
    pure, so a retry simply recomputes from freshly loaded state.

    Args:
        balancer: Configured work balancer
        store: Assignment store
        subscriptions: Subscriptions that should be served
        active_nodes: Live consumer nodes
        reason: Why the pass ran, recorded in the audit

    Returns
        BalancingResult of the persisted pass
    """
    subscriptions = list(subscriptions)
    active_nodes = list(active_nodes)

    start = time.time()
    current_view = store.load()
    result = balancer.balance(subscriptions, active_nodes, current_view)
    duration_ms = int((time.time() - start) * 1000)

    if result.missing_resources:
        logger.warning(f'Balancing left {result.missing_resources} missing resources')
    store.save(result, reason, duration_ms)
    return result
