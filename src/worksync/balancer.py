"""Work balancer: assigns subscriptions to consumer nodes.

A balancing pass diffs the requested topology against the previous view,
drops stale entities, sheds surplus auto-assigned work, fills missing
replicas and equalizes load, all inside one view transform.
"""
import functools
import logging
from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field

from worksync.config import BalancingConfig
from worksync.utils import log_duration, unique
from worksync.view import Assignment, AssignmentView, Transformer
from worksync.work import find_available_work

logger = logging.getLogger(__name__)

__all__ = ['WorkBalancer', 'BalancingResult', 'TopologyDiff', 'find_topology_diff']


# ============================================================
# TOPOLOGY DIFF
# ============================================================

@dataclass(frozen=True)
class TopologyDiff:
    """Entities that appeared or disappeared since the previous view.
    """
    removed_subscriptions: tuple = ()
    inactive_nodes: tuple = ()
    new_subscriptions: tuple = ()
    new_nodes: tuple = ()

    @property
    def is_empty(self) -> bool:
        return not (self.removed_subscriptions or self.inactive_nodes
                    or self.new_subscriptions or self.new_nodes)


def find_topology_diff(
    view: AssignmentView,
    subscriptions: Iterable[Hashable],
    active_nodes: Iterable[str]
) -> TopologyDiff:
    """Compare requested subscriptions and live nodes against a view.

    Args:
        view: Previous assignment view
        subscriptions: Subscriptions that should be served
        active_nodes: Nodes currently alive

    Returns
        TopologyDiff with each member sorted
    """
    wanted = set(subscriptions)
    alive = set(active_nodes)
    known_subscriptions = view.get_subscriptions()
    known_nodes = view.get_nodes()
    return TopologyDiff(
        removed_subscriptions=tuple(sorted(known_subscriptions - wanted)),
        inactive_nodes=tuple(sorted(known_nodes - alive)),
        new_subscriptions=tuple(sorted(wanted - known_subscriptions)),
        new_nodes=tuple(sorted(alive - known_nodes)),
    )


# ============================================================
# RESULT
# ============================================================

@dataclass(frozen=True)
class BalancingResult:
    """Outcome of one balancing pass.

    missing_resources is the total shortfall against the replication target,
    summed over requested subscriptions (never negative per subscription).
    """
    view: AssignmentView
    diff: TopologyDiff = field(default_factory=TopologyDiff)
    subscriptions_count: int = 0
    active_nodes_count: int = 0
    missing_resources: int = 0
    assignments_added: int = 0
    assignments_removed: int = 0

    @property
    def removed_subscriptions_count(self) -> int:
        return len(self.diff.removed_subscriptions)

    @property
    def created_subscriptions_count(self) -> int:
        return len(self.diff.new_subscriptions)

    @property
    def inactive_nodes_count(self) -> int:
        return len(self.diff.inactive_nodes)

    @property
    def new_nodes_count(self) -> int:
        return len(self.diff.new_nodes)

    @property
    def changed(self) -> bool:
        return bool(self.assignments_added or self.assignments_removed or not self.diff.is_empty)

    def as_dict(self) -> dict:
        """Flat statistics, suitable for logging and the balancing audit.
        """
        return {
            'subscriptions': self.subscriptions_count,
            'removed_subscriptions': self.removed_subscriptions_count,
            'created_subscriptions': self.created_subscriptions_count,
            'active_nodes': self.active_nodes_count,
            'inactive_nodes': self.inactive_nodes_count,
            'new_nodes': self.new_nodes_count,
            'missing_resources': self.missing_resources,
            'assignments_added': self.assignments_added,
            'assignments_removed': self.assignments_removed,
        }


# ============================================================
# BALANCER
# ============================================================

class WorkBalancer:
    """Balances subscriptions across consumer nodes.

    Holds the two capacity parameters; `balance` is otherwise a pure
    function of its arguments.
    """

    def __init__(self, consumers_per_subscription: int, max_subscriptions_per_consumer: int):
        """Initialize work balancer.

        Args:
            consumers_per_subscription: Target number of nodes per subscription
            max_subscriptions_per_consumer: Capacity ceiling per node
        """
        if consumers_per_subscription < 0 or max_subscriptions_per_consumer < 0:
            raise ValueError('Balancer capacity parameters must be non-negative')
        self.consumers_per_subscription = consumers_per_subscription
        self.max_subscriptions_per_consumer = max_subscriptions_per_consumer

    @classmethod
    def from_config(cls, config: BalancingConfig) -> 'WorkBalancer':
        return cls(config.consumers_per_subscription, config.max_subscriptions_per_consumer)

    @log_duration('balance')
    def balance(
        self,
        subscriptions: Iterable[Hashable],
        active_nodes: Iterable[str],
        current_view: AssignmentView
    ) -> BalancingResult:
        """Compute a new assignment view for the given topology.

        Args:
            subscriptions: Subscriptions that should be served (duplicates ignored)
            active_nodes: Live consumer nodes (duplicates ignored)
            current_view: View produced by the previous pass

        Returns
            BalancingResult holding the new view and pass statistics
        """
        subscriptions = unique(subscriptions)
        active_nodes = unique(active_nodes)

        diff = find_topology_diff(current_view, subscriptions, active_nodes)
        balanced_view = current_view.transform(functools.partial(self._rebalance, diff))

        result = BalancingResult(
            view=balanced_view,
            diff=diff,
            subscriptions_count=len(subscriptions),
            active_nodes_count=len(active_nodes),
            missing_resources=self.count_missing_resources(subscriptions, balanced_view),
            assignments_added=len(current_view.additions(balanced_view)),
            assignments_removed=len(current_view.deletions(balanced_view)),
        )
        self._log(current_view, result)
        return result

    def _rebalance(self, diff: TopologyDiff, state: Transformer) -> None:
        for subscription in diff.removed_subscriptions:
            state.remove_subscription(subscription)
        for node in diff.inactive_nodes:
            state.remove_node(node)
        for subscription in diff.new_subscriptions:
            state.add_subscription(subscription)
        for node in diff.new_nodes:
            state.add_node(node)

        self.minimize_workload(state)

        # a transfer can free room on a full node, so repeat until neither step moves anything
        while True:
            work = find_available_work(state, self.consumers_per_subscription,
                                       self.max_subscriptions_per_consumer)
            for assignment in work:
                state.add_assignment(assignment)
            transfers = self.equalize_workload(state)
            if not work and not transfers:
                break

    # --------------------------------------------------------
    # minimize
    # --------------------------------------------------------

    def minimize_workload(self, state: Transformer) -> int:
        """Remove auto-assigned surplus per subscription and per node.

        Manually pinned assignments are never removed, even when they alone
        exceed the replication target or the node capacity.

        Returns
            Number of assignments removed
        """
        redundant = []
        for subscription in sorted(state.get_subscriptions()):
            redundant.extend(self._find_redundant_assignments(state, subscription))
        for assignment in redundant:
            state.remove_assignment(assignment)

        overloaded = []
        for node in sorted(state.get_nodes()):
            overloaded.extend(self._find_overloaded_assignments(state, node))
        for assignment in overloaded:
            state.remove_assignment(assignment)

        removed = len(redundant) + len(overloaded)
        if removed:
            logger.debug(f'Minimized workload: {len(redundant)} redundant, {len(overloaded)} over capacity')
        return removed

    def _find_redundant_assignments(self, state: Transformer, subscription: Hashable) -> list[Assignment]:
        """Surplus auto-assignments of a subscription, most loaded nodes first.
        """
        diff = state.get_assignments_count_for_subscription(subscription) - self.consumers_per_subscription
        if diff <= 0:
            return []
        candidates = [a for a in state.get_assignments_for_subscription(subscription) if a.auto_assigned]
        candidates.sort(key=lambda a: (-state.get_assignments_count_for_node(a.node), a.node))
        return candidates[:diff]

    def _find_overloaded_assignments(self, state: Transformer, node: str) -> list[Assignment]:
        """Auto-assignments above a node's capacity, most replicated subscriptions first.
        """
        diff = state.get_assignments_count_for_node(node) - self.max_subscriptions_per_consumer
        if diff <= 0:
            return []
        candidates = [a for a in state.get_assignments_for_node(node) if a.auto_assigned]
        candidates.sort(key=lambda a: (-state.get_assignments_count_for_subscription(a.subscription), a.subscription))
        return candidates[:diff]

    # --------------------------------------------------------
    # equalize
    # --------------------------------------------------------

    def equalize_workload(self, state: Transformer) -> int:
        """Move assignments from the most to the least loaded node.

        Repeats until a pass transfers nothing. Each transfer strictly
        narrows the gap between two nodes, so the loop terminates.

        Returns
            Number of transfers performed
        """
        if state.get_subscriptions_count() < 2 or not state.get_nodes():
            return 0

        transfers = 0
        transferred = True
        while transferred:
            transferred = False

            nodes = sorted(state.get_nodes())
            max_loaded = max(nodes, key=state.get_assignments_count_for_node)
            min_loaded = min(nodes, key=state.get_assignments_count_for_node)
            max_load = state.get_assignments_count_for_node(max_loaded)
            min_load = state.get_assignments_count_for_node(min_loaded)

            while max_load > min_load + 1 and min_load < self.max_subscriptions_per_consumer:
                subscription = self._find_subscription_for_transfer(state, max_loaded, min_loaded)
                if subscription is None:
                    break
                state.transfer_assignment(max_loaded, min_loaded, subscription)
                transferred = True
                transfers += 1
                max_load -= 1
                min_load += 1

        if transfers:
            logger.debug(f'Equalized workload with {transfers} transfers')
        return transfers

    def _find_subscription_for_transfer(self, state: Transformer, max_loaded: str, min_loaded: str):
        for assignment in state.get_assignments_for_node(max_loaded):
            if assignment.auto_assigned and not state.has_assignment(assignment.subscription, min_loaded):
                return assignment.subscription
        return None

    # --------------------------------------------------------
    # statistics
    # --------------------------------------------------------

    def count_missing_resources(self, subscriptions: list, view: AssignmentView) -> int:
        """Sum the per-subscription shortfall against the replication target.
        """
        missing = 0
        for subscription in subscriptions:
            assigned = view.get_assignments_count_for_subscription(subscription)
            if assigned != self.consumers_per_subscription:
                logger.info(f'Subscription {subscription} has {assigned} != {self.consumers_per_subscription} (default) assignments')
            missing += max(0, self.consumers_per_subscription - assigned)
        return missing

    def _log(self, current_view: AssignmentView, result: BalancingResult) -> None:
        logger.info(f'Balancing {result.subscriptions_count} subscriptions across {result.active_nodes_count} nodes '
                    f'with previous {len(current_view.get_all_assignments())} assignments '
                    f'produced {len(result.view.get_all_assignments())} assignments '
                    f'(+{result.assignments_added}/-{result.assignments_removed}, '
                    f'missing {result.missing_resources})')
