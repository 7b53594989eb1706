"""Shared test helpers: view builders and invariant checks.

USE THIS FILE FOR:
- Building AssignmentView instances from compact node -> subscriptions maps
- Load and invariant assertions shared by balancer tests
"""
import logging
from collections import Counter

from worksync.balancer import BalancingResult
from worksync.view import Assignment, AssignmentView

logger = logging.getLogger(__name__)


# ============================================================================
# VIEW BUILDERS
# ============================================================================

def view_of(node_subscriptions: dict[str, list], pinned: set[tuple] = frozenset(),
            subscriptions: list = (), nodes: list = ()) -> AssignmentView:
    """Build a view from {node: [subscription, ...]}.

    Args:
        node_subscriptions: Assignments grouped by node
        pinned: (subscription, node) pairs that are manually assigned
        subscriptions: Extra known subscriptions without assignments
        nodes: Extra known nodes without assignments

    Usage:
        view = view_of({'N1': ['A', 'B'], 'N2': ['A']}, pinned={('A', 'N1')})
    """
    assignments = [
        Assignment(s, node, auto_assigned=(s, node) not in pinned)
        for node, subs in node_subscriptions.items()
        for s in subs
    ]
    all_subscriptions = list(subscriptions) + [a.subscription for a in assignments]
    all_nodes = list(nodes) + list(node_subscriptions)
    return AssignmentView(dict.fromkeys(all_subscriptions), dict.fromkeys(all_nodes), assignments)


def node_loads(view: AssignmentView) -> dict[str, int]:
    """Assignment count per known node.
    """
    return {n: view.get_assignments_count_for_node(n) for n in view.get_nodes()}


def pairs(view: AssignmentView) -> set[tuple]:
    """(subscription, node) pairs of every assignment in a view.
    """
    return {(a.subscription, a.node) for a in view.get_all_assignments()}


def random_view(rng, subscriptions: list, nodes: list, pin_rate: float = 0.0) -> AssignmentView:
    """Build an arbitrary, usually unbalanced view.

    Each node serves a random sample of the subscriptions, so targets and
    capacities are freely under- or over-shot.
    """
    node_subscriptions = {n: rng.sample(subscriptions, rng.randint(0, len(subscriptions))) for n in nodes}
    pinned = {(s, n) for n, subs in node_subscriptions.items() for s in subs if rng.random() < pin_rate}
    return view_of(node_subscriptions, pinned=pinned, subscriptions=subscriptions)


# ============================================================================
# INVARIANT ASSERTIONS
# ============================================================================

def assert_result_invariants(result: BalancingResult, previous: AssignmentView,
                             replication: int, capacity: int) -> None:
    """Check the invariants every balancing result must hold.
    """
    view = result.view
    previous_pins = {(a.subscription, a.node) for a in previous.get_all_assignments() if not a.auto_assigned}

    for subscription in view.get_subscriptions():
        assignments = view.get_assignments_for_subscription(subscription)
        pins = [a for a in assignments if not a.auto_assigned]
        assert len(assignments) <= max(replication, len(pins)), \
            f'{subscription} has {len(assignments)} assignments, target {replication}'

    for node in view.get_nodes():
        assignments = view.get_assignments_for_node(node)
        pins = [a for a in assignments if not a.auto_assigned]
        assert len(assignments) <= max(capacity, len(pins)), \
            f'{node} serves {len(assignments)} subscriptions, capacity {capacity}'

    surviving = {(s, n) for s, n in previous_pins
                 if s in view.get_subscriptions() and n in view.get_nodes()}
    assert surviving <= pairs(view), 'Manual pins must survive balancing'

    counts = Counter((a.subscription, a.node) for a in view.get_all_assignments())
    assert all(c == 1 for c in counts.values()), 'Duplicate assignment pairs'

    for a in view.get_all_assignments():
        assert a.subscription in view.get_subscriptions()
        assert a.node in view.get_nodes()

    for subscription in view.get_subscriptions():
        if view.get_assignments_count_for_subscription(subscription) >= replication:
            continue
        for node in view.get_nodes() - view.get_nodes_for_subscription(subscription):
            assert view.get_assignments_count_for_node(node) >= capacity, \
                f'{subscription} is short but {node} has room'

    if view.get_nodes() and all(a.auto_assigned for a in view.get_all_assignments()):
        loads = node_loads(view)
        assert max(loads.values()) - min(loads.values()) <= 1, f'Load spread above 1: {loads}'
