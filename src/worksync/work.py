"""Available work: the assignments still needed to reach replication targets.
"""
import logging

from worksync.view import Assignment, AssignmentView, Transformer

logger = logging.getLogger(__name__)

__all__ = ['find_available_work']


def find_available_work(
    view: AssignmentView | Transformer,
    consumers_per_subscription: int,
    max_subscriptions_per_consumer: int
) -> list[Assignment]:
    """Compute the auto-assignments that fill every subscription up to its target.

    Pure function over a view (or a transformer mid-transform). Subscriptions
    are served round-robin, one replica per round, so a shortage of capacity
    is spread across subscriptions instead of hitting the last ones only.
    Each replica goes to the least-loaded node (ties by node id) that does not
    already serve the subscription and is below capacity.

    Args:
        view: Current assignment state
        consumers_per_subscription: Target number of nodes per subscription
        max_subscriptions_per_consumer: Capacity ceiling per node

    Returns
        New assignments, in the order they were chosen
    """
    node_loads = {n: view.get_assignments_count_for_node(n) for n in sorted(view.get_nodes())}
    serving = {s: view.get_nodes_for_subscription(s) for s in sorted(view.get_subscriptions())}

    work = []
    granted = True
    while granted:
        granted = False
        for subscription, nodes in serving.items():
            if len(nodes) >= consumers_per_subscription:
                continue
            candidates = [n for n, load in node_loads.items()
                          if n not in nodes and load < max_subscriptions_per_consumer]
            if not candidates:
                continue
            node = min(candidates, key=lambda n: (node_loads[n], n))
            nodes.add(node)
            node_loads[node] += 1
            work.append(Assignment(subscription, node))
            granted = True

    logger.debug(f'Available work: {len(work)} assignments across {len(serving)} subscriptions')
    return work
