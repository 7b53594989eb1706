"""Immutable assignment snapshots and the transformer used to derive new ones.
"""
import logging
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

__all__ = ['Assignment', 'AssignmentView', 'Transformer']


@dataclass(frozen=True, order=True)
class Assignment:
    """A subscription served by a consumer node.

    Identity is the (subscription, node) pair. Manually pinned assignments
    (auto_assigned=False) are never removed or moved by the balancer.
    """
    subscription: Hashable
    node: str
    auto_assigned: bool = field(default=True, compare=False)

    def __repr__(self) -> str:
        pin = '' if self.auto_assigned else ',pinned'
        return f'{self.subscription}@{self.node}{pin}'


class _AssignmentIndex:
    """Two-way index of assignments shared by views and transformers.
    """

    def __init__(self):
        self._by_subscription: dict[Hashable, dict[str, Assignment]] = {}
        self._by_node: dict[str, dict[Hashable, Assignment]] = {}

    def _copy_from(self, other: '_AssignmentIndex') -> None:
        self._by_subscription = {s: dict(a) for s, a in other._by_subscription.items()}
        self._by_node = {n: dict(a) for n, a in other._by_node.items()}

    def get_subscriptions(self) -> set:
        return set(self._by_subscription)

    def get_subscriptions_count(self) -> int:
        return len(self._by_subscription)

    def get_nodes(self) -> set[str]:
        return set(self._by_node)

    def get_all_assignments(self) -> list[Assignment]:
        return sorted(a for assignments in self._by_subscription.values() for a in assignments.values())

    def get_assignments_for_subscription(self, subscription: Hashable) -> list[Assignment]:
        return sorted(self._by_subscription.get(subscription, {}).values())

    def get_assignments_for_node(self, node: str) -> list[Assignment]:
        return sorted(self._by_node.get(node, {}).values())

    def get_assignments_count_for_subscription(self, subscription: Hashable) -> int:
        return len(self._by_subscription.get(subscription, ()))

    def get_assignments_count_for_node(self, node: str) -> int:
        return len(self._by_node.get(node, ()))

    def get_nodes_for_subscription(self, subscription: Hashable) -> set[str]:
        return set(self._by_subscription.get(subscription, ()))

    def get_subscriptions_for_node(self, node: str) -> set:
        return set(self._by_node.get(node, ()))

    def has_assignment(self, subscription: Hashable, node: str) -> bool:
        return node in self._by_subscription.get(subscription, ())


class AssignmentView(_AssignmentIndex):
    """Immutable snapshot of which nodes serve which subscriptions.

    All changes go through `transform`, which returns a new view and leaves
    this one untouched.
    """

    def __init__(self, subscriptions: Iterable = (), nodes: Iterable[str] = (),
                 assignments: Iterable[Assignment] = ()):
        """Build a view from known entities and their assignments.

        Args:
            subscriptions: Known subscription ids
            nodes: Known consumer node ids
            assignments: Assignments between known entities

        Raises
            ValueError: If an assignment references an unknown entity or
                the same pair appears twice
        """
        super().__init__()
        for subscription in subscriptions:
            self._by_subscription.setdefault(subscription, {})
        for node in nodes:
            self._by_node.setdefault(node, {})
        for assignment in assignments:
            if assignment.subscription not in self._by_subscription:
                raise ValueError(f'Assignment {assignment!r} references unknown subscription')
            if assignment.node not in self._by_node:
                raise ValueError(f'Assignment {assignment!r} references unknown node')
            if self.has_assignment(assignment.subscription, assignment.node):
                raise ValueError(f'Duplicate assignment {assignment!r}')
            self._by_subscription[assignment.subscription][assignment.node] = assignment
            self._by_node[assignment.node][assignment.subscription] = assignment

    @classmethod
    def empty(cls) -> 'AssignmentView':
        return cls()

    @classmethod
    def of(cls, assignments: Iterable[Assignment]) -> 'AssignmentView':
        """Build a view whose known entities are exactly those assigned.
        """
        assignments = list(assignments)
        return cls(
            subscriptions=[a.subscription for a in assignments],
            nodes=[a.node for a in assignments],
            assignments=assignments,
        )

    def transform(self, fn: Callable[['Transformer'], None]) -> 'AssignmentView':
        """Apply `fn` to a private transformer and freeze the outcome.

        Nothing is observable until `fn` returns; if it raises, the
        exception propagates and no view is produced.
        """
        transformer = Transformer(self)
        fn(transformer)
        return transformer.build()

    def deletions(self, target: 'AssignmentView') -> list[Assignment]:
        """Assignments present here but absent from `target`.
        """
        return [a for a in self.get_all_assignments()
                if not target.has_assignment(a.subscription, a.node)]

    def additions(self, target: 'AssignmentView') -> list[Assignment]:
        """Assignments present in `target` but absent here.
        """
        return target.deletions(self)

    def __eq__(self, other) -> bool:
        if not isinstance(other, AssignmentView):
            return NotImplemented
        return (self.get_subscriptions() == other.get_subscriptions()
                and self.get_nodes() == other.get_nodes()
                and [(a, a.auto_assigned) for a in self.get_all_assignments()]
                == [(a, a.auto_assigned) for a in other.get_all_assignments()])

    __hash__ = None

    def __repr__(self) -> str:
        return (f'AssignmentView(subscriptions={self.get_subscriptions_count()},'
                f'nodes={len(self._by_node)},assignments={len(self.get_all_assignments())})')


class Transformer(_AssignmentIndex):
    """Mutable working copy of a view, local to one `transform` call.

    Queries reflect every mutation applied so far.
    """

    def __init__(self, source: AssignmentView):
        super().__init__()
        self._copy_from(source)

    def add_subscription(self, subscription: Hashable) -> None:
        self._by_subscription.setdefault(subscription, {})

    def remove_subscription(self, subscription: Hashable) -> None:
        for node in self._by_subscription.pop(subscription, {}):
            del self._by_node[node][subscription]

    def add_node(self, node: str) -> None:
        self._by_node.setdefault(node, {})

    def remove_node(self, node: str) -> None:
        for subscription in self._by_node.pop(node, {}):
            del self._by_subscription[subscription][node]

    def add_assignment(self, assignment: Assignment) -> None:
        """Add an assignment between known entities; existing pairs are kept.

        Raises
            ValueError: If the subscription or node is unknown
        """
        if assignment.subscription not in self._by_subscription:
            raise ValueError(f'Cannot assign unknown subscription {assignment.subscription}')
        if assignment.node not in self._by_node:
            raise ValueError(f'Cannot assign to unknown node {assignment.node}')
        if self.has_assignment(assignment.subscription, assignment.node):
            return
        self._by_subscription[assignment.subscription][assignment.node] = assignment
        self._by_node[assignment.node][assignment.subscription] = assignment

    def remove_assignment(self, assignment: Assignment) -> None:
        self._by_subscription.get(assignment.subscription, {}).pop(assignment.node, None)
        self._by_node.get(assignment.node, {}).pop(assignment.subscription, None)

    def transfer_assignment(self, from_node: str, to_node: str, subscription: Hashable) -> None:
        """Move one subscription's assignment between nodes as a single step.

        Raises
            ValueError: If `from_node` does not serve the subscription or
                `to_node` already does
        """
        if not self.has_assignment(subscription, from_node):
            raise ValueError(f'Node {from_node} does not serve {subscription}')
        if to_node not in self._by_node:
            raise ValueError(f'Cannot transfer to unknown node {to_node}')
        if self.has_assignment(subscription, to_node):
            raise ValueError(f'Node {to_node} already serves {subscription}')
        current = self._by_subscription[subscription][from_node]
        self.remove_assignment(current)
        self.add_assignment(Assignment(subscription, to_node, current.auto_assigned))
        logger.debug(f'Transferred {subscription} from {from_node} to {to_node}')

    def build(self) -> AssignmentView:
        view = AssignmentView()
        view._copy_from(self)
        return view
