__version__ = '0.1.0'

from worksync.balancer import BalancingResult as BalancingResult
from worksync.balancer import TopologyDiff as TopologyDiff
from worksync.balancer import WorkBalancer as WorkBalancer
from worksync.config import BalancingConfig as BalancingConfig
from worksync.store import AssignmentStore as AssignmentStore
from worksync.store import balance_and_save as balance_and_save
from worksync.view import Assignment as Assignment
from worksync.view import AssignmentView as AssignmentView
from worksync.work import find_available_work as find_available_work
