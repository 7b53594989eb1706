"""Pytest configuration and shared fixtures.

WHAT THIS FILE PROVIDES:
- engine: SQLAlchemy engine on a throwaway SQLite database with tables created
- store: AssignmentStore bound to that engine
- balancer: WorkBalancer with R=2, M=3
"""
import logging

import pytest
from sqlalchemy import create_engine

from worksync import schema
from worksync.balancer import WorkBalancer
from worksync.store import AssignmentStore

logger = logging.getLogger(__name__)


@pytest.fixture
def engine(tmp_path):
    """Provide SQLAlchemy engine for store tests.
    """
    engine = create_engine(f'sqlite:///{tmp_path / "worksync.db"}')
    schema.ensure_database_ready(engine, 'worksync_')
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def store(engine):
    """Provide AssignmentStore bound to the test engine.
    """
    store = AssignmentStore(engine, 'worksync_')
    try:
        yield store
    finally:
        store.dispose()


@pytest.fixture
def balancer():
    return WorkBalancer(consumers_per_subscription=2, max_subscriptions_per_consumer=3)
