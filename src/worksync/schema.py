import logging

from sqlalchemy import Engine, inspect, text

logger = logging.getLogger(__name__)

TABLE_KEYS = ['Subscription', 'Node', 'Assignment', 'Balance']


def get_table_names(appname: str = 'worksync_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return {
        'Subscription': f'{appname}subscription',
        'Node': f'{appname}node',
        'Assignment': f'{appname}assignment',
        'Balance': f'{appname}balance'
    }


def verify_tables_exist(engine: Engine, appname: str = 'worksync_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    inspector = inspect(engine)
    return {key: inspector.has_table(tables[key]) for key in TABLE_KEYS}


def _create_tables(engine: Engine, tables: dict[str, str]) -> None:
    """Create assignment state and audit tables.
    """
    Subscription = tables['Subscription']
    Node = tables['Node']
    Assignment = tables['Assignment']
    Balance = tables['Balance']

    with engine.connect() as conn:
        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Subscription} (
    name varchar not null,
    primary key (name)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Node} (
    name varchar not null,
    primary key (name)
);
        """))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Assignment} (
    subscription varchar not null,
    node varchar not null,
    auto_assigned boolean not null,
    version integer not null,
    assigned_at timestamp not null,
    primary key (subscription, node)
);
        """))

        conn.execute(text(f'CREATE INDEX IF NOT EXISTS idx_{Assignment}_node ON {Assignment}(node)'))

        conn.execute(text(f"""
CREATE TABLE IF NOT EXISTS {Balance} (
    version integer not null,
    balanced_at timestamp not null,
    reason varchar not null,
    subscriptions integer not null,
    removed_subscriptions integer not null,
    created_subscriptions integer not null,
    active_nodes integer not null,
    inactive_nodes integer not null,
    new_nodes integer not null,
    missing_resources integer not null,
    assignments_added integer not null,
    assignments_removed integer not null,
    duration_ms integer,
    primary key (version)
);
        """))

        conn.commit()

    logger.debug(f'Tables verified: {Subscription}, {Node}, {Assignment}, {Balance}')


def ensure_database_ready(engine: Engine, appname: str = 'worksync_') -> None:
    """Ensure database has all required tables.

    Safe to call repeatedly - uses CREATE TABLE IF NOT EXISTS.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    tables = get_table_names(appname)

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    try:
        _create_tables(engine, tables)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
