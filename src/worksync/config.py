import os
from dataclasses import dataclass
from types import SimpleNamespace


@dataclass
class BalancingConfig:
    """Configuration for work balancing and assignment storage.

    Capacity parameters are counts; connection parameters are used by
    the assignment store only.
    """
    consumers_per_subscription: int = 2
    max_subscriptions_per_consumer: int = 10

    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'worksync'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'worksync_'

    def __post_init__(self):
        if self.consumers_per_subscription < 0:
            raise ValueError(f'consumers_per_subscription must be >= 0, got {self.consumers_per_subscription}')
        if self.max_subscriptions_per_consumer < 0:
            raise ValueError(f'max_subscriptions_per_consumer must be >= 0, got {self.max_subscriptions_per_consumer}')

    @property
    def connection_string(self) -> str:
        return build_connection_string(self.host, self.port, self.dbname, self.user, self.password)


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


balancing = SimpleNamespace(
    sql=SimpleNamespace(
        appname=os.getenv('WORKSYNC_SQL_APPNAME', 'worksync_'),
        host=os.getenv('WORKSYNC_SQL_HOST', 'localhost'),
        dbname=os.getenv('WORKSYNC_SQL_DATABASE', 'worksync'),
        user=os.getenv('WORKSYNC_SQL_USERNAME', 'postgres'),
        passwd=os.getenv('WORKSYNC_SQL_PASSWORD', 'postgres'),
        port=int(os.getenv('WORKSYNC_SQL_PORT', '5432'))
    ),
    workload=SimpleNamespace(
        consumers_per_subscription=int(os.getenv('WORKSYNC_CONSUMERS_PER_SUBSCRIPTION', '2')),
        max_subscriptions_per_consumer=int(os.getenv('WORKSYNC_MAX_SUBSCRIPTIONS_PER_CONSUMER', '10')),
        balance_retry_attempts=int(os.getenv('WORKSYNC_BALANCE_RETRY_ATTEMPTS', '3'))
    )
)


def from_env() -> BalancingConfig:
    """Build a BalancingConfig from the WORKSYNC_* environment defaults.
    """
    return BalancingConfig(
        consumers_per_subscription=balancing.workload.consumers_per_subscription,
        max_subscriptions_per_consumer=balancing.workload.max_subscriptions_per_consumer,
        host=balancing.sql.host,
        port=balancing.sql.port,
        dbname=balancing.sql.dbname,
        user=balancing.sql.user,
        password=balancing.sql.passwd,
        appname=balancing.sql.appname,
    )
