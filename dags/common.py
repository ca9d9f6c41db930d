from enum import Enum

import dagster
from django.conf import settings

from materializer.clickhouse.database import ClickhouseDatabase


class JobOwners(str, Enum):
    TEAM_CLICKHOUSE = "team-clickhouse"


class AnalyticsDatabaseResource(dagster.ConfigurableResource):
    """
    The ClickHouse database whose tables get materialized columns.
    """

    call_timeout: float = settings.CLICKHOUSE_CALL_TIMEOUT_SECONDS
    mutation_poll_interval: float = 15.0

    def create_resource(self, context: dagster.InitResourceContext) -> ClickhouseDatabase:
        return ClickhouseDatabase(
            call_timeout=self.call_timeout,
            mutation_poll_interval=self.mutation_poll_interval,
        )
