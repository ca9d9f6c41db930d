from django.core.management.base import BaseCommand

from materializer.materialized_columns.lease import request_abort


class Command(BaseCommand):
    help = "Ask the running materialization cycle to stop after the backfill chunks currently in progress"

    def handle(self, *args, **options):
        request_abort()
        self.stdout.write(
            self.style.SUCCESS("Abort requested, running backfills will be paused and resume on the next cycle")
        )
