from django.core.management.base import BaseCommand
from django.db import transaction

from materializer.models import BackfillJob, BackfillJobState, MaterializationState


class Command(BaseCommand):
    help = "Make failed backfills resumable again, starting from where they stopped"

    def add_arguments(self, parser):
        parser.add_argument("--table", help="Only retry backfills of this table")
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show which backfills would be retried without changing them",
        )

    def handle(self, *args, **options):
        jobs = BackfillJob.objects.filter(state=BackfillJobState.FAILED).select_related("candidate")
        if options["table"]:
            jobs = jobs.filter(table=options["table"])

        count = 0
        for job in jobs:
            count += 1
            if options["dry_run"]:
                self.stdout.write(f"  - Would retry {job}: {job.error_message}")
                continue

            with transaction.atomic():
                job.attempts = 0
                job.pause(job.error_message)
                # the column still exists, so the candidate can't be selected again while its backfill is retried
                if job.candidate.state != MaterializationState.PENDING:
                    job.candidate.mark_pending(job.column_name)
            self.stdout.write(f"  - Retrying {job}")

        if count == 0:
            self.stdout.write("No failed backfills")
        elif not options["dry_run"]:
            self.stdout.write(self.style.SUCCESS(f"{count} backfill(s) will resume on the next cycle"))
