from io import StringIO
from unittest import mock

import pytest
from django.core.management import CommandError, call_command

from materializer.materialized_columns.lease import abort_requested
from materializer.materialized_columns.mutator import SchemaMutator
from materializer.models import BackfillJob, BackfillJobState, MaterializationCandidate, MaterializationState
from materializer.test.fake_database import FakeDatabase


def run_command(name: str, *args, **kwargs) -> str:
    out = StringIO()
    call_command(name, *args, stdout=out, **kwargs)
    return out.getvalue()


@pytest.fixture
def patched_database(database: FakeDatabase):
    with mock.patch("materializer.management.commands.materialize_columns.ClickhouseDatabase", return_value=database):
        yield database


@pytest.mark.django_db
def test_materialize_columns(patched_database: FakeDatabase):
    patched_database.insert("events", "202401", {"plan": "pro"})
    for _ in range(3):
        patched_database.log_query("SELECT count() FROM events WHERE JSONExtractString(properties, 'plan') = 'pro'")

    output = run_command("materialize_columns", "--min-usage", "1")

    assert "Selected events:plan" in output
    assert "Backfill of events:plan is completed" in output
    assert MaterializationCandidate.objects.get().state == MaterializationState.MATERIALIZED
    assert patched_database.values("events", "mat_plan") == {"202401": ["pro"]}


@pytest.mark.django_db
def test_materialize_columns_dry_run(patched_database: FakeDatabase):
    patched_database.log_query("SELECT count() FROM events WHERE JSONExtractString(properties, 'plan') = 'pro'")

    output = run_command("materialize_columns", "--dry-run", "--min-usage", "1")

    assert "Would materialize events:plan" in output
    assert not MaterializationCandidate.objects.exists()
    assert patched_database.calls == []


@pytest.mark.django_db
def test_materialize_explicit_properties(patched_database: FakeDatabase):
    run_command("materialize_columns", "--property", "events:plan", "--property", "person:email")

    assert set(MaterializationCandidate.objects.values_list("table", "property_name")) == {
        ("events", "plan"),
        ("person", "email"),
    }


@pytest.mark.django_db
def test_materialize_columns_invalid_arguments(patched_database: FakeDatabase):
    with pytest.raises(CommandError):
        run_command("materialize_columns", "--property", "plan")

    with pytest.raises(CommandError):
        run_command("materialize_columns", "--chunk-size", "0")


def test_abort_materialization_cycle():
    output = run_command("abort_materialization_cycle")

    assert "Abort requested" in output
    assert abort_requested()


@pytest.mark.django_db
def test_retry_failed_backfills(database: FakeDatabase):
    database.insert("events", "202401", {"plan": "pro"})
    candidate = MaterializationCandidate.objects.create(table="events", property_name="plan")
    job = SchemaMutator.from_settings(database).apply(candidate)
    job.attempts = 4
    job.fail("mutation timed out")
    candidate.mark_failed("backfill failed: mutation timed out")

    output = run_command("retry_failed_backfills", "--dry-run")
    assert "Would retry" in output
    job.refresh_from_db()
    assert job.state == BackfillJobState.FAILED

    output = run_command("retry_failed_backfills")
    assert "1 backfill(s) will resume" in output

    job.refresh_from_db()
    assert job.state == BackfillJobState.PAUSED
    assert job.attempts == 0
    assert job.candidate.state == MaterializationState.PENDING
    assert BackfillJob.objects.filter(state=BackfillJobState.FAILED).count() == 0

    assert "No failed backfills" in run_command("retry_failed_backfills")
