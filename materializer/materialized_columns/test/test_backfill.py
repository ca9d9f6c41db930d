from unittest import mock

import pytest
from django.core.cache import cache

from materializer.exceptions import BackfillChunkError
from materializer.materialized_columns.backfill import BackfillCoordinator, chunked
from materializer.materialized_columns.lease import LEASE_KEY, CycleLease
from materializer.materialized_columns.mutator import SchemaMutator
from materializer.models import BackfillJob, BackfillJobState, MaterializationCandidate, MaterializationState
from materializer.test.fake_database import FakeDatabase

PARTITIONS = ["202401", "202402", "202403"]


class Killed(BaseException):
    """Stands in for the process dying in the middle of a chunk."""


def setup_backfill(database: FakeDatabase, property_name: str = "plan") -> BackfillJob:
    for partition in PARTITIONS:
        database.insert("events", partition, {property_name: f"value-{partition}"})
    candidate = MaterializationCandidate.objects.create(table="events", property_name=property_name)
    return SchemaMutator.from_settings(database).apply(candidate)


def make_coordinator(database: FakeDatabase, **kwargs) -> BackfillCoordinator:
    kwargs.setdefault("should_abort", lambda: False)
    kwargs.setdefault("sleep", lambda delay: None)
    return BackfillCoordinator(database, **kwargs)


def fully_backfilled(database: FakeDatabase, column_name: str = "mat_plan") -> bool:
    return database.values("events", column_name) == {p: [f"value-{p}"] for p in PARTITIONS}


def test_chunked():
    assert list(chunked([], 2)) == []
    assert list(chunked(["a", "b", "c"], 2)) == [["a", "b"], ["c"]]
    assert list(chunked(["a", "b"], 5)) == [["a", "b"]]


@pytest.mark.django_db
def test_backfill_completes(database: FakeDatabase):
    job = setup_backfill(database)
    assert database.values("events", "mat_plan") == {p: [None] for p in PARTITIONS}

    assert make_coordinator(database).run() == {("events", "plan"): BackfillJobState.COMPLETED}

    assert fully_backfilled(database)
    assert database.materialize_calls() == [("events", "mat_plan", (p,)) for p in PARTITIONS]

    job.refresh_from_db()
    assert job.state == BackfillJobState.COMPLETED
    assert job.cursor == "202403"
    assert job.completed_at is not None
    assert job.candidate.state == MaterializationState.MATERIALIZED

    # finished jobs are not picked up again
    assert make_coordinator(database).run() == {}


@pytest.mark.django_db
def test_chunk_size(database: FakeDatabase):
    setup_backfill(database)

    make_coordinator(database, chunk_size=2).run()

    assert database.materialize_calls() == [
        ("events", "mat_plan", ("202401", "202402")),
        ("events", "mat_plan", ("202403",)),
    ]
    assert fully_backfilled(database)


@pytest.mark.django_db
def test_replaying_a_finished_backfill_changes_nothing(database: FakeDatabase):
    job = setup_backfill(database)
    make_coordinator(database).run()
    values = database.values("events", "mat_plan")

    job.refresh_from_db()
    job.cursor = None
    job.state = BackfillJobState.RUNNING
    job.save()
    make_coordinator(database).run()

    assert database.values("events", "mat_plan") == values


@pytest.mark.django_db
def test_resumes_after_being_killed(database: FakeDatabase):
    job = setup_backfill(database)

    def kill_on_second_partition(table, column_name, partitions):
        if partitions == ["202402"]:
            raise Killed()

    database.on_materialize = kill_on_second_partition
    with pytest.raises(Killed):
        make_coordinator(database).run()

    job.refresh_from_db()
    assert job.state == BackfillJobState.RUNNING
    assert job.cursor == "202401"
    assert database.values("events", "mat_plan")["202402"] == [None]

    database.on_materialize = None
    database.calls.clear()
    assert make_coordinator(database).run() == {("events", "plan"): BackfillJobState.COMPLETED}

    # completed chunks are not run again
    assert database.materialize_calls() == [("events", "mat_plan", ("202402",)), ("events", "mat_plan", ("202403",))]
    assert fully_backfilled(database)


@pytest.mark.django_db
def test_transient_failures_are_retried(database: FakeDatabase):
    job = setup_backfill(database)
    failures = [BackfillChunkError("timeout"), BackfillChunkError("timeout")]

    def fail_twice(table, column_name, partitions):
        if failures:
            raise failures.pop()

    database.on_materialize = fail_twice
    sleeps: list[float] = []

    state = make_coordinator(database, max_retries=3, backoff=lambda attempt: attempt * 10.0, sleep=sleeps.append).run()

    assert state == {("events", "plan"): BackfillJobState.COMPLETED}
    assert sleeps == [10.0, 20.0]
    assert len(database.materialize_calls()) == len(PARTITIONS) + 2
    assert fully_backfilled(database)
    job.refresh_from_db()
    assert job.attempts == 0


@pytest.mark.django_db
def test_backfill_fails_after_max_retries(database: FakeDatabase):
    job = setup_backfill(database)

    def always_fail(table, column_name, partitions):
        raise BackfillChunkError("mutation timed out")

    database.on_materialize = always_fail
    sleeps: list[float] = []

    state = make_coordinator(database, max_retries=2, backoff=lambda attempt: 1.0, sleep=sleeps.append).run()

    assert state == {("events", "plan"): BackfillJobState.FAILED}
    assert len(database.materialize_calls()) == 3
    assert sleeps == [1.0, 1.0]

    job.refresh_from_db()
    assert job.state == BackfillJobState.FAILED
    assert job.cursor is None
    assert job.attempts == 3
    assert job.error_message == "mutation timed out"
    # the column exists, so the property must not be selected again until the backfill is retried
    assert job.candidate.state == MaterializationState.PENDING


@pytest.mark.django_db
def test_unexpected_errors_fail_the_candidate(database: FakeDatabase):
    job = setup_backfill(database)

    def broken(table, column_name, partitions):
        raise ValueError("unknown column")

    database.on_materialize = broken

    assert make_coordinator(database).run() == {("events", "plan"): BackfillJobState.FAILED}

    job.refresh_from_db()
    assert job.state == BackfillJobState.FAILED
    assert job.error_message == "ValueError: unknown column"
    assert job.candidate.state == MaterializationState.FAILED
    assert len(database.materialize_calls()) == 1


@pytest.mark.django_db
def test_abort_pauses_and_resume_continues(database: FakeDatabase):
    job = setup_backfill(database)
    abort_flags = [False, True]

    state = make_coordinator(database, should_abort=lambda: abort_flags.pop(0) if abort_flags else True).run()

    assert state == {("events", "plan"): BackfillJobState.PAUSED}
    job.refresh_from_db()
    assert job.state == BackfillJobState.PAUSED
    assert job.cursor == "202401"
    assert job.candidate.state == MaterializationState.PENDING

    database.calls.clear()
    assert make_coordinator(database).run() == {("events", "plan"): BackfillJobState.COMPLETED}
    assert [call[2] for call in database.materialize_calls()] == [("202402",), ("202403",)]
    assert fully_backfilled(database)


@pytest.mark.django_db
def test_losing_the_lease_pauses(database: FakeDatabase):
    job = setup_backfill(database)
    lease = CycleLease(ttl=60)
    assert lease.acquire()

    # another process took over after the lease expired
    cache.set(LEASE_KEY, "someone else")

    assert make_coordinator(database, lease=lease).run() == {("events", "plan"): BackfillJobState.PAUSED}
    assert database.materialize_calls() == []
    job.refresh_from_db()
    assert job.error_message == "lost the cycle lease"


@pytest.mark.django_db
def test_partitions_created_after_the_column_are_not_backfilled(database: FakeDatabase):
    setup_backfill(database)
    database.insert("events", "202404", {"plan": "new"})

    make_coordinator(database).run()

    assert [call[2] for call in database.materialize_calls()] == [(p,) for p in PARTITIONS]
    assert database.values("events", "mat_plan")["202404"] == ["new"]


@pytest.mark.django_db
def test_failing_job_does_not_affect_others(database: FakeDatabase):
    setup_backfill(database, "plan")
    setup_backfill(database, "email")

    def fail_plan(table, column_name, partitions):
        if column_name == "mat_plan":
            raise ValueError("broken")

    database.on_materialize = fail_plan

    assert make_coordinator(database).run() == {
        ("events", "plan"): BackfillJobState.FAILED,
        ("events", "email"): BackfillJobState.COMPLETED,
    }
    assert MaterializationCandidate.objects.get(property_name="email").state == MaterializationState.MATERIALIZED


@pytest.mark.django_db
def test_concurrent_backfills_run_on_threads(database: FakeDatabase):
    jobs = [setup_backfill(database, "plan"), setup_backfill(database, "email")]
    coordinator = make_coordinator(database, concurrency=2)

    with mock.patch.object(
        BackfillCoordinator,
        "run_job",
        side_effect=[BackfillJobState.COMPLETED, BackfillJobState.FAILED],
    ) as run_job:
        result = coordinator.run(jobs)

    assert run_job.call_count == 2
    assert sorted(result.values()) == sorted([BackfillJobState.COMPLETED, BackfillJobState.FAILED])
    assert set(result) == {("events", "plan"), ("events", "email")}
