from unittest import mock

import pytest
from clickhouse_driver.errors import ErrorCodes, ServerException

from materializer.clickhouse.client import is_retryable_error
from materializer.clickhouse.mutations import (
    ExponentialBackoff,
    MaterializeColumnMutation,
    MutationFailed,
    MutationNotFound,
    MutationTimeout,
    MutationWaiter,
    RetryPolicy,
)


@pytest.fixture(autouse=True)
def no_sleep():
    with mock.patch("materializer.clickhouse.mutations.time.sleep") as sleep:
        yield sleep


def test_exponential_backoff():
    assert [ExponentialBackoff(1.0)(attempt) for attempt in (1, 2, 3)] == [1.0, 4.0, 9.0]
    assert [ExponentialBackoff(1.0, max_delay=5.0)(attempt) for attempt in (1, 2, 3)] == [1.0, 4.0, 5.0]


def test_retry_policy(no_sleep):
    fn = mock.Mock(side_effect=[ServerException("network", code=ErrorCodes.NETWORK_ERROR), "result"])
    policy = RetryPolicy(max_attempts=3, backoff=lambda attempt: 2.0 * attempt, is_retryable=is_retryable_error)

    assert policy.run(fn, mock.Mock()) == "result"
    assert fn.call_count == 2
    no_sleep.assert_called_once_with(2.0)


def test_retry_policy_gives_up():
    policy = RetryPolicy(max_attempts=3, backoff=lambda attempt: 0.0, is_retryable=is_retryable_error)

    fn = mock.Mock(side_effect=ServerException("syntax error", code=ErrorCodes.SYNTAX_ERROR))
    with pytest.raises(ServerException):
        policy.run(fn, mock.Mock())
    assert fn.call_count == 1

    fn = mock.Mock(side_effect=TimeoutError())
    with pytest.raises(TimeoutError):
        policy.run(fn, mock.Mock())
    assert fn.call_count == 3


def test_retryable_errors():
    assert is_retryable_error(ServerException("", code=ErrorCodes.TOO_MANY_SIMULTANEOUS_QUERIES))
    assert is_retryable_error(ServerException("", code=ErrorCodes.TIMEOUT_EXCEEDED))
    assert is_retryable_error(ConnectionError())
    assert is_retryable_error(
        ServerException("Memory limit (total) exceeded: would use 10 GiB", code=ErrorCodes.MEMORY_LIMIT_EXCEEDED)
    )
    assert not is_retryable_error(
        ServerException("Memory limit (for query) exceeded", code=ErrorCodes.MEMORY_LIMIT_EXCEEDED)
    )
    assert not is_retryable_error(ServerException("", code=ErrorCodes.UNKNOWN_TABLE))
    assert not is_retryable_error(ValueError())


def test_waiter_waits_until_done(no_sleep):
    client = mock.Mock()
    client.execute.side_effect = [
        [("0000000001", True, False, ""), ("0000000002", False, False, "")],
        [("0000000001", True, False, ""), ("0000000002", False, False, "Code: 241. Memory limit exceeded")],
        [("0000000001", True, False, ""), ("0000000002", True, False, "")],
    ]

    MutationWaiter("sharded_events", {"0000000001", "0000000002"}, poll_interval=5.0).wait(client)

    assert client.execute.call_count == 3
    assert no_sleep.call_args_list == [mock.call(5.0), mock.call(5.0)]
    _query, parameters = client.execute.call_args.args
    assert parameters["mutation_ids"] == ["0000000001", "0000000002"]


def test_waiter_errors():
    client = mock.Mock()

    client.execute.return_value = []
    with pytest.raises(MutationNotFound):
        MutationWaiter("sharded_events", {"0000000001"}).wait(client)

    client.execute.return_value = [("0000000001", False, True, "")]
    with pytest.raises(MutationFailed):
        MutationWaiter("sharded_events", {"0000000001"}).wait(client)

    client.execute.return_value = [("0000000001", False, False, "")]
    with pytest.raises(MutationTimeout):
        MutationWaiter("sharded_events", {"0000000001"}, timeout=0).wait(client)


def test_mutation_command_quotes_column_name():
    mutation = MaterializeColumnMutation("sharded_events", "mat_$current_url", "202401")

    assert mutation.command == "MATERIALIZE COLUMN `mat_$current_url` IN PARTITION ID %(partition)s"
    assert mutation.parameters == {"partition": "202401"}


def test_mutation_reuses_existing_mutation():
    client = mock.Mock()
    client.execute.return_value = [("0000000005",)]

    assert MaterializeColumnMutation("sharded_events", "mat_plan", "202401").enqueue(client) == "0000000005"
    assert client.execute.call_count == 1


def test_mutation_is_enqueued(no_sleep):
    client = mock.Mock()
    client.execute.side_effect = [[("",)], [], [("",)], [("0000000006",)]]

    assert MaterializeColumnMutation("sharded_events", "mat_plan", "202401").enqueue(client) == "0000000006"

    statement, parameters = client.execute.call_args_list[1].args
    assert statement == "ALTER TABLE materializer_test.sharded_events MATERIALIZE COLUMN `mat_plan` IN PARTITION ID %(partition)s"
    assert parameters == {"partition": "202401"}
    no_sleep.assert_called_once_with(1.0)


def test_mutation_that_never_shows_up():
    client = mock.Mock()
    client.execute.side_effect = [[("",)], []] + [[("",)]] * 5

    with pytest.raises(MutationNotFound):
        MaterializeColumnMutation("sharded_events", "mat_plan", "202401").enqueue(client)
