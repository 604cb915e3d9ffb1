"""Tests for the field-completion watcher. No real time passes: sleep is faked."""

import asyncio
import threading
from typing import Dict, List

import pytest

from lib.models import RecordHandle
from lib.values import FieldValue, StringValue, to_field_values
from lib.watcher import (
    FieldCompletionWatcher,
    TaskSpawner,
    WatchPolicy,
    WatchState,
    is_retryable,
    missing_fields,
)
from utils.errors import RemoteFatal, RemoteTransient

HANDLE = RecordHandle("app_1", "tbl_1", "rec_1")
POLICY = WatchPolicy(initial_delay=10, base_interval=10, max_interval=300, cap_exponent=6, max_attempts=20)


class ScriptedFetch:
    """Returns the scripted outcomes in order, repeating the last one."""

    def __init__(self, outcomes: List[object]) -> None:
        self.outcomes = outcomes
        self.calls = 0

    def __call__(self, handle: RecordHandle) -> Dict[str, FieldValue]:
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return to_field_values(outcome)


class Recorder:
    def __init__(self) -> None:
        self.calls: List[Dict[str, FieldValue]] = []

    def __call__(self, values: Dict[str, FieldValue]) -> None:
        self.calls.append(values)


async def no_sleep(delay: float) -> None:
    return None


def _run(fetch, fields, on_complete, policy=POLICY):
    watcher = FieldCompletionWatcher(fetch, policy=policy, sleep=no_sleep)
    return asyncio.run(watcher.run(HANDLE, fields, on_complete))


def test_backoff_doubles_until_ceiling() -> None:
    assert [POLICY.backoff_delay(n) for n in range(5)] == [10, 20, 40, 80, 160]


def test_backoff_clamped_to_max_interval() -> None:
    assert POLICY.backoff_delay(5) == 300
    assert POLICY.backoff_delay(6) == 300
    assert POLICY.backoff_delay(50) == 300


def test_backoff_exponent_capped_when_ceiling_is_high() -> None:
    policy = WatchPolicy(base_interval=1, max_interval=10_000, cap_exponent=6)
    assert [policy.backoff_delay(n) for n in range(8)] == [1, 2, 4, 8, 16, 32, 64, 64]


def test_completes_on_third_fetch_with_backoff_schedule() -> None:
    fetch = ScriptedFetch([{"Status": ""}, {"Status": ""}, {"Status": "Done"}])
    recorder = Recorder()

    run = _run(fetch, ["Status"], recorder)

    assert run.state is WatchState.COMPLETED
    assert fetch.calls == 3
    assert run.attempt == 3
    assert run.delays == [10, 10, 20]
    assert sum(run.delays) == 40
    assert recorder.calls == [{"Status": StringValue("Done")}]


def test_never_complete_stops_after_max_attempts() -> None:
    fetch = ScriptedFetch([{"Status": ""}])
    recorder = Recorder()

    run = _run(fetch, ["Status"], recorder)

    assert run.state is WatchState.EXHAUSTED
    assert fetch.calls == 20
    assert len(run.delays) == 20
    assert recorder.calls == []


def test_non_retryable_error_aborts_after_one_fetch() -> None:
    fetch = ScriptedFetch([RemoteFatal("invalid table", code=1254004)])
    recorder = Recorder()

    run = _run(fetch, ["Status"], recorder)

    assert run.state is WatchState.ABORTED
    assert fetch.calls == 1
    assert run.last_error == "invalid table"
    assert recorder.calls == []


def test_transient_errors_are_retried() -> None:
    fetch = ScriptedFetch([RemoteTransient("timeout"), RemoteTransient("HTTP 503"), {"Status": "Done"}])
    recorder = Recorder()

    run = _run(fetch, ["Status"], recorder)

    assert run.state is WatchState.COMPLETED
    assert fetch.calls == 3
    assert len(recorder.calls) == 1


def test_unexpected_exception_aborts() -> None:
    fetch = ScriptedFetch([KeyError("boom")])

    run = _run(fetch, ["Status"], Recorder())

    assert run.state is WatchState.ABORTED


def test_completion_requires_every_field_at_once() -> None:
    fetch = ScriptedFetch([{"A": "x", "B": ""}, {"A": "", "B": "y"}, {"A": "x", "B": "y"}])
    recorder = Recorder()

    run = _run(fetch, ["A", "B"], recorder)

    assert fetch.calls == 3
    assert len(recorder.calls) == 1
    assert recorder.calls[0]["A"] == StringValue("x")


def test_falsy_values_count_as_present() -> None:
    fetch = ScriptedFetch([{"Count": 0, "Done": False, "Tags": []}])
    recorder = Recorder()

    run = _run(fetch, ["Count", "Done", "Tags"], recorder)

    assert run.state is WatchState.COMPLETED
    assert fetch.calls == 1


def test_callback_failure_is_logged_not_raised() -> None:
    def explode(values):
        raise RuntimeError("sink down")

    run = _run(ScriptedFetch([{"Status": "Done"}]), ["Status"], explode)

    assert run.state is WatchState.COMPLETED


def test_small_attempt_ceiling() -> None:
    policy = WatchPolicy(initial_delay=1, base_interval=1, max_interval=5, cap_exponent=6, max_attempts=1)
    fetch = ScriptedFetch([{"Status": ""}])

    run = _run(fetch, ["Status"], Recorder(), policy=policy)

    assert run.state is WatchState.EXHAUSTED
    assert fetch.calls == 1
    assert run.delays == [1]


def test_watch_snapshots_fields_at_spawn() -> None:
    fetch = ScriptedFetch([{"A": "x"}])
    recorder = Recorder()

    async def main() -> None:
        spawner = TaskSpawner()
        watcher = FieldCompletionWatcher(fetch, policy=POLICY, spawner=spawner, sleep=no_sleep)
        fields = ["A"]
        watcher.watch(HANDLE, fields, recorder)
        fields.append("B")
        await spawner.drain()

    asyncio.run(main())

    assert fetch.calls == 1
    assert len(recorder.calls) == 1


def test_concurrent_watchers_are_independent() -> None:
    done = {"rec_a": {"S": "x"}, "rec_b": {"S": ""}}
    seen: List[str] = []

    def fetch(handle: RecordHandle):
        return to_field_values(done[handle.record_id])

    async def main() -> None:
        spawner = TaskSpawner()
        watcher = FieldCompletionWatcher(fetch, policy=POLICY, spawner=spawner, sleep=no_sleep)
        watcher.watch(RecordHandle("app", "tbl", "rec_a"), ["S"], lambda v: seen.append("rec_a"))
        watcher.watch(RecordHandle("app", "tbl", "rec_b"), ["S"], lambda v: seen.append("rec_b"))
        await spawner.drain()

    asyncio.run(main())

    assert seen == ["rec_a"]


def test_spawner_logs_task_failures() -> None:
    async def failing() -> None:
        raise RuntimeError("boom")

    async def main() -> int:
        spawner = TaskSpawner()
        spawner.spawn(failing(), name="failing")
        await spawner.drain()
        return spawner.active

    assert asyncio.run(main()) == 0


def test_spawner_without_loop_runs_on_thread() -> None:
    finished = threading.Event()

    async def work() -> None:
        finished.set()

    TaskSpawner().spawn(work(), name="threaded")

    assert finished.wait(timeout=5)


def test_missing_fields_lists_incomplete_names_in_order() -> None:
    values = to_field_values({"A": "", "C": "x"})
    assert missing_fields(values, ["A", "B", "C"]) == ("A", "B")


@pytest.mark.parametrize(
    "error, expected",
    [(RemoteTransient("t"), True), (RemoteFatal("f"), False), (ValueError("v"), False)],
)
def test_is_retryable(error, expected) -> None:
    assert is_retryable(error) is expected
