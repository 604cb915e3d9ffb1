"""Field-completion watcher.

After a record is inserted, a watcher re-fetches it in the background until
every watched field holds a value, then runs a completion callback once.
Polling starts after a fixed initial delay, backs off exponentially between
attempts, and gives up after a hard attempt ceiling.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, Iterable, List, Optional, Set, Tuple

from lib.config import (
    WATCH_BASE_INTERVAL,
    WATCH_CAP_EXPONENT,
    WATCH_INITIAL_DELAY,
    WATCH_MAX_ATTEMPTS,
    WATCH_MAX_INTERVAL,
)
from lib.models import RecordHandle
from lib.values import FieldValue, is_incomplete
from utils.errors import RemoteTransient
from utils.logging import log_error, log_event, logger

FetchFields = Callable[[RecordHandle], Dict[str, FieldValue]]
OnComplete = Callable[[Dict[str, FieldValue]], None]
Sleep = Callable[[float], Coroutine[Any, Any, None]]


class WatchState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    POLLING = "polling"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


TERMINAL_STATES = {WatchState.COMPLETED, WatchState.EXHAUSTED, WatchState.ABORTED}


@dataclass(frozen=True)
class WatchPolicy:
    initial_delay: float = WATCH_INITIAL_DELAY
    base_interval: float = WATCH_BASE_INTERVAL
    max_interval: float = WATCH_MAX_INTERVAL
    cap_exponent: int = WATCH_CAP_EXPONENT
    max_attempts: int = WATCH_MAX_ATTEMPTS

    def backoff_delay(self, attempt: int) -> float:
        """Delay after a failed or incomplete attempt: base * 2^min(attempt, cap), at most max_interval."""
        return min(self.base_interval * (2 ** min(attempt, self.cap_exponent)), self.max_interval)


@dataclass
class WatchRun:
    handle: RecordHandle
    fields_to_check: Tuple[str, ...]
    attempt: int = 0
    state: WatchState = WatchState.IDLE
    last_field_values: Optional[Dict[str, FieldValue]] = None
    last_error: Optional[str] = None
    delays: List[float] = field(default_factory=list)


def missing_fields(values: Dict[str, FieldValue], fields_to_check: Iterable[str]) -> Tuple[str, ...]:
    return tuple(name for name in fields_to_check if is_incomplete(values.get(name)))


def is_retryable(error: Exception) -> bool:
    return isinstance(error, RemoteTransient)


class TaskSpawner:
    """
    Fire-and-forget runner for background coroutines.

    Keeps a reference to every running task so it is not garbage collected,
    and logs any exception that escapes a task instead of dropping it.
    Without a running event loop the coroutine runs on its own daemon thread.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self._threads: Set[threading.Thread] = set()
        self._lock = threading.Lock()

    @property
    def active(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks if not task.done()) + sum(
                1 for thread in self._threads if thread.is_alive()
            )

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        supervised = self._supervised(coro, name)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            thread = threading.Thread(target=asyncio.run, args=(supervised,), name=name, daemon=True)
            with self._lock:
                self._threads = {t for t in self._threads if t.is_alive()}
                self._threads.add(thread)
            thread.start()
            return
        task = loop.create_task(supervised, name=name)
        with self._lock:
            self._tasks.add(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        with self._lock:
            self._tasks.discard(task)

    async def _supervised(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception("Background task %s failed", name)

    async def drain(self) -> None:
        """Wait for the tasks spawned on the current loop. Used by tests and shutdown hooks."""
        with self._lock:
            pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class FieldCompletionWatcher:
    """Spawns and runs watch loops. Watchers share no mutable state."""

    def __init__(
        self,
        fetch: FetchFields,
        policy: Optional[WatchPolicy] = None,
        spawner: Optional[TaskSpawner] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._fetch = fetch
        self.policy = policy or WatchPolicy()
        self.spawner = spawner or TaskSpawner()
        self._sleep = sleep

    def watch(self, handle: RecordHandle, fields_to_check: Iterable[str], on_complete: OnComplete) -> None:
        """Start watching in the background and return immediately."""
        fields = tuple(fields_to_check)
        self.spawner.spawn(self.run(handle, fields, on_complete), name=f"watch-{handle.record_id}")

    async def run(self, handle: RecordHandle, fields_to_check: Iterable[str], on_complete: OnComplete) -> WatchRun:
        """Drive one watch to a terminal state and return the finished run."""
        run = WatchRun(handle=handle, fields_to_check=tuple(fields_to_check))
        log_event("watcher", handle.record_id, "watch_started", {"fields": list(run.fields_to_check)})

        run.state = WatchState.WAITING
        await self._pause(run, self.policy.initial_delay)

        while run.state not in TERMINAL_STATES:
            run.state = WatchState.POLLING
            self._poll_once(run, await self._fetch_safely(run))
            if run.state in TERMINAL_STATES:
                break
            if run.attempt >= self.policy.max_attempts:
                run.state = WatchState.EXHAUSTED
                log_event(
                    "watcher",
                    handle.record_id,
                    "watch_exhausted",
                    {"attempts": run.attempt, "last_error": run.last_error},
                )
                break
            await self._pause(run, self.policy.backoff_delay(run.attempt - 1))

        if run.state is WatchState.COMPLETED:
            await self._complete(run, on_complete)
        return run

    async def _pause(self, run: WatchRun, delay: float) -> None:
        run.delays.append(delay)
        await self._sleep(delay)

    async def _fetch_safely(self, run: WatchRun) -> Any:
        try:
            return await asyncio.to_thread(self._fetch, run.handle)
        except Exception as exc:
            return exc

    def _poll_once(self, run: WatchRun, outcome: Any) -> None:
        run.attempt += 1
        record_id = run.handle.record_id

        if isinstance(outcome, Exception):
            run.last_error = str(outcome)
            if not is_retryable(outcome):
                run.state = WatchState.ABORTED
                log_error("watcher", record_id, outcome, {"attempt": run.attempt, "outcome": "aborted"})
                return
            logger.warning("Watch %s attempt %d failed, will retry: %s", record_id, run.attempt, outcome)
            return

        missing = missing_fields(outcome, run.fields_to_check)
        if missing:
            logger.info("Watch %s attempt %d: still waiting for %s", record_id, run.attempt, list(missing))
            return

        run.last_field_values = dict(outcome)
        run.state = WatchState.COMPLETED
        log_event("watcher", record_id, "watch_completed", {"attempts": run.attempt})

    async def _complete(self, run: WatchRun, on_complete: OnComplete) -> None:
        try:
            await asyncio.to_thread(on_complete, run.last_field_values or {})
        except Exception as exc:
            log_error("watcher", run.handle.record_id, exc, {"stage": "on_complete"})
