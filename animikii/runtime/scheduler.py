"""Cooperative sharded scheduler driving generator-based tasks.

A task body is a generator: every ``yield`` is an ``await``. The yielded
object decides what the task waits on:

* a :class:`~animikii.runtime.futures.Future` resumes the task with its result
  (or throws its exception into the task);
* a :class:`TaskHandle` joins another task;
* ``None`` is a cooperative checkpoint.
"""

from __future__ import annotations

from collections import deque
import inspect
import itertools
import threading
from typing import Any, Callable

from ..constants import TASK_TRANSITIONS
from ..errors import BorrowViolation, TaskCancelled, TypeMismatch, runtime_defect
from .futures import Future, _set_current_task
from .logbook import Effect, RuntimeLog
from .ownership import OwnedValue, discard, transfer
from .values import Value

TERMINAL_STATES = ("completed", "cancelled", "faulted")


class Task:
    """Explicit task record: continuation, shard, state and its history."""

    def __init__(self, task_id: int, name: str, continuation, shard: int, domain=None, args=()):
        self.id = task_id
        self.name = name
        self.continuation = continuation
        self.shard = shard
        self.domain = domain or f"task:{task_id}"
        self.args = args
        self.state = "created"
        self.history = ["created"]
        self.suspend_reason: str | None = None
        self.awaiting: Future | None = None
        self.future = Future(label=f"task:{task_id}", reason="join")
        self.cancel_requested = False
        self._cancel_delivered = False
        self._resume: tuple[Any, BaseException | None] = (None, None)
        self._wake_token = None

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Task {self.id} {self.name} {self.state}>"

    @property
    def owner_key(self) -> str:
        return f"task:{self.id}"

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: str, reason: str | None = None) -> None:
        if state not in TASK_TRANSITIONS[self.state]:
            runtime_defect(f"illegal task transition {self.state} -> {state} for task {self.id}")
        self.state = state
        self.suspend_reason = reason if state == "suspended" else None
        self.history.append(f"suspended({reason})" if state == "suspended" else state)


class TaskHandle:
    """Handle returned by ``spawn``; yield it from a task to join."""

    def __init__(self, task: Task, scheduler: "Scheduler"):
        self._task = task
        self._scheduler = scheduler
        self.dropped = False

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<TaskHandle {self._task.id} {self._task.state}>"

    @property
    def id(self) -> int:
        return self._task.id

    @property
    def task(self) -> Task:
        return self._task

    @property
    def state(self) -> str:
        return self._task.state

    @property
    def history(self) -> list[str]:
        return list(self._task.history)

    @property
    def future(self) -> Future:
        return self._task.future

    def done(self) -> bool:
        return self._task.done

    def result(self):
        return self._task.future.result()

    def exception(self):
        return self._task.future.exception()

    def cancel(self) -> bool:
        return self._scheduler.cancel(self._task)

    def drop(self) -> bool:
        """Drop the handle; a task that has not finished is cancelled."""

        if self.dropped:
            raise BorrowViolation(f"handle of task {self._task.id} was already dropped")
        self.dropped = True
        return self.cancel()


class Shard:
    def __init__(self, index: int):
        self.index = index
        self.ready: deque[Task] = deque()
        self.steps = 0


def _as_continuation(fn: Callable, args):
    result = fn(*args)
    if inspect.isgenerator(result):
        result = yield from result
    return result


def _reachable(value) -> set[int]:
    """Ids of every object reachable from a task result through containers."""

    seen: set[int] = set()
    pending = [value]
    while pending:
        item = pending.pop()
        if id(item) in seen:
            continue
        seen.add(id(item))
        if isinstance(item, Value):
            pending.append(item.payload)
        elif isinstance(item, dict):
            pending.extend(item.keys())
            pending.extend(item.values())
        elif isinstance(item, (list, tuple, set, frozenset)):
            pending.extend(item)
    return seen


class Scheduler:
    """Runs ready tasks shard by shard; each task stays on its own shard."""

    def __init__(self, shards: int = 1, log: RuntimeLog | None = None, max_steps: int | None = None):
        if shards < 1:
            raise ValueError("A scheduler needs at least one shard")
        self.shards = [Shard(i) for i in range(shards)]
        self.log = log if log is not None else RuntimeLog()
        self.max_steps = max_steps
        self._cond = threading.Condition(threading.RLock())
        self._ids = itertools.count()
        self._placement = itertools.count()
        self._tasks: dict[int, Task] = {}
        self._busy = 0
        self.steps = 0

    def next_shard(self) -> int:
        return next(self._placement) % len(self.shards)

    def event(self, label: str | None = None) -> Future:
        return Future(label)

    def spawn(self, fn: Callable, *args, name=None, shard=None, domain=None) -> TaskHandle:
        """Create a task running ``fn(*args)``; arguments are moved into it."""

        moved = tuple(transfer(arg) for arg in args)
        with self._cond:
            task_id = next(self._ids)
            if shard is None:
                shard = self.next_shard()
            elif not 0 <= shard < len(self.shards):
                raise ValueError(f"Unknown shard {shard}")
            task = Task(
                task_id,
                name or getattr(fn, "__name__", "task"),
                _as_continuation(fn, moved),
                shard,
                domain=domain,
                args=moved,
            )
            self._tasks[task_id] = task
            task.transition("ready")
            self.shards[shard].ready.append(task)
            self._cond.notify_all()
        self.log.append(f"spawn:task:{task_id}:{task.name}")
        return TaskHandle(task, self)

    def tasks(self) -> list[Task]:
        with self._cond:
            return list(self._tasks.values())

    def cancel(self, task: Task) -> bool:
        """Mark ``task`` cancel-pending; it observes this at its next suspension point."""

        with self._cond:
            if task.done or task.cancel_requested:
                return False
            task.cancel_requested = True
            self.log.append(f"cancel:task:{task.id}")
            if task.state != "suspended":
                return True
            awaiting = task.awaiting
            task._wake_token = None
            task.awaiting = None
            task.transition("ready")
            self.shards[task.shard].ready.append(task)
            self._cond.notify_all()
        if awaiting is not None and awaiting.exclusive:
            awaiting.cancel()
        return True

    def _step(self, task: Task) -> None:
        previous = _set_current_task(task)
        task.transition("running")
        try:
            if task.cancel_requested and not task._cancel_delivered:
                task._cancel_delivered = True
                value, _ = task._resume
                if isinstance(value, OwnedValue):
                    discard(value)
                task._resume = (None, None)
                yielded = task.continuation.throw(TaskCancelled(f"task {task.id} was cancelled"))
            else:
                value, exception = task._resume
                task._resume = (None, None)
                if exception is not None:
                    yielded = task.continuation.throw(exception)
                else:
                    yielded = task.continuation.send(value)
        except StopIteration as stop:
            self._finish(task, "completed", stop.value, None)
        except TaskCancelled as exc:
            self._finish(task, "cancelled" if task.cancel_requested else "faulted", None, exc)
        except Exception as exc:
            self._finish(task, "faulted", None, exc)
        else:
            self._suspend(task, yielded)
        finally:
            _set_current_task(previous)

    def _suspend(self, task: Task, yielded) -> None:
        if yielded is None:
            future, reason = None, "checkpoint"
        elif isinstance(yielded, TaskHandle):
            future, reason = yielded.future, "join"
        elif isinstance(yielded, Future):
            future, reason = yielded, yielded.reason
        else:
            future = None
            reason = "await"
            task._resume = (None, TypeMismatch(f"cannot await a {type(yielded).__name__}"))

        with self._cond:
            task.transition("suspended", reason)
            if future is None or (task.cancel_requested and not task._cancel_delivered):
                task.transition("ready")
                self.shards[task.shard].ready.append(task)
                self._cond.notify_all()
                return
            token = object()
            task._wake_token = token
            task.awaiting = future
        future.add_done_callback(lambda done: self._wake(task, token, done))

    def _wake(self, task: Task, token, future: Future) -> None:
        with self._cond:
            if task._wake_token is not token or task.state != "suspended":
                return
            task._wake_token = None
            task.awaiting = None
            task._resume = future.outcome()
            task.transition("ready")
            self.shards[task.shard].ready.append(task)
            self._cond.notify_all()

    def _finish(self, task: Task, state: str, value, exception) -> None:
        task.transition(state)
        task.awaiting = None
        kept = _reachable(value) if state == "completed" else set()
        for arg in task.args:
            if id(arg) not in kept:
                discard(arg)
        task.args = ()
        self.log.append(f"task:{task.id}:{state}")
        if state == "completed":
            task.future.set_result(value)
        elif state == "cancelled":
            task.future.cancel()
        else:
            task.future.set_exception(exception)

    def _stats(self, steps: int) -> dict:
        with self._cond:
            counts = {state: 0 for state in ("ready", "suspended", *TERMINAL_STATES)}
            for task in self._tasks.values():
                if task.state in counts:
                    counts[task.state] += 1
            return {"steps": steps, "tasks": len(self._tasks), **counts}

    def _effect(self, start: int, mark: int) -> Effect:
        stats = self._stats(self.steps - start)
        # a run that stepped nothing touched no state
        grade = "state" if stats["steps"] else "pure"
        return Effect(grade, stats, self.log.since(mark))

    def _check_budget(self) -> None:
        if self.max_steps is not None and self.steps >= self.max_steps:
            raise RuntimeError(f"Scheduler exceeded {self.max_steps} steps without going idle")

    def run_until_idle(self) -> Effect:
        """Drive every shard round-robin on this thread until nothing is ready."""

        mark = self.log.mark()
        start = self.steps
        while True:
            progressed = False
            for shard in self.shards:
                with self._cond:
                    task = shard.ready.popleft() if shard.ready else None
                if task is None:
                    continue
                self._check_budget()
                self._step(task)
                shard.steps += 1
                self.steps += 1
                progressed = True
            if not progressed:
                break
        return self._effect(start, mark)

    def run_threaded(self) -> Effect:
        """Run one OS thread per shard until no shard has ready or running work."""

        mark = self.log.mark()
        start = self.steps
        errors: list[BaseException] = []

        def idle() -> bool:
            return self._busy == 0 and not any(shard.ready for shard in self.shards)

        def worker(shard: Shard) -> None:
            while True:
                with self._cond:
                    while not shard.ready:
                        if errors or idle():
                            self._cond.notify_all()
                            return
                        self._cond.wait()
                    if errors:
                        return
                    try:
                        self._check_budget()
                    except RuntimeError as exc:
                        errors.append(exc)
                        self._cond.notify_all()
                        return
                    task = shard.ready.popleft()
                    self._busy += 1
                    self.steps += 1
                try:
                    self._step(task)
                except BaseException as exc:
                    with self._cond:
                        errors.append(exc)
                finally:
                    with self._cond:
                        shard.steps += 1
                        self._busy -= 1
                        self._cond.notify_all()

        threads = [
            threading.Thread(target=worker, args=(shard,), name=f"animikii-shard-{shard.index}")
            for shard in self.shards
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        if errors:
            raise errors[0]
        return self._effect(start, mark)


__all__ = [
    "Scheduler",
    "Shard",
    "Task",
    "TaskHandle",
]
