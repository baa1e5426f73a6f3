"""Awaitable events and the current-task marker for the Animikii runtime."""

from __future__ import annotations

import threading
from typing import Any, Callable

from ..errors import TaskCancelled

_CURRENT = threading.local()


def current_task():
    """Return the task being stepped on this thread, if any."""

    return getattr(_CURRENT, "task", None)


def _set_current_task(task):
    previous = getattr(_CURRENT, "task", None)
    _CURRENT.task = task
    return previous


def current_owner() -> str:
    """Key identifying who is executing: a task, or a plain host thread."""

    task = current_task()
    if task is not None:
        return task.owner_key
    return f"thread:{threading.get_ident()}"


def current_domain() -> str | None:
    task = current_task()
    return task.domain if task is not None else None


class Future:
    """A one-shot event a task can suspend on with ``yield``.

    ``exclusive`` futures belong to a single waiter (a channel or sync
    queue entry) and are cancelled along with that waiter.
    """

    def __init__(self, label: str | None = None, reason: str = "await", *, exclusive=False):
        self.label = label
        self.reason = reason
        self.exclusive = exclusive
        self._cond = threading.Condition()
        self._state = "pending"
        self._result: Any = None
        self._exception: BaseException | None = None
        self._callbacks: list[Callable[["Future"], None]] = []

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Future {self.label or '?'} {self._state}>"

    def done(self) -> bool:
        return self._state != "pending"

    def cancelled(self) -> bool:
        return self._state == "cancelled"

    def _finish(self, state, result, exception) -> bool:
        with self._cond:
            if self._state != "pending":
                return False
            self._state = state
            self._result = result
            self._exception = exception
            callbacks, self._callbacks = self._callbacks, []
            self._cond.notify_all()
        for callback in callbacks:
            callback(self)
        return True

    def set_result(self, value=None) -> bool:
        """Resolve the future; False if it was already resolved or cancelled."""

        return self._finish("done", value, None)

    def set_exception(self, exception: BaseException) -> bool:
        return self._finish("done", None, exception)

    def cancel(self) -> bool:
        return self._finish("cancelled", None, TaskCancelled(f"{self.label or 'future'} was cancelled"))

    def outcome(self) -> tuple[Any, BaseException | None]:
        with self._cond:
            if self._state == "pending":
                raise RuntimeError(f"Future {self.label or '?'} is still pending")
            return self._result, self._exception

    def result(self):
        value, exception = self.outcome()
        if exception is not None:
            raise exception
        return value

    def exception(self) -> BaseException | None:
        return self.outcome()[1]

    def add_done_callback(self, callback: Callable[["Future"], None]) -> None:
        with self._cond:
            if self._state == "pending":
                self._callbacks.append(callback)
                return
        callback(self)

    def wait(self, timeout: float | None = None) -> bool:
        """Block the calling host thread until resolved."""

        with self._cond:
            return self._cond.wait_for(lambda: self._state != "pending", timeout)


def completed(value=None, label: str | None = None) -> Future:
    future = Future(label)
    future.set_result(value)
    return future


def failed(exception: BaseException, label: str | None = None) -> Future:
    future = Future(label)
    future.set_exception(exception)
    return future


__all__ = [
    "Future",
    "completed",
    "current_domain",
    "current_owner",
    "current_task",
    "failed",
]
