"""FIFO channels whose ``push`` transfers ownership of the value."""

from __future__ import annotations

from collections import deque
import itertools
import threading

from ..errors import BorrowViolation, ChannelClosed
from .futures import Future, completed, failed
from .logbook import RuntimeLog
from .ownership import OwnedValue, discard, transfer

_EMPTY = object()
_LABELS = itertools.count()


class _ChannelCore:
    def __init__(self, capacity: int | None, label: str, log: RuntimeLog):
        self.capacity = capacity
        self.label = label
        self.log = log
        self.lock = threading.Lock()
        self.buffer: deque = deque()
        self.receivers: deque[Future] = deque()
        self.senders_waiting: deque[tuple[object, Future]] = deque()
        self.sender_count = 1
        self.receiver_alive = True
        self.sent = 0
        self.received = 0

    def has_room(self) -> bool:
        return self.capacity is None or len(self.buffer) < self.capacity

    def deliver(self, item) -> bool:
        while self.receivers:
            waiter = self.receivers.popleft()
            if waiter.set_result(item):
                self.received += 1
                return True
        return False

    def take(self):
        if self.buffer:
            item = self.buffer.popleft()
            self.refill()
            self.received += 1
            return item
        while self.senders_waiting:
            item, waiter = self.senders_waiting.popleft()
            if waiter.set_result(True):
                self.received += 1
                return item
            discard(item)
        return _EMPTY

    def refill(self) -> None:
        while self.senders_waiting and self.has_room():
            item, waiter = self.senders_waiting.popleft()
            if waiter.set_result(True):
                self.buffer.append(item)
            else:
                discard(item)


class Sender(OwnedValue):
    """Producing end of a channel; clone it for additional producers."""

    kind = "sender"

    def __init__(self, core: _ChannelCore):
        self._core = core
        self.state = "open"

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Sender {self._core.label} {self.state}>"

    @property
    def label(self) -> str:
        return self._core.label

    @property
    def is_live(self) -> bool:
        return self.state == "open"

    @property
    def closed(self) -> bool:
        return not self._core.receiver_alive

    def push(self, value) -> Future:
        """Queue ``value``; the returned future resolves once it is buffered or taken.

        Ownership moves into the channel immediately, even when the future
        stays pending because a bounded buffer is full.
        """

        core = self._core
        with core.lock:
            if self.state != "open":
                raise BorrowViolation(f"sender of {core.label} was dropped")
            if not core.receiver_alive:
                raise ChannelClosed(f"receiver of {core.label} was dropped")
            item = transfer(value)
            core.sent += 1
            core.log.append(f"send:{core.label}:msg{core.sent - 1}")
            if not core.buffer and core.deliver(item):
                return completed(True)
            if core.has_room():
                core.buffer.append(item)
                return completed(True)
            waiter = Future(label=f"{core.label}:send", reason="channel_send", exclusive=True)
            core.senders_waiting.append((item, waiter))
            return waiter

    send = push

    def clone(self) -> "Sender":
        core = self._core
        with core.lock:
            if self.state != "open":
                raise BorrowViolation(f"sender of {core.label} was dropped")
            core.sender_count += 1
        return Sender(core)

    def drop(self) -> bool:
        core = self._core
        with core.lock:
            if self.state != "open":
                raise BorrowViolation(f"sender of {core.label} was already dropped")
            self.state = "dropped"
            core.sender_count -= 1
            if core.sender_count > 0:
                return False
            waiting = list(core.receivers)
            core.receivers.clear()
            core.log.append(f"close:{core.label}")
        for waiter in waiting:
            waiter.set_exception(ChannelClosed(f"all senders of {core.label} were dropped"))
        return True

    close = drop


class Receiver(OwnedValue):
    """Consuming end of a channel; there is exactly one per channel."""

    kind = "receiver"

    def __init__(self, core: _ChannelCore):
        self._core = core
        self.state = "open"

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Receiver {self._core.label} {self.state}>"

    @property
    def label(self) -> str:
        return self._core.label

    @property
    def is_live(self) -> bool:
        return self.state == "open"

    @property
    def closed(self) -> bool:
        """True once every sender is gone and nothing is left to read."""

        core = self._core
        with core.lock:
            return core.sender_count == 0 and not core.buffer and not core.senders_waiting

    def next(self) -> Future:
        """Future for the oldest queued value."""

        core = self._core
        with core.lock:
            if self.state != "open":
                raise BorrowViolation(f"receiver of {core.label} was dropped")
            item = core.take()
            if item is not _EMPTY:
                return completed(item)
            if core.sender_count == 0:
                return failed(ChannelClosed(f"all senders of {core.label} were dropped"))
            waiter = Future(label=f"{core.label}:recv", reason="channel_recv", exclusive=True)
            core.receivers.append(waiter)
            return waiter

    recv = next

    def drain(self) -> list:
        """Take every value that can be read without waiting."""

        core = self._core
        items = []
        with core.lock:
            while True:
                item = core.take()
                if item is _EMPTY:
                    return items
                items.append(item)

    def drop(self) -> bool:
        """Close the channel: buffered values are released and senders fail."""

        core = self._core
        with core.lock:
            if self.state != "open":
                raise BorrowViolation(f"receiver of {core.label} was already dropped")
            self.state = "dropped"
            core.receiver_alive = False
            items = list(core.buffer)
            core.buffer.clear()
            pending = list(core.senders_waiting)
            core.senders_waiting.clear()
            waiting = list(core.receivers)
            core.receivers.clear()
            core.log.append(f"close:{core.label}")
        for item in items:
            discard(item)
        for item, waiter in pending:
            waiter.set_exception(ChannelClosed(f"receiver of {core.label} was dropped"))
            discard(item)
        for waiter in waiting:
            waiter.cancel()
        return True

    close = drop

    def __len__(self) -> int:
        core = self._core
        with core.lock:
            return len(core.buffer) + len(core.senders_waiting)


def channel(capacity: int | None = None, label: str | None = None, log: RuntimeLog | None = None):
    """Create a ``(Sender, Receiver)`` pair.

    ``capacity`` is ``None`` for an unbounded buffer, ``0`` for a rendezvous
    channel, or a positive bound.
    """

    if capacity is not None and (isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 0):
        raise ValueError(f"Channel capacity must be None or a non-negative integer, got {capacity!r}")
    core = _ChannelCore(
        capacity,
        label or f"chan_{next(_LABELS)}",
        log if log is not None else RuntimeLog(),
    )
    return Sender(core), Receiver(core)


__all__ = [
    "Receiver",
    "Sender",
    "channel",
]
