"""Actor system: private state, an owned mailbox and one handler at a time."""

from __future__ import annotations

import inspect
import itertools
import threading
from typing import Callable, Optional

from ..constants import ACTOR_STATUSES
from ..errors import ActorFault, BorrowViolation, ChannelClosed, UseAfterMove, runtime_defect
from .channels import channel
from .futures import Future
from .logbook import Effect
from .ownership import OwnedValue, discard, transfer
from .scheduler import Scheduler, Task


class OwnedMessage(OwnedValue):
    """A message that must be moved exactly once into one actor's mailbox."""

    kind = "message"

    def __init__(self, payload, target: "ActorRef", message_id: int):
        self.payload = transfer(payload)
        self.target = target
        self.message_id = message_id
        self._moved = False

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        target = getattr(self.target, "actor_id", "?")
        return f"<OwnedMessage id={self.message_id}→{target} moved={self._moved}>"

    @property
    def is_live(self) -> bool:
        return not self._moved

    def move_payload(self):
        if self._moved:
            raise UseAfterMove(f"Message {self.message_id} has already been moved")
        self._moved = True
        return self.payload

    def drop(self) -> bool:
        if self._moved:
            return False
        self._moved = True
        discard(self.payload)
        return True


def actor(cls):
    """Class decorator for ``#actor`` structures; they must define ``handle``."""

    if not callable(getattr(cls, "handle", None)):
        raise ValueError(f"#actor {cls.__name__} must define handle(message)")
    cls.__animikii_actor__ = True
    return cls


class _FunctionActor:
    """Stateless actor whose behaviour is a plain callable."""

    def __init__(self, behavior: Callable):
        self.behavior = behavior

    def handle(self, message):
        return self.behavior(message)


class Actor:
    """Mailbox loop for one actor, pinned to a scheduler shard."""

    def __init__(self, actor_id: str, state, system: "ActorSystem", shard: int, capacity):
        self.actor_id = actor_id
        self.state = state
        self.system = system
        self.shard = shard
        self.sender, self.receiver = channel(capacity, label=actor_id, log=system.log)
        self.status = "running"
        self.fault: ActorFault | None = None
        self.faults: list[ActorFault] = []
        self.processed = 0
        self.loop_task: Task | None = None
        self._handling = False
        self._lock = threading.Lock()

    def _set_status(self, status: str) -> None:
        if status not in ACTOR_STATUSES:
            runtime_defect(f"unknown actor status {status}")
        self.status = status
        self.system.log.append(f"status:{self.actor_id}:{status}")

    def start(self) -> None:
        handle = self.system.scheduler.spawn(
            self._run, name=f"{self.actor_id}:loop", shard=self.shard, domain=self.actor_id
        )
        self.loop_task = handle.task

    def _run(self):
        while True:
            try:
                message = yield self.receiver.next()
            except ChannelClosed:
                return
            with self._lock:
                if self._handling:
                    runtime_defect(f"{self.actor_id} started a handler while another was in flight")
                if self.status != "running":
                    discard(message)
                    return
                self._handling = True
            try:
                result = self.state.handle(message)
                if inspect.isgenerator(result):
                    yield from result
            except Exception as exc:
                self._record_fault(message, exc)
                return
            self.processed += 1
            self.system.log.append(f"handled:{self.actor_id}:{self.processed}")
            with self._lock:
                self._handling = False
                stopping = self.status == "stopping"
            if stopping:
                self._shutdown()
                return

    def _record_fault(self, message, exc: Exception) -> None:
        fault = ActorFault(self.actor_id, message, exc)
        with self._lock:
            self._handling = False
            self.fault = fault
            self.faults.append(fault)
            if self.status == "stopping":
                self._shutdown()
                return
            self._set_status("faulted")
        self.system.log.append(f"fault:{self.actor_id}:{type(exc).__name__}")

    def _shutdown(self) -> None:
        self._set_status("stopped")
        if self.loop_task is not None:
            self.system.scheduler.cancel(self.loop_task)
        if self.sender.is_live:
            self.sender.drop()
        if self.receiver.is_live:
            self.receiver.drop()

    def restart(self) -> bool:
        with self._lock:
            if self.status == "running":
                return False
            if self.status in ("stopping", "stopped"):
                raise RuntimeError(f"Actor {self.actor_id} was stopped and cannot restart")
            self.fault = None
            self._set_status("running")
        self.start()
        return True

    def stop(self) -> bool:
        with self._lock:
            if self.status in ("stopping", "stopped"):
                return False
            if self._handling:
                self._set_status("stopping")
                return True
            self._shutdown()
        return True


class ActorRef:
    """Opaque handle senders hold; the only way to reach an actor."""

    def __init__(self, actor: Actor):
        self._actor = actor

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<ActorRef {self._actor.actor_id} {self._actor.status}>"

    @property
    def actor_id(self) -> str:
        return self._actor.actor_id

    @property
    def status(self) -> str:
        return self._actor.status

    @property
    def fault(self) -> Optional[ActorFault]:
        return self._actor.fault

    @property
    def faults(self) -> list[ActorFault]:
        return list(self._actor.faults)

    @property
    def processed(self) -> int:
        return self._actor.processed

    @property
    def shard(self) -> int:
        return self._actor.shard

    @property
    def state(self):
        return self._actor.state

    @property
    def loop_task(self) -> Task | None:
        return self._actor.loop_task

    @property
    def mailbox_size(self) -> int:
        return len(self._actor.receiver)

    def send(self, message) -> Future:
        """Enqueue ``message``; the future is pending only while a bounded mailbox is full.

        A handler that later fails never fails this future.
        """

        if self._actor.status == "stopped":
            raise ChannelClosed(f"Actor {self.actor_id} was stopped")
        if not isinstance(message, OwnedMessage):
            return self._actor.sender.push(message)
        if message.target is not self:
            raise BorrowViolation("Message capability does not match the target actor")
        payload = message.move_payload()
        try:
            return self._actor.sender.push(payload)
        finally:
            # the mailbox holds its own transfer of the payload
            discard(payload)

    def restart(self) -> bool:
        return self._actor.restart()

    def stop(self) -> bool:
        return self._actor.stop()


class ActorSystem:
    """Live actor set owned by one scheduler; there is no global registry."""

    def __init__(self, scheduler: Scheduler | None = None, mailbox_capacity: int | None = None):
        self.scheduler = scheduler if scheduler is not None else Scheduler()
        self.log = self.scheduler.log
        self.mailbox_capacity = mailbox_capacity
        self._actors: dict[str, Actor] = {}
        self._refs: dict[str, ActorRef] = {}
        self._ids = itertools.count()
        self._message_ids = itertools.count()
        self._lock = threading.Lock()

    def spawn(self, state=None, capacity=..., *, shard=None) -> ActorRef:
        """Start an actor around ``state`` (an object with ``handle``, or a callable)."""

        if state is None:
            state = _FunctionActor(default_actor_behavior)
        elif not callable(getattr(state, "handle", None)):
            if not callable(state):
                raise ValueError(f"{type(state).__name__} has no handle(message) method")
            state = _FunctionActor(state)
        if capacity is ...:
            capacity = self.mailbox_capacity
        with self._lock:
            actor_id = f"actor_{next(self._ids)}"
            if shard is None:
                shard = self.scheduler.next_shard()
            instance = Actor(actor_id, state, self, shard, capacity)
            ref = ActorRef(instance)
            self._actors[actor_id] = instance
            self._refs[actor_id] = ref
        instance.start()
        self.log.append(f"spawn:{actor_id}:shard{shard}")
        return ref

    def message(self, target: ActorRef, payload) -> OwnedMessage:
        return OwnedMessage(payload, target, next(self._message_ids))

    def refs(self) -> list[ActorRef]:
        with self._lock:
            return list(self._refs.values())

    def statuses(self) -> dict[str, str]:
        return {ref.actor_id: ref.status for ref in self.refs()}

    def run_until_idle(self) -> Effect:
        return self.scheduler.run_until_idle()

    def stop_all(self) -> int:
        return sum(1 for ref in self.refs() if ref.stop())


def default_actor_behavior(message):
    return message


__all__ = [
    "Actor",
    "ActorRef",
    "ActorSystem",
    "OwnedMessage",
    "actor",
    "default_actor_behavior",
]
