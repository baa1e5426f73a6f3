"""Ownership wrappers backed by an arena of indexed slots.

Every wrapped value lives in an :class:`Arena` slot addressed by
``(index, generation)``. Handles never hold the payload directly, so a
freed slot (generation bumped) can never be read through a stale handle.
"""

from __future__ import annotations

from collections import deque
import inspect
import threading
from typing import Any, Callable, Optional

from ..constants import QUALIFIERS
from ..errors import (
    BorrowViolation,
    DeadlockDetected,
    ResourceReleaseFailure,
    UseAfterMove,
    runtime_defect,
)
from .analysis import WaitForGraph
from .futures import Future, current_domain, current_owner, current_task
from .logbook import RuntimeLog
from .values import Value, reassign


class MovedValue:
    """Marker left in a binding whose unique value has been moved out."""

    def __init__(self, origin_id: str):
        self.origin_id = origin_id

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<moved:{self.origin_id}>"


class Slot:
    def __init__(self, index: int):
        self.index = index
        self.generation = 0
        self.payload: Any = None
        self.strong = 0
        self.weak = 0
        self.live = False
        self.finalizers: list[Callable[[Any], None]] = []


class Arena:
    """Indexed storage for wrapped values with atomic reference counts."""

    def __init__(self, log: RuntimeLog | None = None):
        self._slots: list[Slot] = []
        self._free: list[int] = []
        self._lock = threading.RLock()
        self.log = log if log is not None else RuntimeLog()
        self.waits = WaitForGraph()
        self.finalized = 0

    def allocate(self, payload) -> tuple[int, int]:
        with self._lock:
            if self._free:
                slot = self._slots[self._free.pop()]
            else:
                slot = Slot(len(self._slots))
                self._slots.append(slot)
            slot.payload = payload
            slot.strong = 1
            slot.weak = 0
            slot.live = True
            slot.finalizers = []
            return slot.index, slot.generation

    def _live_slot(self, index: int, generation: int) -> Slot | None:
        if index >= len(self._slots):
            return None
        slot = self._slots[index]
        if not slot.live or slot.generation != generation:
            return None
        return slot

    def peek(self, index: int, generation: int):
        """Payload of a live slot, or None once it has been freed."""

        with self._lock:
            slot = self._live_slot(index, generation)
            return None if slot is None else slot.payload

    def is_live(self, index: int, generation: int) -> bool:
        with self._lock:
            return self._live_slot(index, generation) is not None

    def read(self, index: int, generation: int):
        with self._lock:
            slot = self._live_slot(index, generation)
            if slot is None:
                raise BorrowViolation(f"slot {index} was already released")
            return slot.payload

    def write(self, index: int, generation: int, payload) -> None:
        with self._lock:
            slot = self._live_slot(index, generation)
            if slot is None:
                raise BorrowViolation(f"slot {index} was already released")
            slot.payload = payload

    def incref(self, index: int, generation: int) -> int:
        with self._lock:
            slot = self._live_slot(index, generation)
            if slot is None:
                raise BorrowViolation(f"slot {index} was already finalized")
            slot.strong += 1
            return slot.strong

    def try_incref(self, index: int, generation: int) -> bool:
        with self._lock:
            slot = self._live_slot(index, generation)
            if slot is None:
                return False
            slot.strong += 1
            return True

    def decref(self, index: int, generation: int) -> bool:
        """Drop one strong reference; True when this call finalized the slot."""

        with self._lock:
            slot = self._live_slot(index, generation)
            if slot is None:
                runtime_defect(f"strong release of slot {index}.{generation} after finalization")
            slot.strong -= 1
            if slot.strong < 0:
                runtime_defect(f"negative strong count on slot {index}")
            if slot.strong > 0:
                return False
            payload, finalizers = slot.payload, slot.finalizers
            self._free_slot(slot)
        try:
            for finalizer in finalizers:
                finalizer(payload)
        finally:
            discard(payload)
            self.log.append(f"finalize:slot{index}")
        return True

    def free(self, index: int, generation: int):
        """Release a singly-owned slot and return its payload."""

        with self._lock:
            slot = self._live_slot(index, generation)
            if slot is None:
                runtime_defect(f"double release of slot {index}.{generation}")
            payload = slot.payload
            self._free_slot(slot)
        return payload

    def _free_slot(self, slot: Slot) -> None:
        slot.live = False
        slot.payload = None
        slot.strong = 0
        slot.generation += 1
        slot.finalizers = []
        self._free.append(slot.index)
        self.finalized += 1

    def adjust_weak(self, index: int, generation: int, delta: int) -> None:
        with self._lock:
            slot = self._live_slot(index, generation)
            if slot is not None:
                slot.weak = max(0, slot.weak + delta)

    def on_finalize(self, index: int, generation: int, finalizer) -> None:
        with self._lock:
            slot = self._live_slot(index, generation)
            if slot is None:
                raise BorrowViolation(f"slot {index} was already finalized")
            slot.finalizers.append(finalizer)

    def counts(self, index: int, generation: int) -> tuple[int, int]:
        with self._lock:
            slot = self._live_slot(index, generation)
            if slot is None:
                return 0, 0
            return slot.strong, slot.weak

    def describe(self, index: int) -> dict | None:
        with self._lock:
            if index >= len(self._slots):
                return None
            slot = self._slots[index]
            return {
                "index": slot.index,
                "generation": slot.generation,
                "live": slot.live,
                "strong": slot.strong,
                "weak": slot.weak,
                "payload": repr(slot.payload),
            }

    def live_count(self) -> int:
        with self._lock:
            return sum(1 for slot in self._slots if slot.live)

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


class OwnedValue:
    """Common surface of the five ownership wrappers."""

    kind = "plain"

    @property
    def is_live(self) -> bool:  # pragma: no cover - overridden
        return False

    def drop(self):  # pragma: no cover - overridden
        raise NotImplementedError


def _claim(handle) -> None:
    domain = current_domain()
    if domain is None:
        return
    if handle.domain is None:
        handle.domain = domain
    elif handle.domain != domain:
        raise BorrowViolation(
            f"{handle.name} belongs to {handle.domain} and cannot be used from {domain} without a move"
        )


class Unique(OwnedValue):
    """``~T``: exactly one live owner; moving invalidates this handle."""

    kind = "unique"

    def __init__(self, arena: Arena, value=None, *, name=None, _slot=None):
        self.arena = arena
        if _slot is None:
            _slot = arena.allocate(value)
        self._index, self._generation = _slot
        self.name = name or f"unique#{self._index}"
        self.state = "owned"
        self.domain: str | None = None

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Unique {self.name} {self.state}>"

    @property
    def is_live(self) -> bool:
        return self.state == "owned"

    def _check(self) -> None:
        if self.state == "moved":
            raise UseAfterMove(f"{self.name} was moved and is no longer usable")
        if self.state == "dropped":
            raise BorrowViolation(f"{self.name} was dropped")
        _claim(self)

    def get(self):
        self._check()
        return self.arena.read(self._index, self._generation)

    def set(self, value) -> None:
        self._check()
        current = self.arena.read(self._index, self._generation)
        if isinstance(current, Value):
            value = reassign(current, value)
        self.arena.write(self._index, self._generation, value)

    def move_out(self) -> tuple[Any, MovedValue]:
        self._check()
        payload = self.arena.free(self._index, self._generation)
        self.state = "moved"
        self.arena.log.append(f"move:{self.name}")
        return payload, MovedValue(self.name)

    def transfer(self) -> "Unique":
        """Move ownership to a fresh handle over the same slot."""

        self._check()
        moved = Unique(self.arena, name=self.name, _slot=(self._index, self._generation))
        self.state = "moved"
        self.arena.log.append(f"move:{self.name}")
        return moved

    def drop(self) -> bool:
        if self.state == "moved":
            return False
        if self.state == "dropped":
            raise BorrowViolation(f"{self.name} was already dropped")
        self.state = "dropped"
        discard(self.arena.free(self._index, self._generation))
        self.arena.log.append(f"drop:{self.name}")
        return True


class _Counted(OwnedValue):
    """Handle sharing a reference-counted slot."""

    def __init__(self, arena: Arena, payload=None, *, name=None, _slot=None):
        self.arena = arena
        if _slot is None:
            _slot = arena.allocate(payload)
        self._index, self._generation = _slot
        self.name = name or f"{self.kind}#{self._index}"
        self.state = "live"

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<{type(self).__name__} {self.name} {self.state}>"

    @property
    def is_live(self) -> bool:
        return self.state == "live"

    @property
    def slot(self) -> tuple[int, int]:
        return self._index, self._generation

    @property
    def strong_count(self) -> int:
        return self.arena.counts(self._index, self._generation)[0]

    @property
    def weak_count(self) -> int:
        return self.arena.counts(self._index, self._generation)[1]

    def _check(self) -> None:
        if self.state == "dropped":
            raise BorrowViolation(f"{self.name} handle was dropped")

    def clone(self):
        self._check()
        self.arena.incref(self._index, self._generation)
        return type(self)(self.arena, name=self.name, _slot=(self._index, self._generation))

    def drop(self) -> bool:
        """Release this handle's strong reference; True if it finalized the value."""

        if self.state == "dropped":
            raise BorrowViolation(f"{self.name} handle was already dropped")
        self.state = "dropped"
        return self.arena.decref(self._index, self._generation)

    def on_finalize(self, finalizer: Callable[[Any], None]) -> None:
        self._check()
        self.arena.on_finalize(self._index, self._generation, finalizer)


class Shared(_Counted):
    """``@T``: reference-counted, read-only shared storage."""

    kind = "shared"

    def get(self):
        self._check()
        return self.arena.read(self._index, self._generation)

    def downgrade(self) -> "Weak":
        self._check()
        return Weak(self.arena, (self._index, self._generation), name=self.name)


class Weak(OwnedValue):
    """``#weak``: observes shared storage without keeping it alive."""

    kind = "weak"

    def __init__(self, arena: Arena, slot: tuple[int, int], *, name=None):
        self.arena = arena
        self._index, self._generation = slot
        self.name = name or f"weak#{self._index}"
        self.state = "live"
        arena.adjust_weak(self._index, self._generation, +1)

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Weak {self.name} {self.state}>"

    @property
    def is_live(self) -> bool:
        return self.state == "live"

    def get(self):
        """The shared payload, or None once the last strong owner is gone."""

        if self.state == "dropped":
            raise BorrowViolation(f"{self.name} weak handle was dropped")
        return self.arena.peek(self._index, self._generation)

    def upgrade(self) -> Optional[Shared]:
        if self.state == "dropped":
            raise BorrowViolation(f"{self.name} weak handle was dropped")
        if not self.arena.try_incref(self._index, self._generation):
            return None
        return Shared(self.arena, name=self.name, _slot=(self._index, self._generation))

    def clone(self) -> "Weak":
        return Weak(self.arena, (self._index, self._generation), name=self.name)

    def drop(self) -> bool:
        if self.state == "dropped":
            raise BorrowViolation(f"{self.name} weak handle was already dropped")
        self.state = "dropped"
        self.arena.adjust_weak(self._index, self._generation, -1)
        return False


class Cell:
    """Mutable access handed to the body of a sync session."""

    def __init__(self, value):
        self.value = value

    def get(self):
        return self.value

    def set(self, value) -> None:
        if isinstance(self.value, Value):
            value = reassign(self.value, value)
        self.value = value

    def update(self, fn):
        self.set(fn(self.value))
        return self.value


class _SyncState:
    def __init__(self, value):
        self.cell = Cell(value)
        self.guard = threading.Lock()
        self.holder: str | None = None
        self.waiters: deque = deque()
        self.sessions = 0

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<sync {self.cell.value!r} holder={self.holder}>"


class Sync(_Counted):
    """``#sync``: shared value whose mutable access is one session at a time."""

    kind = "sync"

    def __init__(self, arena: Arena, value=None, *, name=None, _slot=None):
        payload = None if _slot is not None else _SyncState(value)
        super().__init__(arena, payload, name=name, _slot=_slot)

    @property
    def resource_key(self) -> str:
        return f"sync:{self._index}.{self._generation}"

    def _state(self) -> _SyncState:
        self._check()
        return self.arena.read(self._index, self._generation)

    @property
    def sessions(self) -> int:
        return self._state().sessions

    @property
    def holder(self) -> str | None:
        return self._state().holder

    def peek(self):
        """Current value, read without opening a session."""

        state = self._state()
        with state.guard:
            return state.cell.value

    def _acquire(self, state: _SyncState, owner: str, *, can_wait: bool) -> Future | None:
        resource = self.resource_key
        waits = self.arena.waits
        with state.guard:
            if state.holder == owner:
                raise DeadlockDetected(
                    f"{self.name} is already in a session held by {owner}; re-entering it would never complete"
                )
            if state.holder is None and not state.waiters:
                state.holder = owner
                waits.hold(owner, resource)
                return None
            if waits.would_deadlock(owner, resource):
                raise DeadlockDetected(
                    f"{owner} waiting on {self.name} closes a wait cycle through {state.holder}"
                )
            if not can_wait:
                raise BorrowViolation(
                    f"{self.name} is held by {state.holder}; tasks must use await_with to wait for it"
                )
            waiter = Future(label=f"{self.name}:session", reason="sync_lock", exclusive=True)
            state.waiters.append((owner, waiter))
            waits.wait(owner, resource)
            return waiter

    def _release(self, state: _SyncState, owner: str) -> None:
        resource = self.resource_key
        waits = self.arena.waits
        granted = None
        with state.guard:
            if state.holder != owner:
                runtime_defect(f"{owner} released {self.name} held by {state.holder}")
            waits.release(owner, resource)
            state.sessions += 1
            state.holder = None
            while state.waiters:
                next_owner, waiter = state.waiters.popleft()
                waits.stop_waiting(next_owner, resource)
                if waiter.cancelled():
                    continue
                state.holder = next_owner
                waits.hold(next_owner, resource)
                granted = waiter
                break
        if granted is not None:
            granted.set_result(True)

    def _abandon(self, state: _SyncState, owner: str, waiter: Future) -> None:
        with state.guard:
            granted = state.holder == owner
            if not granted:
                waiter.cancel()
                for entry in list(state.waiters):
                    if entry[1] is waiter:
                        state.waiters.remove(entry)
                self.arena.waits.stop_waiting(owner, self.resource_key)
        if granted:
            self._release(state, owner)

    def with_(self, body: Callable[[Cell], Any]):
        """Run ``body`` with exclusive access, blocking the host thread if contended."""

        state = self._state()
        owner = current_owner()
        waiter = self._acquire(state, owner, can_wait=current_task() is None)
        if waiter is not None:
            waiter.wait()
        try:
            return body(state.cell)
        finally:
            self._release(state, owner)

    def await_with(self, body: Callable[[Cell], Any]):
        """Suspending form for task code: ``result = yield from sync.await_with(body)``."""

        state = self._state()
        owner = current_owner()
        waiter = self._acquire(state, owner, can_wait=True)
        if waiter is not None:
            try:
                yield waiter
            except BaseException:
                self._abandon(state, owner, waiter)
                raise
        try:
            result = body(state.cell)
            if inspect.isgenerator(result):
                result = yield from result
            return result
        finally:
            self._release(state, owner)


class Own(OwnedValue):
    """``#own``: a resource whose release callback runs exactly once."""

    kind = "own"

    def __init__(self, arena: Arena, resource, release: Callable[[Any], None], *, name=None, _slot=None):
        if not callable(release):
            raise BorrowViolation("#own bindings require a release callback")
        self.arena = arena
        if _slot is None:
            _slot = arena.allocate(resource)
        self._index, self._generation = _slot
        self._release_fn = release
        self._lock = threading.Lock()
        self.name = name or f"own#{self._index}"
        self.state = "open"

    def __repr__(self) -> str:  # pragma: no cover - representation helper
        return f"<Own {self.name} {self.state}>"

    @property
    def is_live(self) -> bool:
        return self.state == "open"

    @property
    def released(self) -> bool:
        return self.state == "released"

    def get(self):
        if self.state == "moved":
            raise UseAfterMove(f"{self.name} was moved and is no longer usable")
        if self.state == "released":
            raise BorrowViolation(f"{self.name} was already released")
        return self.arena.read(self._index, self._generation)

    def transfer(self) -> "Own":
        with self._lock:
            if self.state != "open":
                self.get()
            moved = Own(
                self.arena,
                None,
                self._release_fn,
                name=self.name,
                _slot=(self._index, self._generation),
            )
            self.state = "moved"
        self.arena.log.append(f"move:{self.name}")
        return moved

    def close(self) -> bool:
        """Run the release callback; later calls and moved handles are no-ops."""

        with self._lock:
            if self.state != "open":
                return False
            self.state = "released"
            resource = self.arena.free(self._index, self._generation)
        self.arena.log.append(f"release:{self.name}")
        try:
            self._release_fn(resource)
        except Exception as exc:
            raise ResourceReleaseFailure(f"release of {self.name} failed: {exc}") from exc
        return True

    drop = close

    def __enter__(self):
        return self.get()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def discard(value) -> None:
    """Drop ``value`` if it is a live ownership wrapper."""

    if isinstance(value, OwnedValue) and value.is_live:
        value.drop()


def transfer(value):
    """Ownership a value takes when it crosses a channel or task boundary."""

    if isinstance(value, (Unique, Own)):
        return value.transfer()
    if isinstance(value, (_Counted, Weak)):
        return value.clone()
    if isinstance(value, MovedValue):
        raise UseAfterMove(f"{value.origin_id} was moved and is no longer usable")
    return value


def normalize_qualifier(qualifier) -> str | None:
    if qualifier in (None, "", "plain"):
        return None
    try:
        return QUALIFIERS[qualifier]
    except KeyError:
        raise ValueError(f"Unknown ownership qualifier: {qualifier!r}") from None


class OwnershipManager:
    """Wraps values per declared sigil and enforces the ownership rules."""

    def __init__(self, arena: Arena | None = None, log: RuntimeLog | None = None):
        self.arena = arena if arena is not None else Arena(log)

    def wrap(self, value, qualifier=None, *, release=None, name=None):
        kind = normalize_qualifier(qualifier)
        if kind is None:
            return value
        if kind == "unique":
            return Unique(self.arena, value, name=name)
        if kind == "shared":
            return Shared(self.arena, value, name=name)
        if kind == "weak":
            if isinstance(value, Shared):
                return value.downgrade()
            raise BorrowViolation("#weak bindings must observe a shared (@) value")
        if kind == "sync":
            return Sync(self.arena, value, name=name)
        if release is None:
            raise BorrowViolation("#own bindings require a release callback")
        return Own(self.arena, value, release, name=name)

    def move_out(self, handle) -> tuple[Any, MovedValue]:
        if isinstance(handle, _Counted):
            raise BorrowViolation(f"{handle.name} is shared; clone_share it instead of moving")
        if not isinstance(handle, Unique):
            raise BorrowViolation(f"only unique (~) values can be moved out, not {type(handle).__name__}")
        return handle.move_out()

    def clone_share(self, handle):
        if not isinstance(handle, _Counted):
            raise BorrowViolation(f"only @ and #sync values can be shared, not {type(handle).__name__}")
        return handle.clone()

    def downgrade(self, handle) -> Weak:
        if not isinstance(handle, Shared):
            raise BorrowViolation(f"only @ values can be downgraded, not {type(handle).__name__}")
        return handle.downgrade()

    def with_(self, handle, body):
        if not isinstance(handle, Sync):
            raise BorrowViolation(f"with requires a #sync value, not {type(handle).__name__}")
        return handle.with_(body)

    def own(self, resource, release, *, name=None) -> Own:
        return Own(self.arena, resource, release, name=name)

    def drop(self, handle) -> bool:
        if isinstance(handle, OwnedValue):
            return bool(handle.drop())
        return False

    def stats(self) -> dict:
        return {
            "slots": len(self.arena),
            "live": self.arena.live_count(),
            "finalized": self.arena.finalized,
            "waits": len(self.arena.waits),
        }


__all__ = [
    "Arena",
    "Cell",
    "MovedValue",
    "Own",
    "OwnedValue",
    "OwnershipManager",
    "Shared",
    "Slot",
    "Sync",
    "Unique",
    "Weak",
    "discard",
    "normalize_qualifier",
    "transfer",
]
